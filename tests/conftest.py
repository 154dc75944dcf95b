"""Shared fixtures: an in-memory Gerrit server behind ``httpx.MockTransport``."""

from __future__ import annotations

import json
import re

import httpx
import pytest

from gerrit_stats.config import StatsConfig, UserConfig

XSSI = ")]}'\n"


def account(username: str, account_id: int | None = None) -> dict:
    return {
        "_account_id": account_id or sum(map(ord, username)),
        "username": username,
        "name": username.title(),
    }


def make_raw_change(
    number: int,
    owner: str,
    message: str = "Fix things",
    patch_sets: int = 1,
    votes: list[tuple[str, int]] | None = None,
    project: str = "core",
    submitted: str = "2024-05-02 10:00:00.000000000",
) -> dict:
    """Build a ``ChangeInfo`` dict the way Gerrit returns it."""
    revisions = {
        f"sha{number}x{ps}": {
            "_number": ps,
            "created": f"2024-05-01 0{ps}:00:00.000000000",
            "uploader": account(owner),
        }
        for ps in range(1, patch_sets + 1)
    }
    current = f"sha{number}x{patch_sets}"
    revisions[current]["commit"] = {"message": message, "subject": message.splitlines()[0]}
    return {
        "id": f"{project}~master~I{number:040d}",
        "_number": number,
        "project": project,
        "branch": "master",
        "status": "MERGED",
        "subject": message.splitlines()[0],
        "owner": account(owner),
        "submitted": submitted,
        "current_revision": current,
        "revisions": revisions,
        "labels": {
            "Code-Review": {
                "all": [
                    {**account(user), "value": value, "date": "2024-05-01 12:00:00.000000000"}
                    for user, value in (votes or [])
                ]
            }
        },
    }


def make_raw_comment(comment_id: str, author: str, patch_set: int = 1) -> dict:
    return {
        "id": comment_id,
        "author": account(author),
        "patch_set": patch_set,
        "updated": "2024-05-01 13:00:00.000000000",
        "message": "Looks odd",
    }


class FakeGerrit:
    """Answers ``/a/changes/`` queries and ``/a/changes/<n>/comments``.

    Supports the query operators the fetcher emits and Gerrit's
    ``n``/``S`` pagination with ``_more_changes`` on the last record.
    """

    def __init__(self, changes: list[dict] | None = None) -> None:
        self.changes: list[dict] = list(changes or [])
        self.comments: dict[int, dict[str, list[dict]]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, change: dict, comments: list[dict] | None = None, path: str = "src/main.c") -> None:
        self.changes.append(change)
        if comments:
            self.comments.setdefault(change["_number"], {}).setdefault(path, []).extend(comments)

    # ── Query evaluation ────────────────────────────────────────────────

    def _commenters(self, change: dict) -> set[str]:
        by_path = self.comments.get(change["_number"], {})
        return {c["author"]["username"] for cs in by_path.values() for c in cs}

    def _voters(self, change: dict) -> set[str]:
        return {
            v["username"]
            for label in change.get("labels", {}).values()
            for v in label.get("all", [])
        }

    def _matches(self, change: dict, query: str) -> bool:
        owner = change["owner"]["username"]
        for term in query.split():
            negate = term.startswith("-")
            op, _, value = term.lstrip("-").partition(":")
            if op == "status":
                hit = change["status"].lower() == value
            elif op == "owner":
                hit = owner == value
            elif op == "commentby":
                hit = value in self._commenters(change)
            elif op == "reviewedby":
                hit = value != owner and value in (self._commenters(change) | self._voters(change))
            elif op == "after":
                hit = change["submitted"][:10] >= value
            else:
                raise AssertionError(f"unexpected query operator {op!r}")
            if hit == negate:
                return False
        return True

    # ── Transport ───────────────────────────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        m = re.fullmatch(r"/a/changes/(\d+)/comments", path)
        if m:
            return self._json(self.comments.get(int(m.group(1)), {}))

        if path == "/a/changes/":
            params = request.url.params
            query = params["q"]
            limit = int(params.get("n", 100))
            start = int(params.get("S", 0))
            matched = [c for c in self.changes if self._matches(c, query)]
            page = [dict(c) for c in matched[start:start + limit]]
            if page and start + limit < len(matched):
                page[-1]["_more_changes"] = True
            return self._json(page)

        return httpx.Response(404, text="Not found")

    @staticmethod
    def _json(data) -> httpx.Response:
        return httpx.Response(200, text=XSSI + json.dumps(data))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_gerrit() -> FakeGerrit:
    return FakeGerrit()


@pytest.fixture
def alice_bob_gerrit() -> FakeGerrit:
    """alice owns C1 (+2 and one comment from bob); bob owns C2 (one comment from alice)."""
    gerrit = FakeGerrit()
    gerrit.add(
        make_raw_change(1, "alice", "Fix null pointer bug", patch_sets=1, votes=[("bob", 2)]),
        comments=[make_raw_comment("c1", "bob")],
    )
    gerrit.add(
        make_raw_change(2, "bob", "Add retry logic to client", patch_sets=2),
        comments=[make_raw_comment("c2", "alice", patch_set=2)],
    )
    return gerrit


@pytest.fixture
def alice_bob_config() -> StatsConfig:
    return StatsConfig(
        server="https://review.example.org",
        users=[UserConfig("alice", "Alice Liddell"), UserConfig("bob", "")],
        retry_backoff=0.0,
    )
