"""Build the shared, deduplicated change index from raw Gerrit records.

Raw records come from ``/changes/`` queries with ``_comments`` attached by
the fetcher. The same change usually arrives several times, once for each
user whose query touched it, so records are merged per change ID:

    - the owner recorded first is kept,
    - patch sets are unioned by number,
    - comments by service ID (author + timestamp when the ID is missing),
    - approvals by (label, voter), the later vote winning.

Merging is commutative and idempotent, so fetch completion order never
changes the index. Malformed sub-records are skipped and counted in
``ChangeIndex.skipped``; they never abort a run.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone

from gerrit_stats.models import Account, Approval, Change, Comment, PatchSet

logger = logging.getLogger(__name__)


# ── Parsing raw API data ───────────────────────────────────────────────────

def _parse_ts(value: str | None) -> datetime | None:
    """Parse Gerrit's ``YYYY-MM-DD hh:mm:ss.fffffffff`` UTC timestamps."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:19], "%Y-%m-%d %H:%M:%S").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        logger.warning("Unparsable timestamp %r", value)
        return None


def _parse_account(raw: dict | None) -> Account | None:
    if not raw:
        return None
    username = raw.get("username") or ""
    account_id = raw.get("_account_id")
    if not username and account_id is None:
        return None
    return Account(username=username, name=raw.get("name", ""), account_id=account_id)


def count_words(message: str) -> int:
    """Count whitespace-separated tokens; punctuation stays attached."""
    return len(message.split())


def _parse_patch_sets(raw: dict, skipped: Counter) -> list[PatchSet]:
    patch_sets: list[PatchSet] = []
    for sha, rev in (raw.get("revisions") or {}).items():
        number = rev.get("_number") if isinstance(rev, dict) else None
        if not isinstance(number, int):
            logger.warning("Change %s: revision %s has no number, skipped", raw.get("id"), sha)
            skipped["patch_set"] += 1
            continue
        uploader = _parse_account(rev.get("uploader"))
        patch_sets.append(PatchSet(
            number=number,
            revision=sha,
            created=_parse_ts(rev.get("created")),
            uploader=uploader.key if uploader else "",
        ))
    return patch_sets


def _commit_message(raw: dict) -> str:
    """Message of the current revision, else of any revision carrying one."""
    revisions = raw.get("revisions") or {}
    current = revisions.get(raw.get("current_revision") or "") or {}
    commit = current.get("commit") or {}
    if commit.get("message"):
        return commit["message"]
    for rev in revisions.values():
        message = ((rev or {}).get("commit") or {}).get("message")
        if message:
            return message
    return ""


def _parse_comments(raw: dict, skipped: Counter) -> list[Comment]:
    comments: list[Comment] = []
    for c in raw.get("_comments") or []:
        author = _parse_account(c.get("author"))
        if author is None:
            logger.warning("Change %s: comment %s has no author, skipped", raw.get("id"), c.get("id"))
            skipped["comment"] += 1
            continue
        comments.append(Comment(
            id=c.get("id") or "",
            author=author,
            patch_set=c.get("patch_set"),
            path=c.get("path", ""),
            updated=_parse_ts(c.get("updated")),
            message=c.get("message", ""),
        ))
    return comments


def _parse_approvals(raw: dict, skipped: Counter) -> list[Approval]:
    approvals: list[Approval] = []
    for label, info in (raw.get("labels") or {}).items():
        for vote in (info or {}).get("all") or []:
            value = vote.get("value")
            # Reviewers without a vote are listed with a missing or zero value.
            if not value:
                continue
            by = _parse_account(vote)
            if by is None or not isinstance(value, int):
                logger.warning("Change %s: malformed %s vote, skipped", raw.get("id"), label)
                skipped["approval"] += 1
                continue
            approvals.append(Approval(
                label=label,
                value=value,
                by=by,
                granted_on=_parse_ts(vote.get("date")),
            ))
    return approvals


def parse_change(raw: dict, skipped: Counter | None = None) -> Change | None:
    """Convert one raw ``ChangeInfo`` dict into a ``Change``.

    Returns None when the record has no ID or no owner.
    """
    if skipped is None:
        skipped = Counter()

    change_id = raw.get("id")
    owner = _parse_account(raw.get("owner"))
    if not change_id or owner is None:
        logger.warning("Change record %r has no id or owner, skipped", raw.get("_number"))
        skipped["change"] += 1
        return None

    message = _commit_message(raw)
    change = Change(
        id=change_id,
        number=raw.get("_number", 0),
        project=raw.get("project", ""),
        branch=raw.get("branch", ""),
        owner=owner,
        subject=raw.get("subject", ""),
        message=message,
        commit_words=count_words(message),
        submitted=_parse_ts(raw.get("submitted")),
        patch_sets=_parse_patch_sets(raw, skipped),
        comments=_parse_comments(raw, skipped),
        approvals=_parse_approvals(raw, skipped),
    )
    _normalise(change)
    return change


# ── Merging ────────────────────────────────────────────────────────────────

def _comment_order(c: Comment) -> tuple:
    return (
        c.patch_set or 0,
        c.updated.isoformat() if c.updated else "",
        c.id,
        c.author.key,
        c.message,
    )


def _approval_rank(a: Approval) -> tuple:
    return (a.granted_on.isoformat() if a.granted_on else "", a.value)


def _normalise(change: Change) -> None:
    """Dedupe and order nested records so equal inputs give equal changes."""
    change.patch_sets = sorted(
        {ps.number: ps for ps in change.patch_sets}.values(),
        key=lambda ps: ps.number,
    )
    change.comments = sorted(
        {c.identity: c for c in change.comments}.values(),
        key=_comment_order,
    )
    latest: dict[tuple[str, str], Approval] = {}
    for a in change.approvals:
        kept = latest.get(a.identity)
        if kept is None or _approval_rank(a) > _approval_rank(kept):
            latest[a.identity] = a
    change.approvals = [latest[k] for k in sorted(latest)]


def merge_changes(existing: Change, incoming: Change) -> None:
    """Fold *incoming* into *existing*, which keeps its owner."""
    if incoming.owner.key != existing.owner.key:
        logger.warning(
            "Change %s: owner %s differs from recorded %s, keeping recorded",
            existing.id, incoming.owner.key, existing.owner.key,
        )
    if not existing.message and incoming.message:
        existing.message = incoming.message
        existing.commit_words = incoming.commit_words
    existing.subject = existing.subject or incoming.subject
    existing.project = existing.project or incoming.project
    existing.branch = existing.branch or incoming.branch
    existing.submitted = existing.submitted or incoming.submitted

    existing.patch_sets = existing.patch_sets + incoming.patch_sets
    existing.comments = existing.comments + incoming.comments
    existing.approvals = existing.approvals + incoming.approvals
    _normalise(existing)


class ChangeIndex:
    """Change ID → ``Change``, shared across all users' fetch results."""

    def __init__(self) -> None:
        self._changes: dict[str, Change] = {}
        self._lock = threading.Lock()
        self.skipped: Counter = Counter()

    def merge(self, raw: dict) -> Change | None:
        """Parse *raw* and merge it into the index."""
        with self._lock:
            incoming = parse_change(raw, self.skipped)
            if incoming is None:
                return None
            existing = self._changes.get(incoming.id)
            if existing is None:
                self._changes[incoming.id] = incoming
                return incoming
            merge_changes(existing, incoming)
            return existing

    def merge_all(self, raws: Iterable[dict]) -> int:
        """Merge every record; returns how many were accepted."""
        return sum(1 for raw in raws if self.merge(raw) is not None)

    def get(self, change_id: str) -> Change | None:
        return self._changes.get(change_id)

    def __len__(self) -> int:
        return len(self._changes)

    def __contains__(self, change_id: str) -> bool:
        return change_id in self._changes

    def __iter__(self) -> Iterator[Change]:
        """Iterate in change-ID order."""
        for change_id in sorted(self._changes):
            yield self._changes[change_id]
