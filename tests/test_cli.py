"""End-to-end tests: config file → fake Gerrit → CSV report."""

from __future__ import annotations

import csv
from pathlib import Path

import httpx
import pytest

from conftest import FakeGerrit, make_raw_change

from gerrit_stats.__main__ import main
from gerrit_stats.fetcher import fetch_all
from gerrit_stats.gerrit_client import GerritAuthError, GerritFetchError

CONFIG = """\
server: https://review.example.org
concurrency: 2
retry:
  max: 2
  backoff: 0.001
users:
  - username: alice
    fullname: Alice Liddell
  - username: bob
"""


@pytest.fixture(autouse=True)
def _no_env_password(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("gerrit_stats.__main__.GERRIT_PASSWORD", None)


def _config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


def _read_csv(path: Path) -> list[list[str]]:
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def _no_prompt(message: str) -> str:
    raise AssertionError("password prompt was not expected")


# ── fetch_all ──────────────────────────────────────────────────────────────


def test_fetch_all_builds_shared_index(alice_bob_gerrit: FakeGerrit, alice_bob_config) -> None:
    index = fetch_all(alice_bob_config, "alice", "pw", transport=alice_bob_gerrit.transport)

    assert len(index) == 2
    assert sorted(c.number for c in index) == [1, 2]
    assert all(len(c.comments) == 1 for c in index)


def test_fetch_all_tags_failing_user(alice_bob_config) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "owner:bob" in request.url.params.get("q", ""):
            return httpx.Response(500)
        return httpx.Response(200, text=")]}'\n[]")

    alice_bob_config.users = alice_bob_config.users[1:]
    with pytest.raises(GerritFetchError) as excinfo:
        fetch_all(alice_bob_config, "alice", "pw", transport=httpx.MockTransport(handler))
    assert excinfo.value.user == "bob"


def test_fetch_all_auth_failure_is_fatal(alice_bob_config) -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(401))
    with pytest.raises(GerritAuthError) as excinfo:
        fetch_all(alice_bob_config, "alice", "wrong", transport=transport)
    assert excinfo.value.user in {"alice", "bob"}


# ── CLI ─────────────────────────────────────────────────────────────────────


def test_main_writes_reports(tmp_path: Path, alice_bob_gerrit: FakeGerrit) -> None:
    prompts: list[str] = []

    def prompt(message: str) -> str:
        prompts.append(message)
        return "s3cret"

    out = tmp_path / "out"
    code = main(
        ["--config", str(_config_file(tmp_path)), "--user", "alice", "--output-dir", str(out)],
        prompt=prompt,
        transport=alice_bob_gerrit.transport,
    )

    assert code == 0
    assert len(prompts) == 1
    assert _read_csv(out / "stats.csv") == [
        ["User", "CH", "AP", "CM", "CR", "CR/CH", "CW", "CW/CH", "PS", "PS/CH"],
        ["Alice Liddell", "1", "0", "1", "1", "1.0", "4", "4.0", "1", "1.0"],
        ["bob", "1", "1", "1", "1", "1.0", "5", "5.0", "2", "2.0"],
        ["Average", "1.0", "0.5", "1.0", "1.0", "1.0", "4.5", "4.5", "1.5", "1.5"],
    ]
    detailed = _read_csv(out / "detailed.csv")
    assert detailed[0][:3] == ["User", "Repo", "CH"]
    assert [row[:2] for row in detailed[1:]] == [
        ["Alice Liddell", "All"],
        ["Alice Liddell", "core"],
        ["bob", "All"],
        ["bob", "core"],
    ]


def test_main_report_is_byte_identical_across_runs(tmp_path: Path, alice_bob_gerrit: FakeGerrit) -> None:
    config = str(_config_file(tmp_path))
    for name in ("first", "second"):
        code = main(
            ["-c", config, "-u", "alice", "-o", str(tmp_path / name)],
            prompt=lambda m: "pw",
            transport=alice_bob_gerrit.transport,
        )
        assert code == 0
    for filename in ("stats.csv", "detailed.csv"):
        first = (tmp_path / "first" / filename).read_bytes()
        assert first == (tmp_path / "second" / filename).read_bytes()


def test_main_auth_failure_writes_nothing(tmp_path: Path) -> None:
    out = tmp_path / "out"
    code = main(
        ["-c", str(_config_file(tmp_path)), "-u", "alice", "-o", str(out)],
        prompt=lambda m: "wrong",
        transport=httpx.MockTransport(lambda r: httpx.Response(401)),
    )
    assert code == 1
    assert not out.exists()


def test_main_exhausted_retries_writes_nothing(tmp_path: Path, fake_gerrit: FakeGerrit) -> None:
    fake_gerrit.add(make_raw_change(1, "alice"))

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/comments"):
            return httpx.Response(503)
        return fake_gerrit.handler(request)

    out = tmp_path / "out"
    code = main(
        ["-c", str(_config_file(tmp_path)), "-u", "alice", "-o", str(out)],
        prompt=lambda m: "pw",
        transport=httpx.MockTransport(handler),
    )
    assert code == 1
    assert not out.exists()


def test_main_config_error_happens_before_prompt(tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("users: []\n", encoding="utf-8")
    code = main(["-c", str(bad), "-u", "alice"], prompt=_no_prompt)
    assert code == 1


def test_main_requires_config_and_user() -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--user", "alice"], prompt=_no_prompt)
    assert excinfo.value.code == 2
