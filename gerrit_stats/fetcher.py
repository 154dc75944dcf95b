"""Per-user fetcher: change queries → inline comments → shared index."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx

from gerrit_stats.config import CHANGE_OPTIONS, CHANGE_PAGE_SIZE, StatsConfig, UserConfig
from gerrit_stats.gerrit_client import GerritClient, GerritError
from gerrit_stats.index import ChangeIndex

logger = logging.getLogger(__name__)


# ── Queries ─────────────────────────────────────────────────────────────────

def user_queries(user: UserConfig) -> list[tuple[str, str]]:
    """Return ``(axis, query)`` pairs covering every metric for *user*.

    ``owned`` feeds CH, CW, PS and CR; ``commented`` feeds CM;
    ``reviewed`` feeds AP and the CM comments left alongside votes.
    ``after:`` filters on last update, a superset of the submit window;
    the exact window is applied during aggregation.
    """
    u = user.username
    scope = "status:merged"
    if user.since is not None:
        scope += f" after:{user.since.isoformat()}"
    return [
        ("owned", f"{scope} owner:{u}"),
        ("commented", f"{scope} commentby:{u} -owner:{u}"),
        ("reviewed", f"{scope} reviewedby:{u} -owner:{u}"),
    ]


def iter_changes(
    client: GerritClient,
    query: str,
    page_size: int = CHANGE_PAGE_SIZE,
) -> Iterator[dict]:
    """Yield every change matching *query*, following Gerrit pagination.

    Gerrit marks the last record of a page with ``_more_changes`` when
    further results exist; the next page starts at offset ``S``. Each call
    starts again from the first page.
    """
    start = 0
    page_no = 0

    while True:
        page_no += 1
        page = client.rest_get(
            "/changes/",
            params={"q": query, "o": CHANGE_OPTIONS, "n": page_size, "S": start},
        )
        if not page:
            break
        logger.debug("Query %r page %d: %d changes", query, page_no, len(page))

        yield from page

        if not page[-1].get("_more_changes"):
            break
        start += len(page)


def fetch_comments(client: GerritClient, change_number: int) -> list[dict]:
    """Fetch all published inline comments for a change, path included."""
    data = client.rest_get(f"/changes/{change_number}/comments")
    comments: list[dict] = []
    for path in sorted(data or {}):
        for comment in data[path]:
            comments.append({**comment, "path": path})
    return comments


def fetch_user_changes(
    client: GerritClient,
    user: UserConfig,
    page_size: int = CHANGE_PAGE_SIZE,
) -> list[dict]:
    """Run every query axis for *user* and attach ``_comments`` to each change.

    Changes returned by more than one axis are fetched once.
    """
    seen: dict[str, dict] = {}

    for axis, query in user_queries(user):
        found = 0
        for raw in iter_changes(client, query, page_size):
            found += 1
            change_id = raw.get("id")
            if change_id in seen:
                continue
            number = raw.get("_number")
            raw["_comments"] = fetch_comments(client, number) if number else []
            # Records without an id are left for the index to reject.
            seen[change_id or f"_anonymous_{len(seen)}"] = raw
        logger.info("  %s/%s: %d changes", user.username, axis, found)

    return list(seen.values())


# ── Orchestrator ────────────────────────────────────────────────────────────

def fetch_all(
    config: StatsConfig,
    username: str,
    password: str,
    transport: httpx.BaseTransport | None = None,
) -> ChangeIndex:
    """Fetch every configured user's changes and build the shared index.

    Users are fetched on a bounded thread pool. Results are merged on the
    calling thread as they complete, so workers never touch the index.
    The first failure cancels pending fetches and is re-raised with
    ``user`` set.
    """
    index = ChangeIndex()

    with GerritClient(
        config.server,
        username,
        password,
        timeout=config.timeout,
        retry_max=config.retry_max,
        retry_backoff=config.retry_backoff,
        transport=transport,
    ) as client:
        logger.info(
            "Fetching %d user(s) from %s with %d worker(s)",
            len(config.users), config.server, config.concurrency,
        )
        with ThreadPoolExecutor(max_workers=config.concurrency) as executor:
            future_to_user = {
                executor.submit(fetch_user_changes, client, user, config.page_size): user
                for user in config.users
            }
            for future in as_completed(future_to_user):
                user = future_to_user[future]
                try:
                    raws = future.result()
                except GerritError as exc:
                    exc.user = user.username
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise
                accepted = index.merge_all(raws)
                logger.info(
                    "Merged %d change(s) for %s (index size %d)",
                    accepted, user.username, len(index),
                )

    if index.skipped:
        logger.warning("Skipped inconsistent records: %s", dict(index.skipped))
    return index
