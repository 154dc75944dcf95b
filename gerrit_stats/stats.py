"""Aggregation engine for per-user review statistics.

Every counter is one row of a declarative table: a column name, the
``UserStats`` attribute it fills, a predicate selecting the changes it
looks at, and a function extracting the value from a change. The
self/others distinction therefore lives in exactly two predicates:

    owned(change, user)      change.owner == user
    not_owned(change, user)  change.owner != user

Ratios are derived from the counters afterwards and are 0.0 whenever the
user owns no changes.

A change contributes to a user's row only if its submit time falls inside
that user's reporting window. Only changes fetched for configured users
are in the index, so activity of unconfigured accounts shows up solely
through changes a configured user owns or touched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from gerrit_stats.config import (
    ALL_PROJECTS,
    APPROVAL_LABEL,
    APPROVAL_VALUE,
    AVERAGE_ROW,
    UserConfig,
)
from gerrit_stats.index import ChangeIndex
from gerrit_stats.models import Change, UserStats

logger = logging.getLogger(__name__)


# ── Metric table ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Metric:
    """A counter: which changes it covers and what each one adds."""

    column: str
    attr: str
    applies: Callable[[Change, str], bool]
    value: Callable[[Change, str], int]


def owned(change: Change, user: str) -> bool:
    return change.owner.key == user


def not_owned(change: Change, user: str) -> bool:
    return change.owner.key != user


def any_change(change: Change, user: str) -> bool:
    return True


def build_metrics(
    approval_label: str = APPROVAL_LABEL,
    approval_value: int = APPROVAL_VALUE,
) -> tuple[Metric, ...]:
    """Return the counter table, in report column order.

    *approval_value* is the maximal positive vote on *approval_label*;
    votes at or above it count as approvals.
    """
    def approvals(change: Change, user: str) -> int:
        return sum(
            1 for a in change.approvals
            if a.by.key == user and a.label == approval_label and a.value >= approval_value
        )

    return (
        Metric("CH", "changes", owned, lambda c, u: 1),
        Metric("AP", "approvals", any_change, approvals),
        Metric("CM", "comments_made", not_owned,
               lambda c, u: sum(1 for cm in c.comments if cm.author.key == u)),
        Metric("CR", "comments_received", owned,
               lambda c, u: sum(1 for cm in c.comments if cm.author.key != u)),
        Metric("CW", "commit_words", owned, lambda c, u: c.commit_words),
        Metric("PS", "patch_sets", owned, lambda c, u: len(c.patch_sets)),
    )


# (column, numerator attribute); the denominator is always ``changes``.
RATIOS: tuple[tuple[str, str], ...] = (
    ("CR/CH", "comments_received"),
    ("CW/CH", "commit_words"),
    ("PS/CH", "patch_sets"),
)

COLUMNS: list[str] = ["CH", "AP", "CM", "CR", "CR/CH", "CW", "CW/CH", "PS", "PS/CH"]

_ATTR_BY_COLUMN: dict[str, str] = {m.column: m.attr for m in build_metrics()}
_RATIO_BY_COLUMN: dict[str, str] = dict(RATIOS)


# ── Aggregation ─────────────────────────────────────────────────────────────

def user_stats(
    index: ChangeIndex,
    user: UserConfig,
    metrics: Iterable[Metric],
) -> list[UserStats]:
    """Aggregate one user: the ``All`` row, then one row per project."""
    metrics = tuple(metrics)
    total = UserStats(user.username, user.display_name)
    by_project: dict[str, UserStats] = {}

    for change in index:
        if not user.covers(change.submitted):
            continue
        for metric in metrics:
            if not metric.applies(change, user.username):
                continue
            value = metric.value(change, user.username)
            if not value:
                continue
            project = by_project.get(change.project)
            if project is None:
                project = by_project[change.project] = UserStats(
                    user.username, user.display_name, change.project
                )
            setattr(total, metric.attr, getattr(total, metric.attr) + value)
            setattr(project, metric.attr, getattr(project, metric.attr) + value)

    return [total] + [by_project[name] for name in sorted(by_project)]


def collect_stats(
    index: ChangeIndex,
    users: Iterable[UserConfig],
    approval_label: str = APPROVAL_LABEL,
    approval_value: int = APPROVAL_VALUE,
) -> list[UserStats]:
    """Compute statistics for every user, in configuration order."""
    metrics = build_metrics(approval_label, approval_value)
    results: list[UserStats] = []
    for user in users:
        rows = user_stats(index, user, metrics)
        logger.debug(
            "%s: CH=%d across %d project(s)",
            user.username, rows[0].changes, len(rows) - 1,
        )
        results.extend(rows)
    return results


def summary_rows(stats: Iterable[UserStats]) -> list[UserStats]:
    """Only the all-projects row of each user, order preserved."""
    return [s for s in stats if s.project == ALL_PROJECTS]


def average_stats(stats: Iterable[UserStats]) -> UserStats:
    """Mean of every user's all-projects counters."""
    rows = summary_rows(stats)
    avg = UserStats(AVERAGE_ROW, AVERAGE_ROW)
    if not rows:
        return avg
    for attr in _ATTR_BY_COLUMN.values():
        setattr(avg, attr, round(sum(getattr(r, attr) for r in rows) / len(rows), 2))
    return avg


def as_row(stats: UserStats) -> dict[str, float]:
    """Render counters and ratios in report column order."""
    row: dict[str, float] = {}
    for column in COLUMNS:
        if column in _RATIO_BY_COLUMN:
            row[column] = round(stats.per_change(_RATIO_BY_COLUMN[column]), 2)
        else:
            row[column] = getattr(stats, _ATTR_BY_COLUMN[column])
    return row
