"""Domain models for Gerrit review statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from gerrit_stats.config import ALL_PROJECTS


@dataclass(frozen=True)
class Account:
    """A Gerrit account as it appears on changes, comments and votes."""

    username: str
    name: str = ""
    account_id: int | None = None

    @property
    def key(self) -> str:
        """Username, or ``account:<id>`` for accounts without one."""
        if self.username:
            return self.username
        return f"account:{self.account_id}"


@dataclass(frozen=True)
class PatchSet:
    """One revision of a change."""

    number: int
    revision: str
    created: datetime | None = None
    uploader: str = ""


@dataclass(frozen=True)
class Comment:
    """An inline review comment left on a change."""

    id: str
    author: Account
    patch_set: int | None
    path: str
    updated: datetime | None = None
    message: str = ""

    @property
    def identity(self) -> tuple:
        """Service-assigned ID, or author + timestamp when it is missing."""
        if self.id:
            return ("id", self.id)
        return ("author", self.author.key, self.updated, self.message)


@dataclass(frozen=True)
class Approval:
    """A vote cast on a change label."""

    label: str
    value: int
    by: Account
    granted_on: datetime | None = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.label, self.by.key)


@dataclass
class Change:
    """A merged change with its patch sets, comments and approvals."""

    id: str
    number: int
    project: str
    branch: str
    owner: Account
    subject: str = ""
    message: str = ""
    commit_words: int = 0
    submitted: datetime | None = None
    patch_sets: list[PatchSet] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)


@dataclass
class UserStats:
    """Counters for one user, either over all projects or a single one."""

    user: str
    display_name: str
    project: str = ALL_PROJECTS
    changes: float = 0
    approvals: float = 0
    comments_made: float = 0
    comments_received: float = 0
    commit_words: float = 0
    patch_sets: float = 0

    def per_change(self, attr: str) -> float:
        """Average of counter *attr* per owned change; 0.0 when there are none."""
        if not self.changes:
            return 0.0
        return getattr(self, attr) / self.changes
