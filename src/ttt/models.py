"""Value types for tasks, aliases, and terminal sessions.

All records are frozen; transitions build new values with
:func:`dataclasses.replace` instead of mutating shared state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

ALIAS_TYPE_PREPR = "prepr"
ALIAS_TYPE_PR = "pr"
VALID_ALIAS_TYPES = {ALIAS_TYPE_PREPR, ALIAS_TYPE_PR}

SESSION_STATUS_OPEN = "open"
SESSION_STATUS_CLOSED = "closed"
SESSION_STATUS_UNKNOWN = "unknown"
VALID_SESSION_STATUSES = {SESSION_STATUS_OPEN, SESSION_STATUS_CLOSED, SESSION_STATUS_UNKNOWN}


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(ts: datetime | None) -> str | None:
    """Fixed-width UTC timestamp with nanosecond-width fraction, e.g.
    ``2026-01-02T03:04:05.123456000Z``. Lexical order equals time order.
    """
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    ts = ts.astimezone(UTC)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f") + "000Z"


def normalize_repo(repo: str) -> str:
    return repo.strip().lower()


def normalize_branch(branch: str) -> str:
    return branch.strip()


def prepr_alias_value(repo: str, branch: str) -> str:
    return f"prepr:{normalize_repo(repo)}:{normalize_branch(branch)}"


def pr_alias_value(repo: str, pr_number: int) -> str:
    return f"pr:{normalize_repo(repo)}#{pr_number}"


@dataclass(frozen=True)
class Task:
    task_id: str
    created_at: datetime
    updated_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class TaskAlias:
    """A resolvable name bound to exactly one task.

    ``branch`` is empty for PR aliases and ``pr_number`` is 0 for pre-PR
    aliases; both persist as NULL.
    """

    value: str
    task_id: str
    alias_type: str
    repo: str
    created_at: datetime
    updated_at: datetime
    branch: str = ""
    pr_number: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "alias_type": self.alias_type,
            "alias_value": self.value,
            "repo": self.repo,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class TaskSession:
    """Binding between a task and a terminal pane. ``pane_id`` 0 means unbound."""

    task_id: str
    workspace: str
    pane_id: int
    cwd: str
    command: str
    status: str
    created_at: datetime
    updated_at: datetime
    external_session_label: str = ""
    last_seen_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "workspace": self.workspace,
            "pane_id": self.pane_id,
            "cwd": self.cwd,
            "command": self.command,
            "status": self.status,
            "external_session_label": self.external_session_label,
            "last_seen_at": format_timestamp(self.last_seen_at),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class GroupCount:
    key: str
    count: int

    def as_dict(self) -> dict[str, Any]:
        return {"key": self.key, "count": self.count}
