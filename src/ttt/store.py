"""Task store interface, error taxonomy, and the in-memory implementation.

Lookups that find nothing return ``(None, False)``. Errors are reserved
for conflicts, integrity violations, and I/O failures.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol, runtime_checkable

from ttt.models import (
    VALID_ALIAS_TYPES,
    VALID_SESSION_STATUSES,
    GroupCount,
    Task,
    TaskAlias,
    TaskSession,
)

ALIAS_GROUP_BY_FIELDS = ("repo", "alias_type")


class TaskStoreError(Exception):
    """Base class for task store failures."""


class AliasAlreadyBoundError(TaskStoreError):
    def __init__(self, alias_value: str, existing_task_id: str, task_id: str):
        self.alias_value = alias_value
        self.existing_task_id = existing_task_id
        self.task_id = task_id
        super().__init__(
            f"alias already bound to a different task: {alias_value} -> {existing_task_id} "
            f"(refused rebind to {task_id})"
        )


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task not found: {task_id}")


class TaskAlreadyExistsError(TaskStoreError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task already exists: {task_id}")


class TimestampFormatError(TaskStoreError):
    def __init__(self, field: str, raw: object):
        self.field = field
        self.raw = raw
        super().__init__(f"malformed timestamp in {field}: {raw!r}")


def validate_alias_group_by(group_by: str) -> str:
    if group_by not in ALIAS_GROUP_BY_FIELDS:
        raise ValueError(
            f"unsupported group-by {group_by!r} (supported: {', '.join(ALIAS_GROUP_BY_FIELDS)})"
        )
    return group_by


def validate_alias_type(alias_type: str) -> str:
    if alias_type not in VALID_ALIAS_TYPES:
        raise ValueError(
            f"Invalid alias type '{alias_type}'. Must be one of: {sorted(VALID_ALIAS_TYPES)}"
        )
    return alias_type


def validate_session_status(status: str) -> str:
    if status not in VALID_SESSION_STATUSES:
        raise ValueError(
            f"Invalid status '{status}'. Must be one of: {sorted(VALID_SESSION_STATUSES)}"
        )
    return status


@runtime_checkable
class Store(Protocol):
    """Structural interface shared by :class:`MemoryStore` and
    :class:`~ttt.db.SQLiteStore`.
    """

    def create_task(self, task: Task) -> None: ...

    def create_task_with_alias(self, task: Task, alias: TaskAlias) -> None: ...

    def get_task(self, task_id: str) -> tuple[Task | None, bool]: ...

    def get_task_by_alias(self, alias_value: str) -> tuple[Task | None, bool]: ...

    def get_alias(self, alias_value: str) -> tuple[TaskAlias | None, bool]: ...

    def upsert_alias(self, alias: TaskAlias) -> None: ...

    def upsert_session(self, session: TaskSession) -> None: ...

    def get_session_by_task_id(self, task_id: str) -> tuple[TaskSession | None, bool]: ...

    def list_tasks(self) -> list[Task]: ...

    def list_task_alias_rows(self) -> list[TaskAlias]: ...

    def list_sessions(self) -> list[TaskSession]: ...

    def list_task_alias_group_counts(self, group_by: str) -> list[GroupCount]: ...

    def list_session_status_counts(self) -> list[GroupCount]: ...

    def close(self) -> None: ...


def _newest_first(items, key):
    """Sort by ``updated_at`` descending, ties broken by ``key`` ascending."""
    return sorted(sorted(items, key=key), key=lambda item: item.updated_at, reverse=True)


def _group_counts(keys: list[str]) -> list[GroupCount]:
    counts: dict[str, int] = {}
    for key in keys:
        counts[key] = counts.get(key, 0) + 1
    return [
        GroupCount(key=key, count=count)
        for key, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


class MemoryStore:
    """Process-local store. Every operation holds one lock, so each
    check-then-write span is atomic with respect to other threads.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._aliases: dict[str, TaskAlias] = {}
        self._sessions: dict[str, TaskSession] = {}

    def close(self) -> None:
        pass

    def create_task(self, task: Task) -> None:
        with self._lock:
            if task.task_id in self._tasks:
                raise TaskAlreadyExistsError(task.task_id)
            self._tasks[task.task_id] = task

    def create_task_with_alias(self, task: Task, alias: TaskAlias) -> None:
        validate_alias_type(alias.alias_type)
        with self._lock:
            if task.task_id in self._tasks:
                raise TaskAlreadyExistsError(task.task_id)
            existing = self._aliases.get(alias.value)
            if existing is not None and existing.task_id != alias.task_id:
                raise AliasAlreadyBoundError(alias.value, existing.task_id, alias.task_id)
            if alias.task_id != task.task_id:
                raise TaskNotFoundError(alias.task_id)
            self._tasks[task.task_id] = task
            self._aliases[alias.value] = alias

    def get_task(self, task_id: str) -> tuple[Task | None, bool]:
        with self._lock:
            task = self._tasks.get(task_id)
        return task, task is not None

    def get_task_by_alias(self, alias_value: str) -> tuple[Task | None, bool]:
        with self._lock:
            alias = self._aliases.get(alias_value)
            if alias is None:
                return None, False
            task = self._tasks.get(alias.task_id)
            if task is None:
                raise TaskNotFoundError(alias.task_id)
            return task, True

    def get_alias(self, alias_value: str) -> tuple[TaskAlias | None, bool]:
        with self._lock:
            alias = self._aliases.get(alias_value)
        return alias, alias is not None

    def upsert_alias(self, alias: TaskAlias) -> None:
        validate_alias_type(alias.alias_type)
        with self._lock:
            existing = self._aliases.get(alias.value)
            if existing is not None and existing.task_id != alias.task_id:
                raise AliasAlreadyBoundError(alias.value, existing.task_id, alias.task_id)
            if alias.task_id not in self._tasks:
                raise TaskNotFoundError(alias.task_id)
            if existing is not None:
                # created_at sticks to the first binding
                alias = replace(alias, created_at=existing.created_at)
            self._aliases[alias.value] = alias

    def upsert_session(self, session: TaskSession) -> None:
        validate_session_status(session.status)
        with self._lock:
            if session.task_id not in self._tasks:
                raise TaskNotFoundError(session.task_id)
            existing = self._sessions.get(session.task_id)
            if existing is not None:
                session = replace(session, created_at=existing.created_at)
            self._sessions[session.task_id] = session

    def get_session_by_task_id(self, task_id: str) -> tuple[TaskSession | None, bool]:
        with self._lock:
            session = self._sessions.get(task_id)
        return session, session is not None

    def list_tasks(self) -> list[Task]:
        with self._lock:
            tasks = list(self._tasks.values())
        return _newest_first(tasks, key=lambda t: t.task_id)

    def list_task_alias_rows(self) -> list[TaskAlias]:
        with self._lock:
            aliases = list(self._aliases.values())
        return _newest_first(aliases, key=lambda a: a.value)

    def list_sessions(self) -> list[TaskSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        return _newest_first(sessions, key=lambda s: s.task_id)

    def list_task_alias_group_counts(self, group_by: str) -> list[GroupCount]:
        validate_alias_group_by(group_by)
        with self._lock:
            keys = [getattr(alias, group_by) or "" for alias in self._aliases.values()]
        return _group_counts(keys)

    def list_session_status_counts(self) -> list[GroupCount]:
        with self._lock:
            keys = [session.status for session in self._sessions.values()]
        return _group_counts(keys)
