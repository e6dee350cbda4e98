"""Read-only projections shared by the list, sessions, and dashboard commands."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from ttt.models import SESSION_STATUS_OPEN, GroupCount, Task, TaskAlias, TaskSession
from ttt.store import Store


def filter_open_sessions(sessions: Sequence[TaskSession]) -> list[TaskSession]:
    return [session for session in sessions if session.status == SESSION_STATUS_OPEN]


def group_counts_as_dicts(groups: Sequence[GroupCount]) -> list[dict[str, Any]]:
    return [group.as_dict() for group in groups]


def merge_task_rows(
    tasks: Sequence[Task],
    aliases: Sequence[TaskAlias],
    sessions: Sequence[TaskSession],
) -> list[dict[str, Any]]:
    """One entry per task with its aliases and (optional) session attached.

    Task order and per-task alias order follow the input lists.
    """
    aliases_by_task: dict[str, list[dict[str, Any]]] = {}
    for alias in aliases:
        aliases_by_task.setdefault(alias.task_id, []).append(alias.as_dict())
    sessions_by_task = {session.task_id: session for session in sessions}

    merged: list[dict[str, Any]] = []
    for task in tasks:
        entry: dict[str, Any] = {
            "task": task.as_dict(),
            "aliases": aliases_by_task.get(task.task_id, []),
        }
        session = sessions_by_task.get(task.task_id)
        if session is not None:
            entry["session"] = session.as_dict()
        merged.append(entry)
    return merged


def build_dashboard(store: Store) -> dict[str, Any]:
    aliases = store.list_task_alias_rows()
    sessions = store.list_sessions()
    tasks = store.list_tasks()
    return {
        "groups": {
            "by_repo": group_counts_as_dicts(store.list_task_alias_group_counts("repo")),
            "by_alias_type": group_counts_as_dicts(
                store.list_task_alias_group_counts("alias_type")
            ),
            "by_session_status": group_counts_as_dicts(store.list_session_status_counts()),
        },
        "sessions": [session.as_dict() for session in sessions],
        "open_sessions": [session.as_dict() for session in filter_open_sessions(sessions)],
        "aliases": [alias.as_dict() for alias in aliases],
        "tasks": merge_task_rows(tasks, aliases, sessions),
    }
