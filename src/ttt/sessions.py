"""Session reconciliation against live terminal panes.

A session is ``open`` when its pane id is present in the latest pane
listing, ``closed`` once a close was served or its pane vanished, and
``unknown`` when it holds no pane and was never closed.

Liveness comes from one ``list_panes`` call per operation. Store writes
happen only after the pane client answered successfully.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from ttt.models import (
    SESSION_STATUS_CLOSED,
    SESSION_STATUS_OPEN,
    SESSION_STATUS_UNKNOWN,
    TaskSession,
    utcnow,
)
from ttt.store import Store
from ttt.wezterm import Pane, PaneClient, PaneCommandError

log = logging.getLogger(__name__)

ACTION_ACTIVATED = "activated"
ACTION_SPAWNED = "spawned"
ACTION_CLOSED = "closed"
ACTION_MISSING = "missing"

DEFAULT_SESSION_COMMAND = "codex"

_WORKSPACE_SEPARATORS = str.maketrans({"/": "-", ":": "-", "#": "-"})


@dataclass(frozen=True)
class OpenSessionResult:
    session: TaskSession
    action: str


@dataclass(frozen=True)
class CloseSessionResult:
    session: TaskSession | None
    action: str


@dataclass(frozen=True)
class SessionTransition:
    task_id: str
    old_status: str
    new_status: str

    def as_dict(self) -> dict[str, str]:
        return {
            "task_id": self.task_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
        }


def workspace_for_task_id(task_id: str) -> str:
    """Derive the default workspace name, e.g. ``task_1_2`` -> ``task-task_1_2``."""
    return "task-" + task_id.translate(_WORKSPACE_SEPARATORS)


def live_pane_ids(panes: list[Pane]) -> set[int]:
    return {pane.pane_id for pane in panes}


def next_session_status(session: TaskSession, live: set[int]) -> str:
    if session.pane_id <= 0:
        if session.status == SESSION_STATUS_CLOSED:
            return SESSION_STATUS_CLOSED
        return SESSION_STATUS_UNKNOWN
    if session.pane_id in live:
        return SESSION_STATUS_OPEN
    return SESSION_STATUS_CLOSED


def open_session(
    store: Store,
    client: PaneClient,
    task_id: str,
    *,
    cwd: str = ".",
    workspace: str | None = None,
    command: str = DEFAULT_SESSION_COMMAND,
    now: datetime | None = None,
) -> OpenSessionResult:
    """Resume the task's live pane, or spawn a new one.

    A recorded pane that is still listed gets activated. A recorded pane that
    vanished is first persisted as closed, then replaced by a spawn into the
    same workspace.
    """
    now = now or utcnow()
    existing, found = store.get_session_by_task_id(task_id)

    if found and existing is not None and existing.pane_id > 0:
        live = live_pane_ids(client.list_panes())
        if existing.pane_id not in live:
            log.debug("Pane %d for %s is gone; marking closed", existing.pane_id, task_id)
            existing = replace(
                existing, status=SESSION_STATUS_CLOSED, pane_id=0, updated_at=now
            )
            store.upsert_session(existing)
        else:
            try:
                client.activate_pane(existing.pane_id)
            except PaneCommandError as exc:
                log.warning(
                    "Activating pane %d failed, spawning instead: %s", existing.pane_id, exc
                )
            else:
                session = replace(
                    existing, status=SESSION_STATUS_OPEN, last_seen_at=now, updated_at=now
                )
                store.upsert_session(session)
                return OpenSessionResult(session=session, action=ACTION_ACTIVATED)

    target_workspace = (workspace or "").strip()
    if not target_workspace:
        if found and existing is not None and existing.workspace.strip():
            target_workspace = existing.workspace
        else:
            target_workspace = workspace_for_task_id(task_id)

    pane_id = client.spawn(target_workspace, cwd)

    session = TaskSession(
        task_id=task_id,
        workspace=target_workspace,
        pane_id=pane_id,
        cwd=cwd,
        command=command,
        status=SESSION_STATUS_OPEN,
        external_session_label=existing.external_session_label if existing else "",
        last_seen_at=now,
        created_at=existing.created_at if existing else now,
        updated_at=now,
    )
    store.upsert_session(session)
    return OpenSessionResult(session=session, action=ACTION_SPAWNED)


def close_session(
    store: Store,
    client: PaneClient,
    task_id: str,
    *,
    now: datetime | None = None,
) -> CloseSessionResult:
    """Kill the task's pane (best effort) and record the session as closed.

    Workspace, cwd and command stay on the record so a later open reuses them.
    """
    session, found = store.get_session_by_task_id(task_id)
    if not found or session is None:
        return CloseSessionResult(session=None, action=ACTION_MISSING)

    if session.pane_id > 0:
        try:
            client.kill_pane(session.pane_id)
        except PaneCommandError as exc:
            log.warning("Killing pane %d for %s failed: %s", session.pane_id, task_id, exc)

    closed = replace(
        session, status=SESSION_STATUS_CLOSED, pane_id=0, updated_at=now or utcnow()
    )
    store.upsert_session(closed)
    return CloseSessionResult(session=closed, action=ACTION_CLOSED)


def reconcile_sessions(
    store: Store,
    client: PaneClient,
    *,
    now: datetime | None = None,
) -> list[SessionTransition]:
    """Bring every stored session status in line with one pane listing.

    Only sessions whose status changes are written back.
    """
    live = live_pane_ids(client.list_panes())
    now = now or utcnow()

    transitions: list[SessionTransition] = []
    for session in store.list_sessions():
        new_status = next_session_status(session, live)
        if new_status == session.status:
            continue
        updated = replace(session, status=new_status, updated_at=now)
        if new_status == SESSION_STATUS_OPEN:
            updated = replace(updated, last_seen_at=now)
        store.upsert_session(updated)
        transitions.append(
            SessionTransition(
                task_id=session.task_id, old_status=session.status, new_status=new_status
            )
        )
        log.debug("Session %s: %s -> %s", session.task_id, session.status, new_status)
    return transitions
