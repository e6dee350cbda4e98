"""Shared test fixtures: stores, a fixed clock, and a scripted pane client."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ttt.db import SQLiteStore
from ttt.store import MemoryStore
from ttt.wezterm import Pane, PaneCommandError

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class StepClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = now + self.step
        return now


class FakePaneClient:
    """In-memory stand-in for WezTermClient that records every call."""

    def __init__(self, live: list[int] | None = None, next_pane_id: int = 100):
        self.live: dict[int, str] = {pane_id: "" for pane_id in (live or [])}
        self.next_pane_id = next_pane_id
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise PaneCommandError(["wezterm", "cli", op], "simulated failure", 1)

    def spawn(self, workspace: str, cwd: str) -> int:
        self.calls.append(("spawn", workspace, cwd))
        self._maybe_fail("spawn")
        pane_id = self.next_pane_id
        self.next_pane_id += 1
        self.live[pane_id] = workspace
        return pane_id

    def activate_pane(self, pane_id: int) -> None:
        self.calls.append(("activate", pane_id))
        self._maybe_fail("activate-pane")

    def kill_pane(self, pane_id: int) -> None:
        self.calls.append(("kill", pane_id))
        self._maybe_fail("kill-pane")
        self.live.pop(pane_id, None)

    def list_panes(self) -> list[Pane]:
        self.calls.append(("list",))
        self._maybe_fail("list")
        return [Pane(pane_id=pane_id, workspace=ws) for pane_id, ws in sorted(self.live.items())]

    def ops(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture()
def clock() -> StepClock:
    return StepClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture()
def sqlite_store(db_path: Path):
    store = SQLiteStore(db_path)
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    """Both store implementations, so shared behavior is checked against each."""
    if request.param == "memory":
        yield MemoryStore()
        return
    sqlite = SQLiteStore(tmp_path / "param.db")
    try:
        yield sqlite
    finally:
        sqlite.close()


@pytest.fixture()
def pane_client() -> FakePaneClient:
    return FakePaneClient()
