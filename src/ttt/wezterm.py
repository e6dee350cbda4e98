"""Pane client: the narrow capability the session reconciler depends on.

:class:`WezTermClient` shells out to ``wezterm cli``. Failures raise
:class:`PaneCommandError` carrying the argv, so callers can report exactly
which command broke.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ttt.paths import PANE_COMMAND_TIMEOUT, WEZTERM_EXECUTABLE

log = logging.getLogger(__name__)

# (argv, timeout) -> stdout
CommandRunner = Callable[[list[str], "float | None"], str]


class PaneCommandError(RuntimeError):
    def __init__(self, command: list[str], detail: str, returncode: int | None = None):
        self.command = list(command)
        self.detail = detail
        self.returncode = returncode
        super().__init__(f"{' '.join(self.command)} failed: {detail}")


@dataclass(frozen=True)
class Pane:
    pane_id: int
    workspace: str = ""


@runtime_checkable
class PaneClient(Protocol):
    def spawn(self, workspace: str, cwd: str) -> int: ...

    def activate_pane(self, pane_id: int) -> None: ...

    def kill_pane(self, pane_id: int) -> None: ...

    def list_panes(self) -> list[Pane]: ...


def run_command(argv: list[str], timeout: float | None) -> str:
    """Run argv and return stdout. Raises PaneCommandError on any failure."""
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise PaneCommandError(argv, f"{argv[0]} not found on PATH") from None
    except OSError as exc:
        raise PaneCommandError(argv, str(exc)) from None
    except subprocess.TimeoutExpired:
        raise PaneCommandError(argv, f"timed out after {timeout}s") from None
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip() or "no output"
        raise PaneCommandError(argv, detail, result.returncode)
    return result.stdout


class WezTermClient:
    def __init__(
        self,
        executable: str = WEZTERM_EXECUTABLE,
        *,
        runner: CommandRunner = run_command,
        timeout: float | None = PANE_COMMAND_TIMEOUT,
    ) -> None:
        self.executable = executable
        self._runner = runner
        self._timeout = timeout

    def _run(self, *args: str) -> tuple[list[str], str]:
        argv = [self.executable, "cli", *args]
        return argv, self._runner(argv, self._timeout)

    def spawn(self, workspace: str, cwd: str) -> int:
        args = ["spawn", "--new-window", "--workspace", workspace]
        if cwd.strip():
            args += ["--cwd", cwd]
        argv, output = self._run(*args)
        raw = output.strip()
        try:
            pane_id = int(raw)
        except ValueError:
            raise PaneCommandError(argv, f"unparseable pane id {raw!r}") from None
        log.debug("Spawned pane %d in workspace %s", pane_id, workspace)
        return pane_id

    def activate_pane(self, pane_id: int) -> None:
        self._run("activate-pane", "--pane-id", str(pane_id))

    def kill_pane(self, pane_id: int) -> None:
        self._run("kill-pane", "--pane-id", str(pane_id))
        log.debug("Killed pane %d", pane_id)

    def list_panes(self) -> list[Pane]:
        argv, output = self._run("list", "--format", "json")
        try:
            return parse_list_panes_json(output)
        except ValueError as exc:
            raise PaneCommandError(argv, f"malformed list output: {exc}") from exc


def parse_list_panes_json(raw: str) -> list[Pane]:
    """Collect panes from an arbitrarily nested ``wezterm cli list`` document.

    Any object with a ``pane_id`` is a pane. ``workspace`` is inherited from
    the nearest ancestor that sets a non-blank one. Duplicate pane ids keep
    the first entry that carries a workspace. Raises ValueError on bad JSON.
    """
    document = json.loads(raw)
    seen: dict[int, Pane] = {}
    for pane in _walk_panes(document, ""):
        existing = seen.get(pane.pane_id)
        if existing is None or (not existing.workspace and pane.workspace):
            seen[pane.pane_id] = pane
    return [seen[pane_id] for pane_id in sorted(seen)]


def _walk_panes(node: object, inherited_workspace: str):
    if isinstance(node, dict):
        workspace = inherited_workspace
        value = node.get("workspace")
        if isinstance(value, str) and value.strip():
            workspace = value
        pane_id = _extract_pane_id(node)
        if pane_id is not None:
            yield Pane(pane_id=pane_id, workspace=workspace)
        for child in node.values():
            yield from _walk_panes(child, workspace)
    elif isinstance(node, list):
        for child in node:
            yield from _walk_panes(child, inherited_workspace)


def _extract_pane_id(node: dict) -> int | None:
    value = node.get("pane_id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
