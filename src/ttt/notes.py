"""Per-task markdown notes."""

from __future__ import annotations

import shlex
from pathlib import Path

NOTE_TEMPLATE = """\
# Task State

## Current Objective

## Status

## Next Actions

## Blockers

## Session Context
"""


def note_path(notes_dir: Path | str, task_id: str) -> Path:
    return Path(notes_dir) / f"{task_id}.md"


def ensure_task_note(notes_dir: Path | str, task_id: str) -> tuple[Path, bool]:
    """Create the note from the template if missing. Returns ``(path, created)``."""
    if not task_id:
        raise ValueError("task_id is required")

    Path(notes_dir).mkdir(parents=True, exist_ok=True, mode=0o750)
    path = note_path(notes_dir, task_id)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(NOTE_TEMPLATE)
    except FileExistsError:
        return path, False
    path.chmod(0o600)
    return path, True


def resolve_editor_command(editor_env: str | None, path: Path | str) -> tuple[str, list[str]]:
    """Split ``$EDITOR`` into ``(program, args)`` with the note path appended.

    Falls back to ``open -e`` when no editor is configured.
    """
    command = shlex.split(editor_env or "")
    if not command:
        return "open", ["-e", str(path)]
    return command[0], [*command[1:], str(path)]
