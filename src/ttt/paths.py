"""Canonical filesystem paths and environment settings for ttt."""

from __future__ import annotations

import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring %s=%r (not a number); using %s", name, raw, default)
        return default


_env_home = os.environ.get("TTT_HOME")
TTT_HOME = Path(_env_home).expanduser() if _env_home else Path.home() / ".config" / "ttt"

_env_db = os.environ.get("TTT_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else TTT_HOME / "state.db"

_env_notes = os.environ.get("TTT_NOTES_DIR")
DEFAULT_NOTES_DIR = Path(_env_notes).expanduser() if _env_notes else TTT_HOME / "notes"

WEZTERM_EXECUTABLE = os.environ.get("TTT_WEZTERM", "wezterm")

# Seconds each wezterm subprocess may run before it counts as failed.
PANE_COMMAND_TIMEOUT = _float_env("TTT_PANE_TIMEOUT", 30.0)

LOG_LEVEL = os.environ.get("TTT_LOG_LEVEL", "WARNING").upper()
