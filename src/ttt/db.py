"""SQLite-backed task store."""

from __future__ import annotations

import contextlib
import logging
import re
import sqlite3
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from ttt.models import (
    GroupCount,
    Task,
    TaskAlias,
    TaskSession,
    format_timestamp,
)
from ttt.paths import DEFAULT_DB_PATH
from ttt.store import (
    AliasAlreadyBoundError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
    TimestampFormatError,
    validate_alias_group_by,
    validate_alias_type,
    validate_session_status,
)

log = logging.getLogger(__name__)

# Bump when adding migrations. 0 = legacy (pre-versioning).
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_aliases (
    alias_value TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
    alias_type TEXT NOT NULL,
    repo TEXT,
    branch TEXT,
    pr_number INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    task_id TEXT PRIMARY KEY REFERENCES tasks(task_id) ON DELETE CASCADE,
    workspace TEXT NOT NULL,
    pane_id INTEGER NOT NULL DEFAULT 0,
    cwd TEXT NOT NULL DEFAULT '',
    command TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    external_session_label TEXT,
    last_seen_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?Z$")

_TASK_COLUMNS = "task_id, created_at, updated_at"
_ALIAS_COLUMNS = (
    "alias_value, task_id, alias_type, repo, branch, pr_number, created_at, updated_at"
)
_SESSION_COLUMNS = (
    "task_id, workspace, pane_id, cwd, command, status, external_session_label, "
    "last_seen_at, created_at, updated_at"
)


def parse_timestamp(raw: object, field: str) -> datetime:
    if not isinstance(raw, str):
        raise TimestampFormatError(field, raw)
    match = _TIMESTAMP_RE.match(raw)
    if not match:
        raise TimestampFormatError(field, raw)
    try:
        base = datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        raise TimestampFormatError(field, raw) from None
    fraction = (match.group(2) or "").ljust(9, "0")
    return base.replace(microsecond=int(fraction[:6]), tzinfo=UTC)


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Rename sessions.codex_session_id to external_session_label.

    Files created before versioning have the old column; CREATE TABLE IF NOT
    EXISTS leaves their table as-is.
    """
    cols = _table_columns(conn, "sessions")
    if "codex_session_id" in cols and "external_session_label" not in cols:
        conn.execute(
            "ALTER TABLE sessions RENAME COLUMN codex_session_id TO external_session_label"
        )
    else:
        _add_column_if_missing(conn, "sessions", "external_session_label", "TEXT", cols)


_MIGRATIONS = [_migrate_to_v1]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    for version, step in enumerate(_MIGRATIONS, start=1):
        if from_version < version:
            log.debug("Migrating task store schema to v%d", version)
            step(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_task_aliases_task ON task_aliases(task_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_task_aliases_updated "
        "ON task_aliases(updated_at DESC, alias_value)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC, task_id)"
    )


@contextlib.contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a check-then-write span under ``BEGIN IMMEDIATE``.

    The write lock is taken before the first read, so a concurrent process
    cannot interleave between the check and the write. Any exception
    (including KeyboardInterrupt) rolls the whole span back.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _none_if_empty(value: str) -> str | None:
    return value or None


def _none_if_zero(value: int) -> int | None:
    return value or None


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        task_id=row["task_id"],
        created_at=parse_timestamp(row["created_at"], "tasks.created_at"),
        updated_at=parse_timestamp(row["updated_at"], "tasks.updated_at"),
    )


def _row_to_alias(row: sqlite3.Row) -> TaskAlias:
    return TaskAlias(
        value=row["alias_value"],
        task_id=row["task_id"],
        alias_type=row["alias_type"],
        repo=row["repo"] or "",
        branch=row["branch"] or "",
        pr_number=row["pr_number"] or 0,
        created_at=parse_timestamp(row["created_at"], "task_aliases.created_at"),
        updated_at=parse_timestamp(row["updated_at"], "task_aliases.updated_at"),
    )


def _row_to_session(row: sqlite3.Row) -> TaskSession:
    last_seen = row["last_seen_at"]
    return TaskSession(
        task_id=row["task_id"],
        workspace=row["workspace"],
        pane_id=row["pane_id"] or 0,
        cwd=row["cwd"] or "",
        command=row["command"] or "",
        status=row["status"],
        external_session_label=row["external_session_label"] or "",
        last_seen_at=parse_timestamp(last_seen, "sessions.last_seen_at") if last_seen else None,
        created_at=parse_timestamp(row["created_at"], "sessions.created_at"),
        updated_at=parse_timestamp(row["updated_at"], "sessions.updated_at"),
    )


class SQLiteStore:
    """Durable store over one SQLite file.

    Cross-process safety comes from SQLite's own locking: every
    check-then-write runs inside :func:`write_transaction`.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._conn = get_connection(db_path)
        _create_indexes(self._conn)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- tasks --

    def _insert_task(self, task: Task) -> None:
        try:
            self._conn.execute(
                "INSERT INTO tasks (task_id, created_at, updated_at) VALUES (?, ?, ?)",
                (
                    task.task_id,
                    format_timestamp(task.created_at),
                    format_timestamp(task.updated_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise TaskAlreadyExistsError(task.task_id) from exc

    def create_task(self, task: Task) -> None:
        with write_transaction(self._conn):
            self._insert_task(task)
        log.debug("Created task %s", task.task_id)

    def create_task_with_alias(self, task: Task, alias: TaskAlias) -> None:
        """Insert a task and its first alias in one transaction."""
        validate_alias_type(alias.alias_type)
        with write_transaction(self._conn):
            self._insert_task(task)
            self._bind_alias(alias)
        log.debug("Created task %s with alias %s", task.task_id, alias.value)

    def get_task(self, task_id: str) -> tuple[Task | None, bool]:
        row = self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None, False
        return _row_to_task(row), True

    def get_task_by_alias(self, alias_value: str) -> tuple[Task | None, bool]:
        row = self._conn.execute(
            "SELECT a.task_id AS alias_task_id, t.task_id, t.created_at, t.updated_at "
            "FROM task_aliases a LEFT JOIN tasks t ON t.task_id = a.task_id "
            "WHERE a.alias_value = ?",
            (alias_value,),
        ).fetchone()
        if row is None:
            return None, False
        if row["task_id"] is None:
            raise TaskNotFoundError(row["alias_task_id"])
        return _row_to_task(row), True

    def list_tasks(self) -> list[Task]:
        rows = self._conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM tasks ORDER BY updated_at DESC, task_id ASC"
        ).fetchall()
        return [_row_to_task(row) for row in rows]

    # -- aliases --

    def get_alias(self, alias_value: str) -> tuple[TaskAlias | None, bool]:
        row = self._conn.execute(
            f"SELECT {_ALIAS_COLUMNS} FROM task_aliases WHERE alias_value = ?", (alias_value,)
        ).fetchone()
        if row is None:
            return None, False
        return _row_to_alias(row), True

    def _bind_alias(self, alias: TaskAlias) -> None:
        existing = self._conn.execute(
            "SELECT task_id FROM task_aliases WHERE alias_value = ?", (alias.value,)
        ).fetchone()
        if existing is not None and existing["task_id"] != alias.task_id:
            raise AliasAlreadyBoundError(alias.value, existing["task_id"], alias.task_id)

        found = self._conn.execute(
            "SELECT 1 FROM tasks WHERE task_id = ?", (alias.task_id,)
        ).fetchone()
        if found is None:
            raise TaskNotFoundError(alias.task_id)

        self._conn.execute(
            f"INSERT INTO task_aliases ({_ALIAS_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(alias_value) DO UPDATE SET "
            "alias_type = excluded.alias_type, "
            "repo = excluded.repo, "
            "branch = excluded.branch, "
            "pr_number = excluded.pr_number, "
            "updated_at = excluded.updated_at",
            (
                alias.value,
                alias.task_id,
                alias.alias_type,
                _none_if_empty(alias.repo),
                _none_if_empty(alias.branch),
                _none_if_zero(alias.pr_number),
                format_timestamp(alias.created_at),
                format_timestamp(alias.updated_at),
            ),
        )

    def upsert_alias(self, alias: TaskAlias) -> None:
        validate_alias_type(alias.alias_type)
        with write_transaction(self._conn):
            self._bind_alias(alias)
        log.debug("Bound alias %s -> %s", alias.value, alias.task_id)

    def list_task_alias_rows(self) -> list[TaskAlias]:
        rows = self._conn.execute(
            f"SELECT {_ALIAS_COLUMNS} FROM task_aliases "
            "ORDER BY updated_at DESC, alias_value ASC"
        ).fetchall()
        return [_row_to_alias(row) for row in rows]

    def list_task_alias_group_counts(self, group_by: str) -> list[GroupCount]:
        column = validate_alias_group_by(group_by)
        rows = self._conn.execute(
            f"SELECT COALESCE({column}, '') AS key, COUNT(1) AS count FROM task_aliases "
            "GROUP BY 1 ORDER BY COUNT(1) DESC, 1 ASC"
        ).fetchall()
        return [GroupCount(key=row["key"], count=row["count"]) for row in rows]

    # -- sessions --

    def upsert_session(self, session: TaskSession) -> None:
        validate_session_status(session.status)
        with write_transaction(self._conn):
            found = self._conn.execute(
                "SELECT 1 FROM tasks WHERE task_id = ?", (session.task_id,)
            ).fetchone()
            if found is None:
                raise TaskNotFoundError(session.task_id)
            self._conn.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(task_id) DO UPDATE SET "
                "workspace = excluded.workspace, "
                "pane_id = excluded.pane_id, "
                "cwd = excluded.cwd, "
                "command = excluded.command, "
                "status = excluded.status, "
                "external_session_label = excluded.external_session_label, "
                "last_seen_at = excluded.last_seen_at, "
                "updated_at = excluded.updated_at",
                (
                    session.task_id,
                    session.workspace,
                    session.pane_id,
                    session.cwd,
                    session.command,
                    session.status,
                    _none_if_empty(session.external_session_label),
                    format_timestamp(session.last_seen_at),
                    format_timestamp(session.created_at),
                    format_timestamp(session.updated_at),
                ),
            )
        log.debug(
            "Stored session for %s status=%s pane_id=%d",
            session.task_id,
            session.status,
            session.pane_id,
        )

    def get_session_by_task_id(self, task_id: str) -> tuple[TaskSession | None, bool]:
        row = self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None, False
        return _row_to_session(row), True

    def list_sessions(self) -> list[TaskSession]:
        rows = self._conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC, task_id ASC"
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    def list_session_status_counts(self) -> list[GroupCount]:
        rows = self._conn.execute(
            "SELECT COALESCE(status, '') AS key, COUNT(1) AS count FROM sessions "
            "GROUP BY 1 ORDER BY COUNT(1) DESC, 1 ASC"
        ).fetchall()
        return [GroupCount(key=row["key"], count=row["count"]) for row in rows]
