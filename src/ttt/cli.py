from __future__ import annotations

import json
import logging
import os
import sqlite3
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from ttt import __version__
from ttt.db import SQLiteStore
from ttt.models import Task, pr_alias_value, prepr_alias_value
from ttt.notes import ensure_task_note, resolve_editor_command
from ttt.paths import DEFAULT_DB_PATH, DEFAULT_NOTES_DIR, LOG_LEVEL
from ttt.queries import build_dashboard, group_counts_as_dicts
from ttt.service import TaskService
from ttt.sessions import (
    DEFAULT_SESSION_COMMAND,
    close_session,
    open_session,
    reconcile_sessions,
)
from ttt.store import ALIAS_GROUP_BY_FIELDS, TaskStoreError
from ttt.wezterm import PaneClient, PaneCommandError, WezTermClient

log = logging.getLogger(__name__)


def new_pane_client() -> PaneClient:
    return WezTermClient()


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions and task store / pane failures are rendered as a JSON
    error object on stdout with exit status 1.
    """

    group_class = type

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            return self._fail(e.format_message(), getattr(e, "exit_code", 1), standalone_mode)
        except (TaskStoreError, PaneCommandError, sqlite3.Error) as e:
            return self._fail(str(e), 1, standalone_mode)
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise

    @staticmethod
    def _fail(message: str, code: int, standalone_mode: bool) -> int:
        click.echo(json.dumps({"ok": False, "error": message}))
        if standalone_mode:
            raise SystemExit(code) from None
        return code


def _configure_logging() -> None:
    level = logging.getLevelNamesMapping().get(LOG_LEVEL, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Track work items across branch and pull-request identities.

    \b
    Quick start:
      ttt task ensure-prepr --repo owner/repo --branch feature/x
      ttt task link-pr --repo owner/repo --branch feature/x --pr 42
      ttt task open-session --repo owner/repo --pr 42
      ttt task sessions --reconcile

    \b
    Key concepts:
      task      Durable identity for one unit of work
      alias     prepr:<repo>:<branch> or pr:<repo>#<number>, bound to one task
      session   A WezTerm pane bound to a task (open, closed, unknown)
    """
    _configure_logging()


@main.group()
def task():
    """Resolve task identities and manage their sessions and notes."""


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _db_option(fn: Callable) -> Callable:
    return click.option(
        "--db",
        "db_path",
        default=str(DEFAULT_DB_PATH),
        show_default=True,
        type=click.Path(dir_okay=False, path_type=Path),
        help="Path to the SQLite task database.",
    )(fn)


def _task_ref_options(fn: Callable) -> Callable:
    fn = click.option(
        "--pr", "pr_number", default=0, type=click.IntRange(min=0), help="Pull request number."
    )(fn)
    fn = click.option("--branch", "-b", default="", help="Branch name.")(fn)
    fn = click.option("--repo", "-r", required=True, help="Repository in owner/repo form.")(fn)
    return fn


def _require_task_ref(branch: str, pr_number: int) -> None:
    if not branch.strip() and pr_number <= 0:
        raise click.UsageError("One of --branch or --pr is required.")


def _require_branch(branch: str) -> None:
    if not branch.strip():
        raise click.UsageError("--branch must not be blank.")


def _resolve_task(service: TaskService, repo: str, branch: str, pr_number: int) -> Task:
    """Map --branch/--pr to a task: both links, branch ensures, PR looks up."""
    if branch.strip() and pr_number > 0:
        task, _status = service.link_pr_to_prepr(repo, branch, pr_number)
        return task
    if branch.strip():
        task, _created = service.get_or_create_prepr_task(repo, branch)
        return task
    found_task, found = service.get_task_by_pr(repo, pr_number)
    if not found or found_task is None:
        raise click.ClickException(
            f"No task found for {pr_alias_value(repo, pr_number)}.\n"
            "Run 'ttt task link-pr --repo REPO --branch BRANCH --pr NUMBER' first."
        )
    return found_task


@task.command("ensure-prepr")
@click.option("--repo", "-r", required=True, help="Repository in owner/repo form.")
@click.option("--branch", "-b", required=True, help="Pre-PR branch name.")
@_db_option
def task_ensure_prepr(repo: str, branch: str, db_path: Path):
    """Get or create the task for a branch that has no PR yet."""
    _require_branch(branch)
    with SQLiteStore(db_path) as store:
        found_task, created = TaskService(store).get_or_create_prepr_task(repo, branch)
    _emit(
        {
            "task_id": found_task.task_id,
            "status": "created" if created else "existing",
            "prepr_alias": prepr_alias_value(repo, branch),
        }
    )


@task.command("link-pr")
@click.option("--repo", "-r", required=True, help="Repository in owner/repo form.")
@click.option("--branch", "-b", required=True, help="Pre-PR branch name.")
@click.option("--pr", "pr_number", required=True, type=click.IntRange(min=1), help="PR number.")
@_db_option
def task_link_pr(repo: str, branch: str, pr_number: int, db_path: Path):
    """Attach a PR number to the branch's task (creating one if needed)."""
    _require_branch(branch)
    with SQLiteStore(db_path) as store:
        linked, status = TaskService(store).link_pr_to_prepr(repo, branch, pr_number)
    _emit(
        {
            "task_id": linked.task_id,
            "status": status,
            "pr_alias": pr_alias_value(repo, pr_number),
            "prepr_alias": prepr_alias_value(repo, branch),
        }
    )


@task.command("list")
@click.option(
    "--group-by",
    default=None,
    type=click.Choice(ALIAS_GROUP_BY_FIELDS),
    help="Count aliases per repo or alias type instead of listing them.",
)
@_db_option
def task_list(group_by: str | None, db_path: Path):
    """List task aliases, most recently updated first."""
    with SQLiteStore(db_path) as store:
        if group_by:
            _emit(group_counts_as_dicts(store.list_task_alias_group_counts(group_by)))
            return
        rows = store.list_task_alias_rows()
    _emit([row.as_dict() for row in rows])


@task.command("sessions")
@click.option(
    "--group-by",
    default=None,
    type=click.Choice(["status"]),
    help="Count sessions per status instead of listing them.",
)
@click.option(
    "--reconcile", is_flag=True, help="Check sessions against live WezTerm panes first."
)
@_db_option
def task_sessions(group_by: str | None, reconcile: bool, db_path: Path):
    """List task sessions."""
    with SQLiteStore(db_path) as store:
        if reconcile:
            reconcile_sessions(store, new_pane_client())
        if group_by:
            _emit(group_counts_as_dicts(store.list_session_status_counts()))
            return
        sessions = store.list_sessions()
    _emit([session.as_dict() for session in sessions])


@task.command("open-session")
@_task_ref_options
@click.option("--cwd", default=".", show_default=True, help="Working directory for a new pane.")
@click.option("--workspace", "-w", default=None, help="Override the workspace name.")
@click.option(
    "--command",
    "command_label",
    default=DEFAULT_SESSION_COMMAND,
    show_default=True,
    help="Command label recorded on the session.",
)
@_db_option
def task_open_session(
    repo: str,
    branch: str,
    pr_number: int,
    cwd: str,
    workspace: str | None,
    command_label: str,
    db_path: Path,
):
    """Activate the task's live pane, or spawn one."""
    _require_task_ref(branch, pr_number)
    with SQLiteStore(db_path) as store:
        resolved = _resolve_task(TaskService(store), repo, branch, pr_number)
        result = open_session(
            store,
            new_pane_client(),
            resolved.task_id,
            cwd=cwd,
            workspace=workspace,
            command=command_label,
        )
    _emit(
        {
            "task_id": resolved.task_id,
            "status": result.action,
            "pane_id": result.session.pane_id,
            "workspace": result.session.workspace,
        }
    )


@task.command("close-session")
@_task_ref_options
@_db_option
def task_close_session(repo: str, branch: str, pr_number: int, db_path: Path):
    """Kill the task's pane and mark its session closed."""
    _require_task_ref(branch, pr_number)
    with SQLiteStore(db_path) as store:
        resolved = _resolve_task(TaskService(store), repo, branch, pr_number)
        result = close_session(store, new_pane_client(), resolved.task_id)
    payload: dict[str, Any] = {"task_id": resolved.task_id, "status": result.action}
    if result.session is not None:
        payload["workspace"] = result.session.workspace
    _emit(payload)


def _notes_dir_option(fn: Callable) -> Callable:
    return click.option(
        "--notes-dir",
        default=str(DEFAULT_NOTES_DIR),
        show_default=True,
        type=click.Path(file_okay=False, path_type=Path),
        help="Directory for task note markdown files.",
    )(fn)


@task.command("ensure-note")
@_task_ref_options
@_db_option
@_notes_dir_option
def task_ensure_note(repo: str, branch: str, pr_number: int, db_path: Path, notes_dir: Path):
    """Create the task's note file from the template if it does not exist."""
    _require_task_ref(branch, pr_number)
    with SQLiteStore(db_path) as store:
        resolved = _resolve_task(TaskService(store), repo, branch, pr_number)
    path, created = ensure_task_note(notes_dir, resolved.task_id)
    _emit(
        {
            "task_id": resolved.task_id,
            "status": "created" if created else "existing",
            "note_path": str(path),
        }
    )


def _launch_editor(name: str, args: list[str]) -> None:
    try:
        subprocess.run([name, *args], check=True)
    except FileNotFoundError as exc:
        raise click.ClickException(
            f"Failed to launch editor '{name}'. Is EDITOR set correctly?"
        ) from exc
    except subprocess.CalledProcessError as exc:
        raise click.ClickException(f"Editor '{name}' exited with status {exc.returncode}.") from exc


@task.command("open-note")
@_task_ref_options
@_db_option
@_notes_dir_option
@click.option("--dry-run", is_flag=True, help="Print the editor command without launching it.")
def task_open_note(
    repo: str, branch: str, pr_number: int, db_path: Path, notes_dir: Path, dry_run: bool
):
    """Open the task's note in $EDITOR."""
    _require_task_ref(branch, pr_number)
    with SQLiteStore(db_path) as store:
        resolved = _resolve_task(TaskService(store), repo, branch, pr_number)
    path, _created = ensure_task_note(notes_dir, resolved.task_id)
    editor, editor_args = resolve_editor_command(os.environ.get("EDITOR"), path)
    payload = {
        "task_id": resolved.task_id,
        "note_path": str(path),
        "editor": editor,
        "args": editor_args,
    }
    if dry_run:
        _emit({**payload, "status": "dry_run"})
        return
    _launch_editor(editor, editor_args)
    _emit({**payload, "status": "opened"})


@task.command("dashboard")
@click.option(
    "--reconcile", is_flag=True, help="Check sessions against live WezTerm panes first."
)
@_db_option
def task_dashboard(reconcile: bool, db_path: Path):
    """Show grouped counts, sessions, aliases, and merged task rows."""
    with SQLiteStore(db_path) as store:
        if reconcile:
            reconcile_sessions(store, new_pane_client())
        payload = build_dashboard(store)
    _emit(payload)
