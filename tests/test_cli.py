"""Tests for the ttt CLI."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from ttt.cli import main
from ttt.wezterm import WezTermClient


@pytest.fixture()
def invoke(db_path, pane_client):
    """Run ``ttt task <args> --db <tmp>`` with the fake pane client wired in."""

    def _invoke(*args: str, env: dict[str, str] | None = None):
        runner = CliRunner()
        with patch("ttt.cli.new_pane_client", return_value=pane_client):
            return runner.invoke(main, ["task", *args, "--db", str(db_path)], env=env)

    return _invoke


def _json(result) -> object:
    return json.loads(result.output)


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_unknown_command_suggests_match():
    result = CliRunner().invoke(main, ["task", "ensure-prep"])
    assert result.exit_code != 0
    payload = _json(result)
    assert payload["ok"] is False
    assert "ensure-prepr" in payload["error"]


def test_unknown_option_is_json_error():
    result = CliRunner().invoke(main, ["task", "list", "--no-such-flag"])
    assert result.exit_code != 0
    payload = _json(result)
    assert payload["ok"] is False
    assert "no-such-flag" in payload["error"].lower() or "no such option" in payload["error"]


def test_task_ref_requires_branch_or_pr(invoke):
    result = invoke("open-session", "--repo", "o/r")
    assert result.exit_code != 0
    assert "--branch or --pr" in _json(result)["error"]


def test_unsupported_group_by_rejected(invoke):
    result = invoke("list", "--group-by", "branch")
    assert result.exit_code != 0
    assert _json(result)["ok"] is False


# ---------------------------------------------------------------------------
# Identity commands
# ---------------------------------------------------------------------------


def test_ensure_prepr_is_idempotent(invoke):
    first = invoke("ensure-prepr", "--repo", "Owner/Repo", "--branch", "feature/x")
    assert first.exit_code == 0, first.output
    created = _json(first)
    assert created["status"] == "created"
    assert created["prepr_alias"] == "prepr:owner/repo:feature/x"

    second = invoke("ensure-prepr", "--repo", "owner/repo", "--branch", "feature/x")
    existing = _json(second)
    assert existing["status"] == "existing"
    assert existing["task_id"] == created["task_id"]


def test_link_pr_statuses(invoke):
    task_id = _json(invoke("ensure-prepr", "-r", "o/r", "-b", "feature/x"))["task_id"]

    linked = _json(invoke("link-pr", "-r", "o/r", "-b", "feature/x", "--pr", "42"))
    assert linked == {
        "task_id": task_id,
        "status": "linked_existing_prepr",
        "pr_alias": "pr:o/r#42",
        "prepr_alias": "prepr:o/r:feature/x",
    }

    again = _json(invoke("link-pr", "-r", "o/r", "-b", "feature/y", "--pr", "42"))
    assert again["status"] == "already_linked"
    assert again["task_id"] == task_id

    fresh = _json(invoke("link-pr", "-r", "o/r", "-b", "feature/z", "--pr", "7"))
    assert fresh["status"] == "created_from_pr"
    assert fresh["task_id"] != task_id


def test_link_pr_rejects_zero(invoke):
    result = invoke("link-pr", "-r", "o/r", "-b", "x", "--pr", "0")
    assert result.exit_code != 0


def test_list_and_group_by(invoke):
    invoke("link-pr", "-r", "a/one", "-b", "x", "--pr", "1")
    invoke("ensure-prepr", "-r", "a/one", "-b", "x")
    invoke("ensure-prepr", "-r", "b/two", "-b", "y")

    rows = _json(invoke("list"))
    assert {row["alias_value"] for row in rows} == {
        "pr:a/one#1",
        "prepr:a/one:x",
        "prepr:b/two:y",
    }

    by_repo = _json(invoke("list", "--group-by", "repo"))
    assert by_repo == [{"key": "a/one", "count": 2}, {"key": "b/two", "count": 1}]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_open_session_by_unlinked_pr_fails(invoke, pane_client):
    result = invoke("open-session", "-r", "o/r", "--pr", "99")
    assert result.exit_code == 1
    payload = _json(result)
    assert "pr:o/r#99" in payload["error"]
    assert "link-pr" in payload["error"]
    assert pane_client.calls == []


def test_open_session_spawns_then_activates(invoke, pane_client):
    first = _json(invoke("open-session", "-r", "o/r", "-b", "feature/x", "--cwd", "/src"))
    assert first["status"] == "spawned"
    assert first["pane_id"] == 100
    assert first["workspace"] == f"task-{first['task_id']}"
    assert pane_client.calls[0] == ("spawn", first["workspace"], "/src")

    second = _json(invoke("open-session", "-r", "o/r", "-b", "feature/x"))
    assert second["status"] == "activated"
    assert second["pane_id"] == 100


def test_open_session_with_branch_and_pr_links(invoke):
    opened = _json(invoke("open-session", "-r", "o/r", "-b", "feature/x", "--pr", "5"))
    by_pr = _json(invoke("open-session", "-r", "o/r", "--pr", "5"))
    assert by_pr["task_id"] == opened["task_id"]


def test_close_session(invoke, pane_client):
    opened = _json(invoke("open-session", "-r", "o/r", "-b", "x", "-w", "mine"))
    closed = _json(invoke("close-session", "-r", "o/r", "-b", "x"))
    assert closed == {"task_id": opened["task_id"], "status": "closed", "workspace": "mine"}
    assert ("kill", opened["pane_id"]) in pane_client.calls

    missing = _json(invoke("close-session", "-r", "o/r", "-b", "other"))
    assert missing["status"] == "missing"


def test_sessions_reconcile_and_group_by(invoke, pane_client):
    opened = _json(invoke("open-session", "-r", "o/r", "-b", "x"))
    pane_client.live.clear()

    stale = _json(invoke("sessions"))
    assert stale[0]["status"] == "open"

    reconciled = _json(invoke("sessions", "--reconcile"))
    assert reconciled[0]["task_id"] == opened["task_id"]
    assert reconciled[0]["status"] == "closed"

    counts = _json(invoke("sessions", "--group-by", "status"))
    assert counts == [{"key": "closed", "count": 1}]


def test_pane_failure_is_json_error(invoke, pane_client):
    pane_client.fail_on.add("spawn")
    result = invoke("open-session", "-r", "o/r", "-b", "x")
    assert result.exit_code == 1
    payload = _json(result)
    assert payload["ok"] is False
    assert "simulated failure" in payload["error"]


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def test_ensure_note(invoke, tmp_path):
    notes_dir = tmp_path / "notes"
    first = _json(invoke("ensure-note", "-r", "o/r", "-b", "x", "--notes-dir", str(notes_dir)))
    assert first["status"] == "created"
    assert first["note_path"] == str(notes_dir / f"{first['task_id']}.md")

    second = _json(invoke("ensure-note", "-r", "o/r", "-b", "x", "--notes-dir", str(notes_dir)))
    assert second["status"] == "existing"


def test_open_note_dry_run(invoke, tmp_path):
    notes_dir = tmp_path / "notes"
    payload = _json(
        invoke(
            "open-note", "-r", "o/r", "-b", "x", "--notes-dir", str(notes_dir), "--dry-run",
            env={"EDITOR": "nvim -p"},
        )
    )
    assert payload["status"] == "dry_run"
    assert payload["editor"] == "nvim"
    assert payload["args"] == ["-p", payload["note_path"]]


def test_open_note_launches_editor(invoke, tmp_path):
    notes_dir = tmp_path / "notes"
    with patch("ttt.cli.subprocess.run") as mock_run:
        result = invoke(
            "open-note", "-r", "o/r", "-b", "x", "--notes-dir", str(notes_dir),
            env={"EDITOR": "vim"},
        )
    assert result.exit_code == 0, result.output
    payload = _json(result)
    assert payload["status"] == "opened"
    mock_run.assert_called_once_with(["vim", payload["note_path"]], check=True)


def test_open_note_editor_failure(invoke, tmp_path):
    notes_dir = tmp_path / "notes"
    with patch(
        "ttt.cli.subprocess.run", side_effect=subprocess.CalledProcessError(3, ["vim"])
    ):
        result = invoke(
            "open-note", "-r", "o/r", "-b", "x", "--notes-dir", str(notes_dir),
            env={"EDITOR": "vim"},
        )
    assert result.exit_code == 1
    assert "exited with status 3" in _json(result)["error"]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def test_dashboard(invoke, pane_client):
    invoke("ensure-prepr", "-r", "o/r", "-b", "x")
    opened = _json(invoke("open-session", "-r", "o/r", "-b", "x", "--pr", "3"))
    payload = _json(invoke("dashboard", "--reconcile"))
    assert payload["groups"]["by_alias_type"] == [
        {"key": "pr", "count": 1},
        {"key": "prepr", "count": 1},
    ]
    assert [s["task_id"] for s in payload["open_sessions"]] == [opened["task_id"]]
    assert payload["tasks"][0]["session"]["pane_id"] == opened["pane_id"]
    assert ("list",) in pane_client.calls


def test_ensure_prepr_rejects_blank_branch(invoke):
    result = invoke("ensure-prepr", "-r", "o/r", "-b", "   ")
    assert result.exit_code != 0
    payload = _json(result)
    assert payload["ok"] is False
    assert "--branch" in payload["error"]
    assert _json(invoke("list")) == []


def test_link_pr_rejects_blank_branch(invoke):
    result = invoke("link-pr", "-r", "o/r", "-b", "", "--pr", "3")
    assert result.exit_code != 0
    assert _json(invoke("list")) == []


def test_unrunnable_wezterm_is_json_error(db_path, tmp_path):
    script = tmp_path / "wezterm"
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    script.chmod(0o644)
    runner = CliRunner()
    with patch("ttt.cli.new_pane_client", return_value=WezTermClient(str(script))):
        result = runner.invoke(main, ["task", "sessions", "--reconcile", "--db", str(db_path)])
    assert result.exit_code == 1
    payload = _json(result)
    assert payload["ok"] is False
    assert str(script) in payload["error"]
