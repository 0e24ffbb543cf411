"""Tests for the command line entry point."""
import json

import pytest

from marlin_sync.main import build_app, parse_args, run_command
from tests.fakes import InMemoryRemoteStore


@pytest.fixture
def app(test_config):
    remote = InMemoryRemoteStore()
    remote.create_repository("work")
    application = build_app(remote=remote, db_url=test_config.get_db_url())
    yield application
    application.close()


def run(app, capsys, *argv):
    code = run_command(app, parse_args(list(argv)))
    return code, json.loads(capsys.readouterr().out)


class TestCommands:
    """Sub-commands against an in-memory remote."""

    def test_spaces_refresh_then_sync(self, app, capsys):
        code, spaces = run(app, capsys, "spaces", "--refresh")
        assert code == 0
        assert [s["name"] for s in spaces] == ["work"]

        app.notes.create_note("work", "# Hello")
        code, results = run(app, capsys, "sync", "work")

        assert code == 0
        assert results["work"]["pushed"] == 1
        assert app.store.count_unsynced("work") == 0

    def test_create_space(self, app, capsys):
        code, space = run(app, capsys, "create-space", "journal", "--public")

        assert code == 0
        assert space["repo_name"] == "journal.marlin"
        assert space["is_private"] is False

    def test_status(self, app, capsys):
        run(app, capsys, "spaces", "--refresh")
        app.notes.create_note("work", "pending")

        code, status = run(app, capsys, "status")

        assert code == 0
        assert status["network_status"] == "online"
        assert status["unsynced"] == {"work": 1}
        assert "total_operations" in status["metrics"]

    def test_sync_reports_failures(self, app, capsys):
        run(app, capsys, "spaces", "--refresh")
        app.remote.repos.pop("work")

        code, results = run(app, capsys, "sync", "work")

        assert code == 1
        assert results["work"]["reason"] == "repository not found"


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        parse_args([])
