"""Command-line entry points, driven through typer's runner against the fake GitHub."""

import json
from contextlib import asynccontextmanager

import pytest
from typer.testing import CliRunner

from treepush import cli
from treepush.config import CONFIG_FILENAME
from treepush.session import open_session

from .fake_github import FakeGitHub

runner = CliRunner()


def _text(result):
    return " ".join(result.output.split())


@pytest.fixture(name="workspace")
def workspace_fixture(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GITHUB_TOKEN", "test-token")
    return tmp_path


@pytest.fixture(name="cli_github")
def cli_github_fixture(monkeypatch):
    fake = FakeGitHub()

    @asynccontextmanager
    async def _open_session(config, **kwargs):
        async with open_session(config, transport=fake.transport) as session:
            yield session

    monkeypatch.setattr(cli, "open_session", _open_session)
    return fake


def test_init_writes_normalized_config(workspace):
    result = runner.invoke(cli.app, ["init", "https://github.com/octocat/demo.git", "--branch", "dev"])

    assert result.exit_code == 0, result.output
    data = json.loads((workspace / CONFIG_FILENAME).read_text(encoding="utf-8"))
    assert data["repo_id"] == "octocat/demo"
    assert data["branch"] == "dev"
    assert data["token"] == "test-token"
    assert "octocat/demo@dev" in _text(result)


def test_init_rejects_bad_repo_id(workspace):
    result = runner.invoke(cli.app, ["init", "not-a-repo"])

    assert result.exit_code == 1
    assert not (workspace / CONFIG_FILENAME).exists()


def test_status_without_config_fails(workspace):
    result = runner.invoke(cli.app, ["status"])

    assert result.exit_code == 1
    assert "Config file not found" in _text(result)


def test_status_then_push(workspace, cli_github):
    repo = cli_github.add_repo("octocat", "demo", {"README.md": b"old\n", "stale.txt": b"x"})
    assert runner.invoke(cli.app, ["init", "octocat/demo"]).exit_code == 0
    (workspace / "README.md").write_bytes(b"new\n")
    (workspace / "src").mkdir()
    (workspace / "src" / "app.py").write_bytes(b"print('hi')\n")

    status = runner.invoke(cli.app, ["status"])
    assert status.exit_code == 0, status.output
    assert "1 added, 1 modified, 1 deleted" in _text(status)

    pushed = runner.invoke(cli.app, ["push", "-m", "Sync from CLI"])
    assert pushed.exit_code == 0, pushed.output
    assert repo.files() == {"README.md": b"new\n", "src/app.py": b"print('hi')\n"}
    assert repo.commits[repo.refs["main"]]["message"] == "Sync from CLI"

    again = runner.invoke(cli.app, ["status"])
    assert "No changes detected." in _text(again)


def test_push_to_missing_repo_without_create(workspace, cli_github):
    assert runner.invoke(cli.app, ["init", "octocat/missing"]).exit_code == 0
    (workspace / "a.txt").write_bytes(b"a")

    result = runner.invoke(cli.app, ["push", "--no-create-repo"])

    assert result.exit_code == 1
    assert ("octocat", "missing") not in cli_github.repos


def test_temp_list_is_empty(workspace, cli_github):
    assert runner.invoke(cli.app, ["init", "octocat/demo"]).exit_code == 0

    result = runner.invoke(cli.app, ["temp", "list"])

    assert result.exit_code == 0, result.output
    assert "No temporary repositories" in _text(result)
