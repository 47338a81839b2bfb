"""Workspace config, repository id parsing and token resolution."""

import pytest

from treepush.auth import fetch_token, resolve_github_token, static_token_provider
from treepush.config import (
    CONFIG_FILENAME,
    Limits,
    TreePushConfig,
    load_config,
    normalize_repo_id,
    parse_target,
    save_config,
)
from treepush.errors import AuthError, ValidationError
from treepush.models import PushTarget


@pytest.mark.parametrize(
    "value",
    [
        "octocat/demo",
        "octocat/demo.git",
        "https://github.com/octocat/demo",
        "https://github.com/octocat/demo.git",
        "https://github.com/octocat/demo/tree/main/src",
        "git@github.com:octocat/demo.git",
        "ssh://git@github.com/octocat/demo.git",
    ],
)
def test_normalize_repo_id_forms(value):
    assert normalize_repo_id(value) == "octocat/demo"


def test_parse_target():
    assert parse_target("octocat/demo") == PushTarget("octocat", "demo", "main")
    assert parse_target("octocat/demo", "release/1.x").branch == "release/1.x"


@pytest.mark.parametrize(
    ("repo_id", "branch"),
    [("demo", "main"), ("a/b/c", "main"), ("octocat/demo", ""), ("octocat/demo", "a..b")],
)
def test_parse_target_rejects_bad_input(repo_id, branch):
    with pytest.raises(ValidationError):
        parse_target(repo_id, branch)


def test_save_then_load(tmp_path):
    config = TreePushConfig(
        repo_id="https://github.com/octocat/demo.git",
        token="",
        local_root=str(tmp_path),
        branch="dev",
        auto_create_repo=True,
        limits=Limits(upload_workers=2, max_blob_bytes=1024),
    )

    path = save_config(config, tmp_path)
    loaded = load_config(tmp_path)

    assert path.name == CONFIG_FILENAME
    assert loaded.repo_id == "octocat/demo"
    assert loaded.target == PushTarget("octocat", "demo", "dev")
    assert loaded.auto_create_repo
    assert loaded.limits.upload_workers == 2
    assert loaded.limits.max_blob_bytes == 1024
    assert loaded.state_db_path.parent == tmp_path.resolve()


def test_missing_config_points_at_init(tmp_path):
    with pytest.raises(FileNotFoundError, match="treepush init"):
        load_config(tmp_path)


def test_limits_clamp_workers_and_ignore_unknown_keys():
    assert Limits(upload_workers=0).upload_workers == 1
    assert Limits(upload_workers=64).upload_workers == 6
    assert Limits.from_dict({"upload_workers": 3, "unknown": True}).upload_workers == 3


def test_api_url_override(monkeypatch, tmp_path):
    monkeypatch.delenv("TREEPUSH_API_URL", raising=False)
    config = TreePushConfig(repo_id="octocat/demo", token="", local_root=str(tmp_path))
    assert config.effective_api_url == "https://api.github.com"

    monkeypatch.setenv("TREEPUSH_API_URL", "https://ghe.example.test/api/v3")
    assert config.effective_api_url == "https://ghe.example.test/api/v3"


@pytest.fixture(name="no_ambient_token")
def no_ambient_token_fixture(monkeypatch, tmp_path):
    for name in ("GITHUB_TOKEN", "GH_TOKEN", "XDG_CONFIG_HOME", "APPDATA"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GH_CONFIG_DIR", str(tmp_path / "gh"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path / "gh"


def test_env_token_wins_over_config(monkeypatch, no_ambient_token):
    monkeypatch.setenv("GH_TOKEN", "from-env")

    assert resolve_github_token("from-config") == "from-env"


def test_config_token_then_gh_hosts_file(no_ambient_token):
    assert resolve_github_token("  from-config ") == "from-config"
    assert resolve_github_token("") is None

    no_ambient_token.mkdir()
    (no_ambient_token / "hosts.yml").write_text(
        "ghe.example.test:\n    oauth_token: other\ngithub.com:\n    user: octocat\n    oauth_token: from-gh\n",
        encoding="utf-8",
    )
    assert resolve_github_token("") == "from-gh"


def test_gh_hosts_file_uses_active_account(no_ambient_token):
    no_ambient_token.mkdir()
    (no_ambient_token / "hosts.yml").write_text(
        "github.com:\n"
        "    users:\n"
        "        alice:\n"
        "            oauth_token: gho_alice\n"
        "        bob:\n"
        "            oauth_token: gho_bob\n"
        "    git_protocol: https\n"
        "    oauth_token: gho_bob\n"
        "    user: bob\n",
        encoding="utf-8",
    )

    assert resolve_github_token("") == "gho_bob"


def test_gh_hosts_file_token_under_users_only(no_ambient_token):
    no_ambient_token.mkdir()
    (no_ambient_token / "hosts.yml").write_text(
        "github.com:\n    user: bob\n    users:\n        alice:\n            oauth_token: gho_alice\n"
        "        bob:\n            oauth_token: gho_bob\n",
        encoding="utf-8",
    )

    assert resolve_github_token("") == "gho_bob"


def test_unreadable_gh_hosts_file_is_skipped(no_ambient_token):
    no_ambient_token.mkdir()
    (no_ambient_token / "hosts.yml").write_text("github.com: [unclosed\n", encoding="utf-8")

    assert resolve_github_token("") is None


@pytest.mark.asyncio
async def test_fetch_token_requires_a_value():
    async def provider():
        return "async-token"

    assert await fetch_token(provider) == "async-token"
    with pytest.raises(AuthError, match="GITHUB_TOKEN"):
        await fetch_token(static_token_provider(None))
