from __future__ import annotations

import inspect
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Union

import yaml

from treepush.errors import AuthError


logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Union[str, None, Awaitable[Union[str, None]]]]


def resolve_github_token(config_token: str | None = None) -> str | None:
    """Resolve a GitHub token from env, config, or the GitHub CLI login cache."""
    for env_name in ("GITHUB_TOKEN", "GH_TOKEN"):
        value = os.getenv(env_name, "").strip()
        if value:
            return value

    if config_token and config_token.strip():
        return config_token.strip()

    for path in _hosts_file_candidates():
        try:
            if path.exists() and path.is_file():
                value = _token_from_hosts_file(path.read_text(encoding="utf-8"))
                if value:
                    return value
        except OSError:
            continue

    return None


def _hosts_file_candidates() -> list[Path]:
    candidates: list[Path] = []

    gh_config_dir = os.getenv("GH_CONFIG_DIR")
    if gh_config_dir:
        candidates.append(Path(gh_config_dir) / "hosts.yml")

    xdg_config_home = os.getenv("XDG_CONFIG_HOME")
    if xdg_config_home:
        candidates.append(Path(xdg_config_home) / "gh" / "hosts.yml")

    appdata = os.getenv("APPDATA")
    if appdata:
        candidates.append(Path(appdata) / "GitHub CLI" / "hosts.yml")

    candidates.append(Path.home() / ".config" / "gh" / "hosts.yml")

    unique: list[Path] = []
    seen: set[str] = set()
    for path in candidates:
        key = str(path).lower()
        if key not in seen:
            seen.add(key)
            unique.append(path)
    return unique


def _token_from_hosts_file(text: str) -> str | None:
    """Token of the active github.com account in a gh `hosts.yml`."""
    try:
        hosts = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning("Ignoring unreadable gh hosts file: %s", exc)
        return None
    if not isinstance(hosts, dict):
        return None
    host = hosts.get("github.com")
    if not isinstance(host, dict):
        return None

    token = host.get("oauth_token")
    if not token:
        # Multi-account layout keeps the tokens under `users:`, keyed by login.
        users = host.get("users")
        account = users.get(host.get("user")) if isinstance(users, dict) else None
        if isinstance(account, dict):
            token = account.get("oauth_token")
    if not token:
        return None
    return str(token).strip() or None


def static_token_provider(token: str | None) -> TokenProvider:
    def _provider() -> str | None:
        return token

    return _provider


async def fetch_token(provider: TokenProvider) -> str:
    value = provider()
    if inspect.isawaitable(value):
        value = await value
    if not value:
        raise AuthError(missing_token_hint())
    return str(value)


def missing_token_hint() -> str:
    return (
        "This command requires a GitHub token. Set `GITHUB_TOKEN`, run `gh auth login`, "
        "or update `.treepush.json`."
    )
