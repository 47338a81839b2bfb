from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from treepush.errors import ValidationError
from treepush.models import PushTarget


CONFIG_FILENAME = ".treepush.json"
STATE_DB_FILENAME = ".treepush_state.db"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_BRANCH = "main"
GITHUB_HOSTS = {"github.com", "www.github.com"}
MAX_UPLOAD_WORKERS = 6


@dataclass(slots=True)
class Limits:
    max_blob_bytes: int = 50 * 1024 * 1024
    upload_workers: int = 4
    max_rate_limit_retries: int = 5
    max_network_retries: int = 3
    request_timeout_seconds: float = 30.0
    tree_cache_ttl_seconds: int = 300
    temp_repo_ttl_seconds: int = 30 * 60
    cleanup_interval_seconds: int = 5 * 60
    max_delete_attempts: int = 5

    def __post_init__(self) -> None:
        self.upload_workers = max(1, min(MAX_UPLOAD_WORKERS, int(self.upload_workers)))

    @classmethod
    def from_dict(cls, data: dict | None) -> "Limits":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in (data or {}).items() if key in known})


@dataclass(slots=True)
class TreePushConfig:
    repo_id: str
    token: str
    local_root: str
    branch: str = DEFAULT_BRANCH
    api_url: str = DEFAULT_API_URL
    auto_create_repo: bool = False
    private: bool = True
    limits: Limits = field(default_factory=Limits)

    @property
    def local_root_path(self) -> Path:
        return Path(self.local_root).resolve()

    @property
    def state_db_path(self) -> Path:
        return self.local_root_path / STATE_DB_FILENAME

    @property
    def target(self) -> PushTarget:
        return parse_target(self.repo_id, self.branch)

    @property
    def effective_api_url(self) -> str:
        return os.getenv("TREEPUSH_API_URL", "").strip() or self.api_url


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config(base_dir: Path | None = None) -> TreePushConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `treepush init <owner/repo>` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    return TreePushConfig(
        repo_id=normalize_repo_id(data["repo_id"]),
        token=data.get("token", ""),
        local_root=data["local_root"],
        branch=data.get("branch") or DEFAULT_BRANCH,
        api_url=data.get("api_url") or DEFAULT_API_URL,
        auto_create_repo=bool(data.get("auto_create_repo", False)),
        private=bool(data.get("private", True)),
        limits=Limits.from_dict(data.get("limits")),
    )


def save_config(config: TreePushConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir)
    payload = asdict(config)
    payload["repo_id"] = normalize_repo_id(str(payload["repo_id"]))
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def default_token() -> str:
    for env_name in ("GITHUB_TOKEN", "GH_TOKEN"):
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return ""


def normalize_repo_id(repo_id: str) -> str:
    value = (repo_id or "").strip()
    if not value:
        return value

    # SCP-like SSH form (`git@github.com:owner/repo.git`)
    if value.startswith("git@github.com:"):
        value = value.split(":", 1)[1].strip()
        return _strip_git_suffix(value).strip("/")

    if value.startswith("ssh://"):
        parsed = urlparse(value)
        if parsed.hostname in GITHUB_HOSTS:
            return _normalize_github_path(parsed.path)
        return value

    if "://" not in value:
        return _strip_git_suffix(value.rstrip("/"))

    parsed = urlparse(value)
    if parsed.hostname not in GITHUB_HOSTS:
        return value
    return _normalize_github_path(parsed.path)


def _strip_git_suffix(value: str) -> str:
    return value[:-4] if value.endswith(".git") else value


def _normalize_github_path(path: str) -> str:
    # Web URLs may point deeper, e.g. /owner/repo/tree/main/src
    parts = [part for part in _strip_git_suffix(path.strip("/")).split("/") if part]
    if len(parts) >= 2:
        return f"{parts[0]}/{_strip_git_suffix(parts[1])}"
    return "/".join(parts)


def parse_target(repo_id: str, branch: str = DEFAULT_BRANCH) -> PushTarget:
    normalized = normalize_repo_id(repo_id)
    parts = normalized.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"Expected a repository in the form owner/name, got {repo_id!r}")
    if not branch or branch.startswith("/") or ".." in branch:
        raise ValidationError(f"Invalid branch name: {branch!r}")
    return PushTarget(owner=parts[0], repo=parts[1], branch=branch)
