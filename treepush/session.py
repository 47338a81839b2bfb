from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from rich.console import Console

from treepush.auth import resolve_github_token, static_token_provider
from treepush.config import TreePushConfig
from treepush.errors import ConflictError, NotFoundError
from treepush.filters import build_path_filter
from treepush.github_api import GitHubClient
from treepush.governor import RateLimitGovernor
from treepush.models import BaseTree, ChangeSet, PushResult
from treepush.push import ProgressCallback, PushOrchestrator
from treepush.scanner import FileSnapshot, scan_snapshot
from treepush.state_db import TreeCache, ensure_db
from treepush.status_service import diff_snapshot
from treepush.temp_repos import TempRepoManager, TempRepoRegistry


@dataclass(slots=True)
class Session:
    config: TreePushConfig
    client: GitHubClient
    orchestrator: PushOrchestrator
    temp_repos: TempRepoManager


@dataclass(slots=True)
class StatusResult:
    snapshot: FileSnapshot
    base: BaseTree
    changes: ChangeSet
    branch_exists: bool


@asynccontextmanager
async def open_session(
    config: TreePushConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Session]:
    limits = config.limits
    governor = RateLimitGovernor(
        max_concurrency=limits.upload_workers,
        max_rate_limit_retries=limits.max_rate_limit_retries,
        max_network_retries=limits.max_network_retries,
    )
    client = GitHubClient(
        static_token_provider(resolve_github_token(config.token)),
        governor=governor,
        api_url=config.effective_api_url,
        timeout=limits.request_timeout_seconds,
        transport=transport,
    )
    await ensure_db(config.state_db_path)
    orchestrator = PushOrchestrator(
        client,
        tree_cache=TreeCache(config.state_db_path, ttl_seconds=limits.tree_cache_ttl_seconds),
        max_blob_bytes=limits.max_blob_bytes,
        upload_workers=limits.upload_workers,
    )
    temp_repos = TempRepoManager(
        client,
        TempRepoRegistry(config.state_db_path),
        orchestrator,
        ttl_seconds=limits.temp_repo_ttl_seconds,
        cleanup_interval_seconds=limits.cleanup_interval_seconds,
        max_delete_attempts=limits.max_delete_attempts,
    )
    try:
        yield Session(config=config, client=client, orchestrator=orchestrator, temp_repos=temp_repos)
    finally:
        await temp_repos.stop_cleanup()
        await client.aclose()


async def workspace_status(
    session: Session,
    *,
    include_patterns: tuple[str, ...] = (),
    exclude_patterns: tuple[str, ...] = (),
    console: Console | None = None,
) -> StatusResult:
    config = session.config
    path_filter = build_path_filter(include_patterns, exclude_patterns)
    snapshot = scan_snapshot(config.local_root_path, path_filter=path_filter, console=console)

    target = config.target
    try:
        head = await session.client.get_branch_head(target.owner, target.repo, target.branch)
    except (NotFoundError, ConflictError):
        base = BaseTree(commit_sha=None, tree_sha=None)
        branch_exists = False
    else:
        base = await session.orchestrator.load_tree(target.owner, target.repo, head)
        branch_exists = True

    if snapshot.gitignore_text:
        path_filter = path_filter.with_gitignore(snapshot.gitignore_text)
    changes = diff_snapshot(snapshot, base, path_filter=path_filter)
    return StatusResult(snapshot=snapshot, base=base, changes=changes, branch_exists=branch_exists)


async def push_workspace(
    session: Session,
    *,
    include_patterns: tuple[str, ...] = (),
    exclude_patterns: tuple[str, ...] = (),
    message: str | None = None,
    create_repo: bool | None = None,
    on_progress: ProgressCallback | None = None,
    console: Console | None = None,
) -> PushResult:
    config = session.config
    path_filter = build_path_filter(include_patterns, exclude_patterns)
    snapshot = scan_snapshot(config.local_root_path, path_filter=path_filter, console=console)
    return await session.orchestrator.push(
        snapshot,
        config.target,
        message=message,
        auto_create_repo=config.auto_create_repo if create_repo is None else create_repo,
        private=config.private,
        path_filter=path_filter,
        on_progress=on_progress,
    )
