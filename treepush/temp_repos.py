"""Scratch repositories for private-source imports.

A temporary repository is created, filled with a copy of the source branch
through the regular push path, made public and deleted again once its TTL
has passed. Records live in the state DB with an absolute ``created_at`` so
a restarted process recomputes the remaining lifetime instead of trusting a
timer.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import string
import time
from contextlib import suppress
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Awaitable, Callable

from treepush.config import parse_target
from treepush.errors import NotFoundError, RepositoryBusyError, TreePushError
from treepush.github_api import GitHubClient
from treepush.models import PushTarget, TempRepoRecord
from treepush.push import ProgressCallback, PushOrchestrator
from treepush.scanner import FileSnapshot
from treepush.state_db import delete_temp_repo, load_temp_repos, upsert_temp_repo


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60
DEFAULT_MAX_DELETE_ATTEMPTS = 5
_BASE36 = string.digits + string.ascii_lowercase
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def temp_repo_name(source_repo: str, now: float, *, rng: random.Random | None = None) -> str:
    source = _UNSAFE_NAME_CHARS.sub("-", source_repo.rsplit("/", 1)[-1]).strip("-.") or "repo"
    suffix = "".join((rng or random).choice(_BASE36) for _ in range(6))
    return f"temp-{source[:60]}-{int(now * 1000)}-{suffix}"


class TempRepoRegistry:
    """Persisted temp-repo records. Every access goes through one lock."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = asyncio.Lock()

    async def all(self) -> list[TempRepoRecord]:
        async with self._lock:
            return await load_temp_repos(self.db_path)

    async def find(self, name: str) -> TempRepoRecord | None:
        """Look a record up by ``temp_repo`` or ``owner/temp_repo``."""
        for record in await self.all():
            if name in (record.temp_repo, f"{record.owner}/{record.temp_repo}"):
                return record
        return None

    async def save(self, record: TempRepoRecord) -> None:
        async with self._lock:
            await upsert_temp_repo(self.db_path, record)

    async def remove(self, owner: str, temp_repo: str) -> None:
        async with self._lock:
            await delete_temp_repo(self.db_path, owner, temp_repo)


@dataclass(slots=True)
class SweepReport:
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    busy: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    manual: list[str] = field(default_factory=list)


class TempRepoManager:
    def __init__(
        self,
        client: GitHubClient,
        registry: TempRepoRegistry,
        orchestrator: PushOrchestrator,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        max_delete_attempts: int = DEFAULT_MAX_DELETE_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self.registry = registry
        self._orchestrator = orchestrator
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.max_delete_attempts = max(1, max_delete_attempts)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._cleanup_task: asyncio.Task[None] | None = None

    async def list_records(self) -> list[TempRepoRecord]:
        return await self.registry.all()

    async def provision(self, source_repo: str) -> TempRepoRecord:
        name = temp_repo_name(source_repo, self._clock(), rng=self._rng)
        data = await self._client.create_repo(
            name,
            private=True,
            auto_init=True,
            description=f"Temporary copy of {source_repo}",
        )
        owner = str((data.get("owner") or {}).get("login") or "")
        if not owner:
            owner = str((await self._client.get_authenticated_user()).get("login") or "")
        record = TempRepoRecord(
            original_repo=source_repo,
            temp_repo=name,
            owner=owner,
            created_at=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        await self.registry.save(record)
        logger.info("Provisioned temporary repository %s/%s for %s", owner, name, source_repo)
        return record

    async def import_private_repo(
        self,
        source_repo: str,
        *,
        branch: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TempRepoRecord:
        source = parse_target(source_repo)
        if branch is None:
            info = await self._client.get_repo(source.owner, source.repo)
            branch = str(info.get("default_branch") or source.branch)
        snapshot = await self._read_branch(source.owner, source.repo, branch)
        logger.info("Read %d file(s) from %s@%s", len(snapshot), source.full_name, branch)

        record = await self.provision(source.full_name)
        target = PushTarget(owner=record.owner, repo=record.temp_repo, branch=branch)
        result = await self._orchestrator.push(
            snapshot,
            target,
            message=f"Import {source.full_name}@{branch}",
            on_progress=on_progress,
        )
        if not result.success:
            logger.error("Copy into %s failed: %s", target, result.error)
            try:
                await self.delete_now(record)
            except TreePushError as exc:
                logger.warning("Leaving %s/%s for the next sweep: %s", record.owner, record.temp_repo, exc)
            raise result.error or TreePushError(f"Import of {source.full_name} failed")

        # Only a complete copy is ever exposed publicly.
        await self._client.update_repo_visibility(record.owner, record.temp_repo, private=False)
        logger.info("Temporary repository %s/%s is public", record.owner, record.temp_repo)
        return record

    async def _read_branch(self, owner: str, repo: str, branch: str) -> FileSnapshot:
        head = await self._client.get_branch_head(owner, repo, branch)
        base = await self._orchestrator.load_tree(owner, repo, head)

        semaphore = asyncio.Semaphore(self._orchestrator.upload_workers)
        files: dict[str, bytes] = {}

        async def _fetch(path: str, sha: str) -> None:
            async with semaphore:
                files[path] = await self._client.get_blob(owner, repo, sha)

        await asyncio.gather(*(_fetch(path, entry.content_id) for path, entry in base.blobs().items()))
        return FileSnapshot(files)

    async def delete_now(self, record: TempRepoRecord) -> None:
        """Delete the remote repository, then forget the record.

        A failed deletion keeps the record, counts the attempt and marks it for
        manual cleanup once the attempt budget is spent. The error is re-raised.
        """
        async with self._orchestrator.registry.repo_guard(record.owner, record.temp_repo):
            try:
                await self._client.delete_repo(record.owner, record.temp_repo)
            except NotFoundError:
                logger.info("Temporary repository %s/%s was already gone", record.owner, record.temp_repo)
            except TreePushError as exc:
                await self._record_failure(record, exc)
                raise
            await self.registry.remove(record.owner, record.temp_repo)
        logger.info("Deleted temporary repository %s/%s", record.owner, record.temp_repo)

    async def _record_failure(self, record: TempRepoRecord, error: TreePushError) -> None:
        attempts = record.delete_attempts + 1
        updated = replace(
            record,
            delete_attempts=attempts,
            needs_manual_cleanup=attempts >= self.max_delete_attempts,
            last_error=str(error),
        )
        await self.registry.save(updated)
        if updated.needs_manual_cleanup:
            logger.error(
                "Giving up on %s/%s after %d attempt(s); delete it manually: %s",
                record.owner,
                record.temp_repo,
                attempts,
                error,
            )
        else:
            logger.error("Deleting %s/%s failed (attempt %d): %s", record.owner, record.temp_repo, attempts, error)

    async def use_original_name(self, record: TempRepoRecord) -> PushTarget:
        target = parse_target(record.original_repo)
        await self.delete_now(record)
        return target

    async def sweep(self) -> SweepReport:
        now = self._clock()
        report = SweepReport()
        for record in await self.registry.all():
            name = f"{record.owner}/{record.temp_repo}"
            if record.needs_manual_cleanup:
                report.manual.append(name)
                continue
            # A failed delete stays due until it succeeds or runs out of attempts.
            if not record.is_expired(now) and record.delete_attempts == 0:
                report.pending.append(name)
                continue
            try:
                await self.delete_now(record)
            except RepositoryBusyError:
                logger.info("Skipping %s: in use by a push", name)
                report.busy.append(name)
            except TreePushError:
                report.failed.append(name)
            else:
                report.deleted.append(name)
        logger.debug(
            "Sweep: %d deleted, %d failed, %d busy, %d pending",
            len(report.deleted),
            len(report.failed),
            len(report.busy),
            len(report.pending),
        )
        return report

    def schedule_cleanup(self, interval_seconds: float | None = None) -> asyncio.Task[None]:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        interval = interval_seconds or self.cleanup_interval_seconds

        async def _loop() -> None:
            while True:
                try:
                    await self.sweep()
                except Exception:
                    logger.exception("Temporary repository sweep failed")
                await self._sleep(interval)

        self._cleanup_task = asyncio.create_task(_loop(), name="treepush-temp-sweep")
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
