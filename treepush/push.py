from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Literal

from treepush.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PushCancelledError,
    PushInProgressError,
    RepositoryBusyError,
    TreePushError,
)
from treepush.filters import PathFilter
from treepush.github_api import GitHubClient
from treepush.hashing import ensure_within_ceiling
from treepush.models import BaseTree, ChangeSet, ContentId, PushPhase, PushResult, PushTarget
from treepush.objects import GitObjectBuilder, RefUpdate
from treepush.state_db import TreeCache
from treepush.status_service import diff_snapshot, snapshot_ids


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PushPhase, int], None]
OnBusy = Literal["queue", "reject"]

DEFAULT_MAX_BLOB_BYTES = 50 * 1024 * 1024
DEFAULT_UPLOAD_WORKERS = 4
GITKEEP_PATH = ".gitkeep"

ALLOWED_TRANSITIONS: dict[PushPhase, frozenset[PushPhase]] = {
    PushPhase.IDLE: frozenset({PushPhase.VALIDATING}),
    PushPhase.VALIDATING: frozenset({PushPhase.DIFFING}),
    PushPhase.DIFFING: frozenset({PushPhase.UPLOADING_BLOBS}),
    PushPhase.UPLOADING_BLOBS: frozenset({PushPhase.BUILDING_TREE, PushPhase.COMPLETED}),
    PushPhase.BUILDING_TREE: frozenset({PushPhase.COMMITTING}),
    PushPhase.COMMITTING: frozenset({PushPhase.UPDATING_REF}),
    PushPhase.UPDATING_REF: frozenset({PushPhase.COMPLETED}),
    PushPhase.COMPLETED: frozenset(),
    PushPhase.FAILED: frozenset(),
}

PHASE_PERCENT = {
    PushPhase.IDLE: 0,
    PushPhase.VALIDATING: 5,
    PushPhase.DIFFING: 15,
    PushPhase.UPLOADING_BLOBS: 20,
    PushPhase.BUILDING_TREE: 75,
    PushPhase.COMMITTING: 85,
    PushPhase.UPDATING_REF: 95,
    PushPhase.COMPLETED: 100,
}
UPLOAD_PERCENT_SPAN = 50


class PhaseTransitionError(ValueError):
    pass


@dataclass(slots=True, eq=False)
class PushOperation:
    target: PushTarget
    phase: PushPhase = PushPhase.IDLE
    base_commit_sha: str | None = None
    new_tree_sha: str | None = None
    commit_sha: str | None = None
    blob_shas: dict[ContentId, str] = field(default_factory=dict)
    changes: ChangeSet | None = None
    error: TreePushError | None = None
    cancelled: bool = False
    percent: int = 0

    @property
    def key(self) -> tuple[str, str, str]:
        return self.target.key

    def transition(self, phase: PushPhase) -> None:
        if self.phase.is_terminal:
            raise PhaseTransitionError(f"{self.target}: push already {self.phase.value}")
        if phase is not PushPhase.FAILED and phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise PhaseTransitionError(
                f"{self.target}: cannot move from {self.phase.value} to {phase.value}"
            )
        self.phase = phase

    def cancel(self) -> None:
        self.cancelled = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PushCancelledError(f"Push to {self.target} was cancelled during {self.phase.value}")


class PushRegistry:
    """Active pushes keyed by (owner, repo, branch), plus repository guards.

    A repository guard (held while a temporary repository is deleted) and an
    active push on the same repository exclude each other.
    """

    def __init__(self) -> None:
        self._operations: dict[tuple[str, str, str], PushOperation] = {}
        self._key_locks: dict[tuple[str, str, str], asyncio.Lock] = {}
        self._key_users: dict[tuple[str, str, str], int] = {}
        self._repo_pushes: dict[tuple[str, str], int] = {}
        self._guarded: set[tuple[str, str]] = set()

    def get(self, key: tuple[str, str, str]) -> PushOperation | None:
        return self._operations.get(key)

    def is_repo_busy(self, owner: str, repo: str) -> bool:
        repo_key = (owner, repo)
        return bool(self._repo_pushes.get(repo_key)) or repo_key in self._guarded

    @asynccontextmanager
    async def push_slot(self, operation: PushOperation, *, on_busy: OnBusy = "queue") -> AsyncIterator[PushOperation]:
        key = operation.key
        repo_key = operation.target.repo_key
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        if lock.locked() and on_busy == "reject":
            raise PushInProgressError(f"A push to {operation.target} is already running")

        # Holders and waiters of the key lock; the lock is dropped when none are left.
        self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            async with lock:
                if repo_key in self._guarded:
                    raise RepositoryBusyError(f"{operation.target.full_name} is being deleted")
                self._repo_pushes[repo_key] = self._repo_pushes.get(repo_key, 0) + 1
                self._operations[key] = operation
                try:
                    yield operation
                finally:
                    self._operations.pop(key, None)
                    remaining = self._repo_pushes.get(repo_key, 1) - 1
                    if remaining > 0:
                        self._repo_pushes[repo_key] = remaining
                    else:
                        self._repo_pushes.pop(repo_key, None)
        finally:
            users = self._key_users.get(key, 1) - 1
            if users > 0:
                self._key_users[key] = users
            else:
                self._key_users.pop(key, None)
                self._key_locks.pop(key, None)

    @asynccontextmanager
    async def repo_guard(self, owner: str, repo: str) -> AsyncIterator[None]:
        if self.is_repo_busy(owner, repo):
            raise RepositoryBusyError(f"{owner}/{repo} is in use by another operation")
        repo_key = (owner, repo)
        self._guarded.add(repo_key)
        try:
            yield
        finally:
            self._guarded.discard(repo_key)


def default_commit_message(changes: ChangeSet) -> str:
    count = len(changes.added) + len(changes.modified) + len(changes.deleted)
    return f"Update {count} file(s)\n\n{changes.summary()}"


async def _run_jobs(
    jobs: list[tuple[str, Callable[[], Awaitable[None]]]],
    *,
    max_workers: int,
    should_continue: Callable[[], bool],
) -> None:
    if not jobs:
        return
    pending = deque(jobs)
    failures: list[BaseException] = []

    async def _worker() -> None:
        while pending and not failures and should_continue():
            label, job = pending.popleft()
            try:
                await job()
            except Exception as exc:
                logger.debug("Upload job %s failed: %s", label, exc)
                failures.append(exc)
                return

    # Calls already in flight are allowed to finish; only unscheduled jobs are dropped.
    workers = [asyncio.create_task(_worker()) for _ in range(max(1, min(max_workers, len(jobs))))]
    await asyncio.gather(*workers)
    if failures:
        raise failures[0]


class PushOrchestrator:
    def __init__(
        self,
        client: GitHubClient,
        *,
        registry: PushRegistry | None = None,
        tree_cache: TreeCache | None = None,
        max_blob_bytes: int = DEFAULT_MAX_BLOB_BYTES,
        upload_workers: int = DEFAULT_UPLOAD_WORKERS,
        repo_init_attempts: int = 5,
        repo_init_wait_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.registry = registry or PushRegistry()
        self._tree_cache = tree_cache
        self.max_blob_bytes = max_blob_bytes
        self.upload_workers = max(1, upload_workers)
        self._repo_init_attempts = max(1, repo_init_attempts)
        self._repo_init_wait = repo_init_wait_seconds
        self._sleep = sleep

    @property
    def client(self) -> GitHubClient:
        return self._client

    def cancel(self, target: PushTarget) -> bool:
        operation = self.registry.get(target.key)
        if operation is None or operation.phase.is_terminal:
            return False
        logger.info("Cancellation requested for push to %s", target)
        operation.cancel()
        return True

    async def push(
        self,
        snapshot: Mapping[str, bytes],
        target: PushTarget,
        *,
        message: str | None = None,
        author: dict[str, str] | None = None,
        auto_create_repo: bool = False,
        private: bool = True,
        path_filter: PathFilter | None = None,
        on_busy: OnBusy = "queue",
        on_progress: ProgressCallback | None = None,
    ) -> PushResult:
        operation = PushOperation(target=target)
        reporter = _ProgressReporter(operation, on_progress)
        builder = GitObjectBuilder(
            self._client,
            target.owner,
            target.repo,
            max_blob_bytes=self.max_blob_bytes,
            blob_shas=operation.blob_shas,
        )
        try:
            async with self.registry.push_slot(operation, on_busy=on_busy):
                return await self._run(
                    operation,
                    builder,
                    snapshot,
                    reporter,
                    message=message,
                    author=author,
                    auto_create_repo=auto_create_repo,
                    private=private,
                    path_filter=path_filter,
                )
        except TreePushError as exc:
            return self._fail(operation, builder, exc, reporter)
        except BaseException:
            if not operation.phase.is_terminal:
                operation.transition(PushPhase.FAILED)
            raise

    def _enter(self, operation: PushOperation, phase: PushPhase, reporter: "_ProgressReporter") -> None:
        operation.transition(phase)
        logger.info("Push to %s: %s", operation.target, phase.value)
        reporter(phase, PHASE_PERCENT[phase])

    def _fail(
        self,
        operation: PushOperation,
        builder: GitObjectBuilder,
        error: TreePushError,
        reporter: "_ProgressReporter",
    ) -> PushResult:
        failed_in = operation.phase
        operation.error = error
        if not operation.phase.is_terminal:
            operation.transition(PushPhase.FAILED)
        logger.error("Push to %s failed during %s: %s", operation.target, failed_in.value, error)
        reporter(PushPhase.FAILED, operation.percent)
        return PushResult(
            success=False,
            phase=PushPhase.FAILED,
            error=error,
            changes=operation.changes,
            blobs_created=builder.blobs_created,
            trees_created=builder.trees_created,
        )

    async def _run(
        self,
        operation: PushOperation,
        builder: GitObjectBuilder,
        snapshot: Mapping[str, bytes],
        reporter: "_ProgressReporter",
        *,
        message: str | None,
        author: dict[str, str] | None,
        auto_create_repo: bool,
        private: bool,
        path_filter: PathFilter | None,
    ) -> PushResult:
        target = operation.target

        self._enter(operation, PushPhase.VALIDATING, reporter)
        # Size ceiling first so an oversized file costs no remote calls at all.
        for path, data in snapshot.items():
            ensure_within_ceiling(data, self.max_blob_bytes, path=path)
        base, create_ref = await self._resolve_base(target, auto_create_repo=auto_create_repo, private=private)
        operation.base_commit_sha = base.commit_sha
        operation.raise_if_cancelled()

        self._enter(operation, PushPhase.DIFFING, reporter)
        deletion_filter = path_filter or PathFilter()
        gitignore_text = getattr(snapshot, "gitignore_text", None)
        if gitignore_text:
            deletion_filter = deletion_filter.with_gitignore(gitignore_text)
        changes = diff_snapshot(snapshot, base, path_filter=deletion_filter, local_ids=snapshot_ids(snapshot))
        operation.changes = changes
        logger.info("Push to %s: %s", target, changes.summary())
        operation.raise_if_cancelled()

        self._enter(operation, PushPhase.UPLOADING_BLOBS, reporter)
        if changes.is_empty and not create_ref:
            self._enter(operation, PushPhase.COMPLETED, reporter)
            return PushResult(
                success=True,
                phase=PushPhase.COMPLETED,
                commit_sha=base.commit_sha,
                changes=changes,
            )
        await self._upload_blobs(operation, builder, snapshot, changes, reporter)
        operation.raise_if_cancelled()

        self._enter(operation, PushPhase.BUILDING_TREE, reporter)
        built = await builder.build_tree(base, changes)
        operation.new_tree_sha = built.root_sha
        operation.raise_if_cancelled()

        self._enter(operation, PushPhase.COMMITTING, reporter)
        if changes.is_empty:
            # New branch with identical content: point it at the base commit.
            commit_sha = base.commit_sha
        else:
            commit_sha = await builder.create_commit(
                built.root_sha,
                base.commit_sha,
                message or default_commit_message(changes),
                author,
            )
        operation.commit_sha = commit_sha
        operation.raise_if_cancelled()

        self._enter(operation, PushPhase.UPDATING_REF, reporter)
        outcome = await builder.update_ref(
            target.branch,
            commit_sha,
            None if create_ref else base.commit_sha,
        )
        if outcome is RefUpdate.CONFLICT:
            raise ConflictError(
                f"Branch {target.branch} of {target.full_name} moved since "
                f"{(base.commit_sha or '')[:12]}; restart the push from a fresh base"
            )
        if self._tree_cache is not None:
            await self._tree_cache.put(
                target.owner,
                target.repo,
                BaseTree(commit_sha=commit_sha, tree_sha=built.root_sha, entries=built.entries),
            )

        self._enter(operation, PushPhase.COMPLETED, reporter)
        return PushResult(
            success=True,
            phase=PushPhase.COMPLETED,
            commit_sha=commit_sha,
            changes=changes,
            blobs_created=builder.blobs_created,
            trees_created=builder.trees_created,
        )

    async def _upload_blobs(
        self,
        operation: PushOperation,
        builder: GitObjectBuilder,
        snapshot: Mapping[str, bytes],
        changes: ChangeSet,
        reporter: "_ProgressReporter",
    ) -> None:
        uploads = changes.upload_ids()
        total = len(uploads)
        completed = 0

        def make_job(path: str):
            async def _job() -> None:
                nonlocal completed
                await builder.create_blob(snapshot[path], path=path)
                completed += 1
                base_percent = PHASE_PERCENT[PushPhase.UPLOADING_BLOBS]
                reporter(PushPhase.UPLOADING_BLOBS, base_percent + UPLOAD_PERCENT_SPAN * completed // total)

            return (path, _job)

        workers = min(self.upload_workers, self._client.governor.max_concurrency)
        await _run_jobs(
            [make_job(path) for path in uploads.values()],
            max_workers=workers,
            should_continue=lambda: not operation.cancelled,
        )

    async def _resolve_base(
        self,
        target: PushTarget,
        *,
        auto_create_repo: bool,
        private: bool,
    ) -> tuple[BaseTree, bool]:
        owner, repo, branch = target.key
        just_created = False
        try:
            repo_info = await self._client.get_repo(owner, repo)
        except NotFoundError as exc:
            if not auto_create_repo:
                raise NotFoundError(
                    f"Repository {target.full_name} does not exist (auto-create is disabled)",
                    status=exc.status,
                    payload=exc.payload,
                ) from exc
            repo_info = await self._create_repository(target, private=private)
            just_created = True

        default_branch = str(repo_info.get("default_branch") or "main")
        head, create_ref = await self._resolve_head(target, default_branch, just_created=just_created)
        return await self.load_tree(owner, repo, head), create_ref

    async def load_tree(self, owner: str, repo: str, commit_sha: str) -> BaseTree:
        """Full listing of ``commit_sha``, from the tree cache when it is fresh."""
        if self._tree_cache is not None:
            cached = await self._tree_cache.get(owner, repo, commit_sha)
            if cached is not None:
                logger.debug("Using cached base tree for %s/%s at %s", owner, repo, commit_sha[:12])
                return cached

        commit = await self._client.get_commit(owner, repo, commit_sha)
        tree_sha = str(commit["tree"]["sha"])
        base = await self._client.fetch_base_tree(owner, repo, commit_sha, tree_sha)
        if self._tree_cache is not None:
            await self._tree_cache.put(owner, repo, base)
        return base

    async def _create_repository(self, target: PushTarget, *, private: bool) -> dict:
        user = await self._client.get_authenticated_user()
        login = str(user.get("login") or "")
        org: str | None = None
        if login.lower() != target.owner.lower():
            if not await self._client.is_organization(target.owner):
                raise AuthError(f"Cannot create {target.full_name}: authenticated as {login or 'unknown user'}")
            org = target.owner
        return await self._client.create_repo(
            target.repo,
            org=org,
            private=private,
            auto_init=True,
            description="Repository created by treepush",
        )

    async def _branch_head(self, owner: str, repo: str, branch: str) -> str | None:
        try:
            return await self._client.get_branch_head(owner, repo, branch)
        except NotFoundError:
            return None

    async def _resolve_head(
        self,
        target: PushTarget,
        default_branch: str,
        *,
        just_created: bool,
    ) -> tuple[str, bool]:
        owner, repo, branch = target.key
        attempts = self._repo_init_attempts if just_created else 1
        for attempt in range(1, attempts + 1):
            try:
                head = await self._branch_head(owner, repo, branch)
            except ConflictError:
                # 409 on a ref lookup means the repository has no commits yet.
                await self._initialize_branch(target)
                head = await self._branch_head(owner, repo, branch)
            if head is not None:
                return head, False

            if branch != default_branch:
                try:
                    default_head = await self._branch_head(owner, repo, default_branch)
                except ConflictError:
                    default_head = None
                if default_head is not None:
                    logger.info("Branch %s does not exist yet; basing it on %s", branch, default_branch)
                    return default_head, True

            if attempt < attempts:
                await self._sleep(self._repo_init_wait)

        raise NotFoundError(f"Branch {branch} not found in {target.full_name}")

    async def _initialize_branch(self, target: PushTarget) -> None:
        logger.info("Initializing empty repository %s with branch %s", target.full_name, target.branch)
        await self._client.put_file(
            target.owner,
            target.repo,
            GITKEEP_PATH,
            b"",
            branch=target.branch,
            message=f"Initialize repository with branch '{target.branch}'",
        )


class _ProgressReporter:
    def __init__(self, operation: PushOperation, callback: ProgressCallback | None) -> None:
        self._operation = operation
        self._callback = callback

    def __call__(self, phase: PushPhase, percent: int) -> None:
        # Progress already reported is never retracted.
        percent = max(self._operation.percent, min(100, int(percent)))
        self._operation.percent = percent
        if self._callback is not None:
            self._callback(phase, percent)
