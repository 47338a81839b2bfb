from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from treepush.errors import TreePushError


ContentId = str
EntryType = Literal["blob", "tree", "commit"]

FILE_MODE = "100644"
TREE_MODE = "040000"
SUBMODULE_MODE = "160000"


@dataclass(slots=True, frozen=True)
class RemoteTreeEntry:
    path: str
    content_id: ContentId
    mode: str = FILE_MODE
    type: EntryType = "blob"


@dataclass(slots=True)
class BaseTree:
    """Last-known shape of a branch: its head commit, root tree and full listing."""

    commit_sha: str | None
    tree_sha: str | None
    entries: list[RemoteTreeEntry] = field(default_factory=list)

    def blobs(self) -> dict[str, RemoteTreeEntry]:
        return {entry.path: entry for entry in self.entries if entry.type == "blob"}


@dataclass(slots=True)
class ChangeSet:
    added: dict[str, ContentId] = field(default_factory=dict)
    modified: dict[str, ContentId] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)

    @property
    def changed_paths(self) -> list[str]:
        return sorted({*self.added, *self.modified, *self.deleted})

    def upload_ids(self) -> dict[ContentId, str]:
        """Distinct content ids to upload, each mapped to the first path carrying it."""
        ids: dict[ContentId, str] = {}
        for path, content_id in sorted({**self.added, **self.modified}.items()):
            ids.setdefault(content_id, path)
        return ids

    def summary(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.modified)} modified, "
            f"{len(self.deleted)} deleted"
        )


@dataclass(slots=True, frozen=True)
class PushTarget:
    owner: str
    repo: str
    branch: str = "main"

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.owner, self.repo, self.branch)

    @property
    def repo_key(self) -> tuple[str, str]:
        return (self.owner, self.repo)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}@{self.branch}"


class PushPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DIFFING = "diffing"
    UPLOADING_BLOBS = "uploading_blobs"
    BUILDING_TREE = "building_tree"
    COMMITTING = "committing"
    UPDATING_REF = "updating_ref"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PushPhase.COMPLETED, PushPhase.FAILED)


class RateLimitScope(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ScopeStatus(str, Enum):
    OPEN = "open"
    THROTTLED = "throttled"


@dataclass(slots=True)
class RateLimitState:
    scope: RateLimitScope
    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None
    status: ScopeStatus = ScopeStatus.OPEN
    blocked_until: float = 0.0
    hits: int = 0


@dataclass(slots=True)
class PushResult:
    success: bool
    phase: PushPhase
    commit_sha: str | None = None
    error: "TreePushError | None" = None
    changes: ChangeSet | None = None
    blobs_created: int = 0
    trees_created: int = 0


@dataclass(slots=True)
class TempRepoRecord:
    original_repo: str
    temp_repo: str
    owner: str
    created_at: float
    ttl_seconds: int
    delete_attempts: int = 0
    needs_manual_cleanup: bool = False
    last_error: str | None = None

    @property
    def repo_key(self) -> tuple[str, str]:
        return (self.owner, self.temp_repo)

    def elapsed(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return self.elapsed(now) >= self.ttl_seconds

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.ttl_seconds - self.elapsed(now))
