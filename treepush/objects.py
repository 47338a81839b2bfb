from __future__ import annotations

import logging
import posixpath
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from treepush.errors import ConflictError, NotFoundError, ValidationError
from treepush.github_api import GitHubClient
from treepush.hashing import ensure_within_ceiling, git_blob_id
from treepush.models import (
    FILE_MODE,
    TREE_MODE,
    BaseTree,
    ChangeSet,
    ContentId,
    RemoteTreeEntry,
)


logger = logging.getLogger(__name__)


class RefUpdate(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


@dataclass(slots=True)
class TreeBuildResult:
    root_sha: str
    created: dict[str, str] = field(default_factory=dict)
    entries: list[RemoteTreeEntry] = field(default_factory=list)


def _split(path: str) -> tuple[str, str]:
    parent, name = posixpath.split(path)
    return parent, name


def _ancestors(path: str) -> list[str]:
    parent = posixpath.dirname(path)
    chain = [parent]
    while parent:
        parent = posixpath.dirname(parent)
        chain.append(parent)
    return chain


def _depth(directory: str) -> int:
    return 0 if not directory else directory.count("/") + 1


class GitObjectBuilder:
    """Creates blobs, trees, commits and ref updates in one repository.

    ``blob_shas`` maps content id to the remote sha of blobs created during
    the current push so identical content is uploaded once.
    """

    def __init__(
        self,
        client: GitHubClient,
        owner: str,
        repo: str,
        *,
        max_blob_bytes: int,
        blob_shas: dict[ContentId, str] | None = None,
    ) -> None:
        self._client = client
        self.owner = owner
        self.repo = repo
        self.max_blob_bytes = max_blob_bytes
        self.blob_shas = blob_shas if blob_shas is not None else {}
        self.blobs_created = 0
        self.trees_created = 0

    async def create_blob(self, data: bytes, *, path: str | None = None) -> str:
        ensure_within_ceiling(data, self.max_blob_bytes, path=path)
        content_id = git_blob_id(data)
        known = self.blob_shas.get(content_id)
        if known is not None:
            return known

        sha = await self._client.create_blob(self.owner, self.repo, data, path=path)
        if sha != content_id:
            logger.warning("Remote blob id %s differs from local id %s for %s", sha, content_id, path)
        self.blob_shas[content_id] = sha
        self.blobs_created += 1
        logger.debug("Created blob %s for %s", sha[:12], path or "<data>")
        return sha

    async def build_tree(
        self,
        base: BaseTree,
        changes: ChangeSet,
        blob_shas: Mapping[ContentId, str] | None = None,
    ) -> TreeBuildResult:
        """Write one new tree per directory that has changed descendants, bottom-up.

        Directories without changes keep their base sha and cost no calls.
        """
        blob_shas = self.blob_shas if blob_shas is None else blob_shas
        if changes.is_empty and base.tree_sha:
            return TreeBuildResult(root_sha=base.tree_sha, entries=list(base.entries))

        base_children: dict[str, dict[str, RemoteTreeEntry]] = {}
        base_blobs: dict[str, RemoteTreeEntry] = {}
        for entry in base.entries:
            parent, name = _split(entry.path)
            base_children.setdefault(parent, {})[name] = entry
            if entry.type == "blob":
                base_blobs[entry.path] = entry

        removals: dict[str, set[str]] = {}
        upserts: dict[str, dict[str, RemoteTreeEntry]] = {}
        for path in changes.deleted:
            parent, name = _split(path)
            removals.setdefault(parent, set()).add(name)
        for path, content_id in {**changes.added, **changes.modified}.items():
            sha = blob_shas.get(content_id)
            if sha is None:
                raise ValidationError(f"No uploaded blob for {path} ({content_id})")
            previous = base_blobs.get(path)
            mode = previous.mode if previous is not None and previous.mode else FILE_MODE
            parent, name = _split(path)
            upserts.setdefault(parent, {})[name] = RemoteTreeEntry(path=path, content_id=sha, mode=mode)

        dirty: set[str] = set()
        for path in changes.changed_paths:
            dirty.update(_ancestors(path))
        dirty_children: dict[str, list[str]] = {}
        for directory in dirty:
            if directory:
                dirty_children.setdefault(posixpath.dirname(directory), []).append(directory)

        new_shas: dict[str, str | None] = {}
        final_children: dict[str, dict[str, RemoteTreeEntry]] = {}
        created: dict[str, str] = {}

        for directory in sorted(dirty, key=lambda item: (-_depth(item), item)):
            children = dict(base_children.get(directory, {}))

            for name in removals.get(directory, ()):
                if name in children and children[name].type != "tree":
                    del children[name]

            for child_dir in dirty_children.get(directory, ()):
                name = posixpath.basename(child_dir)
                child_sha = new_shas[child_dir]
                if child_sha is None:
                    if name in children and children[name].type == "tree":
                        del children[name]
                else:
                    children[name] = RemoteTreeEntry(
                        path=child_dir, content_id=child_sha, mode=TREE_MODE, type="tree"
                    )

            for name, entry in upserts.get(directory, {}).items():
                existing = children.get(name)
                if existing is not None and existing.type == "tree":
                    raise ValidationError(f"{entry.path} would replace a directory that still has files")
                children[name] = entry

            if not children:
                # Git has no empty directories; drop it from the parent instead.
                new_shas[directory] = None
                continue

            payload = [
                {"path": name, "mode": entry.mode, "type": entry.type, "sha": entry.content_id}
                for name, entry in sorted(children.items())
            ]
            sha = await self._client.create_tree(self.owner, self.repo, payload)
            self.trees_created += 1
            new_shas[directory] = sha
            created[directory] = sha
            final_children[directory] = children
            logger.debug("Created tree %s for /%s (%d entries)", sha[:12], directory, len(payload))

        root_sha = new_shas.get("")
        if root_sha is None:
            raise ValidationError("The push would leave the branch without any files")

        entries: list[RemoteTreeEntry] = []

        def _collect(directory: str) -> None:
            children = final_children[directory] if directory in dirty else base_children.get(directory, {})
            for name, entry in sorted(children.items()):
                path = posixpath.join(directory, name) if directory else name
                if entry.type == "tree":
                    entries.append(RemoteTreeEntry(path=path, content_id=entry.content_id, mode=TREE_MODE, type="tree"))
                    _collect(path)
                else:
                    entries.append(RemoteTreeEntry(path=path, content_id=entry.content_id, mode=entry.mode, type=entry.type))

        _collect("")
        entries.sort(key=lambda entry: entry.path)
        return TreeBuildResult(root_sha=root_sha, created=created, entries=entries)

    async def create_commit(
        self,
        root_tree_sha: str,
        parent_sha: str | None,
        message: str,
        author: dict[str, str] | None = None,
    ) -> str:
        if not message.strip():
            raise ValidationError("Commit message must not be empty")
        parents = [parent_sha] if parent_sha else []
        sha = await self._client.create_commit(
            self.owner,
            self.repo,
            message=message,
            tree=root_tree_sha,
            parents=parents,
            author=author,
        )
        logger.debug("Created commit %s on tree %s", sha[:12], root_tree_sha[:12])
        return sha

    async def update_ref(self, branch: str, commit_sha: str, expected_old_sha: str | None) -> RefUpdate:
        """Advance ``branch`` only if it still points at ``expected_old_sha``.

        ``expected_old_sha=None`` means the branch must not exist yet.
        """
        if expected_old_sha is None:
            try:
                await self._client.create_ref(self.owner, self.repo, branch, commit_sha)
            except ConflictError:
                logger.warning("Branch %s was created concurrently", branch)
                return RefUpdate.CONFLICT
            return RefUpdate.OK

        try:
            current = await self._client.get_branch_head(self.owner, self.repo, branch)
        except NotFoundError:
            logger.warning("Branch %s disappeared before the ref update", branch)
            return RefUpdate.CONFLICT
        if current != expected_old_sha:
            logger.warning(
                "Branch %s moved from %s to %s during the push",
                branch,
                expected_old_sha[:12],
                current[:12],
            )
            return RefUpdate.CONFLICT

        try:
            await self._client.update_ref(self.owner, self.repo, branch, commit_sha)
        except ConflictError:
            logger.warning("Ref update of %s rejected as non-fast-forward", branch)
            return RefUpdate.CONFLICT
        return RefUpdate.OK
