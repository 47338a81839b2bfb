from __future__ import annotations

from collections.abc import Iterable, Mapping

from treepush.filters import PathFilter
from treepush.hashing import git_blob_id
from treepush.models import BaseTree, ChangeSet, ContentId, RemoteTreeEntry


def snapshot_ids(snapshot: Mapping[str, bytes]) -> dict[str, ContentId]:
    return {path: git_blob_id(data) for path, data in snapshot.items()}


def diff_snapshot(
    snapshot: Mapping[str, bytes],
    base: BaseTree | Iterable[RemoteTreeEntry],
    *,
    path_filter: PathFilter | None = None,
    local_ids: Mapping[str, ContentId] | None = None,
) -> ChangeSet:
    """Compare a snapshot against the remote listing by content id only.

    Base ids are trusted as-is; nothing is fetched or re-hashed on the remote
    side. Remote paths outside ``path_filter`` are never reported as deleted.
    """
    entries = base.entries if isinstance(base, BaseTree) else base
    base_ids = {entry.path: entry.content_id for entry in entries if entry.type == "blob"}
    local_ids = local_ids if local_ids is not None else snapshot_ids(snapshot)
    path_filter = path_filter or PathFilter()

    added: dict[str, ContentId] = {}
    modified: dict[str, ContentId] = {}
    deleted: list[str] = []

    for path in snapshot:
        content_id = local_ids[path]
        old = base_ids.get(path)
        if old is None:
            added[path] = content_id
        elif old != content_id:
            modified[path] = content_id

    for path in base_ids:
        if path not in snapshot and path_filter.matches(path):
            deleted.append(path)

    return ChangeSet(
        added=dict(sorted(added.items())),
        modified=dict(sorted(modified.items())),
        deleted=sorted(deleted),
    )
