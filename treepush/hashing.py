from __future__ import annotations

import hashlib

from treepush.errors import PayloadTooLargeError
from treepush.models import ContentId


def git_blob_id(data: bytes) -> ContentId:
    """Return the id the remote store assigns to a blob with this content.

    Same rule as `git hash-object`: sha1 over ``b"blob <len>\\0" + data``.
    """
    digest = hashlib.sha1()
    digest.update(b"blob %d\x00" % len(data))
    digest.update(data)
    return digest.hexdigest()


def ensure_within_ceiling(data: bytes, limit: int, *, path: str | None = None) -> None:
    size = len(data)
    if limit > 0 and size > limit:
        raise PayloadTooLargeError(path, size, limit)
