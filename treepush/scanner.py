from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from treepush.config import CONFIG_FILENAME, STATE_DB_FILENAME
from treepush.errors import ValidationError
from treepush.filters import GITIGNORE_FILENAME, PathFilter

if TYPE_CHECKING:
    from rich.console import Console


EXCLUDED_FILENAMES = {
    CONFIG_FILENAME,
    STATE_DB_FILENAME,
    f"{STATE_DB_FILENAME}-journal",
    f"{STATE_DB_FILENAME}-wal",
    f"{STATE_DB_FILENAME}-shm",
}
EXCLUDED_DIRS = {".git"}
ARCHIVE_ROOT_PREFIX = "project/"


def normalize_snapshot_path(path: str, *, strip_prefix: str | None = ARCHIVE_ROOT_PREFIX) -> str | None:
    """Return the repository-relative form of ``path``, or None for a directory entry."""
    value = path.replace("\\", "/")
    if value.endswith("/"):
        return None
    while value.startswith("./"):
        value = value[2:]
    value = value.lstrip("/")
    if strip_prefix and value.startswith(strip_prefix):
        value = value[len(strip_prefix):]
    if not value:
        raise ValidationError(f"Invalid snapshot path: {path!r}")
    for segment in value.split("/"):
        if segment in ("", ".", ".."):
            raise ValidationError(f"Invalid snapshot path: {path!r}")
        if segment in EXCLUDED_DIRS:
            raise ValidationError(f"Snapshot path may not live inside .git: {path!r}")
    return value


class FileSnapshot(Mapping[str, bytes]):
    """Immutable, path-ordered mapping of repository-relative path to file bytes."""

    __slots__ = ("_files",)

    def __init__(self, files: Mapping[str, bytes] | None = None) -> None:
        normalized: dict[str, bytes] = {}
        for path, content in (files or {}).items():
            key = normalize_snapshot_path(path, strip_prefix=None)
            if key is None:
                continue
            if isinstance(content, str):
                content = content.encode("utf-8")
            normalized[key] = bytes(content)

        directories = {path.rsplit("/", 1)[0] for path in normalized if "/" in path}
        directories = {
            "/".join(parts[:index])
            for directory in directories
            for parts in [directory.split("/")]
            for index in range(1, len(parts) + 1)
        }
        clashes = sorted(directories.intersection(normalized))
        if clashes:
            raise ValidationError(f"Snapshot paths are both a file and a directory: {', '.join(clashes)}")
        self._files = dict(sorted(normalized.items()))

    @classmethod
    def from_mapping(
        cls,
        files: Mapping[str, bytes | str],
        *,
        strip_prefix: str | None = ARCHIVE_ROOT_PREFIX,
        path_filter: PathFilter | None = None,
        honor_gitignore: bool = True,
    ) -> "FileSnapshot":
        normalized: dict[str, bytes] = {}
        for path, content in files.items():
            key = normalize_snapshot_path(path, strip_prefix=strip_prefix)
            if key is None:
                continue
            normalized[key] = content.encode("utf-8") if isinstance(content, str) else bytes(content)

        path_filter = path_filter or PathFilter()
        gitignore = normalized.get(GITIGNORE_FILENAME)
        if honor_gitignore and gitignore is not None:
            path_filter = path_filter.with_gitignore(gitignore.decode("utf-8", errors="replace"))

        return cls({path: data for path, data in normalized.items() if path_filter.matches(path)})

    def __getitem__(self, path: str) -> bytes:
        return self._files[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __repr__(self) -> str:
        return f"FileSnapshot({len(self._files)} files, {self.total_bytes} bytes)"

    @property
    def total_bytes(self) -> int:
        return sum(len(data) for data in self._files.values())

    @property
    def gitignore_text(self) -> str | None:
        data = self._files.get(GITIGNORE_FILENAME)
        return None if data is None else data.decode("utf-8", errors="replace")


def _discover_candidates(root: Path, path_filter: PathFilter) -> tuple[list[tuple[Path, str, int]], int]:
    candidates: list[tuple[Path, str, int]] = []
    total_bytes = 0

    for file_path in sorted(root.rglob("*")):
        if not file_path.is_file():
            continue
        rel_parts = file_path.relative_to(root).parts
        if file_path.name in EXCLUDED_FILENAMES:
            continue
        if any(part in EXCLUDED_DIRS for part in rel_parts):
            continue

        relative_path = Path(*rel_parts).as_posix()
        if not path_filter.matches(relative_path):
            continue

        size = file_path.stat().st_size
        candidates.append((file_path, relative_path, size))
        total_bytes += size

    return candidates, total_bytes


def scan_snapshot(
    root: Path,
    *,
    path_filter: PathFilter | None = None,
    honor_gitignore: bool = True,
    console: "Console | None" = None,
) -> FileSnapshot:
    root = root.resolve()
    path_filter = path_filter or PathFilter()
    gitignore_path = root / GITIGNORE_FILENAME
    if honor_gitignore and gitignore_path.is_file():
        path_filter = path_filter.with_gitignore(gitignore_path.read_text(encoding="utf-8", errors="replace"))

    if console is not None:
        with console.status("Discovering files to push..."):
            candidates, _ = _discover_candidates(root, path_filter)
    else:
        candidates, _ = _discover_candidates(root, path_filter)

    return FileSnapshot({relative_path: file_path.read_bytes() for file_path, relative_path, _ in candidates})
