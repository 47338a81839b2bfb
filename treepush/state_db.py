from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Callable

import aiosqlite

from treepush.models import BaseTree, RemoteTreeEntry, TempRepoRecord


TREE_CACHE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tree_cache (
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    commit_sha TEXT NOT NULL,
    tree_sha TEXT NOT NULL,
    entries TEXT NOT NULL,
    fetched_at REAL NOT NULL,
    PRIMARY KEY (owner, repo, commit_sha)
);
"""

TEMP_REPOS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS temp_repos (
    owner TEXT NOT NULL,
    temp_repo TEXT NOT NULL,
    original_repo TEXT NOT NULL,
    created_at REAL NOT NULL,
    ttl_seconds INTEGER NOT NULL,
    delete_attempts INTEGER NOT NULL DEFAULT 0,
    needs_manual_cleanup INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    PRIMARY KEY (owner, temp_repo)
);
"""


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(TREE_CACHE_SCHEMA_SQL)
        await db.execute(TEMP_REPOS_SCHEMA_SQL)
        await db.commit()


def _encode_entries(entries: list[RemoteTreeEntry]) -> str:
    return json.dumps([[entry.path, entry.content_id, entry.mode, entry.type] for entry in entries])


def _decode_entries(raw: str) -> list[RemoteTreeEntry]:
    return [
        RemoteTreeEntry(path=path, content_id=content_id, mode=mode, type=entry_type)
        for path, content_id, mode, entry_type in json.loads(raw)
    ]


async def load_cached_tree(
    db_path: Path,
    owner: str,
    repo: str,
    commit_sha: str,
    *,
    not_before: float,
) -> BaseTree | None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT tree_sha, entries FROM tree_cache
            WHERE owner = ? AND repo = ? AND commit_sha = ? AND fetched_at >= ?
            """,
            (owner, repo, commit_sha, not_before),
        )
        row = await cursor.fetchone()
        await cursor.close()
    if row is None:
        return None
    return BaseTree(
        commit_sha=commit_sha,
        tree_sha=str(row["tree_sha"]),
        entries=_decode_entries(str(row["entries"])),
    )


async def store_cached_tree(
    db_path: Path,
    owner: str,
    repo: str,
    base: BaseTree,
    *,
    fetched_at: float,
    prune_before: float | None = None,
) -> None:
    if base.commit_sha is None or base.tree_sha is None:
        return
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO tree_cache (owner, repo, commit_sha, tree_sha, entries, fetched_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (owner, repo, base.commit_sha, base.tree_sha, _encode_entries(base.entries), fetched_at),
        )
        if prune_before is not None:
            await db.execute("DELETE FROM tree_cache WHERE fetched_at < ?", (prune_before,))
        await db.commit()


class TreeCache:
    """Short-lived cache of base tree listings keyed by head commit."""

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def get(self, owner: str, repo: str, commit_sha: str) -> BaseTree | None:
        return await load_cached_tree(
            self.db_path,
            owner,
            repo,
            commit_sha,
            not_before=self._clock() - self.ttl_seconds,
        )

    async def put(self, owner: str, repo: str, base: BaseTree) -> None:
        now = self._clock()
        await store_cached_tree(
            self.db_path,
            owner,
            repo,
            base,
            fetched_at=now,
            prune_before=now - self.ttl_seconds,
        )


def _record_from_row(row: aiosqlite.Row) -> TempRepoRecord:
    return TempRepoRecord(
        original_repo=str(row["original_repo"]),
        temp_repo=str(row["temp_repo"]),
        owner=str(row["owner"]),
        created_at=float(row["created_at"]),
        ttl_seconds=int(row["ttl_seconds"]),
        delete_attempts=int(row["delete_attempts"]),
        needs_manual_cleanup=bool(row["needs_manual_cleanup"]),
        last_error=None if row["last_error"] is None else str(row["last_error"]),
    )


async def load_temp_repos(db_path: Path) -> list[TempRepoRecord]:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT owner, temp_repo, original_repo, created_at, ttl_seconds,
                   delete_attempts, needs_manual_cleanup, last_error
            FROM temp_repos ORDER BY created_at, temp_repo
            """
        )
        rows = await cursor.fetchall()
        await cursor.close()
    return [_record_from_row(row) for row in rows]


async def upsert_temp_repo(db_path: Path, record: TempRepoRecord) -> None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO temp_repos (
                owner, temp_repo, original_repo, created_at, ttl_seconds,
                delete_attempts, needs_manual_cleanup, last_error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.owner,
                record.temp_repo,
                record.original_repo,
                record.created_at,
                record.ttl_seconds,
                record.delete_attempts,
                int(record.needs_manual_cleanup),
                record.last_error,
            ),
        )
        await db.commit()


async def delete_temp_repo(db_path: Path, owner: str, temp_repo: str) -> None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "DELETE FROM temp_repos WHERE owner = ? AND temp_repo = ?",
            (owner, temp_repo),
        )
        await db.commit()
