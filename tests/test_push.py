"""End-to-end pushes through the orchestrator against the fake GitHub."""

import asyncio

import pytest

from treepush.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    PushCancelledError,
    PushInProgressError,
    RepositoryBusyError,
)
from treepush.models import PushPhase, PushTarget
from treepush.push import PushOperation, PushOrchestrator
from treepush.scanner import FileSnapshot
from treepush.state_db import TreeCache

pytestmark = pytest.mark.asyncio

OWNER = "octocat"
SEED = {
    "README.md": b"# demo\n",
    "src/app.py": b"print('v1')\n",
    "src/util.py": b"def util(): ...\n",
    "docs/guide.md": b"guide\n",
}
TARGET = PushTarget(OWNER, "demo", "main")


def _snapshot(extra=None):
    return FileSnapshot({**SEED, **(extra or {})})


def _recorder():
    events = []

    def on_progress(phase, percent):
        events.append((phase, percent))

    return events, on_progress


async def test_push_creates_single_commit_with_full_snapshot(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    old_head = repo.refs["main"]
    snapshot = FileSnapshot({
        "README.md": SEED["README.md"],
        "src/app.py": b"print('v2')\n",
        "src/util.py": SEED["src/util.py"],
        "new.txt": b"new",
    })

    result = await orchestrator.push(snapshot, TARGET, message="Sync snapshot")

    assert result.success
    assert result.phase is PushPhase.COMPLETED
    assert repo.refs["main"] == result.commit_sha
    assert repo.commits[result.commit_sha]["parents"] == [old_head]
    assert repo.commits[result.commit_sha]["message"] == "Sync snapshot"
    assert repo.files() == dict(snapshot)
    assert list(result.changes.added) == ["new.txt"]
    assert list(result.changes.modified) == ["src/app.py"]
    assert result.changes.deleted == ["docs/guide.md"]


async def test_progress_follows_phase_order(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)
    events, on_progress = _recorder()

    await orchestrator.push(_snapshot({"a.txt": b"a", "b.txt": b"b"}), TARGET, on_progress=on_progress)

    assert list(dict.fromkeys(phase for phase, _ in events)) == [
        PushPhase.VALIDATING,
        PushPhase.DIFFING,
        PushPhase.UPLOADING_BLOBS,
        PushPhase.BUILDING_TREE,
        PushPhase.COMMITTING,
        PushPhase.UPDATING_REF,
        PushPhase.COMPLETED,
    ]
    percents = [percent for _, percent in events]
    assert percents == sorted(percents)
    assert events[-1] == (PushPhase.COMPLETED, 100)
    upload = [percent for phase, percent in events if phase is PushPhase.UPLOADING_BLOBS]
    assert upload == [20, 45, 70]


async def test_second_identical_push_creates_nothing(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    snapshot = _snapshot({"extra.txt": b"extra"})
    first = await orchestrator.push(snapshot, TARGET)
    fake_github.reset_calls()

    second = await orchestrator.push(snapshot, TARGET)

    assert second.success
    assert second.changes.is_empty
    assert second.commit_sha == first.commit_sha == repo.refs["main"]
    assert second.blobs_created == second.trees_created == 0
    assert fake_github.count("POST", "/git/blobs") == 0
    assert fake_github.count("POST", "/git/trees") == 0
    assert fake_github.count("POST", "/git/commits") == 0
    assert fake_github.count("PATCH", "/git/refs/heads/main") == 0


async def test_duplicate_content_creates_one_blob(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "dup", {"a.txt": b"1", "b.txt": b"2"})
    snapshot = FileSnapshot({"a.txt": b"1", "b.txt": b"2", "c.txt": b"2"})

    result = await orchestrator.push(snapshot, PushTarget(OWNER, "dup"))

    assert result.success
    assert list(result.changes.added) == ["c.txt"]
    assert result.blobs_created == 1
    assert fake_github.count("POST", "/git/blobs") == 1
    root = repo.trees[repo.head_tree()]
    shas = {entry["path"]: entry["sha"] for entry in root}
    assert shas["b.txt"] == shas["c.txt"]


async def test_oversized_file_fails_before_any_call(fake_github, github_client):
    fake_github.add_repo(OWNER, "demo", SEED)
    orchestrator = PushOrchestrator(github_client, max_blob_bytes=50)
    events, on_progress = _recorder()

    result = await orchestrator.push(_snapshot({"big.bin": b"x" * 120}), TARGET, on_progress=on_progress)

    assert not result.success
    assert isinstance(result.error, PayloadTooLargeError)
    assert result.error.path == "big.bin"
    assert fake_github.calls == []
    assert events[-1] == (PushPhase.FAILED, 5)


async def test_concurrent_branch_move_is_a_conflict(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    moved = []

    def someone_else_pushes(request):
        if request.method == "POST" and request.url.path.endswith("/git/commits") and not moved:
            moved.append(repo.commit_files({**SEED, "theirs.txt": b"theirs"}))
        return None

    fake_github.intercept(someone_else_pushes)

    result = await orchestrator.push(_snapshot({"mine.txt": b"mine"}), TARGET)

    assert not result.success
    assert isinstance(result.error, ConflictError)
    assert result.phase is PushPhase.FAILED
    assert repo.refs["main"] == moved[0]
    assert "mine.txt" not in repo.files()


async def test_cancel_between_phases(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)
    events = []

    def on_progress(phase, percent):
        events.append((phase, percent))
        if phase is PushPhase.DIFFING:
            orchestrator.cancel(TARGET)

    result = await orchestrator.push(_snapshot({"a.txt": b"a"}), TARGET, on_progress=on_progress)

    assert isinstance(result.error, PushCancelledError)
    assert fake_github.count("POST", "/git/blobs") == 0
    assert events[-1] == (PushPhase.FAILED, 15)


async def test_cancel_stops_scheduling_uploads(fake_github, github_client):
    fake_github.add_repo(OWNER, "demo", SEED)
    orchestrator = PushOrchestrator(github_client, upload_workers=1)

    def on_progress(phase, percent):
        if phase is PushPhase.UPLOADING_BLOBS and percent > 20:
            orchestrator.cancel(TARGET)

    result = await orchestrator.push(
        _snapshot({"a.txt": b"a", "b.txt": b"b", "c.txt": b"c"}),
        TARGET,
        on_progress=on_progress,
    )

    assert isinstance(result.error, PushCancelledError)
    assert fake_github.count("POST", "/git/blobs") == 1
    assert fake_github.count("POST", "/git/commits") == 0


async def test_busy_key_rejects_in_reject_mode(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)

    async with orchestrator.registry.push_slot(PushOperation(target=TARGET)):
        result = await orchestrator.push(_snapshot(), TARGET, on_busy="reject")

    assert isinstance(result.error, PushInProgressError)
    assert fake_github.calls == []


async def test_busy_key_queues_by_default(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)

    async with orchestrator.registry.push_slot(PushOperation(target=TARGET)):
        task = asyncio.create_task(orchestrator.push(_snapshot({"q.txt": b"q"}), TARGET))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not task.done()
        assert fake_github.calls == []

    result = await task
    assert result.success


async def test_key_locks_are_released_after_pushes(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)
    registry = orchestrator.registry

    async with registry.push_slot(PushOperation(target=TARGET)):
        queued = asyncio.create_task(orchestrator.push(_snapshot({"q.txt": b"q"}), TARGET))
        for _ in range(5):
            await asyncio.sleep(0)
        rejected = await orchestrator.push(_snapshot(), TARGET, on_busy="reject")
        assert TARGET.key in registry._key_locks

    assert (await queued).success
    assert isinstance(rejected.error, PushInProgressError)
    assert registry._key_locks == {}
    assert registry._key_users == {}

    await orchestrator.push(_snapshot({"r.txt": b"r"}), PushTarget(OWNER, "demo", "other"))
    assert registry._key_locks == {}


async def test_other_branches_push_independently(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    feature = PushTarget(OWNER, "demo", "feature")

    async with orchestrator.registry.push_slot(PushOperation(target=TARGET)):
        result = await orchestrator.push(_snapshot({"f.txt": b"f"}), feature, on_busy="reject")

    assert result.success
    assert repo.refs["feature"] == result.commit_sha


async def test_repository_guard_blocks_push(fake_github, orchestrator):
    fake_github.add_repo(OWNER, "demo", SEED)

    async with orchestrator.registry.repo_guard(OWNER, "demo"):
        result = await orchestrator.push(_snapshot(), TARGET)

    assert isinstance(result.error, RepositoryBusyError)


async def test_active_push_blocks_repository_guard(orchestrator):
    async with orchestrator.registry.push_slot(PushOperation(target=TARGET)):
        with pytest.raises(RepositoryBusyError):
            async with orchestrator.registry.repo_guard(OWNER, "demo"):
                pass


async def test_missing_repository_without_auto_create(fake_github, orchestrator):
    result = await orchestrator.push(_snapshot(), PushTarget(OWNER, "absent"))

    assert isinstance(result.error, NotFoundError)
    assert fake_github.count("POST", "/user/repos") == 0


async def test_missing_repository_is_created_on_request(fake_github, orchestrator):
    snapshot = _snapshot()

    result = await orchestrator.push(snapshot, PushTarget(OWNER, "fresh"), auto_create_repo=True, private=True)

    assert result.success
    repo = fake_github.repo(OWNER, "fresh")
    assert repo.private
    assert repo.files() == dict(snapshot)
    assert fake_github.count("POST", "/user/repos") == 1


async def test_organization_repository_is_created_under_org(fake_github, orchestrator):
    fake_github.organizations.add("acme")

    result = await orchestrator.push(_snapshot(), PushTarget("acme", "tools"), auto_create_repo=True)

    assert result.success
    assert fake_github.count("POST", "/orgs/acme/repos") == 1


async def test_cannot_create_repository_for_another_user(fake_github, orchestrator):
    result = await orchestrator.push(_snapshot(), PushTarget("someone", "tools"), auto_create_repo=True)

    assert isinstance(result.error, AuthError)
    assert ("someone", "tools") not in fake_github.repos


async def test_missing_branch_is_created_from_default(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    main_head = repo.refs["main"]
    feature = PushTarget(OWNER, "demo", "feature")

    result = await orchestrator.push(_snapshot({"f.txt": b"f"}), feature)

    assert result.success
    assert repo.refs["main"] == main_head
    assert repo.refs["feature"] == result.commit_sha
    assert repo.commits[result.commit_sha]["parents"] == [main_head]
    assert fake_github.count("POST", "/git/refs") == 1


async def test_missing_branch_with_identical_content_points_at_default(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)

    result = await orchestrator.push(_snapshot(), PushTarget(OWNER, "demo", "mirror"))

    assert result.success
    assert repo.refs["mirror"] == repo.refs["main"]
    assert fake_github.count("POST", "/git/commits") == 0


async def test_empty_repository_is_initialized(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "blank")
    snapshot = FileSnapshot({"hello.txt": b"hello"})

    result = await orchestrator.push(snapshot, PushTarget(OWNER, "blank"))

    assert result.success
    assert fake_github.count("PUT", "/contents/.gitkeep") == 1
    assert repo.files() == {"hello.txt": b"hello"}


async def test_default_commit_message(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)

    result = await orchestrator.push(_snapshot({"one.txt": b"1"}), TARGET)

    message = repo.commits[result.commit_sha]["message"]
    assert message.startswith("Update 1 file(s)")
    assert "1 added, 0 modified, 0 deleted" in message


async def test_rate_limited_upload_is_retried(fake_github, orchestrator, clock):
    fake_github.add_repo(OWNER, "demo", SEED)
    fake_github.fail("POST", r"/git/blobs$", 429, headers={"retry-after": "2"})

    result = await orchestrator.push(_snapshot({"r.txt": b"r"}), TARGET)

    assert result.success
    assert 2.0 in clock.sleeps


async def test_truncated_listing_falls_back_to_walking(fake_github, orchestrator):
    repo = fake_github.add_repo(OWNER, "demo", SEED)
    fake_github.truncate_listings = True

    result = await orchestrator.push(_snapshot({"t.txt": b"t"}), TARGET)

    assert result.success
    assert list(result.changes.added) == ["t.txt"]
    assert result.changes.deleted == []
    assert repo.files() == dict(_snapshot({"t.txt": b"t"}))


async def test_tree_cache_skips_refetch_after_push(fake_github, github_client, clock, tmp_path):
    fake_github.add_repo(OWNER, "demo", SEED)
    orchestrator = PushOrchestrator(github_client, tree_cache=TreeCache(tmp_path / "state.db", clock=clock))
    await orchestrator.push(_snapshot({"one.txt": b"1"}), TARGET)
    fake_github.reset_calls()

    result = await orchestrator.push(_snapshot({"one.txt": b"1", "two.txt": b"2"}), TARGET)

    assert result.success
    assert list(result.changes.added) == ["two.txt"]
    assert not any(method == "GET" and "/git/trees/" in path for method, path in fake_github.calls)
    assert not any(method == "GET" and "/git/commits/" in path for method, path in fake_github.calls)

