import pytest

from threadpilot.messages import AssistantMessage, CheckpointKind, CheckpointMessage, ToolMessage, ToolStatus, UserMessage
from threadpilot.persistence import ThreadRepository
from threadpilot.snapshots import FileSnapshot
from threadpilot.store import Thread


def _thread(*messages) -> Thread:
    base = Thread.new()
    return Thread(
        id=base.id,
        created_at=base.created_at,
        last_modified=base.last_modified,
        messages=messages,
        files_with_user_changes=frozenset({"a.py"}),
        curr_checkpoint_index=0 if messages else None,
    )


@pytest.mark.asyncio
async def test_repository_uses_db_path_override(tmp_path):
    db_path = tmp_path / "nested" / "threads.db"
    repo = ThreadRepository(db_path=db_path)
    try:
        await repo.save([_thread()])
        assert db_path.exists()
    finally:
        await repo.close()


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    thread = _thread(
        CheckpointMessage(kind=CheckpointKind.USER_EDIT, snapshot_of_path={"a.py": FileSnapshot("x = 1\n")}),
        UserMessage(content="hello", display_content="hello"),
        AssistantMessage(display_content="hi", reasoning="greeting"),
        ToolMessage(id="t1", name="read_file", status=ToolStatus.SUCCESS, content="x = 1", raw_params={"uri": "a.py"}),
    )
    repo = ThreadRepository(db_path=tmp_path / "threads.db")
    try:
        await repo.save([thread])
    finally:
        await repo.close()

    reopened = ThreadRepository(db_path=tmp_path / "threads.db")
    try:
        loaded = await reopened.load()
    finally:
        await reopened.close()

    assert len(loaded) == 1
    assert loaded[0].id == thread.id
    assert loaded[0].messages == thread.messages
    assert loaded[0].files_with_user_changes == frozenset({"a.py"})
    assert loaded[0].curr_checkpoint_index == 0


@pytest.mark.asyncio
async def test_save_drops_threads_missing_from_the_set(tmp_path):
    keep = _thread(UserMessage(content="keep", display_content="keep"))
    drop = _thread(UserMessage(content="drop", display_content="drop"))
    repo = ThreadRepository(db_path=tmp_path / "threads.db")
    try:
        await repo.save([keep, drop])
        await repo.save([keep])
        loaded = await repo.load()

        assert [t.id for t in loaded] == [keep.id]

        await repo.save([])
        assert await repo.load() == []
    finally:
        await repo.close()


@pytest.mark.asyncio
async def test_delete_thread(tmp_path):
    thread = _thread()
    repo = ThreadRepository(db_path=tmp_path / "threads.db")
    try:
        await repo.save_thread(thread)

        assert await repo.delete_thread(thread.id) is True
        assert await repo.delete_thread(thread.id) is False
        assert await repo.load() == []
    finally:
        await repo.close()


@pytest.mark.asyncio
async def test_unreadable_rows_are_skipped(tmp_path):
    good = _thread(UserMessage(content="fine", display_content="fine"))
    repo = ThreadRepository(db_path=tmp_path / "threads.db")
    try:
        await repo.save_thread(good)
        db = await repo._ensure_db()
        await db.execute(
            "INSERT INTO threads (id, created_at, last_modified, messages) VALUES (?, ?, ?, ?)",
            ("broken", "zzz", "zzz", "not json"),
        )
        await db.execute(
            "INSERT INTO threads (id, created_at, last_modified, messages) VALUES (?, ?, ?, ?)",
            ("alien", "zzzz", "zzzz", '[{"role": "martian"}]'),
        )
        await db.commit()

        loaded = await repo.load()

        assert [t.id for t in loaded] == [good.id]
    finally:
        await repo.close()
