import pytest

from threadpilot.caches import FileReadCache, LRUCache, MessagePrepCache, PreparedEntry
from threadpilot.config import CacheConfig
from threadpilot.llm import ModelSelection
from threadpilot.messages import AssistantMessage, CheckpointKind, CheckpointMessage, UserMessage
from threadpilot.snapshots import FileSnapshot


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _entry(tag: str) -> PreparedEntry:
    return PreparedEntry(
        messages=[{"role": "user", "content": tag}],
        system_message=None,
        token_count=1,
        context_size=len(tag),
        timestamp=0.0,
    )


def test_lru_evicts_least_recently_used():
    cache: LRUCache[str, int] = LRUCache(2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1

    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.evictions == 1


def test_lru_rejects_empty_capacity():
    with pytest.raises(ValueError):
        LRUCache(0)


def test_file_read_key_format():
    assert FileReadCache.make_key("/src/a.py") == "/src/a.py|null|null|1"
    assert FileReadCache.make_key("/src/a.py", 1, 50, 2) == "/src/a.py|1|50|2"


def test_file_read_cache_is_scoped_per_thread():
    cache = FileReadCache(max_entries=10)
    key = FileReadCache.make_key("/a.py")
    cache.set("t1", key, "contents")

    assert cache.get("t1", key) == "contents"
    assert cache.get("t2", key) is None


def test_invalidate_path_drops_every_range_of_that_file():
    cache = FileReadCache(max_entries=10)
    cache.set("t1", FileReadCache.make_key("/a.py"), "all")
    cache.set("t1", FileReadCache.make_key("/a.py", 1, 10), "head")
    cache.set("t1", FileReadCache.make_key("/a.pyx"), "other")
    cache.set("t2", FileReadCache.make_key("/a.py"), "all")

    removed = cache.invalidate_path("/a.py", "t1")

    assert removed == 2
    assert cache.get("t1", FileReadCache.make_key("/a.pyx")) == "other"
    assert cache.get("t2", FileReadCache.make_key("/a.py")) == "all"

    assert cache.invalidate_path("/a.py") == 1
    assert cache.get("t2", FileReadCache.make_key("/a.py")) is None


def test_file_read_cache_per_thread_capacity():
    cache = FileReadCache(max_entries=2)
    for i in range(3):
        cache.set("t1", FileReadCache.make_key(f"/f{i}.py"), i)

    assert cache.get("t1", FileReadCache.make_key("/f0.py")) is None
    assert cache.get("t1", FileReadCache.make_key("/f2.py")) == 2

    cache.clear_thread("t1")
    assert cache.get("t1", FileReadCache.make_key("/f2.py")) is None


def test_prep_cache_entries_expire_after_ttl():
    clock = FakeClock()
    cache = MessagePrepCache(CacheConfig(message_prep_ttl=5.0, message_prep_max_entries=50), clock=clock)
    cache.set("k", _entry("x"))

    clock.now = 4.9
    assert cache.get("k") is not None
    clock.now = 5.0
    assert cache.get("k") is None
    assert cache.stats == {"hits": 1, "misses": 1, "evictions": 0}


def test_prep_cache_capacity():
    cache = MessagePrepCache(CacheConfig(message_prep_max_entries=2), clock=FakeClock())
    for key in ("a", "b", "c"):
        cache.set(key, _entry(key))

    assert len(cache) == 2
    assert cache.get("a") is None


def test_prep_key_depends_on_content_model_mode_and_context():
    model = ModelSelection("openai", "gpt-4o")
    messages = [UserMessage(content="hello"), AssistantMessage(display_content="hi")]
    key = MessagePrepCache.make_key(messages, model, "agent")

    assert key == MessagePrepCache.make_key(list(messages), model, "agent")
    assert key != MessagePrepCache.make_key([UserMessage(content="hello!")], model, "agent")
    assert key != MessagePrepCache.make_key(messages, ModelSelection("openai", "gpt-4o-mini"), "agent")
    assert key != MessagePrepCache.make_key(messages, model, "normal")
    assert key != MessagePrepCache.make_key(messages, model, "agent", ["context snippet"])


def test_prep_key_ignores_checkpoint_contents():
    model = ModelSelection("openai", "gpt-4o")
    before = [
        UserMessage(content="hello"),
        CheckpointMessage(kind=CheckpointKind.USER_EDIT, snapshot_of_path={"a.py": FileSnapshot("v1")}),
    ]
    after = [
        UserMessage(content="hello"),
        CheckpointMessage(kind=CheckpointKind.USER_EDIT, snapshot_of_path={"a.py": FileSnapshot("v2")}),
    ]

    assert MessagePrepCache.make_key(before, model, "agent") == MessagePrepCache.make_key(after, model, "agent")
