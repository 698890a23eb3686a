"""Read-through caches used by the agent loop."""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Sequence, TypeVar

from threadpilot.config import CacheConfig, get_config
from threadpilot.llm import ModelSelection
from threadpilot.logging import get_logger
from threadpilot.messages import CheckpointMessage, Message, message_to_dict

log = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Size-bounded LRU map with optional per-entry time to live."""

    def __init__(
        self,
        max_size: int,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, stored_at: float) -> bool:
        return self.ttl is not None and self._clock() - stored_at >= self.ttl

    def get(self, key: K) -> V | None:
        item = self._entries.get(key)
        if item is None:
            self.misses += 1
            return None
        stored_at, value = item
        if self._expired(stored_at):
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (self._clock(), value)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.evictions += 1

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[K], bool]) -> int:
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[K]:
        return list(self._entries)


class FileReadCache:
    """Per-thread LRU of ``read_file`` results."""

    def __init__(self, max_entries: int | None = None):
        self.max_entries = max_entries or get_config().cache.file_read_max_entries
        self._threads: dict[str, LRUCache[str, Any]] = {}

    @staticmethod
    def make_key(
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
        page_number: int | None = None,
    ) -> str:
        start = "null" if start_line is None else start_line
        end = "null" if end_line is None else end_line
        return f"{path}|{start}|{end}|{page_number or 1}"

    def get(self, thread_id: str, key: str) -> Any | None:
        cache = self._threads.get(thread_id)
        if cache is None:
            return None
        return cache.get(key)

    def set(self, thread_id: str, key: str, result: Any) -> None:
        cache = self._threads.get(thread_id)
        if cache is None:
            cache = LRUCache(self.max_entries)
            self._threads[thread_id] = cache
        cache.set(key, result)

    def invalidate_path(self, path: str, thread_id: str | None = None) -> int:
        """Drop cached reads of ``path`` (in one thread, or everywhere)."""
        prefix = f"{path}|"
        if thread_id is None:
            caches = list(self._threads.values())
        else:
            caches = [self._threads[thread_id]] if thread_id in self._threads else []
        removed = sum(cache.delete_where(lambda key: key.startswith(prefix)) for cache in caches)
        if removed:
            log.debug("Invalidated cached reads", path=path, entries=removed)
        return removed

    def clear_thread(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)


@dataclass
class PreparedEntry:
    """Cached model-ready payload."""

    messages: list[dict[str, Any]]
    system_message: str | None
    token_count: int
    context_size: int
    timestamp: float


def _fingerprint(message: Message) -> dict[str, Any]:
    if isinstance(message, CheckpointMessage):
        return {"role": message.role}
    return message_to_dict(message)


class MessagePrepCache:
    """Global LRU+TTL cache of prepared model payloads."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = config or get_config().cache
        self._cache: LRUCache[str, PreparedEntry] = LRUCache(
            config.message_prep_max_entries,
            ttl=config.message_prep_ttl,
            clock=clock,
        )

    @staticmethod
    def make_key(
        chat_messages: Sequence[Message],
        model: ModelSelection,
        chat_mode: str,
        retrieval_context: Sequence[str] | None = None,
    ) -> str:
        payload = json.dumps([_fingerprint(m) for m in chat_messages], sort_keys=True, default=str)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        context_key = json.dumps(list(retrieval_context)[:10]) if retrieval_context else "null"
        return f"{model.key}|{chat_mode}|{digest}|{context_key}"

    def get(self, key: str) -> PreparedEntry | None:
        return self._cache.get(key)

    def set(self, key: str, entry: PreparedEntry) -> None:
        self._cache.set(key, entry)

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> dict[str, int]:
        return {"hits": self._cache.hits, "misses": self._cache.misses, "evictions": self._cache.evictions}
