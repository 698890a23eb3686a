"""Thread and stream state store.

The store owns every thread's message log and the transient stream state of
each thread. All log mutations are copy-on-write: a thread is replaced by a
modified copy and listeners are notified afterwards, so a reader holding a
``Thread`` never observes a half-applied change.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Callable, Iterable

from threadpilot.config import get_config
from threadpilot.logging import get_logger
from threadpilot.messages import (
    CheckpointMessage,
    Message,
    PlanMessage,
    message_from_dict,
    message_to_dict,
)
from threadpilot.stream import StreamPhase, StreamState

log = get_logger(__name__)

THREAD_CHANGED = "thread_changed"
STREAM_STATE_CHANGED = "stream_state_changed"
PLAN_CHANGED = "plan_changed"
_EVENTS = (THREAD_CHANGED, STREAM_STATE_CHANGED, PLAN_CHANGED)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class Thread:
    """A conversation thread."""

    id: str
    created_at: str
    last_modified: str
    messages: tuple[Message, ...] = ()
    files_with_user_changes: frozenset[str] = frozenset()
    curr_checkpoint_index: int | None = None

    @classmethod
    def new(cls) -> Thread:
        now = _utcnow_iso()
        return cls(id=str(uuid.uuid4()), created_at=now, last_modified=now)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
            "messages": [message_to_dict(m) for m in self.messages],
            "files_with_user_changes": sorted(self.files_with_user_changes),
            "state": {"curr_checkpoint_index": self.curr_checkpoint_index},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Thread:
        """Create from dictionary."""
        state = data.get("state") or {}
        return cls(
            id=data["id"],
            created_at=data.get("created_at", _utcnow_iso()),
            last_modified=data.get("last_modified", _utcnow_iso()),
            messages=tuple(message_from_dict(m) for m in data.get("messages") or ()),
            files_with_user_changes=frozenset(data.get("files_with_user_changes") or ()),
            curr_checkpoint_index=state.get("curr_checkpoint_index"),
        )


class ThreadStore:
    """Process-wide map of thread state and stream state with change events."""

    def __init__(self, frame_interval: float | None = None):
        self._threads: dict[str, Thread] = {}
        self._stream_states: dict[str, StreamState] = {}
        self._listeners: dict[str, list[Callable[[str], None]]] = {event: [] for event in _EVENTS}
        self.current_thread_id: str | None = None

        if frame_interval is None:
            frame_interval = get_config().agent.stream_frame_interval
        self._frame_interval = max(0.0, float(frame_interval))
        self._pending_stream_events: set[str] = set()
        self._flush_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: str, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register ``callback(thread_id)`` for an event; returns an unsubscribe function."""
        if event not in self._listeners:
            raise ValueError(f"Unknown store event: {event}")
        self._listeners[event].append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return _unsubscribe

    def _emit(self, event: str, thread_id: str) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(thread_id)
            except Exception as e:
                log.warning("Store listener failed", listener_event=event, thread_id=thread_id, error=str(e))

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    @property
    def threads(self) -> dict[str, Thread]:
        return dict(self._threads)

    def get_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    @property
    def current_thread(self) -> Thread | None:
        if self.current_thread_id is None:
            return None
        return self._threads.get(self.current_thread_id)

    def create_thread(self) -> Thread:
        thread = Thread.new()
        self._threads[thread.id] = thread
        self._emit(THREAD_CHANGED, thread.id)
        return thread

    def put_thread(self, thread: Thread) -> None:
        self._threads[thread.id] = thread
        self._emit(THREAD_CHANGED, thread.id)

    def delete_thread(self, thread_id: str) -> bool:
        if self._threads.pop(thread_id, None) is None:
            return False
        self._stream_states.pop(thread_id, None)
        self._pending_stream_events.discard(thread_id)
        if self.current_thread_id == thread_id:
            self.current_thread_id = None
        self._emit(THREAD_CHANGED, thread_id)
        return True

    def set_current_thread(self, thread_id: str) -> None:
        if thread_id not in self._threads:
            log.debug("Ignoring switch to unknown thread", thread_id=thread_id)
            return
        self.current_thread_id = thread_id

    def _commit(self, thread_id: str, plan_changed: bool = False, **changes: Any) -> Thread | None:
        thread = self._threads.get(thread_id)
        if thread is None:
            log.debug("Ignoring mutation of unknown thread", thread_id=thread_id)
            return None
        updated = replace(thread, last_modified=_utcnow_iso(), **changes)
        self._threads[thread_id] = updated
        if plan_changed:
            self._emit(PLAN_CHANGED, thread_id)
        self._emit(THREAD_CHANGED, thread_id)
        return updated

    # ------------------------------------------------------------------
    # Message log
    # ------------------------------------------------------------------

    def append(self, thread_id: str, message: Message) -> int | None:
        """Append a message; returns its index, or ``None`` for an unknown thread."""
        thread = self._threads.get(thread_id)
        if thread is None:
            log.debug("Ignoring append to unknown thread", thread_id=thread_id)
            return None
        self._commit(
            thread_id,
            plan_changed=isinstance(message, PlanMessage),
            messages=thread.messages + (message,),
        )
        return len(thread.messages)

    def replace_at(self, thread_id: str, index: int, message: Message) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None or not 0 <= index < len(thread.messages):
            log.debug("Ignoring replace outside the log", thread_id=thread_id, index=index)
            return False
        messages = list(thread.messages)
        was_plan = isinstance(messages[index], PlanMessage)
        messages[index] = message
        self._commit(
            thread_id,
            plan_changed=was_plan or isinstance(message, PlanMessage),
            messages=tuple(messages),
        )
        return True

    def truncate_after(self, thread_id: str, index: int) -> None:
        """Drop every message after ``index`` (``-1`` empties the log)."""
        thread = self._threads.get(thread_id)
        if thread is None:
            log.debug("Ignoring truncate of unknown thread", thread_id=thread_id)
            return
        kept = thread.messages[: max(0, index + 1)]
        dropped = thread.messages[len(kept):]
        curr = thread.curr_checkpoint_index
        if curr is not None and curr >= len(kept):
            curr = None
        self._commit(
            thread_id,
            plan_changed=any(isinstance(m, PlanMessage) for m in dropped),
            messages=kept,
            curr_checkpoint_index=curr,
        )

    def remove_indices(self, thread_id: str, indices: Iterable[int]) -> None:
        """Remove messages at ``indices`` and shift every stored log index."""
        thread = self._threads.get(thread_id)
        if thread is None:
            log.debug("Ignoring removal from unknown thread", thread_id=thread_id)
            return
        removed = sorted({i for i in indices if 0 <= i < len(thread.messages)})
        if not removed:
            return

        def _shift(index: int | None) -> int | None:
            if index is None or index in removed:
                return None
            return index - sum(1 for r in removed if r < index)

        messages: list[Message] = []
        for idx, message in enumerate(thread.messages):
            if idx in removed:
                continue
            if isinstance(message, PlanMessage):
                message = replace(
                    message,
                    steps=tuple(
                        replace(step, checkpoint_index=_shift(step.checkpoint_index))
                        for step in message.steps
                    ),
                )
            messages.append(message)

        # Plan positions move with the removal, so cached plan lookups are stale.
        self._commit(
            thread_id,
            plan_changed=True,
            messages=tuple(messages),
            curr_checkpoint_index=_shift(thread.curr_checkpoint_index),
        )

    def set_curr_checkpoint_index(self, thread_id: str, index: int | None) -> None:
        self._commit(thread_id, curr_checkpoint_index=index)

    def mark_files_with_user_changes(self, thread_id: str, paths: Iterable[str]) -> None:
        thread = self._threads.get(thread_id)
        if thread is None:
            return
        self._commit(thread_id, files_with_user_changes=thread.files_with_user_changes | set(paths))

    def checkpoint_indices(self, thread_id: str) -> list[int]:
        thread = self._threads.get(thread_id)
        if thread is None:
            return []
        return [i for i, m in enumerate(thread.messages) if isinstance(m, CheckpointMessage)]

    # ------------------------------------------------------------------
    # Stream state
    # ------------------------------------------------------------------

    def get_stream_state(self, thread_id: str) -> StreamState:
        return self._stream_states.get(thread_id) or StreamState.undefined()

    def set_stream_state(self, thread_id: str, state: StreamState | None) -> None:
        """Replace a thread's stream state.

        Streaming (``LLM``) updates are coalesced into one notification per
        frame; every other transition is announced immediately.
        """
        state = state or StreamState.undefined()
        self._stream_states[thread_id] = state

        if state.phase == StreamPhase.LLM and self._frame_interval > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._pending_stream_events.add(thread_id)
                if self._flush_handle is None:
                    self._flush_handle = loop.call_later(self._frame_interval, self.flush_stream_events)
                return

        self._pending_stream_events.discard(thread_id)
        self._emit(STREAM_STATE_CHANGED, thread_id)

    def flush_stream_events(self) -> None:
        """Deliver coalesced stream notifications now."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        pending = list(self._pending_stream_events)
        self._pending_stream_events.clear()
        for thread_id in pending:
            self._emit(STREAM_STATE_CHANGED, thread_id)
