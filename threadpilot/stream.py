"""Transient per-thread streaming state and cancellation tokens."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from threadpilot.logging import get_logger

log = get_logger(__name__)


class Interrupt:
    """Cancellation token for one running operation.

    The token becomes active once the guarded operation is actually running
    and has supplied its canceller. ``cancel()`` before that point does
    nothing and returns ``False``.
    """

    def __init__(self) -> None:
        self._canceller: Callable[[], None] | None = None
        self._active = asyncio.Event()
        self._cancelled = asyncio.Event()

    @classmethod
    def armed(cls, canceller: Callable[[], None] | None = None) -> Interrupt:
        """Return a token that is already active."""
        token = cls()
        token.activate(canceller or (lambda: None))
        return token

    def activate(self, canceller: Callable[[], None]) -> None:
        if self._active.is_set():
            return
        self._canceller = canceller
        self._active.set()

    @property
    def is_active(self) -> bool:
        return self._active.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def became_active(self) -> None:
        await self._active.wait()

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def cancel(self) -> bool:
        if not self._active.is_set() or self._cancelled.is_set():
            return False
        self._cancelled.set()
        try:
            if self._canceller is not None:
                self._canceller()
        except Exception as e:
            log.warning("Interrupt canceller failed", error=str(e))
        return True

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` if cancelled meanwhile."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


class StreamPhase(str, Enum):
    PREPARING = "preparing"
    LLM = "LLM"
    TOOL = "tool"
    AWAITING_USER = "awaiting_user"
    IDLE = "idle"


@dataclass(frozen=True)
class StreamError:
    message: str
    full_error: BaseException | None = None


@dataclass(frozen=True)
class StreamingToolCall:
    """A tool call as far as the model has streamed it."""

    name: str
    raw_params: dict[str, Any]
    id: str = ""
    done: bool = False


@dataclass(frozen=True)
class LLMInfo:
    display_content_so_far: str = ""
    reasoning_so_far: str = ""
    tool_call_so_far: StreamingToolCall | None = None


@dataclass(frozen=True)
class ToolInfo:
    tool_name: str
    tool_params: Any
    id: str
    content: str = ""
    raw_params: dict[str, Any] | None = None


@dataclass(frozen=True)
class StreamState:
    """Stream state of one thread; ``phase=None`` is the undefined state."""

    phase: StreamPhase | None = None
    interrupt: Interrupt | None = None
    llm_info: LLMInfo | None = None
    tool_info: ToolInfo | None = None
    error: StreamError | None = None

    @property
    def is_running(self) -> bool:
        return self.phase is not None

    @classmethod
    def undefined(cls, error: StreamError | None = None) -> StreamState:
        return cls(error=error)

    @classmethod
    def preparing(cls, interrupt: Interrupt | None = None) -> StreamState:
        return cls(phase=StreamPhase.PREPARING, interrupt=interrupt)

    @classmethod
    def llm(cls, info: LLMInfo, interrupt: Interrupt | None = None) -> StreamState:
        return cls(phase=StreamPhase.LLM, llm_info=info, interrupt=interrupt)

    @classmethod
    def tool(cls, info: ToolInfo, interrupt: Interrupt | None = None) -> StreamState:
        return cls(phase=StreamPhase.TOOL, tool_info=info, interrupt=interrupt)

    @classmethod
    def awaiting_user(cls) -> StreamState:
        return cls(phase=StreamPhase.AWAITING_USER)

    @classmethod
    def idle(cls, interrupt: Interrupt | None = None) -> StreamState:
        return cls(phase=StreamPhase.IDLE, interrupt=interrupt)
