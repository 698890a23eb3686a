"""Model-facing contracts: transport, message preparation and retry policy."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from threadpilot.config import AgentConfig
from threadpilot.exceptions import ProviderError, RateLimitError
from threadpilot.logging import get_logger
from threadpilot.messages import (
    AssistantMessage,
    InterruptedStreamingToolMessage,
    Message,
    ToolMessage,
    UserMessage,
)
from threadpilot.stream import StreamingToolCall

log = get_logger(__name__)

AUTO = "auto"
IMAGE_TOKEN_ESTIMATE = 100


@dataclass(frozen=True)
class ModelSelection:
    """A provider/model pair; ``auto/auto`` asks the router to choose."""

    provider_name: str
    model_name: str

    @classmethod
    def auto(cls) -> "ModelSelection":
        return cls(provider_name=AUTO, model_name=AUTO)

    @property
    def is_auto(self) -> bool:
        return self.provider_name == AUTO and self.model_name == AUTO

    @property
    def key(self) -> str:
        return f"{self.provider_name}/{self.model_name}"


@dataclass
class ToolCall:
    """A completed tool call from the model."""

    id: str
    name: str
    raw_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamChunk:
    """Cumulative streaming progress (full text so far, not a delta)."""

    text: str = ""
    reasoning: str = ""
    tool_call: StreamingToolCall | None = None


@dataclass
class ModelResponse:
    """Final message from the model."""

    text: str = ""
    reasoning: str = ""
    tool_call: ToolCall | None = None


@dataclass
class PreparedMessages:
    """Model-ready payload produced from a thread's log."""

    messages: list[dict[str, Any]]
    system_message: str | None = None


@dataclass
class ModelRequest:
    """One call to the model."""

    messages: list[dict[str, Any]]
    model: ModelSelection
    chat_mode: str
    system_message: str | None = None
    thread_id: str = ""


class ModelTransport(ABC):
    """Streaming client for a language model.

    ``send_message`` has exactly one terminal outcome: it returns the final
    message, raises ``ProviderError`` or is cancelled (``asyncio.CancelledError``).
    """

    @abstractmethod
    async def send_message(
        self,
        request: ModelRequest,
        on_text: Callable[[StreamChunk], None] | None = None,
    ) -> ModelResponse:
        pass

    def supports_tools(self, model: ModelSelection) -> bool:
        """Whether the model honours native tool calling."""
        return True


class MessagePreparer(ABC):
    """Turns a thread's log into the payload sent to the model."""

    @abstractmethod
    async def prepare(
        self,
        chat_messages: Sequence[Message],
        model_selection: ModelSelection,
        chat_mode: str,
        retrieval_context: Sequence[str] | None = None,
    ) -> PreparedMessages:
        pass


class BasicMessagePreparer(MessagePreparer):
    """Role/content conversion of the conversational entries of a log."""

    def __init__(self, system_message: str | None = None):
        self.system_message = system_message

    async def prepare(
        self,
        chat_messages: Sequence[Message],
        model_selection: ModelSelection,
        chat_mode: str,
        retrieval_context: Sequence[str] | None = None,
    ) -> PreparedMessages:
        messages: list[dict[str, Any]] = []
        for message in chat_messages:
            if isinstance(message, UserMessage):
                messages.append({"role": "user", "content": message.content})
            elif isinstance(message, AssistantMessage):
                if message.display_content:
                    messages.append({"role": "assistant", "content": message.display_content})
            elif isinstance(message, ToolMessage):
                messages.append({
                    "role": "tool",
                    "content": message.content,
                    "tool_call_id": message.id,
                    "tool_name": message.name,
                })
            elif isinstance(message, InterruptedStreamingToolMessage):
                messages.append({
                    "role": "assistant",
                    "content": f"(tool call to {message.name} was interrupted)",
                })

        system_message = self.system_message
        if retrieval_context:
            context = "\n".join(retrieval_context)
            system_message = f"{system_message or ''}\n\nRelevant context:\n{context}".strip()
        return PreparedMessages(messages=messages, system_message=system_message)


def compute_token_count(messages: Sequence[dict[str, Any]]) -> tuple[int, int]:
    """Rough prompt size: (estimated tokens, characters of text)."""
    token_count = 0
    context_size = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            token_count += math.ceil(len(content) / 4)
            context_size += len(content)
        elif isinstance(content, list):
            for part in content:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "text":
                    text = str(part.get("text", ""))
                    token_count += math.ceil(len(text) / 4)
                    context_size += len(text)
                elif part.get("type") in {"image", "image_url"}:
                    token_count += IMAGE_TOKEN_ESTIMATE
        elif content is not None:
            text = str(content)
            token_count += math.ceil(len(text) / 4)
            context_size += len(text)
    return token_count, context_size


_RATE_LIMIT_MARKERS = ("rate limit", "tokens per min", "tpm")


def is_rate_limit_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, ProviderError) and error.status_code == 429:
        return True
    message = str(error).lower()
    return "429" in message or any(marker in message for marker in _RATE_LIMIT_MARKERS)


def retry_delay_ms(attempt: int, model: ModelSelection | None, config: AgentConfig) -> int:
    """Backoff before retry number ``attempt`` (1-based), capped at ``max_retry_delay_ms``."""
    is_local = model is not None and model.provider_name in config.local_providers
    base = config.local_retry_delay_ms if is_local else config.initial_retry_delay_ms
    delay = base * (2 ** max(0, attempt - 1))
    return int(min(delay, config.max_retry_delay_ms))
