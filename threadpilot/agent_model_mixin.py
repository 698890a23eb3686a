"""Model call helpers for AgentLoop: preparation, streaming, retry and fallback."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from threadpilot.caches import MessagePrepCache, PreparedEntry
from threadpilot.exceptions import ExhaustedFallbackError
from threadpilot.llm import (
    ModelRequest,
    ModelResponse,
    ModelSelection,
    StreamChunk,
    compute_token_count,
    is_rate_limit_error,
    retry_delay_ms,
)
from threadpilot.logging import get_logger
from threadpilot.messages import (
    AssistantMessage,
    InterruptedStreamingToolMessage,
    Message,
    UserMessage,
)
from threadpilot.routing import RoutingDecision, TaskContext, TaskType, build_task_context
from threadpilot.stream import Interrupt, LLMInfo, StreamError, StreamState

log = get_logger(__name__)


@dataclass
class AgentRun:
    """Per-request state of one agent loop run."""

    model: ModelSelection
    is_auto_mode: bool = False
    tried_models: set[str] = field(default_factory=set)
    routing: RoutingDecision | None = None
    synthesized: bool = False
    files_read: int = 0
    file_read_limit_exceeded: bool = False


@dataclass
class StreamOutcome:
    """Terminal outcome of one model call."""

    response: ModelResponse | None = None
    error: BaseException | None = None
    aborted: bool = False
    partial: LLMInfo = field(default_factory=LLMInfo)
    first_token_ms: int | None = None
    latency_ms: int = 0


class AgentModelMixin:
    """Prepare payloads, stream replies and recover from model failures."""

    def _latest_user_message(self, thread_id: str) -> UserMessage | None:
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return None
        return next((m for m in reversed(thread.messages) if isinstance(m, UserMessage)), None)

    def _routing_context(self, thread_id: str) -> TaskContext:
        message = self._latest_user_message(thread_id)
        if message is None:
            return TaskContext(task_type=TaskType.CHAT)
        return build_task_context(message)

    async def _audit(self, record: dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            await self.audit(record)
        except Exception as e:
            log.warning("Audit hook failed", action=record.get("action"), error=str(e))

    async def _resolve_model(self, thread_id: str, run: AgentRun) -> None:
        """Let the router pick a concrete model for automatic selection."""
        if not run.model.is_auto or self.router is None:
            return
        try:
            decision = await self.router.route(self._routing_context(thread_id))
        except Exception as e:
            log.warning("Routing failed", thread_id=thread_id, error=str(e))
            return
        if decision.should_abstain or decision.model_selection.is_auto:
            log.info("Router abstained", thread_id=thread_id, reason=decision.abstain_reason)
            return
        run.model = decision.model_selection
        run.routing = decision
        log.info(
            "Routed request",
            thread_id=thread_id,
            model=run.model.key,
            fallbacks=len(decision.fallback_chain),
            confidence=decision.confidence,
        )

    async def _prepare_messages(
        self,
        chat_messages: Sequence[Message],
        model: ModelSelection,
        chat_mode: str,
        retrieval_context: Sequence[str] | None = None,
    ) -> PreparedEntry:
        """Model payload for a log, served from the prep cache when fresh."""
        key = None
        if self.prep_cache is not None:
            key = MessagePrepCache.make_key(chat_messages, model, chat_mode, retrieval_context)
            cached = self.prep_cache.get(key)
            if cached is not None:
                log.debug("Prepared messages served from cache", model=model.key)
                return cached

        prepared = await self.preparer.prepare(chat_messages, model, chat_mode, retrieval_context)
        token_count, context_size = compute_token_count(prepared.messages)
        entry = PreparedEntry(
            messages=prepared.messages,
            system_message=prepared.system_message,
            token_count=token_count,
            context_size=context_size,
            timestamp=time.time(),
        )
        if key is not None:
            self.prep_cache.set(key, entry)
        return entry

    async def _stream_once(
        self,
        thread_id: str,
        request: ModelRequest,
        status_text: str | None = None,
    ) -> StreamOutcome:
        """Send one request, mirroring progress into the LLM stream state.

        With ``status_text`` the stream state shows that text instead of the
        streamed reply.
        """
        interrupt = Interrupt()
        partial = LLMInfo(display_content_so_far=status_text or "")
        self.store.set_stream_state(thread_id, StreamState.llm(partial, interrupt))
        started = time.monotonic()
        first_token_at: float | None = None

        def on_text(chunk: StreamChunk) -> None:
            nonlocal partial, first_token_at
            if first_token_at is None:
                first_token_at = time.monotonic()
            partial = LLMInfo(
                display_content_so_far=chunk.text,
                reasoning_so_far=chunk.reasoning,
                tool_call_so_far=chunk.tool_call,
            )
            shown = LLMInfo(display_content_so_far=status_text) if status_text else partial
            self.store.set_stream_state(thread_id, StreamState.llm(shown, interrupt))

        def timings() -> dict[str, Any]:
            return {
                "first_token_ms": int((first_token_at - started) * 1000) if first_token_at is not None else None,
                "latency_ms": int((time.monotonic() - started) * 1000),
            }

        task = asyncio.create_task(self.transport.send_message(request, on_text))
        interrupt.activate(task.cancel)
        try:
            response = await task
        except asyncio.CancelledError:
            if interrupt.cancelled:
                log.info("Model call aborted", thread_id=thread_id, model=request.model.key)
                return StreamOutcome(aborted=True, partial=partial, **timings())
            raise
        except Exception as e:
            return StreamOutcome(error=e, partial=partial, **timings())
        return StreamOutcome(response=response, partial=partial, **timings())

    async def _pause(self, thread_id: str, delay_ms: int) -> bool:
        """Idle for ``delay_ms``; ``True`` when the user aborted meanwhile."""
        interrupt = Interrupt.armed()
        self.store.set_stream_state(thread_id, StreamState.idle(interrupt))
        return await interrupt.sleep(delay_ms / 1000)

    def _fail_stream(self, thread_id: str, partial: LLMInfo, error: BaseException) -> None:
        """Keep the partial reply, surface ``error`` and close with a checkpoint."""
        self.store.append(
            thread_id,
            AssistantMessage(display_content=partial.display_content_so_far, reasoning=partial.reasoning_so_far),
        )
        if partial.tool_call_so_far is not None:
            self.store.append(thread_id, InterruptedStreamingToolMessage(name=partial.tool_call_so_far.name))
        self.store.set_stream_state(thread_id, StreamState.undefined(StreamError(message=str(error), full_error=error)))
        self.checkpoints.add_user_checkpoint(thread_id)

    async def _next_fallback_model(self, thread_id: str, run: AgentRun) -> ModelSelection | None:
        """First untried model of the routing fallback chain, re-routing once it runs dry."""
        if self.router is None:
            return None
        context = self._routing_context(thread_id)
        if run.routing is None:
            try:
                run.routing = await self.router.route(context)
            except Exception as e:
                log.warning("Routing for fallback failed", thread_id=thread_id, error=str(e))
        if run.routing is not None:
            for candidate in run.routing.fallback_chain:
                if candidate.key not in run.tried_models:
                    return candidate

        try:
            decision = await self.router.route(context)
        except Exception as e:
            log.warning("Re-routing failed", thread_id=thread_id, error=str(e))
            return None
        selection = decision.model_selection
        if selection.is_auto or selection.key in run.tried_models:
            return None
        run.routing = decision
        return selection

    async def _send_with_recovery(
        self,
        thread_id: str,
        run: AgentRun,
        chat_mode: str,
        retrieval_context: Sequence[str] | None = None,
    ) -> ModelResponse | None:
        """Call the model with retries (manual) or failover (auto).

        Returns ``None`` when the run must stop: the user aborted, or the
        error has already been surfaced in the stream state.
        """
        agent_cfg = self.config.agent
        n_attempts = 0
        while True:
            n_attempts += 1
            model = run.model
            if not model.is_auto:
                run.tried_models.add(model.key)

            thread = self.store.get_thread(thread_id)
            if thread is None:
                return None
            prepared = await self._prepare_messages(thread.messages, model, chat_mode, retrieval_context)
            await self._audit({
                "ts": time.time(),
                "action": "prompt",
                "model": model.key,
                "ok": True,
                "meta": {
                    "thread_id": thread_id,
                    "prompt_tokens": prepared.token_count,
                    "context_size": prepared.context_size,
                },
            })
            if not self.store.get_stream_state(thread_id).is_running:
                # aborted while the payload was being prepared
                return None

            request = ModelRequest(
                messages=prepared.messages,
                model=model,
                chat_mode=chat_mode,
                system_message=prepared.system_message,
                thread_id=thread_id,
            )
            outcome = await self._stream_once(thread_id, request)
            if outcome.aborted:
                return None
            if outcome.error is None:
                log.info(
                    "Model replied",
                    thread_id=thread_id,
                    model=model.key,
                    first_token_ms=outcome.first_token_ms,
                    latency_ms=outcome.latency_ms,
                )
                await self._audit({
                    "ts": time.time(),
                    "action": "reply",
                    "model": model.key,
                    "ok": True,
                    "meta": {
                        "thread_id": thread_id,
                        "first_token_ms": outcome.first_token_ms,
                        "latency_ms": outcome.latency_ms,
                        "tool_call": outcome.response.tool_call.name if outcome.response.tool_call else None,
                    },
                })
                return outcome.response

            error = outcome.error
            log.warning(
                "Model call failed",
                thread_id=thread_id,
                model=model.key,
                attempt=n_attempts,
                error=str(error),
            )
            await self._audit({
                "ts": time.time(),
                "action": "reply",
                "model": model.key,
                "ok": False,
                "meta": {"thread_id": thread_id, "error": str(error)},
            })

            if run.is_auto_mode:
                next_model = await self._next_fallback_model(thread_id, run)
                if next_model is None:
                    # nothing left to try, report what the provider said
                    self._fail_stream(thread_id, outcome.partial, error)
                    return None
                if len(run.tried_models) >= agent_cfg.max_fallback_models:
                    log.warning("Too many model switches, stopping fallback", thread_id=thread_id, tried=len(run.tried_models))
                    self._fail_stream(
                        thread_id, outcome.partial, ExhaustedFallbackError(sorted(run.tried_models), error)
                    )
                    return None
                log.info("Auto mode fallback", thread_id=thread_id, from_model=model.key, to_model=next_model.key)
                run.model = next_model
                self.current_model = next_model
                n_attempts = 0
                if await self._pause(thread_id, agent_cfg.fallback_delay_ms):
                    return None
                continue

            if is_rate_limit_error(error):
                self._fail_stream(thread_id, outcome.partial, error)
                return None

            if n_attempts < agent_cfg.chat_retries:
                delay = retry_delay_ms(n_attempts, model, agent_cfg)
                log.info("Retrying model call", thread_id=thread_id, model=model.key, attempt=n_attempts, delay_ms=delay)
                if await self._pause(thread_id, delay):
                    return None
                continue

            self._fail_stream(thread_id, outcome.partial, error)
            return None
