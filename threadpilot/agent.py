"""Agent loop orchestration for threadpilot."""

import asyncio
import uuid
from typing import Awaitable, Callable, Sequence

from threadpilot.caches import FileReadCache, MessagePrepCache
from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import Config, get_config
from threadpilot.exceptions import IterationLimitExceeded
from threadpilot.agent_model_mixin import AgentModelMixin, AgentRun
from threadpilot.agent_tool_mixin import AgentToolMixin, ToolCallOutcome
from threadpilot.llm import (
    BasicMessagePreparer,
    MessagePreparer,
    ModelRequest,
    ModelResponse,
    ModelSelection,
    ModelTransport,
)
from threadpilot.logging import bind_thread, get_logger
from threadpilot.messages import (
    ApprovalState,
    AssistantMessage,
    StepStatus,
    ToolMessage,
    ToolStatus,
    UserMessage,
)
from threadpilot.plans import (
    INTERRUPTED_STEP_ERROR,
    PLAN_PARSE_FAILED_PREFIX,
    PlanManager,
    StepRef,
    build_plan_prompt,
    parse_plan,
)
from threadpilot.risk import EditRiskScorer
from threadpilot.routing import ModelRouter
from threadpilot.store import ThreadStore
from threadpilot.stream import Interrupt, LLMInfo, StreamError, StreamState
from threadpilot.synthesis import should_use_tools, synthesis_notice, synthesize_tool_call
from threadpilot.tools import ToolRegistry

log = get_logger(__name__)

PLAN_STATUS_TEXT = "Generating execution plan..."
FINAL_ANSWER_STATUS_TEXT = "Generating final answer based on files read..."
SYNTHESIS_MARKER = "Let me start by"
READ_FILE_TOOL = "read_file"
SEARCH_FILES_TOOL = "search_for_files"
PLAN_CHAT_MODE = "normal"

AuditHook = Callable[[dict], Awaitable[None]]


def file_read_limit_message(files_read: int) -> str:
    return (
        f"I've read {files_read} files, which exceeds the limit. "
        "I'll provide an answer based on what I've gathered so far."
    )


class AgentLoop(AgentModelMixin, AgentToolMixin):
    """Drives one thread's model/tool conversation until it needs the user."""

    def __init__(
        self,
        store: ThreadStore,
        transport: ModelTransport,
        tools: ToolRegistry,
        checkpoints: CheckpointEngine,
        plans: PlanManager,
        preparer: MessagePreparer | None = None,
        router: ModelRouter | None = None,
        risk_scorer: EditRiskScorer | None = None,
        file_read_cache: FileReadCache | None = None,
        prep_cache: MessagePrepCache | None = None,
        audit: AuditHook | None = None,
        config: Config | None = None,
    ):
        """Initialize the loop.

        Args:
            store: Thread and stream state store
            transport: Model client
            tools: Registry of callable tools
            checkpoints: Checkpoint engine of the same store
            plans: Plan manager of the same store
            preparer: Converts the log into model messages
            router: Picks models in automatic mode
            risk_scorer: Scores edits for unattended approval
            file_read_cache: Per-thread cache of read results
            prep_cache: Cache of prepared model payloads
            audit: Optional async hook receiving prompt/reply records
            config: Optional config override
        """
        self.config = config or get_config()
        self.store = store
        self.transport = transport
        self.tools = tools
        self.checkpoints = checkpoints
        self.plans = plans
        self.preparer = preparer or BasicMessagePreparer()
        self.router = router
        self.risk_scorer = risk_scorer
        if file_read_cache is None:
            file_read_cache = FileReadCache(self.config.cache.file_read_max_entries)
        self.file_read_cache = file_read_cache
        if prep_cache is None:
            prep_cache = MessagePrepCache(self.config.cache)
        self.prep_cache = prep_cache
        self.audit = audit
        self.current_model: ModelSelection | None = None

    async def run_agent_loop(
        self,
        thread_id: str,
        model_selection: ModelSelection | None = None,
        call_this_tool_first: ToolMessage | None = None,
        is_auto_mode: bool = False,
        retrieval_context: Sequence[str] | None = None,
        chat_mode: str | None = None,
    ) -> None:
        """Run the loop for a thread. Never raises except on task cancellation.

        Every exit leaves an explicit stream state: ``undefined`` (optionally
        with an error), ``awaiting_user`` or ``idle`` behind a pending plan.
        """
        bind_thread(thread_id)
        try:
            await self._run(
                thread_id,
                model_selection,
                call_this_tool_first,
                is_auto_mode,
                retrieval_context,
                chat_mode or self.config.agent.chat_mode,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Agent loop failed", thread_id=thread_id, error=str(e), exc_info=True)
            self.store.set_stream_state(thread_id, StreamState.undefined(StreamError(message=str(e), full_error=e)))

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    async def _run(
        self,
        thread_id: str,
        model_selection: ModelSelection | None,
        call_this_tool_first: ToolMessage | None,
        is_auto_mode: bool,
        retrieval_context: Sequence[str] | None,
        chat_mode: str,
    ) -> None:
        if self.store.get_thread(thread_id) is None:
            log.debug("Agent loop for unknown thread", thread_id=thread_id)
            return
        if not self.store.get_stream_state(thread_id).is_running:
            self.store.set_stream_state(thread_id, StreamState.preparing(Interrupt.armed()))

        model = model_selection or ModelSelection.auto()
        run = AgentRun(model=model, is_auto_mode=is_auto_mode or model.is_auto)
        await self._resolve_model(thread_id, run)
        self.current_model = run.model

        is_agent = chat_mode == "agent"
        if is_agent and call_this_tool_first is None:
            wants_plan = self.plans.should_generate_plan_for(thread_id)
            if wants_plan and not self.plans.has_open_plan(thread_id):
                if not await self._generate_plan(thread_id, run):
                    return
            if self._stop_for_pending_plan(thread_id):
                return

        step = self._begin_plan_tracking(thread_id)

        if call_this_tool_first is not None:
            if step is not None:
                self.plans.link_tool_call(thread_id, step, call_this_tool_first.id)
            outcome = await self.run_tool_call(
                thread_id,
                call_this_tool_first.name,
                call_this_tool_first.id,
                call_this_tool_first.raw_params,
                preapproved=True,
                validated_params=call_this_tool_first.params,
            )
            if outcome.interrupted:
                self._stop_interrupted(thread_id, step, add_checkpoint=True)
                return
            step = self._advance_step(thread_id, step)

        if self.store.get_stream_state(thread_id).is_running:
            self.store.set_stream_state(thread_id, StreamState.idle())

        awaiting_user = False
        iterations = 0
        while True:
            if iterations >= self.config.agent.max_iterations:
                error = IterationLimitExceeded(self.config.agent.max_iterations)
                log.warning("Iteration limit reached", thread_id=thread_id, limit=error.limit)
                self.store.set_stream_state(
                    thread_id, StreamState.undefined(StreamError(message=str(error), full_error=error))
                )
                return
            if not self.store.get_stream_state(thread_id).is_running:
                log.debug("Agent loop stopped by stream state", thread_id=thread_id)
                return
            if is_agent and self._stop_for_pending_plan(thread_id):
                return
            iterations += 1

            call_mode = PLAN_CHAT_MODE if run.file_read_limit_exceeded else chat_mode
            response = await self._send_with_recovery(thread_id, run, call_mode, retrieval_context)
            if response is None:
                return
            if is_agent and self._stop_for_pending_plan(thread_id):
                return

            tool_call = response.tool_call
            if tool_call is None:
                synthesized = None
                if is_agent:
                    synthesized = await self._try_synthesis(thread_id, run, response)
                if synthesized is None:
                    self._commit_reply(thread_id, response)
                    break
                if synthesized.interrupted:
                    self.store.set_stream_state(thread_id, StreamState.undefined())
                    return
                if synthesized.awaiting_user_approval:
                    awaiting_user = True
                    break
                self.store.set_stream_state(thread_id, StreamState.idle())
                continue

            self.store.append(
                thread_id, AssistantMessage(display_content=response.text, reasoning=response.reasoning)
            )
            if run.file_read_limit_exceeded:
                log.info("Skipping tool call after file-read limit", thread_id=thread_id, tool=tool_call.name)
                break

            if tool_call.name == READ_FILE_TOOL:
                run.files_read += 1
                if run.files_read > self.config.agent.max_files_read_per_query:
                    log.warning("File-read limit exceeded", thread_id=thread_id, files_read=run.files_read)
                    self.store.append(
                        thread_id, AssistantMessage(display_content=file_read_limit_message(run.files_read))
                    )
                    run.file_read_limit_exceeded = True
                    self.store.set_stream_state(
                        thread_id,
                        StreamState.llm(LLMInfo(display_content_so_far=FINAL_ANSWER_STATUS_TEXT), Interrupt.armed()),
                    )
                    continue

            if is_agent and self._stop_for_pending_plan(thread_id):
                return
            if step is not None:
                self.plans.link_tool_call(thread_id, step, tool_call.id)

            outcome = await self.run_tool_call(thread_id, tool_call.name, tool_call.id, tool_call.raw_params)
            if outcome.interrupted:
                self._stop_interrupted(thread_id, step)
                return
            step = self._advance_step(thread_id, step)
            if outcome.awaiting_user_approval:
                awaiting_user = True
                break
            self.store.set_stream_state(thread_id, StreamState.idle())

        if not self.store.get_stream_state(thread_id).is_running:
            log.debug("Agent loop aborted before completion", thread_id=thread_id)
            return
        if awaiting_user:
            self.store.set_stream_state(thread_id, StreamState.awaiting_user())
        else:
            self.store.set_stream_state(thread_id, StreamState.undefined())
            self.plans.complete_if_finished(thread_id)
            self.checkpoints.add_user_checkpoint(thread_id)
        log.info("Agent loop done", thread_id=thread_id, iterations=iterations, awaiting_user=awaiting_user)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def _stop_for_pending_plan(self, thread_id: str) -> bool:
        if self.plans.pending_plan(thread_id) is None:
            return False
        log.info("Waiting for plan approval", thread_id=thread_id)
        self.store.set_stream_state(thread_id, StreamState.idle())
        return True

    async def _generate_plan(self, thread_id: str, run: AgentRun) -> bool:
        """Ask the model for a plan of the latest request.

        Returns ``False`` when the run must stop (aborted or failed).
        """
        thread = self.store.get_thread(thread_id)
        user = self._latest_user_message(thread_id)
        if thread is None or user is None:
            return True
        prompt = build_plan_prompt(user.display_content or user.content)
        chat_messages = thread.messages[:-1] + (UserMessage(content=prompt, display_content=prompt),)

        prepared = await self._prepare_messages(chat_messages, run.model, PLAN_CHAT_MODE)
        request = ModelRequest(
            messages=prepared.messages,
            model=run.model,
            chat_mode=PLAN_CHAT_MODE,
            system_message=prepared.system_message,
            thread_id=thread_id,
        )
        outcome = await self._stream_once(thread_id, request, status_text=PLAN_STATUS_TEXT)
        if outcome.aborted:
            return False
        if outcome.error is not None:
            log.warning("Plan generation failed", thread_id=thread_id, error=str(outcome.error))
            self.store.set_stream_state(
                thread_id,
                StreamState.undefined(StreamError(message=str(outcome.error), full_error=outcome.error)),
            )
            return False

        text = outcome.response.text
        plan = parse_plan(text)
        if plan is None:
            log.info("Plan could not be parsed", thread_id=thread_id)
            self.store.append(thread_id, AssistantMessage(display_content=PLAN_PARSE_FAILED_PREFIX + text))
        else:
            self.store.append(thread_id, plan)
            log.info("Plan generated", thread_id=thread_id, steps=len(plan.steps))
        self.store.set_stream_state(thread_id, StreamState.idle())
        return True

    def _begin_plan_tracking(self, thread_id: str) -> StepRef | None:
        """Start executing an approved plan; returns the step tool calls belong to."""
        found = self.plans.get_current_plan(thread_id, force_refresh=True)
        if found is None or found[0].approval_state not in (ApprovalState.APPROVED, ApprovalState.EXECUTING):
            return None
        self.plans.begin_execution(thread_id)
        step = self.plans.current_step(thread_id, force_refresh=True)
        if step is not None and step.step.status == StepStatus.QUEUED:
            step = self.plans.start_next_step(thread_id)
        return step

    def _advance_step(self, thread_id: str, step: StepRef | None) -> StepRef | None:
        """Settle the step by the outcome of the last tool call."""
        if step is None:
            return None
        thread = self.store.get_thread(thread_id)
        last = thread.messages[-1] if thread is not None and thread.messages else None
        if not isinstance(last, ToolMessage):
            return step
        if last.status == ToolStatus.TOOL_ERROR:
            self.plans.mark_step_completed(
                thread_id, step, succeeded=False, error=str(last.result or last.content or "Tool execution failed")
            )
            return None
        if last.status == ToolStatus.SUCCESS:
            self.plans.mark_step_completed(thread_id, step, succeeded=True)
            return self.plans.start_next_step(thread_id)
        return self.plans.current_step(thread_id, force_refresh=True)

    def _stop_interrupted(self, thread_id: str, step: StepRef | None, add_checkpoint: bool = False) -> None:
        self.store.set_stream_state(thread_id, StreamState.undefined())
        if add_checkpoint:
            self.checkpoints.add_user_checkpoint(thread_id)
        if step is not None:
            self.plans.mark_step_completed(thread_id, step, succeeded=False, error=INTERRUPTED_STEP_ERROR)

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def _commit_reply(self, thread_id: str, response: ModelResponse) -> None:
        thread = self.store.get_thread(thread_id)
        if thread is not None and thread.messages:
            last = thread.messages[-1]
            if isinstance(last, AssistantMessage) and last.display_content == response.text:
                return
        self.store.append(thread_id, AssistantMessage(display_content=response.text, reasoning=response.reasoning))

    def _history_shows_synthesis(self, thread_id: str) -> bool:
        """A synthesized call already ran for the latest request."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return False
        messages = thread.messages
        start = next((i for i in range(len(messages) - 1, -1, -1) if isinstance(messages[i], UserMessage)), 0)
        for idx in range(start, len(messages) - 1):
            message = messages[idx]
            if (
                isinstance(message, AssistantMessage)
                and SYNTHESIS_MARKER in message.display_content
                and isinstance(messages[idx + 1], ToolMessage)
            ):
                return True
        return False

    async def _try_synthesis(
        self, thread_id: str, run: AgentRun, response: ModelResponse
    ) -> ToolCallOutcome | None:
        """Run a tool the model should have called; ``None`` when synthesis does not apply."""
        if not response.text.strip() or run.synthesized or run.file_read_limit_exceeded:
            return None
        if run.files_read >= self.config.agent.max_files_read_per_query:
            return None
        if run.model.is_auto or not self.transport.supports_tools(run.model):
            return None
        if self._history_shows_synthesis(thread_id):
            return None
        user = self._latest_user_message(thread_id)
        if user is None:
            return None
        request = user.display_content or user.content
        has_images = bool(user.images)
        if not should_use_tools(request, response.text, has_images):
            return None
        synthesized = synthesize_tool_call(request)
        if synthesized is None:
            return None
        name, raw_params = synthesized
        if has_images and name == SEARCH_FILES_TOOL:
            return None
        if not self.tools.has_tool(name):
            log.debug("Synthesized tool is not registered", thread_id=thread_id, tool=name)
            return None

        log.info("Synthesizing tool call", thread_id=thread_id, tool=name)
        self.store.append(thread_id, AssistantMessage(display_content=synthesis_notice(name)))
        run.synthesized = True
        return await self.run_tool_call(thread_id, name, str(uuid.uuid4()), raw_params)
