"""Thread service: the user-action facade over the store and the agent loop."""

import asyncio
import re
import uuid
from dataclasses import replace
from typing import Any, Sequence

from threadpilot.agent import AgentLoop, AuditHook
from threadpilot.agent_tool_mixin import TOOL_INTERRUPTED
from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import Config, get_config
from threadpilot.exceptions import PersistenceError, ThreadNotFoundError, ThreadPilotError
from threadpilot.llm import MessagePreparer, ModelSelection, ModelTransport
from threadpilot.logging import get_logger
from threadpilot.messages import (
    AssistantMessage,
    CheckpointMessage,
    ImageAttachment,
    InterruptedStreamingToolMessage,
    PdfAttachment,
    PlanMessage,
    ToolMessage,
    ToolStatus,
    UserMessage,
)
from threadpilot.persistence import ThreadPersistence
from threadpilot.plans import PlanManager
from threadpilot.risk import EditRiskScorer
from threadpilot.routing import ModelRouter
from threadpilot.snapshots import FileSnapshotProvider, WorkspaceSnapshotProvider
from threadpilot.store import THREAD_CHANGED, Thread, ThreadStore, _utcnow_iso
from threadpilot.stream import Interrupt, StreamPhase, StreamState
from threadpilot.tools import ToolRegistry

log = get_logger(__name__)

_PAGE_SPLIT_RE = re.compile(r"\n\n\[Page \d+\]\n")


def pdf_context(pdfs: Sequence[PdfAttachment]) -> str:
    """Extracted PDF text to append to a user message (selected pages only)."""
    texts = []
    for pdf in pdfs:
        if not pdf.extracted_text.strip():
            log.warning("PDF has no extracted text", filename=pdf.filename)
            continue
        text = pdf.extracted_text
        if pdf.selected_pages and pdf.page_count:
            pages = _PAGE_SPLIT_RE.split(pdf.extracted_text)
            selected = [
                f"[Page {number}]\n{pages[number - 1]}"
                for number in pdf.selected_pages
                if 0 <= number - 1 < len(pages)
            ]
            if selected:
                text = "\n\n".join(selected)
        page_info = ""
        if pdf.page_count:
            page_info = f" ({pdf.page_count} page{'' if pdf.page_count == 1 else 's'})"
        texts.append(f"\n\n[PDF: {pdf.filename}{page_info}]\n{text}")
    if not texts:
        return ""
    return "\n\n" + "\n\n".join(texts)


class ChatThreadService:
    """Owns the threads and runs at most one agent loop per thread."""

    def __init__(
        self,
        transport: ModelTransport,
        tools: ToolRegistry | None = None,
        snapshots: FileSnapshotProvider | None = None,
        persistence: ThreadPersistence | None = None,
        preparer: MessagePreparer | None = None,
        router: ModelRouter | None = None,
        risk_scorer: EditRiskScorer | None = None,
        audit: AuditHook | None = None,
        model_selection: ModelSelection | None = None,
        config: Config | None = None,
    ):
        self.config = config or get_config()
        self.store = ThreadStore(self.config.agent.stream_frame_interval)
        self.snapshots = snapshots or WorkspaceSnapshotProvider()
        self.checkpoints = CheckpointEngine(self.store, self.snapshots, self.config.checkpoints)
        self.plans = PlanManager(self.store, self.checkpoints, self.config.cache)
        self.tools = tools or ToolRegistry()
        self.agent = AgentLoop(
            store=self.store,
            transport=transport,
            tools=self.tools,
            checkpoints=self.checkpoints,
            plans=self.plans,
            preparer=preparer,
            router=router,
            risk_scorer=risk_scorer,
            audit=audit,
            config=self.config,
        )
        self.model_selection = model_selection or ModelSelection.auto()
        self.persistence = persistence
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._retrieval_context: dict[str, list[str]] = {}
        self._save_task: asyncio.Task[None] | None = None
        self._dirty = False
        self.store.subscribe(THREAD_CHANGED, self._schedule_save)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_thread(self, thread_id: str) -> Thread:
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    def is_running(self, thread_id: str) -> bool:
        return self.store.get_stream_state(thread_id).is_running

    def set_retrieval_context(self, thread_id: str, snippets: Sequence[str] | None) -> None:
        """Context snippets passed to message preparation for the thread's next runs."""
        if snippets:
            self._retrieval_context[thread_id] = list(snippets)
        else:
            self._retrieval_context.pop(thread_id, None)

    async def _run_loop(self, thread_id: str, call_this_tool_first: ToolMessage | None = None) -> None:
        task = asyncio.create_task(
            self.agent.run_agent_loop(
                thread_id,
                self.model_selection,
                call_this_tool_first=call_this_tool_first,
                is_auto_mode=self.model_selection.is_auto,
                retrieval_context=self._retrieval_context.get(thread_id),
            )
        )
        self._tasks[thread_id] = task
        try:
            await task
        finally:
            if self._tasks.get(thread_id) is task:
                del self._tasks[thread_id]

        state = self.store.get_stream_state(thread_id)
        if state.phase not in (None, StreamPhase.IDLE, StreamPhase.AWAITING_USER):
            self.store.set_stream_state(thread_id, StreamState.undefined())

    async def wait_idle(self, thread_id: str) -> None:
        """Wait for the thread's running loop, if any, to exit."""
        task = self._tasks.get(thread_id)
        if task is not None and task is not asyncio.current_task() and not task.done():
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def open_new_thread(self) -> str:
        """Switch to an empty thread, creating one when none exists."""
        for thread in self.store.threads.values():
            if thread.is_empty:
                self.store.set_current_thread(thread.id)
                return thread.id
        thread = self.store.create_thread()
        self.store.set_current_thread(thread.id)
        log.info("Opened new thread", thread_id=thread.id)
        return thread.id

    def switch_to_thread(self, thread_id: str) -> None:
        self._require_thread(thread_id)
        self.store.set_current_thread(thread_id)
        self._restore_stream_state(thread_id)

    async def delete_thread(self, thread_id: str) -> None:
        self._require_thread(thread_id)
        if self.is_running(thread_id):
            await self.abort_running(thread_id)
        self.agent.file_read_cache.clear_thread(thread_id)
        self._retrieval_context.pop(thread_id, None)
        self.store.delete_thread(thread_id)
        log.info("Deleted thread", thread_id=thread_id)
        if self.store.current_thread_id is None:
            self.open_new_thread()

    def duplicate_thread(self, thread_id: str) -> str:
        thread = self._require_thread(thread_id)
        now = _utcnow_iso()
        copy = replace(thread, id=str(uuid.uuid4()), created_at=now, last_modified=now)
        self.store.put_thread(copy)
        log.info("Duplicated thread", thread_id=thread_id, new_thread_id=copy.id)
        return copy.id

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_user_message_and_stream_response(
        self,
        thread_id: str,
        user_message: str,
        display_content: str | None = None,
        selections: Sequence[Any] = (),
        images: Sequence[ImageAttachment] = (),
        pdfs: Sequence[PdfAttachment] = (),
        no_plan: bool = False,
    ) -> None:
        """Append a user message and run the agent loop until it stops."""
        thread = self._require_thread(thread_id)

        # continuing from a checkpoint drops everything after it
        if thread.curr_checkpoint_index is not None:
            self.store.truncate_after(thread_id, thread.curr_checkpoint_index)

        if self.is_running(thread_id):
            await self.abort_running(thread_id)

        # every user message follows a checkpoint so it can be rolled back to
        thread = self._require_thread(thread_id)
        if not thread.messages or not isinstance(thread.messages[-1], CheckpointMessage):
            self.checkpoints.add_user_checkpoint(thread_id)

        if no_plan:
            self.plans.suppress_plan_once(thread_id)

        self.store.append(
            thread_id,
            UserMessage(
                content=user_message + pdf_context(pdfs),
                display_content=display_content or user_message,
                selections=tuple(selections),
                images=tuple(images),
                pdfs=tuple(pdfs),
            ),
        )
        self.store.set_curr_checkpoint_index(thread_id, None)
        self.store.set_stream_state(thread_id, StreamState.preparing(Interrupt.armed()))
        await self._run_loop(thread_id)

    async def edit_user_message_and_stream_response(
        self,
        thread_id: str,
        message_idx: int,
        user_message: str,
        images: Sequence[ImageAttachment] = (),
        pdfs: Sequence[PdfAttachment] = (),
    ) -> None:
        """Replace a user message (and everything after it) and re-run."""
        thread = self._require_thread(thread_id)
        if not 0 <= message_idx < len(thread.messages) or not isinstance(thread.messages[message_idx], UserMessage):
            raise ThreadPilotError("Only user messages can be edited")
        selections = thread.messages[message_idx].selections

        if self.is_running(thread_id):
            await self.abort_running(thread_id)
        self.store.truncate_after(thread_id, message_idx - 1)
        self.store.set_curr_checkpoint_index(thread_id, None)
        await self.add_user_message_and_stream_response(
            thread_id, user_message, selections=selections, images=images, pdfs=pdfs
        )

    async def abort_running(self, thread_id: str) -> None:
        """Stop whatever the thread is doing and record what was cut short."""
        if self.store.get_thread(thread_id) is None:
            return
        state = self.store.get_stream_state(thread_id)

        if state.phase == StreamPhase.LLM and state.llm_info is not None:
            info = state.llm_info
            self.store.append(
                thread_id,
                AssistantMessage(display_content=info.display_content_so_far, reasoning=info.reasoning_so_far),
            )
            if info.tool_call_so_far is not None:
                self.store.append(thread_id, InterruptedStreamingToolMessage(name=info.tool_call_so_far.name))
        elif state.phase == StreamPhase.TOOL and state.tool_info is not None:
            self.agent.reject_latest_tool(thread_id, state.tool_info.content or TOOL_INTERRUPTED)
        elif state.phase == StreamPhase.AWAITING_USER:
            self.reject_latest_tool_request(thread_id)

        self.checkpoints.add_user_checkpoint(thread_id)
        if state.interrupt is not None:
            state.interrupt.cancel()
        self.store.set_stream_state(thread_id, StreamState.undefined())
        log.info("Aborted running thread", thread_id=thread_id, phase=state.phase.value if state.phase else None)
        await self.wait_idle(thread_id)

    def dismiss_stream_error(self, thread_id: str) -> None:
        state = self.store.get_stream_state(thread_id)
        if state.error is not None:
            self.store.set_stream_state(thread_id, StreamState.undefined())

    # ------------------------------------------------------------------
    # Tool approvals
    # ------------------------------------------------------------------

    def _latest_tool_request(self, thread_id: str) -> ToolMessage | None:
        thread = self._require_thread(thread_id)
        if not thread.messages:
            return None
        last = thread.messages[-1]
        if isinstance(last, ToolMessage) and last.status == ToolStatus.TOOL_REQUEST:
            return last
        return None

    async def approve_latest_tool_request(self, thread_id: str) -> bool:
        request = self._latest_tool_request(thread_id)
        if request is None:
            log.debug("No tool request to approve", thread_id=thread_id)
            return False
        self.store.set_stream_state(thread_id, StreamState.preparing(Interrupt.armed()))
        await self._run_loop(thread_id, call_this_tool_first=request)
        return True

    def reject_latest_tool_request(self, thread_id: str) -> bool:
        self._require_thread(thread_id)
        if not self.agent.reject_latest_tool(thread_id):
            return False
        self.store.set_stream_state(thread_id, StreamState.undefined())
        return True

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def _continue_plan(self, thread_id: str) -> None:
        # idle means the loop is parked behind a pending plan, nothing to abort
        state = self.store.get_stream_state(thread_id)
        if state.is_running and state.phase != StreamPhase.IDLE:
            await self.abort_running(thread_id)
        self.store.set_stream_state(thread_id, StreamState.preparing(Interrupt.armed()))
        await self._run_loop(thread_id)

    async def approve_plan(self, thread_id: str, message_idx: int) -> bool:
        if not self.plans.approve_plan(thread_id, message_idx):
            return False
        await self._continue_plan(thread_id)
        return True

    def reject_plan(self, thread_id: str, message_idx: int) -> bool:
        if not self.plans.reject_plan(thread_id, message_idx):
            return False
        if self.store.get_stream_state(thread_id).phase == StreamPhase.IDLE:
            self.store.set_stream_state(thread_id, StreamState.undefined())
        return True

    def edit_plan(self, thread_id: str, message_idx: int, updated_plan: PlanMessage) -> bool:
        return self.plans.edit_plan(thread_id, message_idx, updated_plan)

    def toggle_step_disabled(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        return self.plans.toggle_step_disabled(thread_id, message_idx, step_number)

    def reorder_plan_steps(self, thread_id: str, message_idx: int, new_order: Sequence[int]) -> bool:
        return self.plans.reorder_plan_steps(thread_id, message_idx, new_order)

    async def retry_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        if not self.plans.retry_step(thread_id, message_idx, step_number):
            return False
        await self._continue_plan(thread_id)
        return True

    async def skip_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        if not self.plans.skip_step(thread_id, message_idx, step_number):
            return False
        await self._continue_plan(thread_id)
        return True

    def rollback_to_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        return self.plans.rollback_to_step(thread_id, message_idx, step_number)

    async def pause_agent_execution(self, thread_id: str) -> bool:
        # pause before aborting so the interrupted step is not recorded as failed
        paused = self.plans.pause_running_step(thread_id)
        if self.is_running(thread_id):
            await self.abort_running(thread_id)
        return paused

    async def resume_agent_execution(self, thread_id: str) -> bool:
        if not self.plans.resume_paused_step(thread_id):
            return False
        await self._continue_plan(thread_id)
        return True

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def jump_to_checkpoint_before_message_idx(
        self, thread_id: str, message_idx: int, use_user_modified: bool = False
    ) -> bool:
        self._require_thread(thread_id)
        return self.checkpoints.jump_to_checkpoint_before_message_idx(thread_id, message_idx, use_user_modified)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _restore_stream_state(self, thread_id: str) -> None:
        """Repair a thread whose loop was cut off by a restart."""
        state = self.store.get_stream_state(thread_id)
        if state.is_running or state.error is not None:
            return
        thread = self.store.get_thread(thread_id)
        if thread is None or not thread.messages:
            return
        last = thread.messages[-1]
        if not isinstance(last, ToolMessage):
            return
        if last.status == ToolStatus.TOOL_REQUEST:
            self.store.set_stream_state(thread_id, StreamState.awaiting_user())
        elif last.status == ToolStatus.RUNNING_NOW:
            self.store.replace_at(thread_id, len(thread.messages) - 1, replace(last, status=ToolStatus.REJECTED))

    async def load(self) -> None:
        """Load stored threads and stand on an empty thread."""
        if self.persistence is not None:
            for thread in await self.persistence.load():
                self.store.put_thread(thread)
                self._restore_stream_state(thread.id)
            log.info("Loaded threads", count=len(self.store.threads))
        self.open_new_thread()

    async def save(self) -> None:
        if self.persistence is None:
            return
        self._dirty = False
        await self.persistence.save(self.store.threads.values())

    def _schedule_save(self, thread_id: str) -> None:
        if self.persistence is None:
            return
        self._dirty = True
        if self._save_task is not None and not self._save_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_task = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        while self._dirty:
            await asyncio.sleep(self.config.persistence.save_debounce_seconds)
            try:
                await self.save()
            except PersistenceError as e:
                log.error("Failed to save threads", error=str(e))
                return

    async def close(self) -> None:
        """Abort running loops, flush pending saves and release storage."""
        for thread_id in list(self._tasks):
            await self.abort_running(thread_id)
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
        if self.persistence is not None:
            await self.save()
            close = getattr(self.persistence, "close", None)
            if close is not None:
                await close()
