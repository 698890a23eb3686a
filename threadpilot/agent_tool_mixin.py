"""Tool-call execution helpers for AgentLoop."""

import asyncio
from dataclasses import dataclass
from typing import Any

from threadpilot.exceptions import AgentInterruptedError, ToolError, ToolNotFoundError, ValidationError
from threadpilot.logging import get_logger
from threadpilot.messages import ToolMessage, ToolStatus
from threadpilot.risk import (
    EditContext,
    EditRiskScore,
    RiskLevel,
    evaluate_auto_approval,
    is_safe_nl_command,
)
from threadpilot.stream import Interrupt, StreamState, ToolInfo
from threadpilot.tools import EDITS, Tool, read_cache_key

log = get_logger(__name__)

AWAITING_PERMISSION = "(Awaiting user permission...)"
VALUE_NOT_RECEIVED = "(value not received yet...)"
REUSED_FROM_CACHE = "\n\n(Result reused from cache)"
TOOL_REJECTED = "Tool call was rejected by the user."
TOOL_INTERRUPTED = "Tool call was interrupted by the user."
NL_COMMAND_TOOL = "run_nl_command"

_EDIT_OPERATIONS = {
    "edit_file": "edit",
    "rewrite_file": "rewrite",
    "create_file_or_folder": "create",
    "delete_file_or_folder": "delete",
}


def stringify_error_message(error: BaseException) -> str:
    return f"Tool call succeeded, but there was an error stringifying the output.\n{error}"


def _param(params: Any, name: str) -> Any:
    if isinstance(params, dict):
        return params.get(name)
    return getattr(params, name, None)


@dataclass
class ToolCallOutcome:
    awaiting_user_approval: bool = False
    interrupted: bool = False


class AgentToolMixin:
    """Validate, gate, execute and record one tool call."""

    def _update_latest_tool(self, thread_id: str, message: ToolMessage) -> None:
        """Replace the trailing tool entry in place, or append a new one."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return
        if thread.messages:
            last = thread.messages[-1]
            if isinstance(last, ToolMessage) and last.status != ToolStatus.INVALID_PARAMS:
                self.store.replace_at(thread_id, len(thread.messages) - 1, message)
                return
        self.store.append(thread_id, message)

    def _file_was_read(self, thread_id: str, path: str | None) -> bool:
        thread = self.store.get_thread(thread_id)
        if thread is None or not path:
            return False
        for message in thread.messages:
            if (
                isinstance(message, ToolMessage)
                and message.name == "read_file"
                and message.status == ToolStatus.SUCCESS
                and str(_param(message.params, "uri") or _param(message.params, "path") or "") == path
            ):
                return True
        return False

    async def _score_edit(self, thread_id: str, tool: Tool, params: Any) -> EditRiskScore | None:
        """Ask the risk scorer about an edit; scorer failures fall back to manual approval."""
        if self.risk_scorer is None:
            return None
        path = tool.target_path(params)
        original = None
        if path:
            original = self.checkpoints.snapshots.get_snapshot(path).content
        context = EditContext(
            path=path or "",
            operation=_EDIT_OPERATIONS.get(tool.name, "edit"),
            original_content=original,
            new_content=_param(params, "new_content"),
            model_selection=self.current_model,
            file_was_read=self._file_was_read(thread_id, path),
        )
        try:
            return await self.risk_scorer.score(context)
        except Exception as e:
            log.debug("Risk scoring failed, using normal approval", tool=tool.name, error=str(e))
            return None

    async def _should_auto_approve(
        self, thread_id: str, tool: Tool, params: Any, approval_type: str
    ) -> tuple[bool, EditRiskScore | None]:
        approval = self.config.approval
        auto_approve = bool(approval.auto_approve.get(approval_type, False))
        if not approval.yolo_mode:
            return auto_approve, None

        if tool.name == NL_COMMAND_TOOL:
            nl_input = str(_param(params, "nl_input") or "")
            if is_safe_nl_command(nl_input):
                log.info("Auto-approved read-only command", thread_id=thread_id, tool=tool.name)
                return True, None
            return auto_approve, None

        if approval_type != EDITS or not tool.mutates_files:
            return auto_approve, None

        score = await self._score_edit(thread_id, tool, params)
        if score is None:
            return auto_approve, None
        decision = evaluate_auto_approval(score, auto_approve, approval)
        if decision.auto_approve:
            log.info(
                "Auto-approved edit",
                thread_id=thread_id,
                tool=tool.name,
                risk=score.risk_score,
                confidence=score.confidence_score,
            )
            if decision.notify:
                log.warning(
                    "Auto-applied edit",
                    thread_id=thread_id,
                    tool=tool.name,
                    path=tool.target_path(params),
                    risk_level=score.risk_level.value,
                )
        elif score.risk_level == RiskLevel.HIGH:
            log.info("High-risk edit needs approval", thread_id=thread_id, tool=tool.name, risk=score.risk_score)
        return decision.auto_approve, score

    async def run_tool_call(
        self,
        thread_id: str,
        name: str,
        tool_id: str,
        raw_params: dict[str, Any],
        preapproved: bool = False,
        validated_params: Any = None,
    ) -> ToolCallOutcome:
        """Run one tool call and record its outcome in the log.

        Unless ``preapproved``, the parameters are validated first and calls
        that need approval stop with a ``tool_request`` entry.
        """
        try:
            tool = self.tools.get(name)
        except ToolNotFoundError as e:
            self.store.append(
                thread_id,
                ToolMessage(id=tool_id, name=name, status=ToolStatus.INVALID_PARAMS, content=str(e), raw_params=raw_params),
            )
            return ToolCallOutcome()

        if not preapproved:
            try:
                params = tool.validate_params(raw_params)
            except ValidationError as e:
                self.store.append(
                    thread_id,
                    ToolMessage(
                        id=tool_id, name=name, status=ToolStatus.INVALID_PARAMS, content=str(e), raw_params=raw_params
                    ),
                )
                return ToolCallOutcome()

            if tool.mutates_files:
                path = tool.target_path(params)
                if path:
                    self.checkpoints.add_tool_edit_checkpoint(thread_id, path)

            approval_type = self.tools.approval_type_for(name)
            if approval_type:
                auto_approve, score = await self._should_auto_approve(thread_id, tool, params, approval_type)
                if score is not None and score.risk_level != RiskLevel.LOW:
                    content = (
                        f"(Risk: {score.risk_level.value}, Score: {score.risk_score:.2f}, "
                        f"Confidence: {score.confidence_score:.2f})"
                    )
                else:
                    content = AWAITING_PERMISSION
                self.store.append(
                    thread_id,
                    ToolMessage(
                        id=tool_id,
                        name=name,
                        status=ToolStatus.TOOL_REQUEST,
                        content=content,
                        raw_params=raw_params,
                        params=params,
                    ),
                )
                if not auto_approve:
                    return ToolCallOutcome(awaiting_user_approval=True)
        else:
            params = validated_params
            if isinstance(params, dict) and tool.params_model is not None:
                # params restored from storage come back as plain dicts
                try:
                    params = tool.validate_params(params)
                except ValidationError as e:
                    self._update_latest_tool(
                        thread_id,
                        ToolMessage(
                            id=tool_id, name=name, status=ToolStatus.TOOL_ERROR, content=str(e), raw_params=raw_params
                        ),
                    )
                    return ToolCallOutcome()

        cache_key = read_cache_key(name, params) if self.file_read_cache is not None else None
        if cache_key is not None:
            cached = self.file_read_cache.get(thread_id, cache_key)
            if cached is not None:
                log.debug("Reusing cached read", thread_id=thread_id, key=cache_key)
                self._update_latest_tool(
                    thread_id,
                    ToolMessage(
                        id=tool_id,
                        name=name,
                        status=ToolStatus.SUCCESS,
                        content=tool.stringify_result(params, cached) + REUSED_FROM_CACHE,
                        raw_params=raw_params,
                        params=params,
                        result=cached,
                    ),
                )
                return ToolCallOutcome()

        self._update_latest_tool(
            thread_id,
            ToolMessage(
                id=tool_id,
                name=name,
                status=ToolStatus.RUNNING_NOW,
                content=VALUE_NOT_RECEIVED,
                raw_params=raw_params,
                params=params,
            ),
        )

        abort_event = asyncio.Event()
        interrupt = Interrupt.armed(abort_event.set)
        self.store.set_stream_state(
            thread_id,
            StreamState.tool(
                ToolInfo(tool_name=name, tool_params=params, id=tool_id, content="interrupted...", raw_params=raw_params),
                interrupt,
            ),
        )

        try:
            result = await self.tools.call(name, params, abort_event)
        except AgentInterruptedError:
            # the abort path already recorded the rejected entry
            log.info("Tool call interrupted", thread_id=thread_id, tool=name)
            return ToolCallOutcome(interrupted=True)
        except ToolError as e:
            if interrupt.cancelled:
                return ToolCallOutcome(interrupted=True)
            self._update_latest_tool(
                thread_id,
                ToolMessage(
                    id=tool_id,
                    name=name,
                    status=ToolStatus.TOOL_ERROR,
                    content=str(e),
                    raw_params=raw_params,
                    params=params,
                    result=str(e),
                ),
            )
            return ToolCallOutcome()
        if interrupt.cancelled:
            return ToolCallOutcome(interrupted=True)

        try:
            content = tool.stringify_result(params, result)
        except Exception as e:
            message = stringify_error_message(e)
            self._update_latest_tool(
                thread_id,
                ToolMessage(
                    id=tool_id,
                    name=name,
                    status=ToolStatus.TOOL_ERROR,
                    content=message,
                    raw_params=raw_params,
                    params=params,
                    result=message,
                ),
            )
            return ToolCallOutcome()

        self._update_latest_tool(
            thread_id,
            ToolMessage(
                id=tool_id,
                name=name,
                status=ToolStatus.SUCCESS,
                content=content,
                raw_params=raw_params,
                params=params,
                result=result,
            ),
        )

        if self.file_read_cache is not None:
            if cache_key is not None:
                self.file_read_cache.set(thread_id, cache_key, result)
            if tool.mutates_files:
                path = tool.target_path(params)
                if path:
                    self.file_read_cache.invalidate_path(path, thread_id)
        return ToolCallOutcome()

    def reject_latest_tool(self, thread_id: str, content: str = TOOL_REJECTED) -> bool:
        """Turn the trailing tool entry into a ``rejected`` one."""
        thread = self.store.get_thread(thread_id)
        if thread is None or not thread.messages:
            return False
        last = thread.messages[-1]
        if not isinstance(last, ToolMessage) or last.status == ToolStatus.INVALID_PARAMS:
            return False
        self._update_latest_tool(
            thread_id,
            ToolMessage(
                id=last.id,
                name=last.name,
                status=ToolStatus.REJECTED,
                content=content,
                raw_params=last.raw_params,
                params=last.params,
            ),
        )
        return True

