"""Plan state machine: approvable multi-step plans and their review.

Step transitions::

    queued  -> running | skipped
    running -> succeeded | failed | paused
    paused  -> queued | skipped
    failed  -> queued | skipped        (retry / skip)
    succeeded -> queued                (retry)

A failed step blocks later steps until it is retried or skipped.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Sequence

from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import CacheConfig, get_config
from threadpilot.logging import get_logger
from threadpilot.messages import (
    ApprovalState,
    CheckpointMessage,
    FileChange,
    Message,
    PlanMessage,
    PlanStep,
    ReviewIssue,
    ReviewMessage,
    StepStatus,
    UserMessage,
)
from threadpilot.store import PLAN_CHANGED, ThreadStore

log = get_logger(__name__)

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.QUEUED: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.PAUSED}),
    StepStatus.PAUSED: frozenset({StepStatus.QUEUED, StepStatus.SKIPPED}),
    StepStatus.FAILED: frozenset({StepStatus.QUEUED, StepStatus.SKIPPED}),
    StepStatus.SUCCEEDED: frozenset({StepStatus.QUEUED}),
    StepStatus.SKIPPED: frozenset(),
}

APPROVAL_TRANSITIONS: dict[ApprovalState, frozenset[ApprovalState]] = {
    ApprovalState.PENDING: frozenset({ApprovalState.APPROVED, ApprovalState.ABORTED}),
    ApprovalState.APPROVED: frozenset({ApprovalState.EXECUTING}),
    ApprovalState.EXECUTING: frozenset({ApprovalState.COMPLETED}),
    ApprovalState.COMPLETED: frozenset({ApprovalState.EXECUTING}),
    ApprovalState.ABORTED: frozenset(),
}

RECENT_PLAN_WINDOW = 10
INTERRUPTED_STEP_ERROR = "Interrupted by user"


def can_transition_step(old: StepStatus, new: StepStatus) -> bool:
    return old == new or new in STEP_TRANSITIONS[old]


def can_transition_plan(old: ApprovalState, new: ApprovalState) -> bool:
    return old == new or new in APPROVAL_TRANSITIONS[old]


# ----------------------------------------------------------------------
# Plan generation
# ----------------------------------------------------------------------

_COMPLEX_TASK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"create.*system",
        r"build.*system",
        r"implement.*system",
        r"set up.*system",
        r"refactor",
        r"refactoring",
        r"migrate",
        r"migration",
        r"add.*and.*test",
        r"create.*and.*add",
        r"implement.*and.*test",
        r"setup",
        r"set up",
        r"configure",
        r"multiple.*file",
        r"several.*file",
        r"all.*file",
        r"create.*with",
        r"add.*with.*and",
        r"authentication.*system",
        r"api.*with.*tests",
        r"full.*stack",
    )
]
_ACTION_VERBS = (
    "create", "add", "edit", "delete", "update", "refactor",
    "implement", "build", "set up", "configure", "test",
)
MIN_ACTION_VERBS_FOR_PLAN = 3

PLAN_PROMPT = """The user has requested: "{request}"

Please generate a structured execution plan for this task. Output your plan in the following JSON format:

{{
  "summary": "Brief overall plan summary",
  "steps": [
    {{
      "stepNumber": 1,
      "description": "Step description",
      "tools": ["tool_name1", "tool_name2"],
      "files": ["path/to/file1.py", "path/to/file2.py"]
    }},
    {{
      "stepNumber": 2,
      "description": "Next step description",
      "tools": ["tool_name"],
      "files": ["path/to/file.py"]
    }}
  ]
}}

Think through the task carefully. Break it down into logical steps. For each step:
- Describe what needs to be done
- List the tools that will be needed (e.g., read_file, edit_file, create_file_or_folder, run_command, search_for_files)
- List files that will be affected (if known or likely)

Output ONLY the JSON, no other text. Start with {{ and end with }}."""

PLAN_PARSE_FAILED_PREFIX = (
    "I attempted to create a plan but had difficulty parsing it. Proceeding with direct execution...\n\n"
)

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")


def should_generate_plan(request: str) -> bool:
    """Whether a request looks like a multi-step task."""
    lower = request.lower()
    if any(pattern.search(lower) for pattern in _COMPLEX_TASK_PATTERNS):
        return True
    return sum(1 for verb in _ACTION_VERBS if verb in lower) >= MIN_ACTION_VERBS_FOR_PLAN


def build_plan_prompt(request: str) -> str:
    return PLAN_PROMPT.format(request=request)


def _string_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value)


def parse_plan(text: str) -> PlanMessage | None:
    """Build a pending plan from the first ``{...}`` block of a model reply."""
    match = _JSON_BLOCK_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        return None
    steps = []
    for idx, raw in enumerate(raw_steps):
        raw = raw if isinstance(raw, dict) else {}
        try:
            number = int(raw.get("stepNumber") or raw.get("step_number") or idx + 1)
        except (TypeError, ValueError):
            number = idx + 1
        steps.append(
            PlanStep(
                step_number=number,
                description=str(raw.get("description") or f"Step {idx + 1}"),
                tools=_string_list(raw.get("tools")),
                files=_string_list(raw.get("files")),
            )
        )
    return PlanMessage(summary=str(data.get("summary") or "Execution plan"), steps=tuple(steps))


# ----------------------------------------------------------------------
# Review
# ----------------------------------------------------------------------


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def build_review(
    messages: Sequence[Message],
    plan: PlanMessage,
    plan_idx: int,
    now: float | None = None,
) -> ReviewMessage:
    """Summarize a finished plan from its steps and the checkpoints after it."""
    now = time.time() if now is None else now
    succeeded = [s for s in plan.steps if s.status == StepStatus.SUCCEEDED]
    failed = [s for s in plan.steps if s.status == StepStatus.FAILED]
    skipped = [s for s in plan.steps if s.status == StepStatus.SKIPPED or s.disabled]
    completed = not failed

    files_changed: list[FileChange] = []
    seen: set[str] = set()
    for message in messages[plan_idx + 1:]:
        if not isinstance(message, CheckpointMessage):
            continue
        for path in message.snapshot_of_path:
            if path not in seen:
                seen.add(path)
                files_changed.append(FileChange(path=path, change_type="modified"))

    issues = tuple(
        ReviewIssue(
            severity="error",
            message=step.error or f"Step {step.step_number} failed: {step.description}",
            file=step.files[0] if step.files else None,
        )
        for step in failed
    )

    n_done = len(succeeded)
    if completed:
        summary = (
            f"Successfully completed all {n_done} {_plural(n_done, 'step', 'steps')} of the plan: {plan.summary}"
        )
    else:
        summary = (
            f"Completed {n_done} of {len(plan.steps)} steps. "
            f"{len(failed)} {_plural(len(failed), 'step', 'steps')} failed."
        )
    if skipped:
        summary += f" {len(skipped)} {_plural(len(skipped), 'step was', 'steps were')} skipped."

    if failed:
        next_steps = ["Review failed steps and retry if needed", "Check error messages for details"]
        if len(failed) == 1:
            next_steps.append("Consider skipping the failed step if it's not critical")
    else:
        next_steps = ["Review the changes made", "Test the implementation", "Continue with additional improvements if needed"]

    last_checkpoint_idx = None
    for idx in range(len(messages) - 1, -1, -1):
        if isinstance(messages[idx], CheckpointMessage):
            last_checkpoint_idx = idx
            break

    return ReviewMessage(
        completed=completed,
        summary=summary,
        issues=issues,
        files_changed=tuple(files_changed),
        steps_completed=n_done,
        steps_total=len(plan.steps),
        next_steps=tuple(next_steps),
        execution_time=(now - plan.execution_start_time) if plan.execution_start_time else None,
        checkpoint_count=(last_checkpoint_idx - max(plan_idx, 0)) if last_checkpoint_idx is not None else 0,
        last_checkpoint_index=last_checkpoint_idx,
    )


# ----------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class StepRef:
    """A step located inside the log."""

    plan: PlanMessage
    plan_idx: int
    step: PlanStep
    step_idx: int


class PlanManager:
    """Reads and advances the latest plan of each thread."""

    def __init__(
        self,
        store: ThreadStore,
        checkpoints: CheckpointEngine,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.cache_ttl = (config or get_config().cache).plan_cache_ttl
        self._clock = clock
        self._now = wall_clock
        self._cache: dict[str, tuple[float, int | None]] = {}
        self._suppress_plan_once: set[str] = set()
        store.subscribe(PLAN_CHANGED, self.invalidate)

    def invalidate(self, thread_id: str) -> None:
        self._cache.pop(thread_id, None)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_current_plan(self, thread_id: str, force_refresh: bool = False) -> tuple[PlanMessage, int] | None:
        """Latest plan message of a thread and its index."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return None

        if not force_refresh and thread_id in self._cache:
            checked_at, cached_idx = self._cache[thread_id]
            if self._clock() - checked_at < self.cache_ttl:
                if cached_idx is None:
                    return None
                if cached_idx < len(thread.messages):
                    cached = thread.messages[cached_idx]
                    if isinstance(cached, PlanMessage):
                        return cached, cached_idx

        plan_idx = None
        for idx in range(len(thread.messages) - 1, -1, -1):
            if isinstance(thread.messages[idx], PlanMessage):
                plan_idx = idx
                break
        self._cache[thread_id] = (self._clock(), plan_idx)
        if plan_idx is None:
            return None
        plan = thread.messages[plan_idx]
        assert isinstance(plan, PlanMessage)
        return plan, plan_idx

    def current_step(self, thread_id: str, force_refresh: bool = False) -> StepRef | None:
        """First enabled step that is queued, running or paused."""
        found = self.get_current_plan(thread_id, force_refresh)
        if found is None:
            return None
        plan, plan_idx = found
        for step_idx, step in enumerate(plan.steps):
            if not step.disabled and step.status in (StepStatus.QUEUED, StepStatus.RUNNING, StepStatus.PAUSED):
                return StepRef(plan, plan_idx, step, step_idx)
        return None

    def pending_plan(self, thread_id: str) -> tuple[PlanMessage, int] | None:
        """A recent plan still waiting for the user's approval."""
        found = self.get_current_plan(thread_id)
        thread = self.store.get_thread(thread_id)
        if found is None or thread is None:
            return None
        plan, plan_idx = found
        if plan.approval_state != ApprovalState.PENDING:
            return None
        if len(thread.messages) - plan_idx > RECENT_PLAN_WINDOW:
            return None
        return found

    def has_open_plan(self, thread_id: str) -> bool:
        """Whether the latest plan is still pending, approved or executing."""
        found = self.get_current_plan(thread_id)
        return found is not None and found[0].approval_state not in (
            ApprovalState.COMPLETED,
            ApprovalState.ABORTED,
        )

    @staticmethod
    def is_complete(plan: PlanMessage) -> bool:
        return all(step.is_terminal() for step in plan.steps)

    # ------------------------------------------------------------------
    # Generation gate
    # ------------------------------------------------------------------

    def suppress_plan_once(self, thread_id: str) -> None:
        self._suppress_plan_once.add(thread_id)

    def should_generate_plan_for(self, thread_id: str) -> bool:
        """Plan gate for the thread's latest user request (consumes the one-shot suppression)."""
        if thread_id in self._suppress_plan_once:
            self._suppress_plan_once.discard(thread_id)
            return False
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return False
        last_user = next((m for m in reversed(thread.messages) if isinstance(m, UserMessage)), None)
        if last_user is None:
            return False
        return should_generate_plan(last_user.display_content or last_user.content)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _plan_at(self, thread_id: str, message_idx: int) -> PlanMessage | None:
        thread = self.store.get_thread(thread_id)
        if thread is None or not 0 <= message_idx < len(thread.messages):
            return None
        message = thread.messages[message_idx]
        return message if isinstance(message, PlanMessage) else None

    def _write(self, thread_id: str, plan_idx: int, plan: PlanMessage) -> None:
        self.store.replace_at(thread_id, plan_idx, plan)
        self.invalidate(thread_id)

    def _with_step(
        self, thread_id: str, plan: PlanMessage, step_idx: int, **changes: Any
    ) -> PlanMessage | None:
        step = plan.steps[step_idx]
        new_status = changes.get("status")
        if new_status is not None and not can_transition_step(step.status, new_status):
            log.warning(
                "Refused plan step transition",
                thread_id=thread_id,
                step=step.step_number,
                from_status=step.status.value,
                to_status=new_status.value,
            )
            return None
        steps = list(plan.steps)
        steps[step_idx] = replace(step, **changes)
        return replace(plan, steps=tuple(steps))

    def _set_approval(
        self, thread_id: str, plan: PlanMessage, state: ApprovalState, **changes: Any
    ) -> PlanMessage | None:
        if not can_transition_plan(plan.approval_state, state):
            log.warning(
                "Refused plan transition",
                thread_id=thread_id,
                from_state=plan.approval_state.value,
                to_state=state.value,
            )
            return None
        if plan.approval_state != state:
            log.info("Plan transition", thread_id=thread_id, from_state=plan.approval_state.value, to_state=state.value)
        return replace(plan, approval_state=state, **changes)

    def update_step(self, thread_id: str, plan_idx: int, step_idx: int, **changes: Any) -> bool:
        plan = self._plan_at(thread_id, plan_idx)
        if plan is None or not 0 <= step_idx < len(plan.steps):
            return False
        updated = self._with_step(thread_id, plan, step_idx, **changes)
        if updated is None:
            return False
        self._write(thread_id, plan_idx, updated)
        return True

    def link_tool_call(self, thread_id: str, ref: StepRef, tool_id: str) -> None:
        plan = self._plan_at(thread_id, ref.plan_idx)
        if plan is None or ref.step_idx >= len(plan.steps):
            return
        step = plan.steps[ref.step_idx]
        if tool_id in step.tool_calls:
            return
        self.update_step(thread_id, ref.plan_idx, ref.step_idx, tool_calls=step.tool_calls + (tool_id,))

    def mark_step_completed(self, thread_id: str, ref: StepRef, succeeded: bool, error: str | None = None) -> bool:
        status = StepStatus.SUCCEEDED if succeeded else StepStatus.FAILED
        done = self.update_step(
            thread_id, ref.plan_idx, ref.step_idx, status=status, end_time=self._now(), error=error
        )
        if done:
            log.info("Plan step finished", thread_id=thread_id, step=ref.step.step_number, status=status.value)
        return done

    def start_next_step(self, thread_id: str) -> StepRef | None:
        """Checkpoint, then move the first enabled queued step to ``running``."""
        found = self.get_current_plan(thread_id, force_refresh=True)
        if found is None:
            return None
        plan, plan_idx = found
        if any(not s.disabled and s.status == StepStatus.FAILED for s in plan.steps):
            log.info("Plan blocked by failed step", thread_id=thread_id)
            return None
        step_idx = next(
            (i for i, s in enumerate(plan.steps) if not s.disabled and s.status == StepStatus.QUEUED),
            None,
        )
        if step_idx is None:
            return None

        self.checkpoints.add_user_checkpoint(thread_id)
        # the new checkpoint may have evicted older entries, so re-resolve positions
        found = self.get_current_plan(thread_id, force_refresh=True)
        thread = self.store.get_thread(thread_id)
        if found is None or thread is None:
            return None
        plan, plan_idx = found
        checkpoint_idx = len(thread.messages) - 1
        if not self.update_step(
            thread_id,
            plan_idx,
            step_idx,
            status=StepStatus.RUNNING,
            start_time=self._now(),
            checkpoint_index=checkpoint_idx,
        ):
            return None
        log.info("Plan step started", thread_id=thread_id, step=plan.steps[step_idx].step_number)
        return self.current_step(thread_id, force_refresh=True)

    def begin_execution(self, thread_id: str) -> bool:
        """Move an approved plan to ``executing``."""
        found = self.get_current_plan(thread_id, force_refresh=True)
        if found is None:
            return False
        plan, plan_idx = found
        if plan.approval_state != ApprovalState.APPROVED:
            return plan.approval_state == ApprovalState.EXECUTING
        updated = self._set_approval(
            thread_id,
            plan,
            ApprovalState.EXECUTING,
            execution_start_time=plan.execution_start_time or self._now(),
        )
        if updated is None:
            return False
        self._write(thread_id, plan_idx, updated)
        return True

    def complete_if_finished(self, thread_id: str) -> ReviewMessage | None:
        """Mark an executing plan completed and append its review once every step is terminal."""
        found = self.get_current_plan(thread_id, force_refresh=True)
        if found is None:
            return None
        plan, plan_idx = found
        if plan.approval_state != ApprovalState.EXECUTING or not self.is_complete(plan):
            return None
        updated = self._set_approval(thread_id, plan, ApprovalState.COMPLETED)
        if updated is None:
            return None
        self._write(thread_id, plan_idx, updated)
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return None
        review = build_review(thread.messages, updated, plan_idx, now=self._now())
        self.store.append(thread_id, review)
        log.info("Plan completed", thread_id=thread_id, completed=review.completed, steps=review.steps_total)
        return review

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def approve_plan(self, thread_id: str, message_idx: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        now = self._now()
        steps = tuple(
            replace(step, status=StepStatus.SKIPPED)
            if step.disabled and step.status == StepStatus.QUEUED
            else step
            for step in plan.steps
        )
        updated = self._set_approval(
            thread_id,
            replace(plan, steps=steps),
            ApprovalState.APPROVED,
            approved_at=now,
            execution_start_time=now,
        )
        if updated is None:
            return False
        self._write(thread_id, message_idx, updated)
        return True

    def reject_plan(self, thread_id: str, message_idx: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        updated = self._set_approval(thread_id, plan, ApprovalState.ABORTED)
        if updated is None:
            return False
        self._write(thread_id, message_idx, updated)
        return True

    def edit_plan(self, thread_id: str, message_idx: int, updated_plan: PlanMessage) -> bool:
        if self._plan_at(thread_id, message_idx) is None:
            return False
        self._write(thread_id, message_idx, updated_plan)
        return True

    def toggle_step_disabled(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        steps = tuple(
            replace(step, disabled=not step.disabled) if step.step_number == step_number else step
            for step in plan.steps
        )
        self._write(thread_id, message_idx, replace(plan, steps=steps))
        return True

    def reorder_plan_steps(self, thread_id: str, message_idx: int, new_order: Sequence[int]) -> bool:
        """Reorder by step number; unknown numbers are dropped and steps renumbered 1..N."""
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        by_number = {step.step_number: step for step in plan.steps}
        reordered = [by_number[n] for n in new_order if n in by_number]
        steps = tuple(replace(step, step_number=i + 1) for i, step in enumerate(reordered))
        self._write(thread_id, message_idx, replace(plan, steps=steps))
        return True

    def _step_index(self, plan: PlanMessage, step_number: int) -> int | None:
        return next((i for i, s in enumerate(plan.steps) if s.step_number == step_number), None)

    def retry_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        step_idx = self._step_index(plan, step_number)
        if step_idx is None:
            return False
        updated = self._with_step(
            thread_id, plan, step_idx, status=StepStatus.QUEUED, error=None, start_time=None, end_time=None
        )
        if updated is None:
            return False
        if updated.approval_state == ApprovalState.COMPLETED:
            updated = self._set_approval(thread_id, updated, ApprovalState.EXECUTING)
            if updated is None:
                return False
        self._write(thread_id, message_idx, updated)
        return True

    def skip_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        step_idx = self._step_index(plan, step_number)
        if step_idx is None:
            return False
        updated = self._with_step(thread_id, plan, step_idx, status=StepStatus.SKIPPED)
        if updated is None:
            return False
        self._write(thread_id, message_idx, updated)
        return True

    def rollback_to_step(self, thread_id: str, message_idx: int, step_number: int) -> bool:
        plan = self._plan_at(thread_id, message_idx)
        if plan is None:
            return False
        step_idx = self._step_index(plan, step_number)
        if step_idx is None or plan.steps[step_idx].checkpoint_index is None:
            return False
        return self.checkpoints.jump_to_checkpoint_before_message_idx(
            thread_id, plan.steps[step_idx].checkpoint_index, use_user_modified=False
        )

    def pause_running_step(self, thread_id: str) -> bool:
        found = self.get_current_plan(thread_id, force_refresh=True)
        if found is None:
            return False
        plan, plan_idx = found
        step_idx = next((i for i, s in enumerate(plan.steps) if s.status == StepStatus.RUNNING), None)
        if step_idx is None:
            return False
        return self.update_step(thread_id, plan_idx, step_idx, status=StepStatus.PAUSED)

    def resume_paused_step(self, thread_id: str) -> bool:
        found = self.get_current_plan(thread_id, force_refresh=True)
        if found is None:
            return False
        plan, plan_idx = found
        step_idx = next((i for i, s in enumerate(plan.steps) if s.status == StepStatus.PAUSED), None)
        if step_idx is None:
            return False
        updated = self._with_step(thread_id, plan, step_idx, status=StepStatus.QUEUED)
        if updated is None:
            return False
        updated = self._set_approval(thread_id, updated, ApprovalState.EXECUTING)
        if updated is None:
            return False
        self._write(thread_id, plan_idx, updated)
        return True
