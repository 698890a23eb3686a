from dataclasses import replace

from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import CacheConfig, CheckpointConfig
from threadpilot.messages import (
    ApprovalState,
    AssistantMessage,
    CheckpointKind,
    CheckpointMessage,
    PlanMessage,
    PlanStep,
    ReviewMessage,
    StepStatus,
    UserMessage,
)
from threadpilot.plans import (
    PLAN_PARSE_FAILED_PREFIX,
    PlanManager,
    build_review,
    can_transition_step,
    parse_plan,
    should_generate_plan,
)
from threadpilot.snapshots import FileSnapshot
from threadpilot.store import ThreadStore


class MemoryFiles:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}

    def get_snapshot(self, path: str) -> FileSnapshot:
        return FileSnapshot(self.files.get(path))

    def restore_snapshot(self, path: str, snapshot: FileSnapshot) -> None:
        if snapshot.content is None:
            self.files.pop(path, None)
        else:
            self.files[path] = snapshot.content


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _plan(*descriptions: str) -> PlanMessage:
    return PlanMessage(
        summary="Do the thing",
        steps=tuple(PlanStep(step_number=i + 1, description=d) for i, d in enumerate(descriptions)),
    )


def _setup(plan: PlanMessage | None = None):
    store = ThreadStore(frame_interval=0)
    checkpoints = CheckpointEngine(store, MemoryFiles(), CheckpointConfig())
    clock = FakeClock()
    manager = PlanManager(store, checkpoints, CacheConfig(plan_cache_ttl=0.1), clock=clock, wall_clock=clock)
    thread_id = store.create_thread().id
    store.append(thread_id, UserMessage(content="refactor the api"))
    plan_idx = None
    if plan is not None:
        plan_idx = store.append(thread_id, plan)
    return store, manager, clock, thread_id, plan_idx


def test_should_generate_plan_for_complex_requests():
    assert should_generate_plan("Please refactor the auth module")
    assert should_generate_plan("create a user table, add an endpoint and test it")
    assert not should_generate_plan("what does this function return?")


def test_parse_plan_reads_first_json_block():
    text = 'Here you go:\n{"summary": "Two steps", "steps": [{"stepNumber": 1, "description": "Read", "tools": ["read_file"], "files": ["a.py"]}, {"description": "Edit"}]}'

    plan = parse_plan(text)

    assert plan is not None
    assert plan.summary == "Two steps"
    assert plan.approval_state == ApprovalState.PENDING
    assert [s.step_number for s in plan.steps] == [1, 2]
    assert plan.steps[0].tools == ("read_file",)
    assert plan.steps[0].files == ("a.py",)
    assert all(s.status == StepStatus.QUEUED for s in plan.steps)


def test_parse_plan_rejects_non_json():
    assert parse_plan("no plan here") is None
    assert parse_plan("{not json}") is None
    assert PLAN_PARSE_FAILED_PREFIX.startswith("I attempted to create a plan")


def test_step_transition_table():
    assert can_transition_step(StepStatus.QUEUED, StepStatus.RUNNING)
    assert can_transition_step(StepStatus.RUNNING, StepStatus.PAUSED)
    assert can_transition_step(StepStatus.FAILED, StepStatus.QUEUED)
    assert not can_transition_step(StepStatus.QUEUED, StepStatus.SUCCEEDED)
    assert not can_transition_step(StepStatus.SKIPPED, StepStatus.QUEUED)


def test_plan_lookup_is_cached_briefly():
    store, manager, clock, thread_id, _ = _setup()
    assert manager.get_current_plan(thread_id) is None

    # put_thread does not announce a plan change, so only the TTL expires the lookup
    thread = store.get_thread(thread_id)
    store.put_thread(replace(thread, messages=thread.messages + (_plan("one"),)))
    assert manager.get_current_plan(thread_id) is None

    clock.now += 0.2
    assert manager.get_current_plan(thread_id)[1] == 1


def test_plan_cache_refreshes_on_plan_change():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one"))
    assert manager.get_current_plan(thread_id)[1] == plan_idx

    second_idx = store.append(thread_id, _plan("two"))

    assert manager.get_current_plan(thread_id)[1] == second_idx


def test_pending_plan_only_within_recent_window():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one"))
    assert manager.pending_plan(thread_id) is not None

    for i in range(10):
        store.append(thread_id, AssistantMessage(display_content=f"m{i}"))
    clock.now += 1

    assert manager.pending_plan(thread_id) is None


def test_generation_gate_consumes_suppression():
    store, manager, clock, thread_id, _ = _setup()

    manager.suppress_plan_once(thread_id)
    assert manager.should_generate_plan_for(thread_id) is False
    assert manager.should_generate_plan_for(thread_id) is True


def test_approve_then_run_steps_to_completion_with_review():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("read", "edit"))

    assert manager.approve_plan(thread_id, plan_idx) is True
    assert manager.begin_execution(thread_id) is True
    assert manager.get_current_plan(thread_id, force_refresh=True)[0].approval_state == ApprovalState.EXECUTING

    first = manager.start_next_step(thread_id)
    assert first is not None and first.step.status == StepStatus.RUNNING
    assert isinstance(store.get_thread(thread_id).messages[first.step.checkpoint_index], CheckpointMessage)
    manager.link_tool_call(thread_id, first, "call-1")
    manager.link_tool_call(thread_id, first, "call-1")
    clock.now += 2
    manager.mark_step_completed(thread_id, first, succeeded=True)

    second = manager.start_next_step(thread_id)
    assert second.step.step_number == 2
    manager.mark_step_completed(thread_id, second, succeeded=True)
    assert manager.start_next_step(thread_id) is None

    review = manager.complete_if_finished(thread_id)

    plan = store.get_thread(thread_id).messages[plan_idx]
    assert plan.approval_state == ApprovalState.COMPLETED
    assert plan.steps[0].tool_calls == ("call-1",)
    assert plan.steps[0].end_time - plan.steps[0].start_time == 2
    assert isinstance(review, ReviewMessage)
    assert review.completed is True
    assert review.steps_completed == 2
    assert store.get_thread(thread_id).messages[-1] == review


def test_failed_step_blocks_later_steps_until_retried():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one", "two"))
    manager.approve_plan(thread_id, plan_idx)
    manager.begin_execution(thread_id)
    first = manager.start_next_step(thread_id)
    manager.mark_step_completed(thread_id, first, succeeded=False, error="boom")

    assert manager.start_next_step(thread_id) is None

    assert manager.retry_step(thread_id, plan_idx, 1) is True
    step = store.get_thread(thread_id).messages[plan_idx].steps[0]
    assert step.status == StepStatus.QUEUED
    assert step.error is None
    assert manager.start_next_step(thread_id).step.step_number == 1


def test_skip_failed_step_lets_plan_finish_with_issues():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one", "two"))
    manager.approve_plan(thread_id, plan_idx)
    manager.begin_execution(thread_id)
    first = manager.start_next_step(thread_id)
    manager.mark_step_completed(thread_id, first, succeeded=False, error="boom")

    assert manager.skip_step(thread_id, plan_idx, 2) is True
    review = manager.complete_if_finished(thread_id)

    assert review is not None
    assert review.completed is False
    assert review.issues[0].message == "boom"
    assert "1 step was skipped" in review.summary


def test_disabled_steps_are_skipped_on_approval():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one", "two"))

    assert manager.toggle_step_disabled(thread_id, plan_idx, 1) is True
    manager.approve_plan(thread_id, plan_idx)
    manager.begin_execution(thread_id)

    plan = store.get_thread(thread_id).messages[plan_idx]
    assert plan.steps[0].status == StepStatus.SKIPPED
    assert manager.start_next_step(thread_id).step.step_number == 2


def test_reject_plan_aborts_and_cannot_be_approved():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one"))

    assert manager.reject_plan(thread_id, plan_idx) is True
    assert manager.approve_plan(thread_id, plan_idx) is False
    assert store.get_thread(thread_id).messages[plan_idx].approval_state == ApprovalState.ABORTED
    assert manager.has_open_plan(thread_id) is False


def test_reorder_renumbers_steps():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one", "two", "three"))

    manager.reorder_plan_steps(thread_id, plan_idx, [3, 1, 99, 2])

    steps = store.get_thread(thread_id).messages[plan_idx].steps
    assert [s.description for s in steps] == ["three", "one", "two"]
    assert [s.step_number for s in steps] == [1, 2, 3]


def test_pause_and_resume_running_step():
    store, manager, clock, thread_id, plan_idx = _setup(_plan("one"))
    manager.approve_plan(thread_id, plan_idx)
    manager.begin_execution(thread_id)
    manager.start_next_step(thread_id)

    assert manager.pause_running_step(thread_id) is True
    assert store.get_thread(thread_id).messages[plan_idx].steps[0].status == StepStatus.PAUSED
    assert manager.resume_paused_step(thread_id) is True
    assert store.get_thread(thread_id).messages[plan_idx].steps[0].status == StepStatus.QUEUED
    assert manager.resume_paused_step(thread_id) is False


def test_build_review_lists_files_from_checkpoints_after_plan():
    plan = PlanMessage(
        summary="s",
        steps=(PlanStep(step_number=1, description="one", status=StepStatus.SUCCEEDED),),
        execution_start_time=10.0,
    )
    messages = [
        UserMessage(content="x"),
        plan,
        CheckpointMessage(kind=CheckpointKind.TOOL_EDIT, snapshot_of_path={"a.py": FileSnapshot("1")}),
        CheckpointMessage(kind=CheckpointKind.USER_EDIT, snapshot_of_path={"a.py": FileSnapshot("2"), "b.py": FileSnapshot(None)}),
    ]

    review = build_review(messages, plan, 1, now=15.0)

    assert [f.path for f in review.files_changed] == ["a.py", "b.py"]
    assert review.execution_time == 5.0
    assert review.last_checkpoint_index == 3
    assert review.checkpoint_count == 2
