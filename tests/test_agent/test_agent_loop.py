import asyncio

import pytest
from pydantic import BaseModel

from threadpilot.agent import AgentLoop, file_read_limit_message
from threadpilot.agent_tool_mixin import REUSED_FROM_CACHE
from threadpilot.checkpoints import CheckpointEngine
from threadpilot.config import Config
from threadpilot.llm import MessagePreparer, ModelResponse, ModelSelection, ModelTransport, StreamChunk, ToolCall
from threadpilot.messages import AssistantMessage, CheckpointMessage, ToolMessage, ToolStatus, UserMessage
from threadpilot.plans import PlanManager
from threadpilot.snapshots import FileSnapshot
from threadpilot.store import ThreadStore
from threadpilot.stream import StreamPhase
from threadpilot.tools import Tool, ToolRegistry

MODEL = ModelSelection("openai", "gpt-4o")


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


class ScriptedTransport(ModelTransport):
    """Replies from a script; the last entry repeats once the script runs out."""

    def __init__(self, *script: ModelResponse | BaseException, tools_supported: bool = True):
        self.script = list(script)
        self.requests = []
        self.tools_supported = tools_supported

    async def send_message(self, request, on_text=None):
        self.requests.append(request)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        if on_text is not None:
            on_text(StreamChunk(text=step.text))
        return step

    def supports_tools(self, model):
        return self.tools_supported


class PathParams(BaseModel):
    uri: str


class ReadTool(Tool):
    name = "read_file"
    params_model = PathParams

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, params, abort_event):
        self.calls.append(params.uri)
        return f"contents of {params.uri}"


class SearchTool(Tool):
    name = "search_for_files"

    def __init__(self):
        self.queries: list[str] = []

    async def execute(self, params, abort_event):
        self.queries.append(params["query"])
        return ["src/navbar.py"]


class ListTool(Tool):
    name = "ls_dir"

    async def execute(self, params, abort_event):
        return "a.py\nb.py"


class BlockingTool(Tool):
    name = "run_command"
    timeout_seconds = 30.0

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, params, abort_event):
        self.started.set()
        await asyncio.sleep(30)
        return "never"


class FailingPreparer(MessagePreparer):
    async def prepare(self, chat_messages, model_selection, chat_mode, retrieval_context=None):
        raise RuntimeError("bad payload")


def _reply(text: str) -> ModelResponse:
    return ModelResponse(text=text)


def _tool_reply(name: str, tool_id: str = "call-1", text: str = "", **params) -> ModelResponse:
    return ModelResponse(text=text, tool_call=ToolCall(id=tool_id, name=name, raw_params=params))


def _make_loop(transport, *tools, config: Config | None = None, **kwargs):
    config = config or Config()
    store = ThreadStore(frame_interval=0)
    checkpoints = CheckpointEngine(store, MemoryFiles(), config.checkpoints)
    plans = PlanManager(store, checkpoints, config.cache)
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    loop = AgentLoop(
        store=store,
        transport=transport,
        tools=registry,
        checkpoints=checkpoints,
        plans=plans,
        config=config,
        **kwargs,
    )
    thread_id = store.create_thread().id
    return loop, store, thread_id


def _ask(store: ThreadStore, thread_id: str, text: str) -> None:
    store.append(thread_id, UserMessage(content=text, display_content=text))


@pytest.mark.asyncio
async def test_plain_reply_commits_message_and_checkpoint():
    records = []

    async def audit(record):
        records.append(record)

    transport = ScriptedTransport(_reply("Hi! How can I help?"))
    loop, store, thread_id = _make_loop(transport, audit=audit)
    _ask(store, thread_id, "hello there")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert isinstance(messages[1], AssistantMessage)
    assert messages[1].display_content == "Hi! How can I help?"
    assert isinstance(messages[-1], CheckpointMessage)
    assert store.get_stream_state(thread_id).phase is None
    assert store.get_stream_state(thread_id).error is None
    assert transport.requests[0].model == MODEL
    assert transport.requests[0].messages == [{"role": "user", "content": "hello there"}]
    assert [r["action"] for r in records] == ["prompt", "reply"]
    assert records[1]["ok"] is True


@pytest.mark.asyncio
async def test_reply_record_carries_time_to_first_token():
    class SlowStartTransport(ModelTransport):
        async def send_message(self, request, on_text=None):
            await asyncio.sleep(0.02)
            on_text(StreamChunk(text="Hel"))
            await asyncio.sleep(0.02)
            on_text(StreamChunk(text="Hello"))
            return ModelResponse(text="Hello")

    class SilentTransport(ModelTransport):
        async def send_message(self, request, on_text=None):
            return ModelResponse(text="Hello")

    records = []

    async def audit(record):
        records.append(record)

    loop, store, thread_id = _make_loop(SlowStartTransport(), audit=audit)
    _ask(store, thread_id, "hello there")
    await loop.run_agent_loop(thread_id, MODEL)

    meta = records[-1]["meta"]
    assert records[-1]["action"] == "reply"
    assert meta["first_token_ms"] >= 10
    assert meta["latency_ms"] >= meta["first_token_ms"] + 10

    records.clear()
    loop, store, thread_id = _make_loop(SilentTransport(), audit=audit)
    _ask(store, thread_id, "hello there")
    await loop.run_agent_loop(thread_id, MODEL)

    assert records[-1]["meta"]["first_token_ms"] is None
    assert records[-1]["meta"]["latency_ms"] >= 0


@pytest.mark.asyncio
async def test_failing_audit_hook_does_not_stop_the_loop():
    async def audit(record):
        raise RuntimeError("audit sink down")

    loop, store, thread_id = _make_loop(ScriptedTransport(_reply("ok")), audit=audit)
    _ask(store, thread_id, "hello there")

    await loop.run_agent_loop(thread_id, MODEL)

    assert store.get_thread(thread_id).messages[1] == AssistantMessage(display_content="ok")


@pytest.mark.asyncio
async def test_tool_call_then_answer():
    read = ReadTool()
    transport = ScriptedTransport(_tool_reply("read_file", text="Reading.", uri="a.py"), _reply("a.py prints 1"))
    loop, store, thread_id = _make_loop(transport, read)
    _ask(store, thread_id, "read a.py")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert messages[1] == AssistantMessage(display_content="Reading.")
    tool_message = messages[2]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.status == ToolStatus.SUCCESS
    assert tool_message.content == "contents of a.py"
    assert tool_message.params == PathParams(uri="a.py")
    assert messages[3] == AssistantMessage(display_content="a.py prints 1")
    assert read.calls == ["a.py"]
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_repeated_read_is_served_from_cache():
    read = ReadTool()
    transport = ScriptedTransport(
        _tool_reply("read_file", "c1", uri="a.py"),
        _tool_reply("read_file", "c2", uri="a.py"),
        _reply("done"),
    )
    loop, store, thread_id = _make_loop(transport, read)
    _ask(store, thread_id, "read a.py twice")

    await loop.run_agent_loop(thread_id, MODEL)

    tools = [m for m in store.get_thread(thread_id).messages if isinstance(m, ToolMessage)]
    assert read.calls == ["a.py"]
    assert [t.status for t in tools] == [ToolStatus.SUCCESS, ToolStatus.SUCCESS]
    assert tools[1].content.endswith(REUSED_FROM_CACHE)


@pytest.mark.asyncio
async def test_invalid_params_are_recorded_and_loop_continues():
    transport = ScriptedTransport(_tool_reply("read_file", path="a.py"), _reply("sorry"))
    loop, store, thread_id = _make_loop(transport, ReadTool())
    _ask(store, thread_id, "read a.py")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert messages[2].status == ToolStatus.INVALID_PARAMS
    assert "uri" in messages[2].content
    assert messages[3] == AssistantMessage(display_content="sorry")


@pytest.mark.asyncio
async def test_unknown_tool_is_recorded_as_invalid():
    transport = ScriptedTransport(_tool_reply("teleport"), _reply("never mind"))
    loop, store, thread_id = _make_loop(transport)
    _ask(store, thread_id, "hello there")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert messages[2].status == ToolStatus.INVALID_PARAMS
    assert messages[2].content == "Tool not found: teleport"


@pytest.mark.asyncio
async def test_iteration_limit_stops_with_error():
    config = Config()
    config.agent.max_iterations = 3
    transport = ScriptedTransport(_tool_reply("ls_dir"))
    loop, store, thread_id = _make_loop(transport, ListTool(), config=config)
    _ask(store, thread_id, "hello there")

    await loop.run_agent_loop(thread_id, MODEL)

    state = store.get_stream_state(thread_id)
    assert state.phase is None
    assert "maximum iterations (3)" in state.error.message
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_prose_reply_to_action_request_synthesizes_one_tool_call():
    search = SearchTool()
    transport = ScriptedTransport(_reply("Sure, I can add it."), _reply("Here is the change."))
    loop, store, thread_id = _make_loop(transport, search)
    _ask(store, thread_id, "add a logout button to navbar.py")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert messages[1].display_content.startswith("I'll help you with that. Let me start by")
    assert messages[2].name == "search_for_files"
    assert messages[2].status == ToolStatus.SUCCESS
    assert messages[3] == AssistantMessage(display_content="Here is the change.")
    assert search.queries == ["logout button navbar.py"]
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_no_synthesis_when_model_cannot_call_tools():
    search = SearchTool()
    transport = ScriptedTransport(_reply("Sure, I can add it."), tools_supported=False)
    loop, store, thread_id = _make_loop(transport, search)
    _ask(store, thread_id, "add a logout button to navbar.py")

    await loop.run_agent_loop(thread_id, MODEL)

    assert search.queries == []
    assert store.get_thread(thread_id).messages[1] == AssistantMessage(display_content="Sure, I can add it.")


@pytest.mark.asyncio
async def test_file_read_limit_forces_final_answer():
    config = Config()
    config.agent.max_files_read_per_query = 2
    read = ReadTool()
    transport = ScriptedTransport(
        _tool_reply("read_file", "c1", uri="a.py"),
        _tool_reply("read_file", "c2", uri="b.py"),
        _tool_reply("read_file", "c3", uri="c.py"),
        _reply("Based on a.py and b.py..."),
    )
    loop, store, thread_id = _make_loop(transport, read, config=config)
    _ask(store, thread_id, "read a.py, b.py and c.py")

    await loop.run_agent_loop(thread_id, MODEL)

    messages = store.get_thread(thread_id).messages
    assert read.calls == ["a.py", "b.py"]
    assert AssistantMessage(display_content=file_read_limit_message(3)) in messages
    assert messages[-2] == AssistantMessage(display_content="Based on a.py and b.py...")
    assert transport.requests[-1].chat_mode == "normal"
    assert transport.requests[0].chat_mode == "agent"


@pytest.mark.asyncio
async def test_abort_during_tool_stops_loop():
    blocking = BlockingTool()
    transport = ScriptedTransport(_tool_reply("run_command"), _reply("unreachable"))
    loop, store, thread_id = _make_loop(transport, blocking)
    _ask(store, thread_id, "hello there")

    task = asyncio.create_task(loop.run_agent_loop(thread_id, MODEL))
    await asyncio.wait_for(blocking.started.wait(), timeout=1.0)
    state = store.get_stream_state(thread_id)
    assert state.phase == StreamPhase.TOOL
    assert state.tool_info.tool_name == "run_command"

    assert state.interrupt.cancel() is True
    await asyncio.wait_for(task, timeout=1.0)

    assert store.get_stream_state(thread_id).phase is None
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_unexpected_failure_surfaces_as_stream_error():
    loop, store, thread_id = _make_loop(ScriptedTransport(_reply("x")), preparer=FailingPreparer())
    _ask(store, thread_id, "hello there")

    await loop.run_agent_loop(thread_id, MODEL)

    state = store.get_stream_state(thread_id)
    assert state.phase is None
    assert state.error.message == "bad payload"


@pytest.mark.asyncio
async def test_loop_for_unknown_thread_is_noop():
    transport = ScriptedTransport(_reply("x"))
    loop, store, _ = _make_loop(transport)

    await loop.run_agent_loop("missing", MODEL)

    assert transport.requests == []
