"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import pydantic
from pydantic import BaseModel

from threadpilot.caches import FileReadCache
from threadpilot.exceptions import AgentInterruptedError, ToolExecutionError, ToolNotFoundError, ValidationError
from threadpilot.logging import get_logger

log = get_logger(__name__)

EDITS = "edits"
TERMINAL = "terminal"
MCP_TOOLS = "MCP tools"
APPROVAL_TYPES = (EDITS, TERMINAL, MCP_TOOLS)

_CACHEABLE_READ_TOOL = "read_file"


def _format_validation_error(error: pydantic.ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "params"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


class Tool(ABC):
    """Base class for all tools.

    ``params_model`` describes the parameters the model must send. Tools that
    change files set ``mutates_files`` and report the affected path through
    ``target_path`` so the caller can checkpoint around them.
    """

    name: str = ""
    description: str = ""
    params_model: type[BaseModel] | None = None
    approval_type: str | None = None
    mutates_files: bool = False
    builtin: bool = True
    timeout_seconds: float = 30.0

    def validate_params(self, raw_params: dict[str, Any]) -> Any:
        """Validate raw parameters.

        Raises:
            ValidationError if the parameters do not fit ``params_model``
        """
        if self.params_model is None:
            return dict(raw_params)
        try:
            return self.params_model.model_validate(raw_params)
        except pydantic.ValidationError as e:
            raise ValidationError(self.name, _format_validation_error(e)) from e

    @abstractmethod
    async def execute(self, params: Any, abort_event: asyncio.Event) -> Any:
        """Run the tool and return its result; raise on failure."""
        pass

    def stringify_result(self, params: Any, result: Any) -> str:
        if isinstance(result, BaseModel):
            return result.model_dump_json()
        return str(result)

    def target_path(self, params: Any) -> str | None:
        """Path this call will modify, for tools that mutate files."""
        for attr in ("uri", "path"):
            value = params.get(attr) if isinstance(params, dict) else getattr(params, attr, None)
            if value:
                return str(value)
        return None

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM."""
        schema = self.params_model.model_json_schema() if self.params_model else {"type": "object"}
        return {"name": self.name, "description": self.description, "parameters": schema}


def _param(params: Any, name: str) -> Any:
    if isinstance(params, dict):
        return params.get(name)
    return getattr(params, name, None)


def read_cache_key(tool_name: str, params: Any) -> str | None:
    """Cache key for a ``read_file`` call, ``None`` for every other tool."""
    if tool_name != _CACHEABLE_READ_TOOL:
        return None
    path = _param(params, "uri") or _param(params, "path")
    if not path:
        return None
    return FileReadCache.make_key(
        str(path),
        _param(params, "start_line"),
        _param(params, "end_line"),
        _param(params, "page_number"),
    )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        return [tool.get_definition() for tool in self._tools.values()]

    def approval_type_for(self, name: str) -> str | None:
        """Approval category of a tool; tools from outside the core always need one."""
        tool = self._tools.get(name)
        if tool is None:
            return None
        if tool.approval_type is not None:
            return tool.approval_type
        return None if tool.builtin else MCP_TOOLS

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def call(
        self,
        name: str,
        params: Any,
        abort_event: asyncio.Event | None = None,
    ) -> Any:
        """Execute a tool with validated parameters.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
            AgentInterruptedError if ``abort_event`` fires first
        """
        tool = self.get(name)
        abort_event = abort_event or asyncio.Event()

        execute_task: asyncio.Task[Any] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name)
            timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))

            execute_task = asyncio.create_task(tool.execute(params, abort_event))
            abort_wait_task = asyncio.create_task(abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                log.info("Tool executed", tool=name)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                log.info("Tool execution aborted", tool=name)
                raise AgentInterruptedError(f"Tool '{name}' execution aborted")

            abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except (AgentInterruptedError, ToolExecutionError):
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
