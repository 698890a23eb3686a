"""Custom exceptions for threadpilot."""


class ThreadPilotError(Exception):
    """Base exception for threadpilot."""

    pass


class ConfigurationError(ThreadPilotError):
    """Configuration-related errors."""

    pass


class ValidationError(ThreadPilotError):
    """Malformed tool parameters."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ProviderError(ThreadPilotError):
    """Model call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Provider refused the call because of rate limiting."""

    pass


class ToolError(ThreadPilotError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool ran but failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class AgentInterruptedError(ThreadPilotError):
    """User-initiated cancellation of a running operation."""

    pass


class IterationLimitExceeded(ThreadPilotError):
    """Agent loop hit its iteration cap."""

    def __init__(self, limit: int):
        super().__init__(
            f"Agent loop reached maximum iterations ({limit}). Stopping to prevent infinite loop."
        )
        self.limit = limit


class ExhaustedFallbackError(ProviderError):
    """Every model tried in automatic mode failed."""

    def __init__(self, tried_models: list[str], last_error: BaseException | None = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All {len(tried_models)} models failed{detail}")
        self.tried_models = list(tried_models)
        self.last_error = last_error


class ThreadNotFoundError(ThreadPilotError):
    """Thread not found."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread not found: {thread_id}")
        self.thread_id = thread_id


class PersistenceError(ThreadPilotError):
    """Thread storage errors."""

    pass
