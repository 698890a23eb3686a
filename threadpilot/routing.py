"""Model routing contract and request classification."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from threadpilot.config import ModelsConfig, get_config
from threadpilot.llm import ModelSelection
from threadpilot.logging import get_logger
from threadpilot.messages import UserMessage

log = get_logger(__name__)


class TaskType(str, Enum):
    CHAT = "chat"
    CODE = "code"
    VISION = "vision"
    PDF = "pdf"
    WEB_SEARCH = "web_search"
    EVAL = "eval"
    GENERAL = "general"


@dataclass(frozen=True)
class TaskContext:
    """What the router knows about a request."""

    task_type: TaskType
    has_images: bool = False
    has_pdfs: bool = False
    has_code: bool = False
    requires_privacy: bool = False
    prefer_low_latency: bool = False
    prefer_low_cost: bool = False
    user_override: ModelSelection | None = None
    requires_complex_reasoning: bool = False
    is_long_message: bool = False


@dataclass
class RoutingDecision:
    """Primary model plus ordered fallbacks."""

    model_selection: ModelSelection
    fallback_chain: list[ModelSelection] = field(default_factory=list)
    confidence: float = 1.0
    reasoning: str = ""
    quality_tier: str = "standard"
    should_abstain: bool = False
    abstain_reason: str | None = None
    timeout_ms: int | None = None


class ModelRouter(ABC):
    """Chooses a model for a request."""

    @abstractmethod
    async def route(self, context: TaskContext) -> RoutingDecision:
        pass


# ----------------------------------------------------------------------
# Classification strategies
# ----------------------------------------------------------------------

_CODEBASE_PATTERNS = [
    re.compile(r"\b(codebase|code base|repository|repo|project)\b"),
    re.compile(r"\b(architecture|structure|organization|layout)\b.*\b(project|codebase|repo|code)\b"),
    re.compile(r"\bhow\s+many\s+(endpoint|api|route|file|function|class|component|module|service)"),
    re.compile(r"^(summarize|explain|describe|overview|analyze|break down)\s+(my|this|the)\s+(codebase|repo|project|code)"),
]
_IMPLEMENTATION_PATTERNS = [
    re.compile(r"^(implement|create|add|build|make|set up|configure)\s+(a|an|the|my|this)?\s*\w+"),
    re.compile(
        r"\b(implement|create|add|build|make|write|generate|develop)\s+"
        r"(function|class|method|component|feature|endpoint|api|route|service|module|system)\b"
    ),
]
_IMPLEMENTATION_KEYWORDS = (
    "write code",
    "generate code",
    "fix bug",
    "refactor code",
    "debug",
    "syntax error",
    "compile error",
    "set up",
    "configure",
    "develop",
)
_WEB_SEARCH_KEYWORDS = (
    "search the web",
    "search online",
    "look up online",
    "google",
    "duckduckgo",
    "web search",
    "search internet",
)
_CODE_PATTERNS = [
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"`[^`]+`"),
    re.compile(r"function\s+\w+"),
    re.compile(r"class\s+\w+"),
    re.compile(r"import\s+.*from"),
    re.compile(r"(const|let)\s+\w+\s*="),
]
LONG_MESSAGE_CHARS = 500


def detect_code(text: str) -> bool:
    return any(pattern.search(text) for pattern in _CODE_PATTERNS)


def is_codebase_question(text: str) -> bool:
    lower = text.lower().strip()
    return any(pattern.search(lower) for pattern in _CODEBASE_PATTERNS)


def detect_task_type(text: str, has_images: bool = False, has_pdfs: bool = False) -> TaskType:
    """Classify a request by its attachments and wording."""
    if has_pdfs:
        return TaskType.PDF
    if has_images:
        return TaskType.VISION

    lower = text.lower().strip()
    if is_codebase_question(lower):
        return TaskType.CODE
    has_code_block = bool(re.search(r"```[\s\S]+?```", text) or re.search(r"`[^`\n]{10,}`", text))
    if (
        has_code_block
        or any(pattern.search(lower) for pattern in _IMPLEMENTATION_PATTERNS)
        or any(keyword in lower for keyword in _IMPLEMENTATION_KEYWORDS)
    ):
        return TaskType.CODE
    if any(keyword in lower for keyword in _WEB_SEARCH_KEYWORDS):
        return TaskType.WEB_SEARCH
    return TaskType.CHAT


def build_task_context(message: UserMessage) -> TaskContext:
    """Routing context for a user message."""
    has_images = bool(message.images)
    has_pdfs = bool(message.pdfs)
    return TaskContext(
        task_type=detect_task_type(message.content, has_images=has_images, has_pdfs=has_pdfs),
        has_images=has_images,
        has_pdfs=has_pdfs,
        has_code=detect_code(message.content),
        requires_complex_reasoning=is_codebase_question(message.content),
        is_long_message=len(message.content) > LONG_MESSAGE_CHARS,
    )


class ConfiguredModelRouter(ModelRouter):
    """Routes to the configured models in order; the rest form the fallback chain."""

    def __init__(self, config: ModelsConfig | None = None):
        config = config or get_config().models
        self.models = [ModelSelection(entry.provider, entry.model) for entry in config.allowed]

    async def route(self, context: TaskContext) -> RoutingDecision:
        ordered = list(self.models)
        if context.user_override is not None and not context.user_override.is_auto:
            ordered = [context.user_override] + [m for m in ordered if m != context.user_override]
        if not ordered:
            return RoutingDecision(
                model_selection=ModelSelection.auto(),
                confidence=0.0,
                should_abstain=True,
                abstain_reason="No models configured",
            )
        decision = RoutingDecision(
            model_selection=ordered[0],
            fallback_chain=ordered[1:],
            reasoning=f"configured order for {context.task_type.value} task",
        )
        log.debug(
            "Routed request",
            task_type=context.task_type.value,
            model=decision.model_selection.key,
            fallbacks=len(decision.fallback_chain),
        )
        return decision
