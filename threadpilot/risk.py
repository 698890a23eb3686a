"""Edit-risk scoring contract and the approval policy built on it."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from threadpilot.config import ApprovalConfig, get_config
from threadpilot.llm import ModelSelection


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass
class EditContext:
    """A proposed file edit, as seen by the risk scorer."""

    path: str
    operation: str
    original_content: str | None = None
    new_content: str | None = None
    model_selection: ModelSelection | None = None
    file_was_read: bool = False
    total_files_in_operation: int = 1


@dataclass
class EditRiskScore:
    risk_score: float
    confidence_score: float
    risk_level: RiskLevel
    risk_factors: list[str] = field(default_factory=list)
    confidence_factors: list[str] = field(default_factory=list)


class EditRiskScorer(ABC):
    """Rates how dangerous an edit is and how sure the model seems."""

    @abstractmethod
    async def score(self, context: EditContext) -> EditRiskScore:
        pass


_SAFE_COMMAND_WORDS = (
    "list", "show", "check", "status", "get", "display", "print",
    "view", "read", "cat", "ls", "pwd", "whoami", "date", "time",
)
_DANGEROUS_COMMAND_WORDS = (
    "delete", "remove", "rm", "kill", "destroy", "format", "reset",
    "clear", "drop", "truncate", "sudo", "chmod", "chown",
)


def is_safe_nl_command(text: str) -> bool:
    """Read-only looking natural-language shell request."""
    lower = text.lower()
    return any(w in lower for w in _SAFE_COMMAND_WORDS) and not any(
        w in lower for w in _DANGEROUS_COMMAND_WORDS
    )


@dataclass(frozen=True)
class ApprovalDecision:
    auto_approve: bool
    notify: bool = False


def evaluate_auto_approval(
    score: EditRiskScore,
    auto_approve: bool = False,
    config: ApprovalConfig | None = None,
) -> ApprovalDecision:
    """Adjust the category auto-approve setting by the edit's risk score.

    Low risk with high confidence runs unattended, and is flagged to the user
    when the risk reaches the notify threshold. HIGH risk always asks.
    """
    config = config or get_config().approval
    if score.risk_level == RiskLevel.HIGH:
        return ApprovalDecision(auto_approve=False)
    if score.risk_score < config.risk_threshold and score.confidence_score > config.confidence_threshold:
        return ApprovalDecision(auto_approve=True, notify=score.risk_score >= config.notify_threshold)
    return ApprovalDecision(auto_approve=auto_approve)
