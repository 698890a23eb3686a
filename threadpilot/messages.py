"""Typed entries of a thread's message log.

Every entry is an immutable dataclass; updates replace the entry with a
modified copy (``dataclasses.replace``). ``role`` is the discriminator used
for serialization.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from pydantic import BaseModel

from threadpilot.snapshots import FileSnapshot


class ToolStatus(str, Enum):
    TOOL_REQUEST = "tool_request"
    RUNNING_NOW = "running_now"
    SUCCESS = "success"
    REJECTED = "rejected"
    TOOL_ERROR = "tool_error"
    INVALID_PARAMS = "invalid_params"


class CheckpointKind(str, Enum):
    USER_EDIT = "user_edit"
    TOOL_EDIT = "tool_edit"


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED})
OPEN_STEP_STATUSES = frozenset({StepStatus.QUEUED, StepStatus.RUNNING, StepStatus.PAUSED})


def _jsonable(value: Any) -> Any:
    """Convert tool params/results into JSON-compatible data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


# ----------------------------------------------------------------------
# Attachments
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ImageAttachment:
    name: str
    mime_type: str
    data: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mime_type": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageAttachment:
        return cls(
            name=data.get("name", ""),
            mime_type=data.get("mime_type", "image/png"),
            data=base64.b64decode(data.get("data", "")),
        )


@dataclass(frozen=True)
class PdfAttachment:
    filename: str
    extracted_text: str = ""
    page_count: int | None = None
    selected_pages: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "extracted_text": self.extracted_text,
            "page_count": self.page_count,
            "selected_pages": list(self.selected_pages),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PdfAttachment:
        return cls(
            filename=data.get("filename", ""),
            extracted_text=data.get("extracted_text", ""),
            page_count=data.get("page_count"),
            selected_pages=tuple(data.get("selected_pages") or ()),
        )


# ----------------------------------------------------------------------
# Log entries
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class UserMessage:
    role: ClassVar[str] = "user"

    content: str
    display_content: str = ""
    selections: tuple[Any, ...] = ()
    images: tuple[ImageAttachment, ...] = ()
    pdfs: tuple[PdfAttachment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "display_content": self.display_content,
            "selections": _jsonable(list(self.selections)),
            "images": [image.to_dict() for image in self.images],
            "pdfs": [pdf.to_dict() for pdf in self.pdfs],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserMessage:
        return cls(
            content=data.get("content", ""),
            display_content=data.get("display_content", ""),
            selections=tuple(data.get("selections") or ()),
            images=tuple(ImageAttachment.from_dict(i) for i in data.get("images") or ()),
            pdfs=tuple(PdfAttachment.from_dict(p) for p in data.get("pdfs") or ()),
        )


@dataclass(frozen=True)
class AssistantMessage:
    role: ClassVar[str] = "assistant"

    display_content: str
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "display_content": self.display_content, "reasoning": self.reasoning}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssistantMessage:
        return cls(display_content=data.get("display_content", ""), reasoning=data.get("reasoning", ""))


@dataclass(frozen=True)
class ToolMessage:
    role: ClassVar[str] = "tool"

    id: str
    name: str
    status: ToolStatus
    content: str = ""
    raw_params: dict[str, Any] = field(default_factory=dict)
    params: Any = None
    result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "content": self.content,
            "raw_params": _jsonable(self.raw_params),
            "params": _jsonable(self.params),
            "result": _jsonable(self.result),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolMessage:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            status=ToolStatus(data.get("status", ToolStatus.TOOL_ERROR.value)),
            content=data.get("content", ""),
            raw_params=dict(data.get("raw_params") or {}),
            params=data.get("params"),
            result=data.get("result"),
        )


@dataclass(frozen=True)
class InterruptedStreamingToolMessage:
    role: ClassVar[str] = "interrupted_streaming_tool"

    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InterruptedStreamingToolMessage:
        return cls(name=data.get("name", ""))


@dataclass(frozen=True)
class CheckpointMessage:
    role: ClassVar[str] = "checkpoint"

    kind: CheckpointKind
    snapshot_of_path: dict[str, FileSnapshot] = field(default_factory=dict)
    user_modifications: dict[str, FileSnapshot] = field(default_factory=dict)

    def snapshot_for(self, path: str, include_user_modified: bool = False) -> FileSnapshot | None:
        """Snapshot recorded for ``path``, optionally preferring the user overlay."""
        if include_user_modified and path in self.user_modifications:
            return self.user_modifications[path]
        return self.snapshot_of_path.get(path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "kind": self.kind.value,
            "snapshot_of_path": {p: s.to_dict() for p, s in self.snapshot_of_path.items()},
            "user_modifications": {p: s.to_dict() for p, s in self.user_modifications.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointMessage:
        return cls(
            kind=CheckpointKind(data.get("kind", CheckpointKind.USER_EDIT.value)),
            snapshot_of_path={
                p: FileSnapshot.from_dict(s) for p, s in (data.get("snapshot_of_path") or {}).items()
            },
            user_modifications={
                p: FileSnapshot.from_dict(s) for p, s in (data.get("user_modifications") or {}).items()
            },
        )


@dataclass(frozen=True)
class PlanStep:
    step_number: int
    description: str
    tools: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    status: StepStatus = StepStatus.QUEUED
    disabled: bool = False
    tool_calls: tuple[str, ...] = ()
    checkpoint_index: int | None = None
    start_time: float | None = None
    end_time: float | None = None
    error: str | None = None

    def is_terminal(self) -> bool:
        return self.disabled or self.status in TERMINAL_STEP_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "description": self.description,
            "tools": list(self.tools),
            "files": list(self.files),
            "status": self.status.value,
            "disabled": self.disabled,
            "tool_calls": list(self.tool_calls),
            "checkpoint_index": self.checkpoint_index,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanStep:
        return cls(
            step_number=int(data.get("step_number", 0)),
            description=data.get("description", ""),
            tools=tuple(data.get("tools") or ()),
            files=tuple(data.get("files") or ()),
            status=StepStatus(data.get("status", StepStatus.QUEUED.value)),
            disabled=bool(data.get("disabled", False)),
            tool_calls=tuple(data.get("tool_calls") or ()),
            checkpoint_index=data.get("checkpoint_index"),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class PlanMessage:
    role: ClassVar[str] = "plan"

    summary: str
    steps: tuple[PlanStep, ...] = ()
    approval_state: ApprovalState = ApprovalState.PENDING
    approved_at: float | None = None
    execution_start_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "summary": self.summary,
            "steps": [step.to_dict() for step in self.steps],
            "approval_state": self.approval_state.value,
            "approved_at": self.approved_at,
            "execution_start_time": self.execution_start_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanMessage:
        return cls(
            summary=data.get("summary", ""),
            steps=tuple(PlanStep.from_dict(s) for s in data.get("steps") or ()),
            approval_state=ApprovalState(data.get("approval_state", ApprovalState.PENDING.value)),
            approved_at=data.get("approved_at"),
            execution_start_time=data.get("execution_start_time"),
        )


@dataclass(frozen=True)
class ReviewIssue:
    severity: str
    message: str
    file: str | None = None


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: str = "modified"


@dataclass(frozen=True)
class ReviewMessage:
    role: ClassVar[str] = "review"

    completed: bool
    summary: str
    issues: tuple[ReviewIssue, ...] = ()
    files_changed: tuple[FileChange, ...] = ()
    steps_completed: int = 0
    steps_total: int = 0
    next_steps: tuple[str, ...] = ()
    execution_time: float | None = None
    checkpoint_count: int = 0
    last_checkpoint_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "completed": self.completed,
            "summary": self.summary,
            "issues": [
                {"severity": i.severity, "message": i.message, "file": i.file} for i in self.issues
            ],
            "files_changed": [{"path": f.path, "change_type": f.change_type} for f in self.files_changed],
            "steps_completed": self.steps_completed,
            "steps_total": self.steps_total,
            "next_steps": list(self.next_steps),
            "execution_time": self.execution_time,
            "checkpoint_count": self.checkpoint_count,
            "last_checkpoint_index": self.last_checkpoint_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewMessage:
        return cls(
            completed=bool(data.get("completed", False)),
            summary=data.get("summary", ""),
            issues=tuple(ReviewIssue(**i) for i in data.get("issues") or ()),
            files_changed=tuple(FileChange(**f) for f in data.get("files_changed") or ()),
            steps_completed=int(data.get("steps_completed", 0)),
            steps_total=int(data.get("steps_total", 0)),
            next_steps=tuple(data.get("next_steps") or ()),
            execution_time=data.get("execution_time"),
            checkpoint_count=int(data.get("checkpoint_count", 0)),
            last_checkpoint_index=data.get("last_checkpoint_index"),
        )


Message = Union[
    UserMessage,
    AssistantMessage,
    ToolMessage,
    InterruptedStreamingToolMessage,
    CheckpointMessage,
    PlanMessage,
    ReviewMessage,
]

_MESSAGE_TYPES: dict[str, type] = {
    cls.role: cls
    for cls in (
        UserMessage,
        AssistantMessage,
        ToolMessage,
        InterruptedStreamingToolMessage,
        CheckpointMessage,
        PlanMessage,
        ReviewMessage,
    )
}


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialize a log entry to JSON-compatible data."""
    return message.to_dict()


def message_from_dict(data: dict[str, Any]) -> Message:
    """Rebuild a log entry from ``message_to_dict`` output."""
    role = data.get("role")
    message_cls = _MESSAGE_TYPES.get(str(role))
    if message_cls is None:
        raise ValueError(f"Unknown message role: {role!r}")
    return message_cls.from_dict(data)
