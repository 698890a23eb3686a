"""File snapshots captured by checkpoints."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from threadpilot.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class FileSnapshot:
    """Content of one file at a point in time; ``None`` means the file was absent."""

    content: str | None

    @property
    def exists(self) -> bool:
        return self.content is not None

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileSnapshot":
        return cls(content=data.get("content"))


class FileSnapshotProvider(Protocol):
    """Reads and restores file state for the checkpoint engine."""

    def get_snapshot(self, path: str) -> FileSnapshot: ...

    def restore_snapshot(self, path: str, snapshot: FileSnapshot) -> None: ...


class WorkspaceSnapshotProvider:
    """Snapshot provider backed by files under a workspace root."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root or Path.cwd()).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        raw = Path(path).expanduser()
        if raw.is_absolute():
            return raw
        return self.root / raw

    def get_snapshot(self, path: str) -> FileSnapshot:
        target = self._resolve(path)
        if not target.is_file():
            return FileSnapshot(content=None)
        return FileSnapshot(content=target.read_text(encoding="utf-8", errors="replace"))

    def restore_snapshot(self, path: str, snapshot: FileSnapshot) -> None:
        target = self._resolve(path)
        if snapshot.content is None:
            if target.is_file():
                target.unlink()
                log.debug("Removed file while restoring snapshot", path=str(target))
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(snapshot.content, encoding="utf-8")
        log.debug("Restored file snapshot", path=str(target))
