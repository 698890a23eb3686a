"""Checkpoint engine: file snapshots at points in the message log.

A checkpoint records the snapshot of every file that changed since the
previous checkpoint. Jumping between checkpoints restores, for each file
touched in the travelled span, the nearest snapshot in the direction of
travel. Undo falls back to a forward scan because a file first created after
the target checkpoint has its earliest state recorded later in the log.
"""

from __future__ import annotations

import json
from typing import Iterator

from threadpilot.config import CheckpointConfig, get_config
from threadpilot.logging import get_logger
from threadpilot.messages import CheckpointKind, CheckpointMessage
from threadpilot.snapshots import FileSnapshot, FileSnapshotProvider
from threadpilot.store import ThreadStore

log = get_logger(__name__)

BYTES_PER_MB = 1024 * 1024
_FALLBACK_CHECKPOINT_SIZE = 1000


class CheckpointEngine:
    """Creates, evicts and travels between checkpoints."""

    def __init__(
        self,
        store: ThreadStore,
        snapshots: FileSnapshotProvider,
        config: CheckpointConfig | None = None,
    ):
        self.store = store
        self.snapshots = snapshots
        self.config = config or get_config().checkpoints

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def checkpoint_before_message(
        self, thread_id: str, message_idx: int
    ) -> tuple[CheckpointMessage, int] | None:
        """Nearest checkpoint at or before ``message_idx``."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return None
        start = min(message_idx, len(thread.messages) - 1)
        for i in range(start, -1, -1):
            message = thread.messages[i]
            if isinstance(message, CheckpointMessage):
                return message, i
        return None

    def checkpoints_between(self, thread_id: str, lo_idx: int, hi_idx: int) -> dict[str, int]:
        """Map each path snapshotted in ``[lo_idx, hi_idx]`` to the last index touching it."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return {}
        last_idx_of_path: dict[str, int] = {}
        for i in range(max(0, lo_idx), min(hi_idx, len(thread.messages) - 1) + 1):
            message = thread.messages[i]
            if not isinstance(message, CheckpointMessage):
                continue
            # user_modifications are deliberately left out; jumps never replay them as history
            for path in message.snapshot_of_path:
                last_idx_of_path[path] = i
        return last_idx_of_path

    def current_checkpoint(self, thread_id: str) -> tuple[CheckpointMessage, int] | None:
        thread = self.store.get_thread(thread_id)
        if thread is None or thread.curr_checkpoint_index is None:
            return None
        idx = thread.curr_checkpoint_index
        if not 0 <= idx < len(thread.messages):
            return None
        message = thread.messages[idx]
        if not isinstance(message, CheckpointMessage):
            return None
        return message, idx

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def compute_new_checkpoint_info(self, thread_id: str) -> dict[str, FileSnapshot]:
        """Snapshots of known files whose content moved since their last checkpoint."""
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return {}
        checkpoint_idxs = self.store.checkpoint_indices(thread_id)
        if not checkpoint_idxs:
            return {}

        last_idx_of_path = self.checkpoints_between(thread_id, 0, checkpoint_idxs[-1])
        changed: dict[str, FileSnapshot] = {}
        for path in sorted(set(last_idx_of_path) | set(thread.files_with_user_changes)):
            current = self.snapshots.get_snapshot(path)
            previous = None
            if path in last_idx_of_path:
                checkpoint = thread.messages[last_idx_of_path[path]]
                if isinstance(checkpoint, CheckpointMessage):
                    previous = checkpoint.snapshot_for(path)
            if previous is not None and previous == current:
                continue
            changed[path] = current
        return changed

    def add_user_checkpoint(self, thread_id: str) -> int | None:
        snapshot_of_path = self.compute_new_checkpoint_info(thread_id)
        return self._add_checkpoint(
            thread_id,
            CheckpointMessage(kind=CheckpointKind.USER_EDIT, snapshot_of_path=snapshot_of_path),
        )

    def add_tool_edit_checkpoint(self, thread_id: str, path: str) -> int | None:
        """Record the current state of ``path`` around a tool edit."""
        if self.store.get_thread(thread_id) is None:
            return None
        snapshot = self.snapshots.get_snapshot(path)
        return self._add_checkpoint(
            thread_id,
            CheckpointMessage(kind=CheckpointKind.TOOL_EDIT, snapshot_of_path={path: snapshot}),
        )

    def add_user_modifications_to_current(self, thread_id: str) -> None:
        """Store edits made since the current checkpoint as its user overlay."""
        snapshot_of_path = self.compute_new_checkpoint_info(thread_id)
        current = self.current_checkpoint(thread_id)
        if current is None:
            return
        checkpoint, idx = current
        self.store.replace_at(
            thread_id,
            idx,
            CheckpointMessage(
                kind=checkpoint.kind,
                snapshot_of_path=checkpoint.snapshot_of_path,
                user_modifications=snapshot_of_path,
            ),
        )

    def stand_on_checkpoint(self, thread_id: str) -> None:
        """Make sure the thread has an active checkpoint position."""
        thread = self.store.get_thread(thread_id)
        if thread is None or thread.curr_checkpoint_index is not None:
            return
        if not thread.messages or not isinstance(thread.messages[-1], CheckpointMessage):
            self.add_user_checkpoint(thread_id)
        thread = self.store.get_thread(thread_id)
        if thread is not None:
            self.store.set_curr_checkpoint_index(thread_id, len(thread.messages) - 1)

    # ------------------------------------------------------------------
    # Travel
    # ------------------------------------------------------------------

    def jump_to_checkpoint_before_message_idx(
        self,
        thread_id: str,
        message_idx: int,
        use_user_modified: bool = False,
    ) -> bool:
        """Restore files to the checkpoint at or before ``message_idx``.

        Returns ``True`` when files were restored and the position moved.
        """
        if self.store.get_thread(thread_id) is None:
            return False
        if self.store.get_stream_state(thread_id).is_running:
            log.debug("Ignoring checkpoint jump while streaming", thread_id=thread_id)
            return False

        self.stand_on_checkpoint(thread_id)

        target = self.checkpoint_before_message(thread_id, message_idx)
        thread = self.store.get_thread(thread_id)
        if target is None or thread is None or thread.curr_checkpoint_index is None:
            return False

        from_idx = thread.curr_checkpoint_index
        _, to_idx = target
        if to_idx == from_idx:
            return False

        self.add_user_modifications_to_current(thread_id)
        thread = self.store.get_thread(thread_id)
        if thread is None:
            return False

        if to_idx < from_idx:
            touched = self.checkpoints_between(thread_id, to_idx + 1, from_idx)
            order = self._undo_scan_order(to_idx, len(thread.messages))
        else:
            touched = self.checkpoints_between(thread_id, from_idx + 1, to_idx)
            order = None

        for path in touched:
            scan = order if order is not None else range(to_idx, from_idx, -1)
            for k in scan:
                message = thread.messages[k]
                if not isinstance(message, CheckpointMessage):
                    continue
                snapshot = message.snapshot_for(path, include_user_modified=use_user_modified)
                if snapshot is None:
                    continue
                self.snapshots.restore_snapshot(path, snapshot)
                break

        self.store.set_curr_checkpoint_index(thread_id, to_idx)
        log.info(
            "Jumped to checkpoint",
            thread_id=thread_id,
            from_idx=from_idx,
            to_idx=to_idx,
            paths=len(touched),
        )
        return True

    @staticmethod
    def _undo_scan_order(to_idx: int, length: int) -> list[int]:
        def _indices() -> Iterator[int]:
            yield from range(to_idx, -1, -1)
            yield from range(to_idx + 1, length)

        return list(_indices())

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_size(checkpoint: CheckpointMessage) -> int:
        """Approximate stored size as the length of the serialized checkpoint."""
        try:
            return len(json.dumps(checkpoint.to_dict()))
        except (TypeError, ValueError):
            return _FALLBACK_CHECKPOINT_SIZE

    def total_size_bytes(self) -> int:
        total = 0
        for thread in self.store.threads.values():
            for message in thread.messages:
                if isinstance(message, CheckpointMessage):
                    total += self.estimate_size(message)
        return total

    def _add_checkpoint(self, thread_id: str, checkpoint: CheckpointMessage) -> int | None:
        if self.store.get_thread(thread_id) is None:
            return None

        existing = self.store.checkpoint_indices(thread_id)
        if existing and len(existing) >= self.config.max_per_thread:
            log.info("Evicting oldest checkpoint of thread", thread_id=thread_id, index=existing[0])
            self.store.remove_indices(thread_id, [existing[0]])

        size = self.estimate_size(checkpoint)
        limit = int(self.config.max_total_size_mb * BYTES_PER_MB)
        overflow = self.total_size_bytes() + size - limit
        if overflow > 0:
            self._evict_oldest(overflow)

        return self.store.append(thread_id, checkpoint)

    def _evict_oldest(self, needed_bytes: int) -> None:
        """Remove the oldest checkpoints across all threads until ``needed_bytes`` are freed."""
        candidates: list[tuple[int, str, int]] = []
        for thread_id, thread in self.store.threads.items():
            for idx, message in enumerate(thread.messages):
                if isinstance(message, CheckpointMessage):
                    candidates.append((idx, thread_id, self.estimate_size(message)))
        candidates.sort(key=lambda item: item[0])

        freed = 0
        to_evict: dict[str, list[int]] = {}
        for idx, thread_id, size in candidates:
            if freed >= needed_bytes:
                break
            to_evict.setdefault(thread_id, []).append(idx)
            freed += size

        for thread_id, indices in to_evict.items():
            self.store.remove_indices(thread_id, indices)
        log.info(
            "Evicted checkpoints to stay under size cap",
            freed_bytes=freed,
            threads=len(to_evict),
            checkpoints=sum(len(v) for v in to_evict.values()),
        )
