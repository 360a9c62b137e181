from __future__ import annotations

import logging
from threading import Lock

from .store import (
    BatchCommitResult,
    BatchLimitExceededError,
    ClearPushTokenWrite,
    NotificationRecordWrite,
    ReminderFlagWrite,
    WriteOperation,
    WriteTarget,
)

logger = logging.getLogger(__name__)

STORE_WRITE_BATCH_LIMIT = 500


class MarkSentWriter:
    """Buffers a tick's writes and commits them in store-sized batches.

    A batch is committed as soon as the pending count reaches
    ``flush_threshold``; ``flush()`` commits whatever remains. Failed commits
    keep their operations pending and re-raise.
    """

    def __init__(
        self,
        *,
        target: WriteTarget,
        max_batch_operations: int = STORE_WRITE_BATCH_LIMIT,
        flush_threshold: int = 450,
    ) -> None:
        if max_batch_operations <= 0:
            raise ValueError("max_batch_operations must be positive")
        if flush_threshold <= 0 or flush_threshold > max_batch_operations:
            raise ValueError("flush_threshold must be between 1 and max_batch_operations")
        self._target = target
        self._max_batch_operations = max_batch_operations
        self._flush_threshold = flush_threshold
        self._lock = Lock()
        self._pending: list[WriteOperation] = []
        self._batch_count = 0
        self._committed_count = 0
        self._missing_event_count = 0
        self._stale_token_count = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def batch_count(self) -> int:
        return self._batch_count

    @property
    def committed_count(self) -> int:
        return self._committed_count

    @property
    def missing_event_count(self) -> int:
        return self._missing_event_count

    def queue(self, operation: WriteOperation) -> None:
        with self._lock:
            self._pending.append(operation)
            if len(self._pending) >= self._flush_threshold:
                self._commit_locked()

    def queue_reminder_flag(self, event_id: str, lead_time_label: str) -> None:
        self.queue(ReminderFlagWrite(event_id=event_id, lead_time_label=lead_time_label))

    def queue_token_cleanup(self, user_id: str, push_token: str) -> None:
        self.queue(ClearPushTokenWrite(user_id=user_id, push_token=push_token))

    def queue_notification_record(self, record: NotificationRecordWrite) -> None:
        self.queue(record)

    def flush(self) -> BatchCommitResult:
        with self._lock:
            if self._pending:
                self._commit_locked()
            return BatchCommitResult(
                committed_count=self._committed_count,
                missing_event_count=self._missing_event_count,
                stale_token_count=self._stale_token_count,
            )

    def _commit_locked(self) -> None:
        batch = list(self._pending)
        if len(batch) > self._max_batch_operations:
            raise BatchLimitExceededError(
                f"write batch of {len(batch)} exceeds limit {self._max_batch_operations}"
            )
        result = self._target.commit_batch(batch)
        self._pending.clear()
        self._batch_count += 1
        self._committed_count += result.committed_count
        self._missing_event_count += result.missing_event_count
        self._stale_token_count += result.stale_token_count
        logger.info(
            "committed write batch size=%d committed=%d missing_events=%d",
            len(batch),
            result.committed_count,
            result.missing_event_count,
        )
