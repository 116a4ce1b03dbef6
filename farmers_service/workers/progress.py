"""
Progress tracking for a running bulk operation.

``OutcomeArena`` holds one slot per record (pre-sized once the input is
known) and ``ProgressTracker`` is the only writer of an operation's progress:
each record result is persisted together with the counter update, then fills
its slot and replaces the immutable snapshot status readers observe.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from farmers_service.db import crud
from farmers_service.utils.bulk_enums import ErrorKind, RecordStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    record_index: int
    status: RecordStatus
    created_farmer_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    attempts: int = 0
    input_data: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, record_index: int, farmer_id: str, attempts: int, input_data=None) -> "RecordResult":
        return cls(record_index, RecordStatus.SUCCESS, created_farmer_id=farmer_id,
                   attempts=attempts, input_data=input_data)

    @classmethod
    def failure(cls, record_index: int, kind: ErrorKind, detail: str, attempts: int,
                input_data=None) -> "RecordResult":
        return cls(record_index, RecordStatus.FAILED, error_kind=kind, error_detail=detail,
                   attempts=attempts, input_data=input_data)


@dataclass(frozen=True)
class ProgressSnapshot:
    total: int
    processed: int = 0
    successful: int = 0
    failed: int = 0

    def advance(self, success: bool) -> "ProgressSnapshot":
        return ProgressSnapshot(
            total=self.total,
            processed=self.processed + 1,
            successful=self.successful + (1 if success else 0),
            failed=self.failed + (0 if success else 1),
        )


class OutcomeArena:
    """Fixed slots for the records an operation run is responsible for."""

    def __init__(self, record_indices: Iterable[int]):
        indices = sorted(set(record_indices))
        self._positions: Dict[int, int] = {index: pos for pos, index in enumerate(indices)}
        self._slots: List[Optional[RecordResult]] = [None] * len(indices)

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, record_index: int) -> bool:
        return record_index in self._positions

    def is_filled(self, record_index: int) -> bool:
        return self._slots[self._positions[record_index]] is not None

    def fill(self, result: RecordResult) -> bool:
        """Store ``result`` in its slot; False if the slot is unknown or already filled."""
        position = self._positions.get(result.record_index)
        if position is None or self._slots[position] is not None:
            return False
        self._slots[position] = result
        return True


class ProgressTracker:
    """Single writer of an operation's progress counters and outcome rows."""

    def __init__(
        self,
        operation_id: uuid.UUID,
        arena: OutcomeArena,
        session_factory: Callable[[], Session],
        *,
        total: int,
        processed: int = 0,
        successful: int = 0,
        failed: int = 0,
        lease_owner: Optional[str] = None,
    ):
        self.operation_id = operation_id
        self.arena = arena
        self.lease_owner = lease_owner
        self._db = session_factory()
        self._lock = threading.Lock()
        self._snapshot = ProgressSnapshot(total, processed, successful, failed)

    def snapshot(self) -> ProgressSnapshot:
        # snapshots are immutable, readers never wait on a record write
        return self._snapshot

    def record(self, result: RecordResult) -> bool:
        """Persist one record result and advance the counters.

        Returns False when the result was not applied: the slot is unknown or
        already filled, the operation is no longer active (or no longer ours)
        in the store, or the write failed. The slot is only filled once the
        store has the outcome.
        """
        with self._lock:
            index = result.record_index
            if index not in self.arena or self.arena.is_filled(index):
                logger.warning(
                    "Duplicate or unknown outcome for record %s of operation %s ignored",
                    index, self.operation_id,
                )
                return False
            try:
                applied = crud.record_outcome(
                    self._db,
                    self.operation_id,
                    record_index=index,
                    status=result.status.value,
                    created_farmer_id=result.created_farmer_id,
                    error_kind=result.error_kind.value if result.error_kind else None,
                    error_detail=result.error_detail,
                    attempts=result.attempts,
                    input_data=result.input_data,
                    held_by=self.lease_owner,
                )
            except SQLAlchemyError:
                self._db.rollback()
                logger.exception(
                    "Failed to store outcome for record %s of operation %s", index, self.operation_id
                )
                return False
            if not applied:
                logger.warning(
                    "Operation %s is no longer active here; outcome for record %s discarded",
                    self.operation_id, index,
                )
                return False
            self.arena.fill(result)
            self._snapshot = self._snapshot.advance(result.status is RecordStatus.SUCCESS)
            return True

    def close(self) -> None:
        self._db.close()
