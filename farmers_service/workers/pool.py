"""
Bounded-concurrency execution of farmer creation.

Each record runs in its own task with its own retry loop, so a slow, failing
or timed-out record never affects its siblings. The blocking collaborator
call runs in a worker thread and is bounded by a per-record timeout; a call
that times out keeps running in its thread, so a retry may reach the farmer
service while the first attempt is still in flight (the request carries the
record's external id as its idempotency key for that case).
Cancellation is cooperative and only checked before a record is dispatched:
the in-process flag every time, the stored flag (set by any process) at most
once per ``cancel_poll_seconds``.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Sequence

from farmers_service.exceptions import PermanentFarmerError, TransientFarmerError
from farmers_service.services.collaborators import FarmerCreator
from farmers_service.services.farmer_validator import FarmerRecord
from farmers_service.utils.bulk_enums import ErrorKind
from farmers_service.workers.context import OperationContext
from farmers_service.workers.progress import RecordResult

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        creator: FarmerCreator,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stored_cancel_check: Optional[Callable[[uuid.UUID], bool]] = None,
    ):
        self._creator = creator
        self._sleep = sleep
        self._stored_cancel_check = stored_cancel_check

    async def run(self, context: OperationContext, records: Sequence[FarmerRecord]) -> int:
        """Dispatch ``records`` with at most ``max_concurrency`` in flight; return how many were dispatched."""
        semaphore = asyncio.Semaphore(context.settings.max_concurrency)
        loop = asyncio.get_running_loop()
        next_poll = loop.time()
        tasks: List[asyncio.Task] = []
        for record in records:
            await semaphore.acquire()
            if self._stored_cancel_check is not None and loop.time() >= next_poll:
                next_poll = loop.time() + context.settings.cancel_poll_seconds
                if not context.cancel_requested and self._stored_cancel_check(context.operation_id):
                    context.request_cancel()
            if context.cancel_requested:
                semaphore.release()
                logger.info(
                    "Cancellation observed for operation %s; %d record(s) not dispatched",
                    context.operation_id, len(records) - len(tasks),
                )
                break
            task = asyncio.create_task(self._process_record(context, record))
            task.add_done_callback(lambda _t: semaphore.release())
            tasks.append(task)
        if tasks:
            for record_task, outcome in zip(tasks, await asyncio.gather(*tasks, return_exceptions=True)):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Record task %s of operation %s ended with %r",
                        record_task.get_name(), context.operation_id, outcome,
                    )
        return len(tasks)

    async def _process_record(self, context: OperationContext, record: FarmerRecord) -> bool:
        result = await self._execute_with_retry(context, record)
        return context.tracker.record(result)

    async def _execute_with_retry(self, context: OperationContext, record: FarmerRecord) -> RecordResult:
        settings = context.settings
        input_data = context.input_for(record.index)
        attempts = 0
        while True:
            attempts += 1
            try:
                farmer_id = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._creator.create_farmer,
                        record,
                        fpo_org_id=context.fpo_org_id,
                        requested_by=context.requested_by,
                    ),
                    timeout=settings.record_timeout_seconds,
                )
            except (TransientFarmerError, asyncio.TimeoutError) as exc:
                detail = str(exc) or f"timed out after {settings.record_timeout_seconds}s"
                if attempts < settings.max_attempts:
                    delay = settings.retry_backoff_seconds * (2 ** (attempts - 1))
                    logger.info(
                        "Transient failure for record %s of operation %s (attempt %d/%d): %s; retrying in %.2fs",
                        record.index, context.operation_id, attempts, settings.max_attempts, detail, delay,
                    )
                    await self._sleep(delay)
                    continue
                logger.warning(
                    "Record %s of operation %s failed after %d attempts: %s",
                    record.index, context.operation_id, attempts, detail,
                )
                return RecordResult.failure(record.index, ErrorKind.TRANSIENT, detail, attempts, input_data)
            except PermanentFarmerError as exc:
                return RecordResult.failure(record.index, ErrorKind.PERMANENT, str(exc), attempts, input_data)
            except Exception as exc:
                logger.exception("Unexpected error creating record %s of operation %s", record.index, context.operation_id)
                return RecordResult.failure(
                    record.index, ErrorKind.UNEXPECTED, f"{type(exc).__name__}: {exc}", attempts, input_data
                )
            return RecordResult.success(record.index, farmer_id, attempts, input_data)
