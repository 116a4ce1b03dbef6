"""
Background execution of asynchronous and chunked-batch bulk operations.

One asyncio task per operation; the manager keeps the task and its
``OperationContext`` so cancellation requests reach the running workers.
Each manager has its own ``owner_id``, the lease holder id written on the
operations this process runs.
"""
import asyncio
import logging
import os
import socket
import uuid
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional

from farmers_service.workers.context import OperationContext

logger = logging.getLogger(__name__)


def _new_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class AsyncBulkOperationsManager:
    """Tracks running bulk operation tasks and their execution contexts."""

    def __init__(self, owner_id: Optional[str] = None):
        self.owner_id = owner_id or _new_owner_id()
        self._running_tasks: Dict[uuid.UUID, asyncio.Task] = {}
        self._contexts: Dict[uuid.UUID, OperationContext] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def submit(self, context: OperationContext, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``coro`` on a background task bound to ``context``."""
        operation_id = context.operation_id
        task = asyncio.create_task(coro, name=f"bulk-operation-{operation_id}")
        self._running_tasks[operation_id] = task
        self._contexts[operation_id] = context
        task.add_done_callback(lambda t, op_id=operation_id: self._on_task_complete(op_id, t))
        logger.info("Submitted bulk operation %s for background execution", operation_id)
        return task

    def register(self, context: OperationContext) -> None:
        """Expose a context run on the caller's task (synchronous mode) to cancellation."""
        self._contexts[context.operation_id] = context

    def unregister(self, operation_id: uuid.UUID) -> None:
        self._contexts.pop(operation_id, None)

    def _on_task_complete(self, operation_id: uuid.UUID, task: asyncio.Task) -> None:
        """Handle task completion."""
        try:
            if task.cancelled():
                logger.warning("Bulk operation task %s was cancelled before finishing", operation_id)
                return
            exc = task.exception()
            if exc is not None:
                logger.error("Bulk operation task %s failed with exception: %s", operation_id, exc)
        finally:
            self._running_tasks.pop(operation_id, None)
            self._contexts.pop(operation_id, None)

    def get_context(self, operation_id: uuid.UUID) -> Optional[OperationContext]:
        return self._contexts.get(operation_id)

    def request_cancel(self, operation_id: uuid.UUID) -> bool:
        """Signal a live operation to stop dispatching; False if nothing is running for it."""
        context = self._contexts.get(operation_id)
        if context is None:
            return False
        context.request_cancel()
        return True

    async def wait_for(self, operation_id: uuid.UUID) -> None:
        """Wait until the background task for ``operation_id`` (if any) is done."""
        task = self._running_tasks.get(operation_id)
        if task is not None:
            await asyncio.wait({task})

    def start_recovery_sweep(self, recover: Callable[[], Awaitable[Any]], interval: float) -> asyncio.Task:
        """Call ``recover`` every ``interval`` seconds to pick up operations whose lease expired."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep(recover, interval), name="bulk-operation-recovery")
        return self._sweeper

    async def _sweep(self, recover: Callable[[], Awaitable[Any]], interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await recover()
            except Exception:
                logger.exception("Bulk operation recovery sweep failed; retrying in %.1fs", interval)

    async def shutdown(self) -> None:
        """Cancel background tasks; their operations stay PROCESSING and are resumed on next startup."""
        tasks = list(self._running_tasks.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# Global manager instance
_bulk_operations_manager = AsyncBulkOperationsManager()


def get_bulk_operations_manager() -> AsyncBulkOperationsManager:
    return _bulk_operations_manager
