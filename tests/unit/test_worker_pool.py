import asyncio
import uuid
from unittest.mock import AsyncMock, Mock

import pytest

from farmers_service.exceptions import PermanentFarmerError, TransientFarmerError
from farmers_service.services.farmer_validator import FarmerRecord
from farmers_service.utils.bulk_enums import ErrorKind, ProcessingMode, RecordStatus
from farmers_service.workers.context import OperationContext, RunSettings
from farmers_service.workers.pool import WorkerPool

from tests.fakes import FakeFarmerCreator


def _records(count):
    return [
        FarmerRecord(
            index=i,
            first_name="Ravi",
            last_name=f"Kumar{i}",
            phone_number=f"9{i:09d}",
            external_id=f"EXT-{i}",
        )
        for i in range(count)
    ]


def _context(**settings_overrides):
    settings = dict(
        max_concurrency=3,
        chunk_size=10,
        max_attempts=3,
        retry_backoff_seconds=0.5,
        record_timeout_seconds=1.0,
    )
    settings.update(settings_overrides)
    return OperationContext(
        operation_id=uuid.uuid4(),
        fpo_org_id="fpo-1",
        requested_by="user-1",
        processing_mode=ProcessingMode.ASYNC,
        settings=RunSettings(**settings),
        tracker=Mock(),
    )


def _results(context):
    return {call.args[0].record_index: call.args[0] for call in context.tracker.record.call_args_list}


@pytest.mark.asyncio
async def test_all_records_succeed_within_concurrency_bound():
    creator = FakeFarmerCreator(delay=0.02)
    context = _context()

    dispatched = await WorkerPool(creator).run(context, _records(10))

    assert dispatched == 10
    assert creator.max_in_flight <= 3
    results = _results(context)
    assert set(results) == set(range(10))
    assert all(r.status is RecordStatus.SUCCESS for r in results.values())
    assert results[4].created_farmer_id == "farmer-4"
    assert results[4].attempts == 1


@pytest.mark.asyncio
async def test_transient_errors_retry_with_exponential_backoff():
    creator = FakeFarmerCreator()
    creator.failures["9000000001"] = [TransientFarmerError("503"), TransientFarmerError("503")]
    sleep = AsyncMock()
    context = _context()

    await WorkerPool(creator, sleep=sleep).run(context, _records(2))

    result = _results(context)[1]
    assert result.status is RecordStatus.SUCCESS
    assert result.attempts == 3
    assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_transient_errors_exhaust_attempts():
    creator = FakeFarmerCreator()
    creator.failures["9000000000"] = [TransientFarmerError("upstream down")] * 3
    context = _context()

    await WorkerPool(creator, sleep=AsyncMock()).run(context, _records(1))

    result = _results(context)[0]
    assert result.status is RecordStatus.FAILED
    assert result.error_kind is ErrorKind.TRANSIENT
    assert result.attempts == 3
    assert result.error_detail == "upstream down"


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    creator = FakeFarmerCreator()
    creator.failures["9000000000"] = [PermanentFarmerError("duplicate farmer")]
    sleep = AsyncMock()
    context = _context()

    await WorkerPool(creator, sleep=sleep).run(context, _records(1))

    result = _results(context)[0]
    assert result.error_kind is ErrorKind.PERMANENT
    assert result.attempts == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded():
    creator = Mock()
    creator.create_farmer.side_effect = KeyError("id")
    context = _context()

    await WorkerPool(creator).run(context, _records(1))

    result = _results(context)[0]
    assert result.error_kind is ErrorKind.UNEXPECTED
    assert result.error_detail.startswith("KeyError")


@pytest.mark.asyncio
async def test_timeout_affects_only_the_slow_record():
    creator = FakeFarmerCreator()
    creator.delays["9000000002"] = 0.5
    context = _context(max_attempts=1, record_timeout_seconds=0.1)

    await WorkerPool(creator).run(context, _records(5))

    results = _results(context)
    assert results[2].error_kind is ErrorKind.TRANSIENT
    assert "timed out" in results[2].error_detail
    assert all(results[i].status is RecordStatus.SUCCESS for i in (0, 1, 3, 4))


@pytest.mark.asyncio
async def test_cancel_stops_dispatch_but_drains_in_flight():
    creator = FakeFarmerCreator(delay=0.05)
    context = _context(max_concurrency=2)

    async def cancel_soon():
        await asyncio.sleep(0.07)
        context.request_cancel()

    canceller = asyncio.create_task(cancel_soon())
    dispatched = await WorkerPool(creator).run(context, _records(20))
    await canceller

    assert 0 < dispatched < 20
    # every dispatched record still reports an outcome
    assert len(_results(context)) == dispatched
    assert len(creator.calls) == dispatched


@pytest.mark.asyncio
async def test_cancel_before_start_dispatches_nothing():
    creator = FakeFarmerCreator()
    context = _context()
    context.request_cancel()

    assert await WorkerPool(creator).run(context, _records(3)) == 0
    assert creator.calls == []
    context.tracker.record.assert_not_called()


@pytest.mark.asyncio
async def test_input_data_travels_with_result():
    creator = FakeFarmerCreator()
    context = _context()
    context.inputs[0] = {"first_name": "Ravi"}

    await WorkerPool(creator).run(context, _records(1))

    assert _results(context)[0].input_data == {"first_name": "Ravi"}


@pytest.mark.asyncio
async def test_stored_cancel_flag_stops_dispatch():
    """A cancel recorded by another process is picked up between dispatches."""
    creator = FakeFarmerCreator()
    context = _context(max_concurrency=1, cancel_poll_seconds=0.0)
    stored_flag = Mock(side_effect=lambda _op_id: len(creator.calls) >= 3)

    dispatched = await WorkerPool(creator, stored_cancel_check=stored_flag).run(context, _records(10))

    assert dispatched == 3
    assert context.cancel_requested
    assert len(_results(context)) == 3
    assert all(call.args[0] == context.operation_id for call in stored_flag.call_args_list)


@pytest.mark.asyncio
async def test_stored_cancel_flag_polling_is_throttled():
    creator = FakeFarmerCreator()
    context = _context(cancel_poll_seconds=60.0)
    stored_flag = Mock(return_value=False)

    assert await WorkerPool(creator, stored_cancel_check=stored_flag).run(context, _records(5)) == 5
    stored_flag.assert_called_once_with(context.operation_id)


@pytest.mark.asyncio
async def test_failed_progress_write_does_not_stop_siblings():
    creator = FakeFarmerCreator()
    context = _context()

    def record(result):
        if result.record_index == 1:
            raise RuntimeError("progress store unavailable")
        return True

    context.tracker.record.side_effect = record

    dispatched = await WorkerPool(creator).run(context, _records(5))

    assert dispatched == 5
    assert sorted(_results(context)) == [0, 1, 2, 3, 4]
    assert len(creator.calls) == 5
