import asyncio
from unittest.mock import AsyncMock

import pytest

from trainer_service.context.memory_store import MemoryStore
from trainer_service.core.errors import (
    DeliveryFailed,
    MaxAttemptsExceeded,
    OfflineError,
    TransportAuthError,
    TransportNetworkError,
    TransportRateLimitError,
)
from trainer_service.core.types import DeliveryState, DeliveryStatus, FailureReason, RetryRecord
from trainer_service.protocol.delivery.backoff import BackoffPolicy
from trainer_service.protocol.delivery.connectivity import ManualConnectivity
from trainer_service.protocol.delivery.retry_manager import (
    OFFLINE_QUEUE_KEY,
    PENDING_RETRIES_KEY,
    DeliveryManager,
    retry_key,
)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def manager(store, connectivity, sleep):
    policy = BackoffPolicy(max_attempts=3, base_delay=1.0, rand=lambda: 0.0)
    return DeliveryManager(store, connectivity, policy, sleep=sleep, clock=lambda: 1000.0)


@pytest.fixture
def statuses(manager):
    seen = []
    manager.subscribe(lambda message_id, status: seen.append((message_id, status)))
    return seen


@pytest.mark.asyncio
async def test_success_on_first_attempt(manager, statuses, sleep):
    operation = AsyncMock(return_value="reply")
    assert await manager.send("m1", operation) == "reply"
    assert [s.state for _, s in statuses] == [DeliveryState.SENDING, DeliveryState.SENT]
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_three_network_failures_exhaust_attempts(manager, statuses, sleep, store):
    operation = AsyncMock(side_effect=TransportNetworkError("down"))

    with pytest.raises(DeliveryFailed) as info:
        await manager.send("m1", operation)

    assert operation.await_count == 3
    assert info.value.retryable
    assert info.value.reason == FailureReason.NETWORK
    assert isinstance(info.value.cause, MaxAttemptsExceeded)
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    final = manager.status("m1")
    assert final.state == DeliveryState.FAILED and final.retryable
    assert final.description == "Network connection lost. Tap to retry"
    record = await manager.retry_record("m1")
    assert record.attempt == 3
    assert "down" in record.last_error


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_immediately(manager, sleep):
    operation = AsyncMock(side_effect=TransportAuthError("bad key", 401))

    with pytest.raises(DeliveryFailed) as info:
        await manager.send("m1", operation)

    assert operation.await_count == 1
    assert not info.value.retryable
    assert info.value.reason == FailureReason.AUTHENTICATION
    sleep.assert_not_awaited()
    assert await manager.retry_record("m1") is None
    with pytest.raises(ValueError):
        await manager.retry("m1", AsyncMock())


@pytest.mark.asyncio
async def test_recovery_clears_retry_record(manager, statuses, store):
    operation = AsyncMock(side_effect=[TransportNetworkError(), "reply"])

    assert await manager.send("m1", operation) == "reply"

    assert await store.load(retry_key("m1")) is None
    states = [s.state for _, s in statuses]
    assert DeliveryState.RETRYING in states
    assert states[-1] == DeliveryState.SENT


@pytest.mark.asyncio
async def test_backoff_restarts_after_success(manager, sleep):
    await manager.send("m1", AsyncMock(side_effect=[TransportNetworkError(), "ok"]))
    await manager.send("m2", AsyncMock(side_effect=[TransportNetworkError(), "ok"]))
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after(manager, sleep):
    operation = AsyncMock(side_effect=[TransportRateLimitError(retry_after=7), "ok"])
    await manager.send("m1", operation)
    sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_offline_send_is_queued_without_attempting(manager, connectivity, statuses, store):
    connectivity.set_connected(False)
    operation = AsyncMock()

    with pytest.raises(OfflineError):
        await manager.send("m1", operation)
    with pytest.raises(OfflineError):
        await manager.send("m1", operation)

    operation.assert_not_awaited()
    assert await manager.offline_queue() == ["m1"]
    assert await store.load(OFFLINE_QUEUE_KEY) == ["m1"]
    assert statuses[-1][1].state == DeliveryState.OFFLINE


@pytest.mark.asyncio
async def test_drain_delivers_in_enqueue_order(manager, connectivity):
    connectivity.set_connected(False)
    for message_id in ["m1", "m2", "m3"]:
        with pytest.raises(OfflineError):
            await manager.send(message_id, AsyncMock())
    connectivity.set_connected(True)

    order = []

    async def resolve(message_id):
        async def operation():
            order.append(message_id)
            return message_id

        return operation

    assert await manager.drain(resolve) == ["m1", "m2", "m3"]
    assert order == ["m1", "m2", "m3"]
    assert await manager.offline_queue() == []


@pytest.mark.asyncio
async def test_drain_stops_with_head_queued_when_connectivity_drops(manager, connectivity):
    connectivity.set_connected(False)
    for message_id in ["m1", "m2"]:
        with pytest.raises(OfflineError):
            await manager.send(message_id, AsyncMock())
    connectivity.set_connected(True)

    async def failing():
        connectivity.set_connected(False)
        raise TransportNetworkError()

    async def resolve(message_id):
        return failing

    assert await manager.drain(resolve) == []
    assert await manager.offline_queue() == ["m1", "m2"]


@pytest.mark.asyncio
async def test_drain_drops_unresolvable_messages(manager, connectivity):
    connectivity.set_connected(False)
    with pytest.raises(OfflineError):
        await manager.send("gone", AsyncMock())
    connectivity.set_connected(True)

    async def resolve(message_id):
        return None

    assert await manager.drain(resolve) == []
    assert await manager.offline_queue() == []


@pytest.mark.asyncio
async def test_cancel_is_observed_after_backoff(store, connectivity):
    manager = None

    async def sleep(delay):
        manager.cancel("m1")

    manager = DeliveryManager(store, connectivity, BackoffPolicy(rand=lambda: 0.0), sleep=sleep)
    operation = AsyncMock(side_effect=TransportNetworkError())

    with pytest.raises(asyncio.CancelledError):
        await manager.send("m1", operation)
    assert operation.await_count == 1
    assert manager.status("m1") == DeliveryStatus.failed(FailureReason.NETWORK, retryable=True)
    assert await store.load(PENDING_RETRIES_KEY) == []


@pytest.mark.asyncio
async def test_cancelled_send_task_leaves_message_retryable(manager, store):
    started = asyncio.Event()

    async def operation():
        started.set()
        await asyncio.sleep(3600)

    task = asyncio.create_task(manager.send("m1", operation))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    final = manager.status("m1")
    assert final.state == DeliveryState.FAILED and final.retryable
    assert (await manager.retry_record("m1")).attempt == 0
    assert await store.load(PENDING_RETRIES_KEY) == ["m1"]


@pytest.mark.asyncio
async def test_backoff_cut_short_by_restart_resumes_on_drain(store, connectivity):
    policy = BackoffPolicy(max_attempts=3, base_delay=1.0, rand=lambda: 0.0)
    killed = AsyncMock(side_effect=asyncio.CancelledError())
    first = DeliveryManager(store, connectivity, policy, sleep=killed, clock=lambda: 1000.0)
    with pytest.raises(asyncio.CancelledError):
        await first.send("m1", AsyncMock(side_effect=TransportNetworkError()))
    assert await store.load(PENDING_RETRIES_KEY) == ["m1"]

    sleep = AsyncMock()
    restarted = DeliveryManager(store, connectivity, policy, sleep=sleep, clock=lambda: 1000.5)
    seen = []
    restarted.subscribe(lambda message_id, status: seen.append(status))
    assert await restarted.offline_queue() == ["m1"]

    operation = AsyncMock(return_value="ok")

    async def resolve(message_id):
        return operation

    assert await restarted.drain(resolve) == ["m1"]
    sleep.assert_awaited_once_with(0.5)
    assert seen[0] == DeliveryStatus.retrying(2, 3)
    assert seen[-1] == DeliveryStatus.sent()
    assert await restarted.retry_record("m1") is None
    assert await store.load(PENDING_RETRIES_KEY) == []
    assert await restarted.offline_queue() == []


@pytest.mark.asyncio
async def test_exhausted_sequence_is_not_resumed(manager, store, connectivity):
    with pytest.raises(DeliveryFailed):
        await manager.send("m1", AsyncMock(side_effect=TransportNetworkError()))
    assert await store.load(PENDING_RETRIES_KEY) == []
    assert await DeliveryManager(store, connectivity).offline_queue() == []


@pytest.mark.asyncio
async def test_queue_survives_restart(connectivity):
    store = MemoryStore()
    await store.save(OFFLINE_QUEUE_KEY, ["a", "b"])
    manager = DeliveryManager(store, connectivity)
    assert await manager.offline_queue() == ["a", "b"]


@pytest.mark.asyncio
async def test_persisted_retry_record_resumes_attempt_count(manager, store, sleep):
    await store.save(retry_key("m1"), RetryRecord("m1", 2, "down", 0.0).to_record())
    operation = AsyncMock(side_effect=TransportNetworkError())

    with pytest.raises(DeliveryFailed):
        await manager.send("m1", operation)

    assert operation.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_manual_retry_starts_a_fresh_sequence(manager):
    with pytest.raises(DeliveryFailed):
        await manager.send("m1", AsyncMock(side_effect=TransportNetworkError()))
    operation = AsyncMock(return_value="ok")
    assert await manager.retry("m1", operation) == "ok"
    assert manager.status("m1").state == DeliveryState.SENT
