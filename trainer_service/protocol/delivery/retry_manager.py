import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar, Union

from trainer_service.core.errors import (
    DeliveryFailed,
    MaxAttemptsExceeded,
    OfflineError,
    TransportRateLimitError,
)
from trainer_service.core.interfaces import ConnectivitySignal, PersistenceStore
from trainer_service.core.types import DeliveryState, DeliveryStatus, FailureReason, RetryRecord
from trainer_service.protocol.delivery.backoff import BackoffPolicy
from trainer_service.protocol.delivery.classifier import to_transport_error
from trainer_service.core.logging import logger

T = TypeVar("T")
Operation = Callable[[], Awaitable[Any]]
OperationResolver = Callable[[str], Awaitable[Optional[Operation]]]
StatusListener = Callable[[str, DeliveryStatus], Union[None, Awaitable[None]]]

OFFLINE_QUEUE_KEY = "delivery/offline_queue"
PENDING_RETRIES_KEY = "delivery/pending_retries"


def retry_key(message_id: str) -> str:
    return f"delivery/retry/{message_id}"


class DeliveryManager:
    """
    Sole owner of the offline queue and retry records.

    send() runs `operation` (the network work for one message) with classified
    retries. While disconnected nothing is attempted: the id is queued (FIFO,
    no duplicates) and OfflineError is raised. drain() replays the queue in
    order once connectivity is back.

    A retry record is written before every backoff sleep and its id is kept in
    PENDING_RETRIES_KEY until the sequence ends, so restore() can put a
    sequence cut short by a restart back on the queue.
    """

    def __init__(
        self,
        store: PersistenceStore,
        connectivity: ConnectivitySignal,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.connectivity = connectivity
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._clock = clock
        self._queue: List[str] = []
        self._restored = False
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._statuses: Dict[str, DeliveryStatus] = {}
        self._cancelled: Set[str] = set()
        self._listeners: List[StatusListener] = []

    # ---- status ----

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def status(self, message_id: str) -> Optional[DeliveryStatus]:
        return self._statuses.get(message_id)

    async def _publish(self, message_id: str, status: DeliveryStatus) -> None:
        self._statuses[message_id] = status
        for listener in list(self._listeners):
            outcome = listener(message_id, status)
            if inspect.isawaitable(outcome):
                await outcome

    # ---- persisted state ----

    async def restore(self) -> None:
        """
        Load the offline queue, then queue every message whose retry sequence
        was still backing off when the previous process stopped so drain()
        resumes it.
        """
        async with self._lock:
            if self._restored:
                return
            stored = await self.store.load(OFFLINE_QUEUE_KEY) or []
            for message_id in stored:
                if message_id not in self._queue:
                    self._queue.append(message_id)
            resumed = 0
            for message_id in await self.store.load(PENDING_RETRIES_KEY) or []:
                if message_id in self._queue or await self.retry_record(message_id) is None:
                    continue
                self._queue.append(message_id)
                resumed += 1
            if resumed:
                await self.store.save(OFFLINE_QUEUE_KEY, list(self._queue))
                logger.info(f"Resuming {resumed} interrupted retry sequence(s)")
            self._restored = True
            if self._queue:
                logger.info(f"Restored offline queue with {len(self._queue)} message(s)")

    async def offline_queue(self) -> List[str]:
        await self.restore()
        return list(self._queue)

    async def _enqueue(self, message_id: str) -> None:
        async with self._lock:
            if message_id in self._queue:
                return
            self._queue.append(message_id)
            await self.store.save(OFFLINE_QUEUE_KEY, list(self._queue))
        logger.warning(f"Offline: queued message {message_id} (queue size {len(self._queue)})")

    async def _dequeue(self, message_id: str) -> None:
        async with self._lock:
            if message_id not in self._queue:
                return
            self._queue.remove(message_id)
            await self.store.save(OFFLINE_QUEUE_KEY, list(self._queue))

    async def retry_record(self, message_id: str) -> Optional[RetryRecord]:
        rec = await self.store.load(retry_key(message_id))
        return RetryRecord.from_record(rec) if rec else None

    async def _mark_pending(self, message_id: str, pending: bool) -> None:
        async with self._lock:
            ids = await self.store.load(PENDING_RETRIES_KEY) or []
            if pending == (message_id in ids):
                return
            if pending:
                ids.append(message_id)
            else:
                ids.remove(message_id)
            await self.store.save(PENDING_RETRIES_KEY, ids)

    async def _save_record(self, record: RetryRecord, pending: bool = True) -> None:
        await self.store.save(retry_key(record.message_id), record.to_record())
        await self._mark_pending(record.message_id, pending)

    async def _clear_record(self, message_id: str) -> None:
        await self.store.delete(retry_key(message_id))
        await self._mark_pending(message_id, False)

    # ---- sending ----

    def cancel(self, message_id: str) -> None:
        """Stop retrying `message_id`; observed after the current backoff sleep."""
        self._cancelled.add(message_id)

    async def send(self, message_id: str, operation: Operation) -> Any:
        await self.restore()
        self._cancelled.discard(message_id)
        if not self.connectivity.is_connected():
            await self._go_offline(message_id)
        return await self._attempt_loop(message_id, operation)

    async def retry(self, message_id: str, operation: Operation) -> Any:
        """User-initiated retry of a failed-but-retryable or queued message."""
        status = self._statuses.get(message_id)
        if status is not None and status.state == DeliveryState.FAILED and not status.retryable:
            raise ValueError(f"Message {message_id} cannot be retried")
        await self._clear_record(message_id)
        await self._dequeue(message_id)
        return await self.send(message_id, operation)

    async def _go_offline(self, message_id: str) -> None:
        await self._enqueue(message_id)
        await self._publish(message_id, DeliveryStatus.offline())
        raise OfflineError(message_id)

    async def _attempt_loop(self, message_id: str, operation: Operation) -> Any:
        max_attempts = self.policy.max_attempts
        attempt = 1
        reason = FailureReason.UNKNOWN
        previous = await self.retry_record(message_id)
        if previous is not None and previous.attempt < max_attempts:
            # resume a retry sequence interrupted by a restart
            attempt = previous.attempt + 1
            wait = previous.next_eligible_at - self._clock()
            if wait > 0:
                await self._sleep(min(wait, self.policy.max_delay))

        while True:
            if message_id in self._cancelled:
                await self._stopped(message_id, reason)
            if attempt > 1 and not self.connectivity.is_connected():
                await self._go_offline(message_id)

            await self._publish(
                message_id,
                DeliveryStatus.sending() if attempt == 1 else DeliveryStatus.retrying(attempt, max_attempts),
            )
            try:
                result = await operation()
            except (OfflineError, DeliveryFailed):
                raise
            except asyncio.CancelledError:
                await self._interrupted(message_id, attempt - 1)
                raise
            except Exception as exc:
                err = to_transport_error(exc)
                reason = err.reason
                logger.warning(f"Attempt {attempt}/{max_attempts} for {message_id} failed: {reason} ({err})")

                if not reason.retryable:
                    await self._clear_record(message_id)
                    await self._publish(message_id, DeliveryStatus.failed(reason, retryable=False))
                    raise DeliveryFailed(message_id, reason, retryable=False, cause=exc) from exc

                now = self._clock()
                if attempt >= max_attempts:
                    await self._save_record(RetryRecord(message_id, attempt, str(err), now), pending=False)
                    await self._publish(message_id, DeliveryStatus.failed(reason, retryable=True))
                    exhausted = MaxAttemptsExceeded(message_id, attempt, str(err))
                    logger.error(str(exhausted))
                    raise DeliveryFailed(message_id, reason, retryable=True, cause=exhausted) from exhausted

                delay = self.policy.delay(attempt)
                if isinstance(err, TransportRateLimitError) and err.retry_after:
                    delay = max(delay, min(err.retry_after, self.policy.max_delay))
                await self._save_record(RetryRecord(message_id, attempt, str(err), now + delay))
                await self._publish(message_id, DeliveryStatus.retrying(attempt + 1, max_attempts))
                logger.info(f"Retrying {message_id} in {delay:.2f}s")
                await self._sleep(delay)
                attempt += 1
                continue

            await self._clear_record(message_id)
            await self._publish(message_id, DeliveryStatus.sent())
            return result

    async def _stopped(self, message_id: str, reason: FailureReason) -> None:
        """cancel(message_id) was observed: leave the message for a manual retry."""
        logger.info(f"Send of {message_id} cancelled")
        await self._mark_pending(message_id, False)
        await self._publish(message_id, DeliveryStatus.failed(reason, retryable=True))
        raise asyncio.CancelledError()

    async def _interrupted(self, message_id: str, completed: int) -> None:
        """The sending task itself was cancelled mid-attempt; keep the message resumable."""
        logger.warning(f"Send of {message_id} interrupted after {completed} completed attempt(s)")
        await self._save_record(RetryRecord(message_id, completed, "interrupted", self._clock()))
        await self._publish(message_id, DeliveryStatus.failed(FailureReason.UNKNOWN, retryable=True))

    # ---- offline queue replay ----

    async def drain(self, resolve: OperationResolver) -> List[str]:
        """
        Replay queued messages oldest first. A message leaves the queue once it
        is delivered or fails terminally; losing connectivity stops the drain
        with the head still queued.
        """
        await self.restore()
        delivered: List[str] = []
        async with self._drain_lock:
            while self._queue and self.connectivity.is_connected():
                message_id = self._queue[0]
                operation = await resolve(message_id)
                if operation is None:
                    logger.warning(f"Dropping queued message {message_id}: no longer resolvable")
                    await self._dequeue(message_id)
                    continue
                self._cancelled.discard(message_id)
                try:
                    await self._attempt_loop(message_id, operation)
                    delivered.append(message_id)
                except OfflineError:
                    logger.info("Connectivity lost while draining; stopping")
                    break
                except DeliveryFailed as e:
                    logger.error(f"Queued message {message_id} failed terminally: {e}")
                except asyncio.CancelledError:
                    if asyncio.current_task() is not None and asyncio.current_task().cancelling():
                        raise
                    logger.info(f"Queued message {message_id} cancelled")
                await self._dequeue(message_id)
        return delivered
