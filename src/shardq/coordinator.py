"""Shard ownership state machine with lease renewal.

A worker searches for a free shard, drains that shard's bucketed message
stream up to the present, then moves on to the next shard:

    SEARCHING -> OWNED -> EXHAUSTED -> SEARCHING (next shard) -> ...

Ownership is a lease in the shard control record; it is kept alive by a
LeaseRenewalTask for exactly as long as the coordinator is OWNED and simply
lapses afterwards. There is no explicit release.
"""
import datetime
import logging
import threading
from enum import Enum

from shardq.bucketing import BEGINNING, bucket_floor, ordering_id_to_time
from shardq.bucketing import timepart, timepart_to_time
from shardq.client import NOW_REACHED, LeaseLost, Message, MessageStore
from shardq.client import ShardLockStore
from shardq.config import QueueConfig

logger = logging.getLogger(__name__)

__all__ = ['ShardState', 'TRANSITIONS', 'ShardStateMachine', 'LeaseRenewalTask', 'ShardCoordinator']


# ============================================================
# PURE STATE MACHINE
# ============================================================

class ShardState(Enum):
    """Shard ownership states of one worker.
    """
    SEARCHING = 'searching'
    OWNED = 'owned'
    EXHAUSTED = 'exhausted'
    STOPPED = 'stopped'


# STOPPED is terminal.
TRANSITIONS = {
    ShardState.SEARCHING: {ShardState.OWNED, ShardState.STOPPED},
    ShardState.OWNED: {ShardState.EXHAUSTED, ShardState.STOPPED},
    ShardState.EXHAUSTED: {ShardState.SEARCHING, ShardState.STOPPED},
    ShardState.STOPPED: set(),
}


class ShardStateMachine:
    """Validated ownership transitions.

    `on_owned` runs after entering OWNED and `on_released` before leaving it,
    so the pair brackets exactly one ownership period.
    """

    def __init__(self, on_owned: callable = None, on_released: callable = None):
        self.state = ShardState.SEARCHING
        self.on_owned = on_owned
        self.on_released = on_released

    def transition_to(self, new_state: ShardState) -> bool:
        """Attempt transition with validation.

        Returns
            True if transition succeeded, False if invalid
        """
        if self.state == new_state:
            return True

        if new_state not in TRANSITIONS[self.state]:
            logger.error(f'Invalid transition: {self.state.value} -> {new_state.value}')
            return False

        logger.info(f'State transition: {self.state.value} -> {new_state.value}')

        if self.state == ShardState.OWNED and self.on_released:
            self.on_released()

        self.state = new_state

        if new_state == ShardState.OWNED and self.on_owned:
            self.on_owned()

        return True

    def is_owned(self) -> bool:
        return self.state == ShardState.OWNED

    def is_exhausted(self) -> bool:
        return self.state == ShardState.EXHAUSTED


# ============================================================
# LEASE RENEWAL
# ============================================================

class LeaseRenewalTask:
    """Background thread that keeps a shard lease alive.

    Scoped to one ownership period: started when a shard is acquired and
    stopped before the owner moves on. Any renewal failure ends the task; the
    error is kept in `failure` and handed to `on_failure`.
    """

    def __init__(self, locks: ShardLockStore, queue: str, shard: int, worker_id: str,
                 ttl: float, interval: float, on_failure: callable = None):
        """Initialize renewal task.

        Args:
            locks: Shard lock store
            queue: Queue name
            shard: Owned shard
            worker_id: Lease holder identity
            ttl: Lease duration written on each renewal
            interval: Seconds between renewals (must be smaller than ttl)
            on_failure: Callback(exception) invoked from the renewal thread on failure
        """
        self.name = f'lease-{queue}-{shard}'
        self.locks = locks
        self.queue = queue
        self.shard = shard
        self.worker_id = worker_id
        self.ttl = ttl
        self.interval = interval
        self.on_failure = on_failure
        self.failure = None
        self.renewals = 0
        self.thread = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Start the renewal thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.debug(f'{self.name} renewal started (every {self.interval}s)')

    def stop(self, timeout: float = 5.0) -> None:
        """Stop renewing and wait for an in-flight renewal to finish.
        """
        self._stop_event.set()
        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
        logger.debug(f'{self.name} renewal stopped after {self.renewals} renewals')

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def check(self) -> None:
        self.locks.renew(self.queue, self.shard, self.worker_id, self.ttl)
        self.renewals += 1

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self.interval):
            try:
                self.check()
            except Exception as e:
                self.failure = e
                logger.error(f'Unable to touch lock for queue {self.queue}, shard {self.shard}: {e}')
                if self.on_failure:
                    self.on_failure(e)
                return


# ============================================================
# COORDINATOR
# ============================================================

class ShardCoordinator:
    """Acquire, drain and advance across the shards of one queue.

    Messages are handed to `process` one at a time in ordering-id order; the
    shard cursor is written after each fully processed batch, so a failure
    in between causes that batch to be delivered again (at-least-once).
    """

    def __init__(
        self,
        queue: str,
        worker_id: str,
        locks: ShardLockStore,
        messages: MessageStore,
        config: QueueConfig,
        process: callable,
        shutdown_event: threading.Event = None,
        on_lease_failure: callable = None,
    ):
        """Initialize shard coordinator.

        Args:
            queue: Queue name
            worker_id: Identity written as lease holder
            locks: Shard lock store
            messages: Message store
            config: Queue configuration
            process: Callback(message) invoked for each delivered message
            shutdown_event: Event checked between store round trips
            on_lease_failure: Callback(exception) invoked when lease renewal fails
        """
        self.queue = queue
        self.worker_id = worker_id
        self.locks = locks
        self.messages = messages
        self.config = config
        self.process = process
        self.on_lease_failure = on_lease_failure
        self._shutdown_event = shutdown_event or threading.Event()

        self.shard = None
        self.cursor = BEGINNING
        self._renewal = None

        self.state_machine = ShardStateMachine(on_owned=self._on_enter_owned,
                                               on_released=self._on_exit_owned)

    @property
    def state(self) -> ShardState:
        return self.state_machine.state

    def _on_enter_owned(self) -> None:
        """Entry action for OWNED state.
        """
        self._renewal = LeaseRenewalTask(
            locks=self.locks,
            queue=self.queue,
            shard=self.shard,
            worker_id=self.worker_id,
            ttl=self.config.lock_ttl_sec,
            interval=self.config.renewal_interval_sec,
            on_failure=self._handle_lease_failure
        )
        self._renewal.start()

    def _on_exit_owned(self) -> None:
        """Exit action for OWNED state.

        Renewal stops here, before the shard identifier can change.
        """
        if self._renewal is not None:
            self._renewal.stop()

    def _handle_lease_failure(self, exc: Exception) -> None:
        logger.error(f'Lease on queue {self.queue}, shard {self.shard} lost by {self.worker_id}')
        if self.on_lease_failure:
            self.on_lease_failure(exc)

    def _check_lease(self) -> None:
        if self._renewal is not None and self._renewal.failure is not None:
            raise LeaseLost(f'Lease renewal failed for queue {self.queue}, shard {self.shard}') \
                from self._renewal.failure

    def search(self, start_shard: int = 0) -> int | None:
        """Acquire the first free shard starting at `start_shard`, wrapping around.

        Returns
            The acquired shard, or None if every shard is currently leased
        """
        if self.state_machine.is_exhausted():
            self.state_machine.transition_to(ShardState.SEARCHING)
        if self.state != ShardState.SEARCHING:
            raise RuntimeError(f'Cannot search for a shard in state {self.state.value}')

        count = self.config.shard_count
        for offset in range(count):
            shard = (start_shard + offset) % count
            logger.debug(f'Trying to get lock for queue {self.queue}, shard {shard}')
            if not self.locks.acquire(self.queue, shard, self.worker_id, self.config.lock_ttl_sec):
                continue
            self.shard = shard
            self.cursor = self.locks.read_cursor(self.queue, shard)
            self.state_machine.transition_to(ShardState.OWNED)
            logger.info(f'Working on queue {self.queue}, shard {shard} with last processed {self._describe_cursor()}')
            return shard

        logger.info(f'All {count} shards of queue {self.queue} taken')
        return None

    def drain(self) -> int:
        """Deliver the owned shard's messages up to the present.

        Ends in EXHAUSTED once the bucket containing now is reached, or stays
        OWNED if shutdown was requested first.

        Returns
            Number of messages delivered
        """
        if not self.state_machine.is_owned():
            raise RuntimeError(f'Cannot drain in state {self.state.value}')

        bucket = self._starting_bucket()
        delivered = 0
        while not self._shutdown_event.is_set():
            self._check_lease()
            part = timepart(bucket, self.config.timepart_format)
            batch = self.messages.take(self.queue, part, self.shard, self.cursor, self.config.batch_size)

            if batch is NOW_REACHED:
                self._exhaust()
                break

            if not batch:
                bucket = self._next_bucket(bucket, part)
                continue

            self._deliver(batch)
            delivered += len(batch)

            if self._shutdown_event.wait(timeout=self.config.poll_interval_sec):
                break

        return delivered

    def _deliver(self, batch: list[Message]) -> None:
        for message in batch:
            self._check_lease()
            self.process(message)
        last = batch[-1].ordering_id
        self.locks.write_cursor(self.queue, self.shard, last)
        self.cursor = last
        logger.debug(f'Processed {len(batch)} messages from queue {self.queue}, shard {self.shard}')

    def _starting_bucket(self) -> datetime.datetime:
        """Bucket to resume from: the cursor's bucket, or the oldest one for an unset cursor.
        """
        if self.cursor != BEGINNING:
            return bucket_floor(ordering_id_to_time(self.cursor), self.config.granularity_sec)
        first = self.messages.first_timepart(self.queue, self.shard)
        if first is None:
            return bucket_floor(self.messages.db.now(), self.config.granularity_sec)
        return timepart_to_time(first, self.config.timepart_format)

    def _next_bucket(self, bucket: datetime.datetime, part: int) -> datetime.datetime:
        following = bucket + datetime.timedelta(seconds=self.config.granularity_sec)
        if timepart(following, self.config.timepart_format) <= part:
            raise ValueError(f'Bucket {part} does not advance with granularity '
                             f'{self.config.granularity_sec}s and format {self.config.timepart_format!r}')
        return following

    def _exhaust(self) -> None:
        """Record the shard as caught up to now and give up ownership.
        """
        boundary = self.locks.write_cursor_now(self.queue, self.shard)
        self.cursor = max(self.cursor, boundary)
        self.state_machine.transition_to(ShardState.EXHAUSTED)
        logger.info(f'No more messages pending until current time on queue {self.queue}, shard {self.shard}')

    def pause(self) -> bool:
        """Wait before contending for shards again.

        Returns
            True if shutdown was requested during the pause
        """
        return self._shutdown_event.wait(timeout=self.config.exhausted_pause_sec)

    def next_start_shard(self) -> int:
        if self.shard is None:
            return 0
        return (self.shard + 1) % self.config.shard_count

    def stop(self) -> None:
        """Stop the coordinator; a held lease is left to expire.
        """
        self.state_machine.transition_to(ShardState.STOPPED)

    def _describe_cursor(self) -> str:
        if self.cursor == BEGINNING:
            return 'beginning'
        return str(ordering_id_to_time(self.cursor))
