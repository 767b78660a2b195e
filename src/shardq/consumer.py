"""Consumer worker: wires the shard coordinator to a processing callback.
"""
import logging
import os
import threading
import uuid

from shardq.client import DatabaseContext, Message, MessageStore
from shardq.client import QueueNotInitialized, ShardLockStore
from shardq.config import QueueConfig
from shardq.coordinator import ShardCoordinator

logger = logging.getLogger(__name__)


def log_message(message: Message) -> None:
    """Default processing callback.
    """
    logger.info(f'MESSAGE: {message.due} {message.payload}')


class Consumer:
    """One queue worker.

    Usage:
        with Consumer('orders', config, process=handle) as consumer:
            exit_code = consumer.run()
    """

    def __init__(
        self,
        queue: str,
        config: QueueConfig = None,
        process: callable = None,
        worker_id: str = None,
        db: DatabaseContext = None,
        clock: callable = None,
        start_shard: int = 0,
        stop_when_caught_up: bool = False,
        fail_fast: bool = True,
        exit_func: callable = os._exit,
    ):
        """Initialize consumer.

        Args:
            queue: Queue name
            config: Queue configuration (defaults to QueueConfig())
            process: Callback(message) for each delivered message (defaults to logging it)
            worker_id: Lease holder identity (defaults to a time-based UUID)
            db: Shared database context (a private one is created if omitted)
            clock: Epoch clock for a private database context
            start_shard: Shard to start searching from
            stop_when_caught_up: Return after the first shard is drained up to now
            fail_fast: Terminate the process when lease renewal fails
            exit_func: Callable(code) used to terminate the process
        """
        self.queue = queue
        self.config = config or QueueConfig()
        self.worker_id = worker_id or str(uuid.uuid1())
        self.start_shard = start_shard
        self.stop_when_caught_up = stop_when_caught_up
        self.delivered = 0
        self._exit_func = exit_func

        self._owns_db = db is None
        self.db = db or DatabaseContext(self.config, clock)
        self.locks = ShardLockStore(self.db, self.config)
        self.messages = MessageStore(self.db, self.config)
        self._shutdown_event = threading.Event()

        self.coordinator = ShardCoordinator(
            queue=queue,
            worker_id=self.worker_id,
            locks=self.locks,
            messages=self.messages,
            config=self.config,
            process=process or log_message,
            shutdown_event=self._shutdown_event,
            on_lease_failure=self._abort if fail_fast else None
        )

    def __enter__(self):
        """Verify the queue exists before any shard is contended.
        """
        if not self.locks.is_initialized(self.queue):
            if self._owns_db:
                self.db.dispose()
            raise QueueNotInitialized(f'Queue {self.queue} has no shard control rows (run init first)')
        logger.info(f'Starting worker {self.worker_id} on queue {self.queue}')
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        logger.debug(f'Exiting worker {self.worker_id}')
        if exc_ty:
            logger.error(exc_val)
        self.coordinator.stop()
        if self._owns_db:
            self.db.dispose()

    def run(self) -> int:
        """Drain shards one after another until none is available.

        Returns
            Process exit code (0 when no shard is available, caught up, or stopped)
        """
        start = self.start_shard
        try:
            while not self._shutdown_event.is_set():
                if self.coordinator.search(start) is None:
                    break
                self.delivered += self.coordinator.drain()
                if not self.coordinator.state_machine.is_exhausted():
                    break
                if self.stop_when_caught_up:
                    break
                if self.coordinator.pause():
                    break
                start = self.coordinator.next_start_shard()
        except BaseException:
            self.coordinator.stop()
            raise
        self.coordinator.stop()
        logger.info(f'Worker {self.worker_id} finished after {self.delivered} messages')
        return 0

    def stop(self) -> None:
        """Request shutdown; safe to call from another thread or a signal handler.
        """
        self._shutdown_event.set()

    def _abort(self, exc: Exception) -> None:
        logger.critical(f'Unable to touch lock, aborting processing immediately. {exc}')
        self._exit_func(1)
