import datetime
import logging

from shardq.bucketing import coordinates, to_utc
from shardq.client import DatabaseContext, Message, MessageStore
from shardq.config import QueueConfig

logger = logging.getLogger(__name__)


class Producer:
    """Enqueue delayed messages.

    Every due time is pushed `safety_offset_sec` into the future before it is
    bucketed, so consumers sampling "now" never look at a bucket a producer
    may still be writing into, even with some clock skew between them.
    """

    def __init__(self, queue: str, config: QueueConfig = None, db: DatabaseContext = None,
                 clock: callable = None):
        """Initialize producer.

        Args:
            queue: Queue name
            config: Queue configuration (defaults to QueueConfig())
            db: Shared database context (a private one is created if omitted)
            clock: Epoch clock for a private database context
        """
        self.queue = queue
        self.config = config or QueueConfig()
        self._owns_db = db is None
        self.db = db or DatabaseContext(self.config, clock)
        self.messages = MessageStore(self.db, self.config)

    def enqueue(self, payload: str, due: datetime.datetime = None) -> Message:
        """Put a message on the queue.

        Args:
            payload: Message body
            due: Timezone-aware due time (defaults to now)

        Returns
            The stored message
        """
        due = to_utc(self.db.now() if due is None else due)
        effective_due = due + datetime.timedelta(seconds=self.config.safety_offset_sec)
        part, shard, ordering_id = coordinates(effective_due, self.config)
        self.messages.put(self.queue, part, shard, ordering_id, payload, self.config.message_ttl_sec)
        return Message(ordering_id, payload)

    def close(self) -> None:
        if self._owns_db:
            self.db.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        self.close()
