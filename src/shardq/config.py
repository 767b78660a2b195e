import os
from dataclasses import dataclass
from types import SimpleNamespace

# Supported timepart formats and the bucket width (seconds) each one implies.
# The width is used to step a consumer from one bucket to the next, so the
# two values must always be used as a pair.
TIMEPART_FORMATS = {
    '%Y%j%H%M': 60,
    '%Y%j%H': 3600,
    '%Y%j': 86400,
}


@dataclass
class QueueConfig:
    """Configuration for a sharded delayed-message queue.

    All timing parameters are in seconds. The queue constants (shard count,
    timepart format, granularity) are fixed for the lifetime of a queue and
    must be identical for every producer and consumer of that queue.
    Connection parameters for database access.
    """
    shard_count: int = 6
    timepart_format: str = '%Y%j%H%M'
    granularity_sec: int = 60
    message_ttl_sec: int = 30 * 86400
    lock_ttl_sec: float = 20
    renewal_margin_sec: float = 5
    safety_offset_sec: float = 60
    batch_size: int = 10
    poll_interval_sec: float = 1.0
    exhausted_pause_sec: float = 2.0
    verify_holder_on_renew: bool = False

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'shardq'
    user: str = 'postgres'
    password: str = 'postgres'
    url: str = None
    appname: str = 'shardq_'

    def __post_init__(self):
        if self.shard_count < 1:
            raise ValueError(f'shard_count must be positive, got {self.shard_count}')
        expected = TIMEPART_FORMATS.get(self.timepart_format)
        if expected is None:
            raise ValueError(f'Unsupported timepart_format {self.timepart_format!r}, '
                             f'expected one of {sorted(TIMEPART_FORMATS)}')
        if expected != self.granularity_sec:
            raise ValueError(f'granularity_sec={self.granularity_sec} does not match '
                             f'timepart_format {self.timepart_format!r} ({expected}s buckets)')
        if not 0 < self.renewal_margin_sec < self.lock_ttl_sec:
            raise ValueError(f'renewal_margin_sec must be in (0, lock_ttl_sec), '
                             f'got {self.renewal_margin_sec} with lock_ttl_sec={self.lock_ttl_sec}')
        if self.batch_size < 1:
            raise ValueError(f'batch_size must be positive, got {self.batch_size}')
        if self.message_ttl_sec <= 0:
            raise ValueError(f'message_ttl_sec must be positive, got {self.message_ttl_sec}')

    @property
    def renewal_interval_sec(self) -> float:
        """Seconds between lease renewals while a shard is owned.
        """
        return self.lock_ttl_sec - self.renewal_margin_sec


settings = SimpleNamespace(
    sql=SimpleNamespace(
        appname=os.getenv('SHARDQ_SQL_APPNAME', 'shardq_'),
        url=os.getenv('SHARDQ_SQL_URL'),
        host=os.getenv('SHARDQ_SQL_HOST', 'localhost'),
        dbname=os.getenv('SHARDQ_SQL_DATABASE', 'shardq'),
        user=os.getenv('SHARDQ_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('SHARDQ_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('SHARDQ_SQL_PORT', '5432'))
    ),
    queue=SimpleNamespace(
        name=os.getenv('SHARDQ_QUEUE_NAME', 'test'),
        lock_ttl_sec=float(os.getenv('SHARDQ_LOCK_TTL', '20')),
        renewal_margin_sec=float(os.getenv('SHARDQ_RENEWAL_MARGIN', '5')),
        batch_size=int(os.getenv('SHARDQ_BATCH_SIZE', '10')),
        poll_interval_sec=float(os.getenv('SHARDQ_POLL_INTERVAL', '1')),
        exhausted_pause_sec=float(os.getenv('SHARDQ_EXHAUSTED_PAUSE', '2')),
        verify_holder_on_renew=os.getenv('SHARDQ_VERIFY_HOLDER', 'false').lower() == 'true'
    )
)
