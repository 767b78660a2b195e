"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders with test-optimized values
- The fake store clock used to make lease expiry and "now" deterministic
- Wait helpers and small recording doubles used by multiple test files
"""
import datetime
import logging
import threading
import time

from shardq.bucketing import new_ordering_id
from shardq.client import MessageStore
from shardq.config import QueueConfig

logger = logging.getLogger(__name__)

QUEUE = 'test'

UTC = datetime.timezone.utc

# 2024-03-01 is day 061, so timeparts at noon read 2024061 12MM.
T0 = datetime.datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


def at(minute: int = 0, second: int = 0, hour: int = 12, microsecond: int = 0) -> datetime.datetime:
    """Datetime on the test day (UTC).
    """
    return T0.replace(hour=hour, minute=minute, second=second, microsecond=microsecond)


def part(minute: int, hour: int = 12) -> int:
    """Minute timepart on the test day.
    """
    return int(f'2024061{hour:02d}{minute:02d}')


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def make_config(**overrides) -> QueueConfig:
    """Create QueueConfig with test-optimized values.

    No sleeps between batches or after exhaustion; lease renewal far enough
    apart that it never fires during a short test unless asked to.

    Usage:
        config = make_config(url='sqlite:///...', batch_size=2)
    """
    defaults = {
        'poll_interval_sec': 0,
        'exhausted_pause_sec': 0,
        'lock_ttl_sec': 20,
        'renewal_margin_sec': 5,
    }
    defaults.update(overrides)
    return QueueConfig(**defaults)


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Settable epoch clock shared by all stores of a test.
    """

    def __init__(self, start: datetime.datetime = T0):
        self._value = start.timestamp()
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._value

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._value += seconds

    def set(self, moment: datetime.datetime) -> None:
        with self._lock:
            self._value = moment.timestamp()


# ============================================================================
# HELPERS
# ============================================================================

def wait_for(condition: callable, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until condition() is truthy or the timeout elapses.
    """
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return bool(condition())


def put_at(messages: MessageStore, due: datetime.datetime, payload: str, shard: int = None,
           config: QueueConfig = None, ttl: float = None) -> str:
    """Store a message directly at the coordinates of `due` (no safety offset).

    Returns
        The ordering id of the stored message
    """
    config = config or QueueConfig()
    ordering_id = new_ordering_id(due)
    shard = due.second % config.shard_count if shard is None else shard
    messages.put(QUEUE, int(due.strftime(config.timepart_format)), shard, ordering_id, payload, ttl)
    return ordering_id


class RecordingMessageStore(MessageStore):
    """MessageStore that remembers every take() call and its result.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.takes = []

    def take(self, queue, part, shard, after, limit):
        result = super().take(queue, part, shard, after, limit)
        self.takes.append((part, result))
        return result
