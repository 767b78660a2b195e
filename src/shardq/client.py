"""Store-side contracts of the sharded queue: shard control records and messages.
"""
import contextlib
import datetime
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import create_engine, text

from shardq.bucketing import BEGINNING, boundary_id, bucket_floor
from shardq.bucketing import ordering_id_to_time, timepart, to_utc
from shardq.config import QueueConfig
from shardq.schema import get_table_names, verify_tables_exist

logger = logging.getLogger(__name__)

__all__ = ['DatabaseContext', 'Message', 'MessageStore', 'ShardLockStore', 'ShardStatus',
           'NOW_REACHED', 'ShardqError', 'QueueNotInitialized', 'ShardNotFound', 'LeaseLost']


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.info(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


# ============================================================
# EXCEPTIONS
# ============================================================

class ShardqError(Exception):
    """Base class for queue errors.
    """


class QueueNotInitialized(ShardqError):
    """Raised when a queue has no shard control records.
    """


class ShardNotFound(ShardqError):
    """Raised when a shard control record is missing.
    """


class LeaseLost(ShardqError):
    """Raised when exclusive ownership of a shard can no longer be confirmed.
    """


# ============================================================
# MODEL
# ============================================================

class Boundary(Enum):
    """Control signals returned by range reads.
    """
    NOW_REACHED = 'now_reached'


NOW_REACHED = Boundary.NOW_REACHED


@dataclass(frozen=True, order=True)
class Message:
    """A message taken from the queue, ordered by its ordering id.
    """
    ordering_id: str
    payload: str = field(compare=False)

    @property
    def due(self) -> datetime.datetime:
        return ordering_id_to_time(self.ordering_id)


@dataclass
class ShardStatus:
    """Snapshot of one shard control record.
    """
    shard: int
    holder: str | None
    lock_expires: datetime.datetime | None
    cursor: str

    @property
    def locked(self) -> bool:
        return self.holder is not None

    @property
    def cursor_time(self) -> datetime.datetime | None:
        if self.cursor == BEGINNING:
            return None
        return ordering_id_to_time(self.cursor)


# ============================================================
# SERVICE LAYER
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, table names and the store clock.
    """

    def __init__(self, config: QueueConfig, clock: callable = None):
        """Initialize database context.

        Args:
            config: Queue configuration with connection parameters
            clock: Callable returning epoch seconds, replacing the database clock
        """
        connection_string = config.url or build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        if connection_string.startswith('sqlite'):
            self.engine = create_engine(connection_string)
        else:
            self.engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        self.appname = config.appname
        self.tables = get_table_names(config.appname)
        self.clock = clock

    @property
    def now_sql(self) -> str:
        """SQL returning the database server time as epoch seconds.
        """
        if self.engine.dialect.name == 'sqlite':
            return "SELECT (julianday('now') - 2440587.5) * 86400.0"
        return 'SELECT EXTRACT(EPOCH FROM clock_timestamp())'

    def now(self) -> float:
        """Current store time as epoch seconds.

        Lease expiry and the "now" boundary are judged against the database
        clock, never the local one, so every worker shares one notion of time.
        """
        if self.clock is not None:
            return self.clock()
        with self.engine.connect() as conn:
            return float(conn.execute(text(self.now_sql)).scalar())

    def execute(self, sql: str, params: dict | list[dict] = None) -> int:
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters (a list executes the statement once per entry)

        Returns
            Number of rows affected
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            rowcount = result.rowcount
            conn.commit()
            return rowcount

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()


class ShardLockStore:
    """Shard control records: lease locks and per-shard cursors.

    A lease is the pair (lock_holder, lock_expires). A lease whose expiry has
    passed is treated exactly like an absent one, which gives the control
    record the semantics of a column written with a TTL.
    """

    def __init__(self, db: DatabaseContext, config: QueueConfig):
        self.db = db
        self.shard_count = config.shard_count
        self.granularity = config.granularity_sec
        self.verify_holder_on_renew = config.verify_holder_on_renew

    @property
    def table(self) -> str:
        return self.db.tables['Shard']

    @log_duration('init_shards')
    def init_shards(self, queue: str) -> int:
        """Insert a control row for each shard of the queue.

        Existing rows are left untouched, so re-running keeps cursors and leases.

        Returns
            Number of shards provisioned
        """
        sql = f"""
        INSERT INTO {self.table} (name, shard)
        VALUES (:name, :shard)
        ON CONFLICT (name, shard) DO NOTHING
        """
        self.db.execute(sql, [{'name': queue, 'shard': i} for i in range(self.shard_count)])
        for i in range(self.shard_count):
            logger.info(f'Shard control row ready for queue {queue}, shard {i}')
        return self.shard_count

    def count_shards(self, queue: str) -> int:
        sql = f'SELECT COUNT(*) FROM {self.table} WHERE name = :name'
        return self.db.query(sql, {'name': queue})[0][0]

    def is_initialized(self, queue: str) -> bool:
        """True once the queue tables exist and the queue has control rows.
        """
        if not all(verify_tables_exist(self.db.engine, self.db.appname).values()):
            return False
        return self.count_shards(queue) > 0

    def _exists(self, queue: str, shard: int) -> bool:
        sql = f'SELECT 1 FROM {self.table} WHERE name = :name AND shard = :shard'
        return bool(self.db.query(sql, {'name': queue, 'shard': shard}))

    def acquire(self, queue: str, shard: int, worker_id: str, ttl: float) -> bool:
        """Take the lease on a shard if nobody holds an unexpired one.

        Returns
            True if the lease was acquired, False if another lease is live
        """
        now = self.db.now()
        sql = f"""
        UPDATE {self.table}
        SET lock_holder = :worker, lock_expires = :expires, touched = :now
        WHERE name = :name AND shard = :shard
        AND (lock_holder IS NULL OR lock_expires IS NULL OR lock_expires <= :now)
        """
        rows = self.db.execute(sql, {
            'worker': worker_id,
            'expires': now + ttl,
            'now': now,
            'name': queue,
            'shard': shard
        })
        acquired = rows > 0
        logger.debug(f'Lock for queue {queue}, shard {shard} by {worker_id}: {"acquired" if acquired else "busy"}')
        return acquired

    def renew(self, queue: str, shard: int, worker_id: str, ttl: float) -> None:
        """Extend the lease on a shard.

        Unless verify_holder_on_renew is configured, the write does not check
        who currently holds the lease.

        Raises
            ShardNotFound: If the shard control row does not exist
            LeaseLost: If holder verification is enabled and the lease is gone
        """
        now = self.db.now()
        sql = f"""
        UPDATE {self.table}
        SET lock_holder = :worker, lock_expires = :expires, touched = :now
        WHERE name = :name AND shard = :shard
        """
        if self.verify_holder_on_renew:
            sql += ' AND lock_holder = :worker AND lock_expires > :now'
        rows = self.db.execute(sql, {
            'worker': worker_id,
            'expires': now + ttl,
            'now': now,
            'name': queue,
            'shard': shard
        })
        if rows == 0:
            if self.verify_holder_on_renew and self._exists(queue, shard):
                raise LeaseLost(f'Lease on queue {queue}, shard {shard} no longer held by {worker_id}')
            raise ShardNotFound(f'No control row for queue {queue}, shard {shard}')
        logger.debug(f'Touched lock for queue {queue}, shard {shard}')

    def read_cursor(self, queue: str, shard: int) -> str:
        """Last processed ordering id of a shard, BEGINNING if never set.
        """
        sql = f'SELECT last FROM {self.table} WHERE name = :name AND shard = :shard'
        rows = self.db.query(sql, {'name': queue, 'shard': shard})
        if not rows:
            raise ShardNotFound(f'No control row for queue {queue}, shard {shard}')
        return rows[0][0] or BEGINNING

    def write_cursor(self, queue: str, shard: int, ordering_id: str) -> None:
        """Set the last processed ordering id; the cursor never moves backwards.
        """
        sql = f"""
        UPDATE {self.table}
        SET last = :last
        WHERE name = :name AND shard = :shard AND (last IS NULL OR last < :last)
        """
        self.db.execute(sql, {'last': ordering_id, 'name': queue, 'shard': shard})

    def write_cursor_now(self, queue: str, shard: int) -> str:
        """Mark the shard as caught up to the bucket containing now.

        Every bucket before the current one has been drained when this is
        called, so the cursor moves to the first id of the current bucket.

        Returns
            The boundary id written (ignored by the store if the cursor is already past it)
        """
        boundary = boundary_id(bucket_floor(self.db.now(), self.granularity))
        self.write_cursor(queue, shard, boundary)
        logger.debug(f'Cursor of queue {queue}, shard {shard} caught up to {ordering_id_to_time(boundary)}')
        return boundary

    def list_shards(self, queue: str) -> list[ShardStatus]:
        """List control records of a queue with expired leases reported as absent.
        """
        now = self.db.now()
        sql = f"""
        SELECT shard, lock_holder, lock_expires, last
        FROM {self.table}
        WHERE name = :name
        ORDER BY shard ASC
        """
        statuses = []
        for shard, holder, expires, last in self.db.query(sql, {'name': queue}):
            live = holder is not None and expires is not None and expires > now
            statuses.append(ShardStatus(
                shard=shard,
                holder=holder if live else None,
                lock_expires=to_utc(expires) if live else None,
                cursor=last or BEGINNING))
        return statuses


class MessageStore:
    """Bucketed, shard-partitioned message stream.
    """

    def __init__(self, db: DatabaseContext, config: QueueConfig):
        self.db = db
        self.timepart_format = config.timepart_format
        self.message_ttl = config.message_ttl_sec

    @property
    def table(self) -> str:
        return self.db.tables['Message']

    def put(self, queue: str, timepart: int, shard: int, ordering_id: str, payload: str,
            ttl: float = None) -> None:
        """Append a message to a (timepart, shard) partition.

        Args:
            ttl: Retention in seconds (defaults to the configured message TTL)
        """
        ttl = self.message_ttl if ttl is None else ttl
        sql = f"""
        INSERT INTO {self.table} (name, timepart, shard, due, message, expires_at)
        VALUES (:name, :timepart, :shard, :due, :message, :expires_at)
        """
        self.db.execute(sql, {
            'name': queue,
            'timepart': timepart,
            'shard': shard,
            'due': ordering_id,
            'message': payload,
            'expires_at': self.db.now() + ttl
        })
        logger.debug(f'Putting message in {queue}|{timepart}|{shard} (due id: {ordering_id})')

    def take(self, queue: str, part: int, shard: int, after: str, limit: int) -> list[Message] | Boundary:
        """Read the next messages of a shard within one bucket.

        Returns
            NOW_REACHED if the bucket is the one containing now (or later),
            otherwise up to `limit` messages with `after < id < now`, ascending.
            An empty list only means this bucket has nothing left.
        """
        now = self.db.now()
        if part >= timepart(now, self.timepart_format):
            logger.debug(f'Current time reached for {queue}, shard {shard} at timepart {part}')
            return NOW_REACHED

        logger.debug(f'Trying to take {limit} messages from {queue}, shard {shard} timepart {part} after {after}')
        sql = f"""
        SELECT due, message
        FROM {self.table}
        WHERE name = :name AND timepart = :timepart AND shard = :shard
        AND due > :after AND due < :now_id AND expires_at > :now
        ORDER BY due ASC
        LIMIT :limit
        """
        rows = self.db.query(sql, {
            'name': queue,
            'timepart': part,
            'shard': shard,
            'after': after,
            'now_id': boundary_id(now),
            'now': now,
            'limit': limit
        })
        return [Message(due, message) for due, message in rows]

    def first_timepart(self, queue: str, shard: int) -> int | None:
        """Earliest bucket holding unexpired messages for a shard.
        """
        sql = f"""
        SELECT MIN(timepart)
        FROM {self.table}
        WHERE name = :name AND shard = :shard AND expires_at > :now
        """
        rows = self.db.query(sql, {'name': queue, 'shard': shard, 'now': self.db.now()})
        return rows[0][0] if rows else None

    def purge_expired(self, queue: str) -> int:
        """Delete messages past their retention TTL.

        Returns
            Number of messages removed
        """
        sql = f'DELETE FROM {self.table} WHERE name = :name AND expires_at <= :now'
        rows = self.db.execute(sql, {'name': queue, 'now': self.db.now()})
        logger.info(f'Purged {rows} expired messages from {queue}')
        return rows
