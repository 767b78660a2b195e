"""Mapping of due times to storage coordinates.

A due time maps to a timepart (the storage bucket), a shard and an ordering
id. Ordering ids use the UUIDv7 bit layout (48-bit unix milliseconds,
12 bits of sub-millisecond precision, 62 random bits) rendered as 32 lowercase
hex characters, so that string order, numeric order and time order agree and
ids can be compared directly in SQL.
"""
import datetime
import secrets

from shardq.config import QueueConfig

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

BEGINNING = '0' * 32

_VERSION = 0x7
_VARIANT = 0b10


def ensure_timezone_aware(dt: datetime.datetime, name: str = 'datetime') -> datetime.datetime:
    """Ensure datetime is timezone-aware.

    Args:
        dt: Datetime to check
        name: Name for error message

    Returns
        The datetime (unchanged if already aware)

    Raises
        ValueError: If datetime is naive
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f'{name} must be timezone-aware (has tzinfo), got naive datetime: {dt}')
    return dt


def to_utc(moment: datetime.datetime | float) -> datetime.datetime:
    """Normalize an aware datetime or an epoch timestamp to a UTC datetime.
    """
    if isinstance(moment, datetime.datetime):
        return ensure_timezone_aware(moment, 'due').astimezone(datetime.timezone.utc)
    return datetime.datetime.fromtimestamp(moment, datetime.timezone.utc)


def _epoch_micros(moment: datetime.datetime) -> int:
    return (to_utc(moment) - EPOCH) // datetime.timedelta(microseconds=1)


def _pack(millis: int, sub_millis: int, rand: int) -> str:
    value = (millis << 80) | (_VERSION << 76) | (sub_millis << 64) | (_VARIANT << 62) | rand
    return f'{value:032x}'


def new_ordering_id(due: datetime.datetime | float) -> str:
    """Generate a unique ordering id for a due time.

    Ids for the same millisecond are ordered by sub-millisecond precision and
    then by random bits, so distinct messages never collide and always have a
    total order.
    """
    micros = _epoch_micros(to_utc(due))
    millis, rest = divmod(micros, 1000)
    return _pack(millis, rest * 4096 // 1000, secrets.randbits(62))


def boundary_id(moment: datetime.datetime | float) -> str:
    """Smallest ordering id of the millisecond containing `moment`.

    Every id generated for an earlier millisecond sorts strictly below it.
    """
    millis = _epoch_micros(to_utc(moment)) // 1000
    return _pack(millis, 0, 0)


def ordering_id_to_time(ordering_id: str) -> datetime.datetime:
    """Recover the (UTC) due time embedded in an ordering id.
    """
    value = int(ordering_id, 16)
    millis = value >> 80
    sub_millis = (value >> 64) & 0xfff
    return EPOCH + datetime.timedelta(microseconds=millis * 1000 + sub_millis * 1000 // 4096)


def shard_for(due: datetime.datetime | float, shard_count: int) -> int:
    return to_utc(due).second % shard_count


def timepart(moment: datetime.datetime | float, timepart_format: str) -> int:
    return int(to_utc(moment).strftime(timepart_format))


def timepart_to_time(value: int, timepart_format: str) -> datetime.datetime:
    """Start of the bucket identified by a timepart.
    """
    parsed = datetime.datetime.strptime(str(value), timepart_format)
    return parsed.replace(tzinfo=datetime.timezone.utc)


def bucket_floor(moment: datetime.datetime | float, granularity_sec: int) -> datetime.datetime:
    """Start of the bucket containing `moment`.
    """
    seconds = _epoch_micros(to_utc(moment)) // 1_000_000
    return to_utc(float(seconds - seconds % granularity_sec))


def coordinates(due: datetime.datetime | float, config: QueueConfig) -> tuple[int, int, str]:
    """Split a due time into (timepart, shard, ordering id).

    The shard is the due second modulo the shard count; the timepart is the
    due time formatted at bucket resolution.
    """
    due = to_utc(due)
    return (timepart(due, config.timepart_format),
            shard_for(due, config.shard_count),
            new_ordering_id(due))
