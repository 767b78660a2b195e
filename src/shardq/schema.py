import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Shard', 'Message']


def get_table_names(appname: str = 'shardq_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Shard': f'{appname}shard',
        'Message': f'{appname}message',
    }


def verify_tables_exist(engine: Engine, appname: str = 'shardq_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def _create_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create the shard control and message tables.

    Times are stored as epoch seconds and ordering ids as 32-char hex so the
    same statements work on PostgreSQL and SQLite.
    """
    Shard = tables['Shard']
    Message = tables['Message']
    # ordering ids must compare bytewise whatever the database locale
    collate = ' COLLATE "C"' if engine.dialect.name == 'postgresql' else ''

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Shard} (
    name varchar not null,
    shard integer not null,
    lock_holder varchar,
    lock_expires double precision,
    touched double precision,
    last varchar(32){collate},
    primary key (name, shard)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Message} (
    name varchar not null,
    timepart bigint not null,
    shard integer not null,
    due varchar(32){collate} not null,
    message text not null,
    expires_at double precision not null,
    primary key (name, timepart, shard, due)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Message}_shard ON {Message}(name, shard, timepart)'))
        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Message}_expires ON {Message}(expires_at)'))

        conn.commit()

    logger.debug(f'Queue tables verified: {Shard}, {Message}')


def ensure_database_ready(engine: Engine, appname: str = 'shardq_') -> None:
    """Ensure database has all required tables with correct structure.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
