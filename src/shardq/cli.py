"""shardq - sharded delayed-message queue.

Commands:
    init     - Create tables and shard control rows for a queue
    produce  - Enqueue synthetic messages
    consume  - Run one worker until no shard is available
    status   - Show shard leases and cursors
    purge    - Delete messages past their retention TTL
"""
import logging
import os
import signal
import time
from types import SimpleNamespace

import click

from shardq.client import DatabaseContext, MessageStore, ShardLockStore, ShardqError
from shardq.config import QueueConfig, settings
from shardq.consumer import Consumer
from shardq.producer import Producer
from shardq.schema import ensure_database_ready


@click.group()
@click.option('-H', '--host', default=settings.sql.host, show_default=True, help='Database host')
@click.option('--port', default=settings.sql.port, show_default=True, type=int, help='Database port')
@click.option('-K', '--dbname', default=settings.sql.dbname, show_default=True, help='Database to use')
@click.option('--user', default=settings.sql.user, show_default=True, help='Database user')
@click.option('--password', default=settings.sql.passwd, help='Database password')
@click.option('--url', default=settings.sql.url, help='SQLAlchemy URL (overrides host/port/dbname)')
@click.option('--appname', default=settings.sql.appname, show_default=True, help='Table name prefix')
@click.option('-N', '--name', default=settings.queue.name, show_default=True, help='Specifies the queue')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, host, port, dbname, user, password, url, appname, name, verbose):
    """Sharded delayed-message queue."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    ctx.obj = SimpleNamespace(
        name=name,
        connection=dict(host=host, port=port, dbname=dbname, user=user, password=password,
                        url=url, appname=appname))


def _config(obj, **overrides) -> QueueConfig:
    values = dict(
        lock_ttl_sec=settings.queue.lock_ttl_sec,
        renewal_margin_sec=settings.queue.renewal_margin_sec,
        batch_size=settings.queue.batch_size,
        poll_interval_sec=settings.queue.poll_interval_sec,
        exhausted_pause_sec=settings.queue.exhausted_pause_sec,
        verify_holder_on_renew=settings.queue.verify_holder_on_renew)
    values.update(obj.connection)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return QueueConfig(**values)


@cli.command('init')
@click.pass_obj
def init_command(obj):
    """Provision the shard control rows of a queue."""
    config = _config(obj)
    db = DatabaseContext(config)
    try:
        ensure_database_ready(db.engine, config.appname)
        count = ShardLockStore(db, config).init_shards(obj.name)
    finally:
        db.dispose()
    click.echo(f'Queue {obj.name} initialized with {count} shards')


@cli.command('produce')
@click.option('--count', type=int, default=None, help='Stop after this many messages')
@click.option('--interval', type=float, default=1.0, show_default=True, help='Seconds between messages')
@click.option('--delay', type=float, default=0.0, show_default=True, help='Seconds until each message is due')
@click.pass_obj
def produce_command(obj, count, interval, delay):
    """Enqueue messages continuously."""
    config = _config(obj)
    i = 0
    with Producer(obj.name, config) as producer:
        while count is None or i < count:
            i += 1
            due = producer.db.now() + delay
            message = producer.enqueue(f'Message {i} from producer {os.getpid()}', due=due)
            click.echo(f'{message.due.isoformat()} {message.payload}')
            if count is None or i < count:
                time.sleep(interval)


@cli.command('consume')
@click.option('--batch-size', type=int, default=None, help='Messages taken per read')
@click.option('--stop-when-caught-up', is_flag=True, help='Exit once the first shard is drained')
@click.option('--fail-fast/--no-fail-fast', default=True, show_default=True,
              help='Terminate immediately when the shard lease cannot be renewed')
@click.pass_obj
def consume_command(obj, batch_size, stop_when_caught_up, fail_fast):
    """Run one worker until no shard is available."""
    config = _config(obj, batch_size=batch_size)
    consumer = Consumer(obj.name, config, stop_when_caught_up=stop_when_caught_up, fail_fast=fail_fast)
    signal.signal(signal.SIGTERM, lambda *_: consumer.stop())
    try:
        with consumer:
            code = consumer.run()
    except ShardqError as e:
        click.echo(f'Error: {e}', err=True)
        raise SystemExit(1) from e
    click.echo(f'Worker {consumer.worker_id} delivered {consumer.delivered} messages')
    raise SystemExit(code)


@cli.command('status')
@click.pass_obj
def status_command(obj):
    """Show lease holder, lease expiry and cursor per shard."""
    config = _config(obj)
    db = DatabaseContext(config)
    try:
        locks = ShardLockStore(db, config)
        statuses = locks.list_shards(obj.name) if locks.is_initialized(obj.name) else []
    finally:
        db.dispose()
    if not statuses:
        click.echo(f'Queue {obj.name} is not initialized', err=True)
        raise SystemExit(1)
    for status in statuses:
        holder = status.holder or '-'
        expires = status.lock_expires.isoformat() if status.lock_expires else '-'
        cursor = status.cursor_time.isoformat() if status.cursor_time else 'beginning'
        click.echo(f'shard {status.shard}: holder={holder} expires={expires} cursor={cursor}')


@cli.command('purge')
@click.pass_obj
def purge_command(obj):
    """Delete messages past their retention TTL."""
    config = _config(obj)
    db = DatabaseContext(config)
    try:
        removed = MessageStore(db, config).purge_expired(obj.name)
    finally:
        db.dispose()
    click.echo(f'Purged {removed} expired messages from {obj.name}')


if __name__ == '__main__':
    cli()
