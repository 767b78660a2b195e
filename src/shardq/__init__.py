__version__ = '0.1.0'

from shardq.client import NOW_REACHED as NOW_REACHED
from shardq.client import DatabaseContext as DatabaseContext
from shardq.client import LeaseLost as LeaseLost
from shardq.client import Message as Message
from shardq.client import MessageStore as MessageStore
from shardq.client import QueueNotInitialized as QueueNotInitialized
from shardq.client import ShardLockStore as ShardLockStore
from shardq.config import QueueConfig as QueueConfig
from shardq.consumer import Consumer as Consumer
from shardq.coordinator import ShardCoordinator as ShardCoordinator
from shardq.coordinator import ShardState as ShardState
from shardq.producer import Producer as Producer
