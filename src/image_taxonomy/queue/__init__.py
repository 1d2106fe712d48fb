"""Durable work queue shared by the web tier and the analysis worker."""

from image_taxonomy.queue.client import ClaimedMessage, QueueClient, SqliteQueueClient
from image_taxonomy.queue.descriptor import DESCRIPTOR_VERSION, QueueDescriptor

__all__ = [
    "DESCRIPTOR_VERSION",
    "ClaimedMessage",
    "QueueClient",
    "QueueDescriptor",
    "SqliteQueueClient",
]
