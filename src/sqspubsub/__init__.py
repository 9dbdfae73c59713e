"""
SQSPubSub - Pub/Sub over a single Amazon SQS FIFO queue

Trigger-based publish/subscribe with attribute filtering, a cooperative
poll loop, explicit acknowledgement and async iteration.
"""

from .config import DeliveryMode, SQSPubSubConfig
from .errors import (
    DeleteError,
    EncodingError,
    HandlerError,
    ProvisionError,
    PublishError,
    PubSubError,
    ReceiveError,
)
from .iterator import PubSubAsyncIterator
from .pubsub import SQSPubSub, matches_trigger
from .transport import (
    TRIGGER_ATTRIBUTE,
    Envelope,
    InMemoryTransport,
    QueueTransport,
    SQSTransport,
)

__version__ = "0.1.0"
__all__ = [
    # Engine
    "SQSPubSub",
    "PubSubAsyncIterator",
    "matches_trigger",
    # Configuration
    "SQSPubSubConfig",
    "DeliveryMode",
    # Transport
    "QueueTransport",
    "SQSTransport",
    "InMemoryTransport",
    "Envelope",
    "TRIGGER_ATTRIBUTE",
    # Errors
    "PubSubError",
    "ProvisionError",
    "PublishError",
    "EncodingError",
    "HandlerError",
    "ReceiveError",
    "DeleteError",
]
