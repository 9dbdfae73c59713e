"""
SQSPubSub configuration.

Defaults can be read from the environment:

    SQS_PUBSUB_QUEUE_URL                 existing queue (shared variant)
    SQS_PUBSUB_RECEIVE_MESSAGE_TIMEOUT   seconds between poll cycles
    SQS_PUBSUB_WAIT_TIME_SECONDS         SQS long-poll wait
    SQS_PUBSUB_ENV                       queue name prefix (managed variant)
    SQS_PUBSUB_DELIVERY_MODE             at_most_once (default) or at_least_once
    AWS_REGION / AWS_DEFAULT_REGION      passed to the boto3 client
    SQS_ENDPOINT_URL                     passed to the boto3 client
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional
import os

DEFAULT_ENV = "local"


class DeliveryMode(str, Enum):
    """When a matched message is deleted relative to dispatch."""
    AT_MOST_ONCE = "at_most_once"    # delete, then dispatch
    AT_LEAST_ONCE = "at_least_once"  # dispatch, delete on handler success


def _default_prefix() -> str:
    return os.environ.get("SQS_PUBSUB_ENV") or DEFAULT_ENV


@dataclass
class SQSPubSubConfig:
    """Engine options. `queue_url` selects the shared-queue variant."""
    queue_url: Optional[str] = None
    receive_message_timeout: float = 0.0  # seconds between poll cycles
    wait_time_seconds: int = 0
    queue_name_prefix: str = field(default_factory=_default_prefix)
    client_config: Dict[str, Any] = field(default_factory=dict)
    delivery_mode: DeliveryMode = DeliveryMode.AT_MOST_ONCE
    on_error: Optional[Callable[[Exception], Any]] = None

    def __post_init__(self):
        self.delivery_mode = DeliveryMode(self.delivery_mode)
        if self.receive_message_timeout < 0:
            raise ValueError("receive_message_timeout must be >= 0")
        if not 0 <= self.wait_time_seconds <= 20:
            raise ValueError("wait_time_seconds must be between 0 and 20")

    @property
    def managed(self) -> bool:
        """True when the engine owns the queue lifecycle."""
        return self.queue_url is None

    def with_options(self, **overrides) -> "SQSPubSubConfig":
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown SQSPubSub options: {sorted(unknown)}")
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, **overrides) -> "SQSPubSubConfig":
        """Build a config from SQS_PUBSUB_* and AWS_* environment variables."""
        env = os.environ
        client_config: Dict[str, Any] = {}

        region = env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION")
        if region:
            client_config["region_name"] = region
        if env.get("SQS_ENDPOINT_URL"):
            client_config["endpoint_url"] = env["SQS_ENDPOINT_URL"]

        config = cls(
            queue_url=env.get("SQS_PUBSUB_QUEUE_URL") or None,
            receive_message_timeout=float(env.get("SQS_PUBSUB_RECEIVE_MESSAGE_TIMEOUT", 0)),
            wait_time_seconds=int(env.get("SQS_PUBSUB_WAIT_TIME_SECONDS", 0)),
            delivery_mode=env.get("SQS_PUBSUB_DELIVERY_MODE", DeliveryMode.AT_MOST_ONCE),
            client_config=client_config,
        )
        return config.with_options(**overrides) if overrides else config
