"""
Error taxonomy for SQSPubSub.

Caller-facing operations raise these; the poll loop reports them
through its error hook and keeps running.
"""

from typing import Optional


class PubSubError(Exception):
    """Base class for all pub/sub errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ProvisionError(PubSubError):
    """Queue create/delete failed."""


class PublishError(PubSubError):
    """Sending a message failed."""


class EncodingError(PublishError):
    """Payload could not be encoded as JSON."""


class ReceiveError(PubSubError):
    """A poll cycle could not receive (or decode) a message."""


class DeleteError(PubSubError):
    """Acknowledging a message failed; the transport may redeliver it."""


class HandlerError(PubSubError):
    """A subscriber's callback raised while handling a delivered message."""
