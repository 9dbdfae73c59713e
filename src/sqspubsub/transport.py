"""
Queue transport bindings for SQSPubSub.

The engine only talks to a `QueueTransport`. Two bindings ship here:
`SQSTransport` (Amazon SQS via boto3) and `InMemoryTransport`
(an in-process FIFO queue store for tests and local development).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable
import asyncio
import json
import logging
import random
import time
import uuid

import boto3

logger = logging.getLogger(__name__)

TRIGGER_ATTRIBUTE = "SQSPubSubTriggerName"

# SQS FIFO queues drop repeated deduplication ids sent within five minutes
DEDUPLICATION_WINDOW = 300.0


@dataclass
class Envelope:
    """One transport message: body, routing attributes and metadata."""
    body: str
    attributes: Dict[str, str] = field(default_factory=dict)
    receipt_handle: Optional[str] = None
    message_id: Optional[str] = None
    group_id: Optional[str] = None
    deduplication_id: Optional[str] = None

    @property
    def trigger(self) -> Optional[str]:
        return self.attributes.get(TRIGGER_ATTRIBUTE)

    def payload(self) -> Any:
        """Decode the JSON body."""
        return json.loads(self.body)


@runtime_checkable
class QueueTransport(Protocol):
    """Asynchronous queue primitives required by the engine."""

    async def create_queue(self, name: str, attributes: Dict[str, str]) -> str:
        ...

    async def delete_queue(self, queue_url: str) -> None:
        ...

    async def send_message(
        self,
        queue_url: str,
        body: str,
        group_id: str,
        deduplication_id: str,
        attributes: Dict[str, str],
    ) -> str:
        ...

    async def receive_message(
        self,
        queue_url: str,
        max_messages: int = 1,
        attribute_names: Sequence[str] = (),
        visibility_timeout: int = 0,
        wait_time_seconds: int = 0,
    ) -> Optional[Envelope]:
        ...

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        ...


class SQSTransport:
    """Amazon SQS binding. Blocking boto3 calls run in worker threads."""

    def __init__(self, client: Any = None, **client_config):
        # client_config (region_name, endpoint_url, credentials) goes to boto3 as-is
        self.client = client if client is not None else boto3.client("sqs", **client_config)

    async def _call(self, operation: str, **params) -> Dict[str, Any]:
        method = getattr(self.client, operation)
        return await asyncio.to_thread(method, **params)

    async def create_queue(self, name: str, attributes: Dict[str, str]) -> str:
        response = await self._call("create_queue", QueueName=name, Attributes=attributes)
        return response["QueueUrl"]

    async def delete_queue(self, queue_url: str) -> None:
        await self._call("delete_queue", QueueUrl=queue_url)

    async def send_message(
        self,
        queue_url: str,
        body: str,
        group_id: str,
        deduplication_id: str,
        attributes: Dict[str, str],
    ) -> str:
        response = await self._call(
            "send_message",
            QueueUrl=queue_url,
            MessageBody=body,
            MessageGroupId=group_id,
            MessageDeduplicationId=deduplication_id,
            MessageAttributes={
                name: {"DataType": "String", "StringValue": value}
                for name, value in attributes.items()
            },
        )
        return response.get("MessageId", "")

    async def receive_message(
        self,
        queue_url: str,
        max_messages: int = 1,
        attribute_names: Sequence[str] = (),
        visibility_timeout: int = 0,
        wait_time_seconds: int = 0,
    ) -> Optional[Envelope]:
        response = await self._call(
            "receive_message",
            QueueUrl=queue_url,
            MaxNumberOfMessages=max_messages,
            MessageAttributeNames=list(attribute_names),
            AttributeNames=["MessageGroupId", "MessageDeduplicationId"],
            VisibilityTimeout=visibility_timeout,
            WaitTimeSeconds=wait_time_seconds,
        )
        messages = response.get("Messages") or []
        if not messages:
            return None

        raw = messages[0]
        system = raw.get("Attributes", {})
        return Envelope(
            body=raw["Body"],
            attributes={
                name: value["StringValue"]
                for name, value in raw.get("MessageAttributes", {}).items()
                if "StringValue" in value
            },
            receipt_handle=raw["ReceiptHandle"],
            message_id=raw.get("MessageId"),
            group_id=system.get("MessageGroupId"),
            deduplication_id=system.get("MessageDeduplicationId"),
        )

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        await self._call("delete_message", QueueUrl=queue_url, ReceiptHandle=receipt_handle)


class QueueNotFound(LookupError):
    """Raised by InMemoryTransport for an unknown queue URL."""


class ReceiptHandleInvalid(ValueError):
    """Raised by InMemoryTransport for a stale or unknown receipt handle."""


@dataclass
class _StoredMessage:
    envelope: Envelope
    visible_at: float = 0.0
    receipt_handle: Optional[str] = None


@dataclass
class _MemoryQueue:
    name: str
    attributes: Dict[str, str]
    messages: List[_StoredMessage] = field(default_factory=list)
    # deduplication id -> (message id, time first sent)
    seen_deduplication_ids: Dict[str, Tuple[str, float]] = field(default_factory=dict)


class InMemoryTransport:
    """
    In-process FIFO queue store.

    Messages are ordered per group id. A group is blocked while its head
    message is in flight. Receives pick among the visible group heads at
    random so no consumer keeps landing on the same foreign group.
    Deduplication ids are remembered for `deduplication_window` seconds.
    """

    def __init__(
        self,
        base_url: str = "memory://queues",
        deduplication_window: float = DEDUPLICATION_WINDOW
    ):
        self.base_url = base_url
        self.deduplication_window = deduplication_window
        self._queues: Dict[str, _MemoryQueue] = {}
        self._failures: Dict[str, List[BaseException]] = {}
        self.calls: List[str] = []

    # Test helpers

    def fail_next(self, operation: str, exc: BaseException) -> None:
        """Make the next call to `operation` raise `exc`."""
        self._failures.setdefault(operation, []).append(exc)

    def queue_exists(self, queue_url: str) -> bool:
        return queue_url in self._queues

    def messages(self, queue_url: str) -> List[Envelope]:
        """Messages still stored in a queue, in send order."""
        return [stored.envelope for stored in self._get(queue_url).messages]

    def add_queue(self, name: str, attributes: Optional[Dict[str, str]] = None) -> str:
        """Create a queue synchronously (e.g. a pre-existing shared queue)."""
        url = f"{self.base_url}/{name}"
        if url not in self._queues:
            self._queues[url] = _MemoryQueue(name=name, attributes=dict(attributes or {}))
        return url

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _get(self, queue_url: str) -> _MemoryQueue:
        try:
            return self._queues[queue_url]
        except KeyError:
            raise QueueNotFound(f"Queue does not exist: {queue_url}") from None

    # QueueTransport

    async def create_queue(self, name: str, attributes: Dict[str, str]) -> str:
        await asyncio.sleep(0)
        self._enter("create_queue")
        url = self.add_queue(name, attributes)
        logger.debug(f"Created in-memory queue {url}")
        return url

    async def delete_queue(self, queue_url: str) -> None:
        await asyncio.sleep(0)
        self._enter("delete_queue")
        self._get(queue_url)
        del self._queues[queue_url]

    async def send_message(
        self,
        queue_url: str,
        body: str,
        group_id: str,
        deduplication_id: str,
        attributes: Dict[str, str],
    ) -> str:
        await asyncio.sleep(0)
        self._enter("send_message")
        queue = self._get(queue_url)

        now = time.monotonic()
        seen = queue.seen_deduplication_ids
        for key in [key for key, (_, sent_at) in seen.items() if now - sent_at >= self.deduplication_window]:
            del seen[key]

        if deduplication_id in seen:
            return seen[deduplication_id][0]

        message_id = str(uuid.uuid4())
        seen[deduplication_id] = (message_id, now)
        queue.messages.append(_StoredMessage(Envelope(
            body=body,
            attributes=dict(attributes),
            message_id=message_id,
            group_id=group_id,
            deduplication_id=deduplication_id,
        )))
        return message_id

    async def receive_message(
        self,
        queue_url: str,
        max_messages: int = 1,
        attribute_names: Sequence[str] = (),
        visibility_timeout: int = 0,
        wait_time_seconds: int = 0,
    ) -> Optional[Envelope]:
        await asyncio.sleep(0)
        self._enter("receive_message")
        deadline = time.monotonic() + wait_time_seconds

        while True:
            stored = self._next_visible(self._get(queue_url))
            if stored is not None or time.monotonic() >= deadline:
                break
            await asyncio.sleep(0.01)

        if stored is None:
            return None

        stored.receipt_handle = uuid.uuid4().hex
        stored.visible_at = time.monotonic() + visibility_timeout
        envelope = stored.envelope
        return Envelope(
            body=envelope.body,
            attributes={
                name: value for name, value in envelope.attributes.items()
                if name in attribute_names
            },
            receipt_handle=stored.receipt_handle,
            message_id=envelope.message_id,
            group_id=envelope.group_id,
            deduplication_id=envelope.deduplication_id,
        )

    async def delete_message(self, queue_url: str, receipt_handle: str) -> None:
        await asyncio.sleep(0)
        self._enter("delete_message")
        queue = self._get(queue_url)
        for index, stored in enumerate(queue.messages):
            if stored.receipt_handle == receipt_handle:
                del queue.messages[index]
                return
        raise ReceiptHandleInvalid(f"Unknown receipt handle: {receipt_handle}")

    def _next_visible(self, queue: _MemoryQueue) -> Optional[_StoredMessage]:
        heads: Dict[Optional[str], _StoredMessage] = {}
        for stored in queue.messages:
            heads.setdefault(stored.envelope.group_id, stored)

        now = time.monotonic()
        candidates = [stored for stored in heads.values() if stored.visible_at <= now]
        if not candidates:
            return None
        return random.choice(candidates)
