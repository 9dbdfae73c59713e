"""
SQSPubSub - topic pub/sub over a single FIFO queue.

Publishers tag each message with a trigger name carried in a message
attribute; a subscriber's poll loop receives one message at a time,
keeps the ones whose trigger matches and leaves the rest on the queue.
"""

from typing import Any, Callable, Dict, List, Optional, Union
import asyncio
import json
import logging
import uuid

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
from .transport import TRIGGER_ATTRIBUTE, Envelope, QueueTransport, SQSTransport

logger = logging.getLogger(__name__)

FIFO_QUEUE_ATTRIBUTES = {"FifoQueue": "true"}

_UNDECODABLE = object()


def matches_trigger(envelope: Envelope, active_trigger: Optional[str]) -> bool:
    """Exact match between the message's trigger attribute and the active trigger."""
    if active_trigger is None:
        return False
    trigger = envelope.trigger
    return trigger is not None and trigger == active_trigger


class SQSPubSub:
    """
    Pub/sub engine backed by one queue.

    Without a `queue_url` the engine manages its own queue: it is created on
    first use and deleted on unsubscribe. With a `queue_url` the queue is
    borrowed and never created or deleted, so several engines can share it.

    One trigger is active at a time. Subscribing again replaces the running
    poll loop.
    """

    def __init__(
        self,
        config: Optional[SQSPubSubConfig] = None,
        transport: Optional[QueueTransport] = None,
        **options
    ):
        config = config or SQSPubSubConfig()
        if options:
            config = config.with_options(**options)

        self.config = config
        self.transport = transport if transport is not None else SQSTransport(**config.client_config)
        self.queue_url: Optional[str] = config.queue_url
        self.active_trigger: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._provision_lock = asyncio.Lock()
        self._unsubscribing = False
        self._last_subscription_id = 0
        self._generation = 0

    @property
    def stopped(self) -> bool:
        """True when no poll loop is running or the running one was asked to stop."""
        return self._stop is None or self._stop.is_set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> "SQSPubSub":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Public API

    async def publish(self, trigger: str, payload: Any) -> str:
        """Send `payload` under `trigger`. Returns the transport message id."""
        try:
            body = json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Payload for {trigger!r} is not JSON serializable: {e}", e) from e

        try:
            queue_url = await self._ensure_queue()
        except ProvisionError as e:
            raise PublishError(f"Cannot publish to {trigger!r}: {e}", e) from e

        try:
            message_id = await self.transport.send_message(
                queue_url,
                body,
                group_id=trigger,
                deduplication_id=uuid.uuid4().hex,
                attributes={TRIGGER_ATTRIBUTE: trigger},
            )
        except Exception as e:
            raise PublishError(f"Send to {queue_url} failed for {trigger!r}: {e}", e) from e

        logger.info(f"Published message {message_id} on {trigger}")
        return message_id

    async def subscribe(
        self,
        trigger: str,
        on_message: Callable[[Any], Any],
        options: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Start polling for `trigger`, replacing any running subscription.

        A subscribe superseded while it is still setting up (by a later
        subscribe or an unsubscribe) returns without starting a loop.
        """
        if not callable(on_message):
            raise TypeError("on_message must be callable")

        options = options or {}
        delay = options.get("receive_message_timeout", self.config.receive_message_timeout)
        if delay < 0:
            raise ValueError("receive_message_timeout must be >= 0")

        self._last_subscription_id += 1
        subscription_id = self._last_subscription_id
        self._generation += 1
        generation = self._generation

        if self._task is not None:
            logger.debug(f"Replacing subscription on {self.active_trigger} with {trigger}")
            await self._stop_loop()

        if generation == self._generation:
            await self._ensure_queue()

        if generation != self._generation:
            logger.debug(f"Subscription {subscription_id} for {trigger} superseded before start")
            return subscription_id

        self.active_trigger = trigger
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(
            self._poll_loop(trigger, on_message, delay, self._stop),
            name=f"sqspubsub-poll-{trigger}",
        )

        logger.debug(f"Subscription {subscription_id} started for {trigger}")
        return subscription_id

    async def unsubscribe(self, subscription_id: Optional[int] = None) -> None:
        """Stop the poll loop and, for a managed queue, delete the queue."""
        if self._unsubscribing:
            return

        self._unsubscribing = True
        self._generation += 1
        generation = self._generation
        try:
            await self._stop_loop()
            if generation != self._generation:
                # a newer subscribe took over the queue
                return
            self.active_trigger = None
            if self.config.managed:
                await self._release_queue()
        finally:
            self._unsubscribing = False

        logger.debug(f"Subscription {subscription_id or self._last_subscription_id} stopped")

    async def close(self) -> None:
        await self.unsubscribe()

    def async_iterator(self, triggers: Union[str, List[str]]) -> PubSubAsyncIterator:
        """Expose deliveries for `triggers` as an async iterator."""
        return PubSubAsyncIterator(self, triggers)

    # Queue lifecycle

    async def _ensure_queue(self) -> str:
        # Creation and deletion both hold the lock; never hand out a queue mid-delete.
        if self.queue_url is not None and not self._provision_lock.locked():
            return self.queue_url

        async with self._provision_lock:
            if self.queue_url is None:
                await self._create_queue()
            return self.queue_url

    async def _release_queue(self) -> None:
        """Delete the managed queue, waiting for any create still in flight."""
        async with self._provision_lock:
            if self.queue_url is not None:
                await self._delete_queue()

    async def _create_queue(self) -> None:
        name = f"{self.config.queue_name_prefix}-{uuid.uuid4()}.fifo"
        try:
            self.queue_url = await self.transport.create_queue(name, dict(FIFO_QUEUE_ATTRIBUTES))
        except Exception as e:
            raise ProvisionError(f"Could not create queue {name}: {e}", e) from e

        logger.debug(f"Created queue {self.queue_url}")

    async def _delete_queue(self) -> None:
        queue_url = self.queue_url
        try:
            await self.transport.delete_queue(queue_url)
        except Exception as e:
            raise ProvisionError(f"Could not delete queue {queue_url}: {e}", e) from e

        self.queue_url = None
        logger.debug(f"Deleted queue {queue_url}")

    # Poll loop

    async def _stop_loop(self) -> None:
        task, self._task = self._task, None
        if self._stop is not None:
            self._stop.set()

        # A handler that unsubscribes runs inside the loop task; it exits on its own.
        if task is None or task is asyncio.current_task():
            return

        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Poll loop ended with error: {task.exception()}")

    async def _poll_loop(
        self,
        trigger: str,
        on_message: Callable[[Any], Any],
        delay: float,
        stop: asyncio.Event
    ) -> None:
        while not stop.is_set():
            await self._poll_once(trigger, on_message)

            if stop.is_set():
                break
            if delay <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _poll_once(self, trigger: str, on_message: Callable[[Any], Any]) -> bool:
        """Run one receive/filter/ack/dispatch cycle. Returns True if a message was delivered."""
        try:
            queue_url = await self._ensure_queue()
        except ProvisionError as e:
            await self._report(e)
            return False

        try:
            envelope = await self.transport.receive_message(
                queue_url,
                max_messages=1,
                attribute_names=[TRIGGER_ATTRIBUTE],
                visibility_timeout=0,
                wait_time_seconds=self.config.wait_time_seconds,
            )
        except Exception as e:
            await self._report(ReceiveError(f"Receive from {queue_url} failed: {e}", e))
            return False

        if envelope is None or not matches_trigger(envelope, trigger):
            return False

        if self.config.delivery_mode == DeliveryMode.AT_LEAST_ONCE:
            payload = await self._decode(envelope)
            if payload is _UNDECODABLE:
                # would never decode on redelivery either
                await self._ack(queue_url, envelope)
                return False
            delivered = await self._dispatch(trigger, on_message, payload)
            # a handler that unsubscribed may have deleted the queue already
            if delivered and self.queue_url == queue_url:
                await self._ack(queue_url, envelope)
            return True

        if not await self._ack(queue_url, envelope):
            return False
        payload = await self._decode(envelope)
        if payload is _UNDECODABLE:
            return False
        await self._dispatch(trigger, on_message, payload)
        return True

    async def _ack(self, queue_url: str, envelope: Envelope) -> bool:
        try:
            await self.transport.delete_message(queue_url, envelope.receipt_handle)
        except Exception as e:
            await self._report(DeleteError(f"Delete of {envelope.message_id} failed: {e}", e))
            return False
        return True

    async def _decode(self, envelope: Envelope) -> Any:
        try:
            return envelope.payload()
        except ValueError as e:
            await self._report(ReceiveError(f"Message {envelope.message_id} has an invalid body: {e}", e))
            return _UNDECODABLE

    async def _dispatch(self, trigger: str, on_message: Callable[[Any], Any], payload: Any) -> bool:
        try:
            result = on_message(payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            await self._report(HandlerError(f"Handler error for trigger {trigger}: {e}", e))
            return False
        return True

    async def _report(self, error: PubSubError) -> None:
        if self.config.on_error is None:
            logger.error(str(error))
            return

        try:
            result = self.config.on_error(error)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error hook failed on {type(error).__name__}: {e}")

