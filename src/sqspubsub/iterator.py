"""Async iterator over the payloads delivered to a subscription."""

from typing import TYPE_CHECKING, Any, List, Optional, Union
import asyncio
import logging

if TYPE_CHECKING:
    from .pubsub import SQSPubSub

logger = logging.getLogger(__name__)

_DONE = object()


class PubSubAsyncIterator:
    """
    Pull-based view of a subscription.

    Subscribes on the first `__anext__` and yields one payload per delivered
    message until `aclose()`, which unsubscribes. Only a single trigger is
    accepted because an engine polls one trigger at a time.
    """

    def __init__(self, pubsub: "SQSPubSub", triggers: Union[str, List[str]]):
        names = [triggers] if isinstance(triggers, str) else list(dict.fromkeys(triggers))
        if len(names) != 1:
            raise ValueError(f"Exactly one trigger is supported, got {names}")

        self.pubsub = pubsub
        self.trigger = names[0]
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscription_id: Optional[int] = None
        self._subscribed = False
        self._listening = True

    def __aiter__(self) -> "PubSubAsyncIterator":
        return self

    async def __anext__(self) -> Any:
        if not self._listening:
            raise StopAsyncIteration

        if not self._subscribed:
            await self._subscribe()
            if not self._listening:
                raise StopAsyncIteration

        value = await self._queue.get()
        if value is _DONE:
            # wake any other pending consumer as well
            self._queue.put_nowait(_DONE)
            raise StopAsyncIteration
        return value

    async def aclose(self) -> None:
        """Unsubscribe and end the iteration. Safe to call more than once."""
        if not self._listening:
            return

        self._listening = False
        if self._subscribed:
            await self.pubsub.unsubscribe(self._subscription_id)
        self._queue.put_nowait(_DONE)

    async def __aenter__(self) -> "PubSubAsyncIterator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _subscribe(self) -> None:
        self._subscribed = True
        try:
            self._subscription_id = await self.pubsub.subscribe(self.trigger, self._push)
        except Exception:
            self._subscribed = False
            raise

        if not self._listening:
            # closed while subscribing; don't leave a loop behind without a listener
            await self.pubsub.unsubscribe(self._subscription_id)
            return
        logger.debug(f"Iterator subscribed to {self.trigger}")

    def _push(self, payload: Any) -> None:
        if self._listening:
            self._queue.put_nowait(payload)
