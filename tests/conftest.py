"""Pytest configuration."""

import asyncio

import pytest

from sqspubsub import InMemoryTransport


@pytest.fixture
def transport():
    """Fresh in-memory queue store per test."""
    return InMemoryTransport()


@pytest.fixture
def shared_queue(transport):
    """URL of a pre-existing queue for shared-variant engines."""
    return transport.add_queue("shared.fifo", {"FifoQueue": "true"})


@pytest.fixture
def eventually():
    """Wait until a predicate holds, failing after `timeout` seconds."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait
