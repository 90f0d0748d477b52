"""Pytest fixtures for bridge tests."""

import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

from noulith_bridge.config import BridgeConfig
from noulith_bridge.errors import TransportBrokenError

FAKE_SERVER = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_server.py")


def fake_server_args(*flags: str) -> List[str]:
    return ["-u", FAKE_SERVER, *flags]


@pytest.fixture
def server_config(tmp_path):
    """Config that launches the fake language server inside tmp_path."""
    return BridgeConfig(
        command=sys.executable,
        args=fake_server_args(),
        root_path=str(tmp_path),
        watch_patterns=["**/*.noul"],
        request_timeout=5.0,
        shutdown_timeout=2.0,
        start_timeout=5.0,
        terminate_timeout=2.0,
    )


class FakeTransport:
    """In-memory stand-in for StdioTransport.

    ``feed()`` queues inbound messages, ``sent`` collects decoded outbound
    messages. Putting an exception in the inbox makes ``receive()`` raise it.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.fail_send = False

    async def send(self, payload: bytes) -> None:
        if self.fail_send or self.closed:
            raise TransportBrokenError("fake pipe broken")
        self.sent.append(json.loads(payload))

    async def receive(self):
        while True:
            item = await self._inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def feed(self, message: Any) -> None:
        if isinstance(message, (bytes, bytearray)):
            self._inbox.put_nowait(bytes(message))
        elif isinstance(message, Exception):
            self._inbox.put_nowait(message)
        else:
            self._inbox.put_nowait(json.dumps(message).encode("utf-8"))

    def eof(self) -> None:
        self._inbox.put_nowait(None)

    async def close(self, timeout: Optional[float] = None) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def methods(self) -> List[Optional[str]]:
        return [m.get("method") for m in self.sent]


async def wait_for_sent(transport: FakeTransport, method: str, timeout: float = 2.0) -> Dict[str, Any]:
    """Wait until ``transport`` has sent a message with ``method``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for message in transport.sent:
            if message.get("method") == method:
                return message
        await asyncio.sleep(0.005)
    raise AssertionError(f"{method} was never sent; sent={transport.methods()}")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
