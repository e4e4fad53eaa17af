"""Tests for RobotLink: the reconnecting WebSocket to the robot server."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import aiohttp
import pytest

from edmo_runner.errors import RobotLinkError
from edmo_runner.robot_link import RobotLink


class FakeWebSocket:
    """Stands in for aiohttp's ClientWebSocketResponse."""

    def __init__(self, messages=(), fail_sends: bool = False):
        self.sent: list[dict] = []
        self.closed = False
        self.fail_sends = fail_sends
        self._queue: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self._queue.put_nowait(message)

    async def send_json(self, data):
        if self.fail_sends:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._queue.put_nowait(None)

    def drop(self):
        """Simulate the server going away."""
        self.closed = True
        self._queue.put_nowait(None)

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._queue.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeSession:
    """Hands out scripted sockets; refuses once the script runs out."""

    def __init__(self, plan):
        self.plan = list(plan)
        self.urls: list[str] = []
        self.closed = False

    async def ws_connect(self, url):
        self.urls.append(url)
        outcome = self.plan.pop(0) if self.plan else aiohttp.ClientConnectionError("refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def _link(session: FakeSession, **kwargs) -> RobotLink:
    return RobotLink(
        "ws://robot:8080",
        session_factory=lambda: session,
        reconnect_delay=0,
        **kwargs,
    )


async def _yield(times: int = 50):
    for _ in range(times):
        await asyncio.sleep(0)


class TestConnect:
    def test_connect_and_send(self):
        async def scenario():
            ws = FakeWebSocket()
            link = _link(FakeSession([ws]))
            await link.connect()

            assert link.is_connected()
            assert await link.send_command("setArmAngle", {"index": 1, "degrees": 30})
            assert ws.sent == [{"type": "setArmAngle", "index": 1, "degrees": 30}]
            await link.disconnect()

        asyncio.run(scenario())

    def test_send_while_disconnected_returns_false(self):
        async def scenario():
            link = _link(FakeSession([]))
            assert not await link.send_command("setArmAngle", {"index": 0, "degrees": 0})

        asyncio.run(scenario())

    def test_connect_failure_raises(self):
        async def scenario():
            link = _link(FakeSession([]))
            with pytest.raises(RobotLinkError, match="ws://robot:8080"):
                await link.connect()
            assert not link.is_connected()

        asyncio.run(scenario())

    def test_send_failure_returns_false(self):
        async def scenario():
            ws = FakeWebSocket(fail_sends=True)
            link = _link(FakeSession([ws]))
            await link.connect()

            assert not await link.send_command("setArmAngle", {"index": 0, "degrees": 0})
            await link.disconnect()

        asyncio.run(scenario())

    def test_incoming_messages_are_consumed(self):
        async def scenario():
            message = SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="ok")
            ws = FakeWebSocket([message])
            link = _link(FakeSession([ws]))
            await link.connect()
            await _yield(5)

            assert ws._queue.empty()
            await link.disconnect()

        asyncio.run(scenario())


class TestReconnect:
    def test_manual_disconnect_does_not_reconnect(self):
        async def scenario():
            session = FakeSession([FakeWebSocket(), FakeWebSocket()])
            link = _link(session)
            await link.connect()
            await link.disconnect()
            await _yield()

            assert not link.is_connected()
            assert len(session.urls) == 1
            assert session.closed

        asyncio.run(scenario())

    def test_unexpected_close_reconnects(self):
        async def scenario():
            first, second = FakeWebSocket(), FakeWebSocket()
            session = FakeSession([first, second])
            link = _link(session)
            await link.connect()

            first.drop()
            await _yield()

            assert link.is_connected()
            assert len(session.urls) == 2
            assert link.reconnect_attempts == 0
            await link.disconnect()

        asyncio.run(scenario())

    def test_reconnect_gives_up_after_max_attempts(self):
        async def scenario():
            ws = FakeWebSocket()
            session = FakeSession([ws])
            link = _link(session, max_reconnect_attempts=5)
            await link.connect()

            ws.drop()
            await _yield(200)

            assert not link.is_connected()
            assert len(session.urls) == 1 + 5
            assert link.reconnect_attempts == 5

        asyncio.run(scenario())

    def test_set_url_reconnects_to_new_address(self):
        async def scenario():
            session = FakeSession([FakeWebSocket(), FakeWebSocket()])
            link = _link(session)
            await link.connect()
            await link.set_url("ws://other:9000")
            await _yield()

            assert session.urls == ["ws://robot:8080", "ws://other:9000"]
            assert link.is_connected()
            await link.disconnect()

        asyncio.run(scenario())

    def test_set_url_while_disconnected_only_stores(self):
        async def scenario():
            session = FakeSession([])
            link = _link(session)
            await link.set_url("ws://other:9000")

            assert link.url == "ws://other:9000"
            assert session.urls == []

        asyncio.run(scenario())
