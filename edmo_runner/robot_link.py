"""Outbound WebSocket link to the physical robot server."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import aiohttp

from .errors import RobotLinkError
from . import constants

logger = logging.getLogger(__name__)


class RobotLink:
    """Persistent WebSocket with manual connect/disconnect and bounded reconnect.

    An unexpected close schedules up to ``max_reconnect_attempts`` attempts,
    ``reconnect_delay`` seconds apart; the counter resets on every successful
    connection. A manual ``disconnect`` never reconnects.
    """

    def __init__(
        self,
        url: str = constants.DEFAULT_ROBOT_URL,
        *,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
        max_reconnect_attempts: int = constants.MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = constants.RECONNECT_DELAY,
    ):
        self.url = url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_attempts = 0
        self._session_factory = session_factory
        self._session = None
        self._ws = None
        self._connecting = False
        self._manual_close = False
        self._reader: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self):
        if self.is_connected():
            return
        if self._connecting:
            raise RobotLinkError("Connection already in progress")
        self._connecting = True
        self._manual_close = False
        try:
            if self._session is None or self._session.closed:
                self._session = self._session_factory()
            self._ws = await self._session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError) as exc:
            raise RobotLinkError(f"Could not connect to {self.url}: {exc}") from exc
        finally:
            self._connecting = False
        self.reconnect_attempts = 0
        logger.info("Connected to robot server at %s", self.url)
        self._reader = asyncio.get_running_loop().create_task(self._read(self._ws))

    async def _read(self, ws):
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                logger.info("Message from robot server: %s", msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("Robot link error: %s", ws.exception())
                break
        logger.info("Robot link disconnected")
        # A manual disconnect has already detached this socket
        if self._ws is not ws:
            return
        self._ws = None
        if not self._manual_close:
            self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.warning("Max reconnection attempts reached")
            return
        self.reconnect_attempts += 1
        logger.info(
            "Attempting to reconnect... (%d/%d)",
            self.reconnect_attempts,
            self.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_later()
        )

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        if self._manual_close:
            return
        try:
            await self.connect()
        except RobotLinkError as exc:
            logger.error("Reconnection failed: %s", exc)
            self._schedule_reconnect()

    async def send_command(self, kind: str, payload: dict[str, Any]) -> bool:
        command = {"type": kind, **payload}
        if not self.is_connected():
            logger.warning("Robot link is not connected. Command not sent: %s", command)
            return False
        try:
            await self._ws.send_json(command)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            logger.error("Failed to send command %s: %s", command, exc)
            return False
        logger.debug("Command sent to robot: %s", command)
        return True

    async def disconnect(self):
        self._manual_close = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def set_url(self, url: str):
        self.url = url
        if self.is_connected():
            logger.info("Reconnecting to new URL %s", url)
            await self.disconnect()
            await self.connect()
