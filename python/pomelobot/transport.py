"""
Transport layer for pomelobot.

Responsibilities:
    * Own one WebSocket connection to the game server.
    * Push every inbound binary frame to the session's frame handler.
    * Surface connection state changes (and the close code) to callers.

Framing of the frames themselves lives in ``codec.py``.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import TransportError

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

FrameHandler = Callable[[bytes], Awaitable[None]]
DisconnectHandler = Callable[[int, str], None]


@dataclass
class TransportConfig:
    uri: Optional[str] = None
    host: str = "localhost"
    port: int = 3010
    ssl: bool = False
    connect_timeout: float = 3.0
    verify_tls: bool = False
    max_size: Optional[int] = None

    @property
    def url(self) -> str:
        if self.uri:
            return self.uri
        scheme = "wss" if self.ssl else "ws"
        return f"{scheme}://{self.host}:{self.port}"


def _client_ssl_context(config: TransportConfig) -> Optional[ssl.SSLContext]:
    if not config.url.startswith("wss://"):
        return None
    context = ssl.create_default_context()
    if not config.verify_tls:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


@dataclass
class WebSocketTransport:
    """Asynchronous transport wrapper (binary WebSocket frames)."""

    config: TransportConfig = field(default_factory=TransportConfig)

    _ws: Any = field(init=False, default=None)
    _state: str = field(init=False, default="disconnected")
    _reader_task: Optional[asyncio.Task] = field(init=False, default=None)
    _frame_handler: Optional[FrameHandler] = field(init=False, default=None)
    _on_disconnect: list[DisconnectHandler] = field(init=False, default_factory=list)

    #
    # Connection lifecycle helpers
    #
    @property
    def state(self) -> str:
        return self._state

    @property
    def url(self) -> str:
        return self.config.url

    def set_frame_handler(self, handler: Optional[FrameHandler]) -> None:
        self._frame_handler = handler

    def register_on_disconnect(self, callback: DisconnectHandler) -> None:
        self._on_disconnect.append(callback)

    async def connect(self) -> None:
        """Open the WebSocket and start the reader task."""
        if self._ws is not None:
            return
        self._state = "connecting"
        try:
            ws = await websockets.connect(
                self.url,
                ssl=_client_ssl_context(self.config),
                open_timeout=self.config.connect_timeout,
                max_size=self.config.max_size,
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._state = "disconnected"
            raise TransportError(f"connect {self.url} failed: {exc}") from exc
        self._ws = ws
        self._state = "connected"
        self._reader_task = asyncio.create_task(self._reader_loop(ws), name=f"pomelobot-reader:{self.url}")

    async def send(self, data: bytes) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("transport not connected")
        try:
            await ws.send(data)
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close(code=code, reason=reason)
        except (ConnectionClosed, OSError) as exc:
            logger.debug("close %s failed: %s", self.url, exc)
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    #
    # Internal helpers
    #
    async def _reader_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                if isinstance(frame, str):
                    frame = frame.encode("utf-8")
                handler = self._frame_handler
                if handler is None:
                    continue
                await handler(frame)
        except ConnectionClosed:
            pass
        finally:
            self._handle_disconnect(ws)

    def _handle_disconnect(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._reader_task = None
        self._state = "disconnected"
        code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        reason = ws.close_reason or ""
        for callback in list(self._on_disconnect):
            try:
                callback(code, reason)
            except Exception:
                logger.exception("disconnect callback failed")
