"""Pomelo session built on top of the WebSocket transport."""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .codec import Message, MessageType, Package, PackageType, PomeloCodec, Route
from .errors import (
    ConnectionClosedError,
    HandshakeError,
    HeartbeatTimeoutError,
    RouteCompressionError,
    SessionTimeoutError,
    TransportError,
)
from .transport import NORMAL_CLOSURE, TransportConfig, WebSocketTransport

logger = logging.getLogger(__name__)

HANDSHAKE_OK = 200
HEARTBEAT_TIMEOUT_MARGIN = 0.5

ErrorHandler = Callable[[BaseException], None]
MessageHandler = Callable[[Route, Any], None]
KickHandler = Callable[[Any], None]
DisconnectHandler = Callable[[int, str], None]


class HeartbeatState(enum.Enum):
    AWAITING_HEARTBEAT = "awaiting_heartbeat"
    ECHO_SCHEDULED = "echo_scheduled"
    TIMEOUT_ARMED = "timeout_armed"


@dataclass
class SessionConfig:
    request_timeout: float = 3.0
    connect_timeout: float = 3.0
    protocol_version: int = 0
    user: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionState:
    ready: bool = False
    heartbeat_interval: Optional[float] = None
    heartbeat_timeout: Optional[float] = None
    route_to_code: Dict[str, int] = field(default_factory=dict)
    code_to_route: Dict[int, str] = field(default_factory=dict)
    protos: Dict[str, Any] = field(default_factory=dict)
    handshake: Dict[str, Any] = field(default_factory=dict)

    @property
    def use_dict(self) -> bool:
        return bool(self.route_to_code)


@dataclass
class PendingRequest:
    route: str
    future: asyncio.Future
    sent_at: float = field(default_factory=time.perf_counter)


class Session:
    """One handshaken connection multiplexing requests, notifies and pushes."""

    def __init__(
        self,
        transport_config: Optional[TransportConfig] = None,
        session_config: Optional[SessionConfig] = None,
        *,
        transport: Optional[WebSocketTransport] = None,
        codec: Optional[PomeloCodec] = None,
        error_handler: Optional[ErrorHandler] = None,
        message_handler: Optional[MessageHandler] = None,
        kick_handler: Optional[KickHandler] = None,
        disconnect_handler: Optional[DisconnectHandler] = None,
    ) -> None:
        self.transport = transport or WebSocketTransport(transport_config or TransportConfig())
        self.session_config = session_config or SessionConfig()
        self.codec = codec or PomeloCodec()
        self.state = SessionState()
        self.error_handler = error_handler
        self.message_handler = message_handler
        self.kick_handler = kick_handler
        self.disconnect_handler = disconnect_handler

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._handshake_waiter: Optional[asyncio.Future] = None
        self._heartbeat_state = HeartbeatState.AWAITING_HEARTBEAT
        self._echo_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._connected = False

        self.transport.set_frame_handler(self._on_frame)
        self.transport.register_on_disconnect(self._on_transport_closed)

    @property
    def uri(self) -> str:
        return self.transport.url

    @property
    def ready(self) -> bool:
        return self.state.ready

    @property
    def heartbeat_state(self) -> HeartbeatState:
        return self._heartbeat_state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> SessionState:
        """Open the transport and complete the handshake."""
        if self._connected:
            return self.state
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._handshake_waiter = waiter
        try:
            await asyncio.wait_for(self._open_and_handshake(waiter), timeout=self.session_config.connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._abort_connect()
            raise SessionTimeoutError(f"connection {self.uri} timeout") from exc
        except BaseException:
            await self._abort_connect()
            raise
        finally:
            self._handshake_waiter = None
        self._connected = True
        try:
            await self.transport.send(self.codec.encode_package(PackageType.HANDSHAKE_ACK))
        except TransportError as exc:
            self._report_error(exc)
        return self.state

    async def _open_and_handshake(self, waiter: asyncio.Future) -> None:
        await self.transport.connect()
        body = {
            "sys": {"protoVersion": self.session_config.protocol_version},
            "user": dict(self.session_config.user),
        }
        await self.transport.send(
            self.codec.encode_package(PackageType.HANDSHAKE, self.codec.encode_body(None, body))
        )
        await waiter

    async def _abort_connect(self) -> None:
        self._stop_heartbeat()
        try:
            await self.transport.close(NORMAL_CLOSURE)
        except TransportError:
            logger.debug("close after failed connect raised", exc_info=True)

    async def disconnect(self, code: Optional[int] = None) -> None:
        """Close the connection; outstanding requests fail with ConnectionClosedError."""
        self._connected = False
        self.state.ready = False
        self._stop_heartbeat()
        self._fail_pending(ConnectionClosedError(f"session {self.uri} disconnected"))
        await self.transport.close(code or NORMAL_CLOSURE)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def request(self, route: str, payload: Any = None) -> Any:
        """Send a request and wait for the correlated response."""
        self._ensure_ready()
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(route, future)
        try:
            await self.transport.send(self._pack(route, payload, request_id))
            return await asyncio.wait_for(future, timeout=self.session_config.request_timeout)
        except asyncio.TimeoutError as exc:
            raise SessionTimeoutError(f"{route} timeout") from exc
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, route: str, payload: Any = None) -> None:
        """Fire-and-forget message."""
        self._ensure_ready()
        await self.transport.send(self._pack(route, payload))

    def compress_route(self, route: str) -> Tuple[bool, Route]:
        if self.state.use_dict and route in self.state.route_to_code:
            return True, self.state.route_to_code[route]
        return False, route

    def decompress_route(self, code: Route) -> str:
        try:
            return self.state.code_to_route[code]  # type: ignore[index]
        except KeyError:
            raise RouteCompressionError(f"route compress not found {code}") from None

    def _pack(self, route: str, payload: Any, request_id: Optional[int] = None) -> bytes:
        compressed, wire_route = self.compress_route(route)
        body = self.codec.encode_body(route, payload if payload is not None else {})
        msg_type = MessageType.REQUEST if request_id else MessageType.NOTIFY
        message = self.codec.encode_message(request_id or 0, msg_type, compressed, wire_route, body)
        return self.codec.encode_package(PackageType.DATA, message)

    def _ensure_ready(self) -> None:
        if not self.state.ready:
            raise TransportError(f"session {self.uri} not connected")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _on_frame(self, frame: bytes) -> None:
        try:
            packages = self.codec.decode_packages(frame)
        except Exception as exc:
            self._report_error(exc)
            return
        for package in packages:
            try:
                self.dispatch(package)
            except Exception as exc:
                self._report_error(exc)

    def dispatch(self, package: Package) -> None:
        if package.type == PackageType.HANDSHAKE:
            self._handle_handshake(package.body)
        elif package.type == PackageType.HEARTBEAT:
            self._handle_heartbeat()
        elif package.type == PackageType.DATA:
            self._handle_data(package.body)
        elif package.type == PackageType.KICK:
            self._handle_kick(package.body)
        else:
            logger.debug("ignoring package type %s", package.type)

    def _handle_handshake(self, body: bytes) -> None:
        waiter = self._handshake_waiter
        if waiter is None or waiter.done():
            logger.debug("ignoring handshake with no connect pending")
            return
        try:
            msg = self.codec.decode_body(None, body) or {}
        except Exception as exc:
            self._resolve_handshake(waiter, exc)
            return
        code = msg.get("code")
        if code != HANDSHAKE_OK:
            self._resolve_handshake(waiter, HandshakeError(f"handshake failed (code {code})", code=code))
            return
        sys_info = msg.get("sys") or {}
        self.state.handshake = dict(sys_info)
        heartbeat = sys_info.get("heartbeat")
        if heartbeat:
            self.state.heartbeat_interval = float(heartbeat)
            self.state.heartbeat_timeout = self.state.heartbeat_interval * 2
        route_dict = sys_info.get("dict")
        if route_dict:
            for route, route_code in route_dict.items():
                self.state.route_to_code[route] = route_code
                self.state.code_to_route[route_code] = route
        protos = sys_info.get("protos")
        if protos:
            self.state.protos = dict(protos)
            exc = HandshakeError("server negotiated protobuf schemas; only JSON bodies are supported", code=code)
            self._resolve_handshake(waiter, exc)
            return
        self.state.ready = True
        self._resolve_handshake(waiter, None)

    @staticmethod
    def _resolve_handshake(waiter: Optional[asyncio.Future], exc: Optional[BaseException]) -> bool:
        if waiter is None or waiter.done():
            return False
        if exc is None:
            waiter.set_result(None)
        else:
            waiter.set_exception(exc)
        return True

    def _handle_heartbeat(self) -> None:
        if self._heartbeat_state is HeartbeatState.TIMEOUT_ARMED:
            self._cancel_task(self._timeout_task)
            self._timeout_task = None
            self._heartbeat_state = HeartbeatState.AWAITING_HEARTBEAT
        if self._heartbeat_state is HeartbeatState.ECHO_SCHEDULED:
            return
        self._heartbeat_state = HeartbeatState.ECHO_SCHEDULED
        self._echo_task = asyncio.get_running_loop().create_task(self._echo_heartbeat())

    async def _echo_heartbeat(self) -> None:
        interval = self.state.heartbeat_interval
        if interval:
            await asyncio.sleep(interval)
        self._echo_task = None
        try:
            await self.transport.send(self.codec.encode_package(PackageType.HEARTBEAT))
        except TransportError as exc:
            self._report_error(exc)
        if self.state.heartbeat_timeout is None:
            self._heartbeat_state = HeartbeatState.AWAITING_HEARTBEAT
            return
        self._heartbeat_state = HeartbeatState.TIMEOUT_ARMED
        self._timeout_task = asyncio.get_running_loop().create_task(
            self._heartbeat_alarm(self.state.heartbeat_timeout + HEARTBEAT_TIMEOUT_MARGIN)
        )

    async def _heartbeat_alarm(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timeout_task = None
        self._heartbeat_state = HeartbeatState.AWAITING_HEARTBEAT
        self._report_error(HeartbeatTimeoutError(f"heartbeat timeout on {self.uri}"))

    def _handle_data(self, body: bytes) -> None:
        message: Message = self.codec.decode_message(body)
        route = message.route
        if message.compress_route:
            route = self.decompress_route(message.route)
        pending = self._pending.get(message.id) if message.id else None
        if pending is not None and route is None:
            route = pending.route
        payload = self.codec.decode_body(route, message.body)
        if pending is not None:
            del self._pending[message.id]
            if not pending.future.done():
                pending.future.set_result(payload)
            return
        if self.message_handler is not None:
            self.message_handler(route, payload)
        else:
            logger.debug("unhandled push %s: %r", route, payload)

    def _handle_kick(self, body: bytes) -> None:
        payload = self.codec.decode_body(None, body)
        if self.kick_handler is not None:
            self.kick_handler(payload)
        else:
            logger.warning("kicked by %s: %r", self.uri, payload)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _on_transport_closed(self, code: int, reason: str) -> None:
        self._connected = False
        self.state.ready = False
        self._stop_heartbeat()
        self._fail_pending(ConnectionClosedError(f"session {self.uri} closed (code {code})"))
        waiter = self._handshake_waiter
        self._resolve_handshake(waiter, TransportError(f"connection {self.uri} closed during handshake (code {code})"))
        if self.disconnect_handler is not None:
            self.disconnect_handler(code, reason)

    def _fail_pending(self, exc: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(exc)

    def _stop_heartbeat(self) -> None:
        self._cancel_task(self._echo_task)
        self._cancel_task(self._timeout_task)
        self._echo_task = None
        self._timeout_task = None
        self._heartbeat_state = HeartbeatState.AWAITING_HEARTBEAT

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _report_error(self, exc: BaseException) -> None:
        if self.error_handler is not None:
            self.error_handler(exc)
        else:
            logger.error("session %s error: %s", self.uri, exc)
