"""Pomelo wire codec.

Two layers travel over every WebSocket binary frame:

* packages: ``type (1 byte) | body length (3 bytes, big endian) | body``.
  A single frame may hold several packages back to back.
* messages: the body of a ``DATA`` package. The first byte carries the message
  type and the route-compression flag, followed by an optional varint request
  id, an optional route (short code or length-prefixed name) and the payload.

Payloads are compact UTF-8 JSON.  ``PomeloCodec`` bundles the three layers so a
session can be handed an alternate codec without touching the framing calls.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from .errors import CodecError

PKG_HEAD_BYTES = 4
PKG_MAX_BODY = 0xFFFFFF
MSG_FLAG_BYTES = 1
MSG_ROUTE_CODE_BYTES = 2
MSG_ROUTE_LEN_BYTES = 1
MSG_ROUTE_CODE_MAX = 0xFFFF
MSG_ROUTE_NAME_MAX = 0xFF
MSG_COMPRESS_ROUTE_MASK = 0x1
MSG_TYPE_MASK = 0x7


class PackageType(enum.IntEnum):
    HANDSHAKE = 1
    HANDSHAKE_ACK = 2
    HEARTBEAT = 3
    DATA = 4
    KICK = 5


class MessageType(enum.IntEnum):
    REQUEST = 0
    NOTIFY = 1
    RESPONSE = 2
    PUSH = 3


Route = Union[str, int, None]


@dataclass(frozen=True)
class Package:
    type: PackageType
    body: bytes = b""


@dataclass(frozen=True)
class Message:
    id: int
    type: MessageType
    compress_route: bool
    route: Route
    body: bytes = b""


def _has_id(msg_type: MessageType) -> bool:
    return msg_type in (MessageType.REQUEST, MessageType.RESPONSE)


def _has_route(msg_type: MessageType) -> bool:
    return msg_type in (MessageType.REQUEST, MessageType.NOTIFY, MessageType.PUSH)


def encode_package(pkg_type: PackageType, body: Optional[bytes] = None) -> bytes:
    body = body or b""
    length = len(body)
    if length > PKG_MAX_BODY:
        raise CodecError(f"package body too large ({length} bytes)")
    head = bytes(
        (
            int(pkg_type) & 0xFF,
            (length >> 16) & 0xFF,
            (length >> 8) & 0xFF,
            length & 0xFF,
        )
    )
    return head + body


def decode_packages(buffer: bytes) -> List[Package]:
    """Split one transport frame into its packages."""
    packages: List[Package] = []
    offset = 0
    total = len(buffer)
    while offset < total:
        if total - offset < PKG_HEAD_BYTES:
            raise CodecError("truncated package header")
        raw_type = buffer[offset]
        length = (buffer[offset + 1] << 16) | (buffer[offset + 2] << 8) | buffer[offset + 3]
        offset += PKG_HEAD_BYTES
        if offset + length > total:
            raise CodecError(f"truncated package body (want {length}, have {total - offset})")
        try:
            pkg_type = PackageType(raw_type)
        except ValueError as exc:
            raise CodecError(f"unknown package type {raw_type}") from exc
        packages.append(Package(pkg_type, bytes(buffer[offset : offset + length])))
        offset += length
    return packages


def _encode_varint(value: int) -> bytes:
    if value < 0:
        raise CodecError(f"message id must be non-negative (got {value})")
    out = bytearray()
    while True:
        chunk = value & 0x7F
        value >>= 7
        if value:
            out.append(chunk | 0x80)
        else:
            out.append(chunk)
            return bytes(out)


def encode_message(
    msg_id: int,
    msg_type: MessageType,
    compress_route: bool,
    route: Route,
    body: Optional[bytes] = None,
) -> bytes:
    out = bytearray()
    out.append(((int(msg_type) & MSG_TYPE_MASK) << 1) | (MSG_COMPRESS_ROUTE_MASK if compress_route else 0))
    if _has_id(msg_type):
        out += _encode_varint(msg_id)
    if _has_route(msg_type):
        if compress_route:
            if not isinstance(route, int) or isinstance(route, bool):
                raise CodecError(f"compressed route must be an integer code (got {route!r})")
            if not 0 <= route <= MSG_ROUTE_CODE_MAX:
                raise CodecError(f"route code out of range: {route}")
            out += bytes(((route >> 8) & 0xFF, route & 0xFF))
        else:
            if route is not None and not isinstance(route, str):
                raise CodecError(f"route must be a string (got {route!r})")
            name = (route or "").encode("utf-8")
            if len(name) > MSG_ROUTE_NAME_MAX:
                raise CodecError(f"route name too long ({len(name)} bytes)")
            out.append(len(name))
            out += name
    if body:
        out += body
    return bytes(out)


def decode_message(buffer: bytes) -> Message:
    total = len(buffer)
    if total < MSG_FLAG_BYTES:
        raise CodecError("empty message")
    flag = buffer[0]
    offset = MSG_FLAG_BYTES
    compress_route = bool(flag & MSG_COMPRESS_ROUTE_MASK)
    raw_type = (flag >> 1) & MSG_TYPE_MASK
    try:
        msg_type = MessageType(raw_type)
    except ValueError as exc:
        raise CodecError(f"unknown message type {raw_type}") from exc

    msg_id = 0
    if _has_id(msg_type):
        shift = 0
        while True:
            if offset >= total:
                raise CodecError("truncated message id")
            byte = buffer[offset]
            offset += 1
            msg_id |= (byte & 0x7F) << shift
            shift += 7
            if byte < 0x80:
                break

    route: Route = None
    if _has_route(msg_type):
        if compress_route:
            if offset + MSG_ROUTE_CODE_BYTES > total:
                raise CodecError("truncated route code")
            route = (buffer[offset] << 8) | buffer[offset + 1]
            offset += MSG_ROUTE_CODE_BYTES
        else:
            if offset + MSG_ROUTE_LEN_BYTES > total:
                raise CodecError("truncated route length")
            length = buffer[offset]
            offset += MSG_ROUTE_LEN_BYTES
            if offset + length > total:
                raise CodecError("truncated route name")
            route = bytes(buffer[offset : offset + length]).decode("utf-8") if length else ""
            offset += length

    return Message(msg_id, msg_type, compress_route, route, bytes(buffer[offset:]))


def encode_body(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_body(body: Optional[bytes]) -> Any:
    if not body:
        return None
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CodecError(f"invalid JSON body: {exc}") from exc


class PomeloCodec:
    """Default codec consumed by :class:`pomelobot.session.Session`."""

    def encode_package(self, pkg_type: PackageType, body: Optional[bytes] = None) -> bytes:
        return encode_package(pkg_type, body)

    def decode_packages(self, buffer: bytes) -> List[Package]:
        return decode_packages(buffer)

    def encode_message(
        self,
        msg_id: int,
        msg_type: MessageType,
        compress_route: bool,
        route: Route,
        body: Optional[bytes] = None,
    ) -> bytes:
        return encode_message(msg_id, msg_type, compress_route, route, body)

    def decode_message(self, buffer: bytes) -> Message:
        return decode_message(buffer)

    def encode_body(self, route: Route, payload: Any) -> bytes:
        return encode_body(payload)

    def decode_body(self, route: Route, body: Optional[bytes]) -> Any:
        return decode_body(body)


__all__ = [
    "PackageType",
    "MessageType",
    "Package",
    "Message",
    "PomeloCodec",
    "encode_package",
    "decode_packages",
    "encode_message",
    "decode_message",
    "encode_body",
    "decode_body",
]
