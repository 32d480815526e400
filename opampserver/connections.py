"""Plain HTTP and WebSocket OpAMP connections, and the WebSocket framing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from .types import Connection

_WS_MESSAGE_HEADER = b"\x00"


class InvalidHTTPConnectionError(Exception):
    """Raised when an operation is not possible over a plain HTTP connection."""

    def __init__(self, message: str = "cannot operate over HTTP connection") -> None:
        super().__init__(message)


def encode_ws_message(data: bytes) -> bytes:
    """Prefix an encoded message with the zero header byte."""
    return _WS_MESSAGE_HEADER + bytes(data)


def decode_ws_message(data: bytes) -> bytes:
    """Return the message payload of a WebSocket frame.

    The zero header byte is optional; an encoded message never starts with
    a zero byte, so its absence means the payload is the whole frame.
    """
    data = bytes(data)
    if data[:1] == _WS_MESSAGE_HEADER:
        return data[1:]
    return data


def _serialize(message: Any) -> bytes:
    if isinstance(message, (bytes, bytearray, memoryview)):
        return bytes(message)
    serializer = getattr(message, "SerializeToString", None)
    if serializer is None:
        raise TypeError(f"cannot serialize message of type {type(message).__name__}")
    return serializer()


@dataclass(frozen=True)
class HTTPConnection(Connection):
    """An OpAMP connection over a single plain HTTP request.

    Only one response is possible, and the server sends it once the
    ``on_message`` callback returns, so ``send`` and ``disconnect`` raise.
    """

    conn: Any = None

    def connection(self) -> Any:
        return self.conn

    async def send(self, message: Any) -> None:
        raise InvalidHTTPConnectionError()

    async def disconnect(self) -> None:
        raise InvalidHTTPConnectionError()


@dataclass(eq=False)
class WSConnection(Connection):
    """A persistent OpAMP connection over a WebSocket.

    Sends are serialized by a lock since the socket allows only one write
    at a time.
    """

    ws: Any
    transport: Any = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def connection(self) -> Any:
        return self.transport

    async def send(self, message: Any) -> None:
        payload = encode_ws_message(_serialize(message))
        async with self._lock:
            await self.ws.send_bytes(payload)

    async def disconnect(self) -> None:
        await self.ws.close()