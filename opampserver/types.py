"""Callback and connection types used by the OpAMP server."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

_log = logging.getLogger(__name__)


class Message(Protocol):
    """A protocol message that can serialize itself to its wire form."""

    def SerializeToString(self) -> bytes:  # noqa: N802 - protobuf naming
        """Return the encoded message."""


class Connection(abc.ABC):
    """One OpAMP connection.

    Implementations must be hashable so that a connection can be used as a
    dictionary key.
    """

    @abc.abstractmethod
    def connection(self) -> Any:
        """Return the underlying network connection."""

    @abc.abstractmethod
    async def send(self, message: Any) -> None:
        """Send a message to the agent.

        Only possible for WebSocket connections; plain HTTP connections raise.
        """

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Close the network connection."""


def _default_on_connected(conn: Connection) -> None:
    _log.debug("OpAMP connection established: %r", conn)


def _default_on_connection_close(conn: Connection) -> None:
    _log.debug("OpAMP connection closed: %r", conn)


def _default_on_read_message_error(
    conn: Connection, message_type: int, data: bytes, error: BaseException
) -> None:
    _log.debug(
        "cannot read message of type %d (%d bytes) from %r: %s",
        message_type,
        len(data),
        conn,
        error,
    )


@dataclass
class ConnectionCallbacks:
    """Callbacks for one accepted connection.

    The callbacks are never called concurrently for the same connection.
    ``on_message`` may return a response; ``None`` means no WebSocket
    message is sent and a plain HTTP request gets an empty response.
    ``response_type`` builds an empty response message and is used by the
    default ``on_message``.
    """

    on_connected: Optional[Callable[[Connection], Any]] = None
    on_message: Optional[Callable[[Connection, Any], Any]] = None
    on_connection_close: Optional[Callable[[Connection], Any]] = None
    on_read_message_error: Optional[
        Callable[[Connection, int, bytes, BaseException], Any]
    ] = None
    response_type: Optional[Callable[[], Any]] = None

    def _default_on_message(self, conn: Connection, message: Any) -> Any:
        # Reply with an empty response carrying the agent's instance uid.
        if self.response_type is None:
            return None
        response = self.response_type()
        response.instance_uid = getattr(message, "instance_uid", b"")
        return response

    def set_defaults(self) -> None:
        """Replace every unset callback with a default."""
        if self.on_connected is None:
            self.on_connected = _default_on_connected
        if self.on_message is None:
            self.on_message = self._default_on_message
        if self.on_connection_close is None:
            self.on_connection_close = _default_on_connection_close
        if self.on_read_message_error is None:
            self.on_read_message_error = _default_on_read_message_error


@dataclass
class ConnectionResponse:
    """Result of ``Callbacks.on_connecting``.

    To accept, set ``accept`` and provide ``connection_callbacks``. To reject,
    leave ``accept`` false and set a non-zero ``http_status_code``;
    ``http_response_header`` is sent along with it.
    """

    accept: bool = False
    http_status_code: int = 0
    http_response_header: Dict[str, str] = field(default_factory=dict)
    connection_callbacks: ConnectionCallbacks = field(default_factory=ConnectionCallbacks)


def _default_on_connecting(request: Any) -> ConnectionResponse:
    return ConnectionResponse(accept=True)


@dataclass
class Callbacks:
    """Server-wide callbacks."""

    on_connecting: Optional[Callable[[Any], ConnectionResponse]] = None

    def set_defaults(self) -> None:
        """Accept every connection unless ``on_connecting`` is set."""
        if self.on_connecting is None:
            self.on_connecting = _default_on_connecting