"""OpAMP server that accepts agents over plain HTTP and WebSocket."""

from __future__ import annotations

import asyncio
import gzip
import inspect
import logging
import socket
import ssl
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from aiohttp import WSMsgType, web

from .connections import HTTPConnection, WSConnection, decode_ws_message
from .types import Callbacks, ConnectionCallbacks

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

DEFAULT_OPAMP_PATH = "/v1/opamp"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_CONTENT_ENCODING = "Content-Encoding"
HEADER_ACCEPT_ENCODING = "Accept-Encoding"
CONTENT_ENCODING_GZIP = "gzip"
CONTENT_TYPE_PROTOBUF = "application/x-protobuf"

_GZIP_MAGIC = b"\x1f\x8b"
_SERVICE_PORTS = {"http": 80, "https": 443}


class AlreadyStartedError(Exception):
    """Raised when ``start`` is called on a server that is already running."""

    def __init__(self, message: str = "already started") -> None:
        super().__init__(message)


@dataclass
class Settings:
    """Settings for attaching an OpAMP server.

    ``request_type`` builds an empty agent-to-server message that can
    ``ParseFromString``; ``response_type`` builds an empty server-to-agent
    message that can ``SerializeToString``.
    """

    callbacks: Callbacks = field(default_factory=Callbacks)
    enable_compression: bool = False
    custom_capabilities: List[str] = field(default_factory=list)
    request_type: Optional[Callable[[], Any]] = None
    response_type: Optional[Callable[[], Any]] = None


@dataclass
class StartSettings(Settings):
    """Settings for starting an OpAMP server with its own HTTP listener."""

    listen_endpoint: str = ""
    listen_path: str = ""
    ssl_context: Optional[ssl.SSLContext] = None
    http_middleware: Optional[Callable[[Handler], Handler]] = None


def compress_gzip(data: bytes) -> bytes:
    """Return ``data`` compressed with gzip."""
    return gzip.compress(bytes(data))


def decompress_gzip(data: bytes) -> bytes:
    """Return the gzip-compressed ``data`` decompressed."""
    return gzip.decompress(bytes(data))


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _set_custom_capabilities(response: Any, capabilities: List[str]) -> None:
    target = response.custom_capabilities
    set_in_parent = getattr(target, "SetInParent", None)
    if set_in_parent is not None:
        set_in_parent()
    del target.capabilities[:]
    target.capabilities.extend(capabilities)


def _parse_endpoint(endpoint: str) -> Tuple[str, int]:
    host, sep, port = endpoint.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {endpoint!r}")
    host = host.strip("[]")
    if port in _SERVICE_PORTS:
        return host, _SERVICE_PORTS[port]
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {endpoint!r}") from None


def _format_addr(sockname: Tuple[Any, ...]) -> str:
    host, port = sockname[0], sockname[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class OpAMPServer:
    """The server side of the OpAMP protocol."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._settings: Settings = Settings()
        self._runner: Optional[web.AppRunner] = None
        self._addr: Optional[str] = None
        self._ws_connections: Set[web.WebSocketResponse] = set()

    def attach(self, settings: Settings) -> Handler:
        """Prepare to handle requests and return the aiohttp request handler.

        The handler may be routed in any aiohttp application.
        """
        if settings.request_type is None or settings.response_type is None:
            raise ValueError("request_type and response_type must be set")
        callbacks = replace(settings.callbacks)
        callbacks.set_defaults()
        self._settings = replace(
            settings,
            callbacks=callbacks,
            custom_capabilities=list(settings.custom_capabilities),
        )
        return self._handle

    async def start(self, settings: StartSettings) -> None:
        """Start listening; returns once connections can be accepted."""
        if self._runner is not None:
            raise AlreadyStartedError()

        handler = self.attach(settings)
        path = settings.listen_path or DEFAULT_OPAMP_PATH
        if settings.http_middleware is not None:
            handler = settings.http_middleware(handler)

        app = web.Application()
        app.router.add_route("*", path, handler)

        default_endpoint = ":https" if settings.ssl_context is not None else ":http"
        host, port = _parse_endpoint(settings.listen_endpoint or default_endpoint)
        sock = socket.create_server((host, port))

        runner = web.AppRunner(app, access_log=None)
        try:
            await runner.setup()
            site = web.SockSite(runner, sock, ssl_context=settings.ssl_context)
            await site.start()
        except BaseException:
            await runner.cleanup()
            sock.close()
            raise

        self._runner = runner
        self._addr = _format_addr(sock.getsockname())

    async def stop(self) -> None:
        """Stop accepting connections and close all current ones."""
        runner = self._runner
        if runner is None:
            return
        self._runner = None
        await asyncio.gather(
            *(ws.close() for ws in list(self._ws_connections)),
            return_exceptions=True,
        )
        await runner.cleanup()

    def addr(self) -> Optional[str]:
        """Return the ``host:port`` the server listens on, or None if not started."""
        return self._addr

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        verdict = await _call(self._settings.callbacks.on_connecting, request)
        if not verdict.accept:
            return web.Response(
                status=verdict.http_status_code,
                headers=dict(verdict.http_response_header or {}),
            )

        callbacks = replace(verdict.connection_callbacks or ConnectionCallbacks())
        if callbacks.response_type is None:
            callbacks.response_type = self._settings.response_type
        callbacks.set_defaults()

        if request.headers.get(HEADER_CONTENT_TYPE) == CONTENT_TYPE_PROTOBUF:
            return await self._handle_plain_http(request, callbacks)
        return await self._handle_ws(request, callbacks)

    async def _handle_ws(
        self, request: web.Request, callbacks: ConnectionCallbacks
    ) -> web.StreamResponse:
        ws = web.WebSocketResponse(compress=self._settings.enable_compression)
        if not ws.can_prepare(request).ok:
            self._logger.error(
                "Cannot upgrade HTTP connection to WebSocket: not a WebSocket handshake"
            )
            return web.Response(status=400, text="Bad Request")

        transport = request.transport
        await ws.prepare(request)
        agent_conn = WSConnection(ws=ws, transport=transport)
        self._ws_connections.add(ws)
        try:
            await _call(callbacks.on_connected, agent_conn)
            await self._serve_ws(agent_conn, ws, callbacks)
        finally:
            try:
                await _call(callbacks.on_connection_close, agent_conn)
            finally:
                self._ws_connections.discard(ws)
                try:
                    await ws.close()
                except Exception as exc:  # noqa: BLE001
                    self._logger.error("error closing the WebSocket connection: %s", exc)
        return ws

    async def _serve_ws(
        self,
        agent_conn: WSConnection,
        ws: web.WebSocketResponse,
        callbacks: ConnectionCallbacks,
    ) -> None:
        sent_custom_capabilities = False
        while True:
            msg = await ws.receive()

            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                error: BaseException = ConnectionResetError(
                    f"websocket closed: {msg.data} {msg.extra or ''}".rstrip()
                )
                self._logger.debug("Agent disconnected: %s", error)
                await _call(
                    callbacks.on_read_message_error, agent_conn, int(msg.type), b"", error
                )
                break
            if msg.type == WSMsgType.ERROR:
                error = (
                    msg.data
                    if isinstance(msg.data, BaseException)
                    else ConnectionError(str(msg.data))
                )
                self._logger.error("Cannot read a message from WebSocket: %s", error)
                await _call(
                    callbacks.on_read_message_error, agent_conn, int(msg.type), b"", error
                )
                break

            data = msg.data.encode("utf-8") if isinstance(msg.data, str) else bytes(msg.data)
            if msg.type != WSMsgType.BINARY:
                error = ValueError(
                    f"unexpected message type: {int(msg.type)}, must be binary message"
                )
                self._logger.error("Cannot process a message from WebSocket: %s", error)
                await _call(
                    callbacks.on_read_message_error, agent_conn, int(msg.type), data, error
                )
                continue

            request_msg = self._settings.request_type()
            try:
                request_msg.ParseFromString(decode_ws_message(data))
            except Exception as exc:  # noqa: BLE001
                self._logger.error("Cannot decode message from WebSocket: %s", exc)
                await _call(
                    callbacks.on_read_message_error, agent_conn, int(msg.type), data, exc
                )
                continue

            response = await _call(callbacks.on_message, agent_conn, request_msg)
            if response is None:
                continue

            if not response.instance_uid:
                response.instance_uid = request_msg.instance_uid
            if not sent_custom_capabilities:
                _set_custom_capabilities(response, self._settings.custom_capabilities)
                sent_custom_capabilities = True
            try:
                await agent_conn.send(response)
            except Exception as exc:  # noqa: BLE001
                self._logger.error("Cannot send message to WebSocket: %s", exc)

    async def _read_body(self, request: web.Request) -> bytes:
        data = await request.read()
        # The HTTP layer may already have decoded a gzip body.
        if (
            request.headers.get(HEADER_CONTENT_ENCODING) == CONTENT_ENCODING_GZIP
            and data[:2] == _GZIP_MAGIC
        ):
            data = decompress_gzip(data)
        return data

    async def _handle_plain_http(
        self, request: web.Request, callbacks: ConnectionCallbacks
    ) -> web.StreamResponse:
        try:
            body = await self._read_body(request)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Cannot read HTTP body: %s", exc)
            return web.Response(status=400)

        request_msg = self._settings.request_type()
        try:
            request_msg.ParseFromString(body)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Cannot decode message from HTTP Body: %s", exc)
            return web.Response(status=400)

        agent_conn = HTTPConnection(conn=request.transport)
        await _call(callbacks.on_connected, agent_conn)
        try:
            response = await _call(callbacks.on_message, agent_conn, request_msg)
            if response is None:
                response = self._settings.response_type()
            if not response.instance_uid:
                response.instance_uid = request_msg.instance_uid
            _set_custom_capabilities(response, self._settings.custom_capabilities)

            try:
                payload = response.SerializeToString()
            except Exception:  # noqa: BLE001
                return web.Response(status=500)

            headers = {HEADER_CONTENT_TYPE: CONTENT_TYPE_PROTOBUF}
            if request.headers.get(HEADER_ACCEPT_ENCODING) == CONTENT_ENCODING_GZIP:
                try:
                    payload = compress_gzip(payload)
                except Exception as exc:  # noqa: BLE001
                    self._logger.error("Cannot compress response: %s", exc)
                    return web.Response(status=500)
                headers[HEADER_CONTENT_ENCODING] = CONTENT_ENCODING_GZIP

            out = web.Response(body=payload, headers=headers)
            try:
                await out.prepare(request)
                await out.write_eof()
            except (ConnectionError, OSError) as exc:
                self._logger.debug("Cannot send HTTP response: %s", exc)
            return out
        finally:
            await _call(callbacks.on_connection_close, agent_conn)