# opampserver

An asyncio server, built on aiohttp, for the OpAMP agent management protocol.
Agents connect in one of two ways:

- over a WebSocket, which stays open and lets the server push messages at any
  time;
- with plain HTTP POST requests, each carrying one `AgentToServer` message and
  getting one `ServerToAgent` message back.

## Installation

```
pip install opampserver
```

To run the tests as well:

```
pip install "opampserver[test]"
pytest
```

## What you supply

The package does not ship the OpAMP protobuf message classes. You pass them in
through `Settings`:

- `request_type` builds an empty agent-to-server message. It must provide
  `ParseFromString` and an `instance_uid` field.
- `response_type` builds an empty server-to-agent message. It must provide
  `SerializeToString`, an `instance_uid` field and a `custom_capabilities`
  message with a repeated `capabilities` field.

Classes generated by `protoc` from the OpAMP `.proto` files meet these
requirements. `OpAMPServer.attach` and `OpAMPServer.start` raise `ValueError`
if either setting is missing.

## Starting a server

```python
import asyncio

from opampserver.server import OpAMPServer, StartSettings
from opampserver.types import Callbacks, ConnectionCallbacks, ConnectionResponse

# Your generated protobuf module.
from opamp_pb2 import AgentToServer, ServerToAgent


def on_message(conn, message):
    # Return a ServerToAgent message, or None to send nothing over WebSocket.
    return ServerToAgent(instance_uid=message.instance_uid)


def on_connecting(request):
    return ConnectionResponse(
        accept=True,
        connection_callbacks=ConnectionCallbacks(on_message=on_message),
    )


async def main():
    server = OpAMPServer()
    await server.start(
        StartSettings(
            callbacks=Callbacks(on_connecting=on_connecting),
            custom_capabilities=["com.example.echo"],
            request_type=AgentToServer,
            response_type=ServerToAgent,
            listen_endpoint="127.0.0.1:4320",
        )
    )
    print("listening on", server.addr())
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


asyncio.run(main())
```

`StartSettings` extends `Settings` with the following fields:

- `listen_endpoint` is a `host:port` address. The port may be `0`, in which
  case the operating system picks a free one. It may also be the service name
  `http` or `https`. If the endpoint is empty, the server listens on `:http`,
  or on `:https` when `ssl_context` is set.
- `listen_path` is the URL path that accepts OpAMP requests. It defaults to
  `/v1/opamp`.
- `ssl_context` is an `ssl.SSLContext` for serving over TLS.
- `http_middleware` takes the request handler and returns a wrapped handler.
  The wrapped handler runs once per HTTP request, and once when a WebSocket
  connects.

`start()` returns once the server is accepting connections. `addr()` returns
the `host:port` string actually in use, or `None` before the server has
started. If you call `start()` on a running server, it raises
`AlreadyStartedError`. `stop()` closes all open WebSocket connections and
shuts the listener down. On a server that was never started, `stop()` does
nothing.

`Settings.enable_compression` turns on per-message compression for WebSockets.

## Callbacks

Callbacks may be plain functions or coroutine functions.

`Callbacks.on_connecting(request)` receives the aiohttp request. If you leave
it unset, every connection is accepted. To reject a connection, return
`ConnectionResponse(accept=False, http_status_code=503,
http_response_header={"Retry-After": "30"})`.

To accept a connection, return `accept=True` with a `ConnectionCallbacks`
instance. Any callback you leave unset gets a default:

- `on_connected(conn)`
- `on_message(conn, message)`: the default replies with an empty
  `response_type()` message carrying the agent's instance UID.
- `on_connection_close(conn)`
- `on_read_message_error(conn, message_type, data, error)`: called for
  non-binary WebSocket frames and for frames that cannot be decoded. After
  these the connection stays open. It is also called once when the socket
  closes or fails.

Before a response is sent, two fields are filled in:

- If the response has no `instance_uid`, the server copies it from the
  request.
- The server's `custom_capabilities` are set on every plain HTTP response, and
  on the first response of each WebSocket connection.

## Connections

The `conn` passed to callbacks is a `opampserver.types.Connection`:

- `WSConnection.send(message)` is a coroutine that pushes a message to the
  agent. Writes go through a lock, so concurrent tasks can share a connection.
  `disconnect()` closes the socket.
- `HTTPConnection` stands for a single request and its response. `send()` and
  `disconnect()` raise `InvalidHTTPConnectionError`. The response sent is
  whatever `on_message` returns, or an empty message if it returns `None`.

For either kind, `connection()` returns the underlying asyncio transport, for
example to call `get_extra_info("peername")`.

## Plain HTTP details

A request is handled as plain HTTP when its `Content-Type` is
`application/x-protobuf`. Any other request is upgraded to a WebSocket.

- If the request sets `Content-Encoding: gzip`, a gzip body is decompressed
  before decoding.
- If the request sets `Accept-Encoding: gzip`, the response is gzip-compressed.
- A body that cannot be read or decoded gets status 400.

`opampserver.server` also exposes the helpers `compress_gzip` and
`decompress_gzip`.

WebSocket frames carry a zero header byte followed by the protobuf payload.
`encode_ws_message` and `decode_ws_message` in `opampserver.connections`
implement this framing. Decoding also accepts frames that have no header byte.

## Embedding in an existing aiohttp application

`OpAMPServer.attach(settings)` takes a `Settings` and returns an aiohttp
request handler. Register the handler on your own router, for example
`app.router.add_route("*", "/opamp", handler)`, and run the application
yourself.

## What this package does not do

- It has no OpAMP client (agent side).
- It has no command-line program.
- It does not store agent state. Any bookkeeping about agents lives in your
  callbacks.