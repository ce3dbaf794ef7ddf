from __future__ import annotations

import logging
import socket
from functools import partial
from typing import Any, Callable, Iterable

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mcp.server.sse import SseServerTransport
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from brokertools import __version__
from brokertools.broker.sessions import SessionPair
from brokertools.errors import ConfigError, ListenerError
from brokertools.tools.binding import DEFAULT_SERVER_NAME, ToolRegistryBinding, make_binding

logger = logging.getLogger(__name__)

SSE_PATH = "/sse"
DEFAULT_BIND = "127.0.0.1:8000"
LISTEN_BACKLOG = 2048

BindingFactory = Callable[[], ToolRegistryBinding]


def parse_bind_address(bind: str) -> tuple[str, int]:
    """Split `host:port` (IPv6 hosts in brackets) into its parts."""
    host, sep, port_str = str(bind).strip().rpartition(":")
    host = host.strip("[]")
    if not sep or not host or not port_str.isdigit():
        raise ConfigError(f"Invalid bind address {bind!r}; expected host:port")
    port = int(port_str)
    if port > 65535:
        raise ConfigError(f"Invalid port in bind address {bind!r}")
    return host, port


def bind_listener(bind: str) -> socket.socket:
    """Bind and listen on `bind`; failure to bind raises ListenerError."""
    host, port = parse_bind_address(bind)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(LISTEN_BACKLOG)
    except OSError as e:
        sock.close()
        raise ListenerError(f"Cannot listen on {bind}: {e.strerror or e}") from e
    logger.info("Listening on %s:%s", host, sock.getsockname()[1])
    return sock


class SseEndpoint:
    """
    ASGI endpoint for the single SSE path.

    GET opens a stream and runs a new MCP server over a new binding for that
    connection only. POST delivers client messages to the stream named by the
    `session_id` query parameter.
    """

    def __init__(self, binding_factory: BindingFactory, *, path: str = SSE_PATH, transport: Any = None) -> None:
        self._binding_factory = binding_factory
        self.transport = transport if transport is not None else SseServerTransport(path)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = scope.get("method")
        if method == "POST":
            await self.transport.handle_post_message(scope, receive, send)
        elif method == "GET":
            await self._serve_connection(scope, receive, send)
        else:
            # Starlette adds HEAD to GET routes; only GET may open a stream.
            response = PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "GET, POST"})
            await response(scope, receive, send)

    async def _serve_connection(self, scope: Scope, receive: Receive, send: Send) -> None:
        client = scope.get("client")
        binding: ToolRegistryBinding | None = None
        try:
            async with self.transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
                binding = self._binding_factory()
                logger.info("SSE client connected: %s", client)
                server = binding.build_server()
                await server.run(read_stream, write_stream, server.create_initialization_options())
        except Exception as e:
            logger.warning("SSE connection %s failed: %s: %s", client, type(e).__name__, e)
        finally:
            if binding is not None:
                binding.close()
            logger.info("SSE client disconnected: %s", client)


def create_app(
    binding_factory: BindingFactory,
    *,
    path: str = SSE_PATH,
    cors_origins: Iterable[str] = ("*",),
    transport: Any = None,
) -> FastAPI:
    app = FastAPI(
        title="brokertools",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.router.routes.append(
        Route(path, endpoint=SseEndpoint(binding_factory, path=path, transport=transport), methods=["GET", "POST"])
    )
    # Browser-hosted MCP clients connect cross-origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    return app


async def serve_sse(
    sessions: SessionPair,
    sock: socket.socket,
    *,
    name: str = DEFAULT_SERVER_NAME,
    cors_origins: Iterable[str] = ("*",),
    verbose: bool = False,
) -> None:
    """Serve SSE clients on an already bound socket; every connection shares `sessions`."""
    app = create_app(partial(make_binding, sessions, name=name), cors_origins=cors_origins)
    config = uvicorn.Config(
        app,
        log_config=None,
        log_level="info" if verbose else "warning",
        timeout_graceful_shutdown=5,
    )
    server = uvicorn.Server(config)
    await server.serve(sockets=[sock])
