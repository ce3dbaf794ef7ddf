from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import mcp.types as types
from fastapi.encoders import jsonable_encoder
from mcp.server.lowlevel import Server

from brokertools.broker.sessions import SessionPair
from brokertools.errors import ToolError
from brokertools.tools.catalog import CATALOG, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_SERVER_NAME = "brokertools"


class ToolRegistryBinding:
    """
    The tool catalog bound to one clone of the shared session pair.

    Construction does no I/O. The binding keeps no request state, so every tool
    call is independent; `close()` releases its clone of the pair.
    """

    def __init__(
        self,
        sessions: SessionPair,
        catalog: Iterable[ToolSpec] = CATALOG,
        *,
        name: str = DEFAULT_SERVER_NAME,
    ) -> None:
        self.sessions = sessions
        self.name = name
        self._tools = {spec.name: spec for spec in catalog}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def list_tools(self) -> list[types.Tool]:
        return [
            types.Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema)
            for spec in self._tools.values()
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> list[types.TextContent]:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolError(f"Unknown tool: {name}")
        try:
            result = await spec.handler(self.sessions, dict(arguments or {}))
        except Exception as e:
            logger.warning("Tool %s failed: %s: %s", name, type(e).__name__, e)
            raise
        return [types.TextContent(type="text", text=json.dumps(jsonable_encoder(result)))]

    def build_server(self) -> Server:
        """Create an MCP server instance dispatching into this binding."""
        server: Server = Server(self.name)

        @server.list_tools()
        async def _list_tools() -> list[types.Tool]:
            return self.list_tools()

        @server.call_tool()
        async def _call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            return await self.call_tool(name, arguments)

        return server

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.sessions.release()

    def __enter__(self) -> ToolRegistryBinding:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def make_binding(
    sessions: SessionPair,
    catalog: Iterable[ToolSpec] = CATALOG,
    *,
    name: str = DEFAULT_SERVER_NAME,
) -> ToolRegistryBinding:
    """Bind the catalog to a fresh clone of `sessions`; the caller's pair is left untouched."""
    return ToolRegistryBinding(sessions.clone(), catalog, name=name)
