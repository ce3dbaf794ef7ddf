from __future__ import annotations

import logging

from mcp.server.stdio import stdio_server

from brokertools.tools.binding import ToolRegistryBinding

logger = logging.getLogger(__name__)


async def serve_stdio(binding: ToolRegistryBinding) -> None:
    """
    Serve one client over stdin/stdout until the stream closes.

    The binding is used for the whole process; malformed requests and tool failures
    are answered through MCP's own error responses.
    """
    server = binding.build_server()
    logger.info("Serving MCP over stdio")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
    logger.info("stdio stream closed")
