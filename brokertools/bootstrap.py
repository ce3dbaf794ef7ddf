"""
Startup sequence: configuration, session pair, then exactly one transport.

Phases only move forward: UNINITIALIZED -> CONFIGURED -> READY -> SERVING.
Anything that fails before SERVING is a StartupError and ends the process with
that error's exit code.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from brokertools.broker.sessions import SessionPair, establish_session_pair
from brokertools.errors import StartupError
from brokertools.tools.binding import ToolRegistryBinding, make_binding
from brokertools.transports.sse import DEFAULT_BIND, bind_listener, parse_bind_address, serve_sse
from brokertools.transports.stdio import serve_stdio
from brokertools.utils.config_loader import load_config

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


class Phase(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"
    READY = "ready"
    SERVING = "serving"


@dataclass(frozen=True)
class StdioMode:
    pass


@dataclass(frozen=True)
class SseMode:
    bind: str = DEFAULT_BIND


TransportSelection = Union[StdioMode, SseMode]


class Bootstrap:
    """
    Runs one process lifetime for a fixed transport selection.

    Collaborators are injectable so the sequence can be exercised without a broker.
    """

    def __init__(
        self,
        selection: TransportSelection,
        *,
        config_path: str | Path | None = None,
        verbose: bool = False,
        config_loader: Callable[..., dict[str, Any]] = load_config,
        session_factory: Callable[[dict[str, Any]], Awaitable[SessionPair]] = establish_session_pair,
        binding_factory: Callable[..., ToolRegistryBinding] = make_binding,
        stdio_runner: Callable[[ToolRegistryBinding], Awaitable[None]] = serve_stdio,
        sse_runner: Callable[..., Awaitable[None]] = serve_sse,
        listener_factory: Callable[[str], Any] = bind_listener,
    ) -> None:
        if not isinstance(selection, (StdioMode, SseMode)):
            raise TypeError(f"Unknown transport selection: {selection!r}")
        self.selection = selection
        self.config_path = config_path
        self.verbose = verbose
        self.phase = Phase.UNINITIALIZED
        self.config: dict[str, Any] | None = None
        self.sessions: SessionPair | None = None

        self._config_loader = config_loader
        self._session_factory = session_factory
        self._binding_factory = binding_factory
        self._stdio_runner = stdio_runner
        self._sse_runner = sse_runner
        self._listener_factory = listener_factory

    def _advance(self, phase: Phase) -> None:
        order = list(Phase)
        if order.index(phase) != order.index(self.phase) + 1:
            raise RuntimeError(f"Invalid phase transition {self.phase.value} -> {phase.value}")
        logger.info("Bootstrap phase: %s", phase.value)
        self.phase = phase

    def resolve_config(self) -> dict[str, Any]:
        config = self._config_loader(self.config_path)
        if isinstance(self.selection, SseMode):
            parse_bind_address(self.selection.bind)
        self.config = config
        self._advance(Phase.CONFIGURED)
        return config

    async def establish_sessions(self) -> SessionPair:
        assert self.config is not None
        broker = self.config["broker"]
        logger.info("Establishing quote/trade sessions with %s:%s", broker["host"], broker["port"])
        self.sessions = await self._session_factory(self.config)
        self._advance(Phase.READY)
        return self.sessions

    async def serve(self) -> None:
        assert self.config is not None and self.sessions is not None
        server_cfg = self.config.get("server") or {}
        name = str(server_cfg.get("name") or "brokertools")

        if isinstance(self.selection, StdioMode):
            binding = self._binding_factory(self.sessions, name=name)
            self._advance(Phase.SERVING)
            with binding:
                await self._stdio_runner(binding)
            return

        sock = self._listener_factory(self.selection.bind)
        self._advance(Phase.SERVING)
        try:
            await self._sse_runner(
                self.sessions,
                sock,
                name=name,
                cors_origins=server_cfg.get("cors_origins") or ["*"],
                verbose=self.verbose,
            )
        finally:
            sock.close()

    async def run(self) -> None:
        self.resolve_config()
        await self.establish_sessions()
        try:
            await self.serve()
        finally:
            assert self.sessions is not None
            self.sessions.release()


def run(selection: TransportSelection, *, config_path: str | Path | None = None, verbose: bool = False) -> int:
    """Run the server to completion and return the process exit code."""
    bootstrap = Bootstrap(selection, config_path=config_path, verbose=verbose)
    try:
        asyncio.run(bootstrap.run())
    except StartupError as e:
        logger.error("Startup failed (%s): %s", bootstrap.phase.value, e)
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED
    return 0
