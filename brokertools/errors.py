from __future__ import annotations


class StartupError(Exception):
    """Fatal error raised before the server starts serving."""

    exit_code = 1


class ConfigError(StartupError, ValueError):
    """Configuration is missing or invalid."""

    exit_code = 2


class SessionError(StartupError):
    """The quote or trade session could not be established."""

    exit_code = 3


class ListenerError(StartupError):
    """The SSE listener could not bind its address."""

    exit_code = 4


class SessionReleasedError(RuntimeError):
    """Raised when a released session handle is used."""


class ToolError(Exception):
    """A tool call failed; reported to the calling client only."""
