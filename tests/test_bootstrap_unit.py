import asyncio
import socket

import pytest
import yaml
from conftest import FakeIBFactory, make_config

from brokertools import bootstrap as bootstrap_mod
from brokertools.bootstrap import Bootstrap, Phase, SseMode, StdioMode, run
from brokertools.broker.sessions import establish_session_pair
from brokertools.errors import ConfigError, ListenerError, SessionError
from brokertools.tools.binding import make_binding


class Recorder:
    """Fakes for every Bootstrap collaborator, logging the order they are used in."""

    def __init__(self, *, config_error=None, session_error=None, ib_factory=None):
        self.events = []
        self.config_error = config_error
        self.session_error = session_error
        self.ib_factory = ib_factory or FakeIBFactory()
        self.pair = None
        self.bindings = []
        self.sse_calls = []

    def load_config(self, path):
        self.events.append("config")
        if self.config_error:
            raise self.config_error
        return make_config()

    async def establish(self, config):
        self.events.append("sessions")
        if self.session_error:
            raise self.session_error
        self.pair = await establish_session_pair(config, ib_factory=self.ib_factory)
        return self.pair

    def make_binding(self, sessions, **kwargs):
        self.events.append("binding")
        binding = make_binding(sessions, **kwargs)
        self.bindings.append(binding)
        return binding

    async def stdio_runner(self, binding):
        self.events.append("stdio")
        assert not binding.closed
        assert binding.sessions.quote.ib.isConnected()

    def listener(self, bind):
        self.events.append("listen")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        return sock

    async def sse_runner(self, sessions, sock, **kwargs):
        self.events.append("sse")
        self.sse_calls.append((sessions, sock, kwargs))

    def bootstrap(self, selection, **overrides):
        kwargs = dict(
            config_loader=self.load_config,
            session_factory=self.establish,
            binding_factory=self.make_binding,
            stdio_runner=self.stdio_runner,
            sse_runner=self.sse_runner,
            listener_factory=self.listener,
        )
        kwargs.update(overrides)
        return Bootstrap(selection, **kwargs)


def test_stdio_builds_exactly_one_binding_after_sessions():
    rec = Recorder()
    boot = rec.bootstrap(StdioMode())
    asyncio.run(boot.run())

    assert rec.events == ["config", "sessions", "binding", "stdio"]
    assert len(rec.bindings) == 1
    assert rec.bindings[0].closed
    assert boot.phase is Phase.SERVING
    # Pair released on exit.
    assert rec.pair.quote.released and rec.pair.trade.released
    assert not rec.ib_factory.by_client_id(20).isConnected()


def test_sse_hands_the_established_pair_to_the_listener():
    rec = Recorder()
    boot = rec.bootstrap(SseMode(bind="127.0.0.1:0"))
    asyncio.run(boot.run())

    assert rec.events == ["config", "sessions", "listen", "sse"]
    assert rec.bindings == []
    sessions, sock, kwargs = rec.sse_calls[0]
    assert sessions is rec.pair
    assert kwargs["name"] == "brokertools-test"
    assert kwargs["cors_origins"] == ["*"]
    assert sock.fileno() == -1


def test_missing_credential_stops_before_any_network_activity():
    rec = Recorder(config_error=ConfigError("Missing broker.account in config"))
    boot = rec.bootstrap(SseMode())
    with pytest.raises(ConfigError):
        asyncio.run(boot.run())
    assert rec.events == ["config"]
    assert boot.phase is Phase.UNINITIALIZED


def test_invalid_bind_address_is_a_config_error_before_sessions():
    rec = Recorder()
    boot = rec.bootstrap(SseMode(bind="no-port"))
    with pytest.raises(ConfigError):
        asyncio.run(boot.run())
    assert rec.events == ["config"]


def test_session_failure_is_fatal_and_nothing_is_served():
    rec = Recorder(session_error=SessionError("trade session refused"))
    boot = rec.bootstrap(StdioMode())
    with pytest.raises(SessionError):
        asyncio.run(boot.run())
    assert rec.events == ["config", "sessions"]
    assert boot.phase is Phase.CONFIGURED
    assert rec.bindings == []


def test_listener_failure_prevents_serving_and_releases_sessions():
    rec = Recorder()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        boot = rec.bootstrap(SseMode(bind=f"127.0.0.1:{port}"), listener_factory=bootstrap_mod.bind_listener)
        with pytest.raises(ListenerError):
            asyncio.run(boot.run())

    assert "sse" not in rec.events
    assert boot.phase is Phase.READY
    assert rec.pair.quote.released
    assert not rec.ib_factory.by_client_id(21).isConnected()


def test_unknown_selection_is_rejected():
    with pytest.raises(TypeError):
        Bootstrap("websocket")


def test_run_exit_code_for_missing_credential(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"broker": {"host": "127.0.0.1", "port": 4002}}), encoding="utf-8")
    assert run(StdioMode(), config_path=path) == ConfigError.exit_code


def test_run_exit_codes_for_session_and_listener_failures(monkeypatch):
    failures = iter([SessionError("down"), ListenerError("in use")])

    class _Failing:
        def __init__(self, selection, **kwargs):
            self.phase = Phase.CONFIGURED

        async def run(self):
            raise next(failures)

    monkeypatch.setattr(bootstrap_mod, "Bootstrap", _Failing)
    assert run(StdioMode()) == 3
    assert run(SseMode()) == 4
