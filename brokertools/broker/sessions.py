from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from ib_insync import IB

from brokertools.errors import SessionError, SessionReleasedError
from brokertools.ports.broker import SessionClient

logger = logging.getLogger(__name__)

QUOTE = "quote"
TRADE = "trade"


class _SharedConnection:
    """
    One established IB connection, owned collectively by every handle on it.

    The connection is disconnected when the reference count drops to zero.
    """

    def __init__(self, kind: str, ib: SessionClient) -> None:
        self.kind = kind
        self.ib = ib
        self.closed = False
        self._refs = 0
        self._lock = threading.Lock()

    @property
    def refs(self) -> int:
        return self._refs

    def acquire(self) -> None:
        with self._lock:
            if self.closed:
                raise SessionReleasedError(f"{self.kind} session already closed")
            self._refs += 1

    def release(self) -> None:
        with self._lock:
            self._refs -= 1
            last = self._refs == 0
        if last:
            self._close()

    def _close(self) -> None:
        self.closed = True
        try:
            if self.ib.isConnected():
                self.ib.disconnect()
                logger.info("Disconnected %s session", self.kind)
        except Exception as e:
            logger.warning("Failed to disconnect %s session: %s", self.kind, e)


class SessionHandle:
    """
    Reference-counted handle on an established quote or trade session.

    `clone()` shares the underlying connection instead of opening a new one.
    Each handle is released once; the last release disconnects.
    """

    def __init__(self, shared: _SharedConnection) -> None:
        shared.acquire()
        self._shared = shared
        self._released = False

    @property
    def kind(self) -> str:
        return self._shared.kind

    @property
    def ib(self) -> Any:
        if self._released:
            raise SessionReleasedError(f"{self.kind} session handle was released")
        return self._shared.ib

    @property
    def released(self) -> bool:
        return self._released

    @property
    def ref_count(self) -> int:
        return self._shared.refs

    def clone(self) -> SessionHandle:
        if self._released:
            raise SessionReleasedError(f"Cannot clone a released {self.kind} session handle")
        return SessionHandle(self._shared)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._shared.release()

    def __enter__(self) -> SessionHandle:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else f"refs={self._shared.refs}"
        return f"SessionHandle({self.kind}, {state})"


@dataclass(frozen=True)
class SessionPair:
    quote: SessionHandle
    trade: SessionHandle
    account: str

    def clone(self) -> SessionPair:
        return SessionPair(quote=self.quote.clone(), trade=self.trade.clone(), account=self.account)

    def release(self) -> None:
        self.quote.release()
        self.trade.release()

    def __enter__(self) -> SessionPair:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


def _new_ib() -> SessionClient:
    return IB()


async def connect_session(
    kind: str,
    broker: dict[str, Any],
    *,
    ib_factory: Callable[[], SessionClient] = _new_ib,
) -> SessionHandle:
    """
    Connect one IB session and wrap it in a handle.

    The quote session is readonly and requests the configured market data type.
    The trade session must see the configured account among its managed accounts.
    """
    host = str(broker["host"])
    port = int(broker["port"])
    client_id = int(broker["client_id"] if kind == QUOTE else broker["trade_client_id"])
    account = str(broker["account"])
    timeout = float(broker["connect_timeout"])

    ib = ib_factory()
    ib.RequestTimeout = float(broker["request_timeout"])
    try:
        logger.info(
            "Connecting %s session to %s:%s (clientId=%s, timeout=%ss)", kind, host, port, client_id, timeout
        )
        await ib.connectAsync(
            host,
            port,
            clientId=client_id,
            timeout=timeout,
            readonly=(kind == QUOTE),
            account=account,
        )

        if kind == QUOTE:
            ib.reqMarketDataType(int(broker["market_data_type"]))
        else:
            accounts = list(ib.managedAccounts())
            if account not in accounts:
                raise SessionError(f"Account {account} is not managed by this login (managed: {', '.join(accounts) or 'none'})")
    except Exception as e:
        try:
            ib.disconnect()
        except Exception:
            pass
        if isinstance(e, SessionError):
            raise
        if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
            raise SessionError(f"{kind} session timed out after {timeout}s connecting to {host}:{port}") from e
        if isinstance(e, ConnectionRefusedError):
            raise SessionError(f"{kind} session refused at {host}:{port} - is TWS/Gateway running?") from e
        raise SessionError(f"{kind} session failed: {type(e).__name__}: {e}") from e

    logger.info("%s session connected", kind.capitalize())
    return SessionHandle(_SharedConnection(kind, ib))


async def establish_session_pair(
    config: dict[str, Any],
    *,
    ib_factory: Callable[[], SessionClient] = _new_ib,
) -> SessionPair:
    """
    Establish the quote and trade sessions concurrently.

    Either both succeed and a pair is returned, or any session that did connect is
    released and a single SessionError is raised.
    """
    broker = config["broker"]
    results = await asyncio.gather(
        connect_session(QUOTE, broker, ib_factory=ib_factory),
        connect_session(TRADE, broker, ib_factory=ib_factory),
        return_exceptions=True,
    )

    handles = [r for r in results if isinstance(r, SessionHandle)]
    failures = [(kind, r) for kind, r in zip((QUOTE, TRADE), results) if isinstance(r, BaseException)]
    if failures:
        for handle in handles:
            handle.release()
        for _, exc in failures:
            if not isinstance(exc, Exception):
                raise exc
        messages = "; ".join(str(exc) for _, exc in failures)
        raise SessionError(messages) from failures[0][1]

    quote, trade = results
    return SessionPair(quote=quote, trade=trade, account=str(broker["account"]))
