import asyncio
import math
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
from ib_insync import BarData

from brokertools.broker.sessions import establish_session_pair
from brokertools.utils import config_loader

ACCOUNT = "DU1234567"

KNOWN_SYMBOLS = {"AAPL": 265598, "MSFT": 272093, "VOD": 5970}


class FakeIB:
    """In-memory stand-in for `ib_insync.IB` covering the calls brokertools makes."""

    def __init__(self, *, accounts=(ACCOUNT,), connect_error=None, connect_delay=0.0):
        self.RequestTimeout = 0.0
        self.accounts = list(accounts)
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.connected = False
        self.connect_kwargs = None
        self.disconnect_calls = 0
        self.market_data_type = None
        self.placed = []
        self.cancelled = []
        self.open_trades = []
        self.positions = []
        self.account_values = []
        self.bars = []
        self._next_order_id = 100

    # Session lifecycle
    async def connectAsync(self, host, port, clientId, timeout, readonly, account):
        self.connect_kwargs = {
            "host": host,
            "port": port,
            "clientId": clientId,
            "timeout": timeout,
            "readonly": readonly,
            "account": account,
        }
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return self

    def isConnected(self):
        return self.connected

    def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    def managedAccounts(self):
        return list(self.accounts)

    def reqMarketDataType(self, marketDataType):
        self.market_data_type = marketDataType

    # Quote calls
    async def qualifyContractsAsync(self, *contracts):
        out = []
        for c in contracts:
            if c.symbol in KNOWN_SYMBOLS:
                c.conId = KNOWN_SYMBOLS[c.symbol]
                out.append(c)
        return out

    async def reqTickersAsync(self, *contracts):
        # Yield once so concurrent callers interleave.
        await asyncio.sleep(0)
        return [
            SimpleNamespace(
                contract=c,
                bid=100.0 + c.conId % 7,
                ask=100.5 + c.conId % 7,
                last=100.25 + c.conId % 7,
                close=math.nan,
                volume=1000.0,
                time=datetime(2024, 1, 2, 15, 30, tzinfo=timezone.utc),
            )
            for c in contracts
        ]

    async def reqHistoricalDataAsync(self, contract, endDateTime, durationStr, barSizeSetting, whatToShow, useRTH, formatDate=1):
        self.history_request = {
            "symbol": contract.symbol,
            "durationStr": durationStr,
            "barSizeSetting": barSizeSetting,
            "whatToShow": whatToShow,
            "useRTH": useRTH,
        }
        return list(self.bars)

    # Trade calls
    async def accountSummaryAsync(self, account=""):
        return [v for v in self.account_values if v.account == account]

    async def reqPositionsAsync(self):
        return list(self.positions)

    async def reqOpenOrdersAsync(self):
        return list(self.open_trades)

    def openTrades(self):
        return list(self.open_trades)

    def placeOrder(self, contract, order):
        order.orderId = self._next_order_id
        self._next_order_id += 1
        trade = SimpleNamespace(contract=contract, order=order, orderStatus=SimpleNamespace(status="PendingSubmit"))
        self.placed.append(trade)
        return trade

    def cancelOrder(self, order):
        self.cancelled.append(order.orderId)
        return SimpleNamespace(order=order, orderStatus=SimpleNamespace(status="PendingCancel"))


class FakeIBFactory:
    """Hands out FakeIB instances; per-client-id overrides let one session fail."""

    def __init__(self, **overrides_by_client_id):
        self.overrides = overrides_by_client_id
        self.created = []
        self.events = []

    def __call__(self):
        factory = self

        class _Routed(FakeIB):
            async def connectAsync(self, host, port, clientId, timeout, readonly, account):
                for k, v in factory.overrides.get(f"client_{clientId}", {}).items():
                    setattr(self, k, v)
                factory.events.append(("start", clientId))
                try:
                    return await super().connectAsync(host, port, clientId, timeout, readonly, account)
                finally:
                    factory.events.append(("end", clientId))

        ib = _Routed()
        self.created.append(ib)
        return ib

    def by_client_id(self, client_id):
        return next(ib for ib in self.created if ib.connect_kwargs and ib.connect_kwargs["clientId"] == client_id)


def make_config(**broker_overrides):
    broker = {
        "host": "127.0.0.1",
        "port": 7497,
        "client_id": 20,
        "trade_client_id": 21,
        "account": ACCOUNT,
        "connect_timeout": 2.0,
        "request_timeout": 3.0,
        "market_data_type": 3,
    }
    broker.update(broker_overrides)
    return {"broker": broker, "server": {"name": "brokertools-test", "cors_origins": ["*"]}}


def make_bars(n=3):
    return [
        BarData(date=date(2024, 1, 2 + i), open=10.0 + i, high=11.0 + i, low=9.0 + i, close=10.5 + i, volume=1000, average=10.2 + i, barCount=50)
        for i in range(n)
    ]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(config_loader._ENV_OVERRIDES) + ["BROKERTOOLS_CONFIG"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ib_factory():
    return FakeIBFactory()


@pytest.fixture
def session_pair(ib_factory):
    pair = asyncio.run(establish_session_pair(make_config(), ib_factory=ib_factory))
    yield pair
    pair.release()
