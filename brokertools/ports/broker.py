from __future__ import annotations

from typing import Any, Protocol


class SessionClient(Protocol):
    """The slice of `ib_insync.IB` used to establish and tear down a session."""

    RequestTimeout: float

    async def connectAsync(self, host: str, port: int, clientId: int, timeout: float, readonly: bool, account: str) -> Any: ...

    def isConnected(self) -> bool: ...

    def disconnect(self) -> Any: ...

    def managedAccounts(self) -> list[str]: ...

    def reqMarketDataType(self, marketDataType: int) -> None: ...


class QuoteClient(SessionClient, Protocol):
    async def qualifyContractsAsync(self, *contracts: Any) -> list[Any]: ...

    async def reqTickersAsync(self, *contracts: Any) -> list[Any]: ...

    async def reqHistoricalDataAsync(
        self,
        contract: Any,
        endDateTime: Any,
        durationStr: str,
        barSizeSetting: str,
        whatToShow: str,
        useRTH: bool,
        formatDate: int = 1,
    ) -> list[Any]: ...


class TradeClient(SessionClient, Protocol):
    async def qualifyContractsAsync(self, *contracts: Any) -> list[Any]: ...

    async def accountSummaryAsync(self, account: str = "") -> list[Any]: ...

    async def reqPositionsAsync(self) -> list[Any]: ...

    async def reqOpenOrdersAsync(self) -> list[Any]: ...

    def openTrades(self) -> list[Any]: ...

    def placeOrder(self, contract: Any, order: Any) -> Any: ...

    def cancelOrder(self, order: Any) -> Any: ...
