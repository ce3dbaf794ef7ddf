from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class QuoteRow:
    symbol: str
    exchange: str
    currency: str
    bid: float | None
    ask: float | None
    last: float | None
    close: float | None
    volume: float | None
    time: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "currency": self.currency,
            "bid": self.bid,
            "ask": self.ask,
            "last": self.last,
            "close": self.close,
            "volume": self.volume,
            "time": self.time,
        }


@dataclass(frozen=True)
class AccountSummaryItem:
    tag: str
    value: float
    currency: str

    def to_dict(self) -> dict[str, Any]:
        return {"tag": self.tag, "value": float(self.value), "currency": self.currency}


@dataclass(frozen=True)
class PositionRow:
    account: str
    symbol: str
    exchange: str
    currency: str
    position: float
    avg_cost: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "symbol": self.symbol,
            "exchange": self.exchange,
            "currency": self.currency,
            "position": float(self.position),
            "avg_cost": self.avg_cost,
        }


@dataclass(frozen=True)
class OpenOrderRow:
    order_id: int
    symbol: str
    exchange: str
    currency: str
    action: str
    order_type: str
    total_qty: float
    filled: float
    remaining: float
    status: str
    lmt_price: float
    aux_price: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": int(self.order_id),
            "symbol": self.symbol,
            "exchange": self.exchange,
            "currency": self.currency,
            "action": self.action,
            "order_type": self.order_type,
            "total_qty": float(self.total_qty),
            "filled": float(self.filled),
            "remaining": float(self.remaining),
            "status": self.status,
            "lmt_price": float(self.lmt_price),
            "aux_price": float(self.aux_price),
        }


@dataclass(frozen=True)
class OrderAck:
    order_id: int
    symbol: str
    action: str
    order_type: str
    total_qty: float
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": int(self.order_id),
            "symbol": self.symbol,
            "action": self.action,
            "order_type": self.order_type,
            "total_qty": float(self.total_qty),
            "status": self.status,
        }
