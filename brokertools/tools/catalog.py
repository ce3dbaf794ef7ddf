"""
Tool catalog: the fixed set of broker tools exposed over MCP.

Each tool names the session it runs on. Quote tools only touch the quote session
and trade tools only touch the trade session, so a binding never needs more than
the shared pair to serve any call.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import pandas as pd
from fastapi.encoders import jsonable_encoder
from ib_insync import LimitOrder, MarketOrder, Stock, util
from ib_insync.util import UNSET_DOUBLE

from brokertools.broker.sessions import QUOTE, TRADE, SessionPair
from brokertools.domain.models import AccountSummaryItem, OpenOrderRow, OrderAck, PositionRow, QuoteRow
from brokertools.errors import ToolError
from brokertools.ports.broker import QuoteClient, TradeClient

logger = logging.getLogger(__name__)

ToolHandler = Callable[[SessionPair, dict[str, Any]], Awaitable[Any]]

SUMMARY_TAGS = {
    "NetLiquidation",
    "TotalCashValue",
    "CashBalance",
    "GrossPositionValue",
    "AvailableFunds",
    "BuyingPower",
    "UnrealizedPnL",
    "RealizedPnL",
}

# Gives the IB loop a moment to process openOrder callbacks.
OPEN_ORDERS_SETTLE_SECONDS = 0.05


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    session: str
    input_schema: dict[str, Any]
    handler: ToolHandler


def _num(value: Any) -> float | None:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(f) else f


def _price(value: Any) -> float:
    # IB leaves unused order prices at UNSET_DOUBLE.
    f = _num(value)
    return 0.0 if f is None or f >= UNSET_DOUBLE else f


def _df_to_records(df: pd.DataFrame | None) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    df = df.astype(object).where(df.notna(), None)
    return jsonable_encoder(df.to_dict(orient="records"))


def _require_str(args: dict[str, Any], key: str) -> str:
    value = str(args.get(key) or "").strip()
    if not value:
        raise ToolError(f"Missing required argument: {key}")
    return value


def _contract(args: dict[str, Any], symbol: str) -> Stock:
    return Stock(symbol.upper(), str(args.get("exchange") or "SMART"), str(args.get("currency") or "USD"))


async def _qualify(ib: Any, contracts: list[Stock]) -> list[Any]:
    qualified = [c for c in await ib.qualifyContractsAsync(*contracts) if c is not None]
    found = {c.symbol for c in qualified}
    missing = [c.symbol for c in contracts if c.symbol not in found]
    if missing:
        raise ToolError(f"Unknown contract(s): {', '.join(missing)}")
    return qualified


# -------------------
# Quote session
# -------------------


async def quote(sessions: SessionPair, args: dict[str, Any]) -> list[dict[str, Any]]:
    symbols = args.get("symbols") or []
    if isinstance(symbols, str):
        symbols = [s for s in symbols.split(",") if s.strip()]
    if not symbols:
        raise ToolError("Missing required argument: symbols")

    ib: QuoteClient = sessions.quote.ib
    contracts = await _qualify(ib, [_contract(args, str(s).strip()) for s in symbols])
    tickers = await ib.reqTickersAsync(*contracts)

    rows: list[dict[str, Any]] = []
    for t in tickers:
        c = t.contract
        ts = getattr(t, "time", None)
        rows.append(
            QuoteRow(
                symbol=c.symbol,
                exchange=c.exchange or "",
                currency=c.currency,
                bid=_num(t.bid),
                ask=_num(t.ask),
                last=_num(t.last),
                close=_num(t.close),
                volume=_num(t.volume),
                time=ts.isoformat() if ts is not None else None,
            ).to_dict()
        )
    return rows


async def history(sessions: SessionPair, args: dict[str, Any]) -> list[dict[str, Any]]:
    symbol = _require_str(args, "symbol")
    ib: QuoteClient = sessions.quote.ib
    contract = (await _qualify(ib, [_contract(args, symbol)]))[0]
    bars = await ib.reqHistoricalDataAsync(
        contract,
        endDateTime="",
        durationStr=str(args.get("duration") or "1 M"),
        barSizeSetting=str(args.get("bar_size") or "1 day"),
        whatToShow=str(args.get("what_to_show") or "TRADES"),
        useRTH=bool(args.get("use_rth", True)),
        formatDate=1,
    )
    if not bars:
        logger.info("No historical data found for %s", symbol)
        return []
    return _df_to_records(util.df(bars))


# -------------------
# Trade session
# -------------------


async def account_summary(sessions: SessionPair, args: dict[str, Any]) -> list[dict[str, Any]]:
    ib: TradeClient = sessions.trade.ib
    out_by_key: dict[tuple[str, str], AccountSummaryItem] = {}
    for av in await ib.accountSummaryAsync(sessions.account):
        if av.tag not in SUMMARY_TAGS:
            continue
        value = _num(av.value)
        if value is None:
            continue
        out_by_key[(av.tag, av.currency)] = AccountSummaryItem(tag=av.tag, value=value, currency=av.currency)
    return [item.to_dict() for item in out_by_key.values()]


async def positions(sessions: SessionPair, args: dict[str, Any]) -> list[dict[str, Any]]:
    ib: TradeClient = sessions.trade.ib
    rows: list[dict[str, Any]] = []
    for p in await ib.reqPositionsAsync():
        if p.account != sessions.account or not _num(p.position):
            continue
        rows.append(
            PositionRow(
                account=p.account,
                symbol=p.contract.symbol,
                exchange=p.contract.exchange or "",
                currency=p.contract.currency,
                position=float(p.position),
                avg_cost=_num(p.avgCost),
            ).to_dict()
        )
    return rows


async def open_orders(sessions: SessionPair, args: dict[str, Any]) -> list[dict[str, Any]]:
    ib: TradeClient = sessions.trade.ib
    await ib.reqOpenOrdersAsync()
    await asyncio.sleep(OPEN_ORDERS_SETTLE_SECONDS)

    rows: list[dict[str, Any]] = []
    for trade in ib.openTrades():
        order, contract, status = trade.order, trade.contract, trade.orderStatus
        rows.append(
            OpenOrderRow(
                order_id=int(order.orderId),
                symbol=contract.symbol,
                exchange=contract.exchange or "",
                currency=contract.currency,
                action=order.action,
                order_type=order.orderType,
                total_qty=float(order.totalQuantity),
                filled=float(status.filled),
                remaining=float(status.remaining),
                status=status.status,
                lmt_price=_price(getattr(order, "lmtPrice", None)),
                aux_price=_price(getattr(order, "auxPrice", None)),
            ).to_dict()
        )
    return rows


async def submit_order(sessions: SessionPair, args: dict[str, Any]) -> dict[str, Any]:
    symbol = _require_str(args, "symbol")
    action = _require_str(args, "action").upper()
    if action not in ("BUY", "SELL"):
        raise ToolError(f"action must be BUY or SELL; got {action}")

    quantity = _num(args.get("quantity"))
    if quantity is None or quantity <= 0:
        raise ToolError("quantity must be a positive number")

    order_type = str(args.get("order_type") or "MKT").upper()
    if order_type == "MKT":
        order = MarketOrder(action, quantity)
    elif order_type == "LMT":
        limit_price = _num(args.get("limit_price"))
        if limit_price is None or limit_price <= 0:
            raise ToolError("limit_price is required for LMT orders")
        order = LimitOrder(action, quantity, limit_price)
    else:
        raise ToolError(f"order_type must be MKT or LMT; got {order_type}")
    order.tif = str(args.get("tif") or "DAY").upper()
    order.account = sessions.account

    ib: TradeClient = sessions.trade.ib
    contract = (await _qualify(ib, [_contract(args, symbol)]))[0]
    trade = ib.placeOrder(contract, order)
    logger.info("Placed %s %s %s (%s) orderId=%s", action, quantity, contract.symbol, order_type, trade.order.orderId)
    return OrderAck(
        order_id=int(trade.order.orderId),
        symbol=contract.symbol,
        action=action,
        order_type=order_type,
        total_qty=float(quantity),
        status=trade.orderStatus.status,
    ).to_dict()


async def cancel_order(sessions: SessionPair, args: dict[str, Any]) -> dict[str, Any]:
    try:
        order_id = int(args.get("order_id"))
    except (TypeError, ValueError) as exc:
        raise ToolError("order_id must be an integer") from exc

    ib: TradeClient = sessions.trade.ib
    for trade in ib.openTrades():
        if int(trade.order.orderId) == order_id:
            result = ib.cancelOrder(trade.order)
            status = getattr(getattr(result, "orderStatus", None), "status", None) or "PendingCancel"
            logger.info("Cancel requested for orderId=%s", order_id)
            return {"order_id": order_id, "status": status}
    raise ToolError(f"No open order with id {order_id}")


_CONTRACT_PROPS: dict[str, Any] = {
    "exchange": {"type": "string", "description": "Routing exchange", "default": "SMART"},
    "currency": {"type": "string", "description": "Contract currency", "default": "USD"},
}

CATALOG: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="quote",
        description="Snapshot quotes (bid/ask/last/close/volume) for one or more stock symbols.",
        session=QUOTE,
        input_schema={
            "type": "object",
            "properties": {
                "symbols": {"type": "array", "items": {"type": "string"}, "description": "Ticker symbols, e.g. AAPL"},
                **_CONTRACT_PROPS,
            },
            "required": ["symbols"],
        },
        handler=quote,
    ),
    ToolSpec(
        name="history",
        description="Historical bars for a stock symbol.",
        session=QUOTE,
        input_schema={
            "type": "object",
            "properties": {
                "symbol": {"type": "string"},
                "duration": {"type": "string", "description": "IB duration string, e.g. '1 M'", "default": "1 M"},
                "bar_size": {"type": "string", "description": "IB bar size, e.g. '1 day'", "default": "1 day"},
                "what_to_show": {"type": "string", "default": "TRADES"},
                "use_rth": {"type": "boolean", "default": True},
                **_CONTRACT_PROPS,
            },
            "required": ["symbol"],
        },
        handler=history,
    ),
    ToolSpec(
        name="account_summary",
        description="Key balances (net liquidation, cash, buying power, PnL) for the configured account.",
        session=TRADE,
        input_schema={"type": "object", "properties": {}},
        handler=account_summary,
    ),
    ToolSpec(
        name="positions",
        description="Open positions held in the configured account.",
        session=TRADE,
        input_schema={"type": "object", "properties": {}},
        handler=positions,
    ),
    ToolSpec(
        name="open_orders",
        description="Working orders for the configured account.",
        session=TRADE,
        input_schema={"type": "object", "properties": {}},
        handler=open_orders,
    ),
    ToolSpec(
        name="submit_order",
        description="Submit a market or limit stock order.",
        session=TRADE,
        input_schema={
            "type": "object",
            "properties": {
                "symbol": {"type": "string"},
                "action": {"type": "string", "enum": ["BUY", "SELL"]},
                "quantity": {"type": "number", "exclusiveMinimum": 0},
                "order_type": {"type": "string", "enum": ["MKT", "LMT"], "default": "MKT"},
                "limit_price": {"type": "number"},
                "tif": {"type": "string", "default": "DAY"},
                **_CONTRACT_PROPS,
            },
            "required": ["symbol", "action", "quantity"],
        },
        handler=submit_order,
    ),
    ToolSpec(
        name="cancel_order",
        description="Cancel a working order by order id.",
        session=TRADE,
        input_schema={
            "type": "object",
            "properties": {"order_id": {"type": "integer"}},
            "required": ["order_id"],
        },
        handler=cancel_order,
    ),
)
