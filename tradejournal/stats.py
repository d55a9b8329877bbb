"""Journal statistics over a trade ledger.

Per-trade PnL lives on Trade itself (Trade.pnl / Trade.pnl_pct / Trade.initial_risk);
this module rolls a ledger up into account-level numbers and time series for
the calendar and equity views.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import dataclass

import pandas as pd  # type: ignore

from tradejournal.ledger import Percent, Trade, TradeStatus


@dataclass(slots=True, frozen=True)
class TradingStats:
    initialBalance: float
    currentBalance: float
    totalTrades: int
    openTrades: int
    winRate: Percent
    totalPnl: float
    totalPnlPct: Percent
    totalTradingFees: float
    totalFundingFees: float
    bestTrade: float
    worstTrade: float


def closed_trades(trades: Iterable[Trade]) -> list[Trade]:
    return [t for t in trades if t.status is TradeStatus.CLOSED]


def journal_stats(
    trades: Iterable[Trade], initialBalance: float, balanceAdjustment: float = 0.0
) -> TradingStats:
    """Summarize a ledger. Balance includes realized PnL of closed trades only."""
    trades = list(trades)
    closed = closed_trades(trades)
    pnls = [t.pnl for t in closed]

    totalPnl = sum(pnls)
    startBalance = initialBalance + balanceAdjustment
    currentBalance = startBalance + totalPnl

    return TradingStats(
        initialBalance=initialBalance,
        currentBalance=currentBalance,
        totalTrades=len(trades),
        openTrades=sum(1 for t in trades if t.status is TradeStatus.OPEN),
        winRate=(sum(1 for p in pnls if p > 0) / len(pnls) * 100) if pnls else 0.0,
        totalPnl=totalPnl,
        totalPnlPct=(totalPnl / startBalance * 100) if startBalance else 0.0,
        totalTradingFees=sum(t.fees for t in trades),
        totalFundingFees=sum(t.funding_fees for t in trades),
        bestTrade=max(pnls) if pnls else 0.0,
        worstTrade=min(pnls) if pnls else 0.0,
    )


def closed_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    """DataFrame of closed trades with a UTC 'closed' timestamp and 'pnl'."""
    rows = [
        dict(closed=t.closed_at, pnl=t.pnl, instrument=t.instrument)
        for t in closed_trades(trades)
        if t.closed_at is not None
    ]

    if not rows:
        return pd.DataFrame(
            {
                "closed": pd.Series(dtype="datetime64[ns, UTC]"),
                "pnl": pd.Series(dtype="float64"),
                "instrument": pd.Series(dtype="object"),
            }
        )

    df = pd.DataFrame(rows)
    df["closed"] = pd.to_datetime(df["closed"], utc=True)
    return df.sort_values("closed", kind="stable").reset_index(drop=True)


def daily_pnl(trades: Iterable[Trade]) -> pd.DataFrame:
    """Realized PnL per UTC close date (the calendar view).

    Columns: pnl (sum), trades (count). Index: datetime.date, ascending.
    """
    df = closed_frame(trades)
    if df.empty:
        return pd.DataFrame(
            {"pnl": pd.Series(dtype="float64"), "trades": pd.Series(dtype="int64")}
        )

    df["day"] = df["closed"].dt.date
    return df.groupby("day").agg(pnl=("pnl", "sum"), trades=("pnl", "count"))


def equity_curve(trades: Iterable[Trade], initialBalance: float) -> pd.Series:
    """Account balance after each closed trade, indexed by close time."""
    df = closed_frame(trades)
    curve = initialBalance + df["pnl"].cumsum()
    curve.index = pd.DatetimeIndex(df["closed"])
    curve.name = "balance"
    return curve


def pnl_on(trades: Iterable[Trade], day: datetime.date) -> float:
    """Realized PnL for one calendar day (0 when nothing closed that day)."""
    daily = daily_pnl(trades)
    if day not in daily.index:
        return 0.0

    return float(daily.loc[day, "pnl"])
