"""Reconcile fill history against the live open-position snapshot.

The aggregator only sees fills, so it can rebuild closed round trips but
has no authoritative view of anything still open: leverage, margin mode,
and funding exist only in the exchange's position snapshot.

The cross-check is simple: the snapshot always wins.

- every instrument open in the snapshot becomes exactly one OPEN trade keyed
  "{instrument}:active", so repeated runs refresh one record.
- closed candidates rebuilt from fills for an instrument that is currently
  open are suppressed; the snapshot reflects position adjustments that fills
  alone can mis-sequence.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tradejournal.ledger import (
    Instrument,
    OpenPosition,
    Trade,
    TradeStatus,
    active_identity,
)
from tradejournal.normalize import normalize_fills, normalize_positions
from tradejournal.roundtrip import SIZE_EPSILON, OpenBatch, aggregate


@dataclass(slots=True)
class ReconcileReport:
    dropped_fills: int = 0
    dropped_positions: int = 0
    skipped: int = 0
    before_cutoff: int = 0
    suppressed: int = 0
    closed: int = 0
    open: int = 0


@dataclass(slots=True)
class Reconciliation:
    trades: list[Trade] = field(default_factory=list)
    report: ReconcileReport = field(default_factory=ReconcileReport)


def active_trade(
    position: OpenPosition,
    now: datetime.datetime,
    batch: OpenBatch | None = None,
) -> Trade:
    """Represent a live open position as an OPEN journal trade.

    Prices, leverage, margin mode, and funding come from the snapshot. The
    trailing fill batch only contributes what the snapshot can't tell us:
    when the position was opened and the trading fees paid so far.
    """
    usable = batch is not None and batch.side is position.side

    return Trade(
        instrument=position.instrument,
        side=position.side,
        entry_price=position.entry_price,
        size=position.size,
        opened_at=batch.opened_at if usable else now,
        status=TradeStatus.OPEN,
        fees=batch.fees if usable else 0.0,
        funding_fees=position.cumulative_funding,
        leverage=position.leverage,
        margin_mode=position.margin_mode,
        identity=active_identity(position.instrument),
    )


def cross_check(
    closed: Iterable[Trade],
    positions: Mapping[Instrument, OpenPosition],
    now: datetime.datetime,
    open_batches: Mapping[Instrument, OpenBatch] | None = None,
) -> tuple[list[Trade], int]:
    """Merge history candidates with the snapshot.

    Returns (candidates, suppressed count).
    """
    open_batches = open_batches or {}

    # a hand-built mapping may still carry flat entries; those are not open
    live = {i: p for i, p in positions.items() if p.signed_size != 0}

    candidates: list[Trade] = []
    suppressed = 0

    for trade in closed:
        if trade.instrument in live:
            suppressed += 1
            continue

        candidates.append(trade)

    for instrument in sorted(live):
        candidates.append(
            active_trade(live[instrument], now, open_batches.get(instrument))
        )

    if suppressed:
        logger.info(
            "Suppressed {} closed candidate(s) for currently open instruments",
            suppressed,
        )

    return candidates, suppressed


def reconcile(
    fills: Iterable[Mapping[str, Any]],
    positions: Iterable[Mapping[str, Any]],
    cutoff: datetime.datetime | None = None,
    now: datetime.datetime | None = None,
    epsilon: float = SIZE_EPSILON,
) -> Reconciliation:
    """Raw fills + raw open-position snapshot -> candidate trades for the ledger.

    Pure computation over already-fetched data. Malformed records are dropped
    and counted; nothing here raises for bad input.
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)

    nfills = normalize_fills(fills)
    npositions = normalize_positions(positions)
    agg = aggregate(nfills.fills, cutoff=cutoff, epsilon=epsilon)

    trades, suppressed = cross_check(
        agg.trades, npositions.positions, now, agg.open_batches
    )

    report = ReconcileReport(
        dropped_fills=nfills.dropped,
        dropped_positions=npositions.dropped,
        skipped=agg.skipped,
        before_cutoff=agg.before_cutoff,
        suppressed=suppressed,
        closed=sum(1 for t in trades if t.status is TradeStatus.CLOSED),
        open=sum(1 for t in trades if t.status is TradeStatus.OPEN),
    )

    logger.info(
        "Reconciled {} fill(s): {} closed, {} open, {} suppressed, {} before cutoff",
        len(nfills.fills),
        report.closed,
        report.open,
        report.suppressed,
        report.before_cutoff,
    )

    return Reconciliation(trades, report)
