"""Rebuild round-trip trades from a fill stream.

Exchanges report fills, not trades. There is no marker saying "this fill
closed your trade," so we track the running signed size per instrument and
call a trade complete each time it returns to (approximately) zero.

Each instrument runs a two-state machine:

    FLAT ──fill──> ACCUMULATING ──fill (|net| < epsilon)──> FLAT (emit trade)
                        │   ▲
                        └───┘ fill (|net| >= epsilon)

Side policy: the FIRST fill of a batch defines the trade side. A batch
opened with a Buy is LONG and its sells are the exit leg; a batch opened
with a Sell is SHORT and its buys are the exit leg. If the exchange reports
a small opposite fill first (partial fill races), the whole round trip is
recorded with that fill's side. The policy is explicit instead of guessed.

Position flips (Buy 1, Sell 2) do not cross zero exactly, so the batch keeps
accumulating until net size really returns to zero.
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from tradejournal.ledger import (
    Fill,
    Instrument,
    MarginMode,
    Price,
    Side,
    Size,
    Trade,
    TradeSide,
    TradeStatus,
    closed_identity,
)

# tolerance for float accumulation when deciding net size is back to zero
SIZE_EPSILON = 1e-6


class Phase(Enum):
    FLAT = "FLAT"
    ACCUMULATING = "ACCUMULATING"


@dataclass(slots=True)
class OpenBatch:
    """Fills since the last zero crossing that never flattened."""

    instrument: Instrument
    fills: list[Fill]
    net_size: Size

    @property
    def side(self) -> TradeSide:
        return side_of(self.fills[0])

    @property
    def opened_at(self) -> datetime.datetime:
        return self.fills[0].timestamp

    @property
    def fees(self) -> float:
        return sum(f.fee for f in self.fills)


@dataclass(slots=True)
class RoundTripTracker:
    """Zero-crossing state machine for a single instrument."""

    instrument: Instrument
    epsilon: float = SIZE_EPSILON
    net_size: Size = 0.0
    batch: list[Fill] = field(default_factory=list)

    @property
    def phase(self) -> Phase:
        return Phase.ACCUMULATING if self.batch else Phase.FLAT

    def add(self, fill: Fill) -> list[Fill] | None:
        """Feed one fill. Returns the completed batch when net size flattens."""
        self.batch.append(fill)
        self.net_size += fill.signed_size

        if abs(self.net_size) < self.epsilon:
            done = self.batch
            self.batch = []
            self.net_size = 0.0
            return done

        return None

    def remainder(self) -> OpenBatch | None:
        if self.phase is Phase.FLAT:
            return None

        return OpenBatch(self.instrument, list(self.batch), self.net_size)


@dataclass(slots=True)
class AggregateResult:
    trades: list[Trade] = field(default_factory=list)
    open_batches: dict[Instrument, OpenBatch] = field(default_factory=dict)

    # batches that flattened but couldn't produce prices (a leg with no size)
    skipped: int = 0

    # round trips that closed before the cutoff
    before_cutoff: int = 0


def side_of(fill: Fill) -> TradeSide:
    return TradeSide.LONG if fill.side is Side.BUY else TradeSide.SHORT


def weighted_price(fills: list[Fill]) -> Price | None:
    """Size-weighted average price, or None when the leg has no size."""
    size = sum(f.size for f in fills)
    if size <= 0:
        return None

    return sum(f.volume for f in fills) / size


def build_trade(instrument: Instrument, batch: list[Fill]) -> Trade | None:
    """Turn one flattened batch into a closed Trade.

    Returns None if either leg is empty, since there is no average price to
    report for it.
    """
    side = side_of(batch[0])
    buys = [f for f in batch if f.side is Side.BUY]
    sells = [f for f in batch if f.side is Side.SELL]
    entries, exits = (buys, sells) if side.is_long else (sells, buys)

    entry = weighted_price(entries)
    exit = weighted_price(exits)
    if entry is None or exit is None:
        return None

    opened = batch[0].timestamp
    closed = batch[-1].timestamp

    return Trade(
        instrument=instrument,
        side=side,
        entry_price=entry,
        exit_price=exit,
        size=sum(f.size for f in entries),
        fees=sum(f.fee for f in batch),
        funding_fees=0.0,
        opened_at=opened,
        closed_at=closed,
        leverage=1.0,
        margin_mode=MarginMode.CROSS,
        status=TradeStatus.CLOSED,
        identity=closed_identity(instrument, opened, closed, side),
    )


def aggregate(
    fills: Iterable[Fill],
    cutoff: datetime.datetime | None = None,
    epsilon: float = SIZE_EPSILON,
) -> AggregateResult:
    """Group fills by instrument and emit a closed Trade per round trip.

    Fills before 'cutoff' still move net size (so later state is right), but
    round trips that closed before it are not emitted.
    """
    if cutoff is not None and cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=datetime.timezone.utc)

    byInstrument: dict[Instrument, list[Fill]] = defaultdict(list)
    for fill in fills:
        byInstrument[fill.instrument].append(fill)

    result = AggregateResult()

    for instrument in sorted(byInstrument):
        tracker = RoundTripTracker(instrument, epsilon)

        # sorted() is stable, so fills sharing a timestamp keep input order
        for fill in sorted(byInstrument[instrument], key=lambda f: f.timestamp):
            if not (batch := tracker.add(fill)):
                continue

            if cutoff is not None and batch[-1].timestamp < cutoff:
                result.before_cutoff += 1
                continue

            if not (trade := build_trade(instrument, batch)):
                result.skipped += 1
                logger.warning(
                    "Skipping {} round trip closed at {}: leg has no size",
                    instrument,
                    batch[-1].timestamp,
                )
                continue

            result.trades.append(trade)

        if remainder := tracker.remainder():
            result.open_batches[instrument] = remainder

    logger.debug(
        "Aggregated {} closed trade(s), {} open batch(es), {} skipped, {} before cutoff",
        len(result.trades),
        len(result.open_batches),
        result.skipped,
        result.before_cutoff,
    )

    return result
