"""Ledger data model for the trading journal.

Three kinds of records flow through the reconciliation engine:

- Fill: one executed exchange leg (instrument, side, price, size, fee, timestamp).
  Fills are the raw evidence; they carry no "trade" boundary of their own.
- OpenPosition: what the exchange reports as currently held for an instrument.
  This snapshot is authoritative for leverage, margin mode, and funding.
- Trade: a journal entry. Either reconstructed from fills (one open-then-close
  cycle), represented from the live snapshot (still open), or written by hand.

DATA CONVENTIONS:
=================

1. FILL LEVEL:
   - price: ALWAYS positive
   - size: ALWAYS positive (direction lives in `side`, never in the size sign)
   - signed_size: +size for BUY, -size for SELL
   - fee: SIGNED (positive is paid, negative is a maker rebate)
   - timestamp: ALWAYS timezone-aware UTC (naive values are read as UTC)

2. OPEN POSITION LEVEL:
   - signed_size: SIGNED (positive is long, negative is short)
   - entry_price: ALWAYS positive

3. TRADE LEVEL:
   - size: ALWAYS positive (instrument units, not notional)
   - side: LONG or SHORT
   - identity: stable derived key for synthesized trades, None for manual trades

IDENTITY:
=========

Synthesized trades are keyed so repeated reconciliation runs target the same
ledger slot instead of appending copies:

- closed round trips: "{instrument}:{openedAt ms}:{closedAt ms}:{side}"
- live open positions: "{instrument}:active"
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeAlias

Instrument: TypeAlias = str
Identity: TypeAlias = str
Price: TypeAlias = float
Size: TypeAlias = float
Percent: TypeAlias = float


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeSide(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def is_long(self) -> bool:
        return self is TradeSide.LONG


class TradeStatus(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class MarginMode(Enum):
    ISOLATED = "ISOLATED"
    CROSS = "CROSS"


ACTIVE = "active"


def millis(when: datetime.datetime) -> int:
    """Epoch milliseconds for 'when' (naive datetimes are treated as UTC)."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)

    return int(round(when.timestamp() * 1000))


def closed_identity(
    instrument: Instrument,
    opened: datetime.datetime,
    closed: datetime.datetime,
    side: TradeSide,
) -> Identity:
    return f"{instrument}:{millis(opened)}:{millis(closed)}:{side.value}"


def active_identity(instrument: Instrument) -> Identity:
    return f"{instrument}:{ACTIVE}"


@dataclass(slots=True, frozen=True)
class Fill:
    """A single executed exchange leg.

    Validation happens here so nothing downstream ever sees a zero-size fill
    or a negative price. The normalizer catches the ValueError and counts the
    record as dropped.
    """

    instrument: Instrument
    side: Side
    price: Price
    size: Size
    timestamp: datetime.datetime

    # positive = paid, negative = maker rebate
    fee: float = 0.0

    def __post_init__(self):
        if not self.instrument:
            raise ValueError("Fill requires an instrument")

        for name in ("price", "size", "fee"):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"Fill {name} must be finite")

        if self.price <= 0:
            raise ValueError(f"Fill price must be positive, got {self.price}")

        if self.size <= 0:
            raise ValueError(f"Fill size must be positive, got {self.size}")

        if not isinstance(self.timestamp, datetime.datetime):
            raise TypeError(f"Fill timestamp must be a datetime, got {self.timestamp!r}")

        # frozen, so normalize through object.__setattr__
        if self.timestamp.tzinfo is None:
            object.__setattr__(
                self, "timestamp", self.timestamp.replace(tzinfo=datetime.timezone.utc)
            )
        else:
            object.__setattr__(
                self, "timestamp", self.timestamp.astimezone(datetime.timezone.utc)
            )

    @property
    def signed_size(self) -> Size:
        return self.size if self.side is Side.BUY else -self.size

    @property
    def volume(self) -> float:
        return self.price * self.size


@dataclass(slots=True, frozen=True)
class OpenPosition:
    """Exchange-reported open position for one instrument."""

    instrument: Instrument
    signed_size: Size
    entry_price: Price
    leverage: float = 1.0
    margin_mode: MarginMode = MarginMode.CROSS

    # positive = funding paid, negative = funding received
    cumulative_funding: float = 0.0

    def __post_init__(self):
        if not self.instrument:
            raise ValueError("OpenPosition requires an instrument")

        for name in ("signed_size", "entry_price", "leverage", "cumulative_funding"):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"OpenPosition {name} must be finite")

        if self.entry_price <= 0:
            raise ValueError(
                f"OpenPosition entry price must be positive, got {self.entry_price}"
            )

        if self.leverage <= 0:
            raise ValueError(
                f"OpenPosition leverage must be positive, got {self.leverage}"
            )

    @property
    def side(self) -> TradeSide:
        return TradeSide.LONG if self.signed_size > 0 else TradeSide.SHORT

    @property
    def size(self) -> Size:
        return abs(self.signed_size)


@dataclass(slots=True)
class Trade:
    """One journal entry.

    Synthesized trades (round trips and live positions) carry an `identity`;
    trades written by hand leave it as None and reconciliation never touches them.

    The journal annotations (stop_loss, notes, confidence) belong to the user
    and survive when a reconciliation run refreshes a synthesized trade.
    """

    instrument: Instrument
    side: TradeSide
    entry_price: Price
    size: Size
    opened_at: datetime.datetime
    status: TradeStatus = TradeStatus.OPEN
    exit_price: Price | None = None
    closed_at: datetime.datetime | None = None
    fees: float = 0.0
    funding_fees: float = 0.0
    leverage: float = 1.0
    margin_mode: MarginMode = MarginMode.CROSS
    identity: Identity | None = None

    stop_loss: Price | None = None
    notes: list[str] = field(default_factory=list)
    confidence: int | None = None

    @property
    def is_long(self) -> bool:
        return self.side.is_long

    @property
    def synthesized(self) -> bool:
        return self.identity is not None

    @property
    def notional(self) -> float:
        return self.entry_price * self.size

    @property
    def pnl(self) -> float:
        """Realized profit after fees and funding; 0 while the trade is open."""
        if (
            self.status is not TradeStatus.CLOSED
            or self.exit_price is None
            or not self.entry_price
            or not self.size
        ):
            return 0.0

        move = self.exit_price - self.entry_price
        if not self.is_long:
            move = -move

        return move * self.size - self.fees - self.funding_fees

    @property
    def pnl_pct(self) -> Percent:
        if not self.notional:
            return 0.0

        return self.pnl / self.notional * 100

    @property
    def initial_risk(self) -> float | None:
        """Dollar loss if the stop is hit, or None without a stop."""
        if not self.entry_price or not self.stop_loss or not self.size:
            return None

        return abs(self.entry_price - self.stop_loss) * self.size

    def annotated_from(self, previous: Trade) -> Trade:
        """Carry the user's journal annotations over from 'previous'."""
        self.stop_loss = previous.stop_loss
        self.notes = list(previous.notes)
        self.confidence = previous.confidence
        return self
