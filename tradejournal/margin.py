"""Margin, liquidation, and position-adding (DCA) math for perpetual positions.

Everything here is a pure function of its inputs. Invalid input returns None
instead of raising, and nothing returns NaN or infinity.

LIQUIDATION PRICE:
==================

Sizes are NOTIONAL (dollar value at entry), so units = notional / entry.

Effective collateral is what is really left to absorb losses:

    effective = (walletEquity if CROSS else initialCollateral) - tradingFees - fundingFees

Funding is signed: positive means we paid (less collateral), negative means
we received (more collateral).

    LONG:  liq = (notional - effective) / (units * (1 - mmr))
    SHORT: liq = (notional + effective) / (units * (1 + mmr))

Example: LONG $1,000 notional at $100 with $100 isolated collateral, no fees,
0.5% mmr: units = 10, liq = (1000 - 100) / (10 * 0.995) = $90.45, 9.55% away.

The liquidation price is clamped at zero. Distance is measured from entry
toward the liquidation side, so a healthy position always has positive
distance:

    LONG:  (entry - liq) / entry * 100
    SHORT: (liq - entry) / entry * 100
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from tradejournal.ledger import MarginMode, Percent, Price, TradeSide


def mn(val):
    """format numeric input as money"""
    return f"${val:,.2f}".replace("$-", "-$")


def finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


@dataclass(slots=True, frozen=True)
class LiquidationInput:
    entryPrice: Price

    # notional position value in quote currency, not units
    notionalSize: float

    initialCollateral: float = 0.0
    tradingFees: float = 0.0

    # positive = paid, negative = received
    fundingFees: float = 0.0

    marginMode: MarginMode = MarginMode.ISOLATED

    # fraction, e.g. 0.005 for 0.5%
    maintenanceMarginRate: float = 0.005

    side: TradeSide = TradeSide.LONG

    # only read for CROSS margin
    walletEquity: float = 0.0

    @property
    def collateral(self) -> float:
        """Nominal collateral backing the position for its margin mode."""
        if self.marginMode is MarginMode.CROSS:
            return self.walletEquity

        return self.initialCollateral

    @property
    def effectiveCollateral(self) -> float:
        return self.collateral - self.tradingFees - self.fundingFees


@dataclass(slots=True, frozen=True)
class LiquidationResult:
    liquidationPrice: Price
    distancePct: Percent
    effectiveCollateral: float

    def __repr__(self):
        return f"LIQ {mn(self.liquidationPrice)} ({self.distancePct:.2f}% away; collateral {mn(self.effectiveCollateral)})"


def liquidation(inp: LiquidationInput) -> LiquidationResult | None:
    """Liquidation price and distance for a position, or None if undefined."""
    if not finite(
        inp.entryPrice,
        inp.notionalSize,
        inp.initialCollateral,
        inp.tradingFees,
        inp.fundingFees,
        inp.maintenanceMarginRate,
        inp.walletEquity,
    ):
        return None

    if inp.entryPrice <= 0 or inp.notionalSize <= 0:
        return None

    units = inp.notionalSize / inp.entryPrice
    effective = inp.effectiveCollateral

    if inp.side.is_long:
        denominator = units * (1 - inp.maintenanceMarginRate)
        numerator = inp.notionalSize - effective
    else:
        denominator = units * (1 + inp.maintenanceMarginRate)
        numerator = inp.notionalSize + effective

    # mmr >= 100% (or <= -100% for shorts) means no liquidation price exists
    if denominator <= 0:
        return None

    liq = max(0.0, numerator / denominator)

    if inp.side.is_long:
        distance = (inp.entryPrice - liq) / inp.entryPrice * 100
    else:
        distance = (liq - inp.entryPrice) / inp.entryPrice * 100

    if not finite(liq, distance):
        return None

    return LiquidationResult(
        liquidationPrice=liq, distancePct=distance, effectiveCollateral=effective
    )


@dataclass(slots=True, frozen=True)
class Addition:
    """Hypothetical extra entry added to an existing position."""

    price: Price

    # notional, same units as LiquidationInput.notionalSize
    size: float

    # only read for ISOLATED margin
    collateral: float = 0.0

    @property
    def valid(self) -> bool:
        return (
            finite(self.price, self.size, self.collateral)
            and self.price > 0
            and self.size > 0
            and self.collateral >= 0
        )


@dataclass(slots=True, frozen=True)
class DcaProjection:
    entryPrice: Price
    size: float
    collateral: float
    result: LiquidationResult


@dataclass(slots=True, frozen=True)
class RiskAssessment:
    """Current liquidation plus the projection after an addition (if any)."""

    current: LiquidationResult | None
    projected: DcaProjection | None = None


def project_dca(inp: LiquidationInput, add: Addition | None) -> DcaProjection | None:
    """Projected entry and liquidation after adding 'add' to the position in 'inp'.

    New entry is the notional-weighted harmonic mean of both entries:

        newSize  = size1 + size2
        newUnits = size1 / entry1 + size2 / entry2
        newEntry = newSize / newUnits

    ISOLATED adds the extra collateral; CROSS keeps referencing wallet equity.
    Fees, funding, side, mode, and mmr carry over unchanged.

    Returns None unless both the current position and the addition are fully
    valid, so no half-computed projection is ever shown.
    """
    if add is None or not add.valid:
        return None

    if not finite(inp.entryPrice, inp.notionalSize, inp.initialCollateral):
        return None

    if inp.entryPrice <= 0 or inp.notionalSize <= 0:
        return None

    newSize = inp.notionalSize + add.size
    newUnits = inp.notionalSize / inp.entryPrice + add.size / add.price
    newEntry = newSize / newUnits

    if inp.marginMode is MarginMode.CROSS:
        newCollateral = inp.initialCollateral
    else:
        newCollateral = inp.initialCollateral + add.collateral

    projected = replace(
        inp,
        entryPrice=newEntry,
        notionalSize=newSize,
        initialCollateral=newCollateral,
    )

    if not (result := liquidation(projected)):
        return None

    return DcaProjection(
        entryPrice=newEntry,
        size=newSize,
        collateral=projected.collateral,
        result=result,
    )


def assess(inp: LiquidationInput, add: Addition | None = None) -> RiskAssessment:
    """Current/projected liquidation pair for the risk display."""
    return RiskAssessment(current=liquidation(inp), projected=project_dca(inp, add))


@dataclass(slots=True, frozen=True)
class RiskSize:
    # notional position size needed
    positionSize: float
    lossAmount: float
    units: float


def position_size_for_risk(
    balance: float, riskPct: Percent, entryPrice: Price, stopLoss: Price
) -> RiskSize | None:
    """Size a position so hitting 'stopLoss' loses 'riskPct' percent of 'balance'.

    Example: $10,000 balance risking 1% with entry $100 and stop $95 means a
    5% adverse move may cost $100, so the position is $2,000 (20 units).
    """
    if not finite(balance, riskPct, entryPrice, stopLoss):
        return None

    if entryPrice <= 0 or stopLoss <= 0 or entryPrice == stopLoss:
        return None

    lossAmount = balance * (riskPct / 100)
    priceDiffPct = abs(entryPrice - stopLoss) / entryPrice
    positionSize = lossAmount / priceDiffPct

    return RiskSize(
        positionSize=positionSize,
        lossAmount=lossAmount,
        units=positionSize / entryPrice,
    )
