"""Strict parsing boundary between exchange payloads and the engine.

Exchange records arrive as loosely typed mappings where numbers are often
strings and field names depend on who produced them. Everything past this
module only sees validated Fill / OpenPosition values.

Rule: reject on ambiguity. A record we can't read with certainty is dropped
and counted instead of being guessed at.
"""

from __future__ import annotations

import datetime
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import arrow  # type: ignore
from loguru import logger

from tradejournal.ledger import Fill, MarginMode, OpenPosition, Side

SIDES = {
    "buy": Side.BUY,
    "b": Side.BUY,
    "bid": Side.BUY,
    "long": Side.BUY,
    "sell": Side.SELL,
    "s": Side.SELL,
    "a": Side.SELL,
    "ask": Side.SELL,
    "short": Side.SELL,
}

MARGIN_MODES = {
    "cross": MarginMode.CROSS,
    "isolated": MarginMode.ISOLATED,
}


@dataclass(slots=True)
class NormalizedFills:
    fills: list[Fill] = field(default_factory=list)
    dropped: int = 0


@dataclass(slots=True)
class NormalizedPositions:
    positions: dict[str, OpenPosition] = field(default_factory=dict)
    dropped: int = 0


def pick(raw: Mapping[str, Any], *names: str) -> Any:
    """Return the first present key of 'names' or raise KeyError."""
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]

    raise KeyError(f"missing {names[0]}")


def number(value: Any) -> float:
    # bool is an int subclass, but True is not a price
    if isinstance(value, bool):
        raise TypeError(f"Refusing boolean as number: {value}")

    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        result = float(value.strip())
    else:
        raise TypeError(f"Not a number: {value!r}")

    if not math.isfinite(result):
        raise ValueError(f"Not a finite number: {value!r}")

    return result


def timestamp(value: Any) -> datetime.datetime:
    """Parse epoch milliseconds, ISO-8601 strings, or datetimes into aware UTC."""
    if isinstance(value, bool):
        raise TypeError(f"Refusing boolean as timestamp: {value}")

    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)

        return value.astimezone(datetime.timezone.utc)

    if isinstance(value, str):
        value = value.strip()
        try:
            value = float(value)
        except ValueError:
            # arrow raises its own ParserError (a ValueError subclass) on garbage
            return arrow.get(value).to("UTC").datetime

    ms = number(value)
    if ms < 0:
        raise ValueError(f"Negative timestamp: {ms}")

    try:
        return datetime.datetime.fromtimestamp(ms / 1000, tz=datetime.timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {ms}") from e


def side(value: Any) -> Side:
    if isinstance(value, Side):
        return value

    if not isinstance(value, str):
        raise TypeError(f"Side must be a string, got {value!r}")

    try:
        return SIDES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown side: {value!r}") from None


def instrument(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid instrument: {value!r}")

    return value.strip()


def margin_mode(value: Any) -> MarginMode:
    if isinstance(value, MarginMode):
        return value

    if not isinstance(value, str):
        raise TypeError(f"Margin mode must be a string, got {value!r}")

    try:
        return MARGIN_MODES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown margin mode: {value!r}") from None


def parse_fill(raw: Mapping[str, Any]) -> Fill:
    """Convert one raw fill record into a Fill (raises on anything unreadable)."""
    fee = raw.get("fee")

    return Fill(
        instrument=instrument(pick(raw, "instrument", "coin", "symbol")),
        side=side(pick(raw, "side")),
        price=number(pick(raw, "price", "px")),
        size=number(pick(raw, "size", "sz")),
        fee=0.0 if fee is None else number(fee),
        timestamp=timestamp(pick(raw, "timestampMillis", "time", "timestamp")),
    )


def parse_position(raw: Mapping[str, Any]) -> OpenPosition:
    """Convert one raw open-position record.

    Accepts our flat shape as well as the exchange's nested shape where
    leverage is {"type": "cross", "value": 5} and funding is
    {"sinceOpen": "1.2", ...}.
    """
    lev = pick(raw, "leverage")
    mode = raw.get("marginModeTag") or raw.get("marginMode")
    if isinstance(lev, Mapping):
        mode = mode or lev.get("type")
        lev = pick(lev, "value")

    funding = raw.get("cumulativeFunding", raw.get("cumFunding"))
    if isinstance(funding, Mapping):
        funding = pick(funding, "sinceOpen")

    return OpenPosition(
        instrument=instrument(pick(raw, "instrument", "coin", "symbol")),
        signed_size=number(pick(raw, "signedSize", "szi")),
        entry_price=number(pick(raw, "entryPrice", "entryPx")),
        leverage=number(lev),
        margin_mode=margin_mode(mode) if mode is not None else MarginMode.CROSS,
        cumulative_funding=0.0 if funding is None else number(funding),
    )


def normalize_fills(records: Iterable[Mapping[str, Any]]) -> NormalizedFills:
    """Validate raw fill records, dropping (and counting) anything malformed."""
    result = NormalizedFills()

    for raw in records:
        try:
            if not isinstance(raw, Mapping):
                raise TypeError(f"Fill record is not a mapping: {type(raw).__name__}")

            result.fills.append(parse_fill(raw))
        except (KeyError, TypeError, ValueError) as e:
            result.dropped += 1
            logger.debug("Dropping fill {}: {}", raw, e)

    if result.dropped:
        logger.warning(
            "Dropped {} malformed fill(s), kept {}", result.dropped, len(result.fills)
        )

    return result


def normalize_positions(records: Iterable[Mapping[str, Any]]) -> NormalizedPositions:
    """Validate an open-position snapshot into at most one position per instrument.

    Flat (zero size) positions are not open and are skipped without counting
    as malformed. A repeated instrument keeps the last record and counts the
    earlier one as dropped.
    """
    result = NormalizedPositions()

    for raw in records:
        try:
            if not isinstance(raw, Mapping):
                raise TypeError(
                    f"Position record is not a mapping: {type(raw).__name__}"
                )

            pos = parse_position(raw)
        except (KeyError, TypeError, ValueError) as e:
            result.dropped += 1
            logger.debug("Dropping position {}: {}", raw, e)
            continue

        if pos.signed_size == 0:
            continue

        if pos.instrument in result.positions:
            result.dropped += 1
            logger.debug("Duplicate position for {}, keeping latest", pos.instrument)

        result.positions[pos.instrument] = pos

    if result.dropped:
        logger.warning(
            "Dropped {} malformed position(s), kept {}",
            result.dropped,
            len(result.positions),
        )

    return result
