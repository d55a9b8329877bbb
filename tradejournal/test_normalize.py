import datetime

import pytest

from tradejournal.ledger import Fill, MarginMode, OpenPosition, Side
from tradejournal.normalize import (
    normalize_fills,
    normalize_positions,
    parse_fill,
    timestamp,
)

EXAMPLE_MS = 1_700_000_000_000
EXAMPLE_DATE = datetime.datetime.fromtimestamp(
    EXAMPLE_MS / 1000, tz=datetime.timezone.utc
)


def raw(**kw):
    base = dict(
        instrument="BTC",
        side="Buy",
        price="100.5",
        size="0.25",
        fee="0.01",
        timestampMillis=EXAMPLE_MS,
    )
    base.update(kw)
    return base


def test_parse_fill():
    fill = parse_fill(raw())
    assert fill == Fill(
        instrument="BTC",
        side=Side.BUY,
        price=100.5,
        size=0.25,
        fee=0.01,
        timestamp=EXAMPLE_DATE,
    )


def test_parse_exchange_shape():
    fill = parse_fill(
        dict(coin="ETH", side="A", px="2000", sz="1.5", fee="0.3", time=EXAMPLE_MS)
    )
    assert fill.instrument == "ETH"
    assert fill.side is Side.SELL
    assert fill.signed_size == -1.5
    assert fill.timestamp == EXAMPLE_DATE


def test_timestamp_formats():
    assert timestamp(EXAMPLE_MS) == EXAMPLE_DATE
    assert timestamp(str(EXAMPLE_MS)) == EXAMPLE_DATE
    assert timestamp("2023-11-14T22:13:20Z") == EXAMPLE_DATE
    assert timestamp(EXAMPLE_DATE.replace(tzinfo=None)) == EXAMPLE_DATE


def test_missing_fee_is_zero():
    r = raw()
    del r["fee"]
    assert parse_fill(r).fee == 0.0


@pytest.mark.parametrize(
    "bad",
    [
        dict(price="0"),
        dict(price="-1"),
        dict(size="0"),
        dict(size="-2"),
        dict(price="nan"),
        dict(size="inf"),
        dict(price=True),
        dict(price="abc"),
        dict(side="sideways"),
        dict(side=1),
        dict(instrument=""),
        dict(timestampMillis="not a date"),
        dict(timestampMillis=-5),
        dict(timestampMillis=None),
    ],
)
def test_rejects_malformed(bad):
    result = normalize_fills([raw(**bad)])
    assert result.fills == []
    assert result.dropped == 1


def test_drops_are_counted_not_fatal():
    records = [raw(), raw(price="0"), "garbage", raw(side="Sell"), {}]
    result = normalize_fills(records)
    assert len(result.fills) == 2
    assert result.dropped == 3


def test_fill_validates_itself():
    with pytest.raises(ValueError):
        Fill("BTC", Side.BUY, price=-1, size=1, timestamp=EXAMPLE_DATE)

    with pytest.raises(ValueError):
        Fill("BTC", Side.BUY, price=1, size=0, timestamp=EXAMPLE_DATE)


def test_negative_fee_is_a_rebate():
    result = normalize_fills([raw(fee="-0.02")])

    assert result.dropped == 0
    assert result.fills[0].fee == -0.02


def test_fill_timestamp_is_utc():
    naive = EXAMPLE_DATE.replace(tzinfo=None)
    f = Fill("BTC", Side.BUY, price=1, size=1, timestamp=naive)
    assert f.timestamp == EXAMPLE_DATE

    tokyo = datetime.timezone(datetime.timedelta(hours=9))
    f = Fill("BTC", Side.BUY, price=1, size=1, timestamp=EXAMPLE_DATE.astimezone(tokyo))
    assert f.timestamp.utcoffset() == datetime.timedelta(0)
    assert f.timestamp == EXAMPLE_DATE

    with pytest.raises(TypeError):
        Fill("BTC", Side.BUY, price=1, size=1, timestamp=EXAMPLE_MS)


def test_positions_flat_shape():
    result = normalize_positions(
        [
            dict(
                instrument="BTC",
                signedSize="-0.5",
                entryPrice="30000",
                leverage=10,
                marginModeTag="isolated",
                cumulativeFunding="1.25",
            )
        ]
    )

    assert result.dropped == 0
    assert result.positions == {
        "BTC": OpenPosition(
            instrument="BTC",
            signed_size=-0.5,
            entry_price=30000.0,
            leverage=10.0,
            margin_mode=MarginMode.ISOLATED,
            cumulative_funding=1.25,
        )
    }


def test_positions_exchange_shape():
    result = normalize_positions(
        [
            dict(
                coin="ETH",
                szi="2.0",
                entryPx="1800.5",
                leverage=dict(type="cross", value=5),
                cumFunding=dict(allTime="9.0", sinceOpen="-0.75", sinceChange="0"),
            )
        ]
    )

    pos = result.positions["ETH"]
    assert pos.margin_mode is MarginMode.CROSS
    assert pos.leverage == 5.0
    assert pos.cumulative_funding == -0.75
    assert pos.size == 2.0


def test_positions_skip_flat_and_bad():
    result = normalize_positions(
        [
            dict(instrument="BTC", signedSize="0", entryPrice="100", leverage=1),
            dict(instrument="ETH", signedSize="1", entryPrice="0", leverage=1),
            dict(instrument="SOL", signedSize="1", entryPrice="20", leverage=1),
            dict(
                instrument="DOGE",
                signedSize="1",
                entryPrice="1",
                leverage=1,
                marginModeTag="portfolio",
            ),
        ]
    )

    assert list(result.positions) == ["SOL"]
    assert result.dropped == 2


def test_positions_duplicate_keeps_latest():
    result = normalize_positions(
        [
            dict(instrument="BTC", signedSize="1", entryPrice="100", leverage=1),
            dict(instrument="BTC", signedSize="2", entryPrice="110", leverage=2),
        ]
    )

    assert result.positions["BTC"].signed_size == 2.0
    assert result.dropped == 1
