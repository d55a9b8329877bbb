import datetime

import pytest

from tradejournal.ledger import Fill, Side, TradeSide, TradeStatus, closed_identity
from tradejournal.roundtrip import (
    Phase,
    RoundTripTracker,
    aggregate,
    build_trade,
    weighted_price,
)

EXAMPLE_DATE = datetime.datetime(2024, 3, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def at(minutes: float) -> datetime.datetime:
    return EXAMPLE_DATE + datetime.timedelta(minutes=minutes)


def buy(size, price, minutes, instrument="BTC", fee=0.0):
    return Fill(instrument, Side.BUY, price, size, at(minutes), fee)


def sell(size, price, minutes, instrument="BTC", fee=0.0):
    return Fill(instrument, Side.SELL, price, size, at(minutes), fee)


def test_zero_crossing_single_trade():
    result = aggregate([buy(1, 100, 0), sell(1, 110, 5)])

    assert len(result.trades) == 1
    t = result.trades[0]
    assert t.side is TradeSide.LONG
    assert t.entry_price == 100
    assert t.exit_price == 110
    assert t.size == 1
    assert t.status is TradeStatus.CLOSED
    assert t.opened_at == at(0)
    assert t.closed_at == at(5)
    assert t.funding_fees == 0
    assert t.identity == closed_identity("BTC", at(0), at(5), TradeSide.LONG)
    assert result.open_batches == {}


def test_partial_fills_average():
    result = aggregate([buy(0.5, 100, 0), buy(0.5, 200, 1), sell(1, 300, 2)])

    t = result.trades[0]
    assert t.side is TradeSide.LONG
    assert t.entry_price == pytest.approx(150)
    assert t.exit_price == pytest.approx(300)
    assert t.size == pytest.approx(1)


def test_short_round_trip():
    result = aggregate(
        [sell(2, 50, 0, fee=0.1), buy(1, 45, 1, fee=0.05), buy(1, 40, 2, fee=0.05)]
    )

    t = result.trades[0]
    assert t.side is TradeSide.SHORT
    assert t.entry_price == pytest.approx(50)
    assert t.exit_price == pytest.approx(42.5)
    assert t.size == pytest.approx(2)
    assert t.fees == pytest.approx(0.2)
    assert t.pnl == pytest.approx(15 - 0.2)


def test_unsorted_input_is_sorted():
    result = aggregate([sell(1, 110, 5), buy(1, 100, 0)])

    assert len(result.trades) == 1
    assert result.trades[0].side is TradeSide.LONG
    assert result.trades[0].entry_price == 100


def test_back_to_back_round_trips():
    result = aggregate(
        [
            buy(1, 100, 0),
            sell(1, 110, 1),
            sell(2, 120, 2),
            buy(2, 115, 3),
            buy(1, 90, 4),
        ]
    )

    assert [t.side for t in result.trades] == [TradeSide.LONG, TradeSide.SHORT]
    assert result.trades[1].entry_price == 120
    assert result.trades[1].exit_price == 115
    assert result.trades[1].opened_at == at(2)

    # trailing buy never flattened
    batch = result.open_batches["BTC"]
    assert batch.side is TradeSide.LONG
    assert batch.net_size == pytest.approx(1)
    assert batch.opened_at == at(4)


def test_float_accumulation_within_epsilon():
    fills = [buy(0.1, 100, i) for i in range(3)] + [sell(0.3, 101, 10)]

    result = aggregate(fills)

    # 0.1 + 0.1 + 0.1 - 0.3 is not exactly zero in floating point
    assert len(result.trades) == 1
    assert result.trades[0].size == pytest.approx(0.3)


def test_open_trailing_position_not_emitted():
    result = aggregate([buy(1, 100, 0), sell(0.4, 105, 1)])

    assert result.trades == []
    assert result.open_batches["BTC"].net_size == pytest.approx(0.6)


def test_instruments_tracked_independently():
    result = aggregate(
        [
            buy(1, 100, 0, "BTC"),
            sell(3, 10, 1, "ETH"),
            sell(1, 120, 2, "BTC"),
            buy(3, 12, 3, "ETH"),
        ]
    )

    byInstrument = {t.instrument: t for t in result.trades}
    assert byInstrument["BTC"].side is TradeSide.LONG
    assert byInstrument["ETH"].side is TradeSide.SHORT
    assert byInstrument["ETH"].pnl == pytest.approx(-6)


def test_cutoff_filters_closed_before_but_tracks_size():
    fills = [
        buy(1, 100, 0),
        sell(1, 110, 5),
        # leaves +1 open across the cutoff
        buy(1, 120, 10),
        buy(1, 130, 70),
        sell(2, 140, 80),
    ]

    result = aggregate(fills, cutoff=at(60))

    assert result.before_cutoff == 1
    assert len(result.trades) == 1

    t = result.trades[0]
    assert t.opened_at == at(10)
    assert t.entry_price == pytest.approx(125)
    assert t.exit_price == pytest.approx(140)


def test_cutoff_naive_is_utc():
    result = aggregate(
        [buy(1, 100, 0), sell(1, 110, 5)], cutoff=at(60).replace(tzinfo=None)
    )
    assert result.trades == []
    assert result.before_cutoff == 1


def test_naive_fills_with_cutoff():
    naive = [
        Fill("BTC", Side.BUY, 100, 1, at(0).replace(tzinfo=None)),
        Fill("BTC", Side.SELL, 110, 1, at(5).replace(tzinfo=None)),
        Fill("BTC", Side.BUY, 120, 1, at(90).replace(tzinfo=None)),
        Fill("BTC", Side.SELL, 130, 1, at(95).replace(tzinfo=None)),
    ]

    result = aggregate(naive, cutoff=at(60).replace(tzinfo=None))

    assert result.before_cutoff == 1
    assert len(result.trades) == 1
    assert result.trades[0].opened_at == at(90)
    assert result.trades[0].closed_at.tzinfo is not None


def test_mixed_naive_and_aware_fills_sort_together():
    result = aggregate(
        [
            Fill("BTC", Side.SELL, 110, 1, at(5).replace(tzinfo=None)),
            buy(1, 100, 0),
        ]
    )

    assert len(result.trades) == 1
    assert result.trades[0].side is TradeSide.LONG
    assert result.trades[0].exit_price == 110


def test_dust_batch_with_one_leg_is_skipped():
    # smaller than epsilon by itself, so it "flattens" with no exit leg
    result = aggregate([buy(1e-7, 100, 0), buy(1, 100, 1), sell(1, 101, 2)])

    assert result.skipped == 1
    assert len(result.trades) == 1
    assert result.trades[0].opened_at == at(1)


def test_first_fill_defines_side():
    # a tiny sell first makes this whole cycle a SHORT by policy
    result = aggregate([sell(0.1, 100, 0), buy(1, 100, 1), sell(0.9, 110, 2)])

    t = result.trades[0]
    assert t.side is TradeSide.SHORT
    assert t.size == pytest.approx(1.0)
    assert t.entry_price == pytest.approx((0.1 * 100 + 0.9 * 110) / 1.0)
    assert t.exit_price == pytest.approx(100)


def test_tracker_phases():
    tr = RoundTripTracker("BTC")
    assert tr.phase is Phase.FLAT
    assert tr.remainder() is None

    assert tr.add(buy(1, 100, 0)) is None
    assert tr.phase is Phase.ACCUMULATING

    done = tr.add(sell(1, 100, 1))
    assert len(done) == 2
    assert tr.phase is Phase.FLAT
    assert tr.net_size == 0


def test_weighted_price_empty():
    assert weighted_price([]) is None
    assert build_trade("BTC", [buy(1, 100, 0)]) is None


def test_identity_is_stable_across_runs():
    fills = [buy(0.5, 100, 0), buy(0.5, 200, 1), sell(1, 300, 2)]
    first = aggregate(fills)
    second = aggregate(list(reversed(fills)))

    assert [t.identity for t in first.trades] == [t.identity for t in second.trades]
    assert first.trades == second.trades
