"""
Tests for entities, DTO metrics and the position ledger.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import TRADING_DATE, make_orderbook, make_quote, make_watch_record
from gap_pullback.exceptions import InvalidStateTransition, PositionError
from gap_pullback.models import (
    WATCH_TRANSITIONS,
    CloseReason,
    OrderDetail,
    OrderFill,
    OrderResponse,
    Position,
    PositionStatus,
    SignalType,
    Trade,
    TradeSide,
    TradeStatus,
    WatchState,
    apply_pct,
    percent_change,
    weighted_average_price,
)


def _position(entry="10000", qty=100) -> Position:
    return Position.open(
        code="005930",
        trading_date=TRADING_DATE,
        entry_price=Decimal(entry),
        quantity=qty,
        stop_loss_pct=Decimal("1.5"),
        now=datetime(2024, 3, 4, 9, 30),
    )


class TestDecimalHelpers:

    def test_percent_change_rounds_half_up(self):
        assert percent_change(Decimal("10001.5"), Decimal("10000")) == Decimal("0.0150")
        assert percent_change(Decimal("1"), Decimal("3")) == Decimal("-66.6667")

    def test_percent_change_without_base(self):
        assert percent_change(Decimal("100"), None) is None
        assert percent_change(Decimal("100"), Decimal("0")) is None

    def test_apply_pct(self):
        assert apply_pct(Decimal("10000"), Decimal("-1.5")) == Decimal("9850.00")
        assert apply_pct(Decimal("10000"), Decimal("1.5")) == Decimal("10150.00")


class TestQuoteMetrics:

    def test_gap_percent(self):
        assert make_quote("A", 10200, open_price=10200, prev_close=10000).gap_percent() == Decimal("2.0000")
        assert make_quote("A", 10100, open_price=10100, prev_close=10000).gap_percent() == Decimal("1.0000")

    def test_gap_percent_without_prev_close(self):
        assert make_quote("A", 100, prev_close=0).gap_percent() == Decimal("0")

    def test_trade_strength(self):
        assert make_quote("A", 100, buy_volume=1234, sell_volume=1000).trade_strength() == Decimal("123.40")
        assert make_quote("A", 100, buy_volume=10, sell_volume=0).trade_strength() == Decimal("0")

    def test_orderbook_spread_and_imbalance(self):
        book = make_orderbook("A", ask="10010", bid="10000", total_ask=1000, total_bid=1500)
        assert book.spread_percent() == Decimal("0.1000")
        assert book.order_imbalance() == Decimal("1.5000")

    def test_orderbook_without_asks(self):
        book = make_orderbook("A", total_ask=0)
        assert book.order_imbalance() is None
        book.asks = []
        assert book.spread_percent() is None


class TestFillPrices:

    def test_weighted_average_of_fills(self):
        fills = [
            OrderFill(price=Decimal("10000"), quantity=30),
            OrderFill(price=Decimal("10010"), quantity=70),
        ]
        assert weighted_average_price(fills) == Decimal("10007.00")
        assert OrderResponse(success=True, order_id="1", fills=fills).fill_price() == Decimal("10007.00")

    def test_response_without_fills(self):
        assert OrderResponse(success=True, order_id="1").fill_price() is None

    def test_order_detail_average_price(self):
        detail = OrderDetail(order_id="1", filled_quantity=10, average_price=Decimal("10005.456"))
        assert detail.fill_price() == Decimal("10005.46")
        assert OrderDetail(order_id="1", filled_quantity=0, average_price=Decimal("1")).fill_price() is None


class TestWatchRecord:

    def test_from_quote_copies_metrics(self):
        quote = make_quote("005930", 10250, open_price=10200, prev_close=10000)
        record = make_watch_record()
        record = record.from_quote(quote, TRADING_DATE, spread_percent=Decimal("0.1"))
        assert record.state == WatchState.WATCHING
        assert record.gap_percent == Decimal("2.0000")
        assert record.trade_strength == Decimal("120.00")
        assert record.spread_percent == Decimal("0.1")

    def test_update_current_price_extends_range(self):
        record = make_watch_record()
        record.update_current_price(Decimal("10300"))
        record.update_current_price(Decimal("9900"))
        assert record.high_price == Decimal("10300")
        assert record.low_price == Decimal("9900")
        assert record.current_price == Decimal("9900")

    def test_follows_declared_graph(self):
        record = make_watch_record()
        for state in (
            WatchState.HIGH_FORMED,
            WatchState.PULLBACK,
            WatchState.ENTRY_READY,
            WatchState.ENTERED,
            WatchState.EXITED,
        ):
            record.transition_to(state)
        assert record.state.is_terminal

    @pytest.mark.parametrize("source", list(WatchState))
    def test_rejects_moves_outside_graph(self, source):
        for target in WatchState:
            record = make_watch_record(state=source)
            if target in WATCH_TRANSITIONS[source]:
                record.transition_to(target)
                assert record.state == target
            else:
                with pytest.raises(InvalidStateTransition):
                    record.transition_to(target)

    def test_no_skipping_states(self):
        record = make_watch_record()
        with pytest.raises(InvalidStateTransition):
            record.transition_to(WatchState.PULLBACK)
        with pytest.raises(InvalidStateTransition):
            record.transition_to(WatchState.FILTERED_OUT)

    def test_active_states(self):
        assert WatchState.ENTRY_READY.is_active
        assert not WatchState.ENTERED.is_active
        assert WatchState.FILTERED_OUT.is_terminal

    def test_mark_entered_records_price(self):
        record = make_watch_record(state=WatchState.ENTRY_READY)
        record.mark_entered(Decimal("10020"))
        assert record.state == WatchState.ENTERED
        assert record.entry_price == Decimal("10020")


class TestPosition:

    def test_stop_loss_price_fixed_at_entry(self):
        position = _position()
        assert position.stop_loss_price == Decimal("9850")
        assert position.should_stop_loss(Decimal("9849"))
        assert position.should_stop_loss(Decimal("9850"))
        assert not position.should_stop_loss(Decimal("9851"))

    def test_open_rejects_empty_quantity(self):
        with pytest.raises(PositionError):
            _position(qty=0)

    def test_take_profit_tiers(self):
        position = _position()
        tp1 = position.tp1_quantity(Decimal("0.5"))
        assert tp1 == 50
        position.apply_exit(tp1, Decimal("10150"), CloseReason.TP1)
        assert position.remaining_quantity == 50
        assert position.status == PositionStatus.PARTIAL

        tp2 = position.tp2_quantity(Decimal("0.6"))
        assert tp2 == 30
        position.apply_exit(tp2, Decimal("10200"), CloseReason.TP2)
        assert position.remaining_quantity == 20

        tp3 = position.tp3_quantity()
        assert tp3 == 20
        position.apply_exit(tp3, Decimal("10300"), CloseReason.TP3)
        assert position.remaining_quantity == 0
        assert position.status == PositionStatus.CLOSED
        assert position.close_reason == CloseReason.TP3
        assert position.closed_at is not None

    def test_ledger_totals(self):
        position = _position()
        position.apply_exit(50, Decimal("10150"), CloseReason.TP1)
        position.apply_exit(30, Decimal("10200"), CloseReason.TP2)
        assert position.total_exit_quantity == 80
        assert position.remaining_quantity == position.entry_quantity - position.total_exit_quantity
        assert position.realized_pnl == Decimal("13500")
        # (50 x 10150 + 30 x 10200) / 80
        assert position.avg_exit_price == Decimal("10168.75")
        assert position.realized_pnl_pct == Decimal("1.6875")

    def test_exit_returns_pnl(self):
        position = _position()
        pnl = position.apply_exit(100, Decimal("9849"), CloseReason.STOP_LOSS)
        assert pnl == Decimal("-15100")
        assert position.is_closed

    def test_over_exit_rejected(self):
        position = _position()
        with pytest.raises(PositionError):
            position.apply_exit(101, Decimal("10000"), CloseReason.TIME_EXIT)
        assert position.remaining_quantity == 100

    def test_non_positive_exit_rejected(self):
        with pytest.raises(PositionError):
            _position().apply_exit(0, Decimal("10000"), CloseReason.TIME_EXIT)

    def test_exit_on_closed_position_rejected(self):
        position = _position()
        position.apply_exit(100, Decimal("10000"), CloseReason.TIME_EXIT)
        with pytest.raises(PositionError):
            position.apply_exit(1, Decimal("10000"), CloseReason.EMERGENCY)

    def test_tp_order_enforced(self):
        position = _position()
        with pytest.raises(PositionError):
            position.apply_exit(10, Decimal("10200"), CloseReason.TP2)
        with pytest.raises(PositionError):
            position.apply_exit(10, Decimal("10200"), CloseReason.TP3)
        position.apply_exit(50, Decimal("10150"), CloseReason.TP1)
        with pytest.raises(PositionError):
            position.apply_exit(10, Decimal("10150"), CloseReason.TP1)
        with pytest.raises(PositionError):
            position.apply_exit(10, Decimal("10300"), CloseReason.TP3)

    def test_tp_predicates_are_gated(self):
        position = _position()
        position.update_day_high(Decimal("10200"))
        assert not position.should_tp2(Decimal("10300"))
        assert position.should_tp1(Decimal("10150"), Decimal("1.5"))
        assert not position.should_tp1(Decimal("10149"), Decimal("1.5"))
        position.apply_exit(50, Decimal("10150"), CloseReason.TP1)
        assert not position.should_tp1(Decimal("10500"), Decimal("1.5"))
        assert position.should_tp2(Decimal("10200"))
        assert not position.should_tp3(Decimal("10500"), Decimal("1.0"))

    def test_small_tiers_round_down_to_zero(self):
        position = _position(qty=1)
        assert position.tp1_quantity(Decimal("0.5")) == 0

        position = _position(qty=2)
        position.apply_exit(1, Decimal("10150"), CloseReason.TP1)
        assert position.tp2_quantity(Decimal("0.6")) == 0
        assert position.tp3_quantity() == 1

    def test_trailing_stop_only_rises(self):
        position = _position()
        position.activate_trailing_stop(Decimal("10200"), Decimal("0.8"))
        assert position.trailing_stop_price == Decimal("10118.40")

        stops = [position.trailing_stop_price]
        for price in ("10100", "10300", "10250", "10400", "10150"):
            position.update_trailing_stop(Decimal(price), Decimal("0.8"))
            stops.append(position.trailing_stop_price)
        assert stops == sorted(stops)
        assert position.trailing_high == Decimal("10400")
        assert position.should_trailing_stop(Decimal("10316.80"))

    def test_trailing_inactive_never_triggers(self):
        position = _position()
        assert not position.should_trailing_stop(Decimal("1"))
        assert not position.update_trailing_stop(Decimal("20000"), Decimal("0.8"))

    def test_day_high_is_monotonic(self):
        position = _position()
        position.update_day_high(Decimal("10300"))
        position.update_day_high(Decimal("10100"))
        position.update_day_high(None)
        assert position.day_high_price == Decimal("10300")

    def test_unrealized_and_holding_time(self):
        position = _position()
        assert position.unrealized_pnl(Decimal("10100")) == Decimal("10000")
        assert position.unrealized_pnl_pct(Decimal("10100")) == Decimal("1.0000")
        assert position.holding_minutes(datetime(2024, 3, 4, 9, 45, 30)) == 15


class TestSignalsAndTrades:

    def test_exit_reasons_map_to_signals(self):
        assert CloseReason.STOP_LOSS.signal_type == SignalType.STOP_LOSS_EXIT
        assert CloseReason.TRAILING_STOP.signal_type == SignalType.TRAILING_EXIT
        assert CloseReason.EMERGENCY.signal_type == SignalType.EMERGENCY_EXIT
        assert all(reason.signal_type.is_exit for reason in CloseReason)
        assert SignalType.PULLBACK_ENTRY.is_entry
        assert not SignalType.GAP_DETECTED.is_exit

    def test_trade_fill_status(self):
        trade = Trade(order_id="1", code="A", side=TradeSide.BUY, requested_quantity=10)
        assert trade.status == TradeStatus.PENDING
        trade.mark_filled(Decimal("100"), 10)
        assert trade.status == TradeStatus.FILLED
        assert trade.executed_amount == Decimal("1000")

        partial = Trade(order_id="2", code="A", side=TradeSide.SELL, requested_quantity=10)
        partial.mark_filled(Decimal("100"), 4)
        assert partial.status == TradeStatus.PARTIAL
