"""
Tests for the pullback detection state machine.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import TRADING_DATE, make_orderbook, make_watch_record
from gap_pullback.models import SignalType, WatchState
from gap_pullback.pullback import (
    Observation,
    PullbackDetector,
    PullbackParams,
    apply_transition,
    entry_rejection,
    is_bounce_confirmed,
    next_transition,
)

PARAMS = PullbackParams()
T0 = datetime(2024, 3, 4, 9, 15)


def _obs(price, minutes=0, strength="120", imbalance="1.5") -> Observation:
    return Observation(
        price=Decimal(str(price)),
        now=T0 + timedelta(minutes=minutes),
        trade_strength=Decimal(strength) if strength is not None else None,
        order_imbalance=Decimal(imbalance) if imbalance is not None else None,
    )


def _pullback_record(low="9700", high="10000", started=T0):
    return make_watch_record(
        state=WatchState.PULLBACK,
        high_after_open=Decimal(high),
        pullback_low=Decimal(low),
        pullback_start_at=started,
    )


class TestNextTransition:

    def test_watching_to_high_formed(self):
        record = make_watch_record()
        t = next_transition(record, _obs("10150"), PARAMS)
        assert t.state == WatchState.HIGH_FORMED
        assert t.high_after_open == Decimal("10150")
        assert t.signal == SignalType.HIGH_FORMED

    def test_watching_below_threshold(self):
        t = next_transition(make_watch_record(), _obs("10149"), PARAMS)
        assert t.state == WatchState.WATCHING
        assert t.signal is None

    def test_high_formed_tracks_new_high(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10150"))
        t = next_transition(record, _obs("10200"), PARAMS)
        assert t.state == WatchState.HIGH_FORMED
        assert t.high_after_open == Decimal("10200")

    def test_high_formed_to_pullback(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10000"))
        t = next_transition(record, _obs("9850"), PARAMS)
        assert t.state == WatchState.PULLBACK
        assert t.pullback_low == Decimal("9850")
        assert t.pullback_started

    def test_shallow_drop_keeps_waiting(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10000"))
        assert next_transition(record, _obs("9900"), PARAMS).state == WatchState.HIGH_FORMED

    def test_deep_drop_filters_out_before_pullback(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10000"))
        t = next_transition(record, _obs("9690"), PARAMS)
        assert t.state == WatchState.FILTERED_OUT
        assert t.signal == SignalType.FILTERED_OUT

    def test_drop_at_max_pullback_still_enters(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10000"))
        assert next_transition(record, _obs("9700"), PARAMS).state == WatchState.PULLBACK

    def test_pullback_low_tracks_running_minimum(self):
        record = _pullback_record(low="9800")
        t = next_transition(record, _obs("9750", minutes=1), PARAMS)
        assert t.state == WatchState.PULLBACK
        assert t.pullback_low == Decimal("9750")

        apply_transition(record, t, T0 + timedelta(minutes=1))
        t = next_transition(record, _obs("9790", minutes=2), PARAMS)
        assert t.pullback_low is None
        assert record.pullback_low == Decimal("9750")

    def test_pullback_over_correction_filters_out(self):
        record = _pullback_record(low="9750")
        assert next_transition(record, _obs("9650", minutes=4), PARAMS).state == WatchState.FILTERED_OUT

    def test_bounce_with_confirmations_is_entry_ready(self):
        t = next_transition(_pullback_record(), _obs("9729.1", minutes=5), PARAMS)
        assert t.state == WatchState.ENTRY_READY
        assert t.signal == SignalType.PULLBACK_ENTRY

    @pytest.mark.parametrize("obs, reason", [
        (_obs("9729.1", minutes=5, strength="100"), "weak trade strength"),
        (_obs("9729.1", minutes=5, imbalance="1.1"), "weak order imbalance"),
        (_obs("9729.1", minutes=5, imbalance=None), "order imbalance unavailable"),
        (_obs("9729.1", minutes=2), "pullback too short"),
        (_obs("9729.1", minutes=16), "pullback too long"),
    ])
    def test_failed_confirmation_holds_state(self, obs, reason):
        t = next_transition(_pullback_record(), obs, PARAMS)
        assert t.state == WatchState.PULLBACK
        assert t.rejection.startswith(reason)
        assert t.signal is None

    def test_terminal_states_do_not_move(self):
        for state in (WatchState.ENTERED, WatchState.EXITED, WatchState.FILTERED_OUT):
            record = make_watch_record(state=state, high_after_open=Decimal("10000"))
            assert next_transition(record, _obs("5000"), PARAMS).state == state


class TestBounce:

    def test_bounce_threshold_boundary(self):
        record = _pullback_record(low="9700")
        assert is_bounce_confirmed(record, Decimal("9729.1"), PARAMS)
        assert not is_bounce_confirmed(record, Decimal("9728"), PARAMS)

    def test_only_in_pullback(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, pullback_low=Decimal("9700"))
        assert not is_bounce_confirmed(record, Decimal("9800"), PARAMS)

    def test_entry_rejection_passes_when_all_hold(self):
        assert entry_rejection(_pullback_record(), _obs("9729.1", minutes=3), PARAMS) is None
        assert entry_rejection(_pullback_record(), _obs("9729.1", minutes=15), PARAMS) is None


class TestApplyTransition:

    def test_records_markers(self):
        record = make_watch_record(state=WatchState.HIGH_FORMED, high_after_open=Decimal("10000"))
        now = T0 + timedelta(minutes=1)
        changed = apply_transition(record, next_transition(record, _obs("9850"), PARAMS), now)
        assert changed
        assert record.state == WatchState.PULLBACK
        assert record.pullback_low == Decimal("9850")
        assert record.pullback_start_at == now

    def test_high_formed_at_keeps_first_formation(self):
        record = make_watch_record()
        apply_transition(record, next_transition(record, _obs("10150"), PARAMS), T0)
        assert record.high_formed_at == T0

        later = T0 + timedelta(minutes=2)
        apply_transition(record, next_transition(record, _obs("10250", minutes=2), PARAMS), later)
        assert record.high_after_open == Decimal("10250")
        assert record.high_formed_at == T0

    def test_unchanged_state_returns_false(self):
        record = make_watch_record()
        assert not apply_transition(record, next_transition(record, _obs("10000"), PARAMS), T0)


class TestPullbackDetector:

    @pytest.fixture
    def detector(self, broker, store, config, clock):
        return PullbackDetector(broker, store, config['entry'], now_fn=clock)

    def test_full_cycle_to_entry_ready(self, detector, broker, store, clock):
        store.save_watch_record(make_watch_record())
        broker.orderbooks["005930"] = make_orderbook("005930")

        clock.set(9, 15)
        broker.set_quote("005930", 10150, open_price=10000)
        detector.update_all(TRADING_DATE)

        clock.set(9, 16)
        broker.set_quote("005930", 9990, open_price=10000)
        detector.update_all(TRADING_DATE)

        clock.set(9, 18)
        broker.set_quote("005930", 9950, open_price=10000)
        detector.update_all(TRADING_DATE)

        clock.set(9, 21)
        broker.set_quote("005930", 9990, open_price=10000)
        stats = detector.update_all(TRADING_DATE)

        assert stats == {'evaluated': 1, 'advanced': 1, 'failed': 0}
        ready = detector.get_entry_ready(TRADING_DATE)
        assert [r.code for r in ready] == ["005930"]
        assert ready[0].pullback_low == Decimal("9950")

        signal_types = [s.signal_type for s in store.find_signals(TRADING_DATE, "005930")]
        assert signal_types == [SignalType.HIGH_FORMED, SignalType.PULLBACK_ENTRY]

    def test_failure_isolated_per_record(self, detector, broker, store):
        store.save_watch_record(make_watch_record("BAD"))
        store.save_watch_record(make_watch_record("GOOD"))
        broker.failing_codes.add("BAD")
        broker.set_quote("GOOD", 10200, open_price=10000)

        stats = detector.update_all(TRADING_DATE)

        assert stats == {'evaluated': 2, 'advanced': 1, 'failed': 1}
        assert store.find_watch_record("GOOD", TRADING_DATE).state == WatchState.HIGH_FORMED
        assert store.find_watch_record("BAD", TRADING_DATE).state == WatchState.WATCHING

    def test_missing_quote_skips(self, detector, store):
        store.save_watch_record(make_watch_record())
        assert detector.update_all(TRADING_DATE) == {'evaluated': 1, 'advanced': 0, 'failed': 0}

    def test_missing_orderbook_blocks_entry(self, detector, broker, store, clock):
        record = _pullback_record(low="9700", started=clock.now - timedelta(minutes=5))
        store.save_watch_record(record)
        broker.set_quote("005930", 9729.1, open_price=10000)

        detector.update_all(TRADING_DATE)

        assert store.find_watch_record("005930", TRADING_DATE).state == WatchState.PULLBACK
