"""
Pullback detection state machine.

next_transition() is a pure function of a watch record snapshot and the
latest observation; PullbackDetector does the I/O around it.
"""
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.config import to_decimal
from gap_pullback.logging_utils import log_error_with_context, log_signal
from gap_pullback.models import Signal, SignalType, WatchRecord, WatchState, percent_change
from gap_pullback.storage import TradingStore


@dataclass(frozen=True)
class PullbackParams:
    """Thresholds of the detection graph. Percentages are positive."""
    high_threshold_pct: Decimal = Decimal("1.5")
    min_pullback_pct: Decimal = Decimal("1.5")
    max_pullback_pct: Decimal = Decimal("3.0")
    bounce_threshold_pct: Decimal = Decimal("0.3")
    min_trade_strength: Decimal = Decimal("105")
    min_order_imbalance: Decimal = Decimal("1.2")
    min_pullback_minutes: int = 3
    max_pullback_minutes: int = 15

    @classmethod
    def from_config(cls, config: Dict) -> "PullbackParams":
        """Build from the 'entry' configuration section."""
        return cls(
            high_threshold_pct=to_decimal(config.get('high_threshold_pct', 1.5)),
            min_pullback_pct=to_decimal(config.get('min_pullback_pct', 1.5)),
            max_pullback_pct=to_decimal(config.get('max_pullback_pct', 3.0)),
            bounce_threshold_pct=to_decimal(config.get('bounce_threshold_pct', 0.3)),
            min_trade_strength=to_decimal(config.get('min_trade_strength', 105)),
            min_order_imbalance=to_decimal(config.get('min_order_imbalance', 1.2)),
            min_pullback_minutes=int(config.get('min_pullback_minutes', 3)),
            max_pullback_minutes=int(config.get('max_pullback_minutes', 15)),
        )


@dataclass(frozen=True)
class Observation:
    """Latest market view of one instrument."""
    price: Decimal
    now: datetime
    trade_strength: Optional[Decimal] = None
    order_imbalance: Optional[Decimal] = None


@dataclass(frozen=True)
class Transition:
    """
    Result of evaluating one record.

    Fields other than `state` are side effects to apply; None means
    unchanged. `rejection` explains why a confirmed bounce did not advance.
    """
    state: WatchState
    high_after_open: Optional[Decimal] = None
    pullback_low: Optional[Decimal] = None
    pullback_started: bool = False
    signal: Optional[SignalType] = None
    reason: str = ""
    rejection: Optional[str] = None


def is_bounce_confirmed(record: WatchRecord, price: Decimal, params: PullbackParams) -> bool:
    """Bounce measured against the running pullback low including `price`."""
    if record.state != WatchState.PULLBACK or record.pullback_low is None:
        return False
    low = min(record.pullback_low, price)
    bounce = percent_change(price, low)
    return bounce is not None and bounce >= params.bounce_threshold_pct


def pullback_minutes(record: WatchRecord, now: datetime) -> Optional[int]:
    if record.pullback_start_at is None:
        return None
    return int((now - record.pullback_start_at).total_seconds() // 60)


def entry_rejection(
    record: WatchRecord,
    observation: Observation,
    params: PullbackParams
) -> Optional[str]:
    """
    Check the confirmations that must accompany a bounce.

    Returns:
        None when every condition holds, else the first failing reason
    """
    strength = observation.trade_strength
    if strength is None:
        return "trade strength unavailable"
    if strength < params.min_trade_strength:
        return f"weak trade strength {strength} < {params.min_trade_strength}"

    imbalance = observation.order_imbalance
    if imbalance is None:
        return "order imbalance unavailable"
    if imbalance < params.min_order_imbalance:
        return f"weak order imbalance {imbalance} < {params.min_order_imbalance}"

    minutes = pullback_minutes(record, observation.now)
    if minutes is None:
        return "pullback start unknown"
    if minutes < params.min_pullback_minutes:
        return f"pullback too short {minutes}min < {params.min_pullback_minutes}min"
    if minutes > params.max_pullback_minutes:
        return f"pullback too long {minutes}min > {params.max_pullback_minutes}min"
    return None


def next_transition(
    record: WatchRecord,
    observation: Observation,
    params: PullbackParams
) -> Transition:
    """
    Evaluate one watch record against the latest observation.

    Args:
        record: Snapshot of the record; not modified
        observation: Latest price and confirmations
        params: Detection thresholds

    Returns:
        Transition describing the new state and its side effects
    """
    state = record.state
    price = observation.price

    if state == WatchState.WATCHING:
        gain = percent_change(price, record.open_price)
        if gain is not None and gain >= params.high_threshold_pct:
            return Transition(
                state=WatchState.HIGH_FORMED,
                high_after_open=price,
                signal=SignalType.HIGH_FORMED,
                reason=f"+{gain}% from open",
            )
        return Transition(state=state)

    if state == WatchState.HIGH_FORMED:
        # A new high while waiting for the pullback moves the reference up
        if record.high_after_open is None or price > record.high_after_open:
            return Transition(state=state, high_after_open=price)

        drop = percent_change(price, record.high_after_open)
        if drop < -params.max_pullback_pct:
            return Transition(
                state=WatchState.FILTERED_OUT,
                signal=SignalType.FILTERED_OUT,
                reason=f"dropped {drop}% from high",
            )
        if drop <= -params.min_pullback_pct:
            return Transition(
                state=WatchState.PULLBACK,
                pullback_low=price,
                pullback_started=True,
                reason=f"{drop}% from high",
            )
        return Transition(state=state)

    if state == WatchState.PULLBACK:
        drop = percent_change(price, record.high_after_open)
        if drop is not None and drop < -params.max_pullback_pct:
            return Transition(
                state=WatchState.FILTERED_OUT,
                signal=SignalType.FILTERED_OUT,
                reason=f"dropped {drop}% from high during pullback",
            )

        low = record.pullback_low if record.pullback_low is not None else price
        new_low = price if price < low else None

        if not is_bounce_confirmed(record, price, params):
            return Transition(state=state, pullback_low=new_low)

        rejection = entry_rejection(record, observation, params)
        if rejection:
            return Transition(state=state, pullback_low=new_low, rejection=rejection)

        bounce = percent_change(price, min(low, price))
        return Transition(
            state=WatchState.ENTRY_READY,
            pullback_low=new_low,
            signal=SignalType.PULLBACK_ENTRY,
            reason=f"+{bounce}% bounce from pullback low",
        )

    return Transition(state=state)


def apply_transition(record: WatchRecord, transition: Transition, now: datetime) -> bool:
    """
    Apply a transition to the record in place.

    Returns:
        True if the state changed
    """
    if transition.high_after_open is not None:
        record.high_after_open = transition.high_after_open
        if record.high_formed_at is None:
            record.high_formed_at = now
    if transition.pullback_low is not None:
        record.pullback_low = transition.pullback_low
    if transition.pullback_started:
        record.pullback_start_at = now

    if transition.state == record.state:
        return False
    record.transition_to(transition.state, now)
    return True


class PullbackDetector:
    """
    Runs the detection state machine over the active watchlist.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: TradingStore,
        config: Dict,
        now_fn: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize pullback detector.

        Args:
            broker: Market data source
            store: Watch record and signal persistence
            config: The 'entry' configuration section
            now_fn: Clock used for transition timestamps
        """
        self.broker = broker
        self.store = store
        self.params = PullbackParams.from_config(config)
        self._now = now_fn

        logger.info(
            f"PullbackDetector initialized | "
            f"High: +{self.params.high_threshold_pct}%, "
            f"Pullback: [{self.params.min_pullback_pct}%, {self.params.max_pullback_pct}%], "
            f"Bounce: +{self.params.bounce_threshold_pct}%, "
            f"Duration: [{self.params.min_pullback_minutes}, {self.params.max_pullback_minutes}]min"
        )

    def update_all(self, trading_date: date) -> Dict[str, int]:
        """
        Advance every active watch record of the day by one cycle.

        Returns:
            Counts of evaluated, advanced and failed records
        """
        stats = {'evaluated': 0, 'advanced': 0, 'failed': 0}
        for record in self.store.find_active_watch_records(trading_date):
            stats['evaluated'] += 1
            try:
                if self.update_record(record):
                    stats['advanced'] += 1
            except Exception as e:
                stats['failed'] += 1
                log_error_with_context(e, "Pullback update failed", code=record.code)
        return stats

    def update_record(self, record: WatchRecord) -> bool:
        """
        Fetch the latest quote for one record and evaluate it.

        Returns:
            True if the record changed state
        """
        if record.state == WatchState.ENTRY_READY:
            return False

        quote = self.broker.get_quote(record.code)
        if quote is None:
            logger.debug(f"Pullback update skipped {record.code}: quote unavailable")
            return False

        now = self._now()
        price = quote.current_price
        record.update_current_price(price, now)

        imbalance = None
        if is_bounce_confirmed(record, price, self.params):
            orderbook = self.broker.get_orderbook(record.code)
            if orderbook is not None:
                imbalance = orderbook.order_imbalance()

        observation = Observation(
            price=price,
            now=now,
            trade_strength=quote.trade_strength(),
            order_imbalance=imbalance,
        )
        transition = next_transition(record, observation, self.params)
        changed = apply_transition(record, transition, now)

        if transition.rejection:
            logger.info(f"Entry rejected for {record.code}: {transition.rejection}")

        self.store.save_watch_record(record)

        if changed:
            logger.info(
                f"{transition.state.value}: {record.code} at {price}"
                + (f" ({transition.reason})" if transition.reason else "")
            )
        if transition.signal is not None:
            self._save_signal(record, transition, observation)
        return changed

    def _save_signal(self, record: WatchRecord, transition: Transition, observation: Observation) -> None:
        metrics = {
            'high_after_open': record.high_after_open,
            'drop_from_high': record.drop_from_high(),
        }
        if transition.signal == SignalType.PULLBACK_ENTRY:
            metrics.update({
                'pullback_low': record.pullback_low,
                'bounce_from_low': record.bounce_from_low(),
                'trade_strength': observation.trade_strength,
                'order_imbalance': observation.order_imbalance,
            })
        self.store.save_signal(Signal(
            code=record.code,
            signal_type=transition.signal,
            trading_date=record.trading_date,
            price=observation.price,
            metrics=metrics,
            reason=transition.reason,
            signal_time=observation.now,
        ))
        log_signal(transition.signal.value, record.code, transition.reason, **metrics)

    def get_entry_ready(self, trading_date: date) -> List[WatchRecord]:
        return self.store.find_watch_records_by_state(trading_date, [WatchState.ENTRY_READY])
