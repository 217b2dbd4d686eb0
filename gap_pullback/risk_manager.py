"""
Exit rules for open positions: stop loss, trailing stop, three take-profit
tiers, the daily time exit and emergency liquidation.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.config import get_config_value, to_decimal
from gap_pullback.execution_engine import OrderExecutor
from gap_pullback.logging_utils import log_error_with_context
from gap_pullback.models import CloseReason, Position
from gap_pullback.storage import TradingStore


@dataclass(frozen=True)
class ExitDecision:
    reason: CloseReason
    quantity: int


class RiskManager:
    """
    Evaluates exit rules against every open position once per cycle.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: TradingStore,
        executor: OrderExecutor,
        config: Dict
    ):
        """
        Initialize risk manager.

        Args:
            broker: Quote source
            store: Position persistence
            executor: Places the exit orders
            config: Full application configuration
        """
        self.broker = broker
        self.store = store
        self.executor = executor
        self.config = config

        self.trailing_stop_pct = to_decimal(get_config_value(config, 'risk.trailing_stop_pct', 0.8))
        self.tp1_pct = to_decimal(get_config_value(config, 'exit.tp1_pct', 1.5))
        self.tp1_ratio = to_decimal(get_config_value(config, 'exit.tp1_ratio', 0.5))
        self.tp2_ratio = to_decimal(get_config_value(config, 'exit.tp2_ratio', 0.6))
        self.tp3_pct = to_decimal(get_config_value(config, 'exit.tp3_pct', 1.0))

        # Alert notifier reference (will be set externally)
        self.notifier = None

        logger.info(
            f"RiskManager initialized | "
            f"TP1: +{self.tp1_pct}% x{self.tp1_ratio}, TP2: day high x{self.tp2_ratio}, "
            f"TP3: day high +{self.tp3_pct}%, Trailing: {self.trailing_stop_pct}%"
        )

    def evaluate_position(
        self,
        position: Position,
        price: Decimal,
        day_high: Optional[Decimal] = None
    ) -> Optional[ExitDecision]:
        """
        Apply the exit rules in priority order; the first match wins.

        Once the stops have passed, the position's day high is refreshed on
        every cycle whatever the take-profit outcome. TP2 and TP3 compare
        against the high established by earlier cycles.

        Args:
            position: Open position
            price: Current price
            day_high: Intraday high reported with the quote

        Returns:
            ExitDecision, or None if the position should be held. A
            take-profit tier that rounds down to zero shares is skipped.
        """
        if position.should_stop_loss(price):
            return ExitDecision(CloseReason.STOP_LOSS, position.remaining_quantity)

        if position.should_trailing_stop(price):
            return ExitDecision(CloseReason.TRAILING_STOP, position.remaining_quantity)

        decision = None
        if position.should_tp1(price, self.tp1_pct):
            decision = ExitDecision(CloseReason.TP1, position.tp1_quantity(self.tp1_ratio))
        elif position.should_tp2(price):
            decision = ExitDecision(CloseReason.TP2, position.tp2_quantity(self.tp2_ratio))
        elif position.should_tp3(price, self.tp3_pct):
            decision = ExitDecision(CloseReason.TP3, position.tp3_quantity())

        if decision is not None and decision.quantity <= 0:
            logger.debug(f"{decision.reason.value} for {position.code} rounds to zero shares; holding")
            decision = None

        position.update_day_high(day_high)
        position.update_day_high(price)
        return decision

    def update_trailing_stop(self, position: Position, price: Decimal) -> None:
        """Activate the trailing stop once TP1 is done, then ratchet it up."""
        if position.is_closed or not position.tp1_executed:
            return
        if not position.trailing_active:
            position.activate_trailing_stop(price, self.trailing_stop_pct)
            logger.info(
                f"Trailing stop activated for {position.code}: "
                f"high={position.trailing_high}, stop={position.trailing_stop_price}"
            )
        elif position.update_trailing_stop(price, self.trailing_stop_pct):
            logger.debug(
                f"Trailing stop raised for {position.code}: "
                f"high={position.trailing_high}, stop={position.trailing_stop_price}"
            )

    def check_position(self, position: Position) -> Optional[CloseReason]:
        """
        Run one risk pass for a single position.

        Holds the executor's position lock and works on the stored copy.

        Returns:
            Reason of the exit executed this cycle, if any
        """
        with self.executor.position_lock:
            current = self.store.find_position(position.id)
            if current is not None:
                position = current
            if position.is_closed:
                return None
            return self._check_locked(position)

    def _check_locked(self, position: Position) -> Optional[CloseReason]:
        quote = self.broker.get_quote(position.code)
        if quote is None:
            logger.debug(f"Risk check skipped {position.code}: quote unavailable")
            return None

        price = quote.current_price
        decision = self.evaluate_position(position, price, quote.high_price)
        executed = None

        if decision is not None:
            result = self.executor.execute_partial_exit(position, decision.quantity, price, decision.reason)
            if result.success:
                executed = decision.reason
                logger.info(
                    f"{decision.reason.value} executed for {position.code}: "
                    f"{result.quantity} @ {result.price}, pnl={result.pnl}, "
                    f"remaining={position.remaining_quantity}"
                )
            else:
                logger.warning(f"{decision.reason.value} for {position.code} not executed: {result.reason}")

        if not position.is_closed:
            self.update_trailing_stop(position, price)
            self.store.save_position(position)
        return executed

    def check_all_positions(self) -> Dict[str, int]:
        """
        Risk pass over every open position.

        Returns:
            Counts of checked positions, executed exits and failures
        """
        stats = {'checked': 0, 'exits': 0, 'failed': 0}
        for position in self.store.find_open_positions():
            stats['checked'] += 1
            try:
                if self.check_position(position) is not None:
                    stats['exits'] += 1
            except Exception as e:
                stats['failed'] += 1
                log_error_with_context(e, "Risk check failed", code=position.code, position_id=position.id)
        return stats

    def execute_time_exit(self) -> Dict[str, int]:
        """Liquidate every open position at the daily cutoff."""
        logger.info("Executing time-based exit for all open positions")
        return self._liquidate_all(CloseReason.TIME_EXIT)

    def emergency_close_all(self) -> Dict[str, int]:
        """Liquidate every open position without evaluating any rule."""
        logger.critical("EMERGENCY close of all open positions requested")
        stats = self._liquidate_all(CloseReason.EMERGENCY)
        if self.notifier:
            self.notifier.send_emergency_summary(stats)
        return stats

    def _liquidate_all(self, reason: CloseReason) -> Dict[str, int]:
        stats = {'closed': 0, 'failed': 0}
        for position in self.store.find_open_positions():
            try:
                quote = self.broker.get_quote(position.code)
                price = quote.current_price if quote is not None else None
                result = self.executor.close_position(position, price, reason)
                if result.success:
                    stats['closed'] += 1
                else:
                    stats['failed'] += 1
                    logger.error(f"{reason.value} failed for {position.code}: {result.reason}")
            except Exception as e:
                stats['failed'] += 1
                log_error_with_context(e, f"{reason.value} failed", code=position.code, position_id=position.id)
        logger.info(f"{reason.value} complete | {stats}")
        return stats
