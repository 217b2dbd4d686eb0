"""
Order execution: position sizing, fill price resolution and the position
ledger.

Local records are written only after the broker confirms an order. If that
write then fails the local ledger disagrees with the broker; this is logged
as critical and left for reconciliation rather than retried.

Exits for every position go through position_lock, and the stored position
is re-read under it before any sell order is placed.
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional

from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.config import get_config_value, to_decimal
from gap_pullback.exceptions import PositionError
from gap_pullback.logging_utils import log_error_with_context, log_signal, log_trade
from gap_pullback.models import (
    CloseReason,
    OrderResponse,
    OrderType,
    Position,
    Signal,
    SignalType,
    Trade,
    TradeSide,
    WatchRecord,
    WatchState,
    floor_quantity,
)
from gap_pullback.storage import TradingStore


@dataclass
class EntryResult:
    """Outcome of an entry attempt. Rejection is an expected result."""
    accepted: bool
    position: Optional[Position] = None
    trade: Optional[Trade] = None
    reason: str = ""

    @classmethod
    def rejected(cls, reason: str) -> "EntryResult":
        return cls(accepted=False, reason=reason)


@dataclass
class ExitResult:
    """Outcome of a (partial) exit."""
    success: bool
    quantity: int = 0
    price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    trade: Optional[Trade] = None
    reason: str = ""

    @classmethod
    def failed(cls, reason: str) -> "ExitResult":
        return cls(success=False, reason=reason)


class OrderExecutor:
    """
    Places entry and exit orders and keeps positions consistent with fills.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: TradingStore,
        config: Dict,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_fn: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize order executor.

        Args:
            broker: Broker used for orders and fill lookups
            store: Position, trade and signal persistence
            config: Full application configuration
            sleep_fn: Used between fill lookups
            now_fn: Clock for record timestamps
        """
        self.broker = broker
        self.store = store
        self.config = config
        self._sleep = sleep_fn
        self._now = now_fn
        self.position_lock = threading.RLock()

        self.position_size_ratio = to_decimal(get_config_value(config, 'risk.position_size_ratio', 0.1))
        self.stop_loss_pct = to_decimal(get_config_value(config, 'risk.stop_loss_pct', 1.5))
        self.max_position_size = to_decimal(get_config_value(config, 'bot.max_position_size', 5_000_000))
        self.fill_max_retries = int(get_config_value(config, 'execution.fill_max_retries', 3))
        self.fill_retry_delay = float(get_config_value(config, 'execution.fill_retry_delay_seconds', 0.5))
        self.fee_rate = to_decimal(get_config_value(config, 'execution.fee_rate', 0.00015))

        logger.info(
            f"OrderExecutor initialized | "
            f"Size ratio: {self.position_size_ratio}, "
            f"Max size: {self.max_position_size}, "
            f"Stop loss: {self.stop_loss_pct}%, "
            f"Fill retries: {self.fill_max_retries}"
        )

    # -- sizing -----------------------------------------------------------------

    def calculate_position_size(
        self,
        available_cash: Decimal,
        price: Decimal,
        buyable_quantity: Optional[int] = None
    ) -> int:
        """
        Shares to buy: min(cash x ratio, max size) / price, rounded down.

        Args:
            available_cash: Cash available for orders
            price: Reference price
            buyable_quantity: Broker-reported cap, if known

        Returns:
            Quantity, 0 when nothing can be bought
        """
        if available_cash <= 0 or price <= 0:
            return 0

        budget = min(available_cash * self.position_size_ratio, self.max_position_size)
        qty = floor_quantity(budget / price)
        if buyable_quantity is not None:
            qty = min(qty, buyable_quantity)

        logger.debug(
            f"Position sizing | Cash: {available_cash}, Budget: {budget}, "
            f"Price: {price}, Buyable: {buyable_quantity}, Qty: {qty}"
        )
        return max(qty, 0)

    def _fee(self, price: Decimal, quantity: int) -> Decimal:
        return (price * quantity * self.fee_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    # -- fill price -------------------------------------------------------------

    def resolve_fill_price(
        self,
        response: OrderResponse,
        code: str,
        fallback: Optional[Decimal] = None
    ) -> Optional[Decimal]:
        """
        Determine the executed price of a confirmed order.

        Order of preference: weighted average of the fills in the response,
        order-detail lookups with linear backoff, latest quote, fallback.

        Args:
            response: Successful broker response
            code: Instrument code
            fallback: Reference price used when nothing else is available

        Returns:
            Fill price, or None if no price source answered
        """
        price = response.fill_price()
        if price is not None:
            return price

        if response.order_id:
            for attempt in range(1, self.fill_max_retries + 1):
                self._sleep(self.fill_retry_delay * attempt)
                detail = self.broker.get_order_detail(response.order_id)
                price = detail.fill_price() if detail is not None else None
                if price is not None:
                    logger.debug(f"Fill price for {response.order_id} resolved on lookup {attempt}: {price}")
                    return price
            logger.warning(
                f"Order {response.order_id} fill not reported after {self.fill_max_retries} lookups; "
                f"using market price"
            )

        quote = self.broker.get_quote(code)
        if quote is not None:
            return quote.current_price
        return fallback

    # -- entries ----------------------------------------------------------------

    def open_position(self, record: WatchRecord) -> EntryResult:
        """
        Buy at market for an ENTRY_READY watch record.

        Args:
            record: Watch record to enter

        Returns:
            EntryResult; rejected without side effects when sizing inputs
            are unavailable or the broker does not confirm the order
        """
        code = record.code
        if record.state != WatchState.ENTRY_READY:
            return EntryResult.rejected(f"state is {record.state.value}")

        if any(p.code == code for p in self.store.find_open_positions()):
            return EntryResult.rejected("position already open")

        quote = self.broker.get_quote(code)
        if quote is None or quote.current_price <= 0:
            return EntryResult.rejected("quote unavailable")
        price = quote.current_price

        cash = self.broker.get_available_cash()
        if cash is None:
            return EntryResult.rejected("available cash unavailable")
        if cash <= 0:
            return EntryResult.rejected(f"insufficient cash {cash}")

        buyable = self.broker.get_buyable_quantity(code, price)
        if buyable is None:
            return EntryResult.rejected("buyable quantity unavailable")

        quantity = self.calculate_position_size(cash, price, buyable)
        if quantity <= 0:
            return EntryResult.rejected("position size is zero")

        response = self.broker.place_order(code, quantity, TradeSide.BUY)
        if response is None:
            logger.error(f"Buy order for {code} returned no response")
            return EntryResult.rejected("no broker response")
        if not response.success:
            logger.error(f"Buy order for {code} rejected by broker: {response.message}")
            return EntryResult.rejected(f"broker rejected order: {response.message}")

        fill_price = self.resolve_fill_price(response, code, fallback=price)
        now = self._now()

        trade = Trade(
            order_id=response.order_id or "",
            code=code,
            side=TradeSide.BUY,
            order_type=OrderType.MARKET,
            requested_quantity=quantity,
            requested_price=price,
            created_at=now,
        )
        trade.mark_filled(fill_price, quantity, self._fee(fill_price, quantity), now)

        try:
            position = Position.open(
                code=code,
                trading_date=record.trading_date,
                entry_price=fill_price,
                quantity=quantity,
                stop_loss_pct=self.stop_loss_pct,
                day_high=record.high_after_open,
                watch_record_id=record.id,
                now=now,
            )
            trade.position_id = position.id
            self.store.save_trade(trade)
            self.store.save_position(position)

            record.mark_entered(fill_price, now)
            self.store.save_watch_record(record)
            self._mark_entry_signal_executed(record, position)
        except Exception as e:
            logger.critical(
                f"Buy order {response.order_id} for {code} filled but local records failed; "
                f"reconcile with broker"
            )
            log_error_with_context(e, "Recording entry failed", code=code, order_id=response.order_id)
            return EntryResult.rejected(f"recording failed: {e}")

        log_trade(
            "BUY", code, quantity, fill_price,
            order_id=response.order_id,
            stop_loss=position.stop_loss_price,
        )
        logger.info(
            f"Position opened for {code}: {quantity} shares @ {fill_price}, "
            f"SL={position.stop_loss_price}"
        )
        return EntryResult(accepted=True, position=position, trade=trade)

    def _mark_entry_signal_executed(self, record: WatchRecord, position: Position) -> None:
        for signal in self.store.find_signals(record.trading_date, record.code):
            if signal.signal_type == SignalType.PULLBACK_ENTRY and not signal.executed:
                signal.mark_executed()
                signal.position_id = position.id
                self.store.save_signal(signal)

    # -- exits ------------------------------------------------------------------

    def execute_partial_exit(
        self,
        position: Position,
        quantity: int,
        price: Optional[Decimal],
        reason: CloseReason
    ) -> ExitResult:
        """
        Sell part (or all) of a position at market.

        Args:
            position: Position to reduce; updated in place on success
            quantity: Shares to sell
            price: Reference price that triggered the exit
            reason: Exit reason

        Returns:
            ExitResult; failures leave the position untouched
        """
        with self.position_lock:
            return self._execute_exit(position, quantity, price, reason)

    def _execute_exit(
        self,
        position: Position,
        quantity: int,
        price: Optional[Decimal],
        reason: CloseReason
    ) -> ExitResult:
        code = position.code
        stored = self.store.find_position(position.id)
        if stored is not None and (
            stored.remaining_quantity != position.remaining_quantity
            or stored.status != position.status
        ):
            logger.warning(
                f"Exit rejected for {code}: position {position.id} changed since it was read "
                f"(remaining {stored.remaining_quantity}, {stored.status.value})"
            )
            return ExitResult.failed("stale position")
        try:
            position.validate_exit(quantity, reason)
        except PositionError as e:
            logger.warning(f"Exit rejected for {code}: {e}")
            return ExitResult.failed(str(e))

        logger.info(f"Executing {reason.value} exit for {code}: {quantity} shares (ref {price})")

        response = self.broker.place_order(code, quantity, TradeSide.SELL)
        if response is None:
            logger.error(f"Sell order for {code} returned no response")
            return ExitResult.failed("no broker response")
        if not response.success:
            logger.error(f"Sell order for {code} rejected by broker: {response.message}")
            return ExitResult.failed(f"broker rejected order: {response.message}")

        fill_price = self.resolve_fill_price(response, code, fallback=price)
        if fill_price is None:
            logger.critical(
                f"Sell order {response.order_id} for {code} accepted but no price could be "
                f"resolved; reconcile with broker"
            )
            return ExitResult.failed("fill price unavailable")

        now = self._now()
        trade = Trade(
            order_id=response.order_id or "",
            code=code,
            side=TradeSide.SELL,
            order_type=OrderType.MARKET,
            requested_quantity=quantity,
            requested_price=price,
            position_id=position.id,
            exit_reason=reason,
            created_at=now,
        )
        trade.mark_filled(fill_price, quantity, self._fee(fill_price, quantity), now)

        try:
            pnl = position.apply_exit(quantity, fill_price, reason, now)
            self.store.save_trade(trade)
            self.store.save_position(position)
            self._save_exit_signal(position, reason, fill_price, quantity, pnl, now)
            if position.is_closed:
                self._mark_watch_record_exited(position, now)
        except Exception as e:
            logger.critical(
                f"Sell order {response.order_id} for {code} filled but local records failed; "
                f"reconcile with broker"
            )
            log_error_with_context(e, "Recording exit failed", code=code, order_id=response.order_id)
            return ExitResult.failed(f"recording failed: {e}")

        log_trade(
            f"SELL_{reason.value}", code, quantity, fill_price,
            order_id=response.order_id,
            pnl=pnl,
            remaining=position.remaining_quantity,
        )
        return ExitResult(success=True, quantity=quantity, price=fill_price, pnl=pnl, trade=trade)

    def close_position(
        self,
        position: Position,
        price: Optional[Decimal],
        reason: CloseReason
    ) -> ExitResult:
        """
        Sell the entire remaining quantity.

        The stored position is authoritative; a stale copy passed in is
        replaced by it before sizing the order.
        """
        with self.position_lock:
            stored = self.store.find_position(position.id)
            if stored is not None and (
                stored.remaining_quantity != position.remaining_quantity
                or stored.status != position.status
            ):
                position = stored
            if position.remaining_quantity <= 0 or position.is_closed:
                return ExitResult.failed("nothing to close")
            return self._execute_exit(position, position.remaining_quantity, price, reason)

    def _save_exit_signal(
        self,
        position: Position,
        reason: CloseReason,
        price: Decimal,
        quantity: int,
        pnl: Decimal,
        now: datetime
    ) -> None:
        signal_type = reason.signal_type
        metrics = {
            'quantity': quantity,
            'pnl': pnl,
            'remaining': position.remaining_quantity,
            'entry_price': position.entry_price,
        }
        signal = Signal(
            code=position.code,
            signal_type=signal_type,
            trading_date=position.trading_date,
            price=price,
            metrics=metrics,
            reason=reason.value,
            position_id=position.id,
            signal_time=now,
        )
        signal.mark_executed()
        self.store.save_signal(signal)
        log_signal(signal_type.value, position.code, reason.value, **metrics)

    def _mark_watch_record_exited(self, position: Position, now: datetime) -> None:
        if not position.watch_record_id:
            return
        record = self.store.find_watch_record_by_id(position.watch_record_id)
        if record is None or record.state != WatchState.ENTERED:
            return
        record.mark_exited(now)
        self.store.save_watch_record(record)
