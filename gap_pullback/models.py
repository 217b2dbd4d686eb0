"""
Domain entities and broker data transfer objects.

Prices and percentages are Decimal throughout. Percentages are rounded
HALF_UP to 4 places, prices to 2 places; quantities always round down.
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from gap_pullback.exceptions import InvalidStateTransition, PositionError

HUNDRED = Decimal("100")
PCT_PLACES = Decimal("0.0001")
PRICE_PLACES = Decimal("0.01")
RATIO_PLACES = Decimal("0.01")


def round_pct(value: Decimal) -> Decimal:
    return value.quantize(PCT_PLACES, rounding=ROUND_HALF_UP)


def round_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)


def floor_quantity(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def percent_change(current: Optional[Decimal], base: Optional[Decimal]) -> Optional[Decimal]:
    """(current - base) / base x 100, or None when either side is missing."""
    if current is None or base is None or base == 0:
        return None
    return round_pct((current - base) * HUNDRED / base)


def apply_pct(price: Decimal, pct: Decimal) -> Decimal:
    """price x (1 + pct/100), rounded to price precision."""
    return round_price(price * (1 + pct / HUNDRED))


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class WatchState(Enum):
    """Detection states of a watchlisted instrument."""
    WATCHING = "WATCHING"
    HIGH_FORMED = "HIGH_FORMED"
    PULLBACK = "PULLBACK"
    ENTRY_READY = "ENTRY_READY"
    ENTERED = "ENTERED"
    EXITED = "EXITED"
    FILTERED_OUT = "FILTERED_OUT"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_WATCH_STATES

    @property
    def is_terminal(self) -> bool:
        return not WATCH_TRANSITIONS[self]


WATCH_TRANSITIONS = {
    WatchState.WATCHING: {WatchState.HIGH_FORMED},
    WatchState.HIGH_FORMED: {WatchState.PULLBACK, WatchState.FILTERED_OUT},
    WatchState.PULLBACK: {WatchState.ENTRY_READY, WatchState.FILTERED_OUT},
    WatchState.ENTRY_READY: {WatchState.ENTERED},
    WatchState.ENTERED: {WatchState.EXITED},
    WatchState.EXITED: set(),
    WatchState.FILTERED_OUT: set(),
}

ACTIVE_WATCH_STATES = (
    WatchState.WATCHING,
    WatchState.HIGH_FORMED,
    WatchState.PULLBACK,
    WatchState.ENTRY_READY,
)


class PositionStatus(Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


class SignalType(Enum):
    """Audit signal types."""
    GAP_DETECTED = "GAP_DETECTED"
    HIGH_FORMED = "HIGH_FORMED"
    PULLBACK_ENTRY = "PULLBACK_ENTRY"
    FILTERED_OUT = "FILTERED_OUT"
    TP1_EXIT = "TP1_EXIT"
    TP2_EXIT = "TP2_EXIT"
    TP3_EXIT = "TP3_EXIT"
    STOP_LOSS_EXIT = "STOP_LOSS_EXIT"
    TRAILING_EXIT = "TRAILING_EXIT"
    TIME_EXIT = "TIME_EXIT"
    EMERGENCY_EXIT = "EMERGENCY_EXIT"

    @property
    def is_entry(self) -> bool:
        return self == SignalType.PULLBACK_ENTRY

    @property
    def is_exit(self) -> bool:
        return self.value.endswith("_EXIT")


class CloseReason(Enum):
    """Why (part of) a position was sold."""
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TP1 = "TP1"
    TP2 = "TP2"
    TP3 = "TP3"
    TIME_EXIT = "TIME_EXIT"
    EMERGENCY = "EMERGENCY"

    @property
    def signal_type(self) -> SignalType:
        return _EXIT_SIGNALS[self]


_EXIT_SIGNALS = {
    CloseReason.STOP_LOSS: SignalType.STOP_LOSS_EXIT,
    CloseReason.TRAILING_STOP: SignalType.TRAILING_EXIT,
    CloseReason.TP1: SignalType.TP1_EXIT,
    CloseReason.TP2: SignalType.TP2_EXIT,
    CloseReason.TP3: SignalType.TP3_EXIT,
    CloseReason.TIME_EXIT: SignalType.TIME_EXIT,
    CloseReason.EMERGENCY: SignalType.EMERGENCY_EXIT,
}


class TradeSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TradeStatus(Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Broker DTOs
# ---------------------------------------------------------------------------

class Quote(BaseModel):
    """Current price snapshot of one instrument."""
    code: str
    current_price: Decimal
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    prev_close: Decimal
    volume: int = 0
    trade_value: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None
    buy_volume: int = 0
    sell_volume: int = 0

    def gap_percent(self) -> Decimal:
        if self.prev_close == 0:
            return Decimal("0")
        return round_pct((self.open_price - self.prev_close) * HUNDRED / self.prev_close)

    def trade_strength(self) -> Decimal:
        """Buy volume per 100 sell volume."""
        if self.sell_volume == 0:
            return Decimal("0")
        return (Decimal(self.buy_volume) * HUNDRED / Decimal(self.sell_volume)).quantize(
            RATIO_PLACES, rounding=ROUND_HALF_UP
        )


class OrderbookLevel(BaseModel):
    price: Decimal
    quantity: int = 0


class Orderbook(BaseModel):
    """Top of book ladder with aggregate resting quantities."""
    code: str
    asks: List[OrderbookLevel] = Field(default_factory=list)
    bids: List[OrderbookLevel] = Field(default_factory=list)
    total_ask_quantity: int = 0
    total_bid_quantity: int = 0

    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0].price if self.asks else None

    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0].price if self.bids else None

    def spread_percent(self) -> Optional[Decimal]:
        ask, bid = self.best_ask(), self.best_bid()
        if ask is None or bid is None or bid == 0:
            return None
        return round_pct((ask - bid) * HUNDRED / bid)

    def order_imbalance(self) -> Optional[Decimal]:
        """Aggregate bid quantity over aggregate ask quantity."""
        if self.total_ask_quantity == 0:
            return None
        return round_pct(Decimal(self.total_bid_quantity) / Decimal(self.total_ask_quantity))


class OrderFill(BaseModel):
    price: Decimal
    quantity: int


def weighted_average_price(fills: List[OrderFill]) -> Optional[Decimal]:
    total_qty = sum(f.quantity for f in fills)
    if total_qty <= 0:
        return None
    total_amount = sum(f.price * f.quantity for f in fills)
    return round_price(total_amount / total_qty)


class OrderResponse(BaseModel):
    """Immediate broker answer to an order submission."""
    success: bool
    order_id: Optional[str] = None
    message: str = ""
    fills: List[OrderFill] = Field(default_factory=list)

    def fill_price(self) -> Optional[Decimal]:
        return weighted_average_price(self.fills)


class OrderDetail(BaseModel):
    """Order lookup result used while a fill is still being reported."""
    order_id: str
    filled_quantity: int = 0
    average_price: Optional[Decimal] = None
    fills: List[OrderFill] = Field(default_factory=list)

    def fill_price(self) -> Optional[Decimal]:
        price = weighted_average_price(self.fills)
        if price is not None:
            return price
        if self.filled_quantity > 0 and self.average_price:
            return round_price(self.average_price)
        return None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class WatchRecord:
    """One screened instrument for one trading day."""
    code: str
    trading_date: date
    prev_close: Decimal
    open_price: Decimal
    current_price: Decimal
    high_price: Decimal
    low_price: Decimal
    volume: int = 0
    trade_value: Optional[Decimal] = None
    gap_percent: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None
    trade_strength: Optional[Decimal] = None
    spread_percent: Optional[Decimal] = None
    state: WatchState = WatchState.WATCHING
    high_after_open: Optional[Decimal] = None
    high_formed_at: Optional[datetime] = None
    pullback_low: Optional[Decimal] = None
    pullback_start_at: Optional[datetime] = None
    entry_price: Optional[Decimal] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_quote(
        cls,
        quote: Quote,
        trading_date: date,
        spread_percent: Optional[Decimal] = None
    ) -> "WatchRecord":
        return cls(
            code=quote.code,
            trading_date=trading_date,
            prev_close=quote.prev_close,
            open_price=quote.open_price,
            current_price=quote.current_price,
            high_price=quote.high_price,
            low_price=quote.low_price,
            volume=quote.volume,
            trade_value=quote.trade_value,
            gap_percent=quote.gap_percent(),
            market_cap=quote.market_cap,
            trade_strength=quote.trade_strength(),
            spread_percent=spread_percent,
        )

    def update_current_price(self, price: Decimal, now: Optional[datetime] = None) -> None:
        self.current_price = price
        if self.high_price is None or price > self.high_price:
            self.high_price = price
        if self.low_price is None or price < self.low_price:
            self.low_price = price
        self.updated_at = now or datetime.now()

    def return_from_open(self) -> Optional[Decimal]:
        return percent_change(self.current_price, self.open_price)

    def drop_from_high(self) -> Optional[Decimal]:
        """Negative when below the high formed after the open."""
        return percent_change(self.current_price, self.high_after_open)

    def bounce_from_low(self) -> Optional[Decimal]:
        return percent_change(self.current_price, self.pullback_low)

    def transition_to(self, state: WatchState, now: Optional[datetime] = None) -> None:
        if state not in WATCH_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"{self.code}: {self.state.value} -> {state.value} is not allowed"
            )
        self.state = state
        self.updated_at = now or datetime.now()

    def mark_entered(self, price: Decimal, now: Optional[datetime] = None) -> None:
        self.transition_to(WatchState.ENTERED, now)
        self.entry_price = price

    def mark_exited(self, now: Optional[datetime] = None) -> None:
        self.transition_to(WatchState.EXITED, now)


@dataclass
class Position:
    """Long position opened from a pullback entry and closed in tiers."""
    code: str
    trading_date: date
    entry_price: Decimal
    entry_quantity: int
    stop_loss_price: Decimal
    day_high_price: Decimal
    watch_record_id: Optional[str] = None
    status: PositionStatus = PositionStatus.OPEN
    remaining_quantity: int = 0
    avg_exit_price: Optional[Decimal] = None
    tp1_executed: bool = False
    tp2_executed: bool = False
    tp3_executed: bool = False
    trailing_active: bool = False
    trailing_high: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    realized_pnl: Decimal = Decimal("0")
    realized_pnl_pct: Decimal = Decimal("0")
    total_exit_amount: Decimal = Decimal("0")
    total_exit_quantity: int = 0
    close_reason: Optional[CloseReason] = None
    id: str = field(default_factory=_new_id)
    entered_at: datetime = field(default_factory=datetime.now)
    closed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def open(
        cls,
        code: str,
        trading_date: date,
        entry_price: Decimal,
        quantity: int,
        stop_loss_pct: Decimal,
        day_high: Optional[Decimal] = None,
        watch_record_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> "Position":
        if quantity <= 0:
            raise PositionError(f"{code}: entry quantity must be positive, got {quantity}")
        now = now or datetime.now()
        return cls(
            code=code,
            trading_date=trading_date,
            entry_price=entry_price,
            entry_quantity=quantity,
            remaining_quantity=quantity,
            stop_loss_price=apply_pct(entry_price, -stop_loss_pct),
            day_high_price=day_high if day_high is not None else entry_price,
            watch_record_id=watch_record_id,
            entered_at=now,
            updated_at=now,
        )

    @property
    def entry_amount(self) -> Decimal:
        return self.entry_price * self.entry_quantity

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    # -- rule predicates ----------------------------------------------------

    def should_stop_loss(self, price: Decimal) -> bool:
        return price <= self.stop_loss_price

    def should_trailing_stop(self, price: Decimal) -> bool:
        return (
            self.trailing_active
            and self.trailing_stop_price is not None
            and price <= self.trailing_stop_price
        )

    def should_tp1(self, price: Decimal, tp1_pct: Decimal) -> bool:
        return not self.tp1_executed and price >= apply_pct(self.entry_price, tp1_pct)

    def should_tp2(self, price: Decimal) -> bool:
        return self.tp1_executed and not self.tp2_executed and price >= self.day_high_price

    def should_tp3(self, price: Decimal, tp3_pct: Decimal) -> bool:
        return (
            self.tp2_executed
            and not self.tp3_executed
            and price >= apply_pct(self.day_high_price, tp3_pct)
        )

    # -- tier quantities ------------------------------------------------------
    # Rounded down; a zero-share tier is skipped by the caller.

    def tp1_quantity(self, ratio: Decimal) -> int:
        return min(floor_quantity(Decimal(self.entry_quantity) * ratio), self.remaining_quantity)

    def tp2_quantity(self, ratio: Decimal) -> int:
        return floor_quantity(Decimal(self.remaining_quantity) * ratio)

    def tp3_quantity(self) -> int:
        return self.remaining_quantity

    # -- ledger mutation ------------------------------------------------------

    def validate_exit(self, quantity: int, reason: CloseReason) -> None:
        """
        Reject an exit that would break the ledger invariants.

        Raises:
            PositionError: Closed position, bad quantity or TP out of order
        """
        if self.is_closed:
            raise PositionError(f"{self.code}: position {self.id} is already closed")
        if quantity <= 0:
            raise PositionError(f"{self.code}: exit quantity must be positive, got {quantity}")
        if quantity > self.remaining_quantity:
            raise PositionError(
                f"{self.code}: exit quantity {quantity} exceeds remaining {self.remaining_quantity}"
            )
        if reason == CloseReason.TP1 and self.tp1_executed:
            raise PositionError(f"{self.code}: TP1 already executed")
        if reason == CloseReason.TP2 and (not self.tp1_executed or self.tp2_executed):
            raise PositionError(f"{self.code}: TP2 requires TP1 and may run once")
        if reason == CloseReason.TP3 and (not self.tp2_executed or self.tp3_executed):
            raise PositionError(f"{self.code}: TP3 requires TP2 and may run once")

    def apply_exit(
        self,
        quantity: int,
        price: Decimal,
        reason: CloseReason,
        now: Optional[datetime] = None
    ) -> Decimal:
        """
        Record a (partial) sale against this position.

        Args:
            quantity: Shares sold
            price: Executed price
            reason: Exit reason; TP reasons flip the matching tier flag
            now: Timestamp of the fill

        Returns:
            Realized P&L of this exit

        Raises:
            PositionError: If the exit would break the ledger invariants
        """
        self.validate_exit(quantity, reason)

        now = now or datetime.now()
        pnl = (price - self.entry_price) * quantity

        self.realized_pnl += pnl
        self.total_exit_amount += price * quantity
        self.total_exit_quantity += quantity
        self.remaining_quantity = self.entry_quantity - self.total_exit_quantity
        self.avg_exit_price = round_price(self.total_exit_amount / self.total_exit_quantity)
        self.realized_pnl_pct = round_pct(
            self.realized_pnl * HUNDRED / (self.entry_price * self.total_exit_quantity)
        )

        if reason == CloseReason.TP1:
            self.tp1_executed = True
        elif reason == CloseReason.TP2:
            self.tp2_executed = True
        elif reason == CloseReason.TP3:
            self.tp3_executed = True

        if self.remaining_quantity == 0:
            self.status = PositionStatus.CLOSED
            self.close_reason = reason
            self.closed_at = now
        else:
            self.status = PositionStatus.PARTIAL
        self.updated_at = now
        return pnl

    # -- trackers -------------------------------------------------------------

    def activate_trailing_stop(self, price: Decimal, trailing_pct: Decimal) -> None:
        self.trailing_active = True
        self.trailing_high = price
        self.trailing_stop_price = apply_pct(price, -trailing_pct)

    def update_trailing_stop(self, price: Decimal, trailing_pct: Decimal) -> bool:
        """Raise the trailing stop on a new high. Returns True if it moved."""
        if not self.trailing_active:
            return False
        if self.trailing_high is not None and price <= self.trailing_high:
            return False
        self.trailing_high = price
        candidate = apply_pct(price, -trailing_pct)
        if self.trailing_stop_price is None or candidate > self.trailing_stop_price:
            self.trailing_stop_price = candidate
            return True
        return False

    def update_day_high(self, price: Optional[Decimal]) -> None:
        if price is not None and price > self.day_high_price:
            self.day_high_price = price

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return (price - self.entry_price) * self.remaining_quantity

    def unrealized_pnl_pct(self, price: Decimal) -> Optional[Decimal]:
        return percent_change(price, self.entry_price)

    def holding_minutes(self, now: datetime) -> int:
        end = self.closed_at or now
        return int((end - self.entered_at).total_seconds() // 60)


def summarize_pnl(positions: List[Position]) -> Dict[str, Any]:
    """
    Realized P&L summary over a day's positions.

    Only closed positions count toward the P&L, the win/loss counts and
    the win rate (percent, 2 places). A break-even close is neither a win
    nor a loss.
    """
    closed = [p for p in positions if p.is_closed]
    wins = sum(1 for p in closed if p.realized_pnl > 0)
    losses = sum(1 for p in closed if p.realized_pnl < 0)
    win_rate = Decimal("0")
    if closed:
        win_rate = (Decimal(wins) * HUNDRED / len(closed)).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)
    return {
        'total_positions': len(positions),
        'open_positions': len(positions) - len(closed),
        'closed_positions': len(closed),
        'win_count': wins,
        'loss_count': losses,
        'win_rate': win_rate,
        'total_realized_pnl': sum((p.realized_pnl for p in closed), Decimal("0")),
    }


@dataclass
class Signal:
    """Append-only audit record; only `executed` changes after creation."""
    code: str
    signal_type: SignalType
    trading_date: date
    price: Optional[Decimal] = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    executed: bool = False
    position_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    signal_time: datetime = field(default_factory=datetime.now)

    def mark_executed(self) -> None:
        self.executed = True


@dataclass
class Trade:
    """Order audit record, created only from a confirmed broker response."""
    order_id: str
    code: str
    side: TradeSide
    requested_quantity: int
    position_id: Optional[str] = None
    order_type: OrderType = OrderType.MARKET
    requested_price: Optional[Decimal] = None
    executed_quantity: int = 0
    executed_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    status: TradeStatus = TradeStatus.PENDING
    exit_reason: Optional[CloseReason] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    executed_at: Optional[datetime] = None

    def mark_filled(
        self,
        price: Decimal,
        quantity: int,
        fee: Decimal = Decimal("0"),
        now: Optional[datetime] = None
    ) -> None:
        self.executed_price = price
        self.executed_quantity = quantity
        self.fee = fee
        self.executed_at = now or datetime.now()
        if quantity == self.requested_quantity:
            self.status = TradeStatus.FILLED
        else:
            self.status = TradeStatus.PARTIAL

    @property
    def executed_amount(self) -> Decimal:
        if self.executed_price is None:
            return Decimal("0")
        return self.executed_price * self.executed_quantity
