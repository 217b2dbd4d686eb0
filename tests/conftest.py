"""
Shared fixtures: an in-process broker, a settable clock, a default config
and a fully wired bot controller.
"""
import copy
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import pytest

from gap_pullback.bot_controller import BotController
from gap_pullback.broker import BrokerClient
from gap_pullback.execution_engine import OrderExecutor
from gap_pullback.models import (
    OrderbookLevel,
    Orderbook,
    OrderDetail,
    OrderFill,
    OrderResponse,
    Quote,
    TradeSide,
    WatchRecord,
)
from gap_pullback.pullback import PullbackDetector
from gap_pullback.risk_manager import RiskManager
from gap_pullback.screening import ScreeningEngine
from gap_pullback.storage import InMemoryTradingStore
from gap_pullback.trading_clock import TradingClock

TRADING_DATE = date(2024, 3, 4)  # a Monday

BASE_CONFIG = {
    'kis': {
        'app_key': 'key',
        'app_secret': 'secret',
        'account_number': '12345678',
    },
    'universe': {'candidates': []},
    'screening': {
        'min_gap_pct': 2.0,
        'max_gap_pct': 7.0,
        'min_market_cap': 150000000000,
        'min_trade_value': 500000000,
        'min_trade_strength': 110,
        'max_spread_pct': 0.3,
        'max_watchlist_size': 10,
        'call_delay_seconds': 0,
    },
    'entry': {
        'high_threshold_pct': 1.5,
        'min_pullback_pct': 1.5,
        'max_pullback_pct': 3.0,
        'bounce_threshold_pct': 0.3,
        'min_trade_strength': 105,
        'min_order_imbalance': 1.2,
        'min_pullback_minutes': 3,
        'max_pullback_minutes': 15,
    },
    'exit': {'tp1_pct': 1.5, 'tp1_ratio': 0.5, 'tp2_ratio': 0.6, 'tp3_pct': 1.0},
    'risk': {'stop_loss_pct': 1.5, 'trailing_stop_pct': 0.8, 'position_size_ratio': 0.1},
    'execution': {'fill_max_retries': 3, 'fill_retry_delay_seconds': 0.5, 'fee_rate': 0.00015},
    'bot': {'enabled': True, 'max_positions': 5, 'max_position_size': 5000000},
    'trading': {
        'timezone': 'Asia/Seoul',
        'pre_market_start': '08:30',
        'market_open': '09:00',
        'screening_end': '09:10',
        'final_exit': '11:20',
        'trading_end': '11:30',
        'polling_interval_seconds': 5,
    },
    'scheduler': {'enabled': True, 'archive_time': '15:40'},
    'storage': {'archive_enabled': False, 'archive_dir': './data/archive'},
    'alerts': {},
}


def make_config(**sections) -> Dict:
    """Deep copy of the base config with sections shallow-merged."""
    config = copy.deepcopy(BASE_CONFIG)
    for name, values in sections.items():
        if isinstance(values, dict) and isinstance(config.get(name), dict):
            config[name].update(values)
        else:
            config[name] = values
    return config


def make_quote(
    code: str,
    price,
    open_price=None,
    high=None,
    low=None,
    prev_close=None,
    buy_volume: int = 1200,
    sell_volume: int = 1000,
    market_cap=Decimal("200000000000"),
    trade_value=Decimal("1000000000"),
) -> Quote:
    price = Decimal(str(price))
    open_price = Decimal(str(open_price)) if open_price is not None else price
    return Quote(
        code=code,
        current_price=price,
        open_price=open_price,
        high_price=Decimal(str(high)) if high is not None else max(price, open_price),
        low_price=Decimal(str(low)) if low is not None else min(price, open_price),
        prev_close=Decimal(str(prev_close)) if prev_close is not None else open_price,
        volume=100000,
        trade_value=trade_value,
        market_cap=market_cap,
        buy_volume=buy_volume,
        sell_volume=sell_volume,
    )


def make_orderbook(code: str, ask="10010", bid="10000", total_ask=1000, total_bid=1500) -> Orderbook:
    return Orderbook(
        code=code,
        asks=[OrderbookLevel(price=Decimal(ask), quantity=100)],
        bids=[OrderbookLevel(price=Decimal(bid), quantity=100)],
        total_ask_quantity=total_ask,
        total_bid_quantity=total_bid,
    )


def make_watch_record(code: str = "005930", **fields) -> WatchRecord:
    values = dict(
        code=code,
        trading_date=TRADING_DATE,
        prev_close=Decimal("9800"),
        open_price=Decimal("10000"),
        current_price=Decimal("10000"),
        high_price=Decimal("10000"),
        low_price=Decimal("10000"),
        gap_percent=Decimal("2.0408"),
    )
    values.update(fields)
    return WatchRecord(**values)


class FakeBroker(BrokerClient):
    """
    Scriptable broker. Orders fill immediately at the current quote unless
    responses are queued in `order_responses`.
    """

    def __init__(self):
        self.configured = True
        self.quotes: Dict[str, Quote] = {}
        self.orderbooks: Dict[str, Orderbook] = {}
        self.failing_codes = set()
        self.cash: Optional[Decimal] = Decimal("10000000")
        self.buyable: Dict[str, Optional[int]] = {}
        self.order_responses: List[Optional[OrderResponse]] = []
        self.order_details: Dict[str, List[Optional[OrderDetail]]] = {}
        self.orders: List[tuple] = []
        self.detail_lookups: List[str] = []
        self.warm_ups = 0
        self.closed = False
        self._order_seq = 0

    def set_quote(self, code: str, price, **kwargs) -> Quote:
        quote = make_quote(code, price, **kwargs)
        self.quotes[code] = quote
        return quote

    def is_configured(self) -> bool:
        return self.configured

    def warm_up(self) -> bool:
        self.warm_ups += 1
        return True

    def close(self) -> None:
        self.closed = True

    def get_quote(self, code: str) -> Optional[Quote]:
        if code in self.failing_codes:
            raise RuntimeError(f"quote service down for {code}")
        return self.quotes.get(code)

    def get_orderbook(self, code: str) -> Optional[Orderbook]:
        return self.orderbooks.get(code)

    def get_available_cash(self) -> Optional[Decimal]:
        return self.cash

    def get_buyable_quantity(self, code: str, price: Decimal) -> Optional[int]:
        return self.buyable.get(code, 1_000_000)

    def place_order(self, code, quantity, side: TradeSide, price=None) -> Optional[OrderResponse]:
        self.orders.append((code, quantity, side, price))
        if self.order_responses:
            return self.order_responses.pop(0)
        self._order_seq += 1
        quote = self.quotes.get(code)
        fills = [OrderFill(price=quote.current_price, quantity=quantity)] if quote else []
        return OrderResponse(success=True, order_id=f"ORD{self._order_seq:04d}", fills=fills)

    def get_order_detail(self, order_id: str) -> Optional[OrderDetail]:
        self.detail_lookups.append(order_id)
        queued = self.order_details.get(order_id)
        if queued:
            return queued.pop(0)
        return None


class FakeResponse:

    def __init__(self, status_code: int = 200, body: Optional[Dict] = None):
        self.status_code = status_code
        self._body = body or {}
        self.text = str(self._body)

    def json(self) -> Dict:
        return self._body


class FakeSession:
    """
    Stand-in for requests.Session. Responses are queued per URL path and the
    last one repeats. An exception in the queue is raised instead of returned.
    """

    def __init__(self):
        self.responses: Dict[str, list] = {}
        self.calls: List[Dict] = []
        self.closed = False

    def queue(self, path: str, *responses) -> None:
        self.responses.setdefault(path, []).extend(responses)

    def _next(self, method: str, url: str, **kwargs):
        path = urlsplit(url).path
        self.calls.append(dict(method=method, path=path, **kwargs))
        queued = self.responses.get(path)
        if not queued:
            raise AssertionError(f"unexpected request to {path}")
        response = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, json=None, timeout=None):
        return self._next('POST', url, json=json, timeout=timeout)

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        return self._next(method, url, headers=headers, params=params, json=json, timeout=timeout)

    def close(self) -> None:
        self.closed = True


class MutableClock:
    """Callable returning a settable naive datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int, second: int = 0) -> None:
        self.now = self.now.replace(hour=hour, minute=minute, second=second)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def store():
    return InMemoryTradingStore()


@pytest.fixture
def clock():
    return MutableClock(datetime(2024, 3, 4, 9, 30))


@pytest.fixture
def no_sleep():
    calls = []
    return calls.append, calls


@pytest.fixture
def controller(broker, store, config, clock):
    config['universe']['candidates'] = ["005930", "000660"]
    trading_clock = TradingClock(config['trading'], now_fn=clock)
    executor = OrderExecutor(broker, store, config, sleep_fn=lambda s: None, now_fn=clock)
    return BotController(
        broker=broker,
        store=store,
        screening=ScreeningEngine(broker, store, config['screening'], sleep_fn=lambda s: None, now_fn=clock),
        detector=PullbackDetector(broker, store, config['entry'], now_fn=clock),
        risk_manager=RiskManager(broker, store, executor, config),
        executor=executor,
        clock=trading_clock,
        config=config,
    )
