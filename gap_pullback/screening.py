"""
Daily gap screening: turns the candidate universe into a ranked watchlist.
"""
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.config import to_decimal
from gap_pullback.logging_utils import log_error_with_context, log_signal
from gap_pullback.models import Signal, SignalType, WatchRecord
from gap_pullback.storage import TradingStore

FILTER_STAGES = ('gap', 'market_cap', 'trade_value', 'trade_strength', 'spread')


def _stage_counter() -> Dict[str, int]:
    return {stage: 0 for stage in FILTER_STAGES}


@dataclass
class ScreeningResult:
    """Outcome of one screening run with per-stage pass/fail counts."""
    trading_date: date
    scanned: int = 0
    errors: int = 0
    passed: Dict[str, int] = field(default_factory=_stage_counter)
    rejected: Dict[str, int] = field(default_factory=_stage_counter)
    qualified: int = 0
    selected: List[WatchRecord] = field(default_factory=list)
    already_listed: int = 0
    save_failures: int = 0

    def record(self, stage: str, passed: bool) -> bool:
        if passed:
            self.passed[stage] += 1
        else:
            self.rejected[stage] += 1
        return passed

    def to_dict(self) -> Dict:
        return {
            'trading_date': self.trading_date.isoformat(),
            'scanned': self.scanned,
            'errors': self.errors,
            'passed': dict(self.passed),
            'rejected': dict(self.rejected),
            'qualified': self.qualified,
            'selected': [
                {'code': r.code, 'gap_percent': str(r.gap_percent)} for r in self.selected
            ],
            'already_listed': self.already_listed,
            'save_failures': self.save_failures,
        }


class ScreeningEngine:
    """
    Filters candidates by gap, size, liquidity, momentum and spread.
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
        Initialize screening engine.

        Args:
            broker: Market data source
            store: Where selected watch records and signals are saved
            config: The 'screening' configuration section
            sleep_fn: Used for the inter-call delay
            now_fn: Clock for signal timestamps
        """
        self.broker = broker
        self.store = store
        self.config = config

        self.min_gap_pct = to_decimal(config.get('min_gap_pct', 2.0))
        self.max_gap_pct = to_decimal(config.get('max_gap_pct', 7.0))
        self.min_market_cap = to_decimal(config.get('min_market_cap', 150_000_000_000))
        self.min_trade_value = to_decimal(config.get('min_trade_value', 500_000_000))
        self.min_trade_strength = to_decimal(config.get('min_trade_strength', 110))
        self.max_spread_pct = to_decimal(config.get('max_spread_pct', 0.3))
        self.max_watchlist_size = int(config.get('max_watchlist_size', 10))
        self.call_delay_seconds = float(config.get('call_delay_seconds', 0.1))
        self._sleep = sleep_fn
        self._now = now_fn

        # Alert notifier reference (will be set externally)
        self.notifier = None

        logger.info(
            f"ScreeningEngine initialized | "
            f"Gap: [{self.min_gap_pct}%, {self.max_gap_pct}%], "
            f"Strength >= {self.min_trade_strength}, "
            f"Spread <= {self.max_spread_pct}%, "
            f"Watchlist: {self.max_watchlist_size}"
        )

    def run_screening(self, candidates: Iterable[str], trading_date: date) -> ScreeningResult:
        """
        Screen candidates and persist the day's watchlist.

        Args:
            candidates: Instrument codes to evaluate
            trading_date: Trading day the watchlist belongs to

        Returns:
            ScreeningResult with selected records and per-stage counts
        """
        result = ScreeningResult(trading_date=trading_date)
        qualified: List[WatchRecord] = []

        for index, code in enumerate(candidates):
            if index > 0 and self.call_delay_seconds > 0:
                self._sleep(self.call_delay_seconds)

            result.scanned += 1
            try:
                record = self._screen_candidate(code, trading_date, result)
            except Exception as e:
                result.errors += 1
                log_error_with_context(e, "Screening candidate failed", code=code)
                continue

            if record is not None:
                qualified.append(record)

        qualified.sort(key=lambda r: r.gap_percent, reverse=True)
        result.qualified = len(qualified)

        for record in qualified[:self.max_watchlist_size]:
            self._select(record, result)

        logger.info(
            f"Screening complete | {trading_date} | "
            f"Scanned: {result.scanned}, Errors: {result.errors}, "
            f"Qualified: {result.qualified}, Selected: {len(result.selected)}, "
            f"Rejected: {result.rejected}"
        )

        if self.notifier:
            self.notifier.send_screening_summary(result)

        return result

    def _screen_candidate(
        self,
        code: str,
        trading_date: date,
        result: ScreeningResult
    ) -> Optional[WatchRecord]:
        quote = self.broker.get_quote(code)
        if quote is None:
            result.errors += 1
            logger.warning(f"Screening skipped {code}: quote unavailable")
            return None

        gap = quote.gap_percent()
        if not result.record('gap', self.min_gap_pct <= gap <= self.max_gap_pct):
            logger.debug(f"{code} rejected: gap {gap}% outside [{self.min_gap_pct}, {self.max_gap_pct}]")
            return None

        # Fields the broker did not report are not held against the candidate
        if quote.market_cap is not None:
            if not result.record('market_cap', quote.market_cap >= self.min_market_cap):
                logger.debug(f"{code} rejected: market cap {quote.market_cap}")
                return None
        else:
            result.record('market_cap', True)

        if quote.trade_value is not None:
            if not result.record('trade_value', quote.trade_value >= self.min_trade_value):
                logger.debug(f"{code} rejected: trade value {quote.trade_value}")
                return None
        else:
            result.record('trade_value', True)

        strength = quote.trade_strength()
        if not result.record('trade_strength', strength >= self.min_trade_strength):
            logger.debug(f"{code} rejected: trade strength {strength}")
            return None

        spread: Optional[Decimal] = None
        orderbook = self.broker.get_orderbook(code)
        if orderbook is not None:
            spread = orderbook.spread_percent()
        if spread is not None and spread > self.max_spread_pct:
            result.record('spread', False)
            logger.debug(f"{code} rejected: spread {spread}%")
            return None
        result.record('spread', True)

        return WatchRecord.from_quote(quote, trading_date, spread_percent=spread)

    def _select(self, record: WatchRecord, result: ScreeningResult) -> None:
        try:
            existing = self.store.find_watch_record(record.code, record.trading_date)
            if existing is not None:
                result.already_listed += 1
                result.selected.append(existing)
                logger.info(f"{record.code} already on the {record.trading_date} watchlist")
                return

            self.store.save_watch_record(record)
            metrics = {
                'gap_percent': record.gap_percent,
                'market_cap': record.market_cap,
                'trade_value': record.trade_value,
                'trade_strength': record.trade_strength,
                'spread_percent': record.spread_percent,
            }
            self.store.save_signal(Signal(
                code=record.code,
                signal_type=SignalType.GAP_DETECTED,
                trading_date=record.trading_date,
                price=record.open_price,
                metrics=metrics,
                reason=f"gap {record.gap_percent}%",
                signal_time=self._now(),
            ))
            log_signal(SignalType.GAP_DETECTED.value, record.code, **metrics)
            result.selected.append(record)
        except Exception as e:
            result.save_failures += 1
            log_error_with_context(e, "Saving screened record failed", code=record.code)
