"""
Trading-day clock and phase boundaries.
"""
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Callable, Dict, Optional

import pytz

from gap_pullback.config import parse_time_of_day


class TradingPhase(Enum):
    """Phase of the trading day, or the lifecycle override."""
    PRE_MARKET_WAIT = "PRE_MARKET_WAIT"
    PRE_MARKET = "PRE_MARKET"
    SCREENING = "SCREENING"
    TRADING = "TRADING"
    FINAL_EXIT = "FINAL_EXIT"
    MARKET_CLOSED = "MARKET_CLOSED"
    STOPPED = "STOPPED"
    PAUSED = "PAUSED"


@dataclass(frozen=True)
class PhaseBoundaries:
    pre_market_start: time = time(8, 30)
    market_open: time = time(9, 0)
    screening_end: time = time(9, 10)
    final_exit: time = time(11, 20)
    trading_end: time = time(11, 30)

    @classmethod
    def from_config(cls, config: Dict) -> "PhaseBoundaries":
        """Build from the 'trading' configuration section."""
        return cls(
            pre_market_start=parse_time_of_day(config.get('pre_market_start', '08:30')),
            market_open=parse_time_of_day(config.get('market_open', '09:00')),
            screening_end=parse_time_of_day(config.get('screening_end', '09:10')),
            final_exit=parse_time_of_day(config.get('final_exit', '11:20')),
            trading_end=parse_time_of_day(config.get('trading_end', '11:30')),
        )


def trading_phase(
    now: time,
    boundaries: PhaseBoundaries,
    running: bool = True,
    paused: bool = False
) -> TradingPhase:
    """
    Derive the trading phase from wall-clock time.

    Args:
        now: Market-local time of day
        boundaries: Configured phase boundaries
        running: Bot lifecycle flag
        paused: Bot pause flag

    Returns:
        TradingPhase; STOPPED and PAUSED take precedence over the clock
    """
    if not running:
        return TradingPhase.STOPPED
    if paused:
        return TradingPhase.PAUSED
    if now < boundaries.pre_market_start:
        return TradingPhase.PRE_MARKET_WAIT
    if now < boundaries.market_open:
        return TradingPhase.PRE_MARKET
    if now < boundaries.screening_end:
        return TradingPhase.SCREENING
    if now < boundaries.final_exit:
        return TradingPhase.TRADING
    if now < boundaries.trading_end:
        return TradingPhase.FINAL_EXIT
    return TradingPhase.MARKET_CLOSED


class TradingClock:
    """
    Market-local clock.

    now() returns naive wall-clock time in the market timezone so it
    compares cleanly with entity timestamps.
    """

    def __init__(self, config: Dict, now_fn: Optional[Callable[[], datetime]] = None):
        """
        Initialize clock.

        Args:
            config: The 'trading' configuration section
            now_fn: Override returning market-local naive datetimes (tests)
        """
        self.timezone = pytz.timezone(config.get('timezone', 'Asia/Seoul'))
        self.boundaries = PhaseBoundaries.from_config(config)
        self._now_fn = now_fn

    def now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(self.timezone).replace(tzinfo=None)

    def trading_date(self) -> date:
        return self.now().date()

    def is_trading_day(self) -> bool:
        return self.now().weekday() < 5

    def phase(self, running: bool = True, paused: bool = False) -> TradingPhase:
        return trading_phase(self.now().time(), self.boundaries, running, paused)
