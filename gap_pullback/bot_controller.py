"""
Bot lifecycle and per-phase loop orchestration.
"""
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from gap_pullback.broker import BrokerClient
from gap_pullback.config import get_config_value
from gap_pullback.execution_engine import OrderExecutor
from gap_pullback.logging_utils import log_error_with_context
from gap_pullback.pullback import PullbackDetector
from gap_pullback.risk_manager import RiskManager
from gap_pullback.screening import ScreeningEngine, ScreeningResult
from gap_pullback.storage import TradingStore, archive_day
from gap_pullback.trading_clock import TradingClock, TradingPhase


class BotState(Enum):
    """Lifecycle states."""
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class BotStatus:
    running: bool
    paused: bool
    watching_count: int
    position_count: int
    trading_phase: TradingPhase
    started_at: Optional[datetime]
    trading_date: Optional[date]
    state_history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'paused': self.paused,
            'watching_count': self.watching_count,
            'position_count': self.position_count,
            'trading_phase': self.trading_phase.value,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'trading_date': self.trading_date.isoformat() if self.trading_date else None,
            'state_history': list(self.state_history),
        }


class BotController:
    """
    Owns the single lifecycle state and drives the engine components.

    The lifecycle state is one value guarded by one lock. stop() only
    affects future loop invocations; work already in flight completes.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: TradingStore,
        screening: ScreeningEngine,
        detector: PullbackDetector,
        risk_manager: RiskManager,
        executor: OrderExecutor,
        clock: TradingClock,
        config: Dict
    ):
        """
        Initialize bot controller.

        Args:
            broker: Broker client (checked for configuration on start)
            store: Shared persistence
            screening: Daily screening engine
            detector: Pullback state machine runner
            risk_manager: Exit rule evaluation
            executor: Entry and exit orders
            clock: Market-local clock
            config: Full application configuration
        """
        self.broker = broker
        self.store = store
        self.screening = screening
        self.detector = detector
        self.risk_manager = risk_manager
        self.executor = executor
        self.clock = clock
        self.config = config

        self.universe: List[str] = [str(c) for c in get_config_value(config, 'universe.candidates', []) or []]
        self.max_positions = int(get_config_value(config, 'bot.max_positions', 5))
        self.archive_enabled = bool(get_config_value(config, 'storage.archive_enabled', False))
        self.archive_dir = get_config_value(config, 'storage.archive_dir', './data/archive')

        self.state = BotState.STOPPED
        self.state_lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.started_trading_date: Optional[date] = None
        self.state_history: deque = deque(maxlen=100)

        # Alert notifier reference (will be set externally)
        self.notifier = None

        logger.info(
            f"BotController initialized | "
            f"Universe: {len(self.universe)} codes, Max positions: {self.max_positions}"
        )

    # -- lifecycle ----------------------------------------------------------------

    def _record_state_change(self, new_state: BotState, reason: str) -> None:
        self.state_history.append({
            'timestamp': self.clock.now().isoformat(),
            'state': new_state.value,
            'reason': reason,
        })

    def start(self) -> Dict[str, Any]:
        """Start the bot. Fails if already running or the broker is not configured."""
        if not self.broker.is_configured():
            logger.error("Cannot start: broker credentials are not configured")
            return {'success': False, 'message': "Broker credentials are not configured"}

        with self.state_lock:
            if self.state != BotState.STOPPED:
                logger.warning(f"Cannot start from state: {self.state.value}")
                return {'success': False, 'message': f"Bot is already {self.state.value}"}
            self.state = BotState.RUNNING
            self.started_at = self.clock.now()
            self.started_trading_date = self.started_at.date()
            self._record_state_change(BotState.RUNNING, "start")

        logger.info(f"🟢 Trading bot STARTED | Trading date: {self.started_trading_date}")
        return {'success': True, 'message': "Bot started"}

    def stop(self) -> Dict[str, Any]:
        with self.state_lock:
            if self.state == BotState.STOPPED:
                logger.warning("Cannot stop: bot is not running")
                return {'success': False, 'message': "Bot is not running"}
            self.state = BotState.STOPPED
            self._record_state_change(BotState.STOPPED, "stop")

        logger.info("🔴 Trading bot STOPPED")
        return {'success': True, 'message': "Bot stopped"}

    def pause(self) -> Dict[str, Any]:
        with self.state_lock:
            if self.state != BotState.RUNNING:
                logger.warning(f"Cannot pause from state: {self.state.value}")
                return {'success': False, 'message': f"Cannot pause while {self.state.value}"}
            self.state = BotState.PAUSED
            self._record_state_change(BotState.PAUSED, "pause")

        logger.warning("🟡 Trading bot PAUSED")
        return {'success': True, 'message': "Bot paused"}

    def resume(self) -> Dict[str, Any]:
        with self.state_lock:
            if self.state != BotState.PAUSED:
                logger.warning(f"Cannot resume from state: {self.state.value}")
                return {'success': False, 'message': f"Cannot resume while {self.state.value}"}
            self.state = BotState.RUNNING
            self._record_state_change(BotState.RUNNING, "resume")

        logger.info("🟢 Trading bot RESUMED")
        return {'success': True, 'message': "Bot resumed"}

    def emergency_close_all(self) -> Dict[str, Any]:
        """Liquidate all open positions regardless of lifecycle state."""
        stats = self.risk_manager.emergency_close_all()
        return {
            'success': stats['failed'] == 0,
            'message': f"Closed {stats['closed']} positions, {stats['failed']} failed",
            'closed': stats['closed'],
            'failed': stats['failed'],
        }

    def _lifecycle(self):
        with self.state_lock:
            return self.state

    def is_running(self) -> bool:
        return self._lifecycle() != BotState.STOPPED

    def is_paused(self) -> bool:
        return self._lifecycle() == BotState.PAUSED

    def trading_phase(self) -> TradingPhase:
        state = self._lifecycle()
        return self.clock.phase(
            running=state != BotState.STOPPED,
            paused=state == BotState.PAUSED
        )

    def status(self) -> BotStatus:
        with self.state_lock:
            state = self.state
            history = list(self.state_history)
        trading_date = self.clock.trading_date()
        return BotStatus(
            running=state != BotState.STOPPED,
            paused=state == BotState.PAUSED,
            watching_count=len(self.store.find_active_watch_records(trading_date)),
            position_count=self.store.count_open_positions(),
            trading_phase=self.clock.phase(
                running=state != BotState.STOPPED,
                paused=state == BotState.PAUSED
            ),
            started_at=self.started_at,
            trading_date=self.started_trading_date,
            state_history=history,
        )

    # -- phase loops ----------------------------------------------------------------

    def _run_step(self, name: str, step: Callable[[], Any]) -> Any:
        try:
            return step()
        except Exception as e:
            log_error_with_context(e, f"Trading step '{name}' failed")
            return None

    def pre_market_loop(self) -> None:
        if self._lifecycle() != BotState.RUNNING:
            return
        trading_date = self.clock.trading_date()
        logger.info(f"Pre-market preparation for {trading_date}")
        if not self._run_step('broker_warm_up', self.broker.warm_up):
            logger.warning("Broker warm-up did not succeed; will retry on first request")

    def screening_loop(self) -> Optional[ScreeningResult]:
        if self._lifecycle() != BotState.RUNNING:
            return None
        trading_date = self.clock.trading_date()
        logger.info(f"Screening {len(self.universe)} candidates for {trading_date}")
        return self._run_step(
            'screening',
            lambda: self.screening.run_screening(self.universe, trading_date)
        )

    def trading_loop(self) -> Optional[Dict[str, Any]]:
        """
        One trading cycle: exits, then detection, then new entries.

        Returns:
            Per-step statistics, or None when the cycle was skipped
        """
        if self._lifecycle() != BotState.RUNNING or not self.clock.is_trading_day():
            return None

        phase = self.clock.phase()
        if phase != TradingPhase.TRADING:
            logger.debug(f"Trading cycle skipped in phase {phase.value}")
            return None

        trading_date = self.clock.trading_date()
        summary = {
            'risk': self._run_step('risk', self.risk_manager.check_all_positions),
            'detection': self._run_step('detection', lambda: self.detector.update_all(trading_date)),
            'entries': self._run_step('entries', lambda: self.process_entries(trading_date)),
        }
        logger.debug(f"Trading cycle {trading_date} | {summary}")
        return summary

    def process_entries(self, trading_date: date) -> int:
        """
        Enter ENTRY_READY records until the position cap is reached.

        Returns:
            Number of positions opened
        """
        opened = 0
        for record in self.detector.get_entry_ready(trading_date):
            if self.store.count_open_positions() >= self.max_positions:
                logger.info(f"Max positions ({self.max_positions}) reached; remaining entries deferred")
                break
            try:
                result = self.executor.open_position(record)
            except Exception as e:
                log_error_with_context(e, "Entry failed", code=record.code)
                continue
            if result.accepted:
                opened += 1
            else:
                logger.info(f"Entry not taken for {record.code}: {result.reason}")
        return opened

    def final_exit_loop(self) -> Optional[Dict[str, int]]:
        # Runs while paused too
        if self._lifecycle() == BotState.STOPPED:
            return None
        return self._run_step('final_exit', self.risk_manager.execute_time_exit)

    def end_of_day(self) -> Optional[Dict[str, int]]:
        """Archive the day's records when archiving is enabled."""
        if not self.archive_enabled:
            return None
        trading_date = self.clock.trading_date()
        return archive_day(self.store, trading_date, self.archive_dir)
