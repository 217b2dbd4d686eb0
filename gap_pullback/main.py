"""
Gap & pullback trading bot: component wiring and command-line entry point.
"""
import argparse
import signal
import sys
import threading
from typing import Optional

from loguru import logger

from gap_pullback.bot_controller import BotController
from gap_pullback.config import default_config_path, load_config, validate_config
from gap_pullback.execution_engine import OrderExecutor
from gap_pullback.kis_client import KisClient
from gap_pullback.logging_utils import setup_logging
from gap_pullback.notifier import AlertNotifier
from gap_pullback.pullback import PullbackDetector
from gap_pullback.risk_manager import RiskManager
from gap_pullback.scheduler import TradingScheduler
from gap_pullback.screening import ScreeningEngine
from gap_pullback.storage import InMemoryTradingStore
from gap_pullback.trading_clock import TradingClock


class TradingBot:
    """
    Main trading bot orchestrator.
    """

    def __init__(self, config_path: str, log_level: Optional[str] = None):
        """
        Initialize trading bot.

        Args:
            config_path: Path to configuration file
            log_level: Overrides the configured log level
        """
        self.config = load_config(config_path)
        validate_config(self.config)

        logging_config = self.config.get('logging', {}) or {}
        setup_logging(
            logs_dir=logging_config.get('logs_dir', './logs'),
            level=log_level or logging_config.get('level', 'INFO'),
            rotation=logging_config.get('rotation', '1 day'),
            retention=logging_config.get('retention', '30 days'),
            format_type=logging_config.get('format', 'text')
        )

        logger.info("=" * 80)
        logger.info("Gap Pullback Trader Starting...")
        logger.info("=" * 80)

        self.clock = TradingClock(self.config.get('trading', {}) or {})
        self.client = KisClient(self.config.get('kis', {}) or {}, now_fn=self.clock.now)
        self.store = InMemoryTradingStore()
        self.notifier = AlertNotifier(self.config.get('alerts', {}) or {})

        self.screening = ScreeningEngine(
            self.client, self.store, self.config.get('screening', {}) or {},
            now_fn=self.clock.now
        )
        self.detector = PullbackDetector(
            self.client, self.store, self.config.get('entry', {}) or {},
            now_fn=self.clock.now
        )
        self.executor = OrderExecutor(self.client, self.store, self.config, now_fn=self.clock.now)
        self.risk_manager = RiskManager(self.client, self.store, self.executor, self.config)

        self.controller = BotController(
            broker=self.client,
            store=self.store,
            screening=self.screening,
            detector=self.detector,
            risk_manager=self.risk_manager,
            executor=self.executor,
            clock=self.clock,
            config=self.config
        )

        self.scheduler = TradingScheduler(self.config)
        self.scheduler.register_handler('pre_market', self.controller.pre_market_loop)
        self.scheduler.register_handler('screening', self.controller.screening_loop)
        self.scheduler.register_handler('trading', self.controller.trading_loop)
        self.scheduler.register_handler('final_exit', self.controller.final_exit_loop)
        self.scheduler.register_handler('end_of_day', self.controller.end_of_day)

        # Link notifier
        self.screening.notifier = self.notifier
        self.risk_manager.notifier = self.notifier
        self.controller.notifier = self.notifier
        self.scheduler.notifier = self.notifier

        self._shutdown = threading.Event()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.warning(f"Received signal {signum} - initiating graceful shutdown...")
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def start(self, auto_start: bool = True) -> None:
        """Start the scheduler and, optionally, the bot lifecycle."""
        self.scheduler.start()
        if auto_start and (self.config.get('bot', {}) or {}).get('enabled', True):
            res = self.controller.start()
            if not res['success']:
                logger.error(f"Bot not started: {res['message']}")

    def stop(self) -> None:
        """Stop scheduling, stop the bot and release the broker session."""
        logger.info("Shutting down trading bot...")
        self.scheduler.stop()
        if self.controller.is_running():
            self.controller.stop()
        self.client.close()
        logger.info("Trading bot stopped")

    def run_forever(self) -> None:
        self.install_signal_handlers()
        self.start()
        while not self._shutdown.wait(timeout=1.0):
            pass
        self.stop()

    def serve(self) -> None:
        """Run the control API in the foreground; uvicorn handles the signals."""
        import uvicorn

        from gap_pullback.api import create_app

        api_config = self.config.get('api', {}) or {}
        self.start()
        try:
            uvicorn.run(
                create_app(self.controller),
                host=api_config.get('host', '127.0.0.1'),
                port=int(api_config.get('port', 8000)),
                log_level="info"
            )
        finally:
            self.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Gap & Pullback Trading Bot")
    parser.add_argument(
        '--config',
        type=str,
        default=default_config_path(),
        help='Path to configuration file (default: $GAP_PULLBACK_CONFIG or config/config.yaml)'
    )
    parser.add_argument(
        '--serve',
        action='store_true',
        help='Expose the control API over HTTP'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        help='Override the configured log level (DEBUG, INFO, ...)'
    )

    args = parser.parse_args()

    try:
        bot = TradingBot(args.config, log_level=args.log_level)
        if args.serve:
            bot.serve()
        else:
            bot.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.opt(exception=e).critical(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
