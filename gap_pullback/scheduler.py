"""
Scheduler for the trading day: pre-market warm-up, screening, the trading
cycle, the final exit and end-of-day archiving.
"""
from typing import Any, Callable, Dict, List

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from gap_pullback.config import parse_time_of_day

TRADING_DAYS = 'mon-fri'


class TradingScheduler:
    """
    Fires the bot controller's phase loops at the configured times.
    A failing action is logged and alerted; the scheduler keeps running.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize scheduler.

        Args:
            config: Full application configuration
        """
        self.config = config
        scheduler_config = config.get('scheduler', {}) or {}
        self.trading_config = config.get('trading', {}) or {}

        self.enabled = scheduler_config.get('enabled', True)
        self.archive_time = scheduler_config.get('archive_time', '15:40')
        self.timezone = pytz.timezone(self.trading_config.get('timezone', 'Asia/Seoul'))
        self.polling_interval = int(self.trading_config.get('polling_interval_seconds', 5))

        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.task_handlers: Dict[str, Callable] = {}

        # Alert notifier reference (will be set externally)
        self.notifier = None

        logger.info(
            f"TradingScheduler initialized | Enabled: {self.enabled}, TZ: {self.timezone}, "
            f"Polling: {self.polling_interval}s"
        )

    def register_handler(self, action: str, handler: Callable) -> None:
        """
        Register a handler for a specific action.

        Args:
            action: Action name (e.g., 'screening', 'trading')
            handler: Callable to execute for this action
        """
        self.task_handlers[action] = handler
        logger.info(f"Registered handler for action: {action}")

    def _execute_task(self, task_name: str, actions: List[str]) -> List[str]:
        """
        Execute a scheduled task by running its actions.

        Args:
            task_name: Name of the task
            actions: List of action names to execute

        Returns:
            Names of the actions that raised
        """
        logger.debug(f"Executing scheduled task: {task_name}")

        failed_actions = []

        for action in actions:
            handler = self.task_handlers.get(action)
            if handler is None:
                logger.warning(f"No handler registered for action: {action}")
                continue
            try:
                handler()
            except Exception as e:
                logger.opt(exception=e).error(f"Error in action {action}: {e}")
                failed_actions.append(action)

                if self.notifier:
                    self.notifier.send_alert(
                        title=f"Scheduled Task Failed: {action}",
                        message=f"Action '{action}' in task '{task_name}' failed: {str(e)}",
                        severity="warning",
                        metadata={'task': task_name, 'action': action, 'error': str(e)}
                    )

        return failed_actions

    def _add_daily_job(self, job_id: str, name: str, at: Any, actions: List[str]) -> None:
        when = parse_time_of_day(at)
        self.scheduler.add_job(
            func=self._execute_task,
            args=[job_id, actions],
            trigger=CronTrigger(
                hour=when.hour,
                minute=when.minute,
                day_of_week=TRADING_DAYS,
                timezone=self.timezone
            ),
            id=job_id,
            name=name,
            replace_existing=True
        )
        logger.info(f"Scheduled {job_id} at {when.strftime('%H:%M')}")

    def configure_jobs(self) -> None:
        """Add all trading-day jobs to the underlying scheduler."""
        self._add_daily_job(
            'pre_market', 'Pre-Market Preparation',
            self.trading_config.get('pre_market_start', '08:30'), ['pre_market']
        )
        self._add_daily_job(
            'screening', 'Gap Screening',
            self.trading_config.get('market_open', '09:00'), ['screening']
        )
        self._add_daily_job(
            'final_exit', 'Final Exit',
            self.trading_config.get('final_exit', '11:20'), ['final_exit']
        )
        self._add_daily_job(
            'end_of_day', 'End-of-Day Archive',
            self.archive_time, ['end_of_day']
        )

        # trading_loop is a no-op outside the TRADING phase
        self.scheduler.add_job(
            func=self._execute_task,
            args=['trading', ['trading']],
            trigger=IntervalTrigger(seconds=self.polling_interval, timezone=self.timezone),
            id='trading',
            name='Trading Cycle',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Scheduled trading cycle every {self.polling_interval}s")

    def start(self) -> None:
        """Start the scheduler with configured tasks."""
        if not self.enabled:
            logger.info("Scheduler is disabled")
            return

        self.configure_jobs()
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def get_jobs(self) -> List[Dict]:
        """
        Get list of scheduled jobs.

        Returns:
            List of job information dicts
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return jobs
