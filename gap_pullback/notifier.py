"""
Alert notifier for Slack and email, with throttling and deduplication.
"""
import smtplib
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Dict, List, Optional

import requests
from loguru import logger

SEVERITY_COLORS = {
    'info': '#36a64f',
    'warning': '#ff9900',
    'critical': '#ff0000',
}


class AlertNotifier:
    """
    Sends alerts and the daily screening summary to external channels.
    Delivery failures are logged and never raised to the caller.
    """

    def __init__(self, alerts_config: Optional[Dict] = None):
        """
        Initialize alert notifier.

        Args:
            alerts_config: The 'alerts' configuration section
        """
        self.alerts_config = alerts_config or {}

        self.slack_config = self.alerts_config.get('slack', {}) or {}
        self.email_config = self.alerts_config.get('email', {}) or {}

        self.slack_webhook = self.slack_config.get('webhook_url') or ''
        self.slack_enabled = bool(self.slack_config.get('enabled', False) and self.slack_webhook)
        recipients = self.email_config.get('to') or []
        if isinstance(recipients, str):
            recipients = [r.strip() for r in recipients.split(',') if r.strip()]
        self.email_recipients: List[str] = recipients
        self.email_enabled = bool(self.email_config.get('enabled', False) and self.email_recipients)

        throttling = self.alerts_config.get('throttling', {}) or {}
        self.throttling_enabled = throttling.get('enabled', True)
        self.max_alerts_per_minute = throttling.get('max_alerts_per_minute', 10)
        self.dedupe_window_seconds = throttling.get('dedupe_window_seconds', 300)

        self.recent_alerts: List[datetime] = []
        self.alert_hashes: Dict[str, datetime] = {}

        logger.info(
            f"AlertNotifier initialized | "
            f"Slack: {self.slack_enabled}, Email: {self.email_enabled}"
        )

    def _check_throttle(self) -> bool:
        """
        Check if we're within throttling limits.

        Returns:
            True if we can send alert, False if throttled
        """
        if not self.throttling_enabled:
            return True

        now = datetime.now()
        minute_ago = now - timedelta(minutes=1)
        self.recent_alerts = [t for t in self.recent_alerts if t > minute_ago]

        if len(self.recent_alerts) >= self.max_alerts_per_minute:
            logger.warning(f"Alert throttled: {len(self.recent_alerts)} alerts in last minute")
            return False
        return True

    def _check_dedupe(self, alert_hash: str) -> bool:
        """
        Check if this alert is a duplicate.

        Returns:
            True if alert is new, False if duplicate
        """
        now = datetime.now()
        cutoff = now - timedelta(seconds=self.dedupe_window_seconds)
        self.alert_hashes = {h: t for h, t in self.alert_hashes.items() if t > cutoff}

        if alert_hash in self.alert_hashes:
            logger.debug(f"Duplicate alert suppressed: {alert_hash}")
            return False

        self.alert_hashes[alert_hash] = now
        return True

    def send_alert(
        self,
        title: str,
        message: str,
        severity: str = "info",
        metadata: Optional[Dict] = None
    ) -> bool:
        """
        Send an alert through configured channels.

        Args:
            title: Alert title
            message: Alert message
            severity: Alert severity ("info", "warning", "critical")
            metadata: Additional metadata

        Returns:
            True if every enabled channel accepted the alert
        """
        if not self._check_dedupe(f"{title}:{message}"):
            return False
        if not self._check_throttle():
            return False
        self.recent_alerts.append(datetime.now())

        success = True

        if self.slack_enabled:
            try:
                self._send_slack(title, message, severity, metadata)
            except requests.RequestException as e:
                logger.error(f"Failed to send Slack alert: {e}")
                success = False

        if self.email_enabled:
            try:
                self._send_email(f"[{severity.upper()}] {title}", self._format_text(message, metadata))
            except (smtplib.SMTPException, OSError) as e:
                logger.error(f"Failed to send email alert: {e}")
                success = False

        if not self.slack_enabled and not self.email_enabled:
            logger.info(f"Alert ({severity}): {title} - {message}")

        return success

    def _send_slack(
        self,
        title: str,
        message: str,
        severity: str,
        metadata: Optional[Dict]
    ) -> None:
        fields = [
            {'title': key, 'value': str(value), 'short': True}
            for key, value in (metadata or {}).items()
        ]
        payload = {
            'attachments': [{
                'color': SEVERITY_COLORS.get(severity, '#808080'),
                'title': title,
                'text': message,
                'fields': fields,
                'footer': 'Gap Pullback Trader',
                'ts': int(datetime.now().timestamp())
            }]
        }

        if severity == 'critical':
            mention = self.slack_config.get('mention_on_critical', '')
            if mention:
                payload['text'] = mention

        response = requests.post(self.slack_webhook, json=payload, timeout=5)
        response.raise_for_status()
        logger.debug(f"Slack alert sent: {title}")

    def _send_email(self, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.email_config.get('sender', 'gap-pullback@localhost')
        msg['To'] = ', '.join(self.email_recipients)
        msg.set_content(body)

        host = self.email_config.get('smtp_host', 'localhost')
        port = int(self.email_config.get('smtp_port', 587))
        with smtplib.SMTP(host, port, timeout=10) as smtp:
            if self.email_config.get('use_tls', True):
                smtp.starttls()
            username = self.email_config.get('username')
            if username:
                smtp.login(username, self.email_config.get('password', ''))
            smtp.send_message(msg)
        logger.debug(f"Email sent: {subject}")

    @staticmethod
    def _format_text(message: str, metadata: Optional[Dict]) -> str:
        lines = [message]
        for key, value in (metadata or {}).items():
            lines.append(f"{key}: {value}")
        return "\n".join(lines)

    def send_screening_summary(self, result) -> bool:
        """
        Deliver the end-of-screening summary.

        Args:
            result: ScreeningResult of the day

        Returns:
            True if delivered (or nothing to deliver to)
        """
        lines = [f"Screening {result.trading_date.isoformat()}: "
                 f"{len(result.selected)} selected of {result.scanned} scanned"]
        for record in result.selected:
            lines.append(f"  {record.code}  gap {record.gap_percent}%  open {record.open_price}")
        lines.append("Filter stages (passed/rejected):")
        for stage in result.passed:
            lines.append(f"  {stage}: {result.passed[stage]}/{result.rejected[stage]}")
        if result.errors:
            lines.append(f"Errors: {result.errors}")
        text = "\n".join(lines)

        return self.send_alert(
            title=f"Gap screening {result.trading_date.isoformat()}",
            message=text,
            severity="info",
            metadata={
                'selected': len(result.selected),
                'scanned': result.scanned,
                'errors': result.errors,
            }
        )

    def send_emergency_summary(self, stats: Dict[str, int]) -> bool:
        """Report the outcome of an emergency liquidation."""
        return self.send_alert(
            title="Emergency liquidation",
            message=f"Closed {stats.get('closed', 0)} positions, {stats.get('failed', 0)} failed",
            severity="critical",
            metadata=stats
        )
