"""
Access token management for the Korea Investment & Securities Open API.
"""
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import requests
from loguru import logger

from gap_pullback.exceptions import (
    BrokerAuthError,
    BrokerClientError,
    BrokerNotConfiguredError,
    BrokerTransientError,
)

TOKEN_PATH = "/oauth2/tokenP"
REVOKE_PATH = "/oauth2/revokeP"


class KisAuth:
    """
    Issues and caches the OAuth access token.

    The token is checked outside the lock and re-checked inside it, so
    concurrent callers that find an expired token trigger one refresh.
    """

    def __init__(
        self,
        base_url: str,
        app_key: str,
        app_secret: str,
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 10,
        refresh_buffer_minutes: int = 30,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_fn: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize token manager.

        Args:
            base_url: API root URL
            app_key: Application key
            app_secret: Application secret
            session: Shared HTTP session
            timeout_seconds: Per-request timeout
            refresh_buffer_minutes: Refresh this long before expiry
            max_attempts: Token request attempts before giving up
            backoff_seconds: Base delay, doubled after every failed attempt
        """
        self.base_url = base_url.rstrip('/')
        self.app_key = app_key
        self.app_secret = app_secret
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.refresh_buffer = timedelta(minutes=refresh_buffer_minutes)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep_fn
        self._now = now_fn

        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

        logger.info(
            f"KisAuth initialized | Refresh buffer: {refresh_buffer_minutes}m, "
            f"Attempts: {self.max_attempts}"
        )

    def is_token_valid(self) -> bool:
        if not self._access_token or self._expires_at is None:
            return False
        return self._now() < self._expires_at - self.refresh_buffer

    def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing it when needed.

        Raises:
            BrokerNotConfiguredError: App key or secret is missing
            BrokerClientError: Token request rejected with a 4xx
            BrokerAuthError: All attempts failed
        """
        if self.is_token_valid():
            return self._access_token

        with self._lock:
            if self.is_token_valid():
                return self._access_token
            self._refresh_token()
            return self._access_token

    def invalidate(self) -> None:
        with self._lock:
            self._access_token = None
            self._expires_at = None

    def _refresh_token(self) -> None:
        if not self.app_key or not self.app_secret:
            raise BrokerNotConfiguredError("KIS app key and secret are required")

        payload = {
            'grant_type': 'client_credentials',
            'appkey': self.app_key,
            'appsecret': self.app_secret,
        }
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                self._request_token(payload)
                return
            except BrokerTransientError as e:
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Token request failed (attempt {attempt}/{self.max_attempts}): "
                    f"{last_error} | retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        logger.error(f"Token request failed after {self.max_attempts} attempts: {last_error}")
        raise BrokerAuthError(f"Could not obtain access token: {last_error}")

    def _request_token(self, payload: dict) -> None:
        try:
            response = self.session.post(
                f"{self.base_url}{TOKEN_PATH}",
                json=payload,
                timeout=self.timeout_seconds
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise BrokerTransientError(f"{type(e).__name__}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise BrokerTransientError(f"HTTP {status}")
        if status >= 400:
            logger.error(f"Token request rejected: HTTP {status} {response.text[:200]}")
            raise BrokerClientError(f"Token request rejected with HTTP {status}", status)

        body = response.json()
        token = body.get('access_token')
        if not token:
            raise BrokerAuthError("Token response did not contain access_token")

        expires_in = int(body.get('expires_in', 86400))
        self._access_token = token
        self._expires_at = self._now() + timedelta(seconds=expires_in)
        logger.info(f"Access token issued | Expires at: {self._expires_at:%Y-%m-%d %H:%M:%S}")

    def revoke(self) -> bool:
        """
        Revoke the current token.

        Returns:
            True if a token was revoked
        """
        with self._lock:
            token = self._access_token
            self._access_token = None
            self._expires_at = None

        if not token:
            return False

        try:
            response = self.session.post(
                f"{self.base_url}{REVOKE_PATH}",
                json={'appkey': self.app_key, 'appsecret': self.app_secret, 'token': token},
                timeout=self.timeout_seconds
            )
            if response.status_code >= 400:
                logger.warning(f"Token revoke returned HTTP {response.status_code}")
                return False
            logger.info("Access token revoked")
            return True
        except requests.RequestException as e:
            logger.warning(f"Token revoke failed: {e}")
            return False
