"""
Tests for access token issue, caching and retry policy.
"""
from datetime import datetime, timedelta

import pytest
import requests

from conftest import FakeResponse, FakeSession
from gap_pullback.exceptions import BrokerAuthError, BrokerClientError, BrokerNotConfiguredError
from gap_pullback.kis_auth import REVOKE_PATH, TOKEN_PATH, KisAuth

TOKEN_BODY = {'access_token': 'tok-1', 'expires_in': 86400}


class Clock:

    def __init__(self):
        self.now = datetime(2024, 3, 4, 8, 0)

    def __call__(self):
        return self.now


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def auth(session, sleeps, clock):
    return KisAuth(
        base_url="https://kis.test",
        app_key="key",
        app_secret="secret",
        session=session,
        sleep_fn=sleeps.append,
        now_fn=clock,
    )


def test_token_issued_and_cached(auth, session):
    session.queue(TOKEN_PATH, FakeResponse(200, TOKEN_BODY))

    assert auth.get_access_token() == "tok-1"
    assert auth.get_access_token() == "tok-1"

    assert len(session.calls) == 1
    assert session.calls[0]['json'] == {
        'grant_type': 'client_credentials',
        'appkey': 'key',
        'appsecret': 'secret',
    }


def test_token_refreshed_inside_buffer(auth, session, clock):
    session.queue(
        TOKEN_PATH,
        FakeResponse(200, TOKEN_BODY),
        FakeResponse(200, {'access_token': 'tok-2', 'expires_in': 86400}),
    )
    auth.get_access_token()

    clock.now += timedelta(hours=23, minutes=29)
    assert auth.get_access_token() == "tok-1"

    clock.now += timedelta(minutes=2)
    assert auth.get_access_token() == "tok-2"
    assert len(session.calls) == 2


def test_transient_failures_retried_with_backoff(auth, session, sleeps):
    session.queue(
        TOKEN_PATH,
        requests.ConnectionError("refused"),
        FakeResponse(503),
        FakeResponse(200, TOKEN_BODY),
    )

    assert auth.get_access_token() == "tok-1"
    assert sleeps == [1.0, 2.0]


def test_rate_limit_is_transient(auth, session, sleeps):
    session.queue(TOKEN_PATH, FakeResponse(429), FakeResponse(200, TOKEN_BODY))
    assert auth.get_access_token() == "tok-1"
    assert sleeps == [1.0]


def test_gives_up_after_max_attempts(auth, session, sleeps):
    session.queue(TOKEN_PATH, requests.Timeout("slow"))

    with pytest.raises(BrokerAuthError):
        auth.get_access_token()

    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_client_error_fails_fast(auth, session, sleeps):
    session.queue(TOKEN_PATH, FakeResponse(403, {'error_description': 'bad key'}))

    with pytest.raises(BrokerClientError) as exc:
        auth.get_access_token()

    assert exc.value.status_code == 403
    assert len(session.calls) == 1
    assert sleeps == []


def test_missing_token_in_response(auth, session):
    session.queue(TOKEN_PATH, FakeResponse(200, {'expires_in': 86400}))
    with pytest.raises(BrokerAuthError):
        auth.get_access_token()


def test_invalidate_forces_reissue(auth, session):
    session.queue(TOKEN_PATH, FakeResponse(200, TOKEN_BODY))
    auth.get_access_token()
    auth.invalidate()
    assert not auth.is_token_valid()
    auth.get_access_token()
    assert len(session.calls) == 2


def test_revoke(auth, session):
    assert not auth.revoke()

    session.queue(TOKEN_PATH, FakeResponse(200, TOKEN_BODY))
    session.queue(REVOKE_PATH, FakeResponse(200, {}))
    auth.get_access_token()

    assert auth.revoke()
    assert not auth.is_token_valid()
    assert session.calls[-1]['json']['token'] == "tok-1"


def test_revoke_failure_is_reported(auth, session):
    session.queue(TOKEN_PATH, FakeResponse(200, TOKEN_BODY))
    session.queue(REVOKE_PATH, requests.ConnectionError("down"))
    auth.get_access_token()

    assert not auth.revoke()


def test_missing_credentials(session):
    auth = KisAuth(base_url="https://kis.test", app_key="", app_secret="secret", session=session)
    with pytest.raises(BrokerNotConfiguredError):
        auth.get_access_token()
    assert session.calls == []
