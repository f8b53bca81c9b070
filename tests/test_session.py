"""Tests for the authenticated vendor HTTP session."""

import os
import sys
import threading

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from controller.deadline import Deadline
from errors import AuthExpiredError, TransientUpstreamError
from ess.session import TokenSession


def make_response(status, body=b"{}"):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp.url = "http://ess.local/api"
    return resp


class FakeHTTP(requests.Session):
    """Answers by bearer token: tokens listed in `rejected` get a 401."""

    def __init__(self, rejected=(), status=200, error=None):
        super().__init__()
        self.rejected = set(rejected)
        self.status = status
        self.error = error
        self.requests = []
        self.timeouts = []
        self._lock = threading.Lock()

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        with self._lock:
            self.requests.append((method, url, headers["Authorization"]))
            self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        token = headers["Authorization"].removeprefix("Bearer ")
        if token in self.rejected:
            return make_response(401)
        return make_response(self.status)


class Logins:
    def __init__(self, tokens=None, error=None):
        self.tokens = list(tokens or ["t1", "t2", "t3"])
        self.error = error
        self._lock = threading.Lock()

    def __call__(self, session):
        if self.error is not None:
            raise self.error
        with self._lock:
            return self.tokens.pop(0)


class TestTokenSession:
    def test_logs_in_once(self):
        http = FakeHTTP()
        session = TokenSession("http://ess.local/", Logins(), session=http)
        session.request("GET", "/status")
        session.request("GET", "/status")
        assert session.login_count == 1
        assert http.requests[0] == ("GET", "http://ess.local/status", "Bearer t1")

    def test_relogin_after_401(self):
        http = FakeHTTP(rejected={"t1"})
        session = TokenSession("http://ess.local", Logins(), session=http)
        resp = session.request("GET", "/status")
        assert resp.status_code == 200
        assert session.login_count == 2
        assert [r[2] for r in http.requests] == ["Bearer t1", "Bearer t2"]

    def test_second_401_is_auth_expired(self):
        http = FakeHTTP(rejected={"t1", "t2"})
        session = TokenSession("http://ess.local", Logins(), session=http)
        with pytest.raises(AuthExpiredError):
            session.request("GET", "/status")
        assert len(http.requests) == 2

    def test_login_rejected(self):
        error = requests.HTTPError("403 Client Error")
        session = TokenSession("http://ess.local", Logins(error=error), session=FakeHTTP())
        with pytest.raises(AuthExpiredError):
            session.request("GET", "/status")

    def test_login_unreachable_is_transient(self):
        error = requests.ConnectionError("refused")
        session = TokenSession("http://ess.local", Logins(error=error), session=FakeHTTP())
        with pytest.raises(TransientUpstreamError):
            session.request("GET", "/status")

    def test_empty_token(self):
        session = TokenSession("http://ess.local", Logins(tokens=[""]), session=FakeHTTP())
        with pytest.raises(AuthExpiredError):
            session.request("GET", "/status")

    def test_server_error_is_transient(self):
        session = TokenSession("http://ess.local", Logins(), session=FakeHTTP(status=503))
        with pytest.raises(TransientUpstreamError):
            session.request("GET", "/status")

    def test_client_error_raised(self):
        session = TokenSession("http://ess.local", Logins(), session=FakeHTTP(status=400))
        with pytest.raises(requests.HTTPError):
            session.request("POST", "/modes", json={})

    def test_timeout_is_transient(self):
        http = FakeHTTP(error=requests.Timeout("read timed out"))
        session = TokenSession("http://ess.local", Logins(), session=http)
        with pytest.raises(TransientUpstreamError):
            session.request("GET", "/status")

    def test_timeout_bounded_by_deadline(self):
        http = FakeHTTP()
        session = TokenSession("http://ess.local", Logins(), session=http)
        session.request("GET", "/status", deadline=Deadline(5))
        assert http.timeouts[0] <= 5

    def test_concurrent_401s_relogin_once(self):
        """Many requests rejected with the same token share one re-login."""
        http = FakeHTTP(rejected={"t1"})
        session = TokenSession("http://ess.local", Logins(), session=http)
        session.request("GET", "/warmup")  # logs in as t1, then t2
        http.rejected.add("t2")
        barrier = threading.Barrier(6)
        results = []

        def call():
            barrier.wait(5)
            try:
                results.append(session.request("GET", "/status").status_code)
            except AuthExpiredError:
                results.append("expired")

        threads = [threading.Thread(target=call) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert session.login_count == 3
        assert results == [200] * 6
