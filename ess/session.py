import logging
import threading
from typing import Callable

import requests

from errors import AuthExpiredError, TransientUpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


class TokenSession:
    """Authenticated HTTP session shared by one site's vendor adapter.

    `login` is called with the requests.Session and returns a bearer token.
    Logins are serialized: when several requests see a 401 for the same
    token, only the first re-logs in and the others reuse its token. Each
    request is retried at most once after a re-login.
    """

    def __init__(
        self,
        base_url: str,
        login: Callable[[requests.Session], str],
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._login = login
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._token: str | None = None
        self._generation = 0
        self.login_count = 0

    def _ensure_token(self, stale_generation: int | None = None) -> tuple[str, int]:
        with self._lock:
            if self._token is not None and self._generation != stale_generation:
                return self._token, self._generation
            try:
                token = self._login(self.session)
            except requests.HTTPError as e:
                self._token = None
                raise AuthExpiredError(f"Login rejected: {e}") from e
            except requests.RequestException as e:
                raise TransientUpstreamError(f"Login request failed: {e}") from e
            finally:
                self.login_count += 1
            if not token:
                self._token = None
                raise AuthExpiredError("Login returned no token")
            self._token = token
            self._generation += 1
            logger.info("Logged in to %s", self.base_url)
            return self._token, self._generation

    def request(self, method: str, path: str, deadline=None, **kwargs) -> requests.Response:
        token, generation = self._ensure_token()
        resp = self._send(method, path, token, deadline, **kwargs)
        if resp.status_code == 401:
            logger.warning("Token rejected by %s; logging in again", self.base_url)
            token, _ = self._ensure_token(stale_generation=generation)
            resp = self._send(method, path, token, deadline, **kwargs)
            if resp.status_code == 401:
                raise AuthExpiredError(f"{method} {path} rejected after re-login")
        if resp.status_code >= 500:
            raise TransientUpstreamError(f"{method} {path} returned {resp.status_code}")
        resp.raise_for_status()
        return resp

    def _send(self, method, path, token, deadline, **kwargs) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        timeout = deadline.timeout(DEFAULT_TIMEOUT_S) if deadline is not None else DEFAULT_TIMEOUT_S
        try:
            return self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=timeout, **kwargs,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientUpstreamError(f"{method} {path} failed: {e}") from e
