"""
Request transport used by request steps.

The engine treats the transport as a black box: give it a method, URL,
body, headers and timeout; get back a status, body, elapsed time and an
optional error string.  Transport-level failures (timeouts, refused
connections, DNS errors) come back as an ``error`` with status ``0``
rather than as exceptions, so a virtual user records them like any
other failed step.

Key Concepts Demonstrated:
- Protocol-based seam so tests can swap in an in-memory transport
- One ``requests.Session`` per thread for connection reuse without
  sharing a session between virtual users
- Timeout and connection errors mapped to values, not exceptions
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Mapping, Protocol
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    """Outcome of one request as seen by the engine."""

    status: int
    body: str
    elapsed: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Transport(Protocol):
    """Anything that can execute a single request/response exchange."""

    def execute(
        self,
        method: str,
        url: str,
        body: str | bytes | None,
        headers: Mapping[str, str] | None,
        timeout: float,
    ) -> TransportResponse:
        ...


class RequestsTransport:
    """
    HTTP transport backed by ``requests``.

    Relative URLs are resolved against ``base_url``; absolute URLs are
    used as-is.  Redirects are not followed so that a scenario can check
    for them explicitly.
    """

    def __init__(self, base_url: str = "", *, default_headers: Mapping[str, str] | None = None):
        self.base_url = base_url
        self.default_headers = dict(default_headers or {})
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.default_headers)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def resolve(self, url: str) -> str:
        if not self.base_url:
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))

    def execute(
        self,
        method: str,
        url: str,
        body: str | bytes | None,
        headers: Mapping[str, str] | None,
        timeout: float,
    ) -> TransportResponse:
        target = self.resolve(url)
        started = time.perf_counter()
        try:
            response = self._session().request(
                method=method.upper(),
                url=target,
                data=body,
                headers=dict(headers or {}),
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.Timeout:
            elapsed = time.perf_counter() - started
            logger.debug("%s %s timed out after %.3fs", method, target, elapsed)
            return TransportResponse(status=0, body="", elapsed=elapsed, error="timeout")
        except requests.RequestException as exc:
            # DNS resolution, connection refused, TLS errors and friends.
            elapsed = time.perf_counter() - started
            logger.debug("%s %s failed: %s", method, target, exc)
            return TransportResponse(status=0, body="", elapsed=elapsed, error=str(exc) or type(exc).__name__)

        return TransportResponse(
            status=response.status_code,
            body=response.text,
            elapsed=response.elapsed.total_seconds(),
        )

    def close(self) -> None:
        """Close every session any thread opened through this transport."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
            self._local = threading.local()
        for session in sessions:
            session.close()
        logger.debug("Closed %d HTTP session(s)", len(sessions))
