"""
Shared pytest fixtures for the rampload test suite.

Engine tests never touch the network.  Unit tests drive the engine with
in-memory fakes (transport, workers, clock); integration tests run whole
load tests against an in-process Flask order service through a
transport that calls Flask's test client instead of opening sockets.

Key Concepts Demonstrated:
- Fakes with just enough behaviour for the seam under test
- Factory fixtures for objects tests need several of
- An in-process system under test for end-to-end runs
"""

from __future__ import annotations

import itertools
import os
import threading
import time
from typing import Any, Callable
from urllib.parse import urlsplit

import pytest
from flask import Flask, jsonify, request

# Select test settings before any rampload module reads them.
os.environ.setdefault("RAMPLOAD_ENV", "testing")

from rampload.metrics import MetricsRegistry
from rampload.transport import TransportResponse


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------

@pytest.fixture
def registry():
    """A fresh metrics registry per test."""
    return MetricsRegistry()


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------

class FakeTransport:
    """
    In-memory transport returning canned responses.

    ``handler`` receives ``(method, url, body, headers)`` and returns a
    :class:`TransportResponse`; by default every request gets a 200.
    Calls are recorded for assertions.
    """

    def __init__(self, handler: Callable[..., TransportResponse] | None = None):
        self.handler = handler or (lambda *args: TransportResponse(200, "{}", 0.01))
        self.calls: list[tuple[str, str, Any, dict]] = []
        self._lock = threading.Lock()

    def execute(self, method, url, body, headers, timeout):
        with self._lock:
            self.calls.append((method, url, body, dict(headers or {})))
        return self.handler(method, url, body, headers)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def make_transport():
    """Factory for transports with a custom handler."""
    return FakeTransport


class FakeWorker:
    """Scheduler-side stand-in for a virtual user; no threads involved."""

    def __init__(self, vu_id: int):
        self.vu_id = vu_id
        self.exhausted = False
        self.started = False
        self.retired = False
        self.stopped = False
        self.alive = False

    def start(self) -> None:
        self.started = True
        self.alive = True

    def retire(self) -> None:
        self.retired = True

    def stop(self) -> None:
        self.stopped = True

    def is_alive(self) -> bool:
        return self.alive

    def join(self, timeout: float | None = None) -> bool:
        return not self.alive

    def finish(self, *, exhausted: bool = False) -> None:
        self.exhausted = exhausted
        self.alive = False


@pytest.fixture
def spawned_workers():
    """
    A spawn function plus the list of workers it created.

    Returns:
        ``(spawn, workers)``: pass ``spawn`` to the scheduler and inspect
        ``workers`` afterwards.
    """
    workers: list[FakeWorker] = []

    def spawn(vu_id: int) -> FakeWorker:
        worker = FakeWorker(vu_id)
        workers.append(worker)
        return worker

    return spawn, workers


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


# -----------------------------------------------------------------------------
# In-process order service
# -----------------------------------------------------------------------------

def create_order_app() -> Flask:
    """
    Minimal order API used as the system under test.

    Orders live in memory behind a lock; IDs look like ``ORD-000001``.
    """
    app = Flask("order_service")
    orders: dict[str, dict[str, Any]] = {}
    ids = itertools.count(1)
    lock = threading.Lock()

    @app.get("/health")
    def health():
        return jsonify({"status": "healthy"}), 200

    @app.post("/api/v1/orders")
    def create_order():
        data = request.get_json(silent=True) or {}
        if not data.get("customer_id") or not data.get("items"):
            return jsonify({"error": "customer_id and items are required"}), 400
        with lock:
            order_id = f"ORD-{next(ids):06d}"
            order = {"id": order_id, "status": "pending", **data}
            orders[order_id] = order
        return jsonify(order), 201

    @app.get("/api/v1/orders/<order_id>")
    def get_order(order_id: str):
        with lock:
            order = orders.get(order_id)
        if order is None:
            return jsonify({"error": "Order not found"}), 404
        return jsonify(order), 200

    @app.get("/api/v1/orders")
    def list_orders():
        page = request.args.get("page", 1, type=int)
        limit = request.args.get("limit", 10, type=int)
        with lock:
            everything = list(orders.values())
        start = (page - 1) * limit
        return jsonify(
            {
                "orders": everything[start:start + limit],
                "total": len(everything),
                "page": page,
                "limit": limit,
            }
        ), 200

    return app


class FlaskClientTransport:
    """Transport that dispatches requests to a Flask app in-process."""

    def __init__(self, app: Flask):
        self.app = app

    def execute(self, method, url, body, headers, timeout):
        parts = urlsplit(url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        started = time.perf_counter()
        # One test client per request; clients are not shared across threads.
        response = self.app.test_client().open(
            path, method=method, data=body, headers=dict(headers or {})
        )
        elapsed = time.perf_counter() - started
        return TransportResponse(
            status=response.status_code,
            body=response.get_data(as_text=True),
            elapsed=elapsed,
        )


@pytest.fixture
def order_app():
    return create_order_app()


@pytest.fixture
def order_transport(order_app):
    return FlaskClientTransport(order_app)
