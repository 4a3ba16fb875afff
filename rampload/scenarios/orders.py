"""
Order-API load scenarios.

Three ready-made workloads against an order service exposing
``/health`` and ``/api/v1/orders``:

- **basic** -- health check, create an order, fetch it back by ID, list
  orders; ramps 0 → 20 → 50 users, holds, then drains
- **spike** -- a sudden jump from 10 to 200 users and back, creating
  orders only, with lenient thresholds
- **stress** -- climbs to 400 users in steps to find the breaking point

Each preset pairs a scenario factory (taking the base URL) with the run
options that go with it, in the same shape a YAML run file uses.

Key Concepts Demonstrated:
- Threading a server-assigned ID from one step to the next
- Randomised payloads so the server does not serve one cached path
- Skipping a step whose input an earlier step failed to produce
- Custom ``errors`` rate alongside the built-in HTTP metrics
"""

from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Any, Callable

from rampload.scenario import (
    IterationContext,
    RequestStep,
    Scenario,
    StepResult,
    check,
    constant,
    faster_than,
    headers_with,
    status_is,
)


def random_order_payload(customer_id: int | None = None, prefix: str = "load-test") -> dict[str, Any]:
    """
    Build a valid order-create payload with small randomised variance.

    Returns:
        A JSON-serialisable dictionary matching the order-create schema.
    """
    customer_id = customer_id if customer_id is not None else random.randint(0, 9999)
    product = random.randint(0, 99)
    return {
        "customer_id": f"{prefix}-{customer_id}",
        "customer_email": f"user{customer_id}@loadtest.com",
        "items": [
            {
                "product_id": f"prod-{product}",
                "product_name": f"Product {product}",
                "quantity": random.randint(1, 5),
                "unit_price": random.randint(10, 1009),
            }
        ],
        "shipping_address": {
            "street": f"{random.randint(0, 998)} Main St",
            "city": "San Francisco",
            "state": "CA",
            "postal_code": "94102",
            "country": "USA",
        },
        "payment_method": "credit_card",
        "notes": f"Load test order created at {datetime.now(timezone.utc).isoformat()}",
    }


def _order_id_valid(result: StepResult) -> bool:
    order_id = result.json().get("id")
    return isinstance(order_id, str) and order_id.startswith("ORD-")


def _remember_order(context: IterationContext, result: StepResult) -> None:
    if _order_id_valid(result):
        context.vars["order_id"] = result.json()["id"]


def _has_order(context: IterationContext) -> bool:
    return "order_id" in context.vars


def _order_url(context: IterationContext) -> str:
    return f"/api/v1/orders/{context.vars['order_id']}"


def _order_matches(result: StepResult, context: IterationContext) -> bool:
    return result.json().get("id") == context.vars.get("order_id")


def _list_has_orders(result: StepResult) -> bool:
    total = result.json().get("total")
    return isinstance(total, int) and total > 0


def basic_scenario(base_url: str = "") -> Scenario:
    """Health → create → fetch → list, with the checks the team relies on."""
    base = base_url.rstrip("/")
    return Scenario(
        name="orders-basic",
        steps=[
            RequestStep(
                "health",
                "GET",
                f"{base}/health",
                expected_status=200,
                checks=[check("health check status is 200", status_is(200))],
                think_time=constant(0.5),
            ),
            RequestStep(
                "create order",
                "POST",
                f"{base}/api/v1/orders",
                body=lambda context: random_order_payload(random.randint(0, 9999)),
                headers=headers_with(),
                expected_status=201,
                on_response=_remember_order,
                checks=[
                    check("order created status is 201", status_is(201)),
                    check("order has ID", _order_id_valid),
                    check("response time < 200ms", faster_than(200)),
                ],
            ),
            RequestStep(
                "get order",
                "GET",
                lambda context: base + _order_url(context),
                expected_status=200,
                when=_has_order,
                checks=[
                    check("get order status is 200", status_is(200)),
                    check("order data matches", _order_matches, with_context=True),
                ],
                think_time=constant(1.0),
            ),
            RequestStep(
                "list orders",
                "GET",
                f"{base}/api/v1/orders?page=1&limit=10",
                expected_status=200,
                checks=[
                    check("list orders status is 200", status_is(200)),
                    check("list has orders", _list_has_orders),
                ],
                think_time=constant(0.5),
            ),
        ],
        error_metric="errors",
    )


def spike_scenario(base_url: str = "") -> Scenario:
    """Create orders only, with a generous 15 s timeout for the spike."""
    base = base_url.rstrip("/")
    return Scenario(
        name="orders-spike",
        steps=[
            RequestStep(
                "create order",
                "POST",
                f"{base}/api/v1/orders",
                body=lambda context: random_order_payload(random.randint(0, 49999), prefix="spike"),
                headers=headers_with(),
                expected_status=201,
                timeout=15.0,
                checks=[
                    check("order created", status_is(201)),
                    check("responded in time", faster_than(5000)),
                ],
                think_time=constant(0.3),
            ),
        ],
    )


def stress_scenario(base_url: str = "") -> Scenario:
    """Create orders under steadily increasing load, tracking an ``errors`` rate."""
    base = base_url.rstrip("/")
    return Scenario(
        name="orders-stress",
        steps=[
            RequestStep(
                "create order",
                "POST",
                f"{base}/api/v1/orders",
                body=lambda context: random_order_payload(random.randint(0, 99999), prefix="stress"),
                headers=headers_with(),
                expected_status=201,
                timeout=10.0,
                checks=[
                    check("order created", status_is(201)),
                    check("response time acceptable", faster_than(2000)),
                ],
                think_time=constant(0.5),
            ),
        ],
        error_metric="errors",
    )


BASIC_OPTIONS: dict[str, Any] = {
    "stages": [
        {"duration": "30s", "target": 20},
        {"duration": "1m", "target": 50},
        {"duration": "2m", "target": 50},
        {"duration": "30s", "target": 0},
    ],
    "thresholds": {
        "http_req_duration": ["p(95)<500"],
        "http_req_failed": ["rate<0.05"],
        "errors": ["rate<0.1"],
    },
}

SPIKE_OPTIONS: dict[str, Any] = {
    "stages": [
        {"duration": "30s", "target": 10},
        {"duration": "10s", "target": 200},
        {"duration": "1m", "target": 200},
        {"duration": "10s", "target": 10},
        {"duration": "30s", "target": 0},
    ],
    "thresholds": {
        "http_req_duration": ["p(95)<2000"],
        "http_req_failed": ["rate<0.2"],
    },
}

STRESS_OPTIONS: dict[str, Any] = {
    "stages": [
        {"duration": "1m", "target": 50},
        {"duration": "2m", "target": 100},
        {"duration": "2m", "target": 200},
        {"duration": "2m", "target": 300},
        {"duration": "2m", "target": 400},
        {"duration": "1m", "target": 0},
    ],
    "thresholds": {
        "http_req_duration": ["p(95)<1000"],
        "http_req_failed": ["rate<0.1"],
        "errors": ["rate<0.1"],
    },
}

# Preset name -> (scenario factory, run options).
PRESETS: dict[str, tuple[Callable[[str], Scenario], dict[str, Any]]] = {
    "basic": (basic_scenario, BASIC_OPTIONS),
    "spike": (spike_scenario, SPIKE_OPTIONS),
    "stress": (stress_scenario, STRESS_OPTIONS),
}
