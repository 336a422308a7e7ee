"""Health-contract probes used to verify a freshly deployed service."""
from __future__ import annotations

import time
from threading import Event

import httpx

from .manifest import HealthContract


HEALTHY_STATUSES = {"healthy", "ok", "pass", "up"}


def probe_url(base_url: str, contract: HealthContract) -> str:
    return f"{base_url.rstrip('/')}{contract.path}"


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Probe one health endpoint. Returns (is_healthy, message, latency_ms).

    Any 2xx counts, unless the body is JSON with a ``status`` field that is
    not one of HEALTHY_STATUSES. Static frontends rarely answer JSON.
    """
    start = time.monotonic()

    def elapsed() -> float:
        return round((time.monotonic() - start) * 1000.0, 2)

    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except (httpx.ConnectError, httpx.TimeoutException):
        return False, "No response", elapsed()
    except httpx.HTTPError as e:
        return False, f"Error: {type(e).__name__}: {e}", elapsed()

    latency_ms = elapsed()
    if not 200 <= resp.status_code < 300:
        return False, f"HTTP {resp.status_code}", latency_ms
    try:
        data = resp.json()
    except ValueError:
        return True, "Healthy", latency_ms
    status = data.get("status") if isinstance(data, dict) else None
    if status is None or str(status).lower() in HEALTHY_STATUSES:
        return True, "Healthy", latency_ms
    return False, f"Unhealthy status: {status!r}", latency_ms


def wait_healthy(url: str, max_wait_s: float, interval_s: float = 2.0, stop: Event | None = None) -> tuple[bool, str]:
    """Poll until healthy, max_wait_s elapsed, or stop is set."""
    deadline = time.monotonic() + max_wait_s
    while True:
        ok, msg, _ = check_health(url)
        if ok or time.monotonic() >= deadline:
            return ok, msg
        if stop is not None and stop.wait(interval_s):
            return False, "stopped"
        if stop is None:
            time.sleep(interval_s)
