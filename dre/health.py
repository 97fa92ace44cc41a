from __future__ import annotations

import time

import httpx


def check_health(url: str, timeout_s: float = 2.0, client: httpx.Client | None = None) -> tuple[bool, str, float | None]:
    """Call an instance health endpoint.

    Any 2xx is success. Every other status (404 included), a refused
    connection and a timeout are all plain failures; no code is treated
    leniently.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        if client is None:
            with httpx.Client(timeout=timeout_s, follow_redirects=False) as c:
                resp = c.get(url)
        else:
            resp = client.get(url, timeout=timeout_s, follow_redirects=False)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not resp.is_success:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except httpx.TimeoutException:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "Timeout", latency_ms
    except httpx.ConnectError:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
