"""
Container health check for the monitor API.

Healthy means HTTP 2xx/3xx and, when workers are expected, a running pool.
"""

from __future__ import annotations

import json
import os
from urllib.error import URLError
from urllib.request import urlopen


def main() -> int:
    port = os.getenv("PORT", "8000")
    path = os.getenv("HEALTHCHECK_PATH", "/health")
    require_workers = os.getenv("HEALTHCHECK_REQUIRE_WORKERS", "true").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }
    url = f"http://127.0.0.1:{port}{path}"

    try:
        with urlopen(url, timeout=2) as response:
            if not 200 <= response.status < 400:
                return 1
            body = json.loads(response.read().decode("utf-8") or "{}")
    except (URLError, TimeoutError, ValueError):
        return 1

    if body.get("status") != "ok":
        return 1
    if require_workers and not body.get("workers_running", False):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
