"""
Run one monitoring scan from the CLI and print its final progress.
"""

from __future__ import annotations

import argparse
import dataclasses
import json

from app.config import get_monitor_settings
from app.monitoring.logging_utils import configure_logging
from app.services.monitoring_service import MonitorService
from db.session import get_session_factory


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a listing monitor scan in the foreground.")
    parser.add_argument(
        "--pages",
        type=int,
        default=None,
        help="Number of search result pages to sweep (default: MONITOR_SCAN_DEFAULT_PAGES).",
    )
    parser.add_argument(
        "--entity",
        dest="entities",
        action="append",
        default=[],
        help="Refresh one entity id instead of sweeping pages. Repeatable.",
    )
    parser.add_argument(
        "--priority",
        choices=("high", "normal", "low"),
        default=None,
        help="Job priority for the scan.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Scan deadline in seconds (default: MONITOR_SCAN_DEADLINE_SECONDS).",
    )
    args = parser.parse_args()

    settings = get_monitor_settings()
    configure_logging(settings.log_level)
    service = MonitorService(get_session_factory(), settings)

    try:
        if args.entities:
            scan_id = service.start_entity_refresh(
                args.entities,
                priority=args.priority,
                triggered_by="cli",
                deadline_seconds=args.timeout,
            )
        else:
            scan_id = service.start_page_scan(
                args.pages,
                priority=args.priority,
                triggered_by="cli",
                deadline_seconds=args.timeout,
            )
        service.run_until_idle(scan_id=scan_id)
        service.supervise()
        progress = service.get_progress(scan_id)
    finally:
        service.stop()

    print(json.dumps(dataclasses.asdict(progress), indent=2, default=str))
    return 0 if progress.status == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
