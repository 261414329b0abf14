from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from .config import load_config
from .dashboard import DashboardService
from .errors import CalendarFetchError
from .server import run_server

CONFIG_PATH_DEFAULT = "config.yaml"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Kiosk dashboard calendar/weather backend")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--log-level", default="INFO")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("events", help="Print the aggregated calendar events as JSON")

    serve = sub.add_parser("serve", help="Run the dashboard HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    google = sub.add_parser("test-google", help="Check a Google Calendar API key and calendar id")
    google.add_argument("--api-key", required=True)
    google.add_argument("--calendar-id", required=True)

    ical = sub.add_parser("test-ical", help="Fetch up to 3 events from an iCal/webcal URL")
    ical.add_argument("--url", required=True)

    args = ap.parse_args(argv)
    load_dotenv()
    _configure_logging(args.log_level)

    cfg = load_config(args.config)
    service = DashboardService(cfg)

    if args.command == "events":
        status, payload = service.calendar_payload()
        _print(payload)
        return 0 if status == 200 else 1

    if args.command == "serve":
        run_server(service, host=args.host or cfg.server.host, port=args.port or cfg.server.port)
        return 0

    try:
        if args.command == "test-google":
            _print(service.test_google({"apiKey": args.api_key, "calendarId": args.calendar_id}))
        elif args.command == "test-ical":
            _print(service.test_ical({"url": args.url}))
    except (CalendarFetchError, ValueError) as exc:
        _print({"success": False, "error": str(exc)})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
