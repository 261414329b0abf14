from __future__ import annotations

import json
import logging
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict
from urllib.parse import parse_qs, urlparse

from .dashboard import DashboardService
from .errors import CalendarFetchError, RateLimitExceeded, WeatherError

logger = logging.getLogger(__name__)

SOURCES_PATH = "/api/calendar/sources"


class DashboardRequestHandler(BaseHTTPRequestHandler):
    service_factory: Callable[[], DashboardService] = DashboardService

    def _send_json(self, status: int, payload: Any) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Dict[str, Any]:
        content_length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(content_length) if content_length else b"{}"
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data

    def _source_id(self, path: str) -> str:
        return path[len(SOURCES_PATH) + 1:] if path.startswith(SOURCES_PATH + "/") else ""

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:  # noqa: N802
        url = urlparse(self.path)
        service = self.service_factory()

        if url.path == "/health":
            self._send_json(HTTPStatus.OK, service.health())
        elif url.path == "/api/calendar":
            status, payload = service.calendar_payload()
            self._send_json(status, payload)
        elif url.path == SOURCES_PATH:
            self._send_json(HTTPStatus.OK, service.list_sources())
        elif url.path == "/api/dashboard/state":
            self._send_json(HTTPStatus.OK, service.dashboard_state())
        elif url.path == "/api/usage":
            self._send_json(HTTPStatus.OK, service.usage())
        elif url.path == "/api/weather":
            query = parse_qs(url.query)
            try:
                result = service.weather(
                    city=query.get("city", [None])[0],
                    units=query.get("units", [None])[0],
                )
            except RateLimitExceeded as exc:
                self._send_json(HTTPStatus.TOO_MANY_REQUESTS, {"error": exc.message})
                return
            except WeatherError as exc:
                self._send_json(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": exc.message})
                return
            self._send_json(HTTPStatus.OK, result)
        else:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})

    def do_POST(self) -> None:  # noqa: N802
        path = urlparse(self.path).path
        service = self.service_factory()
        try:
            data = self._read_json()
            if path == "/api/calendar/test-google":
                result = service.test_google(data)
            elif path == "/api/calendar/test-ical":
                result = service.test_ical(data)
            elif path == SOURCES_PATH:
                result = service.add_source(data).to_dict()
            elif path == "/api/dashboard/settings":
                result = service.update_settings(data)
            elif path == "/api/dashboard/reset":
                result = service.reset_settings()
            else:
                self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                return
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"success": False, "error": str(exc)})
            return
        except CalendarFetchError as exc:
            logger.warning("Calendar test failed: %s", exc)
            self._send_json(
                HTTPStatus.INTERNAL_SERVER_ERROR,
                {"success": False, "error": exc.message, "kind": exc.kind},
            )
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("POST %s failed", path)
            self._send_json(HTTPStatus.INTERNAL_SERVER_ERROR, {"success": False, "error": str(exc)})
            return

        self._send_json(HTTPStatus.OK, result)

    def do_PUT(self) -> None:  # noqa: N802
        source_id = self._source_id(urlparse(self.path).path)
        if not source_id:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
            return
        service = self.service_factory()
        try:
            source = service.update_source(source_id, self._read_json())
        except KeyError:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": f"Calendar source {source_id} not found"})
            return
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
            return
        self._send_json(HTTPStatus.OK, source.to_dict())

    def do_DELETE(self) -> None:  # noqa: N802
        source_id = self._source_id(urlparse(self.path).path)
        if not source_id:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
            return
        service = self.service_factory()
        try:
            service.delete_source(source_id)
        except KeyError:
            self._send_json(HTTPStatus.NOT_FOUND, {"error": f"Calendar source {source_id} not found"})
            return
        self._send_json(HTTPStatus.OK, {"success": True})


def make_server(service: DashboardService, host: str = "0.0.0.0", port: int = 3000) -> ThreadingHTTPServer:
    # One service per process so the weather rate limit spans requests
    handler = type("BoundDashboardRequestHandler", (DashboardRequestHandler,), {})
    handler.service_factory = staticmethod(lambda: service)
    return ThreadingHTTPServer((host, port), handler)


def run_server(service: DashboardService, host: str = "0.0.0.0", port: int = 3000) -> None:
    server = make_server(service, host, port)
    logger.info("Dashboard API listening on http://%s:%d", host, port)
    try:
        server.serve_forever()
    finally:
        server.server_close()
