from __future__ import annotations

import json
import logging
import mimetypes
import signal
import threading
import time
from http import HTTPStatus
from http.cookies import CookieError, SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

from .api import SiteApp
from .auth import SESSION_COOKIE, SESSION_DURATION
from .errors import ApiError
from .livereload import Broker

logger = logging.getLogger(__name__)

DRAIN_SECONDS = 30.0
SOCIAL_PATHS = {"/github": "github", "/linkedin": "linkedin", "/email": "email"}
COMMENT_PREFIX = "/api/comments/"
MAX_BODY_BYTES = 64 * 1024


def _send_json(handler: BaseHTTPRequestHandler, status: int, payload: object) -> None:
    body = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _send_text(handler: BaseHTTPRequestHandler, status: int, message: str) -> None:
    body = (message + "\n").encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "text/plain; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _send_file(handler: BaseHTTPRequestHandler, path: Path, status: int = HTTPStatus.OK, no_cache: bool = False) -> None:
    data = path.read_bytes()
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    if content_type.startswith("text/") or content_type in ("application/javascript", "application/json"):
        content_type += "; charset=utf-8"

    handler.send_response(status)
    handler.send_header("Content-Type", content_type)
    handler.send_header("Content-Length", str(len(data)))
    if no_cache:
        handler.send_header("Cache-Control", "no-cache")
    handler.end_headers()
    handler.wfile.write(data)


def _redirect(handler: BaseHTTPRequestHandler, status: int, location: str, cookie: Optional[str] = None) -> None:
    handler.send_response(status)
    handler.send_header("Location", location)
    if cookie:
        handler.send_header("Set-Cookie", cookie)
    handler.send_header("Content-Length", "0")
    handler.end_headers()


def _parse_json_body(handler: BaseHTTPRequestHandler) -> dict[str, object]:
    raw_len = handler.headers.get("Content-Length", "0")
    try:
        length = int(raw_len)
    except ValueError:
        raise ApiError(400, "Invalid Content-Length")

    if length <= 0:
        raise ApiError(400, "Invalid request body")
    if length > MAX_BODY_BYTES:
        raise ApiError(413, "Request body too large")

    body = handler.rfile.read(length)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ApiError(400, "Invalid request body") from exc

    if not isinstance(payload, dict):
        raise ApiError(400, "Invalid request body")

    return payload


def _query_value(parsed, name: str) -> str:
    return parse_qs(parsed.query).get(name, [""])[0]


def session_cookie(token: str, max_age: int = int(SESSION_DURATION.total_seconds())) -> str:
    cookie: SimpleCookie = SimpleCookie()
    cookie[SESSION_COOKIE] = token
    morsel = cookie[SESSION_COOKIE]
    morsel["path"] = "/"
    morsel["max-age"] = max_age
    morsel["httponly"] = True
    morsel["samesite"] = "Lax"
    return morsel.OutputString()


def expired_session_cookie() -> str:
    return session_cookie("", max_age=0)


def read_session_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    cookie: SimpleCookie = SimpleCookie()
    try:
        cookie.load(header)
    except CookieError:
        return None
    morsel = cookie.get(SESSION_COOKIE)
    return morsel.value if morsel is not None and morsel.value else None


def make_handler(app: SiteApp, broker: Optional[Broker] = None):
    class SiteHandler(BaseHTTPRequestHandler):
        def user(self):
            return app.current_user(read_session_token(self.headers.get("Cookie")))

        def dispatch(self, route: Callable[[], None]) -> None:
            try:
                route()
            except ApiError as exc:
                _send_text(self, exc.status, exc.message)
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Client went away during %s %s", self.command, self.path)
            except Exception:
                logger.exception("Unhandled error for %s %s", self.command, self.path)
                _send_text(self, 500, "Internal server error")

        def do_GET(self) -> None:  # type: ignore[override]
            self.dispatch(self.route_get)

        def do_POST(self) -> None:  # type: ignore[override]
            self.dispatch(self.route_post)

        def do_PUT(self) -> None:  # type: ignore[override]
            self.dispatch(self.route_put)

        def do_DELETE(self) -> None:  # type: ignore[override]
            self.dispatch(self.route_delete)

        def route_get(self) -> None:
            parsed = urlparse(self.path)
            path = parsed.path

            if path == "/api/reactions":
                _send_json(self, 200, app.api_reactions(_query_value(parsed, "post")))
            elif path == "/api/reactions/user":
                _send_json(self, 200, app.api_user_reactions(self.user(), _query_value(parsed, "post")))
            elif path == "/api/comments":
                _send_json(self, 200, app.api_comments(_query_value(parsed, "post")))
            elif path == "/api/me":
                _send_json(self, 200, app.api_me(self.user()))
            elif path == "/api/search":
                _send_json(self, 200, app.api_search(_query_value(parsed, "q")))
            elif path == "/api/auth/providers":
                _send_json(self, 200, app.api_providers())
            elif path.startswith("/api/"):
                raise ApiError(405, "Method not allowed")
            elif path == "/auth/logout":
                self.route_logout(parsed)
            elif path.startswith("/auth/"):
                self.route_auth(parsed)
            elif path in SOCIAL_PATHS:
                _redirect(self, 301, app.social_redirect(SOCIAL_PATHS[path]))
            elif path == "/__livereload" and broker is not None:
                self.stream_events(broker)
            else:
                self.route_static(path)

        def route_post(self) -> None:
            path = urlparse(self.path).path
            if path == "/api/reactions":
                user = self.user()
                _send_json(self, 200, app.api_toggle_reaction(user, _parse_json_body(self)))
            elif path == "/api/comments":
                user = self.user()
                _send_json(self, 201, app.api_create_comment(user, _parse_json_body(self)))
            elif path.startswith("/api/"):
                raise ApiError(405, "Method not allowed")
            else:
                raise ApiError(404, "Not found")

        def route_put(self) -> None:
            path = urlparse(self.path).path
            if path.startswith(COMMENT_PREFIX):
                user = self.user()
                raw_id = path[len(COMMENT_PREFIX) :]
                _send_json(self, 200, app.api_update_comment(user, raw_id, _parse_json_body(self)))
            elif path.startswith("/api/"):
                raise ApiError(405, "Method not allowed")
            else:
                raise ApiError(404, "Not found")

        def route_delete(self) -> None:
            path = urlparse(self.path).path
            if path.startswith(COMMENT_PREFIX):
                app.api_delete_comment(self.user(), path[len(COMMENT_PREFIX) :])
                self.send_response(204)
                self.send_header("Content-Length", "0")
                self.end_headers()
            elif path.startswith("/api/"):
                raise ApiError(405, "Method not allowed")
            else:
                raise ApiError(404, "Not found")

        def route_auth(self, parsed) -> None:
            parts = parsed.path.strip("/").split("/")
            if len(parts) == 2:
                _redirect(self, 307, app.login_url(parts[1], _query_value(parsed, "redirect")))
            elif len(parts) == 3 and parts[2] == "callback":
                token, redirect = app.finish_login(
                    parts[1], _query_value(parsed, "code"), _query_value(parsed, "state")
                )
                _redirect(self, 307, redirect, session_cookie(token))
            else:
                raise ApiError(404, "Not found")

        def route_logout(self, parsed) -> None:
            app.logout(read_session_token(self.headers.get("Cookie")))
            target = _query_value(parsed, "redirect")
            if not target.startswith("/") or target.startswith("//"):
                target = "/"
            _redirect(self, 307, target, expired_session_cookie())

        def route_static(self, path: str) -> None:
            site_file = app.resolve_site_file(path)
            if site_file is not None:
                _send_file(self, site_file, no_cache=app.dev_mode)
                return
            not_found = app.not_found_page()
            if not_found is not None:
                _send_file(self, not_found, status=HTTPStatus.NOT_FOUND, no_cache=app.dev_mode)
                return
            raise ApiError(404, "Not found")

        def stream_events(self, broker: Broker) -> None:
            client = broker.subscribe()
            try:
                self.send_response(200)
                self.send_header("Content-Type", "text/event-stream")
                self.send_header("Cache-Control", "no-cache")
                self.send_header("Connection", "close")
                self.end_headers()
                self.close_connection = True
                for frame in broker.stream(client):
                    self.wfile.write(frame)
                    self.wfile.flush()
            finally:
                broker.unsubscribe(client)

        def log_message(self, format: str, *args: object) -> None:  # type: ignore[override]
            logger.debug("%s - %s", self.address_string(), format % args)

    return SiteHandler


class SiteServer(ThreadingHTTPServer):
    """Threading server that can wait, with a deadline, for in-flight requests."""

    daemon_threads = True

    def __init__(self, server_address, handler_cls):
        super().__init__(server_address, handler_cls)
        self._active: set[threading.Thread] = set()
        self._active_lock = threading.Lock()

    def process_request_thread(self, request, client_address) -> None:
        current = threading.current_thread()
        with self._active_lock:
            self._active.add(current)
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._active_lock:
                self._active.discard(current)

    def drain(self, timeout: float = DRAIN_SECONDS) -> int:
        """Join request threads until ``timeout``; returns how many are still running."""
        deadline = time.monotonic() + timeout
        with self._active_lock:
            threads = list(self._active)
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        return sum(1 for thread in threads if thread.is_alive())


def serve(
    app: SiteApp,
    port: int,
    host: str = "",
    broker: Optional[Broker] = None,
    on_shutdown: Optional[Callable[[], None]] = None,
) -> None:
    """Serve until SIGINT/SIGTERM, then drain in-flight requests."""
    server = SiteServer((host, port), make_handler(app, broker))
    stopping = threading.Event()

    def stop() -> None:
        logger.info("Shutting down server...")
        try:
            if on_shutdown is not None:
                on_shutdown()
            if broker is not None:
                broker.close()
            app.remove_dev_user_data()
        finally:
            server.shutdown()

    def handle_signal(signum, frame) -> None:
        if stopping.is_set():
            return
        stopping.set()
        # shutdown() blocks until serve_forever returns, so it cannot run on this thread
        threading.Thread(target=stop, name="shutdown").start()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    logger.info("Serving %s on http://localhost:%d", app.output_dir, server.server_address[1])
    try:
        server.serve_forever()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        remaining = server.drain(DRAIN_SECONDS)
        if remaining:
            logger.warning("%d request(s) still running after %.0fs", remaining, DRAIN_SECONDS)
        server.server_close()
        logger.info("Server stopped")
