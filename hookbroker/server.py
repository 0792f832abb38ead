"""Wiring of the API controllers into a running HTTP server."""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .web import Request, Router, setup_api_routes

_log = logging.getLogger("hookbroker.server")

_SHUTDOWN_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if sig is not None
)

# The order in which controllers are registered with the router.
_ROUTE_ORDER = (
    "status_controller",
    "producers_controller",
    "producer_controller",
    "channel_controller",
    "consumer_controller",
    "consumers_controller",
    "broadcast_controller",
    "message_controller",
    "messages_controller",
    "dlq_controller",
    "channels_controller",
)


class ServerClosed(Exception):
    """Reported to the listener once the server has stopped serving."""

    def __init__(self) -> None:
        super().__init__("http: Server closed")


@dataclass
class Controllers:
    """All the controllers the API exposes; absent ones are left as None."""

    status_controller: Any = None
    producers_controller: Any = None
    producer_controller: Any = None
    channel_controller: Any = None
    channels_controller: Any = None
    consumer_controller: Any = None
    consumers_controller: Any = None
    broadcast_controller: Any = None
    message_controller: Any = None
    messages_controller: Any = None
    dlq_controller: Any = None


class ServerLifecycleListener:
    """Receives the key events of a server's life; subclass to react to them."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.stopped = threading.Event()
        self.errors: list[BaseException] = []

    def starting_server(self) -> None:
        self.started.set()

    def server_start_failed(self, error: BaseException) -> None:
        self.errors.append(error)

    def server_shutdown_completed(self) -> None:
        self.stopped.set()


class _RequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: "_BrokerHTTPServer"

    def _handle(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(400, "Invalid Content-Length")
            return
        body = self.rfile.read(length) if length > 0 else b""
        request = Request(
            method=self.command,
            url=self.path,
            headers={name: value for name, value in self.headers.items()},
            body=body,
        )
        response = self.server.router(request)
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    do_GET = do_PUT = do_POST = do_DELETE = do_HEAD = do_PATCH = _handle

    def log_message(self, format: str, *args: Any) -> None:
        _log.debug("%s - %s", self.address_string(), format % args)


class _BrokerHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], router: Router):
        self.router = router
        super().__init__(address, _RequestHandler)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} is missing a port")
    return host.strip("[]"), int(port)


class ApiServer:
    """A running API server; stops on shutdown() or on SIGINT/SIGTERM."""

    def __init__(self, httpd: _BrokerHTTPServer | None, listener: ServerLifecycleListener):
        self._httpd = httpd
        self._listener = listener
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._closed = False
        self._previous_handlers: dict[int, Any] = {}

    @property
    def address(self) -> tuple[str, int] | None:
        """The (host, port) the server is bound to, or None if binding failed."""
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def _start(self) -> None:
        self._thread = threading.Thread(target=self._serve, name="hookbroker-http", daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        assert self._httpd is not None
        try:
            self._httpd.serve_forever()
        except Exception as err:
            self._listener.server_start_failed(err)
            _log.error("%s", err)
            return
        closed = ServerClosed()
        self._listener.server_start_failed(closed)
        _log.info("%s", closed)

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _SHUTDOWN_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: Any) -> None:
        self._restore_signal_handlers()
        threading.Thread(target=self.shutdown, name="hookbroker-shutdown", daemon=True).start()

    def shutdown(self) -> None:
        """Stop serving, release the socket and tell the listener."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        _log.info("Shutting down the server...")
        self._restore_signal_handlers()
        if self._httpd is not None:
            if self._thread is not None:
                self._httpd.shutdown()
                self._thread.join(timeout=15)
            self._httpd.server_close()
        _log.info("Server gracefully stopped!")
        self._listener.server_shutdown_completed()


def new_router(controllers: Controllers) -> Router:
    """Build a router with the routes of every controller that is present."""
    endpoints = [getattr(controllers, name) for name in _ROUTE_ORDER]
    return setup_api_routes(Router(), *(endpoint for endpoint in endpoints if endpoint is not None))


def configure_api(address: str, listener: ServerLifecycleListener, router: Router) -> ApiServer:
    """Start serving the router at "host:port" in the background."""
    _log.info("Listening to http at - %s", address)
    listener.starting_server()
    try:
        httpd = _BrokerHTTPServer(_split_address(address), router)
    except (OSError, ValueError) as err:
        listener.server_start_failed(err)
        _log.error("%s", err)
        return ApiServer(None, listener)
    server = ApiServer(httpd, listener)
    server._start()
    server._install_signal_handlers()
    return server