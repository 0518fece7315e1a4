from __future__ import annotations

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import logging
import threading

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

LOGGER = logging.getLogger("rho_bot")

TITLE = "Rho Trading Bot"


class TradeMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
            ProcessCollector(registry=registry)
            PlatformCollector(registry=registry)
            GCCollector(registry=registry)
        self.registry = registry
        self.trades_counter = Counter("trades_counter", "Trades counter", registry=registry)

    def increase_trades_counter(self, value: int = 1) -> None:
        self.trades_counter.inc(value)

    def trades_total(self) -> float:
        value = self.registry.get_sample_value("trades_counter_total")
        return float(value or 0.0)

    def render(self) -> bytes:
        return generate_latest(self.registry)


def _handler_for(metrics: TradeMetrics) -> type[BaseHTTPRequestHandler]:
    class _StatusHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            path = self.path.split("?", 1)[0]
            if path == "/":
                self._reply(200, TITLE.encode("utf-8"), "text/plain; charset=utf-8")
            elif path == "/status":
                self._reply(200, b"OK", "text/plain; charset=utf-8")
            elif path == "/metrics":
                self._reply(200, metrics.render(), CONTENT_TYPE_LATEST)
            else:
                self._reply(404, b"Not Found", "text/plain; charset=utf-8")

        def _reply(self, code: int, body: bytes, content_type: str) -> None:
            self.send_response(code)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:  # noqa: A002
            LOGGER.debug("http %s", format % args)

    return _StatusHandler


class StatusServer:
    def __init__(self, metrics: TradeMetrics, host: str = "0.0.0.0", port: int = 3000) -> None:
        self.metrics = metrics
        self.host = host
        self.port = port
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            return self.host, self.port
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = ThreadingHTTPServer((self.host, self.port), _handler_for(self.metrics))
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="status-server", daemon=True)
        self._thread.start()
        LOGGER.info("status_server listening=%s:%s", *self.address)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._server = None
        self._thread = None
