"""Health and metrics endpoints, served apart from the certificate listener."""

import json
import os
import threading
import time
from collections import defaultdict
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import structlog

logger = structlog.get_logger()


def new_metrics_data(backends: list[str]) -> dict[str, Any]:
    """Metrics state for the monitoring server; certificate requests never write it."""
    return {
        "server_requests_total": defaultdict(
            lambda: defaultdict(int)
        ),  # method -> endpoint -> count
        "backends": list(backends),
        "server_start_time": time.time(),
    }


class HealthMetricsHandler(BaseHTTPRequestHandler):
    """HTTP handler for health and metrics endpoints."""

    def __init__(self, *args: Any, metrics_data: dict[str, Any], **kwargs: Any):
        self.metrics_data = metrics_data
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:
        if self.path == "/health":
            self._handle_health()
        elif self.path == "/metrics":
            self._handle_metrics()
        else:
            self._handle_not_found()

    def _handle_health(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.end_headers()

        self.wfile.write(json.dumps(get_health_data(self.metrics_data)).encode())
        self.metrics_data["server_requests_total"]["GET"]["/health"] += 1

    def _handle_metrics(self) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4")
        self.end_headers()

        self.wfile.write(get_prometheus_metrics(self.metrics_data).encode())
        self.metrics_data["server_requests_total"]["GET"]["/metrics"] += 1

    def _handle_not_found(self) -> None:
        self.send_response(404)
        self.end_headers()
        self.wfile.write(b"Not Found")

    def log_message(self, format: str, *args: Any) -> None:
        """Suppress default HTTP server logging."""
        pass


def get_health_data(metrics_data: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": "healthy" if metrics_data["backends"] else "degraded",
        "uptime_seconds": time.time() - metrics_data["server_start_time"],
        "backends_configured": len(metrics_data["backends"]),
    }


def get_prometheus_metrics(metrics_data: dict[str, Any]) -> str:
    """Render metrics in the Prometheus text exposition format."""
    lines = []

    lines.append(
        "# HELP ssh_usercert_gen_uptime_seconds Seconds since the service started"
    )
    lines.append("# TYPE ssh_usercert_gen_uptime_seconds gauge")
    uptime = time.time() - metrics_data["server_start_time"]
    lines.append(f"ssh_usercert_gen_uptime_seconds {uptime:.3f}")

    lines.append(
        "# HELP ssh_usercert_gen_backends_configured Credential backends in fallback order"
    )
    lines.append("# TYPE ssh_usercert_gen_backends_configured gauge")
    lines.append(
        f"ssh_usercert_gen_backends_configured {len(metrics_data['backends'])}"
    )

    lines.append(
        "# HELP ssh_usercert_gen_backend_info Configured credential backend and its priority"
    )
    lines.append("# TYPE ssh_usercert_gen_backend_info gauge")
    for priority, backend in enumerate(metrics_data["backends"]):
        lines.append(
            f'ssh_usercert_gen_backend_info{{backend="{backend}",priority="{priority}"}} 1'
        )

    lines.append(
        "# HELP ssh_usercert_gen_monitoring_requests_total Requests served by the monitoring endpoint"
    )
    lines.append("# TYPE ssh_usercert_gen_monitoring_requests_total counter")
    for method, endpoints in metrics_data["server_requests_total"].items():
        for endpoint, count in endpoints.items():
            lines.append(
                f'ssh_usercert_gen_monitoring_requests_total{{method="{method}",endpoint="{endpoint}"}} {count}'
            )

    return "\n".join(lines) + "\n"


def start_health_metrics_server(metrics_data: dict[str, Any]) -> None:
    """Start a plain HTTP server for health and metrics in a daemon thread."""

    def handler_factory(*args: Any, **kwargs: Any) -> HealthMetricsHandler:
        return HealthMetricsHandler(*args, metrics_data=metrics_data, **kwargs)

    def run_server() -> None:
        port = int(os.getenv("HEALTH_METRICS_PORT", "8080"))
        server = HTTPServer(("0.0.0.0", port), handler_factory)
        logger.info(f"Health and metrics server starting on port {port}")
        try:
            server.serve_forever()
        except Exception as e:
            logger.error(f"Health/metrics server error: {e}")
        finally:
            server.server_close()

    thread = threading.Thread(target=run_server, daemon=True)
    thread.start()
