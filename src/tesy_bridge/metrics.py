"""Prometheus metrics for the Tesy bridge."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    start_http_server,
)

SESSION_STATES = ("disconnected", "connecting", "connected", "reconnecting")

tesy_directory_requests_total: Final = Counter(  # type: ignore[assignment]
    "tesy_directory_requests_total",
    "Total cloud directory requests",
    ["outcome"],
)

tesy_directory_consecutive_errors: Final = Gauge(  # type: ignore[assignment]
    "tesy_directory_consecutive_errors",
    "Consecutive failed cloud directory requests",
)

tesy_commands_total: Final = Counter(  # type: ignore[assignment]
    "tesy_commands_total",
    "Total device commands by outcome",
    ["command", "outcome"],
)

tesy_outbound_queue_depth: Final = Gauge(  # type: ignore[assignment]
    "tesy_outbound_queue_depth",
    "Commands waiting for the broker connection",
)

tesy_session_state: Final = Gauge(  # type: ignore[assignment]
    "tesy_session_state",
    "Current broker session state",
    ["state"],
)

tesy_telemetry_messages_total: Final = Counter(  # type: ignore[assignment]
    "tesy_telemetry_messages_total",
    "Total broker messages received by outcome",
    ["outcome"],
)

tesy_accessory_updates_total: Final = Counter(  # type: ignore[assignment]
    "tesy_accessory_updates_total",
    "Total accessory characteristic updates",
    ["characteristic", "source"],
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_directory_request(outcome: str, consecutive_errors: int) -> None:
    """Record a directory request and the current error streak."""
    tesy_directory_requests_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]
    tesy_directory_consecutive_errors.set(consecutive_errors)  # type: ignore[no-untyped-call]


def record_command(command: str, outcome: str) -> None:
    """Record a command outcome (sent/queued/rejected/failed/flushed)."""
    tesy_commands_total.labels(command=command, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_queue_depth(depth: int) -> None:
    """Record outbound queue depth."""
    tesy_outbound_queue_depth.set(depth)  # type: ignore[no-untyped-call]


def record_session_state(state: str) -> None:
    """Record broker session state change."""
    # 1 for the current state, 0 for the others
    for s in SESSION_STATES:
        value = 1 if s == state else 0
        tesy_session_state.labels(state=s).set(value)  # type: ignore[no-untyped-call]


def record_telemetry(outcome: str) -> None:
    """Record an incoming broker message."""
    tesy_telemetry_messages_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_accessory_update(characteristic: str, source: str) -> None:
    """Record a characteristic written to the accessory layer."""
    tesy_accessory_updates_total.labels(characteristic=characteristic, source=source).inc()  # type: ignore[no-untyped-call]
