"""
Prometheus metrics configuration for CloudIDE Runner.

Defines custom metrics; exposed at ``/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "cloudide"


# ============================================================================
# WebSocket Metrics
# ============================================================================

ws_connections_active = Gauge(
    f"{NAMESPACE}_websocket_connections_active",
    "Number of currently active WebSocket connections",
)

ws_connections_total = Counter(
    f"{NAMESPACE}_websocket_connections_total",
    "Total number of WebSocket connections accepted",
)

ws_messages_total = Counter(
    f"{NAMESPACE}_websocket_messages_total",
    "Total number of WebSocket messages processed",
    ["direction"],  # "inbound" or "outbound"
)


# ============================================================================
# Run Pipeline Metrics
# ============================================================================

runs_total = Counter(
    f"{NAMESPACE}_runs_total",
    "Run requests by outcome",
    ["outcome"],  # "spawned", "missing_entry_point", "spawn_failed", "error"
)

guest_processes_active = Gauge(
    f"{NAMESPACE}_guest_processes_active",
    "Number of live guest processes",
)

package_installs_total = Counter(
    f"{NAMESPACE}_package_installs_total",
    "Dependency installations by status",
    ["status"],  # "success", "failed", "timeout"
)


# ============================================================================
# Preview Proxy Metrics
# ============================================================================

proxy_requests_total = Counter(
    f"{NAMESPACE}_proxy_requests_total",
    "Preview proxy requests by result",
    ["result"],  # "forwarded", "no_session", "unreachable"
)
