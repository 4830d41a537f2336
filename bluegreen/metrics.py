"""Prometheus instruments for the orchestrator.

Registered once at import on the default registry and exported by the
service's ``/metrics`` endpoint.
"""

from prometheus_client import Counter, Gauge, Histogram

# ------------------------------------------------------------------
# Traffic switching
# ------------------------------------------------------------------
TRAFFIC_SWITCHES = Counter(
    "bluegreen_traffic_switches_total", "Traffic switch attempts by outcome", ["outcome"]
)
TRAFFIC_WEIGHT = Gauge(
    "bluegreen_traffic_weight_percent", "Current traffic share per environment", ["environment"]
)
TRAFFIC_REVISION = Gauge("bluegreen_traffic_revision", "Revision of the applied traffic state")

# ------------------------------------------------------------------
# Plans and operations
# ------------------------------------------------------------------
PLANS = Counter("bluegreen_migration_plans_total", "Migration plans by terminal status", ["status"])
PLAN_RUNNING = Gauge("bluegreen_migration_running", "1 while a migration plan holds the lock")
OPERATIONS = Counter(
    "bluegreen_operations_total", "Controller operations by outcome", ["operation", "outcome"]
)

# ------------------------------------------------------------------
# Health and monitoring
# ------------------------------------------------------------------
# Buckets: 10ms, 25ms, 50ms, 100ms, 250ms, 500ms, 1s, 2.5s, 5s
PROBE_LATENCY = Histogram(
    "bluegreen_probe_latency_seconds",
    "Health probe latency in seconds",
    ["environment", "check"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
ENV_HEALTH = Gauge(
    "bluegreen_environment_healthy", "Latest verdict per environment (1=healthy, 0=unhealthy)", ["environment"]
)
ENV_CPU = Gauge("bluegreen_environment_cpu_ratio", "Container CPU usage per environment (1.0 = one core)", ["environment"])
ENV_MEMORY = Gauge("bluegreen_environment_memory_ratio", "Container memory usage per environment", ["environment"])
EDGE_ERROR_RATE = Gauge("bluegreen_edge_error_rate_ratio", "Edge error rate over the trailing window")
EDGE_P95_LATENCY = Gauge("bluegreen_edge_latency_p95_ms", "Edge P95 latency over the trailing window")
EDGE_AVAILABILITY = Gauge("bluegreen_edge_availability_percent", "Edge availability over the trailing window")
ALERTS = Counter("bluegreen_alerts_total", "Alerts emitted by type and severity", ["type", "severity"])

# ------------------------------------------------------------------
# Operator API
# ------------------------------------------------------------------
API_REQUESTS = Counter(
    "bluegreen_api_requests_total", "Operator API requests by method and status", ["method", "status"]
)
