"""Prometheus metric definitions for traversal runs."""

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest, write_to_textfile


paths_total = Counter("statecheck_paths_total", "Traversal paths concluded", ["graph", "status"])
transitions_total = Counter(
    "statecheck_transitions_total",
    "Valid transitions attempted",
    ["graph", "outcome"],
)
probes_total = Counter("statecheck_probes_total", "Invalid-transition probes", ["graph", "outcome"])
dependency_failures_total = Counter(
    "statecheck_dependency_failures_total",
    "Dependency resolvers that failed",
    ["graph", "state"],
)
rpc_retries_total = Counter("statecheck_rpc_retries_total", "JSON-RPC transport retries", ["method"])
step_seconds = Histogram(
    "statecheck_step_seconds",
    "Duration of one traversal phase in seconds",
    ["graph", "phase"],
)


def metrics_text() -> bytes:
    """Render all registered metrics in Prometheus text format."""

    return generate_latest()


def write_metrics_textfile(path: str) -> None:
    """Dump metrics for node-exporter's textfile collector after a run."""

    write_to_textfile(path, REGISTRY)
