"""
Prometheus 指标

状态变更次数与「完整传播」次数之间的差值即为潜在的阻塞状态滞后
"""

from prometheus_client import Counter


RELEASE_STATUS_CHANGES_TOTAL = Counter(
    "release_status_changes_total",
    "Committed release status changes",
    ["status"],
)

PROPAGATION_RUNS_TOTAL = Counter(
    "release_propagation_runs_total",
    "Blocked-status propagation runs",
    ["outcome"],  # complete | partial | truncated
)

PROPAGATION_NODES_TOTAL = Counter(
    "release_propagation_nodes_total",
    "Releases recomputed during propagation",
    ["result"],  # changed | unchanged | failed
)

PROPAGATION_FAILURES_TOTAL = Counter(
    "release_propagation_failures_total",
    "Releases left stale after propagation, pending the recompute sweep",
)


def record_status_change(status: str) -> None:
    RELEASE_STATUS_CHANGES_TOTAL.labels(status=status).inc()


def record_node(result: str) -> None:
    PROPAGATION_NODES_TOTAL.labels(result=result).inc()


def record_run(outcome: str, failures: int = 0) -> None:
    PROPAGATION_RUNS_TOTAL.labels(outcome=outcome).inc()
    if failures:
        PROPAGATION_FAILURES_TOTAL.inc(failures)
