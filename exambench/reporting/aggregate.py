"""Fold a run's attempts into RunMetrics."""

from __future__ import annotations

from typing import Iterable

from exambench.types import TOPOLOGY_STAGES, Attempt, RunMetrics


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    sorted_v = sorted(values)
    idx = int(len(sorted_v) * pct / 100.0)
    idx = min(idx, len(sorted_v) - 1)
    return sorted_v[idx]


def _ratio(passed: int, total: int) -> float:
    return passed / total if total else 0.0


def aggregate_metrics(attempts: Iterable[Attempt]) -> RunMetrics:
    """Compute summary metrics. Pure: the same attempts always give the same result."""
    attempts = list(attempts)
    total = len(attempts)
    passed = sum(1 for a in attempts if a.evaluation.passed)
    latencies = [a.latency_ms for a in attempts]
    total_latency = sum(latencies)

    values: dict[str, float | int] = {
        "accuracy": _ratio(passed, total),
        "average_latency_ms": total_latency / total if total else 0.0,
        "total_latency_ms": total_latency,
        "latency_p50_ms": _percentile(latencies, 50),
        "latency_p95_ms": _percentile(latencies, 95),
        "passed_count": passed,
        "failed_count": total - passed,
        "total_prompt_tokens": sum(a.prompt_tokens or 0 for a in attempts),
        "total_completion_tokens": sum(a.completion_tokens or 0 for a in attempts),
    }

    # Only attempts with at least one expected level count towards topology accuracy
    labelled = [
        a.topology_evaluation
        for a in attempts
        if a.topology_evaluation is not None
        and any(getattr(a.topology_evaluation.metrics, f"{stage}_expected") for stage in TOPOLOGY_STAGES)
    ]
    topo_passed = sum(1 for e in labelled if e.passed)
    values["topology_accuracy"] = _ratio(topo_passed, len(labelled))
    values["topology_passed_count"] = topo_passed
    values["topology_failed_count"] = len(labelled) - topo_passed

    for stage in TOPOLOGY_STAGES:
        compared = [e for e in labelled if getattr(e.metrics, f"{stage}_expected")]
        matches = sum(1 for e in compared if getattr(e.metrics, f"{stage}_match"))
        values[f"topology_{stage}_accuracy"] = _ratio(matches, len(compared))
        values[f"topology_{stage}_passed_count"] = matches
        values[f"topology_{stage}_failed_count"] = len(compared) - matches

    return RunMetrics(**values)
