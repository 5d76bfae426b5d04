"""Render a human-readable markdown report from run artifacts."""

from __future__ import annotations

from typing import Any

_METRIC_ROWS = [
    ("accuracy", "Accuracy"),
    ("passed_count", "Passed"),
    ("failed_count", "Failed"),
    ("average_latency_ms", "Average latency (ms)"),
    ("latency_p50_ms", "Latency p50 (ms)"),
    ("latency_p95_ms", "Latency p95 (ms)"),
    ("total_prompt_tokens", "Prompt tokens"),
    ("total_completion_tokens", "Completion tokens"),
    ("topology_accuracy", "Topology accuracy"),
    ("topology_subject_accuracy", "Subject accuracy"),
    ("topology_topic_accuracy", "Topic accuracy"),
    ("topology_subtopic_accuracy", "Subtopic accuracy"),
]


def _fmt(value: Any) -> str:
    return f"{value:.4f}" if isinstance(value, float) else str(value)


def render_report(summary: dict[str, Any], attempts: list[dict[str, Any]]) -> str:
    """Generate a markdown report from summary.json and attempts.jsonl entries."""
    metrics = summary.get("metrics", {})
    lines = [
        f"# Benchmark Report: {summary.get('label') or summary.get('id', 'unknown')}",
        "",
        f"**Run ID:** `{summary.get('id', 'unknown')}`",
        f"**Profile:** {summary.get('profile_name', '')} (`{summary.get('profile_id', '')}`)",
        f"**Model:** `{summary.get('model_id', '')}`",
        f"**Status:** {summary.get('status', '')}",
        f"**Started:** {summary.get('started_at', '')}",
        "",
    ]
    if summary.get("summary"):
        lines += [summary["summary"], ""]
    if summary.get("error"):
        lines += [f"**Error:** {summary['error']}", ""]

    if metrics:
        lines.append("## Metrics")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        for key, title in _METRIC_ROWS:
            if key in metrics:
                lines.append(f"| {title} | {_fmt(metrics[key])} |")
        lines.append("")

    failures = [a for a in attempts if not a.get("evaluation", {}).get("passed")]
    if failures:
        lines.append("## Failed Questions")
        lines.append("")
        lines.append("| Question | Expected | Received | Notes |")
        lines.append("|----------|----------|----------|-------|")
        for attempt in failures[:25]:
            evaluation = attempt.get("evaluation", {})
            notes = attempt.get("error") or evaluation.get("notes") or ""
            lines.append(
                f"| {attempt.get('question_id', 'unknown')} | {evaluation.get('expected', '')} "
                f"| {evaluation.get('received', '')} | {notes.replace('|', '/')} |"
            )
        lines.append("")

    topo_failures = [
        a for a in attempts
        if a.get("topology_evaluation") and not a["topology_evaluation"].get("passed")
    ]
    if topo_failures:
        lines.append("## Topology Misses")
        lines.append("")
        for attempt in topo_failures[:25]:
            evaluation = attempt["topology_evaluation"]
            lines.append(
                f"- **{attempt.get('question_id', 'unknown')}**: expected {evaluation.get('expected', '')}, "
                f"received {evaluation.get('received', '')}"
            )
        lines.append("")

    return "\n".join(lines)
