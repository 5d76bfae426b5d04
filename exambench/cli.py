"""CLI entrypoint for exambench."""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from exambench.config import settings
from exambench.errors import ExamBenchError, RunCancelled
from exambench.logging import setup_logging

app = typer.Typer(name="exambench", help="Exam benchmark harness for OpenAI-compatible model servers.")
console = Console()


def _load_profile(profile_path: str):
    from exambench.profiles import load_profile, profile_from_settings

    return load_profile(profile_path) if profile_path else profile_from_settings()


def _fmt(value: object) -> str:
    return f"{value:.4f}" if isinstance(value, float) else str(value)


async def _run_with_cancel(coro_factory):
    """Run a coroutine with SIGINT wired to a cancellation event."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass
    return await coro_factory(cancel_event)


@app.command()
def run(
    questions: Path = typer.Option(settings.questions_path, help="Question bank (JSON or JSONL)"),
    topology: Path = typer.Option(settings.topology_path, help="Topology catalog JSON"),
    profile: str = typer.Option("", help="Profile YAML/JSON (default: build from environment)"),
    adapter: str = typer.Option("openai_compat", help="openai_compat | offline_stub"),
    limit: int = typer.Option(0, "--limit", help="Limit questions (0 = all)"),
    question_id: Optional[list[str]] = typer.Option(None, "--question-id", help="Run only these question ids"),
    exclude_images: bool = typer.Option(False, "--exclude-images", help="Skip questions that carry images"),
    label: str = typer.Option("", help="Run label"),
    preflight: bool = typer.Option(True, "--preflight/--no-preflight", help="Check connectivity and JSON mode first"),
) -> None:
    """Run the benchmark over a question bank."""
    setup_logging()
    from exambench.catalog import TopologyCatalog
    from exambench.dataset import load_question_bank, select_questions
    from exambench.runners.runner import execute_run
    from exambench.types import DatasetInfo

    try:
        bank = load_question_bank(questions)
        catalog = TopologyCatalog.load(topology)
        selected_profile = _load_profile(profile)
        selected = select_questions(bank.questions, question_id, limit, exclude_images)
    except ExamBenchError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1)

    console.print(
        f"[dim]profile={selected_profile.id}  adapter={adapter}  questions={len(selected)}[/]"
    )

    def on_progress(attempt, progress, metrics):
        mark = "[green]PASS[/]" if attempt.evaluation.passed else "[red]FAIL[/]"
        console.print(
            f"  {progress * 100:5.1f}%  {attempt.question_id}  {mark}  "
            f"accuracy={metrics.accuracy:.3f}"
        )

    try:
        result = asyncio.run(
            _run_with_cancel(
                lambda cancel_event: execute_run(
                    selected,
                    selected_profile,
                    catalog,
                    adapter_name=adapter,
                    label=label,
                    dataset=DatasetInfo(label=bank.label, total_questions=len(selected), filters=bank.filters),
                    cancel_event=cancel_event,
                    on_progress=on_progress,
                    run_preflight=preflight,
                )
            )
        )
    except RunCancelled:
        console.print("[yellow]Run cancelled.[/]")
        raise typer.Exit(code=130)
    except ExamBenchError as exc:
        console.print(f"[bold red]Run aborted:[/] {exc}")
        raise typer.Exit(code=1)

    console.print(f"\n[bold green]Run complete:[/] {result.id}")
    console.print(f"  {result.summary}")

    table = Table(title="Run Metrics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in result.metrics.model_dump().items():
        table.add_row(key, _fmt(value))
    console.print(table)


@app.command()
def check(
    profile: str = typer.Option("", help="Profile YAML/JSON (default: build from environment)"),
    topology: Optional[Path] = typer.Option(None, help="Topology catalog used for the protocol step"),
    adapter: str = typer.Option("openai_compat", help="openai_compat | offline_stub"),
) -> None:
    """Run the fail-fast compatibility check against a profile."""
    setup_logging()
    from exambench.catalog import TopologyCatalog
    from exambench.diagnostics.compatibility import run_compatibility_check

    try:
        selected_profile = _load_profile(profile)
        catalog = TopologyCatalog.load(topology) if topology else None
    except ExamBenchError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1)

    result = asyncio.run(run_compatibility_check(selected_profile, catalog=catalog, adapter_name=adapter))

    table = Table(title="Compatibility Check")
    table.add_column("Step", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Detail")
    styles = {"pass": "[green]PASS[/]", "fail": "[red]FAIL[/]", "skipped": "[dim]SKIPPED[/]", "pending": "PENDING"}
    for step in result.steps:
        detail = step.error or (step.logs[-1].message if step.logs else "")
        table.add_row(step.name, styles[step.status], detail)
    console.print(table)

    if result.compatible:
        console.print(f"\n[bold green]{result.summary}[/]")
    else:
        console.print(f"\n[bold red]{result.summary}[/]")
        raise typer.Exit(code=1)


@app.command()
def diagnose(
    level: str = typer.Option("handshake", help="handshake | readiness"),
    profile: str = typer.Option("", help="Profile YAML/JSON (default: build from environment)"),
    questions: Path = typer.Option(settings.questions_path, help="Question bank for the readiness level"),
    question_id: str = typer.Option("", "--question-id", help="Question to use for readiness"),
    adapter: str = typer.Option("openai_compat", help="openai_compat | offline_stub"),
) -> None:
    """Run the Level 1 handshake or Level 2 readiness diagnostic."""
    setup_logging()
    from exambench.dataset import load_question_bank, select_questions
    from exambench.diagnostics.readiness import run_diagnostics
    from exambench.types import DiagnosticsLevel

    try:
        diagnostics_level = DiagnosticsLevel(level.upper())
    except ValueError:
        console.print(f"[red]Unknown level '{level}'. Use handshake or readiness.[/]")
        raise typer.Exit(code=2)

    try:
        selected_profile = _load_profile(profile)
        pool = []
        if diagnostics_level is DiagnosticsLevel.READINESS:
            pool = load_question_bank(questions).questions
            if question_id:
                pool = select_questions(pool, [question_id])
    except ExamBenchError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1)

    result = asyncio.run(
        run_diagnostics(selected_profile, diagnostics_level, questions=pool, adapter_name=adapter)
    )
    for entry in result.logs:
        color = {"info": "dim", "warn": "yellow", "error": "red"}[entry.severity]
        console.print(f"[{color}]{entry.timestamp:%H:%M:%S}  {entry.message}[/]")

    status = "[bold green]PASS[/]" if result.status == "pass" else "[bold red]FAIL[/]"
    console.print(f"\n{status} {result.summary}")
    if result.status != "pass":
        raise typer.Exit(code=1)


@app.command()
def models(
    profile: str = typer.Option("", help="Profile YAML/JSON (default: build from environment)"),
) -> None:
    """List the models reported by the profile's text server."""
    setup_logging()
    from exambench.runners.runner import resolve_adapter, text_binding

    try:
        binding = text_binding(_load_profile(profile))
        listed = asyncio.run(resolve_adapter("openai_compat", binding).list_models())
    except ExamBenchError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1)

    table = Table(title=f"Models at {binding.base_url}")
    table.add_column("Model ID", style="cyan")
    table.add_column("Owner")
    for model in listed:
        table.add_row(str(model.get("id", "")), str(model.get("owned_by", "")))
    console.print(table)


@app.command()
def report(
    run_path: str = typer.Option(..., "--run", help="Path to run directory"),
) -> None:
    """Generate a markdown report from a completed run."""
    setup_logging()
    from exambench.reporting.render_md import render_report

    run_dir = Path(run_path)
    if not run_dir.exists():
        console.print(f"[red]Run directory not found:[/] {run_dir}")
        raise typer.Exit(code=1)

    summary_path = run_dir / "summary.json"
    attempts_path = run_dir / "attempts.jsonl"

    if not summary_path.exists():
        console.print(f"[red]summary.json not found in {run_dir}[/]")
        raise typer.Exit(code=1)

    summary = json.loads(summary_path.read_text())
    attempts = []
    if attempts_path.exists():
        attempts = [json.loads(ln) for ln in attempts_path.read_text().strip().splitlines() if ln.strip()]

    report_text = render_report(summary, attempts)
    report_file = run_dir / "report.md"
    report_file.write_text(report_text)
    console.print(f"[green]Report written to {report_file}[/]")


if __name__ == "__main__":
    app()
