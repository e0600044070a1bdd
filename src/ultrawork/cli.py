"""CLI entry point for Ultrawork."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt
from rich.table import Table

from ultrawork import __version__
from ultrawork.config import DEFAULT_DATA_DIR, UltraworkConfig, load_config, write_default_config
from ultrawork.errors import ConfigError

if TYPE_CHECKING:
    from ultrawork.delegation.clarification import Question
    from ultrawork.engine.orchestrator import OrchestrationResult

console = Console()
err_console = Console(stderr=True)

CANCEL_CHOICE = "q"


class ConsoleChannel:
    """Asks clarification questions on the terminal. Answering 'q' cancels."""

    def __init__(self, out: Console | None = None) -> None:
        self.out = out or console

    def _ask_one(self, question: Question) -> list[str] | None:
        self.out.print(f"\n[bold]{question.prompt}[/bold]")
        for i, option in enumerate(question.options, start=1):
            self.out.print(f"  {i}. {option}")

        if question.multi_select:
            raw = Prompt.ask("Choose one or more (comma separated), q to cancel", console=self.out, default="1")
            if raw.strip().lower() == CANCEL_CHOICE:
                return None
            picked = []
            for part in raw.split(","):
                part = part.strip()
                if part.isdigit() and 1 <= int(part) <= len(question.options):
                    picked.append(question.options[int(part) - 1])
            return picked or [question.options[0]]

        choices = [str(i) for i in range(1, len(question.options) + 1)] + [CANCEL_CHOICE]
        raw = Prompt.ask("Choose", console=self.out, choices=choices, default="1")
        if raw == CANCEL_CHOICE:
            return None
        return [question.options[int(raw) - 1]]

    def _ask_all(self, questions: Sequence[Question]) -> dict[str, list[str]] | None:
        answers: dict[str, list[str]] = {}
        for question in questions:
            picked = self._ask_one(question)
            if picked is None:
                return None
            answers[question.id] = picked
        return answers

    async def ask(self, questions: Sequence[Question]) -> Mapping[str, Sequence[str]] | None:
        return await asyncio.to_thread(self._ask_all, questions)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _settings(ctx: click.Context) -> tuple[Path, UltraworkConfig]:
    obj = ctx.ensure_object(dict)
    return obj["data_dir"], obj["config"]


@click.group()
@click.version_option(version=__version__, prog_name="ulw")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Data directory (default: ~/.agent/ultrawork)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: <data-dir>/config.json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, config_path: Path | None, verbose: bool) -> None:
    """Ultrawork — classify, plan and delegate work to parallel agents."""
    _setup_logging(verbose)
    data_dir = data_dir or DEFAULT_DATA_DIR
    config_path = config_path or data_dir / "config.json"
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.ensure_object(dict)
    ctx.obj.update({"data_dir": data_dir, "config": config, "config_path": config_path})


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize ultrawork: create the config file and database."""
    from ultrawork.storage.database import Database

    data_dir, config = _settings(ctx)
    config_path = ctx.obj["config_path"]
    created = write_default_config(config_path)

    db = Database(data_dir)
    db.ensure_tables()
    console.print(f"[green]Ultrawork initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {config_path}")
    if not created:
        console.print("  [dim]Config file already present (kept existing)[/dim]")
    for path in config.resolved_skill_paths():
        console.print(f"  Skills:   {path}")


@main.command()
@click.argument("task")
@click.option("--ralph-loop", is_flag=True, help="Retry until the completion signal appears")
@click.option("--max-iterations", "-iter", "max_iterations", type=int, default=None, help="Max iterations")
@click.option("--completion-promise", default=None, help="Completion signal (default: DONE)")
@click.option("--force-swarm", is_flag=True, help="Force parallel fan-out")
@click.option("--no-force-swarm", is_flag=True, help="Never fan out in parallel")
@click.option("--no-skills", is_flag=True, help="Disable capability matching")
@click.option("--target", "targets", multiple=True, help="Explicit file or symbol target")
@click.option("--consensus", is_flag=True, help="Put the plan to the review panel")
@click.option("--allow-partial", is_flag=True, help="Accept partial success")
@click.option("--yes", "-y", is_flag=True, help="Answer clarification questions with defaults")
@click.option("--worker-bin", default=None, help="Worker CLI binary (default: $ULTRAWORK_WORKER_BIN)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    task: str,
    ralph_loop: bool,
    max_iterations: int | None,
    completion_promise: str | None,
    force_swarm: bool,
    no_force_swarm: bool,
    no_skills: bool,
    targets: tuple[str, ...],
    consensus: bool,
    allow_partial: bool,
    yes: bool,
    worker_bin: str | None,
    as_json: bool,
) -> None:
    """Classify, plan and delegate TASK to workers."""
    from ultrawork.delegation.clarification import DefaultAnswerChannel
    from ultrawork.engine.consensus import WorkerReviewer
    from ultrawork.engine.orchestrator import Orchestrator
    from ultrawork.engine.workers import CommandWorker
    from ultrawork.storage.memory import MemoryStore

    data_dir, config = _settings(ctx)
    worker = CommandWorker(worker_bin)
    channel = DefaultAnswerChannel() if yes else ConsoleChannel()
    reviewers = [WorkerReviewer(worker, config.model_for("research")) for _ in range(config.panel_size)]

    async def _run() -> OrchestrationResult:
        memory_path = str(data_dir / "data" / "memory.db")
        async with MemoryStore(memory_path) as memory, memory.sweeping(config.memory_sweep_seconds):
            orch = Orchestrator(
                worker,
                config=config,
                channel=channel,
                reviewers=reviewers,
                memory=memory,
                data_dir=data_dir,
            )
            return await orch.run(
                task,
                enable_iteration=True if ralph_loop else None,
                max_iterations=max_iterations,
                completion_signal=completion_promise,
                force_decompose=True if force_swarm else (False if no_force_swarm else None),
                disable_matching=True if no_skills else None,
                targets=targets,
                require_consensus=consensus,
                allow_partial=True if allow_partial else None,
            )

    if not as_json:
        console.print(f"[bold cyan]Task:[/bold cyan] {task}")
    try:
        result = asyncio.run(_run())
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)
    if not result.succeeded:
        ctx.exit(1)


@main.command()
@click.argument("task")
@click.option("--target", "targets", multiple=True, help="Explicit file or symbol target")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def classify(task: str, targets: tuple[str, ...], as_json: bool) -> None:
    """Classify TASK without running it."""
    from ultrawork.delegation.clarification import build_questions, critical_ambiguities
    from ultrawork.delegation.models import Request, Task
    from ultrawork.delegation.taxonomy import classify_request

    request = Request(text=task, targets=targets)
    result = classify_request(request)
    probe = Task(request=request, intent=result.intent, category=result.category)
    reasons = critical_ambiguities(probe)
    questions = build_questions(probe, reasons) if reasons else []

    data = {
        "intent": result.intent.value,
        "category": result.category.value,
        "routing_profile": result.routing_profile,
        "rationale": result.rationale,
        "targets": list(result.targets),
        "needs_clarification": reasons,
        "questions": [{"id": q.id, "prompt": q.prompt, "options": list(q.options)} for q in questions],
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    console.print(f"[bold]Intent:[/bold]   {data['intent']}")
    console.print(f"[bold]Category:[/bold] {data['category']} → {data['routing_profile']}")
    console.print(f"[bold]Why:[/bold]      {data['rationale']}")
    if result.targets:
        console.print(f"[bold]Targets:[/bold]  {', '.join(result.targets)}")
    if reasons:
        console.print(f"[yellow]Needs clarification:[/yellow] {', '.join(reasons)}")
        for q in questions:
            console.print(f"  - {q.prompt} ({' / '.join(q.options)})")


def _registry(config: UltraworkConfig):
    from ultrawork.skills.registry import CapabilityRegistry

    return CapabilityRegistry(config.resolved_skill_paths())


@main.command()
@click.pass_context
def skills(ctx: click.Context) -> None:
    """List capabilities found under the configured skill paths."""
    _, config = _settings(ctx)
    snapshot = _registry(config).snapshot()

    if not len(snapshot):
        console.print("[dim]No skills found.[/dim]")
        for path in config.resolved_skill_paths():
            console.print(f"  searched: {path}")
        return

    table = Table(title=f"Skills (v{snapshot.version})")
    table.add_column("Name", style="cyan")
    table.add_column("Description", max_width=60)
    table.add_column("Size")
    for descriptor in sorted(snapshot, key=lambda d: d.name):
        table.add_row(descriptor.name, descriptor.description, f"{descriptor.size_hint}B")
    console.print(table)


@main.command()
@click.argument("task")
@click.option("--top-k", type=int, default=None, help="Maximum matches")
@click.option("--min-confidence", type=float, default=None, help="Confidence floor")
@click.pass_context
def match(ctx: click.Context, task: str, top_k: int | None, min_confidence: float | None) -> None:
    """Rank skills against TASK."""
    from ultrawork.delegation.router import match_capabilities

    _, config = _settings(ctx)
    snapshot = _registry(config).snapshot()
    try:
        matches = match_capabilities(
            task,
            snapshot,
            top_k=top_k or config.top_k,
            min_confidence=config.min_confidence if min_confidence is None else min_confidence,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    if not matches:
        console.print("[dim]No skill matched.[/dim]")
        return
    for m in matches:
        console.print(f"  [cyan]{m.name}[/cyan]  {m.confidence:.0%}")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show in-flight work orders."""
    from ultrawork.engine.registry import WorkOrderRegistry

    data_dir, _ = _settings(ctx)
    registry = WorkOrderRegistry(data_dir)
    active = registry.get_active()

    if not active:
        console.print("[dim]No active work orders.[/dim]")
    else:
        table = Table(title="Active Work Orders")
        table.add_column("Order", style="cyan")
        table.add_column("Task")
        table.add_column("Objective", max_width=40)
        table.add_column("Model", style="green")
        table.add_column("State", style="yellow")
        for record in active:
            table.add_row(record.order_id, record.task_id, record.objective[:40], record.model, record.state)
        console.print(table)

    stats = registry.get_stats()
    console.print(f"\nTotal: {stats['total_orders']} orders | Active: {stats['active_count']}")


@main.command()
@click.option("--limit", default=20, help="Number of entries to show")
@click.option("--status", "status_filter", default=None, help="Only tasks with this status")
@click.pass_context
def history(ctx: click.Context, limit: int, status_filter: str | None) -> None:
    """Show recently finished tasks."""
    from ultrawork.engine.registry import TaskArchive

    data_dir, _ = _settings(ctx)
    rows = TaskArchive(data_dir).list(limit=limit, status=status_filter)
    if not rows:
        console.print("[dim]No task history yet. Run a task first.[/dim]")
        return

    table = Table(title="Task History")
    table.add_column("Task", style="cyan")
    table.add_column("Request", max_width=40)
    table.add_column("Intent")
    table.add_column("Status", style="bold")
    table.add_column("Attempts")
    table.add_column("Reason")
    for row in rows:
        table.add_row(
            row["task_id"],
            row["request"][:40],
            row["intent"] or "-",
            row["status"],
            str(row["attempts"]),
            row["reason"] or "",
        )
    console.print(table)


@main.command()
@click.option("--older-than", type=float, default=None, help="Retention in seconds (default: config)")
@click.pass_context
def purge(ctx: click.Context, older_than: float | None) -> None:
    """Delete archived tasks and expired memory past their retention."""
    from ultrawork.engine.registry import TaskArchive, WorkOrderRegistry
    from ultrawork.storage.memory import MemoryStore

    data_dir, config = _settings(ctx)
    retention = config.task_retention_seconds if older_than is None else older_than
    tasks = TaskArchive(data_dir).purge(retention)
    orders = WorkOrderRegistry(data_dir).cleanup_completed(int(retention))

    async def _purge_memory() -> int:
        async with MemoryStore(str(data_dir / "data" / "memory.db")) as memory:
            return await memory.purge_expired()

    entries = asyncio.run(_purge_memory())
    console.print(f"Purged {tasks} task(s), {orders} work order(s), {entries} memory entr(ies)")


def _print_result(result: OrchestrationResult) -> None:
    """Print orchestration result summary."""
    status_color = {"completed": "green", "failed": "red"}.get(result.status, "dim")

    console.print(f"\n[{status_color}]Status: {result.status}[/{status_color}]")
    if result.reason:
        console.print(f"Reason: {result.reason}")
    console.print(f"Intent: {result.intent} ({result.category})")
    console.print(f"Attempts: {result.attempts}")
    console.print(f"Work orders: {len(result.work_orders)}{' (parallel)' if result.decomposed else ''}")
    console.print(f"Duration: {result.duration_seconds:.1f}s")

    if result.escalations:
        console.print("\n[yellow]Escalations:[/yellow]")
        for escalation in result.escalations:
            steps = ", ".join(s["step"] for s in escalation["steps"])
            console.print(f"  - attempt {escalation['attempt']}: {steps} → {escalation['resolution']}")

    if result.failure_log and not result.succeeded:
        console.print("\n[red]Failures:[/red]")
        for entry in result.failure_log[-5:]:
            console.print(f"  - attempt {entry.get('attempt')}: {entry.get('reason')}")
            for order in entry.get("work_orders", [])[:3]:
                console.print(f"      {order.get('order_id', '?')}: {str(order.get('error', ''))[:120]}")

    if result.summary:
        console.print(f"\n{result.summary[:2000]}")
