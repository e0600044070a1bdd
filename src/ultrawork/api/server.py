"""FastAPI server for programmatic ultrawork access."""

from __future__ import annotations

import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
from fastapi import Depends, FastAPI, HTTPException

from ultrawork import __version__
from ultrawork.config import DEFAULT_DATA_DIR, load_config
from ultrawork.delegation.clarification import DefaultAnswerChannel, build_questions, critical_ambiguities
from ultrawork.delegation.models import Request, Task
from ultrawork.delegation.taxonomy import classify_request
from ultrawork.engine.orchestrator import Orchestrator
from ultrawork.storage.memory import MemoryStore

_start_time = time.monotonic()
_orchestrator: Orchestrator | None = None
_memory: MemoryStore | None = None

RUN_FLAGS = {
    "enable_iteration": bool,
    "max_iterations": int,
    "completion_signal": str,
    "force_decompose": bool,
    "disable_matching": bool,
    "require_consensus": bool,
    "allow_partial": bool,
}


def _data_dir() -> Path:
    return Path(os.environ.get("ULTRAWORK_DATA_DIR", str(DEFAULT_DATA_DIR)))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Keep the memory store open, and its expiry sweeper running, while serving."""
    global _memory
    data_dir = _data_dir()
    config = load_config(data_dir / "config.json")
    memory_path = str(data_dir / "data" / "memory.db")
    async with MemoryStore(memory_path) as memory, memory.sweeping(config.memory_sweep_seconds):
        _memory = memory
        if _orchestrator is not None:
            _orchestrator.memory = memory
        try:
            yield
        finally:
            _memory = None
            if _orchestrator is not None:
                _orchestrator.memory = None


app = FastAPI(
    title="Ultrawork API",
    version=__version__,
    description="Intent classification, planning and delegation to parallel workers",
    lifespan=lifespan,
)


def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator backed by the command worker."""
    global _orchestrator
    if _orchestrator is None:
        from ultrawork.engine.consensus import WorkerReviewer
        from ultrawork.engine.workers import CommandWorker

        data_dir = _data_dir()
        config = load_config(data_dir / "config.json")
        worker = CommandWorker()
        reviewers = [WorkerReviewer(worker, config.model_for("research")) for _ in range(config.panel_size)]
        _orchestrator = Orchestrator(
            worker,
            config=config,
            channel=DefaultAnswerChannel(),
            reviewers=reviewers,
            memory=_memory,
            data_dir=data_dir,
        )
    return _orchestrator


def _task_view(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "request": task.request.text,
        "status": task.status.value,
        "intent": task.intent.value if task.intent else None,
        "category": task.category.value if task.category else None,
        "attempts": task.attempt,
        "reason": task.reason,
        "work_orders": [order.to_dict() for order in task.work_orders],
    }


def _require_task(body: dict[str, Any]) -> str:
    text = body.get("task")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="task is required")
    return text


def _run_flags(body: dict[str, Any]) -> dict[str, Any]:
    flags: dict[str, Any] = {}
    for name, kind in RUN_FLAGS.items():
        value = body.get(name)
        if value is None:
            continue
        # JSON true/false only for flags; bool is an int subclass, so no bools for numbers
        if (kind is bool) != isinstance(value, bool) or not isinstance(value, kind):
            raise HTTPException(status_code=400, detail=f"{name} must be {kind.__name__}, got {value!r}")
        flags[name] = value
    return flags


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}


@app.post("/api/classify")
async def classify(body: dict[str, Any]) -> dict[str, Any]:
    """Classify a request without running it."""
    text = _require_task(body)
    request = Request(text=text, targets=tuple(body.get("targets") or ()))
    result = classify_request(request)
    probe = Task(request=request, intent=result.intent, category=result.category)
    reasons = critical_ambiguities(probe)
    return {
        "intent": result.intent.value,
        "category": result.category.value,
        "routing_profile": result.routing_profile,
        "rationale": result.rationale,
        "targets": list(result.targets),
        "needs_clarification": reasons,
        "questions": [
            {"id": q.id, "prompt": q.prompt, "options": list(q.options), "multi_select": q.multi_select}
            for q in (build_questions(probe, reasons) if reasons else [])
        ],
    }


@app.post("/api/run")
async def run(body: dict[str, Any], orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Run a request to completion. Clarification uses the supplied answers, else defaults."""
    text = _require_task(body)
    flags = _run_flags(body)
    targets = body.get("targets") or []
    answers = body.get("answers") or {}
    if not isinstance(targets, list) or not isinstance(answers, dict):
        raise HTTPException(status_code=400, detail="targets must be a list and answers an object")

    channel = DefaultAnswerChannel(answers={str(k): [str(a) for a in v] for k, v in answers.items()})
    try:
        result = await orch.run(text, channel=channel, targets=[str(t) for t in targets], **flags)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_dict()


@app.get("/api/tasks")
async def tasks(limit: int = 20, orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Active tasks and recently finished ones."""
    active = [_task_view(t) for t in orch.active_tasks()]
    finished = orch.archive.list(limit=limit)
    return {"active": active, "finished": finished, "count": len(active) + len(finished)}


@app.get("/api/tasks/{task_id}")
async def task_detail(task_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    task = orch.get_task(task_id)
    if task is not None and not task.status.terminal:
        return _task_view(task)
    record = orch.archive.get(task_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
    return record


@app.post("/api/tasks/{task_id}/cancel")
async def cancel(task_id: str, orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    if not orch.cancel(task_id):
        raise HTTPException(status_code=404, detail=f"No running task: {task_id}")
    return {"task_id": task_id, "cancelled": True}


@app.get("/api/status")
async def status(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Active tasks, work-order counts and registry state."""
    return orch.get_status()


@app.get("/api/skills")
async def skills(orch: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    snapshot = orch.capabilities.snapshot()
    return {
        "version": snapshot.version,
        "skills": [d.to_dict() for d in sorted(snapshot, key=lambda d: d.name)],
    }


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Ultrawork API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
