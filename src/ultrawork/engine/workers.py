"""Command Worker - runs a work order through an external agent CLI."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from ultrawork.delegation.models import WorkerResult, WorkerStatus, WorkOrder

# Use real binary path, not shell alias (aliases don't work in subprocess)
DEFAULT_WORKER_BIN = str(Path.home() / ".local" / "bin" / "claude")

# Maximum prompt length to prevent DoS via extremely long prompts
MAX_PROMPT_LENGTH = 50_000


def validate_prompt(prompt: str) -> str:
    """Validate and sanitize prompt input."""
    if not prompt or not prompt.strip():
        raise ValueError("Prompt cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(f"Prompt exceeds maximum length ({MAX_PROMPT_LENGTH} chars)")
    # Strip null bytes and non-printable control chars (keep newlines, tabs)
    return "".join(c for c in prompt if c == "\n" or c == "\t" or (ord(c) >= 32))


def render_prompt(order: WorkOrder) -> str:
    """Render a work order into a self-contained worker prompt."""
    lines = [f"# Task\n{order.objective}", f"\n# Success criteria\n{order.expected_outcome}"]

    lines.append("\n# MUST DO")
    lines.extend(f"- {action}" for action in order.required_actions)

    lines.append("\n# MUST NOT DO")
    lines.extend(f"- {action}" for action in order.prohibited_actions)

    context = {k: v for k, v in order.context.items() if v not in (None, [], {}, "")}
    if context:
        lines.append("\n# Context")
        lines.append(json.dumps(context, indent=2, default=str))

    if order.capability_content:
        lines.append(f"\n# Capability: {order.capability}")
        lines.append(order.capability_content)

    return "\n".join(lines)


class CommandWorker:
    """
    Executes work orders via CLI subprocess.

    The binary is invoked as ``BIN --model MODEL -p PROMPT``; exit code 0 is
    success and stdout becomes the result summary.
    """

    def __init__(self, binary: str | None = None, cwd: Path | None = None) -> None:
        self.binary = binary or os.environ.get("ULTRAWORK_WORKER_BIN", DEFAULT_WORKER_BIN)
        self.cwd = cwd

    def resolve_binary(self) -> str:
        """Resolve and validate the worker binary path."""
        resolved = Path(self.binary).expanduser().resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Worker binary not found: {resolved}")
        if not os.access(str(resolved), os.X_OK):
            raise PermissionError(f"Worker binary not executable: {resolved}")
        return str(resolved)

    async def __call__(self, order: WorkOrder) -> WorkerResult:
        prompt = validate_prompt(render_prompt(order))
        cmd = [self.resolve_binary(), "--model", order.model, "-p", prompt]

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd else None,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode == 0:
            return WorkerResult(WorkerStatus.SUCCESS, output)
        error = stderr.decode("utf-8", errors="replace").strip() or f"exit code {proc.returncode}"
        return WorkerResult(WorkerStatus.FAILURE, error)
