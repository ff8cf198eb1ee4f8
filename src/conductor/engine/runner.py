"""Command Runner - Executes workflow steps as subprocesses.

Each worker id maps to an argv. The step prompt goes to the process on
stdin; exit code 0 is success and stdout is the step output.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping, Sequence
from typing import Any

from loguru import logger

from conductor.engine.workflow import CancelToken, WorkerOutcome, WorkflowStep

# Maximum prompt length to prevent DoS via extremely long prompts
MAX_PROMPT_LENGTH = 50_000

# Rough compute-unit estimate: one unit per four characters in and out
CHARS_PER_UNIT = 4


def estimate_units(*texts: str) -> float:
    return float(sum(len(t) for t in texts) // CHARS_PER_UNIT)


def build_prompt(step: WorkflowStep, context: Mapping[str, Any]) -> str:
    """Prompt text for a step: the request plus upstream results, if any."""
    lines = [str(step.payload.get("text", ""))]
    results = context.get("results") or {}
    for step_id in sorted(results):
        lines.append(f"[{step_id}] {results[step_id]}")
    return "\n".join(line for line in lines if line)


def _validate_prompt(prompt: str) -> str:
    """Validate and sanitize prompt input."""
    if not prompt or not prompt.strip():
        raise ValueError("Prompt cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(f"Prompt exceeds maximum length ({MAX_PROMPT_LENGTH} chars)")
    # Strip null bytes and non-printable control chars (keep newlines, tabs)
    return "".join(c for c in prompt if c == "\n" or c == "\t" or (ord(c) >= 32))


class CommandRunner:
    """WorkerRunner that spawns one subprocess per step."""

    def __init__(
        self,
        commands: Mapping[str, Sequence[str]] | None = None,
        default_command: Sequence[str] | None = None,
        cwd: str | None = None,
    ) -> None:
        self.commands = {k: list(v) for k, v in (commands or {}).items()}
        self.default_command = list(default_command or [])
        self.cwd = cwd

    def command_for(self, worker_id: str) -> list[str]:
        return self.commands.get(worker_id) or self.default_command

    async def execute(
        self, step: WorkflowStep, context: dict[str, Any], cancel_token: CancelToken
    ) -> WorkerOutcome:
        cmd = self.command_for(step.worker_id)
        if not cmd:
            return WorkerOutcome(success=False, error=f"No command configured for {step.worker_id}")

        try:
            prompt = _validate_prompt(build_prompt(step, context))
        except ValueError as e:
            return WorkerOutcome(success=False, error=str(e))

        env = {**os.environ, "CONDUCTOR_WORKER": step.worker_id, "CONDUCTOR_STEP": step.id}
        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        try:
            stdout, stderr = await proc.communicate(prompt.encode())
        except asyncio.CancelledError:
            # Step timeout or task cancellation: do not leave the process behind
            proc.kill()
            await proc.wait()
            raise

        duration_ms = (time.monotonic() - started) * 1000
        output = stdout.decode(errors="replace")
        units = estimate_units(prompt, output)

        if proc.returncode == 0:
            return WorkerOutcome(
                success=True,
                output=output.strip(),
                units_consumed=units,
                duration_ms=duration_ms,
            )

        error = stderr.decode(errors="replace").strip() or f"Exit code {proc.returncode}"
        logger.debug("Worker {} exited {}: {}", step.worker_id, proc.returncode, error)
        return WorkerOutcome(
            success=False, output=output, units_consumed=units, duration_ms=duration_ms, error=error
        )
