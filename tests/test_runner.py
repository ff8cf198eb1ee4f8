"""Tests for the subprocess worker runner."""

from __future__ import annotations

import pytest

from conductor.engine import CancelToken, WorkflowExecutor, WorkflowStep
from conductor.engine.runner import (
    MAX_PROMPT_LENGTH,
    CommandRunner,
    build_prompt,
    estimate_units,
)

pytestmark = pytest.mark.anyio


def _step(text: str = "hello", worker: str = "w") -> WorkflowStep:
    return WorkflowStep(id="s1", order=1, worker_id=worker, payload={"text": text})


class TestPrompt:
    def test_includes_upstream_results_sorted(self):
        prompt = build_prompt(_step(), {"results": {"b": "two", "a": "one"}})
        assert prompt == "hello\n[a] one\n[b] two"

    def test_estimate_units(self):
        assert estimate_units("abcd", "efgh") == 2.0


class TestCommandRunner:
    async def test_stdout_becomes_output(self):
        runner = CommandRunner({"w": ["cat"]})
        outcome = await runner.execute(_step("hello"), {}, CancelToken())

        assert outcome.success
        assert outcome.output == "hello"
        assert outcome.units_consumed == estimate_units("hello", "hello")

    async def test_worker_env_is_set(self):
        runner = CommandRunner(default_command=["sh", "-c", 'printf %s "$CONDUCTOR_WORKER"'])
        outcome = await runner.execute(_step(worker="backend-specialist"), {}, CancelToken())
        assert outcome.output == "backend-specialist"

    async def test_nonzero_exit_is_failure(self):
        runner = CommandRunner({"w": ["sh", "-c", "echo bad >&2; exit 3"]})
        outcome = await runner.execute(_step(), {}, CancelToken())

        assert not outcome.success
        assert outcome.error == "bad"

    async def test_missing_command(self):
        outcome = await CommandRunner().execute(_step(), {}, CancelToken())
        assert not outcome.success
        assert "No command configured" in (outcome.error or "")

    async def test_empty_prompt_rejected(self):
        outcome = await CommandRunner({"w": ["cat"]}).execute(_step(""), {}, CancelToken())
        assert not outcome.success
        assert outcome.error == "Prompt cannot be empty"

    async def test_oversized_prompt_rejected(self):
        runner = CommandRunner({"w": ["cat"]})
        outcome = await runner.execute(_step("x" * (MAX_PROMPT_LENGTH + 1)), {}, CancelToken())
        assert not outcome.success

    async def test_control_characters_stripped(self):
        runner = CommandRunner({"w": ["cat"]})
        outcome = await runner.execute(_step("a\x00b\tc"), {}, CancelToken())
        assert outcome.output == "ab\tc"

    async def test_step_timeout_kills_process(self):
        runner = CommandRunner({"w": ["sleep", "5"]})
        step = _step()
        step.timeout = 0.2

        result = await WorkflowExecutor(runner).run([step])

        assert result.failed == 1
        assert step.error_code == "WORKER_TIMEOUT"
