"""
tests/unit/test_loop.py — AgentLoop state machine

Covers:
  - terminal decision on step 3 of 10 → Done with that result
  - always-failing surface → all max_steps run, every response success:false
  - stop() during step 2 → exits by step 3
  - stop() while deciding → the returned action is not executed
  - structured "done" call → Done with its result
  - missing credential → Aborted with zero capture attempts
  - protocol error → Aborted, reported not retried
  - tab disappears → Stopped "environment lost"
  - history order across a full run with the real client
  - step delay before every step except the first
  - terminal states are absorbing
"""

from __future__ import annotations

import httpx
import pytest

from fakes import FakeClock, FakeHost, FakeSurface, ScriptedClient, click
from tabpilot.actions.executor import ActionExecutor
from tabpilot.agent.loop import AgentLoop
from tabpilot.agent.state import RunState, RunStatus
from tabpilot.agent.throttle import CaptureBudget, CaptureThrottler
from tabpilot.brain.gemini_client import GeminiComputerUseClient
from tabpilot.brain.types import (
    ActionDecision,
    FunctionResponseTurn,
    TerminalDecision,
    TerminalReason,
)
from tabpilot.exceptions import CaptureRateLimitedError, InvalidTransitionError


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_loop(
    client,
    host: FakeHost,
    surface: FakeSurface,
    clock: FakeClock,
    max_steps: int = 10,
    delay_clock: FakeClock | None = None,
) -> AgentLoop:
    delay_clock = delay_clock or clock
    return AgentLoop(
        state=RunState(run_id="run-1", goal="check the weather in Paris", max_steps=max_steps),
        host=host,
        client=client,
        executor=ActionExecutor(host, surface, sleep=clock.sleep),
        throttler=CaptureThrottler(CaptureBudget(), clock=clock, sleep=clock.sleep),
        step_delay_ms=800,
        sleep=delay_clock.sleep,
    )


def _function_responses(loop: AgentLoop) -> list[FunctionResponseTurn]:
    return [t for t in loop.history if isinstance(t, FunctionResponseTurn)]


# ─────────────────────────────────────────────────────────────────────────────
# Termination
# ─────────────────────────────────────────────────────────────────────────────

class TestTermination:

    @pytest.mark.asyncio
    async def test_terminal_on_step_three(self, host, surface, clock):
        client = ScriptedClient([click(), click(), TerminalDecision(result="It is 18C in Paris")])
        loop = _make_loop(client, host, surface, clock, max_steps=10)

        state = await loop.run()

        assert state.status is RunStatus.DONE
        assert state.last_result == "It is 18C in Paris"
        assert client.calls == 3
        assert len(surface.commands) == 2
        assert state.step_index == 2

    @pytest.mark.asyncio
    async def test_failing_surface_runs_every_step(self, host, clock):
        surface = FakeSurface(response={"success": False, "error": "element not clickable"})
        client = ScriptedClient([click()])
        loop = _make_loop(client, host, surface, clock, max_steps=10)

        state = await loop.run()

        assert state.status is RunStatus.STOPPED
        assert state.last_result == "max steps reached"
        assert state.step_index == 10
        assert client.calls == 10
        responses = _function_responses(loop)
        assert len(responses) == 10
        assert all(r.success is False for r in responses)
        assert all(r.message == "element not clickable" for r in responses)

    @pytest.mark.asyncio
    async def test_max_steps_one(self, host, surface, clock):
        loop = _make_loop(ScriptedClient([click()]), host, surface, clock, max_steps=1)
        state = await loop.run()
        assert state.status is RunStatus.STOPPED
        assert state.step_index == 1

    @pytest.mark.asyncio
    async def test_missing_credential_aborts_without_capture(self, host, surface, clock):
        client = ScriptedClient([click()], api_key=None)
        loop = _make_loop(client, host, surface, clock)

        state = await loop.run()

        assert state.status is RunStatus.ABORTED
        assert "API key" in state.last_result
        assert host.captures == 0
        assert client.calls == 0
        assert state.step_index == 0

    @pytest.mark.asyncio
    async def test_protocol_error_aborts(self, host, surface, clock):
        client = ScriptedClient([
            click(),
            TerminalDecision(result="Error: API error 500: internal", reason=TerminalReason.PROTOCOL_ERROR),
            click(),
        ])
        loop = _make_loop(client, host, surface, clock)

        state = await loop.run()

        assert state.status is RunStatus.ABORTED
        assert state.last_result == "Error: API error 500: internal"
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_confirmation_request_ends_done(self, host, surface, clock):
        client = ScriptedClient([
            TerminalDecision(result="Confirm purchase", reason=TerminalReason.CONFIRMATION_REQUIRED)
        ])
        state = await _make_loop(client, host, surface, clock).run()
        assert state.status is RunStatus.DONE
        assert state.last_result == "Confirm purchase"
        assert surface.commands == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_aborts(self, host, surface, clock):
        class ExplodingClient(ScriptedClient):
            async def decide(self, goal, observation, history):
                raise RuntimeError("kaboom")

        state = await _make_loop(ExplodingClient([click()]), host, surface, clock).run()
        assert state.status is RunStatus.ABORTED
        assert state.last_result == "Error: kaboom"


# ─────────────────────────────────────────────────────────────────────────────
# Stop + environment loss
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    @pytest.mark.asyncio
    async def test_stop_during_step_two_exits_by_step_three(self, host, surface, clock):
        client = ScriptedClient([click()])
        loop = _make_loop(client, host, surface, clock, max_steps=10)
        client.on_decide = lambda n: loop.stop() if n == 2 else None

        state = await loop.run()

        assert state.status is RunStatus.STOPPED
        assert state.last_result == "stopped by request"
        assert client.calls <= 3
        assert state.step_index <= 3

    @pytest.mark.asyncio
    async def test_stop_during_decide_skips_the_action(self, host, surface, clock):
        client = ScriptedClient([click()])
        loop = _make_loop(client, host, surface, clock)
        client.on_decide = lambda n: loop.stop()

        state = await loop.run()

        assert state.status is RunStatus.STOPPED
        assert state.last_result == "stopped by request"
        assert surface.commands == []
        assert state.step_index == 0

    @pytest.mark.asyncio
    async def test_stop_seen_after_capture_wait(self, host, surface, clock):
        client = ScriptedClient([click()])
        loop = _make_loop(client, host, surface, clock)
        host.on_capture = lambda n: loop.stop() if n == 2 else None

        state = await loop.run()

        assert state.status is RunStatus.STOPPED
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_stop_before_start(self, host, surface, clock):
        loop = _make_loop(ScriptedClient([click()]), host, surface, clock)
        loop.stop()
        state = await loop.run()
        assert state.status is RunStatus.STOPPED
        assert host.captures == 0

    @pytest.mark.asyncio
    async def test_tab_closed_mid_run(self, host, surface, clock):
        client = ScriptedClient([click()])
        client.on_decide = lambda n: setattr(host, "closed", True) if n == 1 else None
        state = await _make_loop(client, host, surface, clock).run()

        assert state.status is RunStatus.STOPPED
        assert state.last_result == "environment lost"
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_no_target_at_start(self, surface, clock):
        host = FakeHost()
        host.closed = True
        state = await _make_loop(ScriptedClient([click()]), host, surface, clock).run()
        assert state.status is RunStatus.STOPPED
        assert state.last_result == "environment lost"
        assert host.captures == 0


# ─────────────────────────────────────────────────────────────────────────────
# Ordering + timing
# ─────────────────────────────────────────────────────────────────────────────

class TestOrdering:

    @pytest.mark.asyncio
    async def test_history_order_with_real_client(self, host, surface, clock):
        replies = iter([
            {"candidates": [{"content": {"parts": [{"functionCall": {"name": "click_at", "args": {"x": 1, "y": 1}}}]}}]},
            {"candidates": [{"content": {"parts": [{"functionCall": {"name": "navigate", "args": {"url": "https://a.test"}}}]}}]},
            {"candidates": [{"content": {"parts": [{"text": '{"action": "done", "result": "ok"}'}]}}]},
        ])
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=next(replies))))
        client = GeminiComputerUseClient(credentials=lambda: "k", http_client=http)
        loop = _make_loop(client, host, surface, clock)

        state = await loop.run()

        assert state.status is RunStatus.DONE
        assert loop.history.kinds() == [
            "user_observation", "model_decision", "function_response",
            "user_observation", "model_decision", "function_response",
            "user_observation", "model_decision",
        ]
        names = [t.name for t in _function_responses(loop)]
        assert names == ["click_at", "navigate"]
        await http.aclose()

    @pytest.mark.asyncio
    async def test_done_function_call_ends_run(self, host, surface, clock):
        body = {"candidates": [{"content": {"parts": [
            {"functionCall": {"name": "done", "args": {"result": "found it"}}},
        ]}}]}
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
        client = GeminiComputerUseClient(credentials=lambda: "k", http_client=http)

        state = await _make_loop(client, host, surface, clock, max_steps=3).run()

        assert state.status is RunStatus.DONE
        assert state.last_result == "found it"
        assert surface.commands == []
        await http.aclose()

    @pytest.mark.asyncio
    async def test_step_delay_skips_first_step(self, host, surface, clock):
        delay_clock = FakeClock()
        client = ScriptedClient([click(), click(), TerminalDecision(result="done")])
        await _make_loop(client, host, surface, clock, delay_clock=delay_clock).run()
        assert delay_clock.sleeps == [0.8, 0.8]

    @pytest.mark.asyncio
    async def test_rate_limited_capture_still_decides(self, surface, clock):
        host = FakeHost()
        host.capture_errors = [CaptureRateLimitedError("quota")]
        client = ScriptedClient([click(), TerminalDecision(result="done")])

        state = await _make_loop(client, host, surface, clock).run()

        assert state.status is RunStatus.DONE
        assert client.observations[0] is None
        assert client.observations[1] is not None
        assert state.captures == 1

    @pytest.mark.asyncio
    async def test_function_response_carries_current_url(self, host, surface, clock):
        client = ScriptedClient([
            ActionDecision(action="navigate", args={"url": "https://b.test/"}),
            TerminalDecision(result="done"),
        ])
        loop = _make_loop(client, host, surface, clock)
        await loop.run()
        response = _function_responses(loop)[0]
        assert response.url == "https://b.test/"
        assert response.name == "navigate"


class TestAbsorbingStates:

    @pytest.mark.asyncio
    async def test_finished_run_cannot_restart(self, host, surface, clock):
        loop = _make_loop(ScriptedClient([TerminalDecision(result="done")]), host, surface, clock)
        state = await loop.run()
        assert state.finished

        with pytest.raises(InvalidTransitionError):
            await loop.run()
        with pytest.raises(InvalidTransitionError):
            state.transition(RunStatus.ABORTED)
        assert state.status is RunStatus.DONE

    def test_idle_cannot_finish_directly(self):
        state = RunState(run_id="r", goal="g", max_steps=1)
        with pytest.raises(InvalidTransitionError):
            state.transition(RunStatus.DONE)
