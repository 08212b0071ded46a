"""
agent/loop.py — Agent Loop

Drives one run of the observe → decide → act cycle against a single tab:

    for each step while Running:
        delay (every step but the first)
        poll stop                      → Stopped  "stopped by request"
        resolve / re-validate the tab  → Stopped  "environment lost"
        credential preflight           → Aborted  (before any capture)
        capture via CaptureThrottler   (best effort, may be None)
        poll stop
        decide                         → Done / Aborted on a terminal decision
        normalize, execute, append the function response
        step_index += 1                → Stopped  "max steps reached"

Steps never overlap. Stop is cooperative: an in-flight model call or action
finishes before the flag is seen, so a stop takes effect within one step.

One AgentLoop instance per run. It owns the RunState, the ConversationHistory
and the throttler's CaptureBudget; nothing else mutates them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional

from tabpilot.actions.executor import ActionExecutor
from tabpilot.actions.normalizer import ActionNormalizer
from tabpilot.agent.state import RunState, RunStatus
from tabpilot.agent.throttle import CaptureThrottler
from tabpilot.brain.decision_client import BaseDecisionClient
from tabpilot.brain.history import ConversationHistory
from tabpilot.brain.types import ActionDecision, TerminalDecision
from tabpilot.environment.base import EnvironmentHost, TabHandle
from tabpilot.exceptions import EnvironmentLostError
from tabpilot.observability.logger import bind_run, clear_run, get_logger

log = get_logger(__name__)

STOPPED_BY_REQUEST = "stopped by request"
ENVIRONMENT_LOST = "environment lost"
MAX_STEPS_REACHED = "max steps reached"


class AgentLoop:
    """
    Usage:
        loop = AgentLoop(state, host, client, executor, throttler=CaptureThrottler())
        final = await loop.run()
        # from elsewhere: loop.stop()
    """

    def __init__(
        self,
        state: RunState,
        host: EnvironmentHost,
        client: BaseDecisionClient,
        executor: ActionExecutor,
        throttler: Optional[CaptureThrottler] = None,
        normalizer: Optional[ActionNormalizer] = None,
        step_delay_ms: int = 800,
        stop_event: Optional[asyncio.Event] = None,
        history: Optional[ConversationHistory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.state = state
        self.history = history if history is not None else ConversationHistory()
        self._host = host
        self._client = client
        self._executor = executor
        self._throttler = throttler or CaptureThrottler()
        self._normalizer = normalizer or ActionNormalizer()
        self._step_delay = step_delay_ms / 1000
        self._stop_event = stop_event or asyncio.Event()
        self._sleep = sleep
        self._handle: Optional[TabHandle] = None

    # ── Run control ───────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Request a cooperative stop. Returns immediately."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def handle(self) -> Optional[TabHandle]:
        return self._handle

    async def run(self) -> RunState:
        state = self.state
        state.transition(RunStatus.RUNNING)
        bind_run(state.run_id, state.goal)
        log.info("agent.run_start", max_steps=state.max_steps)
        try:
            await self._run_steps()
        except asyncio.CancelledError:
            if state.running:
                self._finish(RunStatus.STOPPED, "cancelled")
            raise
        except Exception as e:
            log.error("agent.run_crashed", error=str(e), error_type=type(e).__name__,
                      exc_info=True)
            if state.running:
                self._finish(RunStatus.ABORTED, f"Error: {e}")
        finally:
            log.info(
                "agent.run_end",
                status=state.status.value,
                steps=state.step_index,
                result=state.last_result,
            )
            clear_run()
        return state

    # ── Steps ─────────────────────────────────────────────────────────────────

    async def _run_steps(self) -> None:
        state = self.state
        while state.running:
            if state.step_index > 0:
                await self._sleep(self._step_delay)

            if self.stop_requested:
                self._finish(RunStatus.STOPPED, STOPPED_BY_REQUEST)
                return

            handle = await self._resolve_handle()
            if handle is None:
                self._finish(RunStatus.STOPPED, ENVIRONMENT_LOST)
                return

            refused = self._client.preflight()
            if refused is not None:
                log.error("agent.preflight_failed", reason=refused.reason.value)
                self._finish(RunStatus.ABORTED, refused.result)
                return

            log.info("agent.step_start", step=state.step_index + 1, url=handle.url)
            observation = await self._throttler.capture(lambda: self._host.capture(handle))
            if observation is not None:
                state.captures += 1

            if self.stop_requested:
                self._finish(RunStatus.STOPPED, STOPPED_BY_REQUEST)
                return

            decision = await self._client.decide(state.goal, observation, self.history)

            if isinstance(decision, TerminalDecision):
                status = RunStatus.ABORTED if decision.is_error else RunStatus.DONE
                log.info("agent.terminal_decision", reason=decision.reason.value,
                         result=decision.result)
                self._finish(status, decision.result)
                return

            if self.stop_requested:
                self._finish(RunStatus.STOPPED, STOPPED_BY_REQUEST)
                return

            await self._act(decision, handle)

            state.step_index += 1
            if state.step_index >= state.max_steps:
                self._finish(RunStatus.STOPPED, MAX_STEPS_REACHED)
                return

    async def _resolve_handle(self) -> Optional[TabHandle]:
        try:
            if self._handle is None:
                handle = await self._host.resolve_target()
            else:
                handle = await self._host.refresh(self._handle)
        except EnvironmentLostError as e:
            log.warning("agent.environment_lost", error=str(e))
            return None
        if handle is None:
            log.warning("agent.environment_lost", previous=self._handle.key if self._handle else None)
            return None
        self._handle = handle
        return handle

    async def _act(self, decision: ActionDecision, handle: TabHandle) -> None:
        action = self._normalizer.normalize(decision)
        result = await self._executor.execute(action, handle)

        try:
            current_url = await self._host.current_url(handle)
        except Exception as e:
            log.debug("agent.current_url_failed", error=str(e))
            current_url = None

        self.history.append(self._executor.build_function_response(action, result, current_url))
        self.state.history.append(
            f"{action.name} {action.args}" + ("" if result.success else f" -> {result.error}")
        )
        log.info(
            "agent.step_complete",
            step=self.state.step_index + 1,
            action=action.name,
            success=result.success,
            error=result.error,
        )

    def _finish(self, status: RunStatus, result: str) -> None:
        self.state.transition(status, result)
