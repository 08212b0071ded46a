"""
agent/runner.py — Agent Runner

Starts runs, one asyncio task each, and hands back a RunHandle for control.
At most one run is active per tab (TabHandle.key). Starting a second run on
a busy tab follows the configured conflict policy:

    reject     — raise RunAlreadyActiveError, the active run is untouched
    supersede  — stop the active run, wait for it to finish, then start

Both paths run under one lock, so two runs never interleave on a tab.

Usage:
    runner = AgentRunner.from_settings(settings, host, surface)
    handle = await runner.start("find the weather in Paris", max_steps=10)
    handle.stop()                      # cooperative, returns immediately
    state = await handle.wait()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Optional

from tabpilot.actions.executor import ActionExecutor
from tabpilot.actions.normalizer import ActionNormalizer
from tabpilot.agent.artifacts import RunArtifactStore
from tabpilot.agent.loop import AgentLoop
from tabpilot.agent.state import RunState
from tabpilot.agent.throttle import CaptureBudget, CaptureThrottler
from tabpilot.brain.decision_client import BaseDecisionClient
from tabpilot.brain.gemini_client import GeminiComputerUseClient
from tabpilot.config.settings import Settings
from tabpilot.environment.base import EnvironmentHost, ExecutionSurface
from tabpilot.exceptions import RunAlreadyActiveError
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

NO_TARGET_KEY = "<no-target>"


class RunHandle:
    """Control object for one run. Replaces any shared 'is running' flag."""

    def __init__(self, loop: AgentLoop, target_key: str, task: asyncio.Task) -> None:
        self.loop = loop
        self.target_key = target_key
        self._task = task

    @property
    def run_id(self) -> str:
        return self.loop.state.run_id

    @property
    def state(self) -> RunState:
        return self.loop.state

    @property
    def done(self) -> bool:
        return self._task.done()

    def stop(self) -> None:
        self.loop.stop()

    def cancel(self) -> None:
        """Cancel the run task outright. The run ends Stopped with "cancelled"."""
        self._task.cancel()

    async def wait(self) -> RunState:
        """Wait for the run to end and return its final state."""
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        return self.loop.state

    def __repr__(self) -> str:
        return (
            f"<RunHandle run_id={self.run_id} target={self.target_key} "
            f"status={self.state.status.value}>"
        )


class AgentRunner:

    def __init__(
        self,
        host: EnvironmentHost,
        client: BaseDecisionClient,
        executor: ActionExecutor,
        normalizer: Optional[ActionNormalizer] = None,
        budget_factory: Callable[[], CaptureBudget] = CaptureBudget,
        max_steps_default: int = 10,
        step_delay_ms: int = 800,
        conflict_policy: str = "reject",
        artifacts: Optional[RunArtifactStore] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if conflict_policy not in ("reject", "supersede"):
            raise ValueError(f"Unknown conflict policy: {conflict_policy!r}")
        self._host = host
        self._client = client
        self._executor = executor
        self._normalizer = normalizer or ActionNormalizer()
        self._budget_factory = budget_factory
        self._max_steps_default = max_steps_default
        self._step_delay_ms = step_delay_ms
        self._policy = conflict_policy
        self._artifacts = artifacts
        self._clock = clock
        self._sleep = sleep
        self._active: dict[str, RunHandle] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        host: EnvironmentHost,
        surface: ExecutionSurface,
        client: Optional[BaseDecisionClient] = None,
    ) -> "AgentRunner":
        artifacts = RunArtifactStore(settings.artifacts_dir) if settings.artifacts.enabled else None

        if client is None:
            client = GeminiComputerUseClient(
                credentials=settings.api_key,
                endpoint=settings.model.endpoint,
                environment=settings.model.environment,
                instruction=settings.model.instruction,
                timeout_seconds=settings.model.request_timeout_seconds,
                on_exchange=artifacts.save_exchange if artifacts else None,
            )

        cap = settings.capture
        return cls(
            host=host,
            client=client,
            executor=ActionExecutor(
                host,
                surface,
                surface_timeout_ms=settings.executor.surface_timeout_ms,
                navigation_settle_ms=settings.executor.navigation_settle_ms,
            ),
            normalizer=ActionNormalizer(
                default_url=settings.executor.default_url,
                search_url_template=settings.executor.search_url_template,
            ),
            budget_factory=lambda: CaptureBudget(
                min_interval_ms=cap.min_interval_ms,
                base_backoff_ms=cap.base_backoff_ms,
                max_backoff_multiplier=cap.max_backoff_multiplier,
                max_observation_bytes=cap.max_observation_bytes,
            ),
            max_steps_default=settings.agent.max_steps_default,
            step_delay_ms=settings.agent.step_delay_ms,
            conflict_policy=settings.agent.conflict_policy,
            artifacts=artifacts,
        )

    @property
    def client(self) -> BaseDecisionClient:
        return self._client

    # ── Public ────────────────────────────────────────────────────────────────

    def active(self, target_key: str) -> Optional[RunHandle]:
        handle = self._active.get(target_key)
        if handle is not None and handle.done:
            return None
        return handle

    def stop(self, target_key: str) -> bool:
        """Send a stop request to the run on target_key. False if none is active."""
        handle = self.active(target_key)
        if handle is None:
            return False
        handle.stop()
        return True

    def stop_all(self) -> None:
        for handle in list(self._active.values()):
            handle.stop()

    async def start(self, goal: str, max_steps: Optional[int] = None) -> RunHandle:
        if max_steps is None:
            max_steps = self._max_steps_default
        if max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {max_steps}")

        async with self._lock:
            target = await self._host.resolve_target()
            key = target.key if target is not None else NO_TARGET_KEY

            prior = self.active(key)
            if prior is not None:
                if self._policy == "reject":
                    log.warning("runner.start_rejected", target=key, active_run=prior.run_id)
                    raise RunAlreadyActiveError(key, prior.run_id)
                log.info("runner.superseding", target=key, prior_run=prior.run_id)
                prior.stop()
                await prior.wait()

            state = RunState(run_id=uuid.uuid4().hex[:12], goal=goal, max_steps=max_steps)
            loop = AgentLoop(
                state=state,
                host=self._host,
                client=self._client,
                executor=self._executor,
                throttler=CaptureThrottler(self._budget_factory(), clock=self._clock, sleep=self._sleep),
                normalizer=self._normalizer,
                step_delay_ms=self._step_delay_ms,
                sleep=self._sleep,
            )
            task = asyncio.create_task(loop.run(), name=f"run-{state.run_id}")
            handle = RunHandle(loop, key, task)
            self._active[key] = handle
            task.add_done_callback(lambda t: self._on_done(handle, t))

        log.info("runner.started", run_id=state.run_id, target=key, max_steps=max_steps)
        return handle

    async def run(self, goal: str, max_steps: Optional[int] = None) -> RunState:
        """Start a run and wait for it to end."""
        handle = await self.start(goal, max_steps)
        return await handle.wait()

    async def aclose(self) -> None:
        self.stop_all()
        for handle in list(self._active.values()):
            await handle.wait()
        await self._client.aclose()

    # ── Private helpers ───────────────────────────────────────────────────────

    def _on_done(self, handle: RunHandle, task: asyncio.Task) -> None:
        if self._active.get(handle.target_key) is handle:
            del self._active[handle.target_key]
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            log.warning("runner.task_failed", run_id=handle.run_id, error=str(exc),
                        error_type=type(exc).__name__)
        if self._artifacts is not None:
            self._artifacts.save_result(handle.state)
