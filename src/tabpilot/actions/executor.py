"""
actions/executor.py — Action Executor

Carries out one CanonicalAction against the target tab and turns the outcome
into the FunctionResponse turn the model sees on its next call.

Dispatch paths:
  - Navigation (open_web_browser, go_back, go_forward) runs through the
    EnvironmentHost. The in-page surface may not be attached yet at the
    destination, so it is never asked to navigate.
  - Everything else is sent to the ExecutionSurface as a SurfaceCommand and
    bounded by surface_timeout_ms.

execute() never raises for an action failure. Failures come back as an
unsuccessful ActionResult so the run continues and the model can adapt.

Usage:
    executor = ActionExecutor(host, surface)
    result = await executor.execute(action, handle)
    turn = executor.build_function_response(action, result, current_url)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional

from tabpilot.actions.types import ActionName, ActionResult, CanonicalAction
from tabpilot.brain.types import FunctionResponseTurn
from tabpilot.environment.base import (
    EnvironmentHost,
    ExecutionSurface,
    SurfaceCommand,
    TabHandle,
)
from tabpilot.exceptions import SurfaceNotPresentError
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

SUCCESS_MESSAGE = "Action executed successfully"
UNKNOWN_ERROR_MESSAGE = "Unknown error"
UNKNOWN_ACTION = "unknown-action"
NO_RESPONSE = "no response"
SURFACE_NOT_PRESENT = "surface not present"


class ActionExecutor:

    def __init__(
        self,
        host: EnvironmentHost,
        surface: ExecutionSurface,
        surface_timeout_ms: int = 10_000,
        navigation_settle_ms: int = 2_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._host = host
        self._surface = surface
        self._surface_timeout = surface_timeout_ms / 1000
        self._settle = navigation_settle_ms / 1000
        self._sleep = sleep

    async def execute(self, action: CanonicalAction, handle: TabHandle) -> ActionResult:
        kind = action.kind
        if kind is None:
            log.warning("executor.unknown_action", action=action.name)
            return ActionResult.failed(UNKNOWN_ACTION, action=action.name)

        log.debug("executor.execute", action=kind.value, args=action.args)
        if action.is_navigation:
            return await self._navigate(kind, action, handle)
        return await self._send(kind, action, handle)

    def build_function_response(
        self,
        action: CanonicalAction,
        result: ActionResult,
        current_url: Optional[str],
    ) -> FunctionResponseTurn:
        success = result.success is not False
        if success:
            message = SUCCESS_MESSAGE
        else:
            message = result.error or UNKNOWN_ERROR_MESSAGE
        return FunctionResponseTurn(
            name=action.response_name,
            success=success,
            message=message,
            url=current_url if current_url is not None else result.observed_url,
        )

    # ── Navigation (host side) ────────────────────────────────────────────────

    async def _navigate(
        self,
        kind: ActionName,
        action: CanonicalAction,
        handle: TabHandle,
    ) -> ActionResult:
        try:
            if kind is ActionName.OPEN_WEB_BROWSER:
                await self._host.navigate(handle, str(action.args["url"]))
            elif kind is ActionName.GO_BACK:
                await self._host.go_back(handle)
            else:
                await self._host.go_forward(handle)
        except Exception as e:
            log.warning("executor.navigation_failed", action=kind.value, error=str(e))
            return ActionResult.failed(str(e) or type(e).__name__)

        await self._sleep(self._settle)
        return ActionResult.ok(observed_url=action.args.get("url"))

    # ── Surface (in-page side) ────────────────────────────────────────────────

    async def _send(
        self,
        kind: ActionName,
        action: CanonicalAction,
        handle: TabHandle,
    ) -> ActionResult:
        command = SurfaceCommand(command=kind.value, args=dict(action.args))
        try:
            response = await asyncio.wait_for(
                self._surface.send(handle, command),
                timeout=self._surface_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("executor.surface_timeout", action=kind.value,
                        timeout_s=self._surface_timeout)
            return ActionResult.failed(NO_RESPONSE)
        except SurfaceNotPresentError as e:
            log.warning("executor.surface_not_present", action=kind.value, error=str(e))
            return ActionResult.failed(SURFACE_NOT_PRESENT)
        except Exception as e:
            log.warning("executor.surface_failed", action=kind.value, error=str(e),
                        error_type=type(e).__name__)
            return ActionResult.failed(str(e) or type(e).__name__)

        result = ActionResult.from_response(response)
        if not result.success:
            log.info("executor.action_failed", action=kind.value, error=result.error)
        return result
