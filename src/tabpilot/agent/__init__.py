"""
agent/ — Run orchestration.

Public API:
    from tabpilot.agent import AgentRunner, RunHandle, AgentLoop
    from tabpilot.agent import RunState, RunStatus, CaptureThrottler
"""

from tabpilot.agent.artifacts import RunArtifactStore
from tabpilot.agent.loop import AgentLoop
from tabpilot.agent.runner import AgentRunner, RunHandle
from tabpilot.agent.state import RunState, RunStatus
from tabpilot.agent.throttle import CaptureBudget, CaptureThrottler

__all__ = [
    "RunArtifactStore",
    "AgentLoop",
    "AgentRunner",
    "RunHandle",
    "RunState",
    "RunStatus",
    "CaptureBudget",
    "CaptureThrottler",
]
