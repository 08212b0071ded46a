"""
exceptions.py — tabpilot Unified Error Hierarchy

All tabpilot-specific exceptions live here. Every layer raises typed
subclasses of TabPilotError, never bare Exception.

Import from here, not from individual modules:
    from tabpilot.exceptions import CaptureRateLimitedError, SurfaceNotPresentError

Hierarchy:
    TabPilotError
    ├── AgentError
    │   ├── RunAlreadyActiveError
    │   └── InvalidTransitionError
    ├── EnvironmentLostError
    ├── CaptureError
    │   └── CaptureRateLimitedError
    ├── SurfaceError
    │   └── SurfaceNotPresentError
    └── ProtocolError
        └── MissingCredentialError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TabPilotError(Exception):
    """Base class for all tabpilot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(TabPilotError):
    """Base for agent orchestration errors."""


class RunAlreadyActiveError(AgentError):
    """A run is already active against the requested environment handle."""

    def __init__(self, target_key: str, run_id: str = "") -> None:
        self.target_key = target_key
        self.run_id = run_id
        super().__init__(
            f"A run ({run_id or 'unknown'}) is already active on target '{target_key}'."
        )


class InvalidTransitionError(AgentError):
    """Attempted to leave an absorbing run state or skip Running."""


# ─────────────────────────────────────────────────────────────────────────────
# Environment layer
# ─────────────────────────────────────────────────────────────────────────────

class EnvironmentLostError(TabPilotError):
    """The target tab disappeared between steps."""


class CaptureError(TabPilotError):
    """Observation capture failed. The step proceeds without one."""


class CaptureRateLimitedError(CaptureError):
    """The host refused the capture because its per-second quota was hit."""


class SurfaceError(TabPilotError):
    """The execution surface failed to carry out a command."""


class SurfaceNotPresentError(SurfaceError):
    """No execution surface is attached to the target (page gone or not loaded)."""


# ─────────────────────────────────────────────────────────────────────────────
# Decision-model protocol
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolError(TabPilotError):
    """The decision model was unreachable or answered with something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingCredentialError(ProtocolError):
    """No API key is configured for the decision model."""


__all__ = [
    "TabPilotError",
    "AgentError",
    "RunAlreadyActiveError",
    "InvalidTransitionError",
    "EnvironmentLostError",
    "CaptureError",
    "CaptureRateLimitedError",
    "SurfaceError",
    "SurfaceNotPresentError",
    "ProtocolError",
    "MissingCredentialError",
]
