"""
environment/ — Collaborator contracts for the controlled tab.

Public API:
    from tabpilot.environment import EnvironmentHost, ExecutionSurface, TabHandle

The Playwright implementation lives in tabpilot.environment.playwright_env
and is imported explicitly so the core never requires a browser.
"""

from tabpilot.environment.base import (
    EnvironmentHost,
    ExecutionSurface,
    Observation,
    SurfaceCommand,
    TabHandle,
)

__all__ = [
    "EnvironmentHost",
    "ExecutionSurface",
    "Observation",
    "SurfaceCommand",
    "TabHandle",
]
