"""
environment/base.py — Environment Collaborator Contracts

The loop never touches a browser directly. It talks to two collaborators:

  EnvironmentHost    — privileged side: find/re-validate the target tab,
                       capture its visible state, change its location.
  ExecutionSurface   — in-page side: receives typed command messages and
                       answers {success, error?, ...extra}. It may be absent
                       (page still loading, restricted page), which is a
                       distinct, non-fatal condition: SurfaceNotPresentError.

Both are typing.Protocols so tests can pass plain fakes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class TabHandle:
    """Identifies the tab a run is driving."""
    tab_id: str
    window_id: str = "default"
    url: str = ""

    @property
    def key(self) -> str:
        return f"{self.window_id}:{self.tab_id}"


@dataclass(frozen=True)
class Observation:
    """A snapshot of the tab's visible state. Lives for one step only."""
    data: bytes
    mime_type: str = "image/jpeg"

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def encoded_size(self) -> int:
        """Length of the base64 text that goes on the wire."""
        return 4 * math.ceil(len(self.data) / 3)


@dataclass(frozen=True)
class SurfaceCommand:
    command: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"command": self.command, "args": dict(self.args)}


@runtime_checkable
class EnvironmentHost(Protocol):
    async def resolve_target(self) -> Optional[TabHandle]:
        """Pick the tab to drive, skipping extension pages. None if there is none."""
        ...

    async def refresh(self, handle: TabHandle) -> Optional[TabHandle]:
        """Return an up-to-date handle for the same tab, or None if it closed."""
        ...

    async def capture(self, handle: TabHandle) -> Observation:
        """Screenshot the tab. Raises CaptureRateLimitedError / CaptureError."""
        ...

    async def navigate(self, handle: TabHandle, url: str) -> None: ...

    async def go_back(self, handle: TabHandle) -> None: ...

    async def go_forward(self, handle: TabHandle) -> None: ...

    async def current_url(self, handle: TabHandle) -> Optional[str]: ...


@runtime_checkable
class ExecutionSurface(Protocol):
    async def send(self, handle: TabHandle, command: SurfaceCommand) -> dict[str, Any]:
        """Deliver one command and return its response dict."""
        ...
