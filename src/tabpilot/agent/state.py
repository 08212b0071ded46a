"""
agent/state.py — Run State Machine

    Idle → Running → {Done, Stopped, Aborted}

Done, Stopped and Aborted are absorbing. RunState is owned by exactly one
AgentLoop and mutated only from that run's task; everyone else reads it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from tabpilot.exceptions import InvalidTransitionError


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    STOPPED = "stopped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RunStatus.DONE, RunStatus.STOPPED, RunStatus.ABORTED})

_ALLOWED: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.IDLE: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: _TERMINAL,
    RunStatus.DONE: frozenset(),
    RunStatus.STOPPED: frozenset(),
    RunStatus.ABORTED: frozenset(),
}


@dataclass
class RunState:
    """Externally observable state of one run."""
    run_id: str
    goal: str
    max_steps: int
    status: RunStatus = RunStatus.IDLE
    step_index: int = 0
    last_result: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    captures: int = 0
    history: list[str] = field(default_factory=list)   # one line per executed action

    @property
    def running(self) -> bool:
        return self.status is RunStatus.RUNNING

    @property
    def finished(self) -> bool:
        return self.status.is_terminal

    def transition(self, to: RunStatus, result: Optional[str] = None) -> None:
        if to not in _ALLOWED[self.status]:
            raise InvalidTransitionError(
                f"Run {self.run_id}: cannot go from {self.status.value} to {to.value}"
            )
        self.status = to
        now = datetime.now(timezone.utc)
        if to is RunStatus.RUNNING:
            self.step_index = 0
            self.started_at = now
        else:
            self.finished_at = now
        if result is not None:
            self.last_result = result

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "goal": self.goal,
            "status": self.status.value,
            "steps": self.step_index,
            "max_steps": self.max_steps,
            "captures": self.captures,
            "result": self.last_result,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "actions": list(self.history),
        }
