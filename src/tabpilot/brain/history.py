"""
brain/history.py — Conversation History

Append-only, ordered log of turns exchanged with the decision model for one
run. The protocol is stateless per call, so the whole transcript is replayed
on every request: turns are never removed, reordered or deduplicated.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from tabpilot.brain.types import (
    ConversationTurn,
    FunctionResponseTurn,
    ModelDecisionTurn,
    UserObservationTurn,
)


class ConversationHistory:
    """Owned by exactly one in-flight run."""

    def __init__(self) -> None:
        self._turns: list[ConversationTurn] = []

    def append(self, turn: ConversationTurn) -> int:
        """Append a turn and return its index."""
        if not isinstance(turn, (UserObservationTurn, ModelDecisionTurn, FunctionResponseTurn)):
            raise TypeError(f"Not a conversation turn: {type(turn).__name__}")
        self._turns.append(turn)
        return len(self._turns) - 1

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    @property
    def last(self) -> ConversationTurn | None:
        return self._turns[-1] if self._turns else None

    def kinds(self) -> list[str]:
        return [t.kind for t in self._turns]

    def to_wire(self) -> list[dict[str, Any]]:
        """Full transcript in protocol shape, oldest first."""
        return [t.to_wire() for t in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))

    def __repr__(self) -> str:
        return f"<ConversationHistory turns={len(self._turns)}>"
