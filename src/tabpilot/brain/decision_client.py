"""
brain/decision_client.py — Abstract Decision Client

Every decision-model client subclasses BaseDecisionClient and implements
decide(). The loop depends only on this contract, so tests drive it with a
scripted stub and production wires in GeminiComputerUseClient.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Optional

from tabpilot.brain.history import ConversationHistory
from tabpilot.brain.types import Decision, TerminalDecision
from tabpilot.environment.base import Observation

# Returns the API key, or None when it isn't configured.
CredentialProvider = Callable[[], Optional[str]]

# Called with (request_body, response_body_or_None) after every exchange.
ExchangeCallback = Callable[[dict[str, Any], Optional[dict[str, Any]]], None]


class BaseDecisionClient(ABC):

    @abstractmethod
    async def decide(
        self,
        goal: str,
        observation: Optional[Observation],
        history: ConversationHistory,
    ) -> Decision:
        """
        Append this step's user turn to history, ask the model, append its
        reply, and return a canonical Decision. Never raises for protocol
        failures; those come back as an error-tagged TerminalDecision.
        """
        ...

    def preflight(self) -> Optional[TerminalDecision]:
        """Cheap local checks run before any capture. None means ready."""
        return None

    async def aclose(self) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
