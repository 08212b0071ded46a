"""
brain/ — Decision-model protocol layer.

Public API:
    from tabpilot.brain import GeminiComputerUseClient, ConversationHistory
    from tabpilot.brain import ActionDecision, TerminalDecision, TerminalReason
"""

from tabpilot.brain.decision_client import BaseDecisionClient, CredentialProvider
from tabpilot.brain.gemini_client import GeminiComputerUseClient
from tabpilot.brain.history import ConversationHistory
from tabpilot.brain.parsing import parse_decision
from tabpilot.brain.types import (
    ActionDecision,
    Decision,
    FunctionResponseTurn,
    ModelDecisionTurn,
    Role,
    TerminalDecision,
    TerminalReason,
    UserObservationTurn,
)

__all__ = [
    "BaseDecisionClient",
    "CredentialProvider",
    "GeminiComputerUseClient",
    "ConversationHistory",
    "parse_decision",
    "ActionDecision",
    "Decision",
    "FunctionResponseTurn",
    "ModelDecisionTurn",
    "Role",
    "TerminalDecision",
    "TerminalReason",
    "UserObservationTurn",
]
