"""
brain/types.py — tabpilot Brain Data Models

Conversation turns exchanged with the decision model and the canonical
decisions the client hands back to the loop. Turns know how to render
themselves into the wire shape of the Computer Use protocol:

    {"role": "user" | "model", "parts": [...]}

where a part is {text}, {inline_data}, {functionCall} or {functionResponse}.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


class TerminalReason(str, Enum):
    COMPLETED = "completed"                           # model said it is done
    NO_DECISION = "no_decision"                       # nothing parseable in the response
    CONFIRMATION_REQUIRED = "confirmation_required"   # model asked for a human
    PROTOCOL_ERROR = "protocol_error"                 # HTTP / transport / malformed body
    MISSING_CREDENTIAL = "missing_credential"         # no API key configured


_ERROR_REASONS = frozenset({TerminalReason.PROTOCOL_ERROR, TerminalReason.MISSING_CREDENTIAL})


# ─────────────────────────────────────────────────────────────────────────────
# Conversation turns
# ─────────────────────────────────────────────────────────────────────────────


class UserObservationTurn(BaseModel):
    """Instruction text plus, optionally, the screenshot taken this step."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["user_observation"] = "user_observation"
    text: str
    image: Optional[bytes] = None
    mime_type: str = "image/jpeg"

    @property
    def has_image(self) -> bool:
        return self.image is not None

    def to_wire(self) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": self.text}]
        if self.image is not None:
            parts.append({
                "inline_data": {
                    "mime_type": self.mime_type,
                    "data": base64.b64encode(self.image).decode("ascii"),
                }
            })
        return {"role": Role.USER.value, "parts": parts}


class ModelDecisionTurn(BaseModel):
    """The model's raw content parts, replayed verbatim on later calls."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["model_decision"] = "model_decision"
    parts: list[dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {"role": Role.MODEL.value, "parts": [dict(p) for p in self.parts]}


class FunctionResponseTurn(BaseModel):
    """Outcome of executing the model's last function call."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["function_response"] = "function_response"
    name: str
    success: bool = True
    message: str = ""
    url: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "role": Role.USER.value,
            "parts": [{
                "functionResponse": {
                    "name": self.name,
                    "response": {
                        "result": self.message,
                        "success": self.success,
                        "url": self.url,
                    },
                }
            }],
        }


ConversationTurn = Annotated[
    Union[UserObservationTurn, ModelDecisionTurn, FunctionResponseTurn],
    Field(discriminator="kind"),
]


# ─────────────────────────────────────────────────────────────────────────────
# Decisions
# ─────────────────────────────────────────────────────────────────────────────


class ActionDecision(BaseModel):
    """The model wants an action performed."""
    model_config = ConfigDict(frozen=True)

    action: str
    args: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return False


class TerminalDecision(BaseModel):
    """
    The run should end. `reason` tells a model "done" apart from a protocol
    failure; both carry a human-readable `result`.
    """
    model_config = ConfigDict(frozen=True)

    result: str
    reason: TerminalReason = TerminalReason.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return True

    @property
    def is_error(self) -> bool:
        return self.reason in _ERROR_REASONS


Decision = Union[ActionDecision, TerminalDecision]
