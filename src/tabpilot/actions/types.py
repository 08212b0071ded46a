"""
actions/types.py — Canonical Action Vocabulary

ActionName is the closed set of commands tabpilot can execute. Model
vocabulary that falls outside it is rewritten by the normalizer or
rejected by the executor.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ActionName(str, Enum):
    OPEN_WEB_BROWSER = "open_web_browser"
    GO_BACK = "go_back"
    GO_FORWARD = "go_forward"
    CLICK_AT = "click_at"
    HOVER_AT = "hover_at"
    TYPE_TEXT_AT = "type_text_at"
    KEY_COMBINATION = "key_combination"
    SCROLL_DOCUMENT = "scroll_document"
    SCROLL_AT = "scroll_at"
    DRAG_AND_DROP = "drag_and_drop"
    WAIT_5_SECONDS = "wait_5_seconds"
    FIND_ON_PAGE = "find_on_page"

    @classmethod
    def parse(cls, name: str) -> Optional["ActionName"]:
        try:
            return cls(name)
        except ValueError:
            return None


# Location-changing actions run in the host, never in the page.
NAVIGATION_ACTIONS = frozenset({
    ActionName.OPEN_WEB_BROWSER,
    ActionName.GO_BACK,
    ActionName.GO_FORWARD,
})

SURFACE_ACTIONS = frozenset(ActionName) - NAVIGATION_ACTIONS


class CanonicalAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    # The model's own name for the call; function responses echo it back.
    source_name: Optional[str] = None

    @property
    def kind(self) -> Optional[ActionName]:
        return ActionName.parse(self.name)

    @property
    def is_navigation(self) -> bool:
        return self.kind in NAVIGATION_ACTIONS

    @property
    def response_name(self) -> str:
        return self.source_name or self.name


class ActionResult(BaseModel):
    success: bool = True
    error: Optional[str] = None
    observed_url: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, observed_url: Optional[str] = None, **extra: Any) -> "ActionResult":
        return cls(success=True, observed_url=observed_url, extra=extra)

    @classmethod
    def failed(cls, error: str, **extra: Any) -> "ActionResult":
        return cls(success=False, error=error, extra=extra)

    @classmethod
    def from_response(cls, response: Any) -> "ActionResult":
        """Build from a surface reply {success, error?, url?, ...extra}."""
        if not isinstance(response, dict):
            return cls.failed("no response")
        extra = {k: v for k, v in response.items() if k not in ("success", "error", "url")}
        error = response.get("error")
        url = response.get("url")
        return cls(
            success=response.get("success") is not False,
            error=str(error) if error is not None else None,
            observed_url=url if isinstance(url, str) else None,
            extra=extra,
        )
