"""
brain/parsing.py — Response Parsing Chain

Turns a raw generateContent response body into a canonical Decision.
Each strategy takes the candidate's content parts and returns a Decision or
None; parse_decision() runs them left-to-right and the first hit wins.

Order:
    1. function_call_strategy   — structured functionCall part
    2. embedded_json_strategy   — first balanced {...} in the text parts
    3. (fallback)               — TerminalDecision("no decision found")

A decision whose arguments carry a "require_confirmation" safety decision is
turned into a terminal CONFIRMATION_REQUIRED decision by guard_confirmation().
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from typing import Any, Optional

from tabpilot.brain.types import ActionDecision, Decision, TerminalDecision, TerminalReason

NO_DECISION_RESULT = "no decision found"

ParseStrategy = Callable[[Sequence[dict[str, Any]]], Optional[Decision]]


def candidate_parts(body: dict[str, Any]) -> Optional[list[dict[str, Any]]]:
    """Content parts of the first candidate, or None when there is no candidate."""
    candidates = body.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return None
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    return [p for p in parts if isinstance(p, dict)]


def find_balanced_json(text: str) -> Optional[str]:
    """
    Return the first balanced {...} substring of text, or None.

    Braces inside JSON string literals are ignored so `{"a": "}"}` is
    recognised as one object.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next opening brace.
        start = text.find("{", start + 1)
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────────────────────


def function_call_strategy(parts: Sequence[dict[str, Any]]) -> Optional[Decision]:
    for part in parts:
        call = part.get("functionCall") or part.get("function_call")
        if isinstance(call, dict) and call.get("name"):
            args = call.get("args")
            args = dict(args) if isinstance(args, dict) else {}
            if call["name"] == "done":
                return TerminalDecision(
                    result=str(args.get("result") or "success"),
                    reason=TerminalReason.COMPLETED,
                )
            return ActionDecision(action=str(call["name"]), args=args)
    return None


def embedded_json_strategy(parts: Sequence[dict[str, Any]]) -> Optional[Decision]:
    text = "\n".join(str(p.get("text", "")) for p in parts if p.get("text"))
    if not text:
        return None
    raw = find_balanced_json(text)
    if raw is None:
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    args = obj.get("args") if isinstance(obj.get("args"), dict) else {}
    action = obj.get("action")
    if not action or action == "done":
        result = obj.get("result") or args.get("result") or "success"
        return TerminalDecision(result=str(result), reason=TerminalReason.COMPLETED)
    return ActionDecision(action=str(action), args=args)


STRATEGIES: tuple[ParseStrategy, ...] = (
    function_call_strategy,
    embedded_json_strategy,
)


def guard_confirmation(decision: Decision) -> Decision:
    """Stop instead of executing an action the model flagged for a human."""
    if not isinstance(decision, ActionDecision):
        return decision
    safety = decision.args.get("safety_decision")
    if isinstance(safety, dict) and safety.get("decision") == "require_confirmation":
        explanation = safety.get("explanation") or f"Confirmation required for {decision.action}"
        return TerminalDecision(
            result=str(explanation),
            reason=TerminalReason.CONFIRMATION_REQUIRED,
        )
    return decision


def parse_decision(
    parts: Sequence[dict[str, Any]],
    strategies: Sequence[ParseStrategy] = STRATEGIES,
) -> Decision:
    for strategy in strategies:
        decision = strategy(parts)
        if decision is not None:
            return guard_confirmation(decision)
    return TerminalDecision(result=NO_DECISION_RESULT, reason=TerminalReason.NO_DECISION)
