"""
tests/unit/test_gemini_client.py — GeminiComputerUseClient + parsing chain

HTTP is faked with httpx.MockTransport; no network access.

Covers:
  - request shape: full transcript, computer_use tool, api key header
  - functionCall → ActionDecision, model turn appended
  - embedded JSON fallback (action and done)
  - no candidate / no decision → terminal "no decision found"
  - non-2xx surfaces error.message verbatim, tagged protocol_error
  - transport error and malformed body → protocol_error
  - missing credential → terminal before any request or history change
  - require_confirmation → terminal, action not returned
  - on_exchange callback receives request and response
"""

from __future__ import annotations

import json

import httpx
import pytest

from tabpilot.brain.gemini_client import GeminiComputerUseClient
from tabpilot.brain.history import ConversationHistory
from tabpilot.brain.parsing import (
    STRATEGIES,
    embedded_json_strategy,
    find_balanced_json,
    function_call_strategy,
    parse_decision,
)
from tabpilot.brain.types import (
    ActionDecision,
    FunctionResponseTurn,
    TerminalDecision,
    TerminalReason,
)
from tabpilot.environment.base import Observation

_ENDPOINT = "https://gemini.test/v1beta/models/cu:generateContent"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _candidate(*parts) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": list(parts)}}]}


def _function_call(name: str, **args) -> dict:
    return {"functionCall": {"name": name, "args": args}}


def _make_client(handler, key="test-key", **kwargs) -> tuple[GeminiComputerUseClient, list]:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    client = GeminiComputerUseClient(
        credentials=lambda: key,
        endpoint=_ENDPOINT,
        http_client=http,
        **kwargs,
    )
    return client, requests


def _json_response(body: dict, status: int = 200):
    return lambda request: httpx.Response(status, json=body)


# ─────────────────────────────────────────────────────────────────────────────
# Request construction
# ─────────────────────────────────────────────────────────────────────────────

class TestRequest:

    @pytest.mark.asyncio
    async def test_sends_full_transcript_with_tool_and_key(self):
        client, requests = _make_client(_json_response(_candidate(_function_call("go_back"))))
        history = ConversationHistory()

        await client.decide("find cats", Observation(data=b"img"), history)
        history.append(FunctionResponseTurn(name="go_back", message="Action executed successfully"))
        await client.decide("find cats", None, history)

        assert len(requests) == 2
        second = json.loads(requests[1].content)
        assert [c["role"] for c in second["contents"]] == ["user", "model", "user", "user"]
        assert second["tools"] == [{"computer_use": {"environment": "ENVIRONMENT_BROWSER"}}]
        assert requests[1].headers["x-goog-api-key"] == "test-key"
        assert str(requests[1].url) == _ENDPOINT

    @pytest.mark.asyncio
    async def test_user_turn_carries_goal_and_image(self):
        client, requests = _make_client(_json_response(_candidate(_function_call("go_back"))))
        await client.decide("find cats", Observation(data=b"img"), ConversationHistory())

        parts = json.loads(requests[0].content)["contents"][0]["parts"]
        assert "find cats" in parts[0]["text"]
        assert "ONLY Computer Use tool calls" in parts[0]["text"]
        assert parts[1]["inline_data"]["mime_type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_no_image_part_without_observation(self):
        client, requests = _make_client(_json_response(_candidate(_function_call("go_back"))))
        await client.decide("goal", None, ConversationHistory())
        parts = json.loads(requests[0].content)["contents"][0]["parts"]
        assert len(parts) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Response parsing
# ─────────────────────────────────────────────────────────────────────────────

class TestDecide:

    @pytest.mark.asyncio
    async def test_function_call_becomes_action(self):
        body = _candidate({"text": "clicking"}, _function_call("click_at", x=10, y=20))
        client, _ = _make_client(_json_response(body))
        history = ConversationHistory()

        decision = await client.decide("goal", None, history)

        assert decision == ActionDecision(action="click_at", args={"x": 10, "y": 20})
        assert history.kinds() == ["user_observation", "model_decision"]
        assert history.last.parts == body["candidates"][0]["content"]["parts"]

    @pytest.mark.asyncio
    async def test_embedded_json_fallback(self):
        body = _candidate({"text": 'Sure: {"action": "navigate", "args": {"url": "https://a.test"}} ok'})
        client, _ = _make_client(_json_response(body))
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision == ActionDecision(action="navigate", args={"url": "https://a.test"})

    @pytest.mark.asyncio
    async def test_embedded_done_is_terminal(self):
        body = _candidate({"text": '{"action": "done", "result": "Paris is 18C"}'})
        client, _ = _make_client(_json_response(body))
        decision = await client.decide("goal", None, ConversationHistory())
        assert isinstance(decision, TerminalDecision)
        assert decision.result == "Paris is 18C"
        assert decision.reason is TerminalReason.COMPLETED
        assert not decision.is_error

    @pytest.mark.asyncio
    async def test_done_function_call_is_terminal(self):
        client, _ = _make_client(_json_response(_candidate(_function_call("done", result="found it"))))
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision == TerminalDecision(result="found it", reason=TerminalReason.COMPLETED)

    @pytest.mark.asyncio
    async def test_done_function_call_without_result(self):
        client, _ = _make_client(_json_response(_candidate(_function_call("done"))))
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision.result == "success"

    @pytest.mark.asyncio
    async def test_plain_text_is_no_decision(self):
        client, _ = _make_client(_json_response(_candidate({"text": "I am finished."})))
        history = ConversationHistory()
        decision = await client.decide("goal", None, history)
        assert decision == TerminalDecision(result="no decision found", reason=TerminalReason.NO_DECISION)
        assert history.kinds() == ["user_observation", "model_decision"]

    @pytest.mark.asyncio
    async def test_no_candidates_is_no_decision_without_model_turn(self):
        client, _ = _make_client(_json_response({"candidates": []}))
        history = ConversationHistory()
        decision = await client.decide("goal", None, history)
        assert decision.result == "no decision found"
        assert history.kinds() == ["user_observation"]

    @pytest.mark.asyncio
    async def test_require_confirmation_is_terminal(self):
        body = _candidate(_function_call(
            "click_at", x=1, y=2,
            safety_decision={"decision": "require_confirmation", "explanation": "Buying a ticket"},
        ))
        client, _ = _make_client(_json_response(body))
        decision = await client.decide("goal", None, ConversationHistory())
        assert isinstance(decision, TerminalDecision)
        assert decision.reason is TerminalReason.CONFIRMATION_REQUIRED
        assert decision.result == "Buying a ticket"


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_http_error_message_is_verbatim(self):
        body = {"error": {"code": 400, "message": "API key not valid. Please pass a valid API key."}}
        client, _ = _make_client(_json_response(body, status=400))
        decision = await client.decide("goal", None, ConversationHistory())
        assert isinstance(decision, TerminalDecision)
        assert decision.reason is TerminalReason.PROTOCOL_ERROR
        assert decision.is_error
        assert "API key not valid. Please pass a valid API key." in decision.result
        assert "400" in decision.result

    @pytest.mark.asyncio
    async def test_non_json_error_body_uses_text(self):
        client, _ = _make_client(lambda r: httpx.Response(503, text="upstream unavailable"))
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision.reason is TerminalReason.PROTOCOL_ERROR
        assert "upstream unavailable" in decision.result

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def _boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _make_client(_boom)
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision.reason is TerminalReason.PROTOCOL_ERROR
        assert "connection refused" in decision.result

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        client, _ = _make_client(lambda r: httpx.Response(200, text="<html>oops</html>"))
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision.reason is TerminalReason.PROTOCOL_ERROR

    @pytest.mark.asyncio
    async def test_missing_credential_sends_nothing(self):
        client, requests = _make_client(_json_response({}), key=None)
        history = ConversationHistory()

        assert client.preflight().reason is TerminalReason.MISSING_CREDENTIAL
        decision = await client.decide("goal", None, history)

        assert decision.reason is TerminalReason.MISSING_CREDENTIAL
        assert decision.is_error
        assert requests == []
        assert len(history) == 0

    @pytest.mark.asyncio
    async def test_preflight_passes_with_key(self):
        client, _ = _make_client(_json_response({}))
        assert client.preflight() is None


class TestExchangeCallback:

    @pytest.mark.asyncio
    async def test_exchange_reported_on_success_and_failure(self):
        seen = []
        ok, _ = _make_client(_json_response(_candidate(_function_call("go_back"))),
                             on_exchange=lambda req, resp: seen.append((req, resp)))
        await ok.decide("goal", None, ConversationHistory())

        bad, _ = _make_client(_json_response({"error": {"message": "nope"}}, status=500),
                              on_exchange=lambda req, resp: seen.append((req, resp)))
        await bad.decide("goal", None, ConversationHistory())

        assert "contents" in seen[0][0]
        assert seen[0][1]["candidates"]
        assert seen[1][1] is None

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_decide(self):
        def _raise(req, resp):
            raise RuntimeError("disk full")

        client, _ = _make_client(_json_response(_candidate(_function_call("go_back"))),
                                 on_exchange=_raise)
        decision = await client.decide("goal", None, ConversationHistory())
        assert decision == ActionDecision(action="go_back")


# ─────────────────────────────────────────────────────────────────────────────
# Parsing helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestParsing:

    def test_strategy_order(self):
        assert STRATEGIES == (function_call_strategy, embedded_json_strategy)

    def test_function_call_wins_over_text_json(self):
        parts = [{"text": '{"action": "go_back"}'}, _function_call("go_forward")]
        assert parse_decision(parts).action == "go_forward"

    def test_snake_case_function_call(self):
        parts = [{"function_call": {"name": "wait_5_seconds"}}]
        assert parse_decision(parts) == ActionDecision(action="wait_5_seconds")

    def test_balanced_json_ignores_braces_in_strings(self):
        text = 'x {"action": "type_text_at", "args": {"text": "a}b"}} y'
        assert find_balanced_json(text) == '{"action": "type_text_at", "args": {"text": "a}b"}}'

    def test_unbalanced_json_is_skipped(self):
        assert find_balanced_json("{ not closed") is None

    def test_invalid_json_falls_through(self):
        assert embedded_json_strategy([{"text": "{not: json}"}]) is None
        assert parse_decision([{"text": "{not: json}"}]).result == "no decision found"

    def test_custom_strategy_chain(self):
        def always_back(parts):
            return ActionDecision(action="go_back")

        assert parse_decision([], strategies=(always_back,)) == ActionDecision(action="go_back")
