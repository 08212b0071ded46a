"""
brain/gemini_client.py — Gemini Computer Use Client

Talks to the generateContent endpoint with the computer_use tool enabled.
The protocol is stateless per call: every request carries the full ordered
transcript, so the client appends this step's user turn to the history
before sending and the model's reply after receiving.

Failure policy: a missing key, transport error, non-2xx status or unreadable
body becomes an error-tagged TerminalDecision. Nothing here retries; the
loop ends the run as Aborted and reports the message.

Uses httpx directly rather than the google-genai SDK because the request
and response must stay in raw JSON form. The raw parts are replayed into
later requests and persisted as debug artifacts.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from tabpilot.brain.decision_client import (
    BaseDecisionClient,
    CredentialProvider,
    ExchangeCallback,
)
from tabpilot.brain.history import ConversationHistory
from tabpilot.brain.parsing import candidate_parts, parse_decision
from tabpilot.brain.types import (
    Decision,
    ModelDecisionTurn,
    TerminalDecision,
    TerminalReason,
    UserObservationTurn,
)
from tabpilot.config.settings import DEFAULT_GEMINI_ENDPOINT, DEFAULT_INSTRUCTION
from tabpilot.environment.base import Observation
from tabpilot.exceptions import MissingCredentialError, ProtocolError
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

_MISSING_KEY_MESSAGE = "Gemini API key not found. Set GEMINI_API_KEY in your .env file."


class GeminiComputerUseClient(BaseDecisionClient):
    """
    Gemini Computer Use decision client.

    Usage:
        client = GeminiComputerUseClient(credentials=settings.api_key)
        decision = await client.decide(goal, observation, history)
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        endpoint: str = DEFAULT_GEMINI_ENDPOINT,
        environment: str = "ENVIRONMENT_BROWSER",
        instruction: str = DEFAULT_INSTRUCTION,
        timeout_seconds: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        on_exchange: Optional[ExchangeCallback] = None,
    ):
        self._credentials = credentials
        self._endpoint = endpoint
        self._environment = environment
        self._instruction = instruction
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self.on_exchange = on_exchange

    # ── Public ────────────────────────────────────────────────────────────────

    def preflight(self) -> Optional[TerminalDecision]:
        if self._credentials():
            return None
        return TerminalDecision(result=_MISSING_KEY_MESSAGE, reason=TerminalReason.MISSING_CREDENTIAL)

    async def decide(
        self,
        goal: str,
        observation: Optional[Observation],
        history: ConversationHistory,
    ) -> Decision:
        try:
            api_key = self._require_key()
        except MissingCredentialError as e:
            log.error("gemini.decide.no_credential")
            return TerminalDecision(result=str(e), reason=TerminalReason.MISSING_CREDENTIAL)

        history.append(self.build_user_turn(goal, observation))
        request_body = self.build_request(history)

        log.debug(
            "gemini.decide.start",
            turns=len(history),
            has_observation=observation is not None,
        )

        response_body: Optional[dict[str, Any]] = None
        try:
            response_body = await self._post(request_body, api_key)
        except ProtocolError as e:
            log.error("gemini.decide.error", error=str(e), status_code=e.status_code)
            return TerminalDecision(result=f"Error: {e}", reason=TerminalReason.PROTOCOL_ERROR)
        finally:
            self._report(request_body, response_body)

        parts = candidate_parts(response_body)
        if parts is not None:
            history.append(ModelDecisionTurn(parts=parts))

        decision = parse_decision(parts or [])
        log.info(
            "gemini.decide.complete",
            action=getattr(decision, "action", None),
            terminal=decision.is_terminal,
        )
        return decision

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ── Request building ──────────────────────────────────────────────────────

    def build_user_turn(self, goal: str, observation: Optional[Observation]) -> UserObservationTurn:
        text = self._instruction.format(goal=goal)
        if observation is None:
            return UserObservationTurn(text=text)
        return UserObservationTurn(
            text=text,
            image=observation.data,
            mime_type=observation.mime_type,
        )

    def build_request(self, history: ConversationHistory) -> dict[str, Any]:
        return {
            "contents": history.to_wire(),
            "tools": [{"computer_use": {"environment": self._environment}}],
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    def _require_key(self) -> str:
        key = self._credentials()
        if not key:
            raise MissingCredentialError(_MISSING_KEY_MESSAGE)
        return key

    async def _post(self, body: dict[str, Any], api_key: str) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._endpoint,
                json=body,
                headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
            )
        except httpx.HTTPError as e:
            raise ProtocolError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise ProtocolError(
                f"API error {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Malformed response body: {e}", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise ProtocolError("Malformed response body: expected a JSON object",
                                status_code=response.status_code)
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        text = response.text
        try:
            data = response.json()
        except ValueError:
            return text
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return text

    def _report(self, request: dict[str, Any], response: Optional[dict[str, Any]]) -> None:
        if self.on_exchange is None:
            return
        try:
            self.on_exchange(request, response)
        except Exception as e:
            log.warning("gemini.exchange_callback_failed", error=str(e))
