"""
tests/unit/test_normalizer.py — ActionNormalizer

Covers:
  - navigate / search / open_web_browser rewrite rules
  - vocabulary aliases
  - idempotence over a representative set of decisions
  - input is never mutated, source name is kept
"""

from __future__ import annotations

import pytest

from tabpilot.actions.normalizer import ActionNormalizer, normalize
from tabpilot.actions.types import ActionName, CanonicalAction
from tabpilot.brain.types import ActionDecision

_DECISIONS = [
    ActionDecision(action="navigate", args={"url": "https://example.com"}),
    ActionDecision(action="search", args={"query": "weather in paris"}),
    ActionDecision(action="search"),
    ActionDecision(action="open_web_browser"),
    ActionDecision(action="open_web_browser", args={"url": ""}),
    ActionDecision(action="click_at", args={"x": 10, "y": 20}),
    ActionDecision(action="type_at", args={"x": 1, "y": 2, "text": "hi"}),
    ActionDecision(action="scroll", args={"direction": "down"}),
    ActionDecision(action="key_press", args={"keys": "Enter"}),
    ActionDecision(action="teleport", args={"where": "moon"}),
]


class TestRewriteRules:

    def test_navigate_becomes_open_web_browser(self):
        action = normalize(ActionDecision(action="navigate", args={"url": "https://example.com"}))
        assert action.name == "open_web_browser"
        assert action.args == {"url": "https://example.com"}
        assert action.source_name == "navigate"

    def test_search_builds_query_url(self):
        action = normalize(ActionDecision(action="search", args={"query": "weather in paris"}))
        assert action.kind is ActionName.OPEN_WEB_BROWSER
        assert action.args == {"url": "https://www.google.com/search?q=weather+in+paris"}

    def test_search_without_query_opens_home_page(self):
        action = normalize(ActionDecision(action="search"))
        assert action.args == {"url": "https://www.google.com"}

    def test_missing_url_defaults_to_safe_url(self):
        assert normalize(ActionDecision(action="open_web_browser")).args["url"] == "https://www.google.com"

    def test_custom_engine_and_default(self):
        normalizer = ActionNormalizer(
            default_url="https://duckduckgo.com",
            search_url_template="https://duckduckgo.com/?q={}",
        )
        assert normalizer.normalize(ActionDecision(action="search", args={"query": "a&b"})).args == {
            "url": "https://duckduckgo.com/?q=a%26b"
        }
        assert normalizer.normalize(ActionDecision(action="navigate")).args == {
            "url": "https://duckduckgo.com"
        }

    @pytest.mark.parametrize("raw,canonical", [
        ("type_at", "type_text_at"),
        ("scroll", "scroll_document"),
        ("key_press", "key_combination"),
    ])
    def test_aliases(self, raw, canonical):
        assert normalize(ActionDecision(action=raw)).name == canonical

    def test_unknown_names_pass_through(self):
        action = normalize(ActionDecision(action="teleport", args={"where": "moon"}))
        assert action.name == "teleport"
        assert action.kind is None


class TestPurity:

    @pytest.mark.parametrize("decision", _DECISIONS, ids=lambda d: d.action)
    def test_idempotent(self, decision):
        once = normalize(decision)
        assert normalize(once) == once

    def test_canonical_action_is_returned_unchanged(self):
        action = CanonicalAction(name="click_at", args={"x": 1, "y": 2}, source_name="click_at")
        assert normalize(action) == action

    def test_input_args_are_not_mutated(self):
        args = {"query": "cats"}
        normalize(ActionDecision(action="search", args=args))
        assert args == {"query": "cats"}

    def test_response_name_is_models_original_name(self):
        assert normalize(ActionDecision(action="navigate", args={"url": "https://a.test"})).response_name == "navigate"
