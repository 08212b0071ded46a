"""
actions/normalizer.py — Action Normalizer

Maps the decision model's raw vocabulary onto the canonical ActionName set.
Pure: no I/O, never mutates its input, and idempotent, so
normalize(normalize(a)) == normalize(a).

Rewrite rules, applied in order:
    navigate(url)        → open_web_browser(url)
    type_at / scroll / key_press → type_text_at / scroll_document / key_combination
    search(query)        → open_web_browser(url=<search engine query URL>)
    search()             → open_web_browser(url=<default URL>)
    open_web_browser()   → open_web_browser(url=<default URL>)
"""

from __future__ import annotations

from typing import Union
from urllib.parse import quote_plus

from tabpilot.actions.types import ActionName, CanonicalAction
from tabpilot.brain.types import ActionDecision

DEFAULT_URL = "https://www.google.com"
DEFAULT_SEARCH_URL_TEMPLATE = "https://www.google.com/search?q={}"

_ALIASES: dict[str, ActionName] = {
    "navigate": ActionName.OPEN_WEB_BROWSER,
    "type_at": ActionName.TYPE_TEXT_AT,
    "scroll": ActionName.SCROLL_DOCUMENT,
    "key_press": ActionName.KEY_COMBINATION,
}


class ActionNormalizer:
    def __init__(
        self,
        default_url: str = DEFAULT_URL,
        search_url_template: str = DEFAULT_SEARCH_URL_TEMPLATE,
    ):
        self.default_url = default_url
        self.search_url_template = search_url_template

    def normalize(self, decision: Union[ActionDecision, CanonicalAction]) -> CanonicalAction:
        if isinstance(decision, CanonicalAction):
            name, args, source = decision.name, dict(decision.args), decision.source_name
        else:
            name, args, source = decision.action, dict(decision.args), decision.action

        alias = _ALIASES.get(name)
        if alias is not None:
            name = alias.value

        if name == "search":
            query = args.pop("query", None)
            name = ActionName.OPEN_WEB_BROWSER.value
            if query:
                args["url"] = self.search_url_template.format(quote_plus(str(query)))

        if name == ActionName.OPEN_WEB_BROWSER.value and not args.get("url"):
            args["url"] = self.default_url

        return CanonicalAction(name=name, args=args, source_name=source)


_default = ActionNormalizer()


def normalize(decision: Union[ActionDecision, CanonicalAction]) -> CanonicalAction:
    """Normalize with the default search engine and safe URL."""
    return _default.normalize(decision)

