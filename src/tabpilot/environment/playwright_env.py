"""
environment/playwright_env.py — Playwright Browser Environment

One object plays both collaborator roles over a Playwright BrowserContext:

  EnvironmentHost   — tabs are pages; capture is a page screenshot;
                      navigation is page.goto / go_back / go_forward.
  ExecutionSurface  — commands run through page.mouse / page.keyboard /
                      page.evaluate via SURFACE_HANDLERS.

Coordinates from the model are device pixels of the screenshot. They are
divided by window.devicePixelRatio and clamped to the viewport before use.

Usage:
    async with launch_browser(settings.browser, settings.capture) as browser:
        runner = AgentRunner.from_settings(settings, browser, browser)
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Optional

from playwright.async_api import BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from tabpilot.actions.types import SURFACE_ACTIONS, ActionName
from tabpilot.config.settings import BrowserConfig, CaptureConfig
from tabpilot.environment.base import Observation, SurfaceCommand, TabHandle
from tabpilot.exceptions import (
    CaptureError,
    CaptureRateLimitedError,
    EnvironmentLostError,
    SurfaceNotPresentError,
)
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

_EXTENSION_SCHEMES = ("chrome-extension://", "moz-extension://", "devtools://")
_QUOTA_MARKERS = ("quota", "max_capture", "rate limit", "too many")
_DETACHED_MARKERS = (
    "execution context was destroyed",
    "target closed",
    "has been closed",
    "navigating frame was detached",
)

SCROLL_AT_STEP = 400          # CSS px per scroll_at
SCROLL_PAGE_FRACTION = 0.8    # of the viewport per scroll_document

_KEY_ALIASES = {
    "ctrl": "Control", "control": "Control",
    "cmd": "Meta", "command": "Meta", "meta": "Meta", "super": "Meta",
    "alt": "Alt", "option": "Alt",
    "shift": "Shift",
    "enter": "Enter", "return": "Enter",
    "esc": "Escape", "escape": "Escape",
    "tab": "Tab", "space": "Space",
    "backspace": "Backspace", "delete": "Delete", "del": "Delete",
    "up": "ArrowUp", "down": "ArrowDown", "left": "ArrowLeft", "right": "ArrowRight",
    "pageup": "PageUp", "pagedown": "PageDown", "home": "Home", "end": "End",
}

_FIND_TEXT_JS = """
(query) => {
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT);
  let node;
  while ((node = walker.nextNode())) {
    if (node.textContent.includes(query)) {
      const range = document.createRange();
      range.selectNodeContents(node);
      const selection = window.getSelection();
      selection.removeAllRanges();
      selection.addRange(range);
      node.parentElement.scrollIntoView({block: 'center'});
      return true;
    }
  }
  return false;
}
"""

_SCROLL_DOCUMENT_JS = """
([direction, fraction]) => {
  const dy = window.innerHeight * fraction;
  const dx = window.innerWidth * fraction;
  switch (direction) {
    case 'down':   window.scrollBy(0, dy); return true;
    case 'up':     window.scrollBy(0, -dy); return true;
    case 'right':  window.scrollBy(dx, 0); return true;
    case 'left':   window.scrollBy(-dx, 0); return true;
    case 'top':    window.scrollTo(0, 0); return true;
    case 'bottom': window.scrollTo(0, document.body.scrollHeight); return true;
    default:       return false;
  }
}
"""


def normalize_keys(keys: Any) -> str:
    """'ctrl+a' / ['Control', 'a'] → 'Control+a' in Playwright key syntax."""
    if isinstance(keys, (list, tuple)):
        parts = [str(k) for k in keys]
    else:
        parts = str(keys).split("+")
    out = []
    for part in (p.strip() for p in parts):
        if not part:
            continue
        alias = _KEY_ALIASES.get(part.lower())
        if alias:
            out.append(alias)
        elif len(part) == 1:
            out.append(part)
        else:
            out.append(part[0].upper() + part[1:])
    return "+".join(out)


def _is_detached(error: Exception) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _DETACHED_MARKERS)


# ─────────────────────────────────────────────────────────────────────────────
# Coordinate helpers
# ─────────────────────────────────────────────────────────────────────────────


async def _viewport(page: Page) -> tuple[float, float]:
    size = page.viewport_size
    if size:
        return float(size["width"]), float(size["height"])
    w, h = await page.evaluate("[window.innerWidth, window.innerHeight]")
    return float(w), float(h)


async def _to_css(page: Page, x: Any, y: Any) -> tuple[int, int]:
    dpr = await page.evaluate("window.devicePixelRatio") or 1
    width, height = await _viewport(page)
    cx = min(max(float(x or 0) / dpr, 0.0), max(width - 1, 0.0))
    cy = min(max(float(y or 0) / dpr, 0.0), max(height - 1, 0.0))
    return round(cx), round(cy)


# ─────────────────────────────────────────────────────────────────────────────
# Surface handlers — one per non-navigation ActionName
# ─────────────────────────────────────────────────────────────────────────────

Handler = Callable[["PlaywrightBrowser", Page, dict[str, Any]], Awaitable[dict[str, Any]]]


async def _click_at(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    x, y = await _to_css(page, args.get("x"), args.get("y"))
    await page.mouse.click(x, y)
    return {"success": True, "x": x, "y": y}


async def _hover_at(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    x, y = await _to_css(page, args.get("x"), args.get("y"))
    await page.mouse.move(x, y)
    return {"success": True, "x": x, "y": y}


async def _type_text_at(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    x, y = await _to_css(page, args.get("x"), args.get("y"))
    await page.mouse.click(x, y)
    if args.get("clear_before_typing", True) is not False:
        await page.keyboard.press("ControlOrMeta+a")
        await page.keyboard.press("Delete")
    await page.keyboard.type(str(args.get("text", "")))
    if args.get("press_enter", True) is not False:
        await page.keyboard.press("Enter")
    return {"success": True}


async def _key_combination(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    keys = normalize_keys(args.get("keys", ""))
    if not keys:
        return {"success": False, "error": "no-keys"}
    await page.keyboard.press(keys)
    return {"success": True, "keys": keys}


async def _scroll_document(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    direction = str(args.get("direction", "down")).lower()
    ok = await page.evaluate(_SCROLL_DOCUMENT_JS, [direction, SCROLL_PAGE_FRACTION])
    if not ok:
        return {"success": False, "error": "unknown-direction", "direction": direction}
    return {"success": True}


async def _scroll_at(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    x, y = await _to_css(page, args.get("x"), args.get("y"))
    direction = str(args.get("direction", "down")).lower()
    step = float(args.get("magnitude") or SCROLL_AT_STEP)
    deltas = {"down": (0, step), "up": (0, -step), "right": (step, 0), "left": (-step, 0)}
    if direction not in deltas:
        return {"success": False, "error": "unknown-direction", "direction": direction}
    await page.mouse.move(x, y)
    await page.mouse.wheel(*deltas[direction])
    return {"success": True}


async def _drag_and_drop(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    x, y = await _to_css(page, args.get("x"), args.get("y"))
    dx, dy = await _to_css(page, args.get("destination_x"), args.get("destination_y"))
    await page.mouse.move(x, y)
    await page.mouse.down()
    await page.mouse.move(dx, dy, steps=10)
    await page.mouse.up()
    return {"success": True}


async def _wait_5_seconds(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    await env.sleep(5)
    return {"success": True}


async def _find_on_page(env: "PlaywrightBrowser", page: Page, args: dict[str, Any]) -> dict[str, Any]:
    query = args.get("text") or args.get("query") or ""
    if not query:
        return {"success": False, "error": "no-search-query"}
    found = await page.evaluate(_FIND_TEXT_JS, str(query))
    return {"success": True, "found": bool(found)}


SURFACE_HANDLERS: dict[ActionName, Handler] = {
    ActionName.CLICK_AT: _click_at,
    ActionName.HOVER_AT: _hover_at,
    ActionName.TYPE_TEXT_AT: _type_text_at,
    ActionName.KEY_COMBINATION: _key_combination,
    ActionName.SCROLL_DOCUMENT: _scroll_document,
    ActionName.SCROLL_AT: _scroll_at,
    ActionName.DRAG_AND_DROP: _drag_and_drop,
    ActionName.WAIT_5_SECONDS: _wait_5_seconds,
    ActionName.FIND_ON_PAGE: _find_on_page,
}

_missing = SURFACE_ACTIONS - set(SURFACE_HANDLERS)
if _missing:
    raise RuntimeError(f"No surface handler for: {sorted(a.value for a in _missing)}")


# ─────────────────────────────────────────────────────────────────────────────
# PlaywrightBrowser
# ─────────────────────────────────────────────────────────────────────────────


class PlaywrightBrowser:
    """EnvironmentHost + ExecutionSurface over one BrowserContext."""

    def __init__(
        self,
        context: BrowserContext,
        image_format: str = "jpeg",
        jpeg_quality: int = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._context = context
        self._image_format = image_format
        self._jpeg_quality = jpeg_quality
        self.sleep = sleep
        self._pages: dict[str, Page] = {}
        self._ids: dict[int, str] = {}
        self._counter = itertools.count(1)

    # ── Tab bookkeeping ───────────────────────────────────────────────────────

    def _tab_id(self, page: Page) -> str:
        tab_id = self._ids.get(id(page))
        if tab_id is None:
            tab_id = str(next(self._counter))
            self._ids[id(page)] = tab_id
            self._pages[tab_id] = page
        return tab_id

    def _page(self, handle: TabHandle) -> Optional[Page]:
        page = self._pages.get(handle.tab_id)
        if page is None:
            return None
        if page.is_closed():
            self._forget(handle.tab_id, page)
            return None
        return page

    def _forget(self, tab_id: str, page: Page) -> None:
        self._pages.pop(tab_id, None)
        self._ids.pop(id(page), None)

    def _require_page(self, handle: TabHandle) -> Page:
        page = self._page(handle)
        if page is None:
            raise EnvironmentLostError(f"Tab {handle.key} is closed")
        return page

    # ── EnvironmentHost ───────────────────────────────────────────────────────

    async def resolve_target(self) -> Optional[TabHandle]:
        candidates = [
            p for p in self._context.pages
            if not p.is_closed() and not p.url.startswith(_EXTENSION_SCHEMES)
        ]
        if not candidates:
            log.warning("browser.no_target")
            return None
        page = candidates[-1]
        return TabHandle(tab_id=self._tab_id(page), url=page.url)

    async def refresh(self, handle: TabHandle) -> Optional[TabHandle]:
        page = self._page(handle)
        if page is None:
            return None
        return TabHandle(tab_id=handle.tab_id, window_id=handle.window_id, url=page.url)

    async def capture(self, handle: TabHandle) -> Observation:
        page = self._require_page(handle)
        kwargs: dict[str, Any] = {"type": self._image_format}
        if self._image_format == "jpeg":
            kwargs["quality"] = self._jpeg_quality
        try:
            data = await page.screenshot(**kwargs)
        except PlaywrightError as e:
            text = str(e).lower()
            if any(marker in text for marker in _QUOTA_MARKERS):
                raise CaptureRateLimitedError(str(e)) from e
            raise CaptureError(str(e)) from e
        return Observation(data=data, mime_type=f"image/{self._image_format}")

    async def navigate(self, handle: TabHandle, url: str) -> None:
        page = self._require_page(handle)
        log.info("browser.navigate", url=url)
        await page.goto(url, wait_until="domcontentloaded")

    async def go_back(self, handle: TabHandle) -> None:
        await self._require_page(handle).go_back(wait_until="domcontentloaded")

    async def go_forward(self, handle: TabHandle) -> None:
        await self._require_page(handle).go_forward(wait_until="domcontentloaded")

    async def current_url(self, handle: TabHandle) -> Optional[str]:
        page = self._page(handle)
        return page.url if page is not None else None

    # ── ExecutionSurface ──────────────────────────────────────────────────────

    async def send(self, handle: TabHandle, command: SurfaceCommand) -> dict[str, Any]:
        page = self._page(handle)
        if page is None:
            raise SurfaceNotPresentError(f"Tab {handle.key} has no page")

        name = ActionName.parse(command.command)
        handler = SURFACE_HANDLERS.get(name) if name is not None else None
        if handler is None:
            return {"success": False, "error": "unknown-action", "action": command.command}

        try:
            return await handler(self, page, dict(command.args))
        except PlaywrightError as e:
            if _is_detached(e):
                raise SurfaceNotPresentError(str(e)) from e
            return {"success": False, "error": str(e)}


@asynccontextmanager
async def launch_browser(
    browser_config: Optional[BrowserConfig] = None,
    capture_config: Optional[CaptureConfig] = None,
) -> AsyncIterator[PlaywrightBrowser]:
    """Launch Chromium with one page open and yield a PlaywrightBrowser."""
    browser_config = browser_config or BrowserConfig()
    capture_config = capture_config or CaptureConfig()

    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=browser_config.headless)
        try:
            context = await browser.new_context(viewport={
                "width": browser_config.viewport_width,
                "height": browser_config.viewport_height,
            })
            page = await context.new_page()
            if browser_config.start_url and browser_config.start_url != "about:blank":
                await page.goto(browser_config.start_url, wait_until="domcontentloaded")
            log.info("browser.launched", headless=browser_config.headless,
                     start_url=browser_config.start_url)
            yield PlaywrightBrowser(
                context,
                image_format=capture_config.image_format,
                jpeg_quality=capture_config.jpeg_quality,
            )
        finally:
            await browser.close()
            log.info("browser.closed")
