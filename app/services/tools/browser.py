"""Browser session and page tools for the research voyager.

The session owns a Playwright page plus the bounding boxes of the most
recent marked screenshot; the tools act on those boxes by their numeric
label.
"""

from __future__ import annotations

import base64
import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from langchain_core.tools import BaseTool, StructuredTool
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

GOOGLE_URL = "https://www.google.com"
VIEWPORT = {"width": 1280, "height": 800}
MARK_PAGE_SCRIPT = Path(__file__).parent / "assets" / "mark_page.js"

_FRAME_OFFSET_JS = """() => {
    const frameElement = window.frameElement;
    if (!frameElement) return { x: 0, y: 0 };
    const rect = frameElement.getBoundingClientRect();
    return { x: rect.left + window.scrollX, y: rect.top + window.scrollY };
}"""


@dataclass
class MarkedPage:
    bboxes: List[Dict[str, Any]]
    screenshot_b64: str


def _short_url(url: str) -> str:
    return url.split("?")[0]


class BrowserSession:
    """A single browser tab driven by the voyager.

    Pages opened by the site (popups, ``target=_blank`` links) are closed and
    their URL is loaded in the main tab before the next observation.
    """

    def __init__(self, page: Page, playwright: Any = None, browser: Any = None) -> None:
        self.page = page
        self.bboxes: List[Dict[str, Any]] = []
        self._playwright = playwright
        self._browser = browser
        self._opened_pages: List[Page] = []

    @classmethod
    def launch(cls, headless: Optional[bool] = None) -> "BrowserSession":
        playwright = sync_playwright().start()
        browser = playwright.chromium.launch(
            headless=settings.browser_headless if headless is None else headless
        )
        context = browser.new_context(viewport=VIEWPORT)
        page = context.new_page()
        session = cls(page, playwright=playwright, browser=browser)
        context.on("page", session._opened_pages.append)
        page.goto(GOOGLE_URL)
        return session

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()

    def adopt_opened_pages(self) -> None:
        while self._opened_pages:
            opened = self._opened_pages.pop(0)
            try:
                opened.wait_for_load_state()
                url = opened.url
                opened.close()
                if url and url != "about:blank":
                    self.page.goto(url)
            except PlaywrightError as e:
                logger.warning(f"Could not follow opened page: {e}")

    def wait_for_idle(self, timeout_ms: int = 5_000) -> None:
        try:
            self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            logger.error(f"Error waiting for network idle: {e}")

    def get_marked_page(self) -> MarkedPage:
        """Label the interactive elements, screenshot the page, then remove the labels."""
        self.adopt_opened_pages()
        script = MARK_PAGE_SCRIPT.read_text(encoding="utf-8")
        frames = self.page.frames

        for frame in frames:
            try:
                frame.wait_for_selector("body", timeout=5_000)
                frame.evaluate(script)
            except PlaywrightError as e:
                # Already injected, or the frame went away.
                logger.debug(f"Mark script not injected into {frame.url}: {e}")

        bboxes: List[Dict[str, Any]] = []
        for frame in frames:
            try:
                offset = frame.evaluate(_FRAME_OFFSET_JS)
                bboxes.extend(
                    frame.evaluate(f"markPage({len(bboxes)}, {offset['x']}, {offset['y']})") or []
                )
            except PlaywrightError as e:
                logger.debug(f"Skipping frame {frame.url}: {e}")

        screenshot = self.page.screenshot()

        for frame in frames:
            try:
                frame.evaluate("unmarkPage()")
            except PlaywrightError as e:
                logger.debug(f"Could not unmark {frame.url}: {e}")

        self.bboxes = bboxes
        return MarkedPage(bboxes=bboxes, screenshot_b64=base64.b64encode(screenshot).decode("ascii"))

    def bbox(self, bbox_id: str) -> Dict[str, Any]:
        """Return the box labeled ``bbox_id`` on the last marked page.

        Raises:
            ValueError: if no such box exists.
        """
        try:
            index = int(bbox_id)
        except (TypeError, ValueError):
            index = -1
        if not 0 <= index < len(self.bboxes):
            raise ValueError(f"Bounding box with ID {bbox_id} not found.")
        return self.bboxes[index]


class BBoxInput(BaseModel):
    bbox_id: str = Field(description="The ID of the bounding box to click.")


class TypeTextInput(BaseModel):
    bbox_id: str = Field(description="The ID of the bounding box to type text into.")
    text: str = Field(description="The text to type into the bounding box.")


class ScrollInput(BaseModel):
    direction: Literal["up", "down"] = Field(description="The direction to scroll.")


class WaitInput(BaseModel):
    duration: float = Field(ge=0, description="The duration to wait in seconds.")


class NoInput(BaseModel):
    pass


def click_tool(session: BrowserSession) -> BaseTool:
    def click(bbox_id: str) -> str:
        bbox = session.bbox(bbox_id)
        session.page.mouse.click(bbox["x"], bbox["y"])
        return f"Clicked '{bbox.get('text', '')}' ({_short_url(session.page.url)})"

    return StructuredTool.from_function(
        func=click,
        name="click",
        description="Clicks on a web element identified by its bounding box ID.",
        args_schema=BBoxInput,
    )


def type_text_tool(session: BrowserSession) -> BaseTool:
    def type_text(bbox_id: str, text: str) -> str:
        bbox = session.bbox(bbox_id)
        page = session.page
        page.mouse.click(bbox["x"], bbox["y"])
        page.keyboard.press("ControlOrMeta+A")
        page.keyboard.press("Backspace")
        page.keyboard.type(text, delay=random.randint(50, 150))
        page.keyboard.press("Enter")
        return f"Typed '{text}' into box and submitted ({_short_url(page.url)})"

    return StructuredTool.from_function(
        func=type_text,
        name="type",
        description="Types text into a web element identified by its bounding box ID.",
        args_schema=TypeTextInput,
    )


def scroll_tool(session: BrowserSession) -> BaseTool:
    def scroll(direction: str) -> str:
        height = (session.page.viewport_size or VIEWPORT)["height"]
        session.page.evaluate(
            "([dir, amt]) => window.scrollBy(0, dir === 'up' ? -amt : amt)",
            [direction, 0.75 * height],
        )
        return f"Scrolled {direction}"

    return StructuredTool.from_function(
        func=scroll,
        name="scroll",
        description="Scrolls the webpage in the specified direction.",
        args_schema=ScrollInput,
    )


def wait_tool(sleep: Callable[[float], None] = time.sleep) -> BaseTool:
    def wait(duration: float) -> str:
        sleep(duration)
        return f"Waited for {duration} seconds"

    return StructuredTool.from_function(
        func=wait,
        name="wait",
        description="Waits for a specified duration.",
        args_schema=WaitInput,
    )


def go_back_tool(session: BrowserSession) -> BaseTool:
    def go_back() -> str:
        session.page.go_back()
        return f"Navigated back to the previous page ({_short_url(session.page.url)})"

    return StructuredTool.from_function(
        func=go_back,
        name="go_back",
        description="Navigates back to the previous page.",
        args_schema=NoInput,
    )


def to_google_tool(session: BrowserSession) -> BaseTool:
    def to_google() -> str:
        session.page.goto(GOOGLE_URL)
        return "Navigated back to Google."

    return StructuredTool.from_function(
        func=to_google,
        name="to_google",
        description="Navigates to Google to start a new search.",
        args_schema=NoInput,
    )


def browser_tools(session: BrowserSession) -> List[BaseTool]:
    return [
        click_tool(session),
        type_text_tool(session),
        scroll_tool(session),
        wait_tool(),
        go_back_tool(session),
        to_google_tool(session),
    ]
