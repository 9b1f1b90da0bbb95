"""
Heuristic Page Classifier

Turns a page snapshot (URL, title, visible text, selector readings) into a
PageState. ``capture_page_snapshot`` is the only part that touches the
browser; ``PageClassifier.classify`` is a pure function of the snapshot.

Checks run in a fixed precedence order because symptoms overlap: an
announcement can sit on top of the login form, and a code input can linger
in the DOM for a moment after the redirect home has already happened.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional, Sequence

from playwright.async_api import Error as PlaywrightError, Page

from models import PageKind, PageState
from page_selectors import ANNOUNCEMENT, CODE_VERIFICATION, DEVICE_APPROVAL, ERROR, PAGE_STATE, probe_selectors

logger = logging.getLogger("PageClassifier")

BODY_TEXT_JS = "() => document.body ? document.body.innerText : ''"


@dataclass(frozen=True)
class PageSnapshot:
    """What the classifier is allowed to see of a page."""

    url: str
    title: str = ""
    text: str = ""
    html: str = ""
    present: FrozenSet[str] = frozenset()
    visible: FrozenSet[str] = frozenset()
    element_text: Mapping[str, str] = field(default_factory=dict)

    def has(self, selector: str) -> bool:
        return selector in self.present or selector in self.visible

    def is_visible(self, selector: str) -> bool:
        return selector in self.visible

    def text_of(self, selector: str) -> str:
        return self.element_text.get(selector, "")

    def find_phrase(self, phrases: Iterable[str], include_markup: bool = False) -> Optional[str]:
        """First phrase found in the visible text (or markup too) (case-insensitive)."""
        haystack = f"{self.text}\n{self.html}" if include_markup else self.text
        haystack = haystack.lower()
        for phrase in phrases:
            if phrase.lower() in haystack:
                return phrase
        return None


async def capture_page_snapshot(page: Page, selectors: Optional[Sequence[str]] = None) -> PageSnapshot:
    """Read URL, title, text and every probe selector from ``page``.

    Call only after the page has settled; a failing probe counts as "not matched".
    """
    url = page.url
    title = ""
    text = ""
    html = ""
    try:
        title = await page.title()
        text = await page.evaluate(BODY_TEXT_JS) or ""
        html = await page.content()
    except PlaywrightError as e:
        logger.warning(f"Page read failed during snapshot ({url}): {e}")

    present = set()
    visible = set()
    element_text = {}
    text_selectors = set(ERROR["error_element"])

    for selector in selectors or probe_selectors():
        try:
            locator = page.locator(selector).first
            if await locator.count() == 0:
                continue
            present.add(selector)
            if await locator.is_visible():
                visible.add(selector)
            if selector in text_selectors:
                element_text[selector] = (await locator.inner_text()).strip()
        except PlaywrightError as e:
            logger.debug(f"Probe '{selector}' failed: {e}")

    return PageSnapshot(
        url=url,
        title=title,
        text=text,
        html=html,
        present=frozenset(present),
        visible=frozenset(visible),
        element_text=element_text,
    )


class PageClassifier:
    """Map a PageSnapshot to one PageState label."""

    def __init__(self, login_url_markers: Sequence[str] = ("login",), home_title_markers: Sequence[str] = ()):
        self.login_url_markers = tuple(m.lower() for m in login_url_markers)
        self.home_title_markers = tuple(home_title_markers)

    def is_login_family(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(marker in lowered for marker in self.login_url_markers)

    def identity_indicator(self, snapshot: PageSnapshot) -> Optional[str]:
        for selector in PAGE_STATE["profile_link"]:
            if snapshot.has(selector):
                return selector
        for marker in self.home_title_markers:
            if marker and marker in snapshot.title:
                return f"title:{marker}"
        for selector in PAGE_STATE["user_info_region"]:
            if snapshot.has(selector):
                return selector
        return None

    def classify(self, snapshot: PageSnapshot) -> PageState:
        login_family = self.is_login_family(snapshot.url)

        # 1. Already authenticated wins over everything below
        if not login_family:
            indicator = self.identity_indicator(snapshot)
            if indicator:
                return PageState(PageKind.AUTHENTICATED_HOME, reason=indicator)

        # 2. Dismissable dialog in front of the page
        for selector in ANNOUNCEMENT["confirm_button"]:
            if snapshot.is_visible(selector):
                return PageState(PageKind.ANNOUNCEMENT_BLOCKING, reason=selector)

        # 3. New device approval
        if login_family:
            phrase = snapshot.find_phrase(DEVICE_APPROVAL["phrases"])
            if phrase:
                return PageState(PageKind.DEVICE_APPROVAL_REQUIRED, reason=phrase)

        # 4. One-time code
        code_reason = self._code_verification_reason(snapshot)
        if code_reason:
            return PageState(PageKind.CODE_VERIFICATION_REQUIRED, reason=code_reason)

        if login_family:
            # 5. Error banner on the login page
            for selector in ERROR["error_element"]:
                message = snapshot.text_of(selector)
                if snapshot.has(selector) and message:
                    return PageState(PageKind.ERROR_BANNER, text=message, reason=selector)
            # 6. Plain login form
            return PageState(PageKind.LOGIN_FORM, reason="login url")

        return PageState(PageKind.UNKNOWN, reason="no indicator matched")

    def _code_verification_reason(self, snapshot: PageSnapshot) -> Optional[str]:
        for selector in CODE_VERIFICATION["code_input_indicators"]:
            if snapshot.is_visible(selector):
                return selector

        phrase = snapshot.find_phrase(CODE_VERIFICATION["phrases"])
        if not phrase:
            return None
        excluded = snapshot.find_phrase(CODE_VERIFICATION["exclusion_phrases"], include_markup=True)
        if excluded:
            logger.info(f"ℹ️ Code phrase '{phrase}' ignored: page also mentions '{excluded}'")
            return None
        if snapshot.has(CODE_VERIFICATION["generic_text_input"]):
            return f"text:{phrase}"
        return None


def extract_error_message(snapshot: PageSnapshot) -> Optional[str]:
    """Best human-readable rejection message on the page, if any."""
    for pattern in ERROR["text_patterns"]:
        match = pattern.search(snapshot.text)
        if match:
            return match.group(0).strip()

    keywords = [k.lower() for k in ERROR["element_keywords"]]
    for selector in ERROR["error_element"]:
        message = snapshot.text_of(selector)
        if message and any(k in message.lower() for k in keywords):
            return message
    return None
