"""
Browser Factory - Single source of truth for Playwright browser and context creation.

Owns the whole browser lifetime for one acquisition run: launch, contexts
(optionally preloaded from a SessionSnapshot), snapshot export and close.
"""

import json
import logging
from typing import Dict, Mapping, Optional, Tuple

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
)
from playwright_stealth import Stealth

from config import (
    BROWSER_ARGS,
    DEFAULT_LOCALE,
    DEFAULT_TIMEZONE,
    DEFAULT_USER_AGENT,
    DESKTOP_VIEWPORT,
    NAVIGATION_TIMEOUT,
    SETTLE_TIMEOUT,
)
from models import SessionSnapshot
from url_utils import origin_of

logger = logging.getLogger("BrowserFactory")

SESSION_STORAGE_EXPORT_JS = '''() => {
    const data = {};
    for (let i = 0; i < window.sessionStorage.length; i++) {
        const key = window.sessionStorage.key(i);
        data[key] = window.sessionStorage.getItem(key);
    }
    return data;
}'''


def session_storage_init_script(by_origin: Mapping[str, Mapping[str, str]]) -> str:
    """
    Init script that seeds sessionStorage for the matching origin before any
    page script runs. Keys the page has already set are left alone.
    """
    payload = json.dumps({k: dict(v) for k, v in by_origin.items()}, ensure_ascii=False)
    return (
        "(() => {\n"
        f"  const data = {payload};\n"
        "  const values = data[window.location.origin];\n"
        "  if (!values) return;\n"
        "  try {\n"
        "    for (const [key, value] of Object.entries(values)) {\n"
        "      if (window.sessionStorage.getItem(key) === null) window.sessionStorage.setItem(key, value);\n"
        "    }\n"
        "  } catch (e) {}\n"
        "})();"
    )


async def settle(page: Page, timeout: int = SETTLE_TIMEOUT) -> None:
    """Wait for network activity to settle; a timeout here is not an error."""
    try:
        await page.wait_for_load_state("networkidle", timeout=timeout)
    except PlaywrightTimeoutError:
        logger.debug(f"networkidle not reached within {timeout}ms on {page.url}, continuing")


async def export_snapshot(context: BrowserContext, page: Optional[Page] = None) -> SessionSnapshot:
    """Capture cookies + localStorage from the context and sessionStorage from ``page``."""
    state = await context.storage_state()
    session_storage: Dict[str, Dict[str, str]] = {}
    if page is not None:
        origin = origin_of(page.url)
        try:
            values = await page.evaluate(SESSION_STORAGE_EXPORT_JS)
            if origin and values:
                session_storage[origin] = {k: v for k, v in values.items() if isinstance(v, str)}
        except PlaywrightError as e:
            logger.warning(f"Could not read sessionStorage: {e}")
    snapshot = SessionSnapshot.from_storage_state(state, session_storage)
    logger.info(
        f"📸 Snapshot captured: {len(snapshot.cookies)} cookies, "
        f"{sum(len(v) for v in snapshot.storage_by_origin.values())} localStorage, "
        f"{sum(len(v) for v in snapshot.session_storage_by_origin.values())} sessionStorage items"
    )
    return snapshot


class BrowserLauncher:
    """
    One browser process per acquisition run.

    Usage:
        launcher = BrowserLauncher(headless=True)
        context, page = await launcher.new_page(snapshot)
        ...
        await launcher.close()  # always, on every exit path
    """

    def __init__(
        self,
        headless: bool = True,
        navigation_timeout: int = NAVIGATION_TIMEOUT,
        user_agent: Optional[str] = None,
        viewport: Optional[Dict] = None,
        locale: str = DEFAULT_LOCALE,
        timezone_id: Optional[str] = DEFAULT_TIMEZONE,
    ):
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.viewport = viewport or DESKTOP_VIEWPORT
        self.locale = locale
        self.timezone_id = timezone_id
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self.closed = False

    async def start(self) -> Browser:
        if self.closed:
            raise RuntimeError("BrowserLauncher already closed")
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=BROWSER_ARGS)
            logger.info(f"🚀 Browser launched (headless={self.headless})")
        return self._browser

    async def new_context(self, snapshot: Optional[SessionSnapshot] = None) -> BrowserContext:
        """Create a stealth-enabled context, preloaded from ``snapshot`` if given."""
        browser = await self.start()

        context_options = {
            "user_agent": self.user_agent,
            "viewport": self.viewport,
            "ignore_https_errors": True,
            "device_scale_factor": 1,
            "locale": self.locale,
        }
        if self.timezone_id:
            context_options["timezone_id"] = self.timezone_id
        if snapshot is not None:
            context_options["storage_state"] = snapshot.to_storage_state()

        context = await browser.new_context(**context_options)
        context.set_default_navigation_timeout(self.navigation_timeout)

        # MANDATORY: Apply stealth mode for anti-detection
        await Stealth().apply_stealth_async(context)

        if snapshot is not None and snapshot.session_storage_by_origin:
            await context.add_init_script(session_storage_init_script(snapshot.session_storage_by_origin))
        return context

    async def new_page(self, snapshot: Optional[SessionSnapshot] = None) -> Tuple[BrowserContext, Page]:
        context = await self.new_context(snapshot)
        page = await context.new_page()
        return context, page

    async def close(self) -> None:
        """Release the browser process. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Browser close failed: {e}")
        if self._playwright is not None:
            await self._playwright.stop()
        self._browser = None
        self._playwright = None
        logger.info("🧹 Browser released")

    async def __aenter__(self) -> "BrowserLauncher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
