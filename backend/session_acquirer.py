"""
Session Acquirer - the public entry point.

Fast path: restore the cached snapshot, open it on the home page and keep
it if the site still treats us as logged in. Otherwise run the full
LoginStateMachine in a fresh context. Either way the fresh snapshot is
persisted and an authenticated context is handed back.

The browser is released on every failure path; on success the caller owns
it through ``AcquiredSession.close()``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from playwright.async_api import BrowserContext, Error as PlaywrightError, Page

from browser_factory import BrowserLauncher, export_snapshot
from config import Settings
from diagnostics import dump_interactive_elements, log_timing, save_debug_screenshot
from errors import (
    AcquisitionError,
    BrowserFailure,
    ClassificationAmbiguous,
    PersistFailure,
    RestoreInvalid,
    UnexpectedFailure,
)
from login_bot import LoginStateMachine
from models import Credentials, PageState, SessionSnapshot
from oob_channel import VerificationChannel
from page_classifier import PageClassifier
from session_store import SessionStore

logger = logging.getLogger("SessionAcquirer")

SOURCE_RESTORED = "restored"
SOURCE_LOGIN = "login"


def failure_notice(error: AcquisitionError) -> str:
    return f"❌ Login failed\nError: {error.kind}\n{error.message}"


@dataclass
class AcquiredSession:
    snapshot: SessionSnapshot
    context: BrowserContext
    page: Page
    launcher: BrowserLauncher
    source: str
    persisted: bool = True

    async def close(self) -> None:
        await self.launcher.close()

    async def __aenter__(self) -> "AcquiredSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class SessionAcquirer:
    """One instance per process; runs one acquisition at a time."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        channel: VerificationChannel,
        launcher_factory: Optional[Callable[[], BrowserLauncher]] = None,
        classifier: Optional[PageClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.launcher_factory = launcher_factory or (
            lambda: BrowserLauncher(headless=settings.headless, navigation_timeout=settings.navigation_timeout_ms)
        )
        self.classifier = classifier or PageClassifier(settings.login_url_markers, settings.home_title_markers)
        self.sleep = sleep
        self.last_machine: Optional[LoginStateMachine] = None
        self._page: Optional[Page] = None

    def _machine(self, page: Page, trace_id: str) -> LoginStateMachine:
        machine = LoginStateMachine(
            page,
            self.settings,
            self.channel,
            classifier=self.classifier,
            sleep=self.sleep,
            trace_id=trace_id,
        )
        self.last_machine = machine
        return machine

    async def acquire(self, credentials: Credentials) -> AcquiredSession:
        """Return an authenticated session or raise the fatal AcquisitionError."""
        trace_id = str(uuid.uuid4())[:8]
        launcher = self.launcher_factory()
        self._page = None
        self.last_machine = None

        try:
            async with log_timing("Session acquisition", trace_id):
                return await self._acquire(launcher, credentials, trace_id)
        except AcquisitionError as e:
            await self._fail(e, launcher, trace_id)
            raise
        except PlaywrightError as e:
            failure = BrowserFailure(f"Browser error: {e}")
            await self._fail(failure, launcher, trace_id)
            raise failure from e
        except Exception as e:
            logger.exception(f"[{trace_id}] Unexpected error during acquisition")
            failure = UnexpectedFailure(f"{type(e).__name__}: {e}")
            await self._fail(failure, launcher, trace_id)
            raise failure from e
        except BaseException:
            # Cancellation or interrupt: release without reporting
            await launcher.close()
            raise

    async def _fail(self, error: AcquisitionError, launcher: BrowserLauncher, trace_id: str) -> None:
        """Report ``error`` to the operator, then release the browser whatever the report does."""
        try:
            await self._report_failure(error, trace_id)
        except Exception:
            logger.exception(f"[{trace_id}] Failure report for {error.kind} could not be delivered")
        finally:
            await launcher.close()

    async def _acquire(self, launcher: BrowserLauncher, credentials: Credentials, trace_id: str) -> AcquiredSession:
        snapshot = await self.store.restore()
        if snapshot is not None:
            restored = await self._try_restore(launcher, snapshot, trace_id)
            if restored is not None:
                return restored

        context, page = await launcher.new_page()
        self._page = page
        await self._machine(page, trace_id).run(credentials)
        return await self._finish(launcher, context, page, SOURCE_LOGIN, trace_id)

    async def _try_restore(
        self, launcher: BrowserLauncher, snapshot: SessionSnapshot, trace_id: str
    ) -> Optional[AcquiredSession]:
        context, page = await launcher.new_page(snapshot)
        self._page = page

        state: Optional[PageState] = None
        detail = ""
        try:
            async with log_timing("Restore validation", trace_id):
                await page.goto(self.settings.home_url, wait_until="domcontentloaded")
                state = await self._machine(page, trace_id).determine_state()
        except ClassificationAmbiguous as e:
            detail = e.message
        except PlaywrightError as e:
            detail = f"browser error: {e}"

        if state is not None and state.is_authenticated:
            logger.info(f"[{trace_id}] ✅ Cached session still valid, no login needed")
            return await self._finish(launcher, context, page, SOURCE_RESTORED, trace_id)

        invalid = RestoreInvalid(f"Cached session rejected ({state or detail})")
        logger.warning(f"[{trace_id}] ⚠️ {invalid.describe()}, falling back to full login")
        try:
            await context.close()
        except PlaywrightError as e:
            logger.debug(f"Closing restore context failed: {e}")
        self._page = None
        return None

    async def _finish(
        self, launcher: BrowserLauncher, context: BrowserContext, page: Page, source: str, trace_id: str
    ) -> AcquiredSession:
        # Always a fresh capture: tokens may have rotated since the cached copy
        snapshot = await export_snapshot(context, page)
        persisted = await self.store.persist(snapshot)
        if not persisted:
            warning = PersistFailure("Session could not be saved; the next run may need a full login")
            logger.warning(f"[{trace_id}] ⚠️ {warning.describe()}")
            await self.channel.notify(f"⚠️ {warning.message}")
        return AcquiredSession(
            snapshot=snapshot,
            context=context,
            page=page,
            launcher=launcher,
            source=source,
            persisted=persisted,
        )

    async def _report_failure(self, error: AcquisitionError, trace_id: str) -> None:
        """Diagnostic capture plus the single operator notification for this run."""
        logger.error(f"[{trace_id}] ❌ {error.describe()}")

        shot = None
        if self._page is not None:
            shot = await save_debug_screenshot(self._page, f"failure_{error.kind}", self.settings.debug_dir)
            await dump_interactive_elements(self._page, f"failure context: {error.kind}")
            if shot is not None:
                error.screenshot_path = shot.path

        message = failure_notice(error)
        # Telegram caps photo captions at 1024 characters
        if shot is not None and await self.channel.send_photo(shot.data, caption=message[:1024]):
            return
        await self.channel.notify(message)
