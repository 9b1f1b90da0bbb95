"""
Login Bot - drives the site login through password, device approval and
one-time-code verification.

Every decision is taken from a fresh PageState: the page is settled,
snapshotted and classified after each interaction, and blocking
announcements are dismissed before the state is acted on.

Flow:
    login page -> credentials -> AuthenticatedHome                  done
                              -> DeviceApprovalRequired -> wait, reload, re-check
                              -> CodeVerificationRequired -> OOB code loop
                              -> ErrorBanner / LoginForm             LoginRejected
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError, Locator, Page

from browser_factory import settle
from config import CLICK_TIMEOUT, Settings
from diagnostics import log_timing
from errors import (
    AttemptsExhausted,
    ClassificationAmbiguous,
    CodeRejected,
    CodeTimedOut,
    DeviceApprovalTimedOut,
    LoginRejected,
    SubmitPathNotFound,
)
from models import AttemptOutcome, Credentials, PageKind, PageState, VerificationAttempt
from oob_channel import VerificationChannel
from page_classifier import PageClassifier, PageSnapshot, capture_page_snapshot, extract_error_message
from page_selectors import ANNOUNCEMENT, CODE_VERIFICATION, DEVICE_APPROVAL, LOGIN
from url_utils import redact_url

logger = logging.getLogger("LoginBot")

MAX_ANNOUNCEMENT_DISMISSALS = 3
ENTER_KEY_STRATEGY = "keypress:Enter"


# ============================================================================
# ELEMENT LOOKUP
# ============================================================================

@dataclass(frozen=True)
class Found:
    handle: Locator
    strategy: str


@dataclass(frozen=True)
class NotFound:
    tried: Tuple[str, ...]


LookupResult = Union[Found, NotFound]


async def find_first(page: Page, selectors: Sequence[str], require_visible: bool = True) -> LookupResult:
    """First selector that matches (and is visible) wins."""
    for selector in selectors:
        try:
            locator = page.locator(selector).first
            if await locator.count() == 0:
                continue
            if require_visible and not await locator.is_visible():
                logger.debug(f"  '{selector}' found but not visible, skipping")
                continue
            return Found(locator, selector)
        except PlaywrightError as e:
            logger.debug(f"  '{selector}' lookup failed: {e}")
    return NotFound(tuple(selectors))


async def click_first(page: Page, selectors: Sequence[str], description: str) -> LookupResult:
    """
    Click the first visible match. A candidate whose click fails is skipped
    and the next one is tried.
    """
    tried: List[str] = []
    remaining = list(selectors)
    while remaining:
        result = await find_first(page, remaining)
        if isinstance(result, NotFound):
            tried.extend(result.tried)
            break
        try:
            await result.handle.click(timeout=CLICK_TIMEOUT)
            logger.info(f"  → Clicked {description} via: {result.strategy}")
            return result
        except PlaywrightError as e:
            logger.info(f"  → Click on '{result.strategy}' failed: {e}")
            index = remaining.index(result.strategy)
            tried.extend(remaining[: index + 1])
            remaining = remaining[index + 1:]
    return NotFound(tuple(tried))


# ============================================================================
# STATE MACHINE
# ============================================================================

class LoginStateMachine:
    """
    One interactive login on one page.

    ``submissions`` counts credential submissions and ``attempts`` records
    every code verification round, so callers and tests can audit a run.
    """

    def __init__(
        self,
        page: Page,
        settings: Settings,
        channel: VerificationChannel,
        classifier: Optional[PageClassifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        trace_id: Optional[str] = None,
    ):
        self.page = page
        self.settings = settings
        self.channel = channel
        self.classifier = classifier or PageClassifier(settings.login_url_markers, settings.home_title_markers)
        self.sleep = sleep
        self.trace_id = trace_id or str(uuid.uuid4())[:8]
        self.submissions = 0
        self.attempts: List[VerificationAttempt] = []
        self.last_snapshot: Optional[PageSnapshot] = None

    @property
    def _p(self) -> str:
        return f"[{self.trace_id}] "

    # ------------------------------------------------------------------ #
    # State determination
    # ------------------------------------------------------------------ #

    async def determine_state(self) -> PageState:
        """
        Settle, snapshot and classify the page.

        Announcements are dismissed and the page re-classified. An Unknown
        page gets one re-check after a short wait; a second Unknown raises
        ClassificationAmbiguous.
        """
        dismissals = 0
        unknown_seen = False
        while True:
            await settle(self.page)
            snapshot = await capture_page_snapshot(self.page)
            self.last_snapshot = snapshot
            state = self.classifier.classify(snapshot)
            logger.info(f"{self._p}🔎 Page state: {state} [{state.reason}] at {redact_url(snapshot.url)}")

            if state.kind is PageKind.ANNOUNCEMENT_BLOCKING:
                if dismissals >= MAX_ANNOUNCEMENT_DISMISSALS:
                    raise ClassificationAmbiguous(
                        f"Announcement dialog still open after {dismissals} dismissals"
                    )
                dismissals += 1
                await self._dismiss_announcement(state.reason)
                continue

            if state.kind is PageKind.UNKNOWN:
                if unknown_seen:
                    raise ClassificationAmbiguous(
                        f"Could not recognise the page at {redact_url(snapshot.url)} (title {snapshot.title!r})"
                    )
                unknown_seen = True
                logger.warning(
                    f"{self._p}⚠️ Page not recognised yet, re-checking in {self.settings.unknown_recheck_delay:.0f}s"
                )
                await self.sleep(self.settings.unknown_recheck_delay)
                continue

            return state

    async def _dismiss_announcement(self, selector: str) -> None:
        logger.info(f"{self._p}📢 Dismissing announcement via '{selector}'")
        try:
            await self.page.locator(selector).first.click(timeout=CLICK_TIMEOUT)
        except PlaywrightError as e:
            logger.warning(f"{self._p}Announcement button click failed: {e}")
            fallback = await click_first(self.page, ANNOUNCEMENT["confirm_button"], "announcement")
            if isinstance(fallback, NotFound):
                logger.warning(f"{self._p}No announcement button could be clicked")

    # ------------------------------------------------------------------ #
    # Main flow
    # ------------------------------------------------------------------ #

    async def run(self, credentials: Credentials) -> PageState:
        """Log in from scratch. Returns the AuthenticatedHome state or raises."""
        logger.info(f"{self._p}Starting login for {credentials.username[:3]}***")

        async with log_timing("Navigate to login", self.trace_id):
            await self.page.goto(self.settings.login_url, wait_until="domcontentloaded")

        state = await self.determine_state()
        if state.is_authenticated:
            logger.info(f"{self._p}✅ Already logged in, skipping credentials")
            return state

        if state.kind in (PageKind.LOGIN_FORM, PageKind.ERROR_BANNER):
            async with log_timing("Credential submission", self.trace_id):
                state = await self.submit_credentials(credentials)

        return await self._advance(state)

    async def _advance(self, state: PageState) -> PageState:
        if state.kind is PageKind.DEVICE_APPROVAL_REQUIRED:
            state = await self.handle_device_approval()
        elif state.kind is PageKind.CODE_VERIFICATION_REQUIRED:
            state = await self.handle_code_verification()
        elif state.kind is PageKind.ERROR_BANNER:
            raise LoginRejected(f"Login rejected by the site: {state.text}")
        elif state.kind is PageKind.LOGIN_FORM:
            raise LoginRejected("Still on the login form after submitting credentials")

        if not state.is_authenticated:
            raise LoginRejected(f"Login ended on an unexpected page: {state}")
        logger.info(f"{self._p}✅ Login complete after {self.submissions} submission(s), {len(self.attempts)} code attempt(s)")
        return state

    # ------------------------------------------------------------------ #
    # Credentials
    # ------------------------------------------------------------------ #

    async def submit_credentials(self, credentials: Credentials) -> PageState:
        """Fill username/password, submit, and classify the result."""
        username = await find_first(self.page, LOGIN["username_input"])
        if isinstance(username, NotFound):
            raise SubmitPathNotFound("Username input not found", username.tried)
        password = await find_first(self.page, LOGIN["password_input"])
        if isinstance(password, NotFound):
            raise SubmitPathNotFound("Password input not found", password.tried)

        # fill() clears the field first, so a retried submission never appends
        await username.handle.fill(credentials.username)
        await password.handle.fill(credentials.password)
        logger.info(f"{self._p}Filled username ({username.strategy}) and password ({password.strategy})")

        strategy = await self._submit(
            password.handle,
            [*LOGIN["submit_button"], LOGIN["submit_text_fallback"]],
            "login button",
        )
        self.submissions += 1
        logger.info(f"{self._p}📤 Credentials submitted via {strategy}")

        await self.sleep(self.settings.post_submit_delay)
        return await self.determine_state()

    async def _submit(self, field: Locator, selectors: Sequence[str], description: str) -> str:
        """Click the first working button, else press Enter in ``field``."""
        result = await click_first(self.page, selectors, description)
        if isinstance(result, Found):
            return result.strategy

        tried = list(result.tried)
        logger.info(f"{self._p}No {description} clicked, falling back to Enter key")
        try:
            await field.press("Enter")
            return ENTER_KEY_STRATEGY
        except PlaywrightError as e:
            logger.warning(f"{self._p}Enter key submit failed: {e}")
            tried.append(ENTER_KEY_STRATEGY)
        raise SubmitPathNotFound(f"No way to submit via {description}", tried)

    # ------------------------------------------------------------------ #
    # Device approval
    # ------------------------------------------------------------------ #

    async def handle_device_approval(self) -> PageState:
        """Single attempt: notify, wait the fixed interval, reload, re-check."""
        wait = self.settings.device_approval_wait
        link = await self._approval_link()

        message = (
            "📱 New device login needs approval\n"
            f"Approve this sign-in from your email or another signed-in device within {wait:.0f}s."
        )
        if link:
            message += f"\nApproval link: {link}"
        await self.channel.notify(message)

        logger.info(f"{self._p}⏳ Waiting {wait:.0f}s for device approval...")
        await self.sleep(wait)
        await self.page.reload(wait_until="domcontentloaded")

        state = await self.determine_state()
        if state.is_authenticated:
            logger.info(f"{self._p}✅ Device approved")
            await self.channel.notify("✅ Device approved, login complete")
            return state
        if state.kind is PageKind.CODE_VERIFICATION_REQUIRED:
            logger.info(f"{self._p}Device approved, code verification follows")
            return await self.handle_code_verification()
        raise DeviceApprovalTimedOut(f"Device was not approved within {wait:.0f}s (page: {state})")

    async def _approval_link(self) -> Optional[str]:
        result = await find_first(self.page, DEVICE_APPROVAL["approval_link"], require_visible=False)
        if isinstance(result, NotFound):
            return None
        try:
            href = await result.handle.get_attribute("href")
        except PlaywrightError as e:
            logger.debug(f"Could not read approval link: {e}")
            return None
        return urljoin(self.page.url, href) if href else None

    # ------------------------------------------------------------------ #
    # Code verification
    # ------------------------------------------------------------------ #

    async def handle_code_verification(self) -> PageState:
        """
        Up to ``code_max_attempts`` OOB round trips.

        A wrong code consumes one attempt and loops with feedback; a missing
        reply ends the login at once with CodeTimedOut.
        """
        max_attempts = self.settings.code_max_attempts
        timeout = self.settings.code_timeout

        for number in range(1, max_attempts + 1):
            attempt = VerificationAttempt(attempt_number=number, prompt_sent_at=datetime.now(timezone.utc))
            self.attempts.append(attempt)

            prompt = (
                "🔐 Verification code required\n"
                f"Reply with the 6-digit code (or /{self.settings.code_command} 123456) within {timeout:.0f}s.\n"
                f"Attempt {number}/{max_attempts}, {max_attempts - number + 1} remaining."
            )
            code = await self.channel.request_code(prompt, timeout)
            if code is None:
                attempt.outcome = AttemptOutcome.TIMED_OUT
                raise CodeTimedOut(f"No verification code received within {timeout:.0f}s")
            attempt.code = code

            logger.info(f"{self._p}🔢 Attempt {number}/{max_attempts}: submitting code {code[0]}*****")
            if not await self._enter_code(code):
                state = await self.determine_state()
                if state.is_authenticated:
                    logger.info(f"{self._p}Code page went away on its own, already logged in")
                    attempt.outcome = AttemptOutcome.ACCEPTED
                    return state
                raise SubmitPathNotFound("Code input not found", CODE_VERIFICATION["code_input"])

            await self.sleep(self.settings.post_submit_delay)
            # determine_state dismisses announcements and checks AuthenticatedHome
            # before CodeVerificationRequired, so a success racing the redirect counts
            state = await self.determine_state()

            if state.is_authenticated:
                attempt.outcome = AttemptOutcome.ACCEPTED
                logger.info(f"{self._p}✅ Code accepted on attempt {number}")
                return state

            if state.kind in (PageKind.CODE_VERIFICATION_REQUIRED, PageKind.ERROR_BANNER):
                attempt.outcome = AttemptOutcome.REJECTED
                reason = self._rejection_reason(state)
                rejection = CodeRejected(f"Attempt {number}/{max_attempts} rejected: {reason}")
                logger.warning(f"{self._p}❌ {rejection.describe()}")
                left = max_attempts - number
                feedback = f"❌ Code rejected: {reason}"
                feedback += f"\n{left} attempt(s) left, a new prompt follows." if left else "\nNo attempts left."
                await self.channel.notify(feedback)
                continue

            attempt.outcome = AttemptOutcome.REJECTED
            raise LoginRejected(f"Code submitted but the site moved to an unexpected page: {state}")

        raise AttemptsExhausted(max_attempts)

    async def _enter_code(self, code: str) -> bool:
        result = await find_first(self.page, CODE_VERIFICATION["code_input"])
        if isinstance(result, NotFound):
            logger.warning(f"{self._p}No code input found (tried {len(result.tried)} selectors)")
            return False
        await result.handle.fill(code)
        logger.info(f"{self._p}Filled code into {result.strategy}")
        strategy = await self._submit(result.handle, CODE_VERIFICATION["submit_button"], "code submit button")
        logger.info(f"{self._p}📤 Code submitted via {strategy}")
        return True

    def _rejection_reason(self, state: PageState) -> str:
        message = extract_error_message(self.last_snapshot) if self.last_snapshot else None
        return message or state.text or "the site did not accept the code"
