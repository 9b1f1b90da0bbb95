"""
In-memory stand-ins for the browser, the site and the Telegram transport.

The fake site keys elements by the exact selector strings from
page_selectors, so the real classifier and login code run unchanged.
"""

import sys
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from browser_factory import SESSION_STORAGE_EXPORT_JS
from config import Settings
from models import OOBMessage
from page_classifier import BODY_TEXT_JS
from oob_channel import TransportError

ORIGIN = "https://site.test"
LOGIN_URL = f"{ORIGIN}/login.php"
HOME_URL = f"{ORIGIN}/index.php"
DEVICE_URL = f"{ORIGIN}/login.php?step=device"
CODE_URL = f"{ORIGIN}/login.php?step=2fa"

USERNAME_INPUT = 'input[name="username"]'
PASSWORD_INPUT = 'input[name="password"]'
SUBMIT_BUTTON = 'button[type="submit"]'
CODE_INPUT = 'input[placeholder*="6位"]'
PROFILE_LINK = 'a[href*="userdetails"]'
APPROVE_LINK = 'a[href*="approve"]'
ERROR_ELEMENT = '.error'
DIALOG_CONFIRM = 'div[role="dialog"] button:has-text("确认")'
GENERIC_TEXT_INPUT = 'input[type="text"], input:not([type])'


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        username="alice",
        password="hunter2",
        login_url=LOGIN_URL,
        home_url=HOME_URL,
        tg_bot_token="bot-token",
        tg_user_id="42",
        code_max_attempts=3,
        code_timeout=30.0,
        code_poll_interval=3.0,
        device_approval_wait=45.0,
        unknown_recheck_delay=3.0,
        post_submit_delay=0.0,
        session_file=str(tmp_path / "session.json"),
        debug_dir=str(tmp_path / "debug"),
    )
    values.update(overrides)
    return Settings(**values)


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================================
# BROWSER
# ============================================================================

class FakeElement:
    def __init__(
        self,
        visible: bool = True,
        text: str = "",
        href: Optional[str] = None,
        on_click: Optional[Callable] = None,
        on_enter: Optional[Callable] = None,
        clickable: bool = True,
    ):
        self.visible = visible
        self.text = text
        self.href = href
        self.on_click = on_click
        self.on_enter = on_enter
        self.clickable = clickable
        self.value = ""
        self.clicks = 0


class Screen:
    def __init__(self, url: str, title: str = "", text: str = "", elements: Optional[Dict[str, FakeElement]] = None, html: str = ""):
        self.url = url
        self.title = title
        self.text = text
        self.elements = elements or {}
        self.html = html or f"<html><body>{text}</body></html>"


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    def _element(self) -> FakeElement:
        element = self.page.screen.elements.get(self.selector)
        if element is None:
            raise PlaywrightError(f"no element for {self.selector}")
        return element

    async def count(self) -> int:
        return 1 if self.selector in self.page.screen.elements else 0

    async def is_visible(self) -> bool:
        element = self.page.screen.elements.get(self.selector)
        return bool(element and element.visible)

    async def inner_text(self) -> str:
        return self._element().text

    async def get_attribute(self, name: str) -> Optional[str]:
        return self._element().href if name == "href" else None

    async def fill(self, value: str) -> None:
        self._element().value = value
        self.page.events.append(("fill", self.selector))

    async def click(self, timeout: Optional[float] = None) -> None:
        element = self._element()
        if not element.clickable:
            raise PlaywrightError(f"element {self.selector} is not clickable")
        element.clicks += 1
        self.page.events.append(("click", self.selector))
        if element.on_click:
            element.on_click(self.page)

    async def press(self, key: str) -> None:
        element = self._element()
        if key != "Enter" or element.on_enter is None:
            raise PlaywrightError(f"{key} did nothing on {self.selector}")
        self.page.events.append(("press", self.selector, key))
        element.on_enter(self.page)


class FakePage:
    def __init__(self, site: "FakeSite", context: "FakeContext"):
        self.site = site
        self.context = context
        self.screen = Screen(url="about:blank")
        self.session_storage: Dict[str, str] = {}
        self.events: List[tuple] = []
        self.screenshots = 0

    @property
    def url(self) -> str:
        return self.screen.url

    def show(self, screen: Screen) -> None:
        self.screen = screen

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.events.append(("goto", url))
        self.site.navigate(self, url)

    async def reload(self, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.events.append(("reload",))
        self.site.reload(self)

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[float] = None) -> None:
        return None

    async def title(self) -> str:
        return self.screen.title

    async def content(self) -> str:
        return self.screen.html

    async def evaluate(self, script: str, arg=None):
        if script == BODY_TEXT_JS:
            return self.screen.text
        if script == SESSION_STORAGE_EXPORT_JS:
            return dict(self.session_storage)
        return []

    async def screenshot(self, **kwargs) -> bytes:
        self.screenshots += 1
        return b"\x89PNG-fake"

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)


class FakeContext:
    def __init__(self, site: "FakeSite", storage_state: Optional[dict] = None):
        self.site = site
        storage_state = storage_state or {}
        self.cookies: List[dict] = [dict(c) for c in storage_state.get("cookies", [])]
        self.local_storage: Dict[str, Dict[str, str]] = {
            o["origin"]: {i["name"]: i["value"] for i in o.get("localStorage", [])}
            for o in storage_state.get("origins", [])
        }
        self.init_scripts: List[str] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        return FakePage(self.site, self)

    async def storage_state(self) -> dict:
        return {
            "cookies": [dict(c) for c in self.cookies],
            "origins": [
                {"origin": origin, "localStorage": [{"name": k, "value": v} for k, v in values.items()]}
                for origin, values in self.local_storage.items()
            ],
        }

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def close(self) -> None:
        self.closed = True


class FakeLauncher:
    def __init__(self, site: "FakeSite"):
        self.site = site
        self.contexts: List[FakeContext] = []
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def new_page(self, snapshot=None):
        context = FakeContext(self.site, snapshot.to_storage_state() if snapshot is not None else None)
        self.contexts.append(context)
        page = await context.new_page()
        return context, page

    async def close(self) -> None:
        self.close_calls += 1


# ============================================================================
# SITE
# ============================================================================

class FakeSite:
    """
    Scripted login site.

    ``require_device_approval`` / ``require_code`` add the extra steps;
    ``device_approved`` decides what a reload of the approval page shows.
    """

    def __init__(
        self,
        username: str = "alice",
        password: str = "hunter2",
        require_device_approval: bool = False,
        device_approved: bool = False,
        require_code: bool = False,
        accepted_code: str = "123456",
        announcement_on_login: bool = False,
        submit_button: bool = True,
        enter_submits: bool = True,
    ):
        self.username = username
        self.password = password
        self.require_device_approval = require_device_approval
        self.device_approved = device_approved
        self.require_code = require_code
        self.accepted_code = accepted_code
        self.announcement_on_login = announcement_on_login
        self.submit_button = submit_button
        self.enter_submits = enter_submits
        self.valid_tokens = set()
        self.credential_submissions = 0
        self.code_submissions: List[str] = []
        self._issued = 0

    # --- session cookies -------------------------------------------------

    def issue_token(self) -> str:
        self._issued += 1
        token = f"tok-{self._issued}"
        self.valid_tokens.add(token)
        return token

    def has_session(self, context: FakeContext) -> bool:
        return any(c["name"] == "session" and c["value"] in self.valid_tokens for c in context.cookies)

    # --- screens -----------------------------------------------------------

    def login_screen(self, error: str = "") -> Screen:
        elements = {
            USERNAME_INPUT: FakeElement(),
            PASSWORD_INPUT: FakeElement(on_enter=self.submit_credentials if self.enter_submits else None),
        }
        if self.submit_button:
            elements[SUBMIT_BUTTON] = FakeElement(text="登录", on_click=self.submit_credentials)
        elements[GENERIC_TEXT_INPUT] = elements[USERNAME_INPUT]
        text = "用户名 密码 登录"
        if self.announcement_on_login:
            elements[DIALOG_CONFIRM] = FakeElement(text="确认", on_click=self._close_announcement)
            text += "\n站点公告：招募人员，请输入验证码参加考核"
        if error:
            elements[ERROR_ELEMENT] = FakeElement(text=error)
            text += f"\n{error}"
        return Screen(url=LOGIN_URL, title="登录", text=text, elements=elements)

    def device_screen(self) -> Screen:
        return Screen(
            url=DEVICE_URL,
            title="登录",
            text="检测到新设备登录，请在邮箱中批准此次登录。",
            elements={APPROVE_LINK: FakeElement(visible=False, href="/approve.php?token=abc")},
        )

    def code_screen(self, error: str = "") -> Screen:
        text = "两步验证\n请输入6位数字验证码"
        if error:
            text += f"\n{error}"
        return Screen(
            url=CODE_URL,
            title="登录",
            text=text,
            elements={
                CODE_INPUT: FakeElement(),
                SUBMIT_BUTTON: FakeElement(text="验证", on_click=self.submit_code),
            },
        )

    def home_screen(self) -> Screen:
        elements = {PROFILE_LINK: FakeElement(text="alice")}
        text = "欢迎回来 alice"
        return Screen(url=HOME_URL, title="首页 :: Site", text=text, elements=elements)

    def _close_announcement(self, page: FakePage) -> None:
        page.screen.elements.pop(DIALOG_CONFIRM, None)

    # --- navigation --------------------------------------------------------

    def navigate(self, page: FakePage, url: str) -> None:
        if self.has_session(page.context):
            page.show(self.home_screen())
        else:
            page.show(self.login_screen())

    def reload(self, page: FakePage) -> None:
        if page.url == DEVICE_URL:
            if not self.device_approved:
                page.show(self.device_screen())
            elif self.require_code:
                page.show(self.code_screen())
            else:
                self.login_success(page)
            return
        self.navigate(page, page.url)

    # --- form handlers -----------------------------------------------------

    def submit_credentials(self, page: FakePage) -> None:
        self.credential_submissions += 1
        elements = page.screen.elements
        if elements[USERNAME_INPUT].value != self.username or elements[PASSWORD_INPUT].value != self.password:
            page.show(self.login_screen(error="用户名或密码错误"))
        elif self.require_device_approval:
            page.show(self.device_screen())
        elif self.require_code:
            page.show(self.code_screen())
        else:
            self.login_success(page)

    def submit_code(self, page: FakePage) -> None:
        code = page.screen.elements[CODE_INPUT].value
        self.code_submissions.append(code)
        if code == self.accepted_code:
            self.login_success(page)
        else:
            page.show(self.code_screen(error="验证码错误，您还有2次机会"))

    def login_success(self, page: FakePage) -> None:
        page.context.cookies = [c for c in page.context.cookies if c["name"] != "session"]
        page.context.cookies.append({
            "name": "session",
            "value": self.issue_token(),
            "domain": "site.test",
            "path": "/",
            "expires": -1,
            "httpOnly": True,
            "secure": True,
            "sameSite": "Lax",
        })
        page.context.local_storage.setdefault(ORIGIN, {})["theme"] = "dark"
        page.session_storage["auth"] = "bearer-xyz"
        page.show(self.home_screen())


# ============================================================================
# TELEGRAM
# ============================================================================

class FakeTransport:
    """
    Scripted chat. Each prompt asking for a code pops the next entry of
    ``code_replies`` into the inbox (None = no answer).
    """

    def __init__(self, backlog=(), code_replies=(), sender_id: str = "42"):
        self.inbox: List[OOBMessage] = list(backlog)
        self.code_replies = deque(code_replies)
        self.sender_id = sender_id
        self.sent: List[str] = []
        self.photos: List[tuple] = []
        self.polls: List[Optional[int]] = []
        self.returned_ids: List[int] = []
        self.fail_polls = 0
        self.fail_sends = False

    def next_id(self) -> int:
        return max((m.id for m in self.inbox), default=100) + 1

    def deliver(self, text: str, sender_id: Optional[str] = None) -> OOBMessage:
        message = OOBMessage(id=self.next_id(), sender_id=sender_id or self.sender_id, text=text)
        self.inbox.append(message)
        return message

    def prompts(self) -> List[str]:
        return [t for t in self.sent if "Verification code required" in t]

    async def send(self, text: str) -> None:
        if self.fail_sends:
            raise TransportError("send failed")
        self.sent.append(text)
        if "Verification code required" in text and self.code_replies:
            reply = self.code_replies.popleft()
            if reply is not None:
                self.deliver(reply)

    async def send_photo(self, photo: bytes, caption: str = "") -> None:
        if self.fail_sends:
            raise TransportError("send failed")
        self.photos.append((photo, caption))

    async def poll(self, since_id: Optional[int], wait: int = 0) -> List[OOBMessage]:
        self.polls.append(since_id)
        if self.fail_polls:
            self.fail_polls -= 1
            raise TransportError("poll failed")
        messages = [m for m in self.inbox if since_id is None or m.id > since_id]
        self.returned_ids.extend(m.id for m in messages)
        return messages
