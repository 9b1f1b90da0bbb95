import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from models import PageKind
from page_classifier import PageClassifier, PageSnapshot, capture_page_snapshot, extract_error_message

from fakes import (
    CODE_INPUT,
    DIALOG_CONFIRM,
    ERROR_ELEMENT,
    GENERIC_TEXT_INPUT,
    PROFILE_LINK,
    FakeContext,
    FakePage,
    FakeSite,
)

LOGIN = "https://site.test/login.php"
HOME = "https://site.test/index.php"

classifier = PageClassifier(login_url_markers=("login",), home_title_markers=("首页",))


def snap(url, text="", title="", visible=(), present=(), element_text=None, html=""):
    return PageSnapshot(
        url=url,
        title=title,
        text=text,
        html=html,
        present=frozenset(present) | frozenset(visible),
        visible=frozenset(visible),
        element_text=element_text or {},
    )


def test_authenticated_home_wins_over_code_indicators():
    snapshot = snap(
        HOME,
        text="请输入6位数字验证码",
        visible=[PROFILE_LINK, CODE_INPUT],
        present=[GENERIC_TEXT_INPUT],
    )
    assert classifier.classify(snapshot).kind is PageKind.AUTHENTICATED_HOME


def test_home_title_marker_counts_as_identity():
    snapshot = snap(HOME, title="首页 :: Site")
    assert classifier.classify(snapshot).kind is PageKind.AUTHENTICATED_HOME


def test_identity_indicator_on_login_url_is_not_authenticated():
    snapshot = snap(LOGIN, visible=[PROFILE_LINK])
    assert classifier.classify(snapshot).kind is PageKind.LOGIN_FORM


def test_announcement_blocks_before_verification_checks():
    snapshot = snap(LOGIN, text="检测到新设备", visible=[DIALOG_CONFIRM])
    state = classifier.classify(snapshot)
    assert state.kind is PageKind.ANNOUNCEMENT_BLOCKING
    assert state.reason == DIALOG_CONFIRM


def test_hidden_announcement_button_is_ignored():
    snapshot = snap(LOGIN, present=[DIALOG_CONFIRM])
    assert classifier.classify(snapshot).kind is PageKind.LOGIN_FORM


def test_device_approval_requires_login_family_url():
    assert classifier.classify(snap(LOGIN, text="New device detected")).kind is PageKind.DEVICE_APPROVAL_REQUIRED
    assert classifier.classify(snap(HOME, text="New device detected")).kind is PageKind.UNKNOWN


def test_visible_code_input_means_code_verification():
    snapshot = snap("https://site.test/verify", visible=[CODE_INPUT])
    assert classifier.classify(snapshot).kind is PageKind.CODE_VERIFICATION_REQUIRED


def test_code_phrase_needs_a_text_input():
    with_input = snap(LOGIN, text="请输入验证码", present=[GENERIC_TEXT_INPUT])
    without_input = snap(LOGIN, text="请输入验证码")
    assert classifier.classify(with_input).kind is PageKind.CODE_VERIFICATION_REQUIRED
    assert classifier.classify(without_input).kind is PageKind.LOGIN_FORM


def test_recruitment_announcement_is_not_code_verification():
    snapshot = snap(
        LOGIN,
        text="站点公告：招募人员，通过验证码考核即可加入",
        present=[GENERIC_TEXT_INPUT],
    )
    assert classifier.classify(snapshot).kind is not PageKind.CODE_VERIFICATION_REQUIRED


def test_exclusion_phrase_in_markup_only_still_excludes():
    snapshot = snap(
        LOGIN,
        text="请输入验证码",
        html="<div class='notice' hidden>招聘公告</div>",
        present=[GENERIC_TEXT_INPUT],
    )
    assert classifier.classify(snapshot).kind is PageKind.LOGIN_FORM


def test_error_banner_carries_element_text():
    snapshot = snap(LOGIN, present=[ERROR_ELEMENT], element_text={ERROR_ELEMENT: "用户名或密码错误"})
    state = classifier.classify(snapshot)
    assert state.kind is PageKind.ERROR_BANNER
    assert state.text == "用户名或密码错误"


def test_empty_error_placeholder_is_ignored():
    snapshot = snap(LOGIN, present=[ERROR_ELEMENT], element_text={ERROR_ELEMENT: ""})
    assert classifier.classify(snapshot).kind is PageKind.LOGIN_FORM


def test_unknown_off_login_without_identity():
    assert classifier.classify(snap("https://site.test/maintenance", text="维护中")).kind is PageKind.UNKNOWN


def test_extract_error_message_prefers_known_phrasing():
    snapshot = snap(
        LOGIN,
        text="两步验证未通过，您还有2次机会",
        present=[ERROR_ELEMENT],
        element_text={ERROR_ELEMENT: "错误"},
    )
    assert extract_error_message(snapshot) == "两步验证未通过，您还有2次机会"


def test_extract_error_message_falls_back_to_element_keywords():
    snapshot = snap(LOGIN, present=[ERROR_ELEMENT], element_text={ERROR_ELEMENT: "Invalid code"})
    assert extract_error_message(snapshot) == "Invalid code"
    assert extract_error_message(snap(LOGIN, text="hello")) is None


def test_capture_page_snapshot_reads_fake_page():
    site = FakeSite(announcement_on_login=True)
    page = FakePage(site, FakeContext(site))
    page.show(site.login_screen(error="用户名或密码错误"))

    snapshot = asyncio.run(capture_page_snapshot(page))

    assert snapshot.url == LOGIN
    assert snapshot.is_visible(DIALOG_CONFIRM)
    assert snapshot.has(GENERIC_TEXT_INPUT)
    assert snapshot.text_of(ERROR_ELEMENT) == "用户名或密码错误"
    assert classifier.classify(snapshot).kind is PageKind.ANNOUNCEMENT_BLOCKING
