"""
Site CSS Selectors and text markers
Ordered candidate lists: the first match wins, sites vary markup across deployments.
"""

import re

# Login Page Selectors
LOGIN = {
    "username_input": [
        'input[name="username"]',
        'input[name="email"]',
        'input[id="username"]',
    ],
    "password_input": [
        'input[name="password"]',
        'input[type="password"]',
        'input[id="password"]',
    ],
    "submit_button": [
        'button:has-text("登 录")',
        'button:has-text("登录")',
        'button:has-text("Sign in")',
        'button:has-text("Login")',
        'button[type="submit"]',
        'input[type="submit"]',
        '#login-btn',
    ],
    # Generic text match, tried after every explicit candidate
    "submit_text_fallback": 'button >> text=/登.*录|log ?in|sign ?in/i',
}

# Blocking announcement dialogs (recruitment notices, site news, ...)
# Scoped to dialog containers so the page's own submit button never matches.
ANNOUNCEMENT = {
    "confirm_button": [
        'div[role="dialog"] button:has-text("確認")',
        'div[role="dialog"] button:has-text("确认")',
        'div[role="dialog"] button:has-text("Confirm")',
        'div[role="dialog"] button:has-text("我知道了")',
        'div[role="dialog"] button:has-text("Close")',
        '.ant-modal-footer button',
        '.ant-modal-confirm-btns button',
        'div[role="dialog"] button',
    ],
}

# Device approval ("new device") page
DEVICE_APPROVAL = {
    "phrases": [
        "新设备",
        "new device",
        "批准",
        "approve",
        "验证此设备",
    ],
    "approval_link": [
        'a[href*="approve"]',
        'a[href*="confirm"]',
    ],
}

# One-time code (2FA) page
CODE_VERIFICATION = {
    # Any of these visible means a code is being asked for
    "code_input_indicators": [
        'input[placeholder*="6位"]',
        'input[placeholder*="验证码"]',
        'input[placeholder*="数字"]',
        'input[name*="2fa"]',
        'input[name*="totp"]',
        'input[name*="otp"]',
        'input[name*="code"]',
        'input[type="text"][maxlength="6"]',
    ],
    "phrases": [
        "输入6位",
        "6位数字",
        "验证码",
        "邮箱验证码",
        "其他验证码",
        "两步验证",
        "双重认证",
        "TOTP",
        "6-digit",
        "verification code",
    ],
    # Announcement wording that mentions "verification" without asking for a code
    "exclusion_phrases": [
        "招募人员",
        "招聘",
    ],
    "generic_text_input": 'input[type="text"], input:not([type])',
    # Where to type the code, in priority order
    "code_input": [
        'input[placeholder*="6位"]',
        'input[placeholder*="验证码"]',
        'input[placeholder*="数字"]',
        'input[type="text"][maxlength="6"]',
        'input[name*="code"]',
        'input[name*="2fa"]',
        'input[name*="totp"]',
        'input[name*="otp"]',
        'input[type="text"]:not([name="username"]):not([name="password"])',
    ],
    "submit_button": [
        'button:has-text("登 录")',
        'button:has-text("登录")',
        'button:has-text("验证")',
        'button:has-text("确认")',
        'button:has-text("提交")',
        'button[type="submit"]',
        'input[type="submit"]',
    ],
}

# Error banners
ERROR = {
    "error_element": [
        '.error',
        '.alert-danger',
        '.message-error',
        '.ant-message-error',
    ],
    "text_patterns": [
        re.compile(r"两步验证未通过[，,]?(.+)"),
        re.compile(r"验证码错误(.+)?"),
        re.compile(r"验证失败(.+)?"),
        re.compile(r"您还有(\d+)次机会"),
    ],
    "element_keywords": ["验证", "错误", "失败", "invalid", "incorrect"],
}

# State detection - who is logged in
PAGE_STATE = {
    "profile_link": [
        'a[href*="userdetails"]',
    ],
    "user_info_region": [
        '.username',
        '#userinfo',
        'div[class*="user-profile"]',
        'span[class*="avatar"]',
    ],
}


def probe_selectors() -> list:
    """Every selector the classifier needs a presence/visibility reading for."""
    selectors = []
    for group in (
        PAGE_STATE["profile_link"],
        PAGE_STATE["user_info_region"],
        ANNOUNCEMENT["confirm_button"],
        DEVICE_APPROVAL["approval_link"],
        CODE_VERIFICATION["code_input_indicators"],
        [CODE_VERIFICATION["generic_text_input"]],
        ERROR["error_element"],
    ):
        for selector in group:
            if selector not in selectors:
                selectors.append(selector)
    return selectors
