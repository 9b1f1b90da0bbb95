"""
Centralized Configuration for SessionKeeper
Static constants in one place, plus the Settings snapshot read once at startup.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigError

# =============================================================================
# BROWSER / VIEWPORT
# =============================================================================

DESKTOP_VIEWPORT = {"width": 1920, "height": 1080}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
]

DEFAULT_LOCALE = "zh-CN"
DEFAULT_TIMEZONE = "Asia/Shanghai"

# =============================================================================
# TARGET SITE
# =============================================================================

DEFAULT_LOGIN_URL = "https://kp.m-team.cc/login.php"
DEFAULT_HOME_URL = "https://kp.m-team.cc/index.php"
DEFAULT_LOGIN_URL_MARKERS = ("login",)
DEFAULT_HOME_TITLE_MARKERS = ("首页", "首頁", "Home")

# =============================================================================
# PATHS
# =============================================================================

DEBUG_DIR = os.getenv("DEBUG_DIR", os.path.join(os.path.dirname(__file__), "debug"))
DEFAULT_SESSION_FILE = os.path.join(os.path.dirname(__file__), "data", "session.json")

# =============================================================================
# TIMEOUTS
# =============================================================================

NAVIGATION_TIMEOUT = 45000  # ms
SETTLE_TIMEOUT = 15000  # ms, "networkidle" wait after each interaction
CLICK_TIMEOUT = 3000  # ms

DEVICE_APPROVAL_WAIT = 45.0  # seconds
CODE_TIMEOUT = 120.0
CODE_POLL_INTERVAL = 3.0
CODE_MAX_ATTEMPTS = 10
UNKNOWN_RECHECK_DELAY = 3.0
POST_SUBMIT_DELAY = 3.0

RANDOM_DELAY_MAX = 45 * 60  # seconds

# =============================================================================
# PERSISTENCE LIMITS
# =============================================================================

# GitHub Actions secrets are capped at 48 KB
SESSION_MAX_BYTES = 48 * 1024
STORAGE_ITEM_MAX_CHARS = 2048

DEFAULT_SECRET_NAME = "SITE_SESSION"

REQUIRED_ENV = ("SITE_USERNAME", "SITE_PASSWORD", "TG_BOT_TOKEN", "TG_USER_ID")


def _getenv_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name, str(default)).strip().lower()
    return v in ("1", "true", "yes", "y", "on")


def _getenv_list(env: Mapping[str, str], name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _getenv_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _getenv_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    # credentials
    username: str = ""
    password: str = field(default="", repr=False)

    # target site
    login_url: str = DEFAULT_LOGIN_URL
    home_url: str = DEFAULT_HOME_URL
    login_url_markers: Tuple[str, ...] = DEFAULT_LOGIN_URL_MARKERS
    home_title_markers: Tuple[str, ...] = DEFAULT_HOME_TITLE_MARKERS

    # telegram
    tg_bot_token: str = field(default="", repr=False)
    tg_user_id: str = ""
    code_command: str = "code"

    # timeouts (seconds)
    device_approval_wait: float = DEVICE_APPROVAL_WAIT
    code_timeout: float = CODE_TIMEOUT
    code_poll_interval: float = CODE_POLL_INTERVAL
    code_max_attempts: int = CODE_MAX_ATTEMPTS
    unknown_recheck_delay: float = UNKNOWN_RECHECK_DELAY
    post_submit_delay: float = POST_SUBMIT_DELAY
    navigation_timeout_ms: int = NAVIGATION_TIMEOUT

    # persistence
    session_file: str = DEFAULT_SESSION_FILE
    secret_session_value: str = field(default="", repr=False)
    secret_name: str = DEFAULT_SECRET_NAME
    repo_token: str = field(default="", repr=False)
    github_repository: str = ""
    legacy_cookie: str = field(default="", repr=False)
    legacy_storage: str = field(default="", repr=False)
    session_max_bytes: int = SESSION_MAX_BYTES
    storage_item_max_chars: int = STORAGE_ITEM_MAX_CHARS

    # runner
    random_delay_max: float = RANDOM_DELAY_MAX
    skip_delay: bool = False
    running_in_ci: bool = False
    headless: bool = True
    debug_dir: str = DEBUG_DIR
    log_json: bool = False

    @property
    def secret_store_enabled(self) -> bool:
        return bool(self.repo_token and self.github_repository)

    def missing_required(self) -> list:
        values = {
            "SITE_USERNAME": self.username,
            "SITE_PASSWORD": self.password,
            "TG_BOT_TOKEN": self.tg_bot_token,
            "TG_USER_ID": self.tg_user_id,
        }
        return [name for name in REQUIRED_ENV if not values[name]]

    def validate(self) -> "Settings":
        """Raise ConfigError naming every missing required variable."""
        missing = self.missing_required()
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
        if self.code_max_attempts < 1:
            raise ConfigError("CODE_MAX_ATTEMPTS must be at least 1")
        return self


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from the environment (``.env`` is loaded first)."""
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    return Settings(
        username=env.get("SITE_USERNAME", "").strip(),
        password=env.get("SITE_PASSWORD", ""),
        login_url=env.get("SITE_LOGIN_URL", DEFAULT_LOGIN_URL).strip(),
        home_url=env.get("SITE_HOME_URL", DEFAULT_HOME_URL).strip(),
        login_url_markers=_getenv_list(env, "SITE_LOGIN_URL_MARKERS", DEFAULT_LOGIN_URL_MARKERS),
        home_title_markers=_getenv_list(env, "SITE_HOME_TITLE_MARKERS", DEFAULT_HOME_TITLE_MARKERS),
        tg_bot_token=env.get("TG_BOT_TOKEN", "").strip(),
        tg_user_id=env.get("TG_USER_ID", "").strip(),
        code_command=env.get("OOB_CODE_COMMAND", "code").strip().lstrip("/") or "code",
        device_approval_wait=_getenv_float(env, "DEVICE_APPROVAL_WAIT_SEC", DEVICE_APPROVAL_WAIT),
        code_timeout=_getenv_float(env, "CODE_TIMEOUT_SEC", CODE_TIMEOUT),
        code_poll_interval=_getenv_float(env, "CODE_POLL_INTERVAL_SEC", CODE_POLL_INTERVAL),
        code_max_attempts=_getenv_int(env, "CODE_MAX_ATTEMPTS", CODE_MAX_ATTEMPTS),
        unknown_recheck_delay=_getenv_float(env, "UNKNOWN_RECHECK_SEC", UNKNOWN_RECHECK_DELAY),
        navigation_timeout_ms=_getenv_int(env, "NAVIGATION_TIMEOUT_MS", NAVIGATION_TIMEOUT),
        session_file=env.get("SESSION_FILE", DEFAULT_SESSION_FILE).strip(),
        secret_session_value=env.get("SITE_SESSION", ""),
        secret_name=env.get("SESSION_SECRET_NAME", DEFAULT_SECRET_NAME).strip(),
        repo_token=env.get("REPO_TOKEN", "").strip(),
        github_repository=env.get("GITHUB_REPOSITORY", "").strip(),
        legacy_cookie=env.get("SITE_COOKIE", ""),
        legacy_storage=env.get("SITE_STORAGE", ""),
        session_max_bytes=_getenv_int(env, "SESSION_MAX_BYTES", SESSION_MAX_BYTES),
        storage_item_max_chars=_getenv_int(env, "STORAGE_ITEM_MAX_CHARS", STORAGE_ITEM_MAX_CHARS),
        random_delay_max=_getenv_float(env, "RANDOM_DELAY_MAX_SEC", RANDOM_DELAY_MAX),
        skip_delay=_getenv_bool(env, "SKIP_DELAY", False),
        running_in_ci=_getenv_bool(env, "GITHUB_ACTIONS", False),
        headless=_getenv_bool(env, "HEADLESS", True),
        debug_dir=env.get("DEBUG_DIR", DEBUG_DIR),
        log_json=_getenv_bool(env, "LOG_JSON", False),
    )
