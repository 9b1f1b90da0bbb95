import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import CODE_MAX_ATTEMPTS, DEFAULT_SECRET_NAME, load_settings
from errors import ConfigError
import main
from models import SessionSnapshot
from session_acquirer import SOURCE_LOGIN, SOURCE_RESTORED, AcquiredSession

from fakes import FakeTransport

REQUIRED = {
    "SITE_USERNAME": "alice",
    "SITE_PASSWORD": "hunter2",
    "TG_BOT_TOKEN": "123:abc",
    "TG_USER_ID": "42",
}


def test_validate_lists_every_missing_variable():
    settings = load_settings({"SITE_USERNAME": "alice"})

    with pytest.raises(ConfigError) as exc_info:
        settings.validate()

    message = exc_info.value.message
    for name in ("SITE_PASSWORD", "TG_BOT_TOKEN", "TG_USER_ID"):
        assert name in message
    assert "SITE_USERNAME" not in message


def test_defaults_and_overrides():
    settings = load_settings({
        **REQUIRED,
        "CODE_MAX_ATTEMPTS": "3",
        "SITE_HOME_TITLE_MARKERS": "Home, 首页 ,",
        "OOB_CODE_COMMAND": "/mtcode",
        "SKIP_DELAY": "true",
        "GITHUB_ACTIONS": "true",
    }).validate()

    assert settings.code_max_attempts == 3
    assert settings.home_title_markers == ("Home", "首页")
    assert settings.code_command == "mtcode"
    assert settings.skip_delay and settings.running_in_ci
    assert settings.secret_name == DEFAULT_SECRET_NAME
    assert not settings.secret_store_enabled
    assert load_settings(REQUIRED).code_max_attempts == CODE_MAX_ATTEMPTS


def test_bad_number_is_config_error():
    with pytest.raises(ConfigError):
        load_settings({**REQUIRED, "CODE_TIMEOUT_SEC": "two minutes"})


def test_zero_attempts_rejected():
    with pytest.raises(ConfigError):
        load_settings({**REQUIRED, "CODE_MAX_ATTEMPTS": "0"}).validate()


def test_repr_hides_secrets():
    settings = load_settings({**REQUIRED, "REPO_TOKEN": "ghp_secret", "GITHUB_REPOSITORY": "o/r"})
    text = repr(settings)
    assert "hunter2" not in text
    assert "123:abc" not in text
    assert "ghp_secret" not in text
    assert settings.secret_store_enabled


def test_random_delay_only_under_ci():
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    local = load_settings({**REQUIRED, "RANDOM_DELAY_MAX_SEC": "60"})
    ci = load_settings({**REQUIRED, "RANDOM_DELAY_MAX_SEC": "60", "GITHUB_ACTIONS": "true"})
    skipped = load_settings({**REQUIRED, "RANDOM_DELAY_MAX_SEC": "60", "GITHUB_ACTIONS": "true", "SKIP_DELAY": "1"})

    assert asyncio.run(main.random_start_delay(local, sleep=fake_sleep)) == 0.0
    assert asyncio.run(main.random_start_delay(skipped, sleep=fake_sleep)) == 0.0
    delay = asyncio.run(main.random_start_delay(ci, sleep=fake_sleep))

    assert slept == [delay]
    assert 0 <= delay <= 60


def test_main_exits_nonzero_on_missing_config(monkeypatch):
    for name in REQUIRED:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("config.load_dotenv", lambda *args, **kwargs: False)

    assert asyncio.run(main.main([])) == 1


def test_config_error_reaches_operator_when_telegram_is_set(monkeypatch):
    monkeypatch.setattr("config.load_dotenv", lambda *args, **kwargs: False)
    for name, value in REQUIRED.items():
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("SITE_PASSWORD")
    chat = FakeTransport()
    opened = []

    def fake_telegram(token, chat_id):
        opened.append((token, chat_id))
        return chat

    monkeypatch.setattr(main, "TelegramTransport", fake_telegram)

    assert asyncio.run(main.main([])) == 1
    assert opened == [("123:abc", "42")]
    assert len(chat.sent) == 1
    assert "ConfigError" in chat.sent[0] and "SITE_PASSWORD" in chat.sent[0]
    assert "hunter2" not in chat.sent[0]


def test_success_report_names_restored_sessions():
    snapshot = SessionSnapshot.create([], {}, {})

    def report(source):
        session = AcquiredSession(snapshot=snapshot, context=None, page=None, launcher=None, source=source)
        return main.success_report(session, 12.0)

    assert "cached session still valid" in report(SOURCE_RESTORED)
    assert "Mode: logged in" in report(SOURCE_LOGIN)
