"""
SessionKeeper runner.

One run = one acquisition: optional random start delay (CI only), restore or
log in, persist the fresh session, report to the operator, release the
browser. Exit code 1 on any failure.

    python backend/main.py [--skip-delay] [--headed] [--json-logs]
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import random
import sys
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from config import Settings, load_settings
from errors import AcquisitionError, ConfigError
from models import Credentials
from oob_channel import TelegramTransport, VerificationChannel
from secret_store import GitHubSecretStore
from session_acquirer import SOURCE_RESTORED, AcquiredSession, SessionAcquirer, failure_notice
from session_store import build_session_store


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""
    def format(self, record):
        log_data = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(json_logs: bool) -> None:
    # JSON lines for CI log collectors, readable format locally
    if json_logs:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logging.root.handlers = [handler]
        logging.root.setLevel(logging.INFO)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )


logger = logging.getLogger("SessionKeeper")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep a logged-in site session alive.")
    parser.add_argument("--skip-delay", action="store_true", help="start immediately, even under CI")
    parser.add_argument("--headed", action="store_true", help="show the browser window")
    parser.add_argument("--json-logs", action="store_true", help="emit JSON log lines")
    return parser.parse_args(argv)


async def random_start_delay(settings: Settings, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> float:
    """Spread scheduled runs out; only applies under CI and never with SKIP_DELAY."""
    if settings.skip_delay or not settings.running_in_ci or settings.random_delay_max <= 0:
        return 0.0
    delay = random.uniform(0, settings.random_delay_max)
    logger.info(f"🎲 Random start delay: {delay / 60:.1f} min")
    await sleep(delay)
    return delay


def build_acquirer(settings: Settings) -> SessionAcquirer:
    transport = TelegramTransport(settings.tg_bot_token, settings.tg_user_id)
    channel = VerificationChannel(
        transport,
        authorized_sender=settings.tg_user_id,
        code_command=settings.code_command,
        poll_interval=settings.code_poll_interval,
    )
    secret_store = None
    if settings.secret_store_enabled:
        secret_store = GitHubSecretStore(settings.repo_token, settings.github_repository)
    else:
        logger.info("ℹ️ REPO_TOKEN/GITHUB_REPOSITORY not set, session is saved to the local file only")
    store = build_session_store(settings, secret_store)
    return SessionAcquirer(settings, store, channel)


async def report_config_error(error: ConfigError) -> bool:
    """Tell the operator about a broken configuration when Telegram itself is configured."""
    token = os.getenv("TG_BOT_TOKEN", "").strip()
    chat_id = os.getenv("TG_USER_ID", "").strip()
    if not token or not chat_id:
        logger.warning("⚠️ Telegram not configured, configuration error is only logged")
        return False
    channel = VerificationChannel(TelegramTransport(token, chat_id), authorized_sender=chat_id)
    return await channel.notify(failure_notice(error))


def success_report(session: AcquiredSession, elapsed: float) -> str:
    how = "cached session still valid" if session.source == SOURCE_RESTORED else "logged in"
    lines = [
        "✅ Session refreshed",
        f"Mode: {how}",
        f"Cookies: {len(session.snapshot.cookies)}",
        f"Saved: {'yes' if session.persisted else 'NO'}",
        f"Took: {elapsed:.0f}s",
    ]
    return "\n".join(lines)


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings().validate()
    except ConfigError as e:
        setup_logging(args.json_logs)
        logger.error(f"❌ {e.describe()}")
        await report_config_error(e)
        return 1

    setup_logging(args.json_logs or settings.log_json)
    overrides = {}
    if args.skip_delay:
        overrides["skip_delay"] = True
    if args.headed:
        overrides["headless"] = False
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    logger.info(f"Starting run: {settings!r}")

    await random_start_delay(settings)

    acquirer = build_acquirer(settings)
    await acquirer.channel.init_cursor()

    started = time.monotonic()
    try:
        session = await acquirer.acquire(Credentials(settings.username, settings.password))
    except AcquisitionError as e:
        logger.error(f"❌ Run failed: {e.describe()}")
        if e.screenshot_path:
            logger.error(f"   Screenshot: {e.screenshot_path}")
        return 1

    try:
        await acquirer.channel.notify(success_report(session, time.monotonic() - started))
    finally:
        await session.close()
    logger.info("✅ Run complete")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
