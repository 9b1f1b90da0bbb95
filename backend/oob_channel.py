"""
OOB Verification Channel

Talks to one authorized human over Telegram: sends prompts and notices, and
waits for a 6-digit code reply. A cursor into the update stream guarantees
that nothing sent before this process started is read as an answer.
"""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, List, Optional, Protocol

import aiohttp

from models import OOBMessage

logger = logging.getLogger("OOBChannel")

TELEGRAM_API_BASE = "https://api.telegram.org"
DRAIN_MAX_ROUNDS = 50

BARE_CODE_RE = re.compile(r"^(\d{6})$")


class TransportError(Exception):
    """The messaging transport could not complete a request."""


class MessageTransport(Protocol):
    async def send(self, text: str) -> None: ...

    async def send_photo(self, photo: bytes, caption: str = "") -> None: ...

    async def poll(self, since_id: Optional[int], wait: int = 0) -> List[OOBMessage]: ...


class TelegramTransport:
    """Telegram Bot API transport for one chat."""

    def __init__(self, token: str, chat_id: str, request_timeout: float = 15.0):
        self.token = token
        self.chat_id = str(chat_id)
        self.request_timeout = request_timeout

    def _url(self, method: str) -> str:
        return f"{TELEGRAM_API_BASE}/bot{self.token}/{method}"

    async def _call(self, method: str, *, params=None, data=None, extra_timeout: float = 0):
        timeout = aiohttp.ClientTimeout(total=self.request_timeout + extra_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._url(method), params=params, data=data) as response:
                    status = response.status
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Telegram {method} failed: {e}") from e
        except ValueError as e:
            # Proxies and outages answer with HTML pages
            raise TransportError(f"Telegram {method} returned a non-JSON body (HTTP {status})") from e

        if not isinstance(payload, dict) or not payload.get("ok"):
            description = payload.get("description") if isinstance(payload, dict) else payload
            hint = ""
            if isinstance(payload, dict) and payload.get("error_code") == 401:
                hint = " (invalid bot token)"
            raise TransportError(f"Telegram {method} rejected: {description}{hint}")
        return payload.get("result")

    async def send(self, text: str) -> None:
        await self._call("sendMessage", data={"chat_id": self.chat_id, "text": text})

    async def send_photo(self, photo: bytes, caption: str = "") -> None:
        form = aiohttp.FormData()
        form.add_field("chat_id", self.chat_id)
        if caption:
            form.add_field("caption", caption)
        form.add_field("photo", photo, filename="screenshot.png", content_type="image/png")
        await self._call("sendPhoto", data=form, extra_timeout=15)

    async def poll(self, since_id: Optional[int], wait: int = 0) -> List[OOBMessage]:
        params = {"timeout": str(int(wait))}
        if since_id is not None:
            params["offset"] = str(since_id + 1)
        updates = await self._call("getUpdates", params=params, extra_timeout=wait) or []

        messages = []
        for update in updates:
            message = update.get("message") or {}
            sender = message.get("from") or {}
            messages.append(
                OOBMessage(
                    id=int(update["update_id"]),
                    sender_id=str(sender.get("id", "")),
                    text=(message.get("text") or "").strip(),
                )
            )
        return messages


class MessageCursor:
    """Last consumed message id; only ever moves forward."""

    def __init__(self, last_id: Optional[int] = None):
        self.last_id = last_id

    def is_new(self, message_id: int) -> bool:
        return self.last_id is None or message_id > self.last_id

    def advance(self, message_id: int) -> bool:
        """Consume ``message_id``; False if it was already behind the cursor."""
        if not self.is_new(message_id):
            return False
        self.last_id = message_id
        return True


class VerificationChannel:
    """Prompt the authorized responder and wait for a code."""

    def __init__(
        self,
        transport: MessageTransport,
        authorized_sender: str,
        code_command: str = "code",
        poll_interval: float = 3.0,
        long_poll: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cursor: Optional[MessageCursor] = None,
    ):
        self.transport = transport
        self.authorized_sender = str(authorized_sender)
        self.poll_interval = poll_interval
        self.long_poll = long_poll
        self.clock = clock
        self.sleep = sleep
        self.cursor = cursor or MessageCursor()
        self._initialized = False
        self._command_re = re.compile(
            rf"^/{re.escape(code_command)}(?:@\w+)?\s+(\d{{6}})$", re.IGNORECASE
        )

    def parse_code(self, text: str) -> Optional[str]:
        text = (text or "").strip()
        match = self._command_re.match(text) or BARE_CODE_RE.match(text)
        return match.group(1) if match else None

    async def init_cursor(self) -> None:
        """Drain the backlog once so stale replies are never read as answers."""
        if self._initialized:
            return
        drained = 0
        try:
            for _ in range(DRAIN_MAX_ROUNDS):
                messages = await self.transport.poll(self.cursor.last_id, wait=0)
                fresh = [m for m in messages if self.cursor.is_new(m.id)]
                if not fresh:
                    break
                for message in sorted(fresh, key=lambda m: m.id):
                    self.cursor.advance(message.id)
                    drained += 1
        except TransportError as e:
            logger.warning(f"⚠️ Could not drain message backlog: {e}")
        self._initialized = True
        logger.info(f"✅ OOB cursor initialized at {self.cursor.last_id} ({drained} stale messages skipped)")

    async def notify(self, text: str) -> bool:
        try:
            await self.transport.send(text)
            return True
        except TransportError as e:
            logger.error(f"❌ Failed to send OOB message: {e}")
            return False

    async def send_photo(self, photo: bytes, caption: str = "") -> bool:
        try:
            await self.transport.send_photo(photo, caption)
            return True
        except TransportError as e:
            logger.error(f"❌ Failed to send OOB photo: {e}")
            return False

    async def request_code(self, prompt: str, timeout: float) -> Optional[str]:
        """Send ``prompt`` and return the first valid code, or None on timeout."""
        if not self._initialized:
            await self.init_cursor()

        await self.notify(prompt)
        logger.info(f"⏳ Waiting up to {timeout:.0f}s for a verification code...")
        deadline = self.clock() + timeout

        while True:
            remaining = deadline - self.clock()
            try:
                wait = int(max(0, min(self.long_poll, remaining)))
                messages = await self.transport.poll(self.cursor.last_id, wait=wait)
            except TransportError as e:
                logger.warning(f"⚠️ Polling for code failed: {e}")
                messages = []

            code = self._consume(messages)
            if code:
                logger.info("✅ Verification code received")
                await self.notify("✅ Code received, verifying...")
                return code

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self.sleep(min(self.poll_interval, remaining))

        logger.warning("❌ Timed out waiting for a verification code")
        await self.notify("❌ No code received in time, giving up on this run")
        return None

    def _consume(self, messages: List[OOBMessage]) -> Optional[str]:
        for message in sorted(messages, key=lambda m: m.id):
            if not self.cursor.advance(message.id):
                continue
            if message.sender_id != self.authorized_sender:
                logger.debug(f"Ignoring message {message.id} from unauthorized sender")
                continue
            code = self.parse_code(message.text)
            if code:
                return code
            logger.debug(f"Ignoring message {message.id}: not a code")
        return None
