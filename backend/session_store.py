"""
Session State Store

Loads and saves the serialized browser session (cookies + local/session
storage) from several backends in priority order:

1. local durable file (``SESSION_FILE``)
2. remote secret store; the secret's value arrives through ``SITE_SESSION``
   and new values are written back with ``GitHubSecretStore.put_secret``
3. legacy inline seed (``SITE_COOKIE`` + ``SITE_STORAGE``), read-only

Malformed content in any backend is a cache miss, never an error: the
caller can always fall back to a full login.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from errors import PersistFailure
from models import Cookie, SessionSnapshot
from safe_io import atomic_write_text, safe_read
from secret_store import GitHubSecretStore, SecretStoreError
from url_utils import origin_of

logger = logging.getLogger("SessionStore")

SESSION_STORAGE_DUMP_KEY = "_session_storage_dump"


class SessionBackend:
    """One place a snapshot can be read from and (optionally) written to."""

    name = "backend"
    writable = False
    max_payload_bytes: Optional[int] = None

    async def read(self) -> Optional[SessionSnapshot]:
        """Return the stored snapshot, None if nothing is stored.

        Raises ValueError on malformed content.
        """
        raise NotImplementedError

    async def write(self, payload: str) -> None:
        raise PersistFailure(f"{self.name} backend is read-only")


class FileBackend(SessionBackend):
    name = "file"
    writable = True

    def __init__(self, path: str):
        self.path = path

    async def read(self) -> Optional[SessionSnapshot]:
        # Falls back to the .bak copy when the main file is truncated or corrupt
        return safe_read(self.path, SessionSnapshot.from_json)

    async def write(self, payload: str) -> None:
        if not atomic_write_text(self.path, payload):
            raise PersistFailure(f"Could not write session file {self.path}")
        logger.info(f"💾 Session saved to {self.path}")


class SecretStoreBackend(SessionBackend):
    name = "secret"

    def __init__(
        self,
        value: str,
        secret_name: str,
        store: Optional[GitHubSecretStore] = None,
        max_payload_bytes: Optional[int] = None,
    ):
        self.value = value
        self.secret_name = secret_name
        self.store = store
        self.max_payload_bytes = max_payload_bytes

    @property
    def writable(self) -> bool:
        return self.store is not None

    async def read(self) -> Optional[SessionSnapshot]:
        if not self.value.strip():
            return None
        return SessionSnapshot.from_json(self.value)

    async def write(self, payload: str) -> None:
        if self.store is None:
            await super().write(payload)
            return
        try:
            await self.store.put_secret(self.secret_name, payload)
        except SecretStoreError as e:
            raise PersistFailure(f"Could not update secret {self.secret_name}: {e}") from e


class LegacyEnvBackend(SessionBackend):
    """
    Manual seed in the older two-variable format:

    - ``SITE_COOKIE``: JSON array of cookies (``context.cookies()`` shape)
    - ``SITE_STORAGE``: JSON object of localStorage values; the reserved key
      ``_session_storage_dump`` holds the sessionStorage object
    """

    name = "legacy-env"

    def __init__(self, cookie_json: str, storage_json: str, home_url: str):
        self.cookie_json = cookie_json
        self.storage_json = storage_json
        self.origin = origin_of(home_url)

    async def read(self) -> Optional[SessionSnapshot]:
        if not self.cookie_json.strip() and not self.storage_json.strip():
            return None

        cookies: List[Cookie] = []
        if self.cookie_json.strip():
            raw_cookies = json.loads(self.cookie_json)
            if not isinstance(raw_cookies, list):
                raise ValueError("SITE_COOKIE must be a JSON array")
            cookies = [Cookie.from_dict(c) for c in raw_cookies]

        local: Dict[str, str] = {}
        session: Dict[str, str] = {}
        if self.storage_json.strip():
            storage = json.loads(self.storage_json)
            if not isinstance(storage, dict):
                raise ValueError("SITE_STORAGE must be a JSON object")
            session = _string_map(storage.pop(SESSION_STORAGE_DUMP_KEY, None) or {}, SESSION_STORAGE_DUMP_KEY)
            local = _string_map(storage, "SITE_STORAGE")

        return SessionSnapshot(
            cookies=tuple(cookies),
            storage_by_origin={self.origin: local} if local else {},
            session_storage_by_origin={self.origin: session} if session else {},
        )


def _string_map(data: Any, label: str) -> Dict[str, str]:
    if not isinstance(data, dict):
        raise ValueError(f"{label} must be a JSON object")
    for key, value in data.items():
        if not isinstance(value, str):
            raise ValueError(f"{label} value for {key!r} must be a string")
    return dict(data)


class SessionStore:
    """Priority-ordered restore, write-everywhere persist."""

    def __init__(self, backends: Sequence[SessionBackend], storage_item_max_chars: int = 2048):
        self.backends = list(backends)
        self.storage_item_max_chars = storage_item_max_chars

    async def restore(self) -> Optional[SessionSnapshot]:
        """First backend with a parseable, non-empty snapshot wins."""
        for backend in self.backends:
            try:
                snapshot = await backend.read()
            except ValueError as e:
                logger.warning(f"⚠️ Ignoring malformed session in {backend.name} backend: {e}")
                continue
            if snapshot is None or snapshot.is_empty():
                logger.debug(f"No session in {backend.name} backend")
                continue
            logger.info(
                f"📂 Session restored from {backend.name} backend "
                f"({len(snapshot.cookies)} cookies, captured {snapshot.captured_at or 'unknown'})"
            )
            return snapshot
        logger.info("📂 No cached session found")
        return None

    async def persist(self, snapshot: SessionSnapshot) -> bool:
        """Write ``snapshot`` to every writable backend.

        Returns True only if all of them succeeded; failures are logged, never raised.
        """
        writable = [b for b in self.backends if b.writable]
        if not writable:
            logger.warning("⚠️ No writable session backend configured")
            return False

        ok = True
        for backend in writable:
            payload = self._fit(snapshot, backend)
            try:
                await backend.write(payload)
            except PersistFailure as e:
                logger.error(f"❌ {e.describe()}")
                ok = False
        return ok

    def _fit(self, snapshot: SessionSnapshot, backend: SessionBackend) -> str:
        payload = snapshot.to_json()
        limit = backend.max_payload_bytes
        size = len(payload.encode("utf-8"))
        if limit is None or size <= limit:
            return payload

        trimmed, dropped = snapshot.trimmed(self.storage_item_max_chars)
        payload = trimmed.to_json()
        new_size = len(payload.encode("utf-8"))
        logger.warning(
            f"⚠️ Session payload {size} bytes exceeds {backend.name} cap of {limit}; "
            f"dropped {len(dropped)} storage values over {self.storage_item_max_chars} chars "
            f"-> {new_size} bytes"
        )
        for item in dropped:
            logger.debug(f"   dropped {item}")
        if new_size > limit:
            logger.warning(f"⚠️ Trimmed payload still exceeds the {backend.name} cap; writing anyway")
        return payload


def build_session_store(settings, secret_store: Optional[GitHubSecretStore] = None) -> SessionStore:
    """Assemble the standard backend chain from Settings."""
    backends: List[SessionBackend] = [
        FileBackend(settings.session_file),
        SecretStoreBackend(
            settings.secret_session_value,
            settings.secret_name,
            store=secret_store,
            max_payload_bytes=settings.session_max_bytes,
        ),
        LegacyEnvBackend(settings.legacy_cookie, settings.legacy_storage, settings.home_url),
    ]
    return SessionStore(backends, storage_item_max_chars=settings.storage_item_max_chars)
