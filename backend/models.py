"""
Data model shared by the session store, classifier, login bot and OOB channel.

SessionSnapshot serializes to Playwright's ``storage_state`` layout
(``cookies`` + ``origins``) with two extra keys: ``capturedAt`` and a
per-origin ``sessionStorage`` list. Parsing is all-or-nothing: any malformed
piece raises ValueError and the caller treats the snapshot as absent.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

SAME_SITE_VALUES = ("Strict", "Lax", "None")


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str = field(repr=False)
    domain: str
    path: str = "/"
    expiry: Optional[float] = None
    http_only: bool = False
    secure: bool = False
    same_site: str = "Lax"

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.name, self.domain, self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expiry if self.expiry is not None else -1,
            "httpOnly": self.http_only,
            "secure": self.secure,
            "sameSite": self.same_site,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Cookie":
        if not isinstance(data, dict):
            raise ValueError("cookie entry is not an object")
        name, value, domain = data.get("name"), data.get("value"), data.get("domain")
        path = data.get("path", "/")
        for label, item in (("name", name), ("value", value), ("domain", domain), ("path", path)):
            if not isinstance(item, str):
                raise ValueError(f"cookie {label} must be a string")
        if not name or not domain:
            raise ValueError("cookie name and domain must be non-empty")

        expires = data.get("expires", data.get("expiry"))
        if expires is not None and not isinstance(expires, (int, float)):
            raise ValueError(f"cookie {name} has a non-numeric expiry")
        expiry = float(expires) if expires is not None and expires >= 0 else None

        same_site = data.get("sameSite", "Lax")
        if isinstance(same_site, str) and same_site.capitalize() in SAME_SITE_VALUES:
            same_site = same_site.capitalize()
        else:
            raise ValueError(f"cookie {name} has invalid sameSite {same_site!r}")

        return cls(
            name=name,
            value=value,
            domain=domain,
            path=path or "/",
            expiry=expiry,
            http_only=bool(data.get("httpOnly", False)),
            secure=bool(data.get("secure", False)),
            same_site=same_site,
        )


def dedupe_cookies(cookies: Sequence[Cookie]) -> Tuple[Cookie, ...]:
    """Keep one cookie per (name, domain, path); the last one wins, first position is kept."""
    ordered: Dict[Tuple[str, str, str], Cookie] = {}
    for cookie in cookies:
        ordered[cookie.key] = cookie
    return tuple(ordered.values())


def _parse_storage_items(items: Any, origin: str, label: str) -> Dict[str, str]:
    if not isinstance(items, list):
        raise ValueError(f"{label} for {origin} must be a list")
    parsed: Dict[str, str] = {}
    for item in items:
        if not isinstance(item, dict):
            raise ValueError(f"{label} entry for {origin} is not an object")
        name, value = item.get("name"), item.get("value")
        if not isinstance(name, str) or not isinstance(value, str):
            raise ValueError(f"{label} entry for {origin} needs string name/value")
        parsed[name] = value
    return parsed


def _storage_items(values: Mapping[str, str]) -> List[Dict[str, str]]:
    return [{"name": k, "value": v} for k, v in values.items()]


@dataclass(frozen=True)
class SessionSnapshot:
    cookies: Tuple[Cookie, ...] = ()
    storage_by_origin: Dict[str, Dict[str, str]] = field(default_factory=dict)
    captured_at: Optional[datetime] = None
    session_storage_by_origin: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "cookies", dedupe_cookies(self.cookies))

    @classmethod
    def create(cls, cookies, storage_by_origin=None, session_storage_by_origin=None) -> "SessionSnapshot":
        return cls(
            cookies=tuple(cookies),
            storage_by_origin=dict(storage_by_origin or {}),
            captured_at=datetime.now(timezone.utc),
            session_storage_by_origin=dict(session_storage_by_origin or {}),
        )

    def is_empty(self) -> bool:
        has_storage = any(self.storage_by_origin.values()) or any(self.session_storage_by_origin.values())
        return not self.cookies and not has_storage

    def cookie_names(self) -> List[str]:
        return [c.name for c in self.cookies]

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #

    def to_storage_state(self) -> Dict[str, Any]:
        """Playwright ``storage_state`` dict (localStorage only)."""
        return {
            "cookies": [c.to_dict() for c in self.cookies],
            "origins": [
                {"origin": origin, "localStorage": _storage_items(values)}
                for origin, values in self.storage_by_origin.items()
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        origins = set(self.storage_by_origin) | set(self.session_storage_by_origin)
        data: Dict[str, Any] = {
            "capturedAt": self.captured_at.isoformat() if self.captured_at else None,
            "cookies": [c.to_dict() for c in self.cookies],
            "origins": [],
        }
        for origin in sorted(origins):
            entry = {
                "origin": origin,
                "localStorage": _storage_items(self.storage_by_origin.get(origin, {})),
            }
            session_values = self.session_storage_by_origin.get(origin)
            if session_values:
                entry["sessionStorage"] = _storage_items(session_values)
            data["origins"].append(entry)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> "SessionSnapshot":
        if not isinstance(data, dict):
            raise ValueError("snapshot must be a JSON object")

        raw_cookies = data.get("cookies", [])
        if not isinstance(raw_cookies, list):
            raise ValueError("cookies must be a list")
        cookies = [Cookie.from_dict(c) for c in raw_cookies]

        raw_origins = data.get("origins", [])
        if not isinstance(raw_origins, list):
            raise ValueError("origins must be a list")
        local: Dict[str, Dict[str, str]] = {}
        session: Dict[str, Dict[str, str]] = {}
        for entry in raw_origins:
            if not isinstance(entry, dict) or not isinstance(entry.get("origin"), str):
                raise ValueError("origin entry needs an 'origin' string")
            origin = entry["origin"]
            values = _parse_storage_items(entry.get("localStorage", []), origin, "localStorage")
            if values:
                local[origin] = values
            if "sessionStorage" in entry:
                session_values = _parse_storage_items(entry["sessionStorage"], origin, "sessionStorage")
                if session_values:
                    session[origin] = session_values

        captured_at = None
        raw_captured = data.get("capturedAt")
        if raw_captured is not None:
            if not isinstance(raw_captured, str):
                raise ValueError("capturedAt must be an ISO timestamp string")
            captured_at = datetime.fromisoformat(raw_captured)

        return cls(
            cookies=tuple(cookies),
            storage_by_origin=local,
            captured_at=captured_at,
            session_storage_by_origin=session,
        )

    @classmethod
    def from_json(cls, text: str) -> "SessionSnapshot":
        return cls.from_dict(json.loads(text))

    @classmethod
    def from_storage_state(
        cls,
        state: Mapping[str, Any],
        session_storage_by_origin: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> "SessionSnapshot":
        """Build a fresh snapshot from ``BrowserContext.storage_state()`` output."""
        parsed = cls.from_dict(dict(state))
        return cls.create(
            parsed.cookies,
            parsed.storage_by_origin,
            {k: dict(v) for k, v in (session_storage_by_origin or {}).items() if v},
        )

    def trimmed(self, max_item_chars: int) -> Tuple["SessionSnapshot", List[str]]:
        """Drop storage values longer than ``max_item_chars``; cookies are always kept."""
        dropped: List[str] = []

        def _trim(by_origin: Mapping[str, Mapping[str, str]], label: str) -> Dict[str, Dict[str, str]]:
            result: Dict[str, Dict[str, str]] = {}
            for origin, values in by_origin.items():
                kept = {}
                for key, value in values.items():
                    if len(value) > max_item_chars:
                        dropped.append(f"{label}:{origin}:{key}")
                        continue
                    kept[key] = value
                result[origin] = kept
            return result

        trimmed = SessionSnapshot(
            cookies=self.cookies,
            storage_by_origin=_trim(self.storage_by_origin, "localStorage"),
            captured_at=self.captured_at,
            session_storage_by_origin=_trim(self.session_storage_by_origin, "sessionStorage"),
        )
        return trimmed, dropped


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


class PageKind(str, Enum):
    LOGIN_FORM = "LoginForm"
    DEVICE_APPROVAL_REQUIRED = "DeviceApprovalRequired"
    CODE_VERIFICATION_REQUIRED = "CodeVerificationRequired"
    ANNOUNCEMENT_BLOCKING = "AnnouncementBlocking"
    AUTHENTICATED_HOME = "AuthenticatedHome"
    ERROR_BANNER = "ErrorBanner"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class PageState:
    kind: PageKind
    text: Optional[str] = None
    reason: str = field(default="", compare=False)

    @property
    def is_authenticated(self) -> bool:
        return self.kind is PageKind.AUTHENTICATED_HOME

    def __str__(self) -> str:
        if self.kind is PageKind.ERROR_BANNER:
            return f"ErrorBanner({self.text!r})"
        return self.kind.value


class AttemptOutcome(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    TIMED_OUT = "TimedOut"


@dataclass
class VerificationAttempt:
    attempt_number: int
    prompt_sent_at: datetime
    code: Optional[str] = field(default=None, repr=False)
    outcome: AttemptOutcome = AttemptOutcome.PENDING


@dataclass(frozen=True)
class OOBMessage:
    id: int
    sender_id: str
    text: str
