"""
Core data types for session acquisition and product-state fetching.

Cookies, cookie sets, persisted session records, page classifications,
attempt bookkeeping and the structured results returned to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Tuple,
)


# ============================================================================
# Base aliases
# ============================================================================

URL = str
CookieKey = Tuple[str, str]
BrowserCookie = Dict[str, Any]
PreloadedState = Dict[str, Any]

DEFAULT_REFERER = "https://www.google.com/"


# ============================================================================
# Enums
# ============================================================================


class PageClassification(str, Enum):
    """Outcome of inspecting a page title and URL."""

    NORMAL = "normal"
    CAPTCHA = "captcha"
    ERROR = "error"
    BLOCKED = "blocked"


class SourceKind(str, Enum):
    """Storefront variant a product link belongs to."""

    SMARTSTORE = "smartstore"
    ADER = "ader"


class CookieSource(str, Enum):
    """Where a cookie was most likely set."""

    PORTAL = "portal"
    STOREFRONT = "storefront"


class StepStatus(str, Enum):
    OK = "ok"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"


# ============================================================================
# Cookies
# ============================================================================


@dataclass(frozen=True)
class Cookie:
    """A single browser cookie; identity is (name, domain)."""

    name: str
    value: str
    domain: str
    path: str = "/"
    expires_at: Optional[datetime] = None
    secure: bool = False
    http_only: bool = False
    same_site: Optional[str] = None

    @property
    def key(self) -> CookieKey:
        return (self.name, self.domain)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    @classmethod
    def from_browser(cls, data: Mapping[str, Any]) -> "Cookie":
        """Build from a browser cookie dict (``expires`` in epoch seconds, -1 = session)."""
        expires = data.get("expires")
        expires_at = None
        if isinstance(expires, (int, float)) and expires > 0:
            expires_at = datetime.fromtimestamp(expires, UTC)
        return cls(
            name=str(data["name"]),
            value=str(data.get("value", "")),
            domain=str(data.get("domain", "")),
            path=str(data.get("path") or "/"),
            expires_at=expires_at,
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("httpOnly", False)),
            same_site=data.get("sameSite"),
        )

    def to_browser(self) -> BrowserCookie:
        data: BrowserCookie = {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires_at.timestamp() if self.expires_at else -1,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }
        if self.same_site in ("Strict", "Lax", "None"):
            data["sameSite"] = self.same_site
        return data


class CookieSet(Mapping[CookieKey, Cookie]):
    """Immutable collection with at most one cookie per (name, domain).

    Later cookies in the input replace earlier ones with the same key.
    """

    __slots__ = ("_cookies",)

    def __init__(self, cookies: Iterable[Cookie] = ()):
        items: Dict[CookieKey, Cookie] = {}
        for cookie in cookies:
            items[cookie.key] = cookie
        self._cookies = items

    def __getitem__(self, key: CookieKey) -> Cookie:
        return self._cookies[key]

    def __iter__(self) -> Iterator[CookieKey]:
        return iter(self._cookies)

    def __len__(self) -> int:
        return len(self._cookies)

    def __repr__(self) -> str:
        return f"CookieSet({list(self._cookies.values())!r})"

    def cookies(self) -> Tuple[Cookie, ...]:
        return tuple(self._cookies.values())

    def find(self, name: str) -> Optional[Cookie]:
        """First cookie with the given name, regardless of domain."""
        for cookie in self._cookies.values():
            if cookie.name == name:
                return cookie
        return None

    def with_cookie(self, cookie: Cookie) -> "CookieSet":
        return CookieSet((*self._cookies.values(), cookie))

    def to_browser(self) -> list[BrowserCookie]:
        return [cookie.to_browser() for cookie in self._cookies.values()]

    @classmethod
    def from_browser(cls, cookies: Iterable[Mapping[str, Any]]) -> "CookieSet":
        return cls(Cookie.from_browser(item) for item in cookies)


@dataclass(frozen=True)
class SessionSnapshot:
    """Cookie set as persisted on disk plus the file's last-write time."""

    cookies: CookieSet
    written_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionToken:
    """Marketing (click-attribution) cookie captured from a product page."""

    cookie: Cookie
    captured_at: datetime
    source_kind: SourceKind
    source_url: URL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.captured_at.isoformat(),
            "cookie": self.cookie.to_browser(),
            "productType": self.source_kind.value,
            "url": self.source_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionToken":
        timestamp = data.get("timestamp")
        captured_at = (
            datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            if isinstance(timestamp, str)
            else datetime.now(UTC)
        )
        kind = data.get("productType") or SourceKind.SMARTSTORE.value
        try:
            source_kind = SourceKind(kind)
        except ValueError:
            source_kind = SourceKind.ADER
        return cls(
            cookie=Cookie.from_browser(data["cookie"]),
            captured_at=captured_at,
            source_kind=source_kind,
            source_url=str(data.get("url", "")),
        )


# ============================================================================
# Proxy
# ============================================================================


@dataclass(frozen=True)
class ProxyConfig:
    """Proxy bound to one browser session."""

    server: str = ""
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.server)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProxyConfig":
        """Parse ``host:port:user:pass``; any other shape is used as the server as-is."""
        if not value:
            return cls()
        value = value.strip()
        scheme, _, rest = value.rpartition("://")
        parts = rest.split(":")
        if len(parts) == 4:
            host, port, username, password = parts
            server = f"{host}:{port}"
            if scheme:
                server = f"{scheme}://{server}"
            return cls(server=server, username=username, password=password)
        return cls(server=value)

    def to_playwright(self) -> Optional[Dict[str, str]]:
        if not self.enabled:
            return None
        server = self.server if "://" in self.server else f"http://{self.server}"
        proxy = {"server": server}
        if self.has_credentials:
            proxy["username"] = self.username
            proxy["password"] = self.password
        return proxy

    def __str__(self) -> str:
        return self.server or "direct"


# ============================================================================
# Attempt bookkeeping
# ============================================================================


@dataclass(frozen=True)
class AttemptContext:
    """Per-attempt state; a new value is created for every attempt."""

    attempt_number: int
    target_url: URL
    max_attempts: int = 3
    last_error: Optional[BaseException] = None

    @property
    def is_last(self) -> bool:
        return self.attempt_number >= self.max_attempts

    @property
    def label(self) -> str:
        return f"[attempt {self.attempt_number}/{self.max_attempts}]"

    def next_attempt(
        self, error: Optional[BaseException] = None, target_url: Optional[URL] = None
    ) -> "AttemptContext":
        return replace(
            self,
            attempt_number=self.attempt_number + 1,
            last_error=error,
            target_url=target_url if target_url is not None else self.target_url,
        )


@dataclass(frozen=True)
class StepResult:
    """Outcome of a behavior step: ok, soft failure (logged) or hard failure."""

    status: StepStatus = StepStatus.OK
    step: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, step: str = "") -> "StepResult":
        return cls(StepStatus.OK, step)

    @classmethod
    def soft(cls, step: str, error: Optional[BaseException] = None) -> "StepResult":
        return cls(StepStatus.SOFT_FAILURE, step, error)

    @classmethod
    def hard(cls, step: str, error: BaseException) -> "StepResult":
        return cls(StepStatus.HARD_FAILURE, step, error)

    @property
    def is_ok(self) -> bool:
        return self.status is StepStatus.OK

    @property
    def is_hard(self) -> bool:
        return self.status is StepStatus.HARD_FAILURE

    def raise_if_hard(self) -> "StepResult":
        if self.is_hard and self.error is not None:
            raise self.error
        return self


@dataclass(frozen=True)
class RefererChain:
    """Tracks the previously navigated URL for the Referer header."""

    last_url: Optional[URL] = None

    @property
    def referer(self) -> URL:
        return self.last_url or DEFAULT_REFERER

    def advance(self, url: URL) -> "RefererChain":
        return RefererChain(last_url=url)


# ============================================================================
# Results
# ============================================================================


@dataclass
class PageState:
    """Embedded state blob extracted from a product page."""

    product_url: URL
    preloaded_state: PreloadedState
    attempts: int = 1


@dataclass
class FetchFailure:
    """Terminal fetch failure returned after the attempt cap."""

    error: str
    message: str
    product_url: URL
    retryable: bool = True
    attempts: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "message": self.message,
            "productUrl": self.product_url,
        }


@dataclass
class AcquisitionResult:
    """Outcome of a full acquisition run."""

    success: bool
    attempts: int
    token: Optional[SessionToken] = None
    error: Optional[str] = None
    states_visited: list[str] = field(default_factory=list)
