"""
Cookie snapshot persistence and merge rules.

Handles the on-disk cookie snapshot (a JSON array of browser cookie records),
the marketing-token record, cookie merging and the exclusion filter.
"""

import json
import os
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiofiles
import aiofiles.os

from core.types import Cookie, CookieSet, CookieSource, SessionSnapshot, SessionToken
from utils.error_handling import MissingSnapshot
from utils.logger import get_logger, log_session_event

logger = get_logger(__name__)

DEFAULT_COOKIES_FILE = "naver_cookies.json"
DEFAULT_TOKEN_FILE = "na_co_cookie.json"
DEFAULT_STOREFRONT_DOMAIN = "shopping.naver.com"
DEFAULT_PORTAL_DOMAIN = "naver.com"
DEFAULT_EXCLUDED_SUBSTRING = "sus"
DEFAULT_MAX_AGE_HOURS = 24


class CookieStore:
    """Merges, filters and persists session cookies."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.cookies_file = Path(config.get("cookies_file", DEFAULT_COOKIES_FILE))
        self.token_file = Path(config.get("token_file", DEFAULT_TOKEN_FILE))
        self.storefront_domain = config.get("storefront_domain", DEFAULT_STOREFRONT_DOMAIN)
        self.portal_domain = config.get("portal_domain", DEFAULT_PORTAL_DOMAIN)
        self.excluded_substring = config.get(
            "excluded_substring", DEFAULT_EXCLUDED_SUBSTRING
        ).lower()
        self.max_age = timedelta(hours=config.get("max_age_hours", DEFAULT_MAX_AGE_HOURS))

    # ------------------------------------------------------------------
    # Pure rules
    # ------------------------------------------------------------------

    def cookie_source(self, cookie: Cookie) -> CookieSource:
        """Guess whether a cookie came from the storefront or the portal.

        Domain match first, then a path containing ``shopping``; anything
        else counts as portal.
        """
        domain = cookie.domain.lower()
        if self.storefront_domain in domain:
            return CookieSource.STOREFRONT
        if self.portal_domain in domain:
            return CookieSource.PORTAL
        if "shopping" in cookie.path.lower():
            return CookieSource.STOREFRONT
        return CookieSource.PORTAL

    def merge(self, disk: Iterable[Cookie], fresh: Iterable[Cookie]) -> CookieSet:
        """Merge disk cookies with freshly harvested ones.

        On a key collision the storefront cookie wins when the sources differ,
        otherwise the fresh cookie wins.
        """
        merged: Dict[tuple, Cookie] = {}
        stats = {"portal": 0, "storefront": 0, "overridden": 0}

        for cookie in disk:
            merged[cookie.key] = cookie

        for cookie in fresh:
            existing = merged.get(cookie.key)
            if existing is not None:
                stats["overridden"] += 1
                existing_source = self.cookie_source(existing)
                fresh_source = self.cookie_source(cookie)
                if (
                    existing_source is not fresh_source
                    and existing_source is CookieSource.STOREFRONT
                ):
                    continue
            merged[cookie.key] = cookie

        for cookie in merged.values():
            stats[self.cookie_source(cookie).value] += 1

        logger.info(
            f"Merged cookies: {len(merged)} total "
            f"({stats['portal']} portal, {stats['storefront']} storefront, "
            f"{stats['overridden']} overridden)"
        )
        return CookieSet(merged.values())

    def filter_excluded(self, cookies: Iterable[Cookie]) -> CookieSet:
        """Drop cookies whose name or value contains the excluded substring."""
        needle = self.excluded_substring
        kept = [
            cookie
            for cookie in cookies
            if needle not in cookie.name.lower() and needle not in cookie.value.lower()
        ]
        return CookieSet(kept)

    def is_fresh(self, snapshot: SessionSnapshot, now: Optional[datetime] = None) -> bool:
        """Advisory freshness check; callers only log the result."""
        now = now or datetime.now(UTC)
        if not snapshot.cookies:
            return False

        expired = [c.name for c in snapshot.cookies.values() if c.is_expired(now)]
        if expired:
            logger.warning(f"Snapshot contains expired cookies: {expired}")
            return False

        if snapshot.written_at is not None and now - snapshot.written_at > self.max_age:
            logger.warning(f"Snapshot is older than {self.max_age}")
            return False

        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _write_atomic(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        json_data = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json_data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError:
            if tmp_path.exists():
                os.unlink(tmp_path)
            raise

    async def persist(self, cookies: Iterable[Cookie]) -> None:
        """Overwrite the snapshot file with the given cookies."""
        cookie_set = cookies if isinstance(cookies, CookieSet) else CookieSet(cookies)
        await self._write_atomic(self.cookies_file, cookie_set.to_browser())
        logger.info(f"Saved {len(cookie_set)} cookies to {self.cookies_file}")
        log_session_event(
            "cookie",
            {"action": "persist", "count": len(cookie_set), "path": str(self.cookies_file)},
        )

    async def load(self) -> SessionSnapshot:
        """Read the snapshot file.

        Raises:
            MissingSnapshot: file absent or not a JSON array of cookies
        """
        if not await aiofiles.os.path.exists(self.cookies_file):
            raise MissingSnapshot(
                f"Cookie snapshot not found: {self.cookies_file}",
                {"path": str(self.cookies_file)},
            )

        async with aiofiles.open(self.cookies_file, "r", encoding="utf-8") as f:
            json_data = await f.read()
        stat = await aiofiles.os.stat(self.cookies_file)

        try:
            records = json.loads(json_data)
            if not isinstance(records, list):
                raise ValueError("snapshot root is not an array")
            cookies = CookieSet.from_browser(records)
        except (ValueError, KeyError, TypeError) as e:
            raise MissingSnapshot(
                f"Cookie snapshot is unreadable: {e}",
                {"path": str(self.cookies_file)},
            ) from e

        written_at = datetime.fromtimestamp(stat.st_mtime, UTC)
        logger.debug(f"Loaded {len(cookies)} cookies from {self.cookies_file}")
        return SessionSnapshot(cookies=cookies, written_at=written_at)

    async def persist_token(self, token: SessionToken) -> None:
        await self._write_atomic(self.token_file, token.to_dict())
        logger.info(
            f"Saved {token.cookie.name} token from {token.source_kind.value} page to {self.token_file}"
        )
        log_session_event(
            "cookie",
            {
                "action": "persist_token",
                "cookie": token.cookie.name,
                "source_kind": token.source_kind.value,
                "url": token.source_url,
            },
        )

    async def load_token(self) -> Optional[SessionToken]:
        """Read the marketing-token record; None when absent or unreadable."""
        if not await aiofiles.os.path.exists(self.token_file):
            return None

        async with aiofiles.open(self.token_file, "r", encoding="utf-8") as f:
            json_data = await f.read()

        try:
            return SessionToken.from_dict(json.loads(json_data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable token record {self.token_file}: {e}")
            return None

    def has_token(self) -> bool:
        return self.token_file.exists()

    def has_snapshot(self) -> bool:
        return self.cookies_file.exists()
