"""
Per-request product state fetching using a previously acquired session.
"""

import json
from typing import Any, Dict, Optional, Union

from core.cookie_store import CookieStore
from core.session_driver import BrowserConfig, SessionDriver
from core.types import (
    AttemptContext,
    FetchFailure,
    PageState,
    ProxyConfig,
    RefererChain,
    SessionToken,
)
from utils import helpers
from utils.error_handling import ExtractionFailure, error_code, error_reporter
from utils.logger import get_logger, log_session_event

logger = get_logger(__name__)

STOREFRONT_HOME_URL = "https://shopping.naver.com/ns/home"
PRELOADED_STATE_SCRIPT = """
() => window.__PRELOADED_STATE__ ? JSON.stringify(window.__PRELOADED_STATE__) : null
"""
MAX_ATTEMPTS = 3


def marketing_query(token: SessionToken) -> str:
    return f"site_preference=device&NaPm={token.cookie.value}"


class ProductFetcher:
    """Fetch ``window.__PRELOADED_STATE__`` from a product page."""

    def __init__(
        self,
        driver: SessionDriver,
        cookie_store: CookieStore,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.driver = driver
        self.cookie_store = cookie_store

        config = config or {}
        self.storefront_home_url = config.get("site", {}).get("shopping_url", STOREFRONT_HOME_URL)
        timeouts = config.get("timeouts", {})
        self.navigation_timeout_ms = timeouts.get("navigation_ms", 60_000)
        fetch_config = config.get("fetch", {})
        self.max_attempts = fetch_config.get("max_attempts", MAX_ATTEMPTS)
        self.settle_ms = tuple(fetch_config.get("settle_ms", (1000, 5000)))
        self.backoff_ms = tuple(fetch_config.get("backoff_ms", (1000, 5000)))
        self.inject_marketing_query = fetch_config.get("inject_marketing_query", True)

    async def fetch(
        self,
        url: str,
        proxy: Optional[ProxyConfig] = None,
        browser_config: Optional[BrowserConfig] = None,
    ) -> Union[PageState, FetchFailure]:
        """Fetch the embedded state for ``url``; never raises.

        The second attempt drops the query string, and later attempts keep it dropped.
        """
        proxy = proxy or ProxyConfig()
        browser_config = browser_config or BrowserConfig()

        token = await self.cookie_store.load_token()
        target_url = url
        if token is not None and self.inject_marketing_query:
            target_url = helpers.append_query_params(url, marketing_query(token))

        attempt = AttemptContext(
            attempt_number=1, target_url=target_url, max_attempts=self.max_attempts
        )

        while True:
            if attempt.attempt_number == 2:
                attempt = AttemptContext(
                    attempt_number=attempt.attempt_number,
                    target_url=helpers.strip_query(attempt.target_url),
                    max_attempts=attempt.max_attempts,
                    last_error=attempt.last_error,
                )

            try:
                state = await self._attempt(attempt, proxy, browser_config, token)
            except Exception as e:
                error = e
            else:
                logger.info(f"{attempt.label} Fetched preloaded state for {url}")
                log_session_event(
                    "fetch",
                    {"url": url, "status": "success", "attempts": attempt.attempt_number},
                )
                return PageState(
                    product_url=url, preloaded_state=state, attempts=attempt.attempt_number
                )

            retryable = getattr(error, "retryable", True)
            error_reporter.report_error(error, {"url": attempt.target_url, "attempt": attempt.attempt_number})
            logger.warning(f"{attempt.label} Fetch failed for {attempt.target_url}: {error_code(error)}: {error}")
            log_session_event(
                "fetch",
                {
                    "url": attempt.target_url,
                    "status": "failed",
                    "attempt": attempt.attempt_number,
                    "error": error_code(error),
                },
                "WARNING",
            )

            if attempt.is_last:
                return FetchFailure(
                    error=error_code(error),
                    message=str(error),
                    product_url=url,
                    retryable=retryable,
                    attempts=attempt.attempt_number,
                )
            attempt = attempt.next_attempt(error)
            await helpers.random_delay(*self.backoff_ms)

    async def _attempt(
        self,
        attempt: AttemptContext,
        proxy: ProxyConfig,
        browser_config: BrowserConfig,
        token: Optional[SessionToken],
    ) -> Dict[str, Any]:
        snapshot = await self.cookie_store.load()
        if not self.cookie_store.is_fresh(snapshot):
            logger.warning(f"{attempt.label} Cookie snapshot is stale, run acquisition to refresh it")

        cookies = snapshot.cookies
        if token is not None:
            cookies = self.cookie_store.merge(cookies.values(), [token.cookie])

        session = await self.driver.launch(proxy, browser_config)
        try:
            page = await self.driver.open_page(session)
            await page.context.add_cookies(cookies.to_browser())

            referer = RefererChain(last_url=self.storefront_home_url)
            logger.info(f"{attempt.label} Navigating to {attempt.target_url}")
            await self.driver.navigate(
                page,
                attempt.target_url,
                referer,
                wait_until="networkidle",
                timeout_ms=self.navigation_timeout_ms,
            )
            await helpers.random_delay(*self.settle_ms)

            raw_state = await page.evaluate(PRELOADED_STATE_SCRIPT)
            return self._parse_state(raw_state, attempt.target_url)
        finally:
            await self.driver.close(session)

    def _parse_state(self, raw_state: Any, url: str) -> Dict[str, Any]:
        if not raw_state:
            raise ExtractionFailure("__PRELOADED_STATE__ not found", {"url": url})
        if isinstance(raw_state, str):
            try:
                raw_state = json.loads(raw_state)
            except ValueError as e:
                raise ExtractionFailure(
                    f"__PRELOADED_STATE__ is not valid JSON: {e}", {"url": url}
                ) from e
        if not isinstance(raw_state, dict) or not raw_state:
            raise ExtractionFailure("__PRELOADED_STATE__ is empty", {"url": url})
        return raw_state
