import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from core.types import ProxyConfig, RefererChain
from utils.error_handling import ConfigurationError, NavigationFailure

DEFAULT_BROWSER_ARGS: Tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-field-trial-config",
    "--disable-ipc-flooding-protection",
    "--disable-hang-monitor",
    "--disable-prompt-on-repost",
    "--disable-client-side-phishing-detection",
    "--disable-component-extensions-with-background-pages",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-sync",
    "--disable-translate",
    "--hide-scrollbars",
    "--mute-audio",
    "--no-first-run",
    "--safebrowsing-disable-auto-update",
    "--ignore-certificate-errors",
    "--ignore-ssl-errors",
    "--ignore-certificate-errors-spki-list",
    "--window-size=1920,1080",
)

VIEWPORTS: Tuple[Dict[str, int], ...] = (
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1280, "height": 800},
)

DEFAULT_HEADERS: Dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "max-age=0",
    "Sec-Ch-Ua": '"Google Chrome";v="119", "Chromium";v="119", "Not?A_Brand";v="24"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

STEALTH_INIT_SCRIPT = """
() => {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
}
"""

DEFAULT_NAVIGATION_TIMEOUT_MS = 60_000


@dataclass(frozen=True)
class BrowserConfig:
    """Launch settings for one browser session."""

    headless: bool = False
    args: Tuple[str, ...] = DEFAULT_BROWSER_ARGS
    timeout_ms: int = 30_000
    navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS
    locale: str = "ko-KR"
    user_agent: Optional[str] = None

    def validate(self) -> "BrowserConfig":
        if not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise ConfigurationError(
                "Browser timeout must be a positive number", {"timeout_ms": self.timeout_ms}
            )
        if not isinstance(self.navigation_timeout_ms, int) or self.navigation_timeout_ms <= 0:
            raise ConfigurationError(
                "Navigation timeout must be a positive number",
                {"navigation_timeout_ms": self.navigation_timeout_ms},
            )
        return self


@dataclass
class BrowserSession:
    """Everything launched for one attempt; closed as a unit."""

    playwright: Playwright
    browser: Browser
    proxy: ProxyConfig
    config: BrowserConfig
    context: Optional[BrowserContext] = None
    extra_contexts: List[BrowserContext] = field(default_factory=list)

    def contexts(self) -> List[BrowserContext]:
        contexts = [self.context] if self.context is not None else []
        return contexts + list(self.extra_contexts)


PlaywrightFactory = Callable[[], Any]


class SessionDriver:
    """Thin async layer over Playwright for launching, navigating and teardown."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        playwright_factory: Optional[PlaywrightFactory] = None,
    ) -> None:
        self.config = config or {}
        self.logger = logger or logging.getLogger(__name__)
        self._playwright_factory = playwright_factory or async_playwright

        self.viewports = tuple(self.config.get("viewports", VIEWPORTS))
        self.extra_headers = dict(DEFAULT_HEADERS)
        self.extra_headers.update(self.config.get("extra_headers", {}))
        self.enable_stealth_mode = self.config.get("enable_stealth_mode", True)

    async def launch(self, proxy: ProxyConfig, browser_config: BrowserConfig) -> BrowserSession:
        playwright = await self._playwright_factory().start()
        launch_options = self._build_launch_options(proxy, browser_config)
        try:
            browser = await playwright.chromium.launch(**launch_options)
        except Exception:
            await self._close_with_retry("playwright", playwright.stop)
            raise
        self.logger.debug(
            f"Launched browser (headless={browser_config.headless}, proxy={proxy})"
        )
        return BrowserSession(
            playwright=playwright, browser=browser, proxy=proxy, config=browser_config
        )

    async def open_page(self, session: BrowserSession) -> Page:
        """Open a page in the session's context, creating the context on first use."""
        if session.context is None:
            session.context = await self._create_context(session)
        return await self._new_page(session.context, session.config)

    async def new_page_direct(self, session: BrowserSession) -> Page:
        """Open a page in a context of its own, outside the session's tab history.

        The new context carries the session context's cookies so the direct page
        keeps whatever the visit has collected so far.
        """
        context = await self._create_context(session)
        if session.context is not None:
            cookies = await session.context.cookies()
            if cookies:
                await context.add_cookies(cookies)
        session.extra_contexts.append(context)
        return await self._new_page(context, session.config)

    def pages(self, session: BrowserSession) -> List[Page]:
        pages: List[Page] = []
        for context in session.contexts():
            pages.extend(context.pages)
        return pages

    async def navigate(
        self,
        page: Page,
        url: str,
        referer: RefererChain,
        wait_until: str = "domcontentloaded",
        timeout_ms: Optional[int] = None,
    ) -> RefererChain:
        """Navigate with the referer header set; returns the advanced chain."""
        timeout_ms = timeout_ms or DEFAULT_NAVIGATION_TIMEOUT_MS
        headers = dict(self.extra_headers)
        headers["Referer"] = referer.referer
        try:
            await page.set_extra_http_headers(headers)
            await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationFailure(
                f"Navigation to {url} timed out after {timeout_ms}ms",
                {"url": url, "referer": referer.referer},
            ) from e
        except PlaywrightError as e:
            raise NavigationFailure(
                f"Navigation to {url} failed: {e}",
                {"url": url, "referer": referer.referer},
            ) from e
        self.logger.debug(f"Navigated to {url} (referer {referer.referer})")
        return referer.advance(url)

    async def close(self, session: Optional[BrowserSession]) -> None:
        """Close pages concurrently, then contexts, browser and Playwright; never raises."""
        if session is None:
            return

        pages = self.pages(session)
        if pages:
            await asyncio.gather(
                *(self._close_with_retry("page", page.close) for page in pages)
            )
        for context in session.contexts():
            await self._close_with_retry("context", context.close)
        await self._close_with_retry("browser", session.browser.close)
        await self._close_with_retry("playwright", session.playwright.stop)
        session.context = None
        session.extra_contexts.clear()

    async def _close_with_retry(
        self, label: str, closer: Callable[[], Awaitable[Any]]
    ) -> bool:
        for attempt in (1, 2):
            try:
                await closer()
                return True
            except Exception:
                self.logger.debug(
                    f"Failed to close Playwright {label} (try {attempt})", exc_info=True
                )
        self.logger.warning(f"Abandoning Playwright {label} after failed close")
        return False

    async def _new_page(self, context: BrowserContext, config: BrowserConfig) -> Page:
        page = await context.new_page()
        page.set_default_timeout(config.timeout_ms)
        page.set_default_navigation_timeout(config.navigation_timeout_ms)
        return page

    async def _create_context(self, session: BrowserSession) -> BrowserContext:
        context_options = self._build_context_options(session.proxy, session.config)
        context = await session.browser.new_context(**context_options)
        if self.enable_stealth_mode:
            await context.add_init_script(STEALTH_INIT_SCRIPT)
        return context

    def _build_launch_options(
        self, proxy: ProxyConfig, browser_config: BrowserConfig
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "headless": browser_config.headless,
            "args": list(browser_config.args),
            "timeout": browser_config.timeout_ms,
        }
        if proxy.enabled:
            # Credentials are attached per context.
            options["proxy"] = {"server": proxy.to_playwright()["server"]}
        return options

    def _build_context_options(
        self, proxy: ProxyConfig, browser_config: BrowserConfig
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "viewport": dict(random.choice(self.viewports)),
            "locale": browser_config.locale,
            "ignore_https_errors": True,
        }
        if browser_config.user_agent:
            options["user_agent"] = browser_config.user_agent
        if proxy.enabled:
            options["proxy"] = proxy.to_playwright()
        return options
