"""
Session acquisition: walk portal -> shopping home -> product page the way a
visitor would, harvesting the session cookie and the marketing cookie.

Each attempt launches its own browser session, runs the state machine from
LAUNCH and always closes the session. Failures never escape ``run``.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.behavior_simulator import BehaviorSimulator
from core.cookie_store import CookieStore
from core.page_classifier import PageClassifier
from core.session_driver import BrowserConfig, BrowserSession, SessionDriver
from core.types import (
    AcquisitionResult,
    AttemptContext,
    CookieSet,
    PageClassification,
    ProxyConfig,
    RefererChain,
    SessionToken,
    SourceKind,
)
from utils import helpers
from utils.error_handling import (
    ClassifiedBlock,
    MissingToken,
    NavigationFailure,
    error_code,
    error_reporter,
)
from utils.logger import get_logger, log_session_event

logger = get_logger(__name__)

PORTAL_URL = "https://www.naver.com"
SHOPPING_URL = "https://shopping.naver.com/ns/home"
SHOPPING_DOMAIN = "shopping.naver.com"

SHORTCUTS_SELECTOR = "li.shortcut_item a.link_service"
SHOPPING_ENTRY_SELECTORS = (
    'li.shortcut_item a.link_service[href*="shopping.naver.com"]',
    'li.shortcut_item a[href*="shopping.naver.com"]',
    'a.link_service[href*="shopping.naver.com"]',
    'a[href*="shopping.naver.com"]',
    'a.link_service[href*="shopping"]',
    'a[href*="shopping"]',
)
PRODUCT_LINK_SELECTOR = (
    'a[href*="smartstore"], a[href*="ader"], a[href*="product"], '
    'div[class*="product"] a, a[class*="product"]'
)
PRODUCT_MARKUP_SELECTOR = (
    'div[class*="product"], div[class*="Product"], .product_info, .productInfo'
)
REDIRECT_CHECK_SCRIPT = """
(domains) => domains.some((domain) => window.location.href.includes(domain))
"""

SESSION_COOKIE_NAME = "X-Wtm-Cpt-Tk"
MARKETING_COOKIE_NAME = "NA_CO"

MAX_ATTEMPTS = 3
SESSION_COOKIE_RECHECKS = 5
FALLBACK_LINK_CANDIDATES = 3


class AcquisitionState(str, Enum):
    LAUNCH = "launch"
    NAVIGATE_PORTAL = "navigate_portal"
    LOCATE_SHOPPING_ENTRY = "locate_shopping_entry"
    OPEN_STOREFRONT_TAB = "open_storefront_tab"
    VALIDATE_STOREFRONT_TAB = "validate_storefront_tab"
    RUN_EXTENDED_BEHAVIOR = "run_extended_behavior"
    HARVEST_SESSION_COOKIE = "harvest_session_cookie"
    PERSIST_SESSION = "persist_session"
    LOCATE_PRODUCT_LINK = "locate_product_link"
    CLICK_PRODUCT = "click_product"
    VALIDATE_PRODUCT_PAGE = "validate_product_page"
    HARVEST_MARKETING_COOKIE = "harvest_marketing_cookie"
    PERSIST_TOKEN = "persist_token"
    SUCCESS = "success"


@dataclass
class ProductLink:
    element: Any
    href: str
    kind: Optional[SourceKind] = None


@dataclass
class AcquisitionRun:
    """Working state of a single attempt; discarded when the attempt ends."""

    attempt: AttemptContext
    proxy: ProxyConfig
    browser_config: BrowserConfig
    session: Optional[BrowserSession] = None
    portal_page: Any = None
    shopping_entries: List[Any] = field(default_factory=list)
    storefront_page: Any = None
    product_link: Optional[ProductLink] = None
    product_page: Any = None
    referer: RefererChain = field(default_factory=RefererChain)
    session_cookies: CookieSet = field(default_factory=CookieSet)
    token: Optional[SessionToken] = None
    visited: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.attempt.label


class AcquisitionStateMachine:
    """Acquire a trusted session and persist its cookies and marketing token."""

    def __init__(
        self,
        driver: SessionDriver,
        cookie_store: CookieStore,
        classifier: Optional[PageClassifier] = None,
        behavior: Optional[BehaviorSimulator] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.driver = driver
        self.cookie_store = cookie_store
        self.classifier = classifier or PageClassifier()
        self.behavior = behavior or BehaviorSimulator()

        config = config or {}
        site = config.get("site", {})
        self.portal_url = site.get("portal_url", PORTAL_URL)
        self.shopping_url = site.get("shopping_url", SHOPPING_URL)
        self.shopping_domain = site.get("shopping_domain", SHOPPING_DOMAIN)

        cookies = config.get("cookies", {})
        self.session_cookie_name = cookies.get("session_cookie_name", SESSION_COOKIE_NAME)
        self.marketing_cookie_name = cookies.get("marketing_cookie_name", MARKETING_COOKIE_NAME)

        timeouts = config.get("timeouts", {})
        self.navigation_timeout_ms = timeouts.get("navigation_ms", 60_000)
        self.network_idle_timeout_ms = timeouts.get("network_idle_ms", 30_000)
        self.shortcut_timeout_ms = timeouts.get("shortcut_ms", 10_000)
        self.shopping_entry_timeout_ms = timeouts.get("shopping_entry_ms", 15_000)
        self.body_timeout_ms = timeouts.get("body_ms", 10_000)
        self.product_links_timeout_ms = timeouts.get("product_links_ms", 30_000)
        self.redirect_timeout_ms = timeouts.get("redirect_ms", 10_000)
        self.product_click_timeout_s = timeouts.get("product_click_seconds", 45)

        acquisition = config.get("acquisition", {})
        self.max_attempts = acquisition.get("max_attempts", MAX_ATTEMPTS)
        self.backoff_ms = tuple(acquisition.get("backoff_ms", (1000, 5000)))

        self._handlers: Dict[
            AcquisitionState, Callable[[AcquisitionRun], Awaitable[AcquisitionState]]
        ] = {
            AcquisitionState.LAUNCH: self._launch,
            AcquisitionState.NAVIGATE_PORTAL: self._navigate_portal,
            AcquisitionState.LOCATE_SHOPPING_ENTRY: self._locate_shopping_entry,
            AcquisitionState.OPEN_STOREFRONT_TAB: self._open_storefront_tab,
            AcquisitionState.VALIDATE_STOREFRONT_TAB: self._validate_storefront_tab,
            AcquisitionState.RUN_EXTENDED_BEHAVIOR: self._run_extended_behavior,
            AcquisitionState.HARVEST_SESSION_COOKIE: self._harvest_session_cookie,
            AcquisitionState.PERSIST_SESSION: self._persist_session,
            AcquisitionState.LOCATE_PRODUCT_LINK: self._locate_product_link,
            AcquisitionState.CLICK_PRODUCT: self._click_product,
            AcquisitionState.VALIDATE_PRODUCT_PAGE: self._validate_product_page,
            AcquisitionState.HARVEST_MARKETING_COOKIE: self._harvest_marketing_cookie,
            AcquisitionState.PERSIST_TOKEN: self._persist_token,
        }

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    async def run(
        self, proxy: Optional[ProxyConfig] = None, browser_config: Optional[BrowserConfig] = None
    ) -> AcquisitionResult:
        proxy = proxy or ProxyConfig()
        browser_config = browser_config or BrowserConfig()
        attempt = AttemptContext(
            attempt_number=1, target_url=self.portal_url, max_attempts=self.max_attempts
        )
        visited: List[str] = []

        while True:
            run = AcquisitionRun(attempt=attempt, proxy=proxy, browser_config=browser_config)
            logger.info(f"{run.label} Session acquisition started (proxy={proxy})")
            error: Optional[Exception] = None
            try:
                await self._run_states(run)
            except Exception as e:
                error = e
            finally:
                await self.driver.close(run.session)
            visited.extend(run.visited)

            if error is None:
                logger.info(f"{run.label} Session acquisition completed")
                log_session_event(
                    "acquisition",
                    {
                        "attempt": attempt.attempt_number,
                        "status": "success",
                        "source_kind": run.token.source_kind.value if run.token else None,
                    },
                )
                return AcquisitionResult(
                    success=True,
                    attempts=attempt.attempt_number,
                    token=run.token,
                    states_visited=visited,
                )

            state = run.visited[-1] if run.visited else None
            error_reporter.report_error(error, {"attempt": attempt.attempt_number, "state": state})
            logger.warning(f"{run.label} Session acquisition failed in {state}: {error_code(error)}: {error}")
            log_session_event(
                "acquisition",
                {
                    "attempt": attempt.attempt_number,
                    "status": "failed",
                    "error": error_code(error),
                    "state": state,
                },
                "WARNING",
            )
            if attempt.is_last:
                logger.error(f"Session acquisition failed after {attempt.max_attempts} attempts")
                return AcquisitionResult(
                    success=False,
                    attempts=attempt.attempt_number,
                    error=error_code(error),
                    states_visited=visited,
                )
            attempt = attempt.next_attempt(error)
            await helpers.random_delay(*self.backoff_ms)

    async def _run_states(self, run: AcquisitionRun) -> None:
        state = AcquisitionState.LAUNCH
        while state is not AcquisitionState.SUCCESS:
            run.visited.append(state.value)
            logger.debug(f"{run.label} -> {state.value}")
            state = await self._handlers[state](run)
        run.visited.append(state.value)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _launch(self, run: AcquisitionRun) -> AcquisitionState:
        run.session = await self.driver.launch(run.proxy, run.browser_config)
        run.portal_page = await self.driver.open_page(run.session)
        return AcquisitionState.NAVIGATE_PORTAL

    async def _navigate_portal(self, run: AcquisitionRun) -> AcquisitionState:
        logger.info(f"{run.label} Browsing portal: {self.portal_url}")
        run.referer = await self.driver.navigate(
            run.portal_page,
            self.portal_url,
            run.referer,
            wait_until="networkidle",
            timeout_ms=self.navigation_timeout_ms,
        )
        logger.info(f"{run.label} Portal title: {await run.portal_page.title()}")
        await helpers.random_delay(3000, 5000)
        return AcquisitionState.LOCATE_SHOPPING_ENTRY

    async def _locate_shopping_entry(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.portal_page
        try:
            await page.wait_for_selector(SHORTCUTS_SELECTOR, timeout=self.shortcut_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning(f"{run.label} Portal shortcuts did not load")

        # Candidates in selector order; the storefront tab tries each in turn.
        for selector in SHOPPING_ENTRY_SELECTORS:
            element = await page.query_selector(selector)
            if element is None or element in run.shopping_entries:
                continue
            try:
                visible = await element.is_visible()
            except PlaywrightError as e:
                logger.debug(f"{run.label} Shopping entry {selector} unreadable: {e}")
                continue
            if visible:
                run.shopping_entries.append(element)
                logger.info(f"{run.label} Shopping entry found with {selector}")

        if not run.shopping_entries:
            logger.warning(f"{run.label} No shopping entry found, will open shopping directly")

        return AcquisitionState.OPEN_STOREFRONT_TAB

    def _find_shopping_page(self, run: AcquisitionRun, needle: str):
        for page in self.driver.pages(run.session):
            if needle in page.url:
                return page
        return None

    async def _open_storefront_tab(self, run: AcquisitionRun) -> AcquisitionState:
        shopping_page = self._find_shopping_page(run, self.shopping_domain)
        if shopping_page is not None:
            logger.info(f"{run.label} Shopping tab already open: {shopping_page.url}")

        for entry in run.shopping_entries:
            if shopping_page is not None:
                break
            try:
                await entry.click()
            except PlaywrightError as e:
                logger.warning(f"{run.label} Clicking shopping entry failed: {e}")
                continue
            await helpers.random_delay(2000, 3000)
            shopping_page = self._find_shopping_page(run, "shopping")

        if shopping_page is None:
            logger.info(f"{run.label} Opening shopping home directly")
            shopping_page = await self.driver.new_page_direct(run.session)
            run.referer = await self.driver.navigate(
                shopping_page,
                self.shopping_url,
                run.referer,
                wait_until="networkidle",
                timeout_ms=self.network_idle_timeout_ms,
            )
        else:
            run.referer = run.referer.advance(shopping_page.url)

        try:
            await shopping_page.wait_for_selector("body", timeout=self.body_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning(f"{run.label} Shopping page body did not appear")

        run.storefront_page = shopping_page
        return AcquisitionState.VALIDATE_STOREFRONT_TAB

    async def _validate_storefront_tab(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.storefront_page
        if self.shopping_domain not in page.url:
            raise NavigationFailure(
                f"Shopping tab is not on {self.shopping_domain}: {page.url}",
                {"url": page.url},
            )
        classification = await self.classifier.classify_page(page)
        if classification is not PageClassification.NORMAL:
            raise ClassifiedBlock(
                f"Shopping tab classified as {classification.value}",
                classification,
                {"url": page.url},
            )
        return AcquisitionState.RUN_EXTENDED_BEHAVIOR

    async def _run_extended_behavior(self, run: AcquisitionRun) -> AcquisitionState:
        await helpers.random_delay(5000, 10000)
        result = await self.behavior.run_extended_sequence(run.storefront_page)
        result.raise_if_hard()
        return AcquisitionState.HARVEST_SESSION_COOKIE

    async def _harvest_cookies(self, page) -> CookieSet:
        raw = await page.context.cookies()
        cookies = CookieSet.from_browser(raw)
        filtered = self.cookie_store.filter_excluded(cookies.values())
        logger.debug(
            f"Harvested {len(filtered)}/{len(cookies)} cookies "
            f"({len(cookies) - len(filtered)} excluded)"
        )
        return filtered

    async def _harvest_session_cookie(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.storefront_page
        cookies = await self._harvest_cookies(page)

        recheck = 0
        while cookies.find(self.session_cookie_name) is None:
            if recheck >= SESSION_COOKIE_RECHECKS:
                raise MissingToken(
                    f"{self.session_cookie_name} not set after {SESSION_COOKIE_RECHECKS} rechecks",
                    {"cookie": self.session_cookie_name, "url": page.url},
                )
            recheck += 1
            logger.info(
                f"{run.label} {self.session_cookie_name} missing, scrolling "
                f"({recheck}/{SESSION_COOKIE_RECHECKS})"
            )
            (await self.behavior.scroll_down(page)).raise_if_hard()
            await helpers.random_delay(2000, 4000)
            cookies = await self._harvest_cookies(page)

        logger.info(f"{run.label} {self.session_cookie_name} cookie found")
        run.session_cookies = cookies
        return AcquisitionState.PERSIST_SESSION

    async def _persist_session(self, run: AcquisitionRun) -> AcquisitionState:
        await self.cookie_store.persist(run.session_cookies)
        return AcquisitionState.LOCATE_PRODUCT_LINK

    async def _collect_links(self, run: AcquisitionRun) -> List[ProductLink]:
        links: List[ProductLink] = []
        for element in await run.storefront_page.query_selector_all(PRODUCT_LINK_SELECTOR):
            try:
                href = await element.evaluate("(el) => el.href")
            except PlaywrightError as e:
                logger.warning(f"{run.label} Could not read link href: {e}")
                continue
            href = href or ""
            links.append(ProductLink(element, href, self.classifier.source_kind_for(href)))
        return links

    def select_product_link(self, links: List[ProductLink]) -> Optional[ProductLink]:
        """Prefer smartstore links, then ader links, then one of the first few links."""
        if not links:
            return None
        for kind in (SourceKind.SMARTSTORE, SourceKind.ADER):
            matches = [link for link in links if link.kind is kind]
            if matches:
                return random.choice(matches)
        return random.choice(links[:FALLBACK_LINK_CANDIDATES])

    async def _locate_product_link(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.storefront_page
        await helpers.random_delay(3000, 5000)
        try:
            await page.wait_for_selector(PRODUCT_LINK_SELECTOR, timeout=self.product_links_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning(f"{run.label} Product links did not appear, force scrolling")
            await page.evaluate("() => window.scrollTo(0, 500)")
            await helpers.random_delay(2000, 3000)
            await page.evaluate("() => window.scrollTo(0, 1000)")
            await helpers.random_delay(2000, 3000)

        links = await self._collect_links(run)
        selected = self.select_product_link(links)
        if selected is None:
            raise NavigationFailure("No product links on shopping page", {"url": page.url})

        kind = selected.kind.value if selected.kind else "fallback"
        logger.info(f"{run.label} Selected {kind} product link: {selected.href}")
        run.product_link = selected
        return AcquisitionState.CLICK_PRODUCT

    async def _open_product(self, run: AcquisitionRun):
        pages_before = set(id(p) for p in self.driver.pages(run.session))
        await run.product_link.element.click()
        await helpers.random_delay(3000, 5000)

        new_pages = [p for p in self.driver.pages(run.session) if id(p) not in pages_before]
        page = new_pages[-1] if new_pages else run.storefront_page

        try:
            await page.wait_for_load_state("networkidle", timeout=self.network_idle_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning(f"{run.label} Product page did not reach network idle")
        try:
            await page.wait_for_selector("body", timeout=self.body_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning(f"{run.label} Product page body did not appear")

        if not self.classifier.is_storefront_url(page.url):
            logger.info(f"{run.label} Waiting for redirect to storefront")
            try:
                await page.wait_for_function(
                    REDIRECT_CHECK_SCRIPT,
                    arg=list(self.classifier.storefront_domains.values()),
                    timeout=self.redirect_timeout_ms,
                )
            except PlaywrightTimeoutError:
                logger.warning(f"{run.label} No storefront redirect: {page.url}")
        return page

    async def _click_product(self, run: AcquisitionRun) -> AcquisitionState:
        try:
            run.product_page = await asyncio.wait_for(
                self._open_product(run), timeout=self.product_click_timeout_s
            )
        except asyncio.TimeoutError as e:
            raise NavigationFailure(
                f"Product click exceeded {self.product_click_timeout_s}s",
                {"href": run.product_link.href},
            ) from e
        run.referer = run.referer.advance(run.product_page.url)
        logger.info(f"{run.label} Product page: {run.product_page.url}")
        return AcquisitionState.VALIDATE_PRODUCT_PAGE

    async def _validate_product_page(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.product_page
        classification = await self.classifier.classify_page(page)
        if classification is not PageClassification.NORMAL:
            raise ClassifiedBlock(
                f"Product page classified as {classification.value}",
                classification,
                {"url": page.url},
            )

        markup = await page.query_selector_all(PRODUCT_MARKUP_SELECTOR)
        if not markup:
            logger.warning(f"{run.label} No product markup found on {page.url}")

        await helpers.random_delay(4000, 7000)
        for step in (self.behavior.move_cursor, self.behavior.scroll_down, self.behavior.move_cursor):
            (await step(page)).raise_if_hard()
            await helpers.random_delay(2000, 4000)
        return AcquisitionState.HARVEST_MARKETING_COOKIE

    async def _harvest_marketing_cookie(self, run: AcquisitionRun) -> AcquisitionState:
        page = run.product_page
        cookies = CookieSet.from_browser(await page.context.cookies())
        marketing_cookie = cookies.find(self.marketing_cookie_name)
        if marketing_cookie is None:
            raise MissingToken(
                f"{self.marketing_cookie_name} cookie not set on product page",
                {"cookie": self.marketing_cookie_name, "url": page.url},
            )

        source_kind = (
            self.classifier.source_kind_for(page.url)
            or run.product_link.kind
            or SourceKind.ADER
        )
        run.token = SessionToken(
            cookie=marketing_cookie,
            captured_at=datetime.now(UTC),
            source_kind=source_kind,
            source_url=page.url,
        )
        run.session_cookies = self.cookie_store.merge(
            run.session_cookies.values(),
            self.cookie_store.filter_excluded(cookies.values()).values(),
        )
        logger.info(f"{run.label} {self.marketing_cookie_name} cookie found")
        return AcquisitionState.PERSIST_TOKEN

    async def _persist_token(self, run: AcquisitionRun) -> AcquisitionState:
        await self.cookie_store.persist_token(run.token)
        await self.cookie_store.persist(run.session_cookies)
        return AcquisitionState.SUCCESS
