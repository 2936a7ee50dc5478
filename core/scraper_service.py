"""
Service facade tying proxies, admission, acquisition and fetching together.
Used by the HTTP API and the command line runner.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

from core.acquisition import AcquisitionStateMachine
from core.admission import AdmissionGate
from core.behavior_simulator import BehaviorSimulator
from core.cookie_store import CookieStore
from core.page_classifier import PageClassifier
from core.product_fetcher import ProductFetcher
from core.proxy_pool import ProxyPool
from core.session_driver import BrowserConfig, SessionDriver
from core.types import AcquisitionResult, FetchFailure, PageState
from utils import helpers
from utils.error_handling import error_reporter
from utils.logger import get_logger

logger = get_logger(__name__)

FetchOutcome = Union[PageState, FetchFailure]

# Failures that point at the exit IP rather than at the session or the page.
PROXY_FAULT_CODES = frozenset({"NAVIGATION_FAILURE", "CLASSIFIED_BLOCK"})


class ScraperService:
    """Owns the long-lived components; each operation borrows an admission slot."""

    def __init__(
        self,
        fetcher: ProductFetcher,
        acquisition: AcquisitionStateMachine,
        cookie_store: CookieStore,
        classifier: PageClassifier,
        proxy_pool: Optional[ProxyPool] = None,
        gate: Optional[AdmissionGate] = None,
        browser_config: Optional[BrowserConfig] = None,
        request_delay_ms: Sequence[float] = (1000, 5000),
        target_url: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.acquisition = acquisition
        self.cookie_store = cookie_store
        self.classifier = classifier
        self.proxy_pool = proxy_pool or ProxyPool()
        self.gate = gate or AdmissionGate()
        self.browser_config = browser_config or BrowserConfig()
        self.request_delay_ms = tuple(request_delay_ms)
        self.target_host = helpers.url_host(target_url) if target_url else None
        self._acquisition_lock = asyncio.Lock()
        self.last_acquisition: Optional[AcquisitionResult] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[Dict[str, Any]] = None,
        *,
        cookies_file: Optional[str] = None,
        token_file: Optional[str] = None,
        proxies: Optional[str] = None,
        max_concurrent: int = 1,
        browser_config: Optional[BrowserConfig] = None,
        request_delay_ms: Sequence[float] = (1000, 5000),
        target_url: Optional[str] = None,
        driver: Optional[SessionDriver] = None,
    ) -> "ScraperService":
        """Build the full component graph from a settings.json-style dict."""
        config = dict(config or {})
        cookie_config = dict(config.get("cookies", {}))
        if cookies_file:
            cookie_config["cookies_file"] = cookies_file
        if token_file:
            cookie_config["token_file"] = token_file

        driver = driver or SessionDriver(config.get("driver", {}))
        cookie_store = CookieStore(cookie_config)
        classifier = PageClassifier(config.get("classifier", {}))
        behavior = BehaviorSimulator(config.get("behavior", {}))

        return cls(
            fetcher=ProductFetcher(driver, cookie_store, config),
            acquisition=AcquisitionStateMachine(
                driver, cookie_store, classifier, behavior, config
            ),
            cookie_store=cookie_store,
            classifier=classifier,
            proxy_pool=ProxyPool(proxies),
            gate=AdmissionGate(max_concurrent),
            browser_config=browser_config,
            request_delay_ms=request_delay_ms,
            target_url=target_url,
        )

    def is_valid_product_url(self, url: Optional[str]) -> bool:
        """True for http(s) URLs on a storefront domain or the configured target host."""
        if not url or not helpers.validate_url(url):
            return False
        host = helpers.url_host(url)
        if self.target_host and host == self.target_host:
            return True
        return self.classifier.is_storefront_url(host)

    async def fetch_product(self, url: str) -> FetchOutcome:
        proxy = self.proxy_pool.get_random_proxy()
        logger.info(f"Processing request for: {url} (proxy: {proxy})")
        await helpers.random_delay(*self.request_delay_ms)
        async with self.gate.slot():
            outcome = await self.fetcher.fetch(url, proxy, self.browser_config)
        if isinstance(outcome, FetchFailure) and outcome.error in PROXY_FAULT_CODES:
            self.proxy_pool.mark_failed(proxy)
        return outcome

    async def fetch_many(self, urls: Sequence[str]) -> List[FetchOutcome]:
        """Fetch several URLs, round-robin over proxies, within the admission cap."""

        async def fetch_one(url: str) -> FetchOutcome:
            proxy = self.proxy_pool.get_next_proxy()
            await helpers.random_delay(*self.request_delay_ms)
            async with self.gate.slot():
                return await self.fetcher.fetch(url, proxy, self.browser_config)

        return list(await asyncio.gather(*(fetch_one(url) for url in urls)))

    async def refresh_session(self) -> AcquisitionResult:
        """Run acquisition now; concurrent callers queue behind one another."""
        async with self._acquisition_lock:
            proxy = self.proxy_pool.get_random_proxy()
            async with self.gate.slot():
                result = await self.acquisition.run(proxy, self.browser_config)
            self.last_acquisition = result
            if result.success:
                logger.info(f"Session acquired after {result.attempts} attempt(s)")
            else:
                logger.warning(f"Session acquisition failed: {result.error}")
            return result

    async def ensure_session(self) -> Optional[AcquisitionResult]:
        """Acquire a session unless a marketing-token record already exists."""
        if self.cookie_store.has_token():
            logger.info("Marketing token already present, skipping acquisition")
            return None
        logger.info("Marketing token not found, starting acquisition")
        return await self.refresh_session()

    def status(self) -> Dict[str, Any]:
        last = self.last_acquisition
        return {
            "marketing_token": self.cookie_store.has_token(),
            "snapshot": self.cookie_store.has_snapshot(),
            "active_sessions": self.gate.active,
            "waiting": self.gate.waiting,
            "max_concurrent": self.gate.max_concurrent,
            "proxies": len(self.proxy_pool),
            "last_acquisition": (
                {"success": last.success, "attempts": last.attempts, "error": last.error}
                if last
                else None
            ),
            "errors": error_reporter.generate_report()["error_types"],
        }
