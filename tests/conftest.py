"""Shared fixtures: an in-memory stand-in for the Playwright object graph."""

from __future__ import annotations

import os

os.environ.setdefault("SCRAPER_LOG_FILE", "")

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402

from utils import helpers  # noqa: E402
from utils.error_handling import error_reporter  # noqa: E402


class FakeMouse:
    def __init__(self) -> None:
        self.moves: List[tuple] = []
        self.clicks: List[tuple] = []

    async def move(self, x: float, y: float, steps: int = 1) -> None:
        self.moves.append((x, y, steps))

    async def click(self, x: float, y: float) -> None:
        self.clicks.append((x, y))


class FakeKeyboard:
    def __init__(self) -> None:
        self.pressed: List[str] = []

    async def press(self, key: str) -> None:
        self.pressed.append(key)


class FakeElement:
    """Element handle; ``opens_tab`` makes a click open ``href`` in a new page.

    ``click_error`` and ``href_error`` are raised from ``click()`` and from
    reading the href, the way a detached element fails.
    """

    def __init__(
        self,
        href: str = "",
        visible: bool = True,
        excluded: bool = False,
        opens_tab: bool = False,
        click_error: Optional[BaseException] = None,
        href_error: Optional[BaseException] = None,
    ) -> None:
        self.href = href
        self.visible = visible
        self.excluded = excluded
        self.opens_tab = opens_tab
        self.click_error = click_error
        self.href_error = href_error
        self.page: Optional["FakePage"] = None
        self.hovered = False
        self.clicked = 0

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if "el.href" in script:
            if self.href_error is not None:
                raise self.href_error
            return self.href
        if "getBoundingClientRect" in script:
            return self.visible
        if "matches" in script:
            return self.excluded
        return None

    async def is_visible(self) -> bool:
        return self.visible

    async def hover(self) -> None:
        self.hovered = True

    async def click(self) -> None:
        self.clicked += 1
        if self.click_error is not None:
            raise self.click_error
        if self.opens_tab and self.page is not None:
            new_page = await self.page.context.new_page()
            new_page.url = self.href


class FakePage:
    def __init__(self, context: "FakeContext") -> None:
        self.context = context
        self.env = context.env
        self.url = "about:blank"
        self.headers: Dict[str, str] = {}
        self.mouse = FakeMouse()
        self.keyboard = FakeKeyboard()
        self.closed = False
        self.default_timeout: Optional[int] = None
        self.default_navigation_timeout: Optional[int] = None

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True

    def set_default_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.default_navigation_timeout = timeout

    async def set_extra_http_headers(self, headers: Dict[str, str]) -> None:
        self.headers = dict(headers)

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[int] = None):
        self.env.navigations.append(
            {"url": url, "referer": self.headers.get("Referer"), "wait_until": wait_until}
        )
        if self.env.goto_error is not None:
            raise self.env.goto_error
        self.url = url
        return None

    async def title(self) -> str:
        return self.env.title_for(self.url)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if "__PRELOADED_STATE__" in script:
            return self.env.preloaded_state
        self.env.evaluations.append((script, arg))
        return None

    async def query_selector(self, selector: str) -> Optional[FakeElement]:
        elements = await self.query_selector_all(selector)
        return elements[0] if elements else None

    async def query_selector_all(self, selector: str) -> List[FakeElement]:
        elements = list(self.env.elements.get(selector, []))
        for element in elements:
            element.page = self
        return elements

    async def wait_for_selector(self, selector: str, timeout: Optional[int] = None):
        return None

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[int] = None):
        return None

    async def wait_for_function(self, script: str, arg: Any = None, timeout: Optional[int] = None):
        return None


class FakeContext:
    def __init__(self, env: "FakeBrowserEnv", options: Dict[str, Any]) -> None:
        self.env = env
        self.options = options
        self.pages: List[FakePage] = []
        self._cookies: List[Dict[str, Any]] = [dict(c) for c in env.cookies]
        self.added_cookies: List[Dict[str, Any]] = []
        self.init_scripts: List[str] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def cookies(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self._cookies]

    async def add_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        self.added_cookies.extend(cookies)
        self._cookies.extend(cookies)

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, env: "FakeBrowserEnv") -> None:
        self.env = env
        self.contexts: List[FakeContext] = []
        self.closed = False
        self.close_calls = 0

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self.env, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.close_calls += 1
        if self.env.browser_close_failures >= self.close_calls:
            raise RuntimeError("browser close failed")
        self.closed = True


class FakeChromium:
    def __init__(self, env: "FakeBrowserEnv") -> None:
        self.env = env

    async def launch(self, **options: Any) -> FakeBrowser:
        self.env.launch_options.append(options)
        browser = FakeBrowser(self.env)
        self.env.browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self, env: "FakeBrowserEnv") -> None:
        self.chromium = FakeChromium(env)
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class _FakePlaywrightManager:
    def __init__(self, env: "FakeBrowserEnv") -> None:
        self.env = env

    async def start(self) -> FakePlaywright:
        playwright = FakePlaywright(self.env)
        self.env.playwrights.append(playwright)
        return playwright


class FakeBrowserEnv:
    """Scripted browser world; pass the instance as ``playwright_factory``."""

    def __init__(self) -> None:
        self.titles: Dict[str, str] = {}
        self.elements: Dict[str, List[FakeElement]] = {}
        self.cookies: List[Dict[str, Any]] = []
        self.preloaded_state: Any = None
        self.goto_error: Optional[BaseException] = None
        self.browser_close_failures = 0

        self.navigations: List[Dict[str, Any]] = []
        self.evaluations: List[tuple] = []
        self.launch_options: List[Dict[str, Any]] = []
        self.playwrights: List[FakePlaywright] = []
        self.browsers: List[FakeBrowser] = []

    def __call__(self) -> _FakePlaywrightManager:
        return _FakePlaywrightManager(self)

    def title_for(self, url: str) -> str:
        for fragment, title in self.titles.items():
            if fragment in url:
                return title
        return ""

    @property
    def contexts(self) -> List[FakeContext]:
        return [context for browser in self.browsers for context in browser.contexts]


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    """Randomized waits resolve immediately."""

    async def _sleep_ms(ms: float) -> None:
        return None

    monkeypatch.setattr(helpers, "sleep_ms", _sleep_ms)


@pytest.fixture(autouse=True)
def reset_error_reporter():
    error_reporter.reset()
    yield
    error_reporter.reset()


@pytest.fixture
def browser_env() -> FakeBrowserEnv:
    return FakeBrowserEnv()


@pytest.fixture
def fake_element():
    return FakeElement


@pytest.fixture
def cookie_config(tmp_path) -> Dict[str, Any]:
    return {
        "cookies_file": str(tmp_path / "naver_cookies.json"),
        "token_file": str(tmp_path / "na_co_cookie.json"),
    }
