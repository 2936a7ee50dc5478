"""Tests for the session acquisition state machine against a scripted browser."""

import asyncio
import json

import pytest
from playwright.async_api import Error as PlaywrightError

from core.acquisition import (
    PRODUCT_LINK_SELECTOR,
    SHOPPING_ENTRY_SELECTORS,
    SHOPPING_URL,
    AcquisitionState,
    AcquisitionStateMachine,
    ProductLink,
)
from core.cookie_store import CookieStore
from core.session_driver import SessionDriver
from core.types import SourceKind, StepResult
from utils.error_handling import error_reporter

SESSION_COOKIE = {
    "name": "X-Wtm-Cpt-Tk",
    "value": "session-token",
    "domain": ".shopping.naver.com",
    "path": "/",
    "expires": -1,
}
MARKETING_COOKIE = {
    "name": "NA_CO",
    "value": "ct%3Dabc",
    "domain": ".naver.com",
    "path": "/",
    "expires": -1,
}
SUSPICIOUS_COOKIE = {"name": "sus_val", "value": "1", "domain": ".naver.com", "path": "/"}


@pytest.fixture
def store(cookie_config) -> CookieStore:
    return CookieStore(cookie_config)


@pytest.fixture
def machine(browser_env, store) -> AcquisitionStateMachine:
    driver = SessionDriver(playwright_factory=browser_env)
    return AcquisitionStateMachine(driver, store)


@pytest.mark.asyncio
async def test_every_attempt_blocked_returns_failure_after_three_cycles(browser_env, machine, store):
    browser_env.titles = {"shopping.naver.com": "보안문자 확인"}

    result = await machine.run()

    assert result.success is False
    assert result.attempts == 3
    assert result.error == "CLASSIFIED_BLOCK"
    assert len(browser_env.playwrights) == 3
    assert all(p.stopped for p in browser_env.playwrights)
    assert all(b.closed for b in browser_env.browsers)
    assert error_reporter.generate_report()["error_types"] == {"CLASSIFIED_BLOCK": 3}
    assert not store.cookies_file.exists()
    assert not store.token_file.exists()


@pytest.mark.asyncio
async def test_launch_failure_is_retried_then_reported(browser_env, machine):
    async def failing_launch(**options):
        raise RuntimeError("browser executable missing")

    original_factory = machine.driver._playwright_factory

    def factory():
        manager = original_factory()
        original_start = manager.start

        async def start():
            playwright = await original_start()
            playwright.chromium.launch = failing_launch
            return playwright

        manager.start = start
        return manager

    machine.driver._playwright_factory = factory

    result = await machine.run()

    assert not result.success
    assert result.error == "RuntimeError"
    assert len(browser_env.playwrights) == 3
    assert all(p.stopped for p in browser_env.playwrights)


@pytest.mark.asyncio
async def test_missing_session_cookie_fails_attempt_after_rechecks(browser_env, machine):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑"}

    result = await machine.run()

    assert not result.success
    assert result.error == "MISSING_TOKEN"
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_session_cookie_rechecked_five_times_per_attempt(browser_env, machine):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑"}

    async def quick_extended(page):
        return StepResult.ok("extended_sequence")

    scrolls = []
    harvests = []
    scroll_down = machine.behavior.scroll_down
    harvest = machine._harvest_cookies

    async def counting_scroll(page):
        scrolls.append(page.url)
        return await scroll_down(page)

    async def counting_harvest(page):
        harvests.append(page.url)
        return await harvest(page)

    machine.behavior.run_extended_sequence = quick_extended
    machine.behavior.scroll_down = counting_scroll
    machine._harvest_cookies = counting_harvest

    result = await machine.run()

    assert result.error == "MISSING_TOKEN"
    assert len(scrolls) == 3 * 5
    assert len(harvests) == 3 * (1 + 5)
    assert set(scrolls) == {SHOPPING_URL}


@pytest.mark.asyncio
async def test_full_acquisition_persists_snapshot_and_token(browser_env, fake_element, machine, store):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑", "smartstore": "상품 상세"}
    browser_env.cookies = [SESSION_COOKIE, MARKETING_COOKIE, SUSPICIOUS_COOKIE]
    product_href = "https://smartstore.naver.com/shop/products/1234"
    browser_env.elements[PRODUCT_LINK_SELECTOR] = [
        fake_element(href="https://shopping.naver.com/window/x"),
        fake_element(href=product_href, opens_tab=True),
    ]

    result = await machine.run()

    assert result.success is True
    assert result.attempts == 1
    assert result.token.source_kind is SourceKind.SMARTSTORE
    assert result.token.cookie.value == "ct%3Dabc"
    assert result.token.source_url == product_href
    assert result.states_visited[0] == AcquisitionState.LAUNCH.value
    assert result.states_visited[-1] == AcquisitionState.SUCCESS.value

    snapshot = json.loads(store.cookies_file.read_text(encoding="utf-8"))
    names = {cookie["name"] for cookie in snapshot}
    assert "X-Wtm-Cpt-Tk" in names
    assert "sus_val" not in names

    token_record = json.loads(store.token_file.read_text(encoding="utf-8"))
    assert token_record["productType"] == "smartstore"
    assert token_record["url"] == product_href

    assert browser_env.navigations[0]["url"] == "https://www.naver.com"
    assert browser_env.playwrights[0].stopped


def test_select_product_link_prefers_smartstore_then_ader(machine):
    smartstore = ProductLink(None, "https://smartstore.naver.com/a", SourceKind.SMARTSTORE)
    ader = ProductLink(None, "https://ader.naver.com/b", SourceKind.ADER)
    other = [ProductLink(None, f"https://shopping.naver.com/{i}") for i in range(5)]

    assert machine.select_product_link(other + [ader, smartstore]) is smartstore
    assert machine.select_product_link(other + [ader]) is ader
    for _ in range(20):
        assert machine.select_product_link(other) in other[:3]
    assert machine.select_product_link([]) is None


@pytest.mark.asyncio
async def test_detached_shopping_entry_falls_through_to_next_entry(browser_env, fake_element, machine):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑"}
    browser_env.cookies = [SESSION_COOKIE]
    detached = fake_element(
        href=SHOPPING_URL, click_error=PlaywrightError("Element is not attached to the DOM")
    )
    working = fake_element(href=SHOPPING_URL, opens_tab=True)
    browser_env.elements[SHOPPING_ENTRY_SELECTORS[0]] = [detached]
    browser_env.elements[SHOPPING_ENTRY_SELECTORS[1]] = [working]

    result = await machine.run()

    # No product links are scripted, so each attempt ends after the snapshot is saved.
    assert result.error == "NAVIGATION_FAILURE"
    assert result.states_visited.count(AcquisitionState.VALIDATE_STOREFRONT_TAB.value) == 3
    assert result.states_visited.count(AcquisitionState.PERSIST_SESSION.value) == 3
    assert detached.clicked == 3
    assert working.clicked == 3
    assert [n["url"] for n in browser_env.navigations] == ["https://www.naver.com"] * 3
    assert len(browser_env.contexts) == 3


@pytest.mark.asyncio
async def test_failing_entries_fall_back_to_direct_shopping_page(browser_env, fake_element, machine, store):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑"}
    browser_env.cookies = [SESSION_COOKIE]
    detached = fake_element(
        href=SHOPPING_URL, click_error=PlaywrightError("Element is not attached to the DOM")
    )
    for selector in SHOPPING_ENTRY_SELECTORS:
        browser_env.elements[selector] = [detached]

    result = await machine.run()

    assert result.error == "NAVIGATION_FAILURE"
    assert detached.clicked == 3
    assert AcquisitionState.VALIDATE_STOREFRONT_TAB.value in result.states_visited
    shopping = [n for n in browser_env.navigations if n["url"] == SHOPPING_URL]
    assert len(shopping) == 3
    assert all(n["referer"] == "https://www.naver.com" for n in shopping)
    # Each direct page lives in a second context next to the portal's.
    assert len(browser_env.contexts) == 6
    assert store.cookies_file.exists()


@pytest.mark.asyncio
async def test_unreadable_product_link_is_skipped(browser_env, fake_element, machine):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑", "smartstore": "상품 상세"}
    browser_env.cookies = [SESSION_COOKIE, MARKETING_COOKIE]
    product_href = "https://smartstore.naver.com/shop/products/1234"
    browser_env.elements[PRODUCT_LINK_SELECTOR] = [
        fake_element(href_error=PlaywrightError("Element is not attached to the DOM")),
        fake_element(href=product_href, opens_tab=True),
    ]

    result = await machine.run()

    assert result.success is True
    assert result.attempts == 1
    assert result.token.source_url == product_href


@pytest.mark.asyncio
async def test_captcha_on_product_page_fails_attempt(browser_env, fake_element, machine, store):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑", "smartstore": "보안문자 확인"}
    browser_env.cookies = [SESSION_COOKIE, MARKETING_COOKIE]
    browser_env.elements[PRODUCT_LINK_SELECTOR] = [
        fake_element(href="https://smartstore.naver.com/shop/products/1234", opens_tab=True),
    ]

    result = await machine.run()

    assert result.success is False
    assert result.attempts == 3
    assert result.error == "CLASSIFIED_BLOCK"
    assert result.states_visited.count(AcquisitionState.VALIDATE_PRODUCT_PAGE.value) == 3
    assert AcquisitionState.HARVEST_MARKETING_COOKIE.value not in result.states_visited
    assert store.cookies_file.exists()
    assert not store.token_file.exists()
    assert all(p.stopped for p in browser_env.playwrights)


@pytest.mark.asyncio
async def test_product_click_over_cap_is_navigation_failure(browser_env, fake_element, machine):
    browser_env.titles = {"shopping.naver.com": "네이버쇼핑"}
    browser_env.cookies = [SESSION_COOKIE]
    browser_env.elements[PRODUCT_LINK_SELECTOR] = [
        fake_element(href="https://smartstore.naver.com/shop/products/1234"),
    ]

    async def never_loads(run):
        await asyncio.Event().wait()

    machine.product_click_timeout_s = 0.01
    machine._open_product = never_loads

    result = await machine.run()

    assert result.success is False
    assert result.attempts == 3
    assert result.error == "NAVIGATION_FAILURE"
    assert result.states_visited.count(AcquisitionState.CLICK_PRODUCT.value) == 3
    assert AcquisitionState.VALIDATE_PRODUCT_PAGE.value not in result.states_visited
    assert all(b.closed for b in browser_env.browsers)
