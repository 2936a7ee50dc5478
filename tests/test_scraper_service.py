"""Tests for the service facade used by the API and the command line."""

import asyncio
import json

import pytest

from core.admission import AdmissionGate
from core.cookie_store import CookieStore
from core.page_classifier import PageClassifier
from core.proxy_pool import ProxyPool
from core.scraper_service import ScraperService
from core.session_driver import SessionDriver
from core.types import AcquisitionResult, FetchFailure, PageState
from scripts.run_scraper import read_urls, run_batch


class _RecordingFetcher:
    def __init__(self, fail_urls=(), fail_error="EXTRACTION_FAILURE"):
        self.fail_urls = set(fail_urls)
        self.fail_error = fail_error
        self.calls = []
        self.running = 0
        self.peak = 0

    async def fetch(self, url, proxy, browser_config):
        self.calls.append((url, proxy.server))
        self.running += 1
        self.peak = max(self.peak, self.running)
        await asyncio.sleep(0.01)
        self.running -= 1
        if url in self.fail_urls:
            return FetchFailure(self.fail_error, "fetch failed", url, attempts=3)
        return PageState(url, {"product": {"url": url}})


class _RecordingAcquisition:
    def __init__(self, success=True):
        self.success = success
        self.runs = 0

    async def run(self, proxy, browser_config):
        self.runs += 1
        return AcquisitionResult(
            success=self.success,
            attempts=1 if self.success else 3,
            error=None if self.success else "CLASSIFIED_BLOCK",
        )


def _service(cookie_config, fetcher=None, acquisition=None, proxies=None, max_concurrent=1, target_url=None):
    return ScraperService(
        fetcher=fetcher or _RecordingFetcher(),
        acquisition=acquisition or _RecordingAcquisition(),
        cookie_store=CookieStore(cookie_config),
        classifier=PageClassifier(),
        proxy_pool=ProxyPool(proxies),
        gate=AdmissionGate(max_concurrent),
        target_url=target_url,
    )


def test_is_valid_product_url(cookie_config):
    service = _service(cookie_config)
    assert service.is_valid_product_url("https://smartstore.naver.com/shop/products/1")
    assert service.is_valid_product_url("https://ader.naver.com/v1/x")
    assert not service.is_valid_product_url("https://example.com/smartstore.naver.com")
    assert not service.is_valid_product_url("smartstore.naver.com/shop")
    assert not service.is_valid_product_url(None)
    assert not service.is_valid_product_url("https://brand.naver.com/shop/products/1")


def test_target_host_is_accepted(cookie_config):
    service = _service(cookie_config, target_url="https://brand.naver.com/")
    assert service.is_valid_product_url("https://brand.naver.com/shop/products/1")
    assert service.is_valid_product_url("https://smartstore.naver.com/shop/products/1")
    assert not service.is_valid_product_url("https://example.com/products/1")


@pytest.mark.asyncio
async def test_navigation_failure_marks_proxy_failed(cookie_config):
    url = "https://smartstore.naver.com/shop/products/1"
    fetcher = _RecordingFetcher([url], fail_error="NAVIGATION_FAILURE")
    service = _service(cookie_config, fetcher=fetcher, proxies="1.1.1.1:80")

    outcome = await service.fetch_product(url)

    assert isinstance(outcome, FetchFailure)
    assert service.proxy_pool.failed_proxies == {"1.1.1.1:80"}


@pytest.mark.asyncio
@pytest.mark.parametrize("error", ["MISSING_SNAPSHOT", "EXTRACTION_FAILURE"])
async def test_session_and_page_failures_keep_proxy(cookie_config, error):
    url = "https://smartstore.naver.com/shop/products/1"
    fetcher = _RecordingFetcher([url], fail_error=error)
    service = _service(cookie_config, fetcher=fetcher, proxies="1.1.1.1:80")

    outcome = await service.fetch_product(url)

    assert outcome.error == error
    assert service.proxy_pool.failed_proxies == set()


@pytest.mark.asyncio
async def test_fetch_many_respects_admission_cap(cookie_config):
    fetcher = _RecordingFetcher()
    service = _service(
        cookie_config, fetcher=fetcher, proxies="1.1.1.1:80,2.2.2.2:80", max_concurrent=2
    )
    urls = [f"https://smartstore.naver.com/shop/products/{i}" for i in range(5)]

    outcomes = await service.fetch_many(urls)

    assert [o.product_url for o in outcomes] == urls
    assert fetcher.peak <= 2
    assert {server for _, server in fetcher.calls} == {"1.1.1.1:80", "2.2.2.2:80"}


@pytest.mark.asyncio
async def test_ensure_session_skips_when_token_exists(cookie_config):
    acquisition = _RecordingAcquisition()
    service = _service(cookie_config, acquisition=acquisition)
    service.cookie_store.token_file.write_text("{}", encoding="utf-8")

    assert await service.ensure_session() is None
    assert acquisition.runs == 0


@pytest.mark.asyncio
async def test_ensure_session_acquires_without_token(cookie_config):
    acquisition = _RecordingAcquisition(success=False)
    service = _service(cookie_config, acquisition=acquisition)

    result = await service.ensure_session()

    assert result.success is False
    assert acquisition.runs == 1
    assert service.status()["last_acquisition"] == {
        "success": False,
        "attempts": 3,
        "error": "CLASSIFIED_BLOCK",
    }


def test_status_reports_files_and_gate(cookie_config):
    status = _service(cookie_config, proxies="1.1.1.1:80", max_concurrent=3).status()

    assert status["marketing_token"] is False
    assert status["snapshot"] is False
    assert status["max_concurrent"] == 3
    assert status["proxies"] == 1
    assert status["last_acquisition"] is None


def test_from_config_wires_components(cookie_config, browser_env):
    service = ScraperService.from_config(
        {"fetch": {"max_attempts": 2}, "acquisition": {"max_attempts": 4}},
        cookies_file=cookie_config["cookies_file"],
        token_file=cookie_config["token_file"],
        proxies="1.1.1.1:80",
        max_concurrent=2,
        driver=SessionDriver(playwright_factory=browser_env),
    )

    assert service.fetcher.max_attempts == 2
    assert service.acquisition.max_attempts == 4
    assert str(service.cookie_store.cookies_file) == cookie_config["cookies_file"]
    assert service.fetcher.driver is service.acquisition.driver
    assert service.gate.max_concurrent == 2


def test_read_urls_skips_blanks_and_comments(tmp_path):
    path = tmp_path / "urls.txt"
    path.write_text("# products\nhttps://a/1\n\n  https://a/2  \n", encoding="utf-8")
    assert read_urls(path) == ["https://a/1", "https://a/2"]


@pytest.mark.asyncio
async def test_run_batch_writes_json_lines(cookie_config, tmp_path):
    good = "https://smartstore.naver.com/shop/products/1"
    bad = "https://smartstore.naver.com/shop/products/2"
    service = _service(cookie_config, fetcher=_RecordingFetcher([bad]))
    output = tmp_path / "out" / "results.jsonl"

    exit_code = await run_batch(service, [good, bad, "https://example.com/x"], output)

    assert exit_code == 1
    records = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
    assert records[0] == {"productUrl": good, "preloadedState": {"product": {"url": good}}}
    assert records[1]["error"] == "EXTRACTION_FAILURE"
    assert len(records) == 2
