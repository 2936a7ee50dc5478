"""Tests for the HTTP routes using a stand-in scraper service."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.page_classifier import PageClassifier
from core.types import (
    AcquisitionResult,
    Cookie,
    FetchFailure,
    PageState,
    SessionToken,
    SourceKind,
)
from services.api.dependencies import get_service
from services.api.routes import health, scrape, session
from utils import helpers

PRODUCT_URL = "https://smartstore.naver.com/shop/products/1234"


class _FakeService:
    def __init__(self, outcome: Any = None, error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.requested: List[str] = []
        self.refreshes = 0
        self.classifier = PageClassifier()

    def is_valid_product_url(self, url: str) -> bool:
        return helpers.validate_url(url) and self.classifier.is_storefront_url(url)

    async def fetch_product(self, url: str):
        self.requested.append(url)
        if self.error is not None:
            raise self.error
        return self.outcome

    async def refresh_session(self) -> AcquisitionResult:
        self.refreshes += 1
        token = SessionToken(
            cookie=Cookie("NA_CO", "x", ".naver.com"),
            captured_at=datetime(2026, 1, 1),
            source_kind=SourceKind.ADER,
            source_url="https://ader.naver.com/x",
        )
        return AcquisitionResult(success=True, attempts=2, token=token)

    def status(self) -> Dict[str, Any]:
        return {
            "marketing_token": True,
            "snapshot": False,
            "active_sessions": 0,
            "waiting": 0,
            "max_concurrent": 2,
            "proxies": 1,
            "last_acquisition": None,
            "errors": {"NAVIGATION_FAILURE": 1},
        }


def _create_test_app(service: _FakeService) -> FastAPI:
    app = FastAPI()

    async def _get_service_override():
        return service

    app.dependency_overrides[get_service] = _get_service_override
    app.include_router(scrape.router)
    app.include_router(session.router, prefix="/api")
    app.include_router(health.router, prefix="/api")
    return app


def test_health_check_reports_session_state() -> None:
    with TestClient(_create_test_app(_FakeService())) as client:
        response = client.get("/api/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["marketing_token"] is True
    assert payload["snapshot"] is False
    assert payload["max_concurrent"] == 2
    assert payload["errors"] == {"NAVIGATION_FAILURE": 1}


def test_scrape_returns_preloaded_state() -> None:
    service = _FakeService(PageState(PRODUCT_URL, {"product": {"id": 1234}}))

    with TestClient(_create_test_app(service)) as client:
        response = client.get("/naver", params={"productUrl": PRODUCT_URL})

    assert response.status_code == 200
    assert response.json() == {"preloadedState": {"product": {"id": 1234}}}
    assert service.requested == [PRODUCT_URL]


def test_scrape_requires_product_url() -> None:
    with TestClient(_create_test_app(_FakeService())) as client:
        response = client.get("/naver")

    assert response.status_code == 400
    assert response.json() == {"error": "productUrl is required"}


@pytest.mark.parametrize("url", ["https://example.com/products/1", "not a url"])
def test_scrape_rejects_non_storefront_urls(url: str) -> None:
    service = _FakeService()
    with TestClient(_create_test_app(service)) as client:
        response = client.get("/naver", params={"productUrl": url})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid Naver SmartStore URL"
    assert service.requested == []


def test_scrape_failure_is_structured_400() -> None:
    failure = FetchFailure("EXTRACTION_FAILURE", "__PRELOADED_STATE__ not found", PRODUCT_URL)

    with TestClient(_create_test_app(_FakeService(failure))) as client:
        response = client.get("/naver", params={"productUrl": PRODUCT_URL})

    assert response.status_code == 400
    assert response.json() == {
        "error": "EXTRACTION_FAILURE",
        "message": "__PRELOADED_STATE__ not found",
        "productUrl": PRODUCT_URL,
    }


def test_unexpected_error_is_500() -> None:
    service = _FakeService(error=RuntimeError("disk full"))

    with TestClient(_create_test_app(service)) as client:
        response = client.get("/naver", params={"productUrl": PRODUCT_URL})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "message": "disk full"}


def test_session_refresh_reports_result() -> None:
    service = _FakeService()

    with TestClient(_create_test_app(service)) as client:
        response = client.post("/api/session/refresh")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "attempts": 2,
        "error": None,
        "source_kind": "ader",
    }
    assert service.refreshes == 1
