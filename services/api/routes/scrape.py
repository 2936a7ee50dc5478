"""Product state scraping endpoint."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..dependencies import get_service
from ..models import ErrorResponse, PreloadedStateResponse
from core.scraper_service import ScraperService
from core.types import FetchFailure
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/naver",
    response_model=PreloadedStateResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def scrape_product(
    productUrl: Optional[str] = Query(default=None, description="Storefront product URL"),
    service: ScraperService = Depends(get_service),
):
    """
    Scrape ``window.__PRELOADED_STATE__`` for a storefront product.

    Example request:
        ``GET /naver?productUrl=https://smartstore.naver.com/store/products/123456``

    Example response (failure, 400):
        ```json
        {
            "error": "EXTRACTION_FAILURE",
            "message": "__PRELOADED_STATE__ not found",
            "productUrl": "https://smartstore.naver.com/store/products/123456"
        }
        ```
    """
    if not productUrl:
        return JSONResponse(status_code=400, content={"error": "productUrl is required"})

    if not service.is_valid_product_url(productUrl):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid Naver SmartStore URL",
                "message": "URL must be a valid Naver SmartStore product URL",
            },
        )

    try:
        outcome = await service.fetch_product(productUrl)
    except Exception as e:
        logger.exception(f"API error: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(e)},
        )

    if isinstance(outcome, FetchFailure):
        logger.error(f"Scraper error: {outcome.error} - {outcome.message}")
        return JSONResponse(status_code=400, content=outcome.to_response())

    return {"preloadedState": outcome.preloaded_state}
