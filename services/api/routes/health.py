"""Health check endpoint."""
from fastapi import APIRouter, Depends

from ..dependencies import get_service
from ..models import HealthResponse
from core.scraper_service import ScraperService


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(service: ScraperService = Depends(get_service)):
    """
    Health check with session state.

    Reports whether the cookie snapshot and marketing token exist, plus
    admission gate usage and error counts.

    Example response:
        ```json
        {
            "status": "ok",
            "marketing_token": true,
            "snapshot": true,
            "active_sessions": 0,
            "waiting": 0,
            "max_concurrent": 1,
            "proxies": 2,
            "last_acquisition": null,
            "errors": {}
        }
        ```
    """
    return {"status": "ok", **service.status()}
