"""Session acquisition endpoint."""
from fastapi import APIRouter, Depends

from ..dependencies import get_service
from ..models import AcquisitionResponse
from core.scraper_service import ScraperService


router = APIRouter()


@router.post("/session/refresh", response_model=AcquisitionResponse)
async def refresh_session(service: ScraperService = Depends(get_service)):
    """
    Run session acquisition now and persist fresh cookies and token.

    Blocks until the acquisition finishes; concurrent calls queue.

    Example response:
        ```json
        {
            "success": true,
            "attempts": 1,
            "error": null,
            "source_kind": "smartstore"
        }
        ```
    """
    result = await service.refresh_session()
    return {
        "success": result.success,
        "attempts": result.attempts,
        "error": result.error,
        "source_kind": result.token.source_kind.value if result.token else None,
    }
