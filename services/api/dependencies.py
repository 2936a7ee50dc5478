"""FastAPI dependencies."""
from fastapi import Request

from core.scraper_service import ScraperService


async def get_service(request: Request) -> ScraperService:
    """
    Get the scraper service from app state.

    The service is built during application startup and stored in app.state.

    Example usage:
        ```python
        @router.get("/naver")
        async def scrape(service: ScraperService = Depends(get_service)):
            return await service.fetch_product(url)
        ```
    """
    return request.app.state.service
