"""Pydantic models for API request/response schemas."""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any


class PreloadedStateResponse(BaseModel):
    """Embedded product state extracted from a storefront page."""
    preloadedState: Dict[str, Any] = Field(..., description="window.__PRELOADED_STATE__ contents")

    class Config:
        json_schema_extra = {
            "example": {
                "preloadedState": {
                    "product": {"A": {"id": 123456, "name": "Example product"}}
                }
            }
        }


class ErrorResponse(BaseModel):
    """
    Error payload.

    ``productUrl`` is present only for scraping failures.
    """
    error: str = Field(..., description="Error code or summary")
    message: Optional[str] = Field(default=None, description="Human readable detail")
    productUrl: Optional[str] = Field(default=None, description="Requested product URL")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "EXTRACTION_FAILURE",
                "message": "__PRELOADED_STATE__ not found",
                "productUrl": "https://smartstore.naver.com/store/products/123456"
            }
        }


class AcquisitionResponse(BaseModel):
    """Result of an on-demand session acquisition."""
    success: bool = Field(..., description="Whether cookies and token were captured")
    attempts: int = Field(..., description="Attempts used")
    error: Optional[str] = Field(default=None, description="Last error code on failure")
    source_kind: Optional[str] = Field(default=None, description="smartstore or ader")


class HealthResponse(BaseModel):
    """Service health with session file status."""
    status: str = Field(default="ok")
    marketing_token: bool = Field(..., description="Marketing token record exists")
    snapshot: bool = Field(..., description="Cookie snapshot exists")
    active_sessions: int = Field(default=0)
    waiting: int = Field(default=0)
    max_concurrent: int = Field(default=1)
    proxies: int = Field(default=0)
    last_acquisition: Optional[Dict[str, Any]] = Field(default=None)
    errors: Dict[str, int] = Field(default_factory=dict)
