"""Configuration using pydantic-settings."""
from functools import lru_cache
from typing import Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings

from core.session_driver import DEFAULT_BROWSER_ARGS, BrowserConfig
from utils.error_handling import ConfigurationError
from utils.helpers import validate_url

DEFAULT_TARGET_URL = "https://smartstore.naver.com/"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    # Admission
    max_concurrent: int = 1
    request_delay_min_ms: int = 1000
    request_delay_max_ms: int = 5000

    # Proxies, comma-separated host:port[:user:pass]
    proxies: str = ""

    # Browser
    headless: bool = False
    target_url: str = DEFAULT_TARGET_URL
    browser_args: str = ""
    browser_timeout_ms: int = 30_000
    navigation_timeout_ms: int = 60_000

    # Files
    cookies_file: str = "naver_cookies.json"
    token_file: str = "na_co_cookie.json"
    settings_file: str = "config/settings.json"

    # Acquire a session at startup when no marketing token exists
    acquire_on_startup: bool = True

    @field_validator("max_concurrent")
    @classmethod
    def _check_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrent must be at least 1")
        return value

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def request_delay_ms(self) -> Tuple[int, int]:
        return (self.request_delay_min_ms, self.request_delay_max_ms)

    def extra_browser_args(self) -> Tuple[str, ...]:
        return tuple(arg.strip() for arg in self.browser_args.split(",") if arg.strip())


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()


def get_target_url(settings: Settings) -> str:
    """Validated storefront base URL."""
    if not validate_url(settings.target_url):
        raise ConfigurationError("Invalid target URL", {"target_url": settings.target_url})
    return settings.target_url


def get_browser_config(settings: Settings) -> BrowserConfig:
    """
    Build and validate the browser launch configuration.

    Raises:
        ConfigurationError: On a non-positive timeout
    """
    config = BrowserConfig(
        headless=settings.headless,
        args=DEFAULT_BROWSER_ARGS + settings.extra_browser_args(),
        timeout_ms=settings.browser_timeout_ms,
        navigation_timeout_ms=settings.navigation_timeout_ms,
    )
    return config.validate()
