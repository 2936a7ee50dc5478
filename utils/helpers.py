import asyncio
import logging
import random
import re
from typing import Optional
from urllib.parse import urlparse

# Configure logging
logger = logging.getLogger(__name__)

PROXY_PATTERN = re.compile(r"^(https?://)?([^:]+):(\d+)(:([^:]+):(.+))?$")
PROXY_MIN_LENGTH = 5
PROXY_MAX_LENGTH = 200


async def sleep_ms(ms: float) -> None:
    """Sleep for the given number of milliseconds."""
    if ms <= 0:
        return
    await asyncio.sleep(ms / 1000)


async def random_delay(min_ms: float, max_ms: float) -> float:
    """Apply human-like delay with random variation; returns the delay in ms."""
    if not isinstance(min_ms, (int, float)) or not isinstance(max_ms, (int, float)):
        logger.warning("Invalid delay parameters: min=%s, max=%s", min_ms, max_ms)
        return 0.0
    if max_ms < min_ms:
        min_ms, max_ms = max_ms, min_ms
    delay = random.uniform(min_ms, max_ms)
    await sleep_ms(delay)
    return delay


def validate_url(url: str) -> bool:
    """Validate if the given string is a valid http(s) URL."""
    if not isinstance(url, str):
        return False

    result = urlparse(url)
    return result.scheme in ("http", "https") and bool(result.netloc)


def strip_query(url: str) -> str:
    """Drop the query string (and anything after it) from a URL."""
    return url.split("?", 1)[0]


def append_query_params(url: str, query: str) -> str:
    """Append a raw query fragment using '?' or '&' as appropriate."""
    if not query:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def url_host(url: str) -> Optional[str]:
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def validate_proxy_format(proxy: str) -> bool:
    """
    Validate a proxy entry of the form [scheme://]host:port[:user:pass].

    Args:
        proxy: Proxy string to validate

    Returns:
        True if format is valid
    """
    if not isinstance(proxy, str):
        return False
    proxy = proxy.strip()
    if not (PROXY_MIN_LENGTH <= len(proxy) <= PROXY_MAX_LENGTH):
        return False

    match = PROXY_PATTERN.match(proxy)
    if not match:
        return False

    port = int(match.group(3))
    return 1 <= port <= 65535
