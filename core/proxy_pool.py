"""
Proxy pool for browser sessions.
Parses the configured proxy list, drops malformed entries and hands out
proxies either at random or round-robin.
"""

import random
from typing import Iterable, List, Optional, Union

from core.types import ProxyConfig
from utils.helpers import validate_proxy_format
from utils.logger import get_logger

logger = get_logger(__name__)


def parse_proxy_list(value: Union[str, Iterable[str], None]) -> List[str]:
    """Split a comma-separated proxy list and keep only well-formed entries."""
    if not value:
        return []
    entries = value.split(",") if isinstance(value, str) else list(value)

    proxies = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        if not validate_proxy_format(entry):
            logger.warning(f"Skipping malformed proxy entry: {entry[:50]}")
            continue
        proxies.append(entry)
    return proxies


class ProxyPool:
    """Selection over a fixed proxy list; an empty pool means direct connections."""

    def __init__(self, proxies: Union[str, Iterable[str], None] = None):
        self.proxies = parse_proxy_list(proxies)
        self.current_index = 0
        self.failed_proxies = set()
        logger.info(f"ProxyPool initialized with {len(self.proxies)} proxies")

    def __len__(self) -> int:
        return len(self.proxies)

    def _available(self) -> List[str]:
        healthy = [p for p in self.proxies if p not in self.failed_proxies]
        return healthy or self.proxies

    def get_random_proxy(self) -> ProxyConfig:
        available = self._available()
        if not available:
            return ProxyConfig()
        proxy = random.choice(available)
        logger.debug(f"Selected proxy: {proxy.split(':')[0]}")
        return ProxyConfig.parse(proxy)

    def get_next_proxy(self) -> ProxyConfig:
        """Round-robin selection skipping proxies marked as failed."""
        if not self.proxies:
            return ProxyConfig()

        proxies_count = len(self.proxies)
        for _ in range(proxies_count):
            proxy = self.proxies[self.current_index]
            self.current_index = (self.current_index + 1) % proxies_count
            if proxy in self.failed_proxies:
                continue
            return ProxyConfig.parse(proxy)

        # Every proxy failed at least once; start over.
        self.failed_proxies.clear()
        return self.get_next_proxy()

    def mark_failed(self, proxy: Optional[ProxyConfig]) -> None:
        if proxy is None or not proxy.enabled:
            return
        for entry in self.proxies:
            if ProxyConfig.parse(entry).server == proxy.server:
                self.failed_proxies.add(entry)
                logger.warning(f"Marked proxy as failed: {proxy.server}")
