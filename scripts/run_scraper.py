#!/usr/bin/env python3
"""Command line entry point: run the API, acquire a session or scrape a batch of URLs."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from rich.console import Console
from rich.table import Table

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.scraper_service import ScraperService  # noqa: E402
from core.types import FetchFailure  # noqa: E402
from services.api.config import Settings, get_settings  # noqa: E402
from services.api.main import build_service  # noqa: E402
from utils.logger import get_logger  # noqa: E402

logger = get_logger("scripts.run_scraper")
console = Console()

BATCH_MAX_CONCURRENT = 3


def read_urls(path: Path) -> List[str]:
    """One URL per line; blank lines and ``#`` comments are skipped."""
    urls = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            urls.append(line)
    return urls


def run_api(settings: Settings) -> int:
    import uvicorn

    uvicorn.run(
        "services.api.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


async def init_cookies(service: ScraperService, force: bool) -> int:
    result = await (service.refresh_session() if force else service.ensure_session())
    if result is None:
        console.print("[green]Marketing token already present, nothing to do[/green]")
        return 0
    if result.success:
        console.print(f"[green]Session acquired in {result.attempts} attempt(s)[/green]")
        return 0
    console.print(f"[red]Session acquisition failed after {result.attempts} attempt(s): {result.error}[/red]")
    return 1


async def run_batch(service: ScraperService, urls: Sequence[str], output: Optional[Path]) -> int:
    if not urls:
        logger.warning("No product URLs given for batch mode")
        return 0

    valid = [url for url in urls if service.is_valid_product_url(url)]
    for url in set(urls) - set(valid):
        logger.warning(f"Skipping non-storefront URL: {url}")

    logger.info(
        f"Using {len(service.proxy_pool)} proxies, max {service.gate.max_concurrent} parallel sessions"
    )
    outcomes = await service.fetch_many(valid)

    table = Table(title="Batch results")
    table.add_column("URL", overflow="fold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")

    records = []
    failures = 0
    for outcome in outcomes:
        if isinstance(outcome, FetchFailure):
            failures += 1
            records.append(outcome.to_response())
            table.add_row(outcome.product_url, f"[red]{outcome.error}[/red]", str(outcome.attempts))
        else:
            records.append({"productUrl": outcome.product_url, "preloadedState": outcome.preloaded_state})
            table.add_row(outcome.product_url, "[green]ok[/green]", str(outcome.attempts))

    console.print(table)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("w", encoding="utf-8") as handle:
            for record in records:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        logger.info(f"Wrote {len(records)} results to {output}")

    logger.info(f"Batch finished: {len(records) - failures} ok, {failures} failed")
    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Storefront session scraper")
    subparsers = parser.add_subparsers(dest="mode")

    subparsers.add_parser("api", help="Run the HTTP API (default)")

    init_parser = subparsers.add_parser("init-cookies", help="Acquire a session and persist cookies")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Acquire even when a marketing token record already exists",
    )

    batch_parser = subparsers.add_parser("batch", help="Scrape a list of product URLs")
    batch_parser.add_argument("urls", nargs="*", help="Product URLs")
    batch_parser.add_argument("--input", type=Path, help="File with one product URL per line")
    batch_parser.add_argument("--output", type=Path, help="Write JSON lines results here")
    batch_parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help=f"Parallel browser sessions (default {BATCH_MAX_CONCURRENT})",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    if args.mode in (None, "api"):
        return run_api(settings)

    if args.mode == "init-cookies":
        return asyncio.run(init_cookies(build_service(settings), args.force))

    urls = list(args.urls)
    if args.input:
        urls.extend(read_urls(args.input))
    max_concurrent = args.max_concurrent or BATCH_MAX_CONCURRENT
    service = build_service(settings.model_copy(update={"max_concurrent": max_concurrent}))
    return asyncio.run(run_batch(service, urls, args.output))


if __name__ == "__main__":
    sys.exit(main())
