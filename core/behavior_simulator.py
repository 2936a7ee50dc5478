"""
Human-like page interaction: scrolling, cursor movement, safe clicks and
overlay dismissal. Every step reports a StepResult instead of raising.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from core.types import StepResult
from utils import helpers
from utils.error_handling import NavigationFailure, TimeoutExceeded
from utils.logger import get_logger, log_session_event

logger = get_logger(__name__)

_NOT_SEARCH = ':not([class*="search"]):not([class*="Search"])'

SAFE_CLICK_SELECTORS: Tuple[str, ...] = (
    f'button[type="button"]{_NOT_SEARCH}',
    f".btn{_NOT_SEARCH}",
    f".button{_NOT_SEARCH}",
    f'a[href="#"]{_NOT_SEARCH}',
    f'span[role="button"]{_NOT_SEARCH}',
)

EXCLUDE_SELECTORS: Tuple[str, ...] = (
    'input[type="text"]',
    'input[type="search"]',
    "textarea",
    "select",
    '[class*="search"]',
    '[class*="Search"]',
    '[class*="dropdown"]',
    '[class*="Dropdown"]',
    '[class*="suggestion"]',
    '[class*="Suggestion"]',
    '[class*="autocomplete"]',
    '[class*="Autocomplete"]',
    '[class*="overlay"]',
    '[class*="Overlay"]',
    '[class*="modal"]',
    '[class*="Modal"]',
    '[class*="popup"]',
    '[class*="Popup"]',
)

CLOSE_SELECTORS: Tuple[str, ...] = (
    '[class*="suggestion"]',
    '[class*="Suggestion"]',
    '[class*="autocomplete"]',
    '[class*="Autocomplete"]',
    '[class*="dropdown"]',
    '[class*="Dropdown"]',
    '[class*="overlay"]',
    '[class*="Overlay"]',
    '[class*="modal"]',
    '[class*="Modal"]',
    '[class*="popup"]',
    '[class*="Popup"]',
    ".search_suggestion",
    ".searchSuggestion",
    ".autocomplete_list",
    ".dropdown_menu",
    ".overlay_background",
    '[class*="close"]',
    '[class*="Close"]',
    '[class*="cancel"]',
    '[class*="Cancel"]',
    '[aria-label*="close"]',
    '[aria-label*="Close"]',
    "body",
)

# Selector that closes overlays by pressing Escape rather than clicking.
PAGE_WIDE_SELECTOR = "body"

SCROLL_SCRIPT = "(distance) => window.scrollBy(0, distance)"

EXCLUSION_CHECK_SCRIPT = """
(el, selectors) => selectors.some((selector) => el.matches(selector) || el.closest(selector) !== null)
"""

VISIBILITY_CHECK_SCRIPT = """
(el) => {
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    return rect.width > 0 && rect.height > 0 &&
        style.display !== 'none' &&
        style.visibility !== 'hidden' &&
        style.opacity !== '0';
}
"""

DEFAULT_EXTENDED_TIMEOUT_S = 60.0
CLICK_CANDIDATES = 3


class BehaviorSimulator:
    """Randomized interaction primitives and the sequences built from them."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.extended_timeout_s = config.get("extended_timeout_seconds", DEFAULT_EXTENDED_TIMEOUT_S)
        self.extended_rounds = config.get("extended_rounds", 3)
        self.safe_click_selectors = tuple(config.get("safe_click_selectors", SAFE_CLICK_SELECTORS))
        self.exclude_selectors = list(config.get("exclude_selectors", EXCLUDE_SELECTORS))
        self.close_selectors = tuple(config.get("close_selectors", CLOSE_SELECTORS))

    # ------------------------------------------------------------------
    # Step wrapper
    # ------------------------------------------------------------------

    async def _run_step(
        self, name: str, page, action: Callable[[], Awaitable[Optional[StepResult]]]
    ) -> StepResult:
        if page.is_closed():
            return StepResult.hard(name, NavigationFailure(f"Page closed before {name}"))
        try:
            result = await action()
        except Exception as e:
            if page.is_closed():
                logger.error(f"Page closed during {name}: {e}")
                return StepResult.hard(name, NavigationFailure(f"Page closed during {name}"))
            logger.warning(f"Behavior step {name} failed: {e}")
            return StepResult.soft(name, e)
        return result or StepResult.ok(name)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def _scroll(self, page, distance_range, steps_range, interval_range, direction: int):
        steps = random.randint(*steps_range)
        for _ in range(steps):
            distance = random.randint(*distance_range) * direction
            await page.evaluate(SCROLL_SCRIPT, distance)
            await helpers.random_delay(*interval_range)
        logger.debug(f"Scrolled {'down' if direction > 0 else 'up'} in {steps} steps")

    async def scroll_down(self, page) -> StepResult:
        return await self._run_step(
            "scroll_down", page, lambda: self._scroll(page, (150, 250), (8, 12), (200, 500), 1)
        )

    async def scroll_up(self, page) -> StepResult:
        return await self._run_step(
            "scroll_up", page, lambda: self._scroll(page, (100, 180), (5, 7), (150, 350), -1)
        )

    async def _move_cursor(self, page) -> None:
        waypoints = [
            (100 + random.random() * 100, 100 + random.random() * 50),
            (150 + random.random() * 100, 150 + random.random() * 50),
            (200 + random.random() * 100, 200 + random.random() * 50),
        ]
        for x, y in waypoints:
            await page.mouse.move(x, y, steps=random.randint(15, 24))
            await helpers.random_delay(150, 350)

    async def move_cursor(self, page) -> StepResult:
        return await self._run_step("move_cursor", page, lambda: self._move_cursor(page))

    async def _is_visible(self, element) -> bool:
        return bool(await element.evaluate(VISIBILITY_CHECK_SCRIPT))

    async def _is_excluded(self, element) -> bool:
        return bool(await element.evaluate(EXCLUSION_CHECK_SCRIPT, self.exclude_selectors))

    async def _safe_click(self, page) -> StepResult:
        for selector in self.safe_click_selectors:
            elements = await page.query_selector_all(selector)
            eligible = []
            for element in elements:
                if not await self._is_excluded(element):
                    eligible.append(element)
                if len(eligible) >= CLICK_CANDIDATES:
                    break
            if not eligible:
                continue

            random.shuffle(eligible)
            for element in eligible:
                if not await self._is_visible(element):
                    continue
                await element.hover()
                await helpers.random_delay(500, 1500)
                await element.click()
                await helpers.random_delay(2000, 4000)
                logger.debug(f"Clicked safe element matching {selector}")
                return StepResult.ok("safe_click")

        logger.debug("No safe clickable element found")
        return StepResult.soft("safe_click")

    async def safe_click(self, page) -> StepResult:
        return await self._run_step("safe_click", page, lambda: self._safe_click(page))

    async def _dismiss_overlays(self, page) -> None:
        closed = 0
        for selector in self.close_selectors:
            if selector == PAGE_WIDE_SELECTOR:
                await page.keyboard.press("Escape")
                await helpers.random_delay(500, 1000)
                continue

            for element in await page.query_selector_all(selector):
                try:
                    if not await self._is_visible(element):
                        continue
                    await element.click()
                    closed += 1
                    await helpers.random_delay(500, 1000)
                except Exception as e:
                    if page.is_closed():
                        raise
                    logger.debug(f"Could not close overlay {selector}: {e}")

        await page.mouse.click(10, 10)
        logger.debug(f"Dismissed {closed} overlay elements")

    async def dismiss_overlays(self, page) -> StepResult:
        return await self._run_step("dismiss_overlays", page, lambda: self._dismiss_overlays(page))

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    async def run_standard_sequence(self, page) -> StepResult:
        await helpers.random_delay(2000, 4000)
        for step in (
            self.scroll_down,
            self.move_cursor,
            self.safe_click,
            self.dismiss_overlays,
            self.scroll_up,
        ):
            result = await step(page)
            if result.is_hard:
                return result
        return StepResult.ok("standard_sequence")

    async def _extended_steps(self, page) -> StepResult:
        for round_number in range(1, self.extended_rounds + 1):
            logger.debug(f"Extended behavior round {round_number}/{self.extended_rounds}")
            result = await self.scroll_down(page)
            if result.is_hard:
                return result
            await helpers.random_delay(3000, 6000)
            result = await self.move_cursor(page)
            if result.is_hard:
                return result
            await helpers.random_delay(2000, 4000)

        for step in (self.move_cursor, self.safe_click, self.dismiss_overlays, self.scroll_up):
            result = await step(page)
            if result.is_hard:
                return result
            await helpers.random_delay(2000, 5000)

        return StepResult.ok("extended_sequence")

    async def run_extended_sequence(self, page) -> StepResult:
        """Long interaction sequence bounded by the extended timeout; never raises."""
        try:
            result = await asyncio.wait_for(
                self._extended_steps(page), timeout=self.extended_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Extended behavior exceeded {self.extended_timeout_s}s, continuing"
            )
            result = StepResult.soft(
                "extended_sequence",
                TimeoutExceeded(
                    "Extended behavior timed out",
                    {"timeout_seconds": self.extended_timeout_s},
                ),
            )

        log_session_event(
            "behavior",
            {"sequence": "extended", "status": result.status.value, "step": result.step},
            "WARNING" if result.is_hard else "INFO",
        )
        return result
