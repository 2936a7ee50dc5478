"""Page classification by title and URL keyword matching."""

from typing import Any, Dict, Iterable, Optional, Tuple

from core.types import PageClassification, SourceKind
from utils.logger import get_logger

logger = get_logger(__name__)

CAPTCHA_PATTERNS: Tuple[str, ...] = (
    "캡차",
    "captcha",
    "인증",
    "verification",
    "보안",
    "security",
    "확인",
    "confirm",
    "로봇",
    "robot",
    "자동화",
    "automation",
)

ERROR_PATTERNS: Tuple[str, ...] = (
    "[에러]",
    "에러페이지",
    "시스템오류",
    "페이지를 찾을 수 없습니다",
    "page not found",
    "not found",
    "접근할 수 없습니다",
    "access denied",
    "forbidden",
    "서버 오류",
    "server error",
    "internal server error",
    "오류",
    "에러",
    "error",
)

# Matched against the title only: product URLs routinely contain these digits.
ERROR_STATUS_CODES: Tuple[str, ...] = ("403", "404", "500")

BLOCKED_PATTERNS: Tuple[str, ...] = (
    "차단",
    "blocked",
    "제한",
    "limited",
    "일시적",
    "temporary",
    "정지",
    "suspended",
    "비정상",
    "abnormal",
    "의심",
    "suspicious",
)

STOREFRONT_DOMAINS: Dict[SourceKind, str] = {
    SourceKind.SMARTSTORE: "smartstore.naver.com",
    SourceKind.ADER: "ader.naver.com",
}


def _contains_any(text: str, patterns: Iterable[str]) -> bool:
    return any(pattern in text for pattern in patterns)


class PageClassifier:
    """Classify pages as NORMAL, CAPTCHA, ERROR or BLOCKED.

    Matching is case-insensitive substring search over the page title and
    URL. Precedence is CAPTCHA > ERROR > BLOCKED > NORMAL. Pattern lists can
    be overridden through the ``classifier`` configuration section.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.captcha_patterns = self._normalize(config.get("captcha_patterns", CAPTCHA_PATTERNS))
        self.error_patterns = self._normalize(config.get("error_patterns", ERROR_PATTERNS))
        self.error_status_codes = tuple(config.get("error_status_codes", ERROR_STATUS_CODES))
        self.blocked_patterns = self._normalize(config.get("blocked_patterns", BLOCKED_PATTERNS))
        domains = config.get("storefront_domains")
        if domains:
            self.storefront_domains = {
                SourceKind(kind): domain.lower() for kind, domain in domains.items()
            }
        else:
            self.storefront_domains = dict(STOREFRONT_DOMAINS)

    @staticmethod
    def _normalize(patterns: Iterable[str]) -> Tuple[str, ...]:
        return tuple(pattern.lower() for pattern in patterns)

    def classify(self, title: Optional[str], url: Optional[str]) -> PageClassification:
        title_text = (title or "").lower()
        haystack = f"{title_text} {(url or '').lower()}"

        if _contains_any(haystack, self.captcha_patterns):
            return PageClassification.CAPTCHA
        if _contains_any(haystack, self.error_patterns) or _contains_any(
            title_text, self.error_status_codes
        ):
            return PageClassification.ERROR
        if _contains_any(haystack, self.blocked_patterns):
            return PageClassification.BLOCKED
        return PageClassification.NORMAL

    def is_storefront_url(self, url: Optional[str]) -> bool:
        """True when the URL belongs to one of the storefront domains."""
        return self.source_kind_for(url) is not None

    def source_kind_for(self, url: Optional[str]) -> Optional[SourceKind]:
        lowered = (url or "").lower()
        for kind, domain in self.storefront_domains.items():
            if domain in lowered:
                return kind
        return None

    async def classify_page(self, page) -> PageClassification:
        """Classify a live page from its title and current URL."""
        title = await page.title()
        url = page.url
        classification = self.classify(title, url)
        if classification is not PageClassification.NORMAL:
            logger.warning(
                f"Page classified as {classification.value}: title={title!r} url={url}"
            )
        return classification
