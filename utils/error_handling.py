import threading
from collections import defaultdict, deque
from datetime import datetime
from typing import Dict, Optional, Any

from .logger import get_logger

logger = get_logger(__name__)


# Custom Exception Classes
class ScraperError(Exception):
    """Base exception for all scraper errors"""

    code = "SCRAPER_ERROR"
    retryable = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self), "context": self.context}


class ClassifiedBlock(ScraperError):
    """Page classified as CAPTCHA, ERROR or BLOCKED"""

    code = "CLASSIFIED_BLOCK"

    def __init__(
        self,
        message: str,
        classification: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.classification = classification


class MissingToken(ScraperError):
    """Required cookie absent after harvest"""

    code = "MISSING_TOKEN"


class MissingSnapshot(ScraperError):
    """No cookie snapshot on disk yet; a running acquisition may still write it"""

    code = "MISSING_SNAPSHOT"


class NavigationFailure(ScraperError):
    """Navigation timeout, browser fault or missing navigation target"""

    code = "NAVIGATION_FAILURE"


class ExtractionFailure(ScraperError):
    """Embedded page state absent or empty"""

    code = "EXTRACTION_FAILURE"


class TimeoutExceeded(ScraperError):
    """A bounded step ran past its time budget"""

    code = "TIMEOUT_EXCEEDED"


class ConfigurationError(ScraperError):
    """Configuration-related errors"""

    code = "CONFIGURATION_ERROR"
    retryable = False


def error_code(error: BaseException) -> str:
    """Stable code for any exception, falling back to the class name."""
    if isinstance(error, ScraperError):
        return error.code
    return type(error).__name__


class ErrorReporter:
    """Error aggregation for attempt loops"""

    def __init__(self, history_size: int = 50):
        self.error_stats = defaultdict(int)
        self.recent_errors = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def report_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None):
        """Report an error for aggregation"""
        code = error_code(error)
        record = {
            "timestamp": datetime.now().isoformat(),
            "error_type": code,
            "message": str(error),
            "context": context or {},
        }

        with self._lock:
            self.error_stats[code] += 1
            self.recent_errors.append(record)

        logger.debug(f"Recorded {code}: {error}")

    def generate_report(self) -> Dict[str, Any]:
        """Generate error report"""
        with self._lock:
            return {
                "generated_at": datetime.now().isoformat(),
                "total_errors": sum(self.error_stats.values()),
                "error_types": dict(self.error_stats),
                "recent_errors": list(self.recent_errors)[-10:],
            }

    def reset(self) -> None:
        with self._lock:
            self.error_stats.clear()
            self.recent_errors.clear()


# Global instance for easy access
error_reporter = ErrorReporter()
