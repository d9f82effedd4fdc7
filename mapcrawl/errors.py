"""
Error taxonomy for a crawl job.

  TransientNavigation      — selector / network timeout; retried with backoff
  NoItemsFound             — user page has no sequence items; retried at job level
  SessionLost              — browser or page died; session recreated, then retried
  ElementExtractionFailure — one sequence item unreadable; item skipped
  RetriesExhausted         — every attempt failed; job marked failed, nothing saved
"""

from playwright.sync_api import Error as PlaywrightError

# Substrings Playwright uses when the browser, context or page is gone.
_SESSION_LOST_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "browser closed",
    "context closed",
    "page closed",
    "has been closed",
    "crash",
    "connection closed",
)


class CrawlError(Exception):
    """Base class for crawl-engine failures."""


class TransientNavigation(CrawlError):
    """A wait on page, network or element state expired."""


class NoItemsFound(TransientNavigation):
    """The user page rendered zero sequence items."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"No sequence items found for user '{username}'")


class SessionLost(CrawlError):
    """The browser session crashed or was closed underneath us."""


class ElementExtractionFailure(CrawlError):
    """A single sequence item could not be read. Never fatal to the job."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Sequence item #{index} failed: {reason}")


class RetriesExhausted(CrawlError):
    """Raised once every attempt of a job has failed.

    Attributes:
        attempts: Total number of attempts made.
        history: The error raised by each failed attempt, in order.
        state: The RetryState of the failed run, if the policy supplied it.
    """

    def __init__(self, label: str, attempts: int, history: list, state=None):
        self.label = label
        self.attempts = attempts
        self.history = history
        self.state = state
        last = history[-1] if history else None
        super().__init__(
            f"All {attempts} attempts failed for '{label}': {last}"
        )

    @property
    def last_error(self):
        return self.history[-1] if self.history else None


def is_session_lost(exc: BaseException) -> bool:
    """Return True if *exc* means the browser session can no longer be used."""
    if isinstance(exc, SessionLost):
        return True
    if isinstance(exc, CrawlError):
        return False
    if not isinstance(exc, PlaywrightError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _SESSION_LOST_MARKERS)


def classify_driver_error(exc: BaseException, context: str) -> CrawlError:
    """Map a Playwright error onto the crawl taxonomy."""
    if is_session_lost(exc):
        return SessionLost(f"{context}: {exc}")
    return TransientNavigation(f"{context}: {exc}")
