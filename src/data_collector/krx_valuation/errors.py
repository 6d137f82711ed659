"""
Exception types for the KRX valuation pipeline.

Transport errors carry an `error_category` so the shared retry helper can
classify them without importing this module.
"""

from typing import Optional


class KrxValuationError(Exception):
    """Base class for pipeline errors"""


class FetchError(KrxValuationError):
    """A page or endpoint could not be fetched or decoded.

    kind is one of ``network``, ``http_status`` or ``decode``.
    """

    KINDS = ("network", "http_status", "decode")

    def __init__(self, url: str, kind: str, status: Optional[int] = None, detail: str = ""):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown fetch error kind: {kind}")
        self.url = url
        self.kind = kind
        self.status = status
        message = f"{kind} failure fetching {url}"
        if status is not None:
            message += f" (HTTP {status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)

    @property
    def error_category(self) -> str:
        if self.kind == "network":
            return "retryable"
        if self.kind == "http_status" and self.status is not None:
            if self.status == 429 or self.status >= 500:
                return "retryable"
        return "fatal"


class ValuationError(KrxValuationError):
    """Engine precondition failure; callers turn it into a no-valuation outcome"""

    reason = "invalid_input"


class InsufficientDataError(ValuationError):
    reason = "missing_eps"


class InvalidValuationInput(ValuationError):
    def __init__(self, message: str, reason: str = "invalid_input"):
        super().__init__(message)
        self.reason = reason


class DirectorySyncError(KrxValuationError):
    """A market segment produced no usable rows"""

    def __init__(self, segment: str, message: str):
        self.segment = segment
        super().__init__(f"[{segment}] {message}")


class SystemicFailureError(KrxValuationError):
    """The combined directory is implausibly small; prior state is kept"""

    def __init__(self, count: int, minimum: int, detail: Optional[str] = None):
        self.count = count
        self.minimum = minimum
        super().__init__(
            detail or f"Directory refresh returned {count} instruments (minimum {minimum}); aborting"
        )


class PersistenceError(KrxValuationError):
    """Write failure or timeout for a single instrument"""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(f"Persistence failed for {code}: {message}")
