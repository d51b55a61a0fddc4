from __future__ import annotations

from .retry import Retry, RetryLogicError, log_before_sleep, retry

__all__ = [
    "Retry",
    "RetryLogicError",
    "log_before_sleep",
    "retry",
]
