"""
ErrorRecovery: turns failures into user-facing replies.

Errors are matched against an ordered list of patterns on their message;
the first match wins and a catch-all guarantees one. Each strategy says
what to tell the user, whether retrying makes sense and how many retries
a request gets before we stop trying.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from crmpilot.utils.logging import logger


@dataclass(frozen=True)
class RecoveryStrategy:
    pattern: str
    code: str
    message: str
    retryable: bool
    retry_limit: int
    suggestions: tuple[str, ...] = ()
    fallback_message: str = "I'm having trouble with that right now. Please try again later."

    def matches(self, error_text: str) -> bool:
        return re.search(self.pattern, error_text, re.IGNORECASE) is not None


@dataclass
class RecoveryResponse:
    code: str
    message: str
    retryable: bool
    suggestions: list[str] = field(default_factory=list)
    retry_after: Optional[float] = None


@dataclass
class ErrorRecord:
    error_type: str
    code: str
    message: str
    user_id: Optional[str]
    operation: str
    retry_count: int
    timestamp: datetime = field(default_factory=datetime.now)


RETRY_LIMIT_EXCEEDED = "RETRY_LIMIT_EXCEEDED"


class ErrorRecovery:
    """
    Classifies errors and decides how to recover from them.

    Strategies are tried in order:
    - connection / timeout / network problems: retry
    - authentication / permission problems: do not retry
    - rate limits: retry later
    - validation / malformed input: ask the user to rephrase
    - model failures: retry
    - anything else
    """

    STRATEGIES = [
        RecoveryStrategy(
            pattern=r"connection|timeout|timed out|network",
            code="DB_CONNECTION_ERROR",
            message="I'm having trouble connecting to your data right now. Let me try again.",
            retryable=True,
            retry_limit=3,
            suggestions=("Try again in a moment", "Check your connection"),
            fallback_message="I couldn't reach your data after several attempts. Please try again in a few minutes.",
        ),
        RecoveryStrategy(
            pattern=r"unauthorized|authentication|permission",
            code="AUTH_ERROR",
            message="It looks like you don't have access to that. Please sign in again or check your permissions.",
            retryable=False,
            retry_limit=1,
            suggestions=("Sign in again", "Ask your admin for access"),
            fallback_message="Please sign in again to continue.",
        ),
        RecoveryStrategy(
            pattern=r"rate.?limit|too.?many.?requests",
            code="RATE_LIMIT_ERROR",
            message="I'm receiving a lot of requests right now. Please wait a moment and try again.",
            retryable=True,
            retry_limit=2,
            suggestions=("Wait a minute before your next request",),
            fallback_message="You've reached the request limit. Please try again later.",
        ),
        RecoveryStrategy(
            pattern=r"validation|invalid|format",
            code="VALIDATION_ERROR",
            message="Something in that request doesn't look right. Could you rephrase it?",
            retryable=False,
            retry_limit=1,
            suggestions=("Check the values you provided", "Try rephrasing your request"),
            fallback_message="I couldn't process that request. Please check the details and try again.",
        ),
        RecoveryStrategy(
            pattern=r"model|llm|completion",
            code="AI_MODEL_ERROR",
            message="I had trouble understanding that. Let me try a different approach.",
            retryable=True,
            retry_limit=2,
            suggestions=("Try a simpler request", "Rephrase your question"),
            fallback_message="My language model is unavailable right now. Please try again shortly.",
        ),
        RecoveryStrategy(
            pattern=r".*",
            code="GENERIC_ERROR",
            message="Something went wrong while handling your request.",
            retryable=True,
            retry_limit=2,
            suggestions=("Try again", "Try a different request"),
        ),
    ]

    MAX_HISTORY = 100

    def __init__(self, strategies: Optional[list[RecoveryStrategy]] = None):
        self.strategies = strategies or list(self.STRATEGIES)
        self.history: list[ErrorRecord] = []

    def classify(self, error: BaseException) -> RecoveryStrategy:
        text = f"{type(error).__name__}: {error}"
        for strategy in self.strategies:
            if strategy.matches(text):
                return strategy
        return self.strategies[-1]

    def recover(
        self,
        error: BaseException,
        retry_count: int = 0,
        user_id: Optional[str] = None,
        operation: str = "request",
    ) -> RecoveryResponse:
        """
        Build the reply for a failure.

        Args:
            error: What went wrong
            retry_count: Retries already spent on this request
            user_id: Who hit the error
            operation: What was being attempted

        Returns:
            RecoveryResponse; RETRY_LIMIT_EXCEEDED once the strategy's
            retry ceiling is reached
        """
        strategy = self.classify(error)
        self._record(error, strategy, user_id, operation, retry_count)
        logger.error(f"{operation} failed ({strategy.code}): {error}")

        if retry_count >= strategy.retry_limit:
            return RecoveryResponse(
                code=RETRY_LIMIT_EXCEEDED,
                message=strategy.fallback_message,
                retryable=False,
                suggestions=list(strategy.suggestions),
            )

        return RecoveryResponse(
            code=strategy.code,
            message=strategy.message,
            retryable=strategy.retryable,
            suggestions=list(strategy.suggestions),
            retry_after=getattr(error, "retry_after", None),
        )

    def should_retry(self, error: BaseException, retry_count: int) -> bool:
        strategy = self.classify(error)
        return strategy.retryable and retry_count < strategy.retry_limit

    def _record(
        self,
        error: BaseException,
        strategy: RecoveryStrategy,
        user_id: Optional[str],
        operation: str,
        retry_count: int,
    ) -> None:
        self.history.append(
            ErrorRecord(
                error_type=type(error).__name__,
                code=strategy.code,
                message=str(error),
                user_id=user_id,
                operation=operation,
                retry_count=retry_count,
            )
        )
        if len(self.history) > self.MAX_HISTORY:
            self.history = self.history[-self.MAX_HISTORY:]

    def recent_errors(self, user_id: Optional[str] = None, hours: int = 24) -> int:
        cutoff = datetime.now() - timedelta(hours=hours)
        return sum(
            1 for r in self.history
            if r.timestamp >= cutoff and (user_id is None or r.user_id == user_id)
        )

    def stats(self) -> dict:
        by_code: dict[str, int] = {}
        for record in self.history:
            by_code[record.code] = by_code.get(record.code, 0) + 1
        total = len(self.history)
        return {
            "total_errors": total,
            "by_code": by_code,
            "recent_errors": self.recent_errors(),
            "average_retry_count": (
                sum(r.retry_count for r in self.history) / total if total else 0.0
            ),
        }

    def clear(self) -> None:
        self.history.clear()
