"""
Egress guard for tieredcache.

Watches remote-fetch failures and switches the cache into fallback mode
when the remote source is rate limiting, out of quota, or repeatedly
failing.  While in fallback mode remote fetches are suppressed, except
for one recovery probe per check interval.
"""

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Union

from pydantic import BaseModel

from tieredcache.config import EgressSettings, get_settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Probe = Callable[[], Union[Any, Awaitable[Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EgressStatus(BaseModel):
    """Snapshot of the guard state.

    Attributes:
        is_limited: The remote source is believed to be rejecting traffic.
        fallback_mode: Remote fetches are currently suppressed.
        error_count: Consecutive failures since the last success.
        last_check: Time of the last probe or trip, if any.
    """

    is_limited: bool = False
    fallback_mode: bool = False
    error_count: int = 0
    last_check: Optional[datetime] = None


class EgressGuard:
    """Trips into fallback mode on egress errors or repeated failures.

    Args:
        max_errors: Consecutive non-egress failures that trip the guard.
        check_interval_seconds: Minimum spacing between recovery probes.
        error_codes: ``code`` attribute values treated as egress errors.
        error_keywords: Lower-case message fragments treated as egress
            errors.
        clock: Source of the current UTC time (testing).
    """

    def __init__(
        self,
        max_errors: int = 3,
        check_interval_seconds: float = 300.0,
        error_codes: Optional[List[str]] = None,
        error_keywords: Optional[List[str]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        defaults = EgressSettings()
        self._max_errors = max_errors
        self._check_interval_seconds = check_interval_seconds
        self._error_codes = set(error_codes if error_codes is not None else defaults.error_codes)
        self._error_keywords = [
            kw.lower()
            for kw in (error_keywords if error_keywords is not None else defaults.error_keywords)
        ]
        self._clock = clock or _utcnow
        self._status = EgressStatus()

    @classmethod
    def from_settings(
        cls, settings: Optional[EgressSettings] = None, clock: Optional[Clock] = None
    ) -> "EgressGuard":
        settings = settings or get_settings().egress
        return cls(
            max_errors=settings.max_errors,
            check_interval_seconds=settings.check_interval_seconds,
            error_codes=list(settings.error_codes),
            error_keywords=list(settings.error_keywords),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_egress_error(self, error: BaseException) -> bool:
        """Whether *error* indicates rate limiting or an exhausted quota."""
        if getattr(error, "status_code", None) == 429:
            return True
        code = getattr(error, "code", None)
        if code is not None and str(code) in self._error_codes:
            return True
        message = str(error).lower()
        return any(keyword in message for keyword in self._error_keywords)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _interval_elapsed(self, now: datetime) -> bool:
        last = self._status.last_check
        return last is None or (now - last).total_seconds() >= self._check_interval_seconds

    def _trip(self, reason: str) -> None:
        already = self._status.fallback_mode
        self._status.is_limited = True
        self._status.fallback_mode = True
        self._status.last_check = self._clock()
        if not already:
            logger.warning(
                "Switching to fallback mode",
                extra={"reason": reason, "error_count": self._status.error_count},
            )

    def _reset(self) -> bool:
        """Clear failure state.  Returns whether fallback mode was active."""
        was_limited = self._status.fallback_mode
        self._status.error_count = 0
        self._status.is_limited = False
        self._status.fallback_mode = False
        return was_limited

    def allow_request(self) -> bool:
        """Whether a remote fetch may be attempted now.

        In fallback mode this returns ``True`` at most once per check
        interval so that a single request can probe for recovery.
        """
        if not self._status.fallback_mode:
            return True
        now = self._clock()
        if self._interval_elapsed(now):
            self._status.last_check = now
            logger.debug("Allowing recovery probe in fallback mode")
            return True
        return False

    def record_success(self) -> None:
        if self._reset():
            logger.info("Remote source recovered; leaving fallback mode")

    def record_failure(self, error: BaseException) -> None:
        """Count a failed fetch and trip the guard when warranted."""
        self._status.error_count += 1
        if self.is_egress_error(error):
            self._trip("egress limit detected")
        elif self._status.error_count >= self._max_errors:
            self._trip("multiple errors detected")

    async def check(self, probe: Probe) -> bool:
        """Run *probe* against the remote source, at most once per interval.

        Args:
            probe: Zero-argument callable (sync or async) that raises when
                the remote source is unavailable.

        Returns:
            Whether the remote source is considered limited.
        """
        now = self._clock()
        if not self._interval_elapsed(now):
            return self._status.is_limited

        try:
            result = probe()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Egress probe failed", extra={"error": str(exc)})
            self.record_failure(exc)
        else:
            if self._reset():
                logger.info("Egress probe succeeded; leaving fallback mode")
        self._status.last_check = now
        return self._status.is_limited

    # ------------------------------------------------------------------
    # Manual overrides and reporting
    # ------------------------------------------------------------------

    def enable_fallback_mode(self) -> None:
        self._trip("enabled manually")

    def disable_fallback_mode(self) -> None:
        self._reset()
        logger.info("Fallback mode disabled")

    def should_use_fallback(self) -> bool:
        return self._status.fallback_mode or self._status.is_limited

    def get_status(self) -> EgressStatus:
        return self._status.model_copy()
