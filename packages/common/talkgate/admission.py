"""Admission control: confidence gate and inter-command rate limiter."""

import time
from typing import Callable, Optional

import structlog

from .models import Transcript

logger = structlog.get_logger(__name__)


class ConfidenceGate:
    """Rejects transcripts whose recognizer confidence is below a threshold."""

    def __init__(self, threshold: float = 0.5):
        self.threshold = threshold

    def admit(self, transcript: Transcript) -> bool:
        if transcript.confidence < self.threshold:
            logger.warning(
                "Transcript below confidence threshold",
                reason="low_confidence",
                text=transcript.text,
                confidence=round(transcript.confidence, 3),
                threshold=self.threshold,
            )
            return False
        return True


class RateLimiter:
    """Enforces a minimum spacing between accepted commands.

    Only the pipeline task calls ``try_acquire``; it is the single writer of
    ``last_accepted_at``.
    """

    def __init__(
        self,
        min_interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last_accepted_at: Optional[float] = None

    @property
    def last_accepted_at(self) -> Optional[float]:
        return self._last_accepted_at

    def try_acquire(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        last = self._last_accepted_at
        if last is not None and now - last < self.min_interval_s:
            logger.warning(
                "Command rate limited",
                since_last_ms=int((now - last) * 1000),
                min_interval_ms=int(self.min_interval_s * 1000),
            )
            return False
        self._last_accepted_at = now
        return True

    def reset(self) -> None:
        self._last_accepted_at = None
