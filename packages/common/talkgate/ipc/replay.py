"""Replay protection and per-connection throttling for IPC messages."""

import time
from collections import OrderedDict
from typing import Callable, Optional

from ..errors import RateLimitExceeded, ReplayRejected
from .messages import IPCMessage


class SequenceTracker:
    """Expects 1, 2, 3, ... on one connection. Owned by that connection."""

    def __init__(self):
        self.last = 0

    @property
    def expected(self) -> int:
        return self.last + 1

    def accepts(self, seq_id: int) -> bool:
        return seq_id == self.expected

    def advance(self, seq_id: int) -> None:
        self.last = seq_id


class NonceWindow:
    """Nonces seen within the last ``window_s`` seconds, oldest first."""

    def __init__(self, window_s: float = 60.0, max_entries: int = 65536, clock: Callable[[], float] = time.time):
        self.window_s = window_s
        self.max_entries = max_entries
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, nonce: str) -> bool:
        self._evict(self._clock())
        return nonce in self._seen

    def _evict(self, now: float) -> None:
        horizon = now - self.window_s
        while self._seen:
            nonce, seen_at = next(iter(self._seen.items()))
            if seen_at >= horizon:
                break
            self._seen.popitem(last=False)

    def has_room(self) -> bool:
        self._evict(self._clock())
        return len(self._seen) < self.max_entries

    def add(self, nonce: str) -> None:
        self._seen[nonce] = self._clock()


class ReplayGuard:
    """Applies the timestamp, sequence and nonce checks to one inbound message.

    A timestamp may trail the broker clock by up to ``window_s`` but lead it
    by no more than ``future_skew_s``. Nonces are retained for the sum of the
    two, so a nonce is never forgotten while its message could still pass the
    timestamp check.

    A nonce is recorded only when every check passes. A sequence number is
    consumed by an accepted message, and by a message dropped only for its
    timestamp or its rate, so the sender's counter stays aligned.
    """

    def __init__(
        self,
        window_s: float = 60.0,
        future_skew_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.window_s = window_s
        self.future_skew_s = future_skew_s
        self._clock = clock
        self.nonces = NonceWindow(window_s + future_skew_s, clock=clock)

    def check(self, message: IPCMessage, sequence: SequenceTracker) -> None:
        now = self._clock()
        if message.timestamp < now - self.window_s:
            self.skip(message, sequence)
            raise ReplayRejected(f"timestamp older than the {self.window_s:.0f}s replay window")
        if message.timestamp > now + self.future_skew_s:
            self.skip(message, sequence)
            raise ReplayRejected(f"timestamp more than {self.future_skew_s:g}s in the future")

        if message.seq_id is not None and not sequence.accepts(message.seq_id):
            raise ReplayRejected(f"sequence {message.seq_id} is not the expected {sequence.expected}")

        if message.nonce is not None:
            if message.nonce in self.nonces:
                raise ReplayRejected("nonce already used")
            if not self.nonces.has_room():
                raise ReplayRejected("nonce window is full")

        if message.seq_id is not None:
            sequence.advance(message.seq_id)
        if message.nonce is not None:
            self.nonces.add(message.nonce)

    def skip(self, message: IPCMessage, sequence: SequenceTracker) -> None:
        """Consume the sequence number of a message that is dropped unapplied."""
        if message.seq_id is not None and sequence.accepts(message.seq_id):
            sequence.advance(message.seq_id)


class TokenBucket:
    """Per-connection message allowance: ``rate`` per second, bursts up to ``burst``."""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._updated: Optional[float] = None

    def consume(self) -> None:
        now = self._clock()
        if self._updated is not None:
            self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now
        if self._tokens < 1.0:
            raise RateLimitExceeded(f"more than {self.rate:g} messages/s")
        self._tokens -= 1.0
