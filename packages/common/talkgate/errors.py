"""Rejection taxonomy and exception types.

Every rejection path in the pipeline and the IPC broker maps to one stable
``RejectionReason``. The values are what lands in audit records, IPC error
replies and structured log entries.
"""

from enum import Enum
from typing import Optional


class RejectionReason(str, Enum):
    """Stable rejection categories."""

    LOW_CONFIDENCE = "low_confidence"
    RATE_LIMITED = "rate_limited"
    NO_INTENT_MATCHED = "no_intent_matched"
    ENTITY_NOT_FOUND = "entity_not_found"
    CONFIRMATION_EXPIRED = "confirmation_expired"
    CONFIRMATION_DENIED = "confirmation_denied"
    CONFIRMATION_CANCELLED = "confirmation_cancelled"
    SELECTION_EXPIRED = "selection_expired"
    IPC_REPLAY_REJECTED = "ipc_replay_rejected"
    IPC_RATE_LIMITED = "ipc_rate_limited"
    ACTION_HANDLER_UNAVAILABLE = "action_handler_unavailable"
    ACTION_FAILED = "action_failed"
    AUDIT_WRITE_FAILED = "audit_write_failed"
    UNHANDLED_MESSAGE = "unhandled_message"
    MALFORMED_MESSAGE = "malformed_message"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutting_down"


_USER_MESSAGES = {
    RejectionReason.LOW_CONFIDENCE: "Sorry, I didn't catch that clearly.",
    RejectionReason.RATE_LIMITED: "One moment, please. You're going a bit fast.",
    RejectionReason.NO_INTENT_MATCHED: "I didn't catch that command.",
    RejectionReason.ENTITY_NOT_FOUND: "I couldn't find that in your library.",
    RejectionReason.CONFIRMATION_EXPIRED: "Confirmation timed out. Nothing was done.",
    RejectionReason.CONFIRMATION_DENIED: "Okay, cancelled.",
    RejectionReason.CONFIRMATION_CANCELLED: "The previous request was cancelled.",
    RejectionReason.SELECTION_EXPIRED: "No selection was made. Cancelled.",
    RejectionReason.ACTION_HANDLER_UNAVAILABLE: "Sorry, that action is not available right now.",
    RejectionReason.ACTION_FAILED: "Sorry, that didn't work.",
    RejectionReason.PAUSED: "Listening is paused.",
}


def user_message(reason: RejectionReason, detail: Optional[str] = None) -> Optional[str]:
    """User-facing feedback for a rejection, or None when it is not user-facing."""
    message = _USER_MESSAGES.get(reason)
    if message and detail and reason is RejectionReason.ENTITY_NOT_FOUND:
        return f"I couldn't find {detail} in your library."
    return message


class TalkgateError(Exception):
    """Base error for talkgate."""

    reason: Optional[RejectionReason] = None


class IPCPermissionError(TalkgateError):
    """The IPC socket could not be restricted to its owner. Fatal at startup."""


class ReplayRejected(TalkgateError):
    """An IPC message reused a nonce or broke its connection's sequence."""

    reason = RejectionReason.IPC_REPLAY_REJECTED


class RateLimitExceeded(TalkgateError):
    """An IPC connection exceeded its message rate."""

    reason = RejectionReason.IPC_RATE_LIMITED


class ActionHandlerUnavailable(TalkgateError):
    """No handler is registered for an intent, or the handler failed to run."""

    reason = RejectionReason.ACTION_HANDLER_UNAVAILABLE


class DispatchRefused(TalkgateError):
    """Dispatch was attempted without a valid outcome or a confirmed request."""
