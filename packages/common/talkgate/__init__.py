"""
talkgate - voice command gate

Turns speech-recognition transcripts into validated, confirmed and audited
actions, and serves GUI/CLI clients over a local socket.
"""

__version__ = "0.1.0"
__author__ = "Talkgate Team"

from .config import TalkgateConfig
from .messaging import MessageBusClient

from .models import (
    AuditOutcome,
    AuditRecord,
    Intent,
    PromptState,
    RiskTier,
    Transcript,
    TranscriptSource,
    ValidationOutcome,
)

from .errors import RejectionReason, TalkgateError

from .admission import ConfidenceGate, RateLimiter
from .intent import IntentResolver, IntentSpec
from .validation import EntityValidator, InMemoryCatalog
from .confirmation import ConfirmationCoordinator, ConfirmationRequest, SelectionPrompt
from .dispatcher import CommandDispatcher
from .audit import AuditLogger
from .pipeline import CommandPipeline

__all__ = [
    "TalkgateConfig",
    "MessageBusClient",
    "AuditOutcome",
    "AuditRecord",
    "Intent",
    "PromptState",
    "RiskTier",
    "Transcript",
    "TranscriptSource",
    "ValidationOutcome",
    "RejectionReason",
    "TalkgateError",
    "ConfidenceGate",
    "RateLimiter",
    "IntentResolver",
    "IntentSpec",
    "EntityValidator",
    "InMemoryCatalog",
    "ConfirmationCoordinator",
    "ConfirmationRequest",
    "SelectionPrompt",
    "CommandDispatcher",
    "AuditLogger",
    "CommandPipeline",
]
