"""Core data model for the command pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class TranscriptSource(str, Enum):
    """Where a transcript came from."""
    LIVE_MIC = "live_mic"
    REPLAY = "replay"


class RiskTier(str, Enum):
    """Static risk classification of an intent."""
    SAFE = "safe"
    NORMAL = "normal"
    HIGH_RISK = "high_risk"


class MatchStage(str, Enum):
    """Which resolver stage produced an intent."""
    EXACT = "exact"
    PHONETIC = "phonetic"
    SEMANTIC = "semantic"
    SELECTION = "selection"


class PromptState(str, Enum):
    """Lifecycle of a confirmation request or selection prompt."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PromptState.PENDING


@dataclass(frozen=True)
class Transcript:
    """A timestamped, confidence-scored recognizer output."""
    text: str
    confidence: float
    timestamp: float = field(default_factory=time.time)
    source: TranscriptSource = TranscriptSource.LIVE_MIC

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class Intent:
    """A structured command derived from a transcript.

    Parameters are exposed as a read-only mapping; refinements (e.g. the
    entity picked from a selection prompt) produce a new Intent.
    """
    name: str
    parameters: Mapping[str, str] = field(default_factory=dict)
    confidence: float = 1.0
    risk_tier: RiskTier = RiskTier.NORMAL
    matched_by: MatchStage = MatchStage.EXACT
    utterance: str = ""

    def __post_init__(self):
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def is_high_risk(self) -> bool:
        return self.risk_tier is RiskTier.HIGH_RISK

    def with_parameter(self, key: str, value: str, matched_by: Optional[MatchStage] = None) -> Intent:
        """Derive a new intent with one parameter replaced."""
        params = dict(self.parameters)
        params[key] = value
        return Intent(
            name=self.name,
            parameters=params,
            confidence=self.confidence,
            risk_tier=self.risk_tier,
            matched_by=matched_by or self.matched_by,
            utterance=self.utterance,
        )

    def describe(self) -> str:
        """Human-readable command description used in prompts and audit records."""
        label = self.name.replace("_", " ")
        if not self.parameters:
            return label
        args = ", ".join(f"{k}={v}" for k, v in sorted(self.parameters.items()))
        return f"{label} ({args})"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "parameters": dict(self.parameters),
            "confidence": self.confidence,
            "risk_tier": self.risk_tier.value,
            "matched_by": self.matched_by.value,
        }


class ValidationReason(str, Enum):
    VALID = "valid"
    ENTITY_NOT_FOUND = "entity_not_found"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of checking an intent's entity parameters against live state."""
    ok: bool
    reason: ValidationReason = ValidationReason.VALID
    parameter: Optional[str] = None
    value: Optional[str] = None
    candidates: Tuple[str, ...] = ()

    @classmethod
    def valid(cls) -> ValidationOutcome:
        return cls(ok=True)

    @classmethod
    def not_found(cls, parameter: str, value: str) -> ValidationOutcome:
        return cls(ok=False, reason=ValidationReason.ENTITY_NOT_FOUND, parameter=parameter, value=value)

    @classmethod
    def ambiguous(cls, parameter: str, value: str, candidates) -> ValidationOutcome:
        return cls(
            ok=False,
            reason=ValidationReason.AMBIGUOUS,
            parameter=parameter,
            value=value,
            candidates=tuple(candidates),
        )


@dataclass(frozen=True)
class ActionOutcome:
    """What an action handler reports back."""
    success: bool
    detail: Optional[str] = None


class AuditOutcome(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecord(BaseModel):
    """One append-only audit log entry."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    command: str
    confidence: float = 0.0
    source: str = TranscriptSource.LIVE_MIC.value
    outcome: AuditOutcome
    reason: Optional[str] = None
    intent: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def for_transcript(
        cls,
        transcript: Transcript,
        outcome: AuditOutcome,
        reason: Optional[str] = None,
        intent: Optional[Intent] = None,
        detail: Optional[str] = None,
    ) -> AuditRecord:
        return cls(
            command=transcript.text,
            confidence=transcript.confidence,
            source=transcript.source.value,
            outcome=outcome,
            reason=reason,
            intent=intent.name if intent else None,
            detail=detail,
        )

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True)

    def summary(self) -> Mapping[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
