"""IPC wire format: newline-delimited JSON objects."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models import TranscriptSource


class MessageType(str, Enum):
    """Client to broker message types. Each one has an explicit handler."""

    STATUS_REQUEST = "status_request"
    CONTROL = "control"
    RELOAD_CONFIG = "reload_config"
    CONFIRM = "confirm"
    DENY = "deny"
    CANCEL = "cancel"
    SELECT = "select"
    SUBSCRIBE = "subscribe"
    TRANSCRIPT = "transcript"


class ReplyType(str, Enum):
    """Broker to client message types."""

    ACK = "ack"
    ERROR = "error"
    STATUS_RESPONSE = "status_response"
    CONFIRMATION_REQUEST = "confirmation_request"
    SELECTION_REQUEST = "selection_request"
    PROMPT_RESOLVED = "prompt_resolved"
    EVENT = "event"


class IPCMessage(BaseModel):
    """Inbound envelope. Carries a per-connection ``seq_id``, a single-use ``nonce``, or both."""

    model_config = ConfigDict(extra="forbid")

    type: str
    seq_id: Optional[int] = Field(default=None, ge=1)
    nonce: Optional[str] = Field(default=None, min_length=8, max_length=128)
    sender: str = Field(min_length=1, max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float

    @model_validator(mode="after")
    def _needs_replay_token(self) -> IPCMessage:
        if self.seq_id is None and self.nonce is None:
            raise ValueError("message must carry seq_id or nonce")
        return self

    @classmethod
    def build(
        cls,
        type: str,
        sender: str,
        payload: Optional[Dict[str, Any]] = None,
        seq_id: Optional[int] = None,
        nonce: Optional[str] = None,
    ) -> IPCMessage:
        if seq_id is None and nonce is None:
            nonce = new_nonce()
        return cls(
            type=type,
            seq_id=seq_id,
            nonce=nonce,
            sender=sender,
            payload=payload or {},
            timestamp=time.time(),
        )


class IPCReply(BaseModel):
    """Outbound message: a reply to a request, or a push to subscribers."""

    type: ReplyType
    seq_id: Optional[int] = None
    nonce: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def to(cls, request: Optional[IPCMessage], type: ReplyType = ReplyType.ACK, **kwargs) -> IPCReply:
        if request is None:
            return cls(type=type, **kwargs)
        return cls(type=type, seq_id=request.seq_id, nonce=request.nonce, **kwargs)


class ControlPayload(BaseModel):
    action: Literal["pause", "resume"]


class PromptPayload(BaseModel):
    prompt_id: str


class SelectPayload(BaseModel):
    prompt_id: str
    index: Optional[int] = Field(default=None, ge=1)
    cancelled: bool = False

    @model_validator(mode="after")
    def _index_or_cancel(self) -> SelectPayload:
        if self.index is None and not self.cancelled:
            raise ValueError("select needs an index unless cancelled")
        return self


class TranscriptPayload(BaseModel):
    text: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    source: TranscriptSource = TranscriptSource.LIVE_MIC


class EmptyPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


PAYLOADS: Dict[MessageType, Type[BaseModel]] = {
    MessageType.STATUS_REQUEST: EmptyPayload,
    MessageType.CONTROL: ControlPayload,
    MessageType.RELOAD_CONFIG: EmptyPayload,
    MessageType.CONFIRM: PromptPayload,
    MessageType.DENY: PromptPayload,
    MessageType.CANCEL: PromptPayload,
    MessageType.SELECT: SelectPayload,
    MessageType.SUBSCRIBE: EmptyPayload,
    MessageType.TRANSCRIPT: TranscriptPayload,
}


def new_nonce() -> str:
    return uuid.uuid4().hex


def encode(model: BaseModel) -> bytes:
    return model.model_dump_json(exclude_none=True).encode() + b"\n"
