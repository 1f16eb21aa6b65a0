"""External collaborators reached over the message bus.

Speech synthesis, action handlers and transcript delivery live in other
services on the platform bus; these adapters give the pipeline a narrow
interface to each of them.
"""

from __future__ import annotations

import asyncio
import base64
import os
import tempfile
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from .errors import ActionHandlerUnavailable, RejectionReason
from .messaging import MessageBusClient
from .models import ActionOutcome, Intent, Transcript, TranscriptSource

logger = structlog.get_logger(__name__)

TRANSCRIPT_SUBJECT = "ai.audio.transcript"
TTS_SUBJECT = "ai.audio.tts"
ACTION_SUBJECT_PREFIX = "system.action"
EVENT_SUBJECT_PREFIX = "talkgate.events"


class SpeechOutput(Protocol):
    """Short spoken feedback; ``speak`` returns once playback has finished."""

    async def speak(self, text: str) -> None:
        ...


class EventPublisher(Protocol):
    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingSpeechOutput:
    """Speech output used when no TTS service is available: log only."""

    def __init__(self):
        self.spoken: list = []

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        logger.info("Speech feedback", text=text)


class BusSpeechOutput:
    """Synthesizes through the TTS service and plays the returned WAV."""

    def __init__(self, message_bus: MessageBusClient, timeout: float = 30.0, player: str = "paplay"):
        self.message_bus = message_bus
        self.timeout = timeout
        self.player = player

    async def speak(self, text: str) -> None:
        try:
            response = await self.message_bus.request(
                TTS_SUBJECT, {"text": text, "output_format": "wav"}, timeout=self.timeout
            )
        except (asyncio.TimeoutError, RuntimeError) as e:
            logger.warning("TTS request failed", error=str(e))
            return
        if response.get("error") or "audio_data" not in response:
            logger.warning("TTS request failed", error=response.get("error", "no audio returned"))
            return

        audio = base64.b64decode(response["audio_data"])
        path = await asyncio.to_thread(self._write_temp, audio)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.player, path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await proc.wait()
            if returncode != 0:
                logger.warning("TTS playback failed", player=self.player, returncode=returncode)
        except OSError as e:
            logger.warning("TTS playback failed", player=self.player, error=str(e))
        finally:
            await asyncio.to_thread(os.unlink, path)

    @staticmethod
    def _write_temp(audio: bytes) -> str:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as f:
            f.write(audio)
            return f.name


class BusActionHandler:
    """Forwards an intent to ``system.action.<intent name>``."""

    def __init__(self, message_bus: MessageBusClient, timeout: float = 10.0):
        self.message_bus = message_bus
        self.timeout = timeout

    async def __call__(self, intent: Intent) -> ActionOutcome:
        subject = f"{ACTION_SUBJECT_PREFIX}.{intent.name}"
        try:
            response = await self.message_bus.request(subject, dict(intent.parameters), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ActionHandlerUnavailable(f"{subject}: no responder") from e
        except RuntimeError as e:
            raise ActionHandlerUnavailable(f"{subject}: {e}") from e

        if response.get("error"):
            return ActionOutcome(success=False, detail=str(response["error"]))
        if response.get("status") == "error":
            return ActionOutcome(success=False, detail=response.get("message"))
        return ActionOutcome(success=True, detail=response.get("message"))


class BusEventPublisher:
    """Best-effort publication of pipeline events."""

    def __init__(self, message_bus: MessageBusClient):
        self.message_bus = message_bus

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await self.message_bus.publish(f"{EVENT_SUBJECT_PREFIX}.{kind}", payload)
        except Exception as e:
            logger.warning("Event publish failed", kind=kind, error=str(e))


class BusTranscriptSource:
    """Feeds transcripts published by the speech recognizer into the pipeline."""

    def __init__(self, message_bus: MessageBusClient, submit: Callable[[Transcript], Awaitable[None]]):
        self.message_bus = message_bus
        self.submit = submit

    async def start(self) -> None:
        await self.message_bus.subscribe(TRANSCRIPT_SUBJECT, self._on_message)

    async def _on_message(self, data: Dict[str, Any]) -> None:
        transcript = parse_transcript(data)
        if transcript is None:
            logger.error(
                "Malformed transcript message",
                reason=RejectionReason.MALFORMED_MESSAGE.value,
                subject=TRANSCRIPT_SUBJECT,
                payload=data,
            )
            return
        await self.submit(transcript)


def parse_transcript(data: Dict[str, Any]) -> Optional[Transcript]:
    """Build a Transcript from ``{"text", "confidence", "timestamp"?, "source"?}``."""
    try:
        kwargs: Dict[str, Any] = {
            "text": str(data["text"]),
            "confidence": float(data["confidence"]),
        }
        if data.get("timestamp") is not None:
            kwargs["timestamp"] = float(data["timestamp"])
        if data.get("source"):
            kwargs["source"] = TranscriptSource(data["source"])
        return Transcript(**kwargs)
    except (KeyError, TypeError, ValueError):
        return None
