"""The command pipeline: transcript in, audited action (or audited rejection) out."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from .admission import ConfidenceGate, RateLimiter
from .audit import AuditLogger
from .collaborators import EventPublisher, LoggingSpeechOutput, SpeechOutput
from .config import TalkgateConfig
from .confirmation import ConfirmationCoordinator, ConfirmationRequest, SelectionPrompt
from .dispatcher import CommandDispatcher
from .errors import RejectionReason, user_message
from .intent import IntentResolver
from .models import (
    ActionOutcome,
    AuditOutcome,
    AuditRecord,
    Intent,
    PromptState,
    Transcript,
    ValidationOutcome,
    ValidationReason,
)
from .validation import EntityValidator

logger = structlog.get_logger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]

_TERMINAL_AUDIT = {
    PromptState.DENIED: (AuditOutcome.DENIED, RejectionReason.CONFIRMATION_DENIED),
    PromptState.EXPIRED: (AuditOutcome.EXPIRED, RejectionReason.CONFIRMATION_EXPIRED),
    PromptState.CANCELLED: (AuditOutcome.CANCELLED, RejectionReason.CONFIRMATION_CANCELLED),
}


@dataclass
class ProcessResult:
    """What happened to one transcript inside ``process``."""

    status: str
    reason: Optional[RejectionReason] = None
    intent: Optional[Intent] = None
    prompt: Optional[ConfirmationRequest | SelectionPrompt] = None
    task: Optional[asyncio.Task] = None

    @property
    def rejected(self) -> bool:
        return self.status == "rejected"


class CommandPipeline:
    """Single consumer of the transcript stream.

    Transcripts are processed one at a time in arrival order. Anything that has
    to wait (confirmation windows, action handlers, speech) runs in its own task
    so the next transcript, such as the "confirm" answering a prompt, is never
    held up.
    """

    def __init__(
        self,
        config: TalkgateConfig,
        resolver: IntentResolver,
        validator: EntityValidator,
        coordinator: ConfirmationCoordinator,
        dispatcher: CommandDispatcher,
        audit: AuditLogger,
        speech: Optional[SpeechOutput] = None,
        events: Optional[EventPublisher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.gate = ConfidenceGate(config.confidence_threshold)
        self.rate_limiter = RateLimiter(config.min_command_interval_s, clock=clock)
        self.resolver = resolver
        self.validator = validator
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self.audit = audit
        self.speech = speech or LoggingSpeechOutput()
        self.events = events

        self.stats: Counter = Counter()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[EventListener] = []
        self._paused = False
        self._speaking = 0
        self._running = False
        self._stopping = False

    # Configuration and lifecycle

    def apply_config(self, config: TalkgateConfig) -> None:
        """Apply thresholds and timeouts from a reloaded configuration."""
        self.config = config
        self.gate.threshold = config.confidence_threshold
        self.rate_limiter.min_interval_s = config.min_command_interval_s
        self.resolver.apply_config(config)
        self.coordinator.apply_config(config)
        self.dispatcher.action_timeout = config.action_timeout_s
        logger.info("Pipeline configuration applied")

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def muted(self) -> bool:
        return self._speaking > 0

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.info("Listening paused")
            self._emit("paused", {})

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            logger.info("Listening resumed")
            self._emit("resumed", {})

    def status(self) -> Dict[str, Any]:
        pending = self.coordinator.pending
        return {
            "listening": self._running and not self._paused,
            "paused": self._paused,
            "muted": self.muted,
            "queue_depth": self._queue.qsize(),
            "in_flight_actions": self.dispatcher.in_flight,
            "pending_prompt": pending.to_dict() if pending else None,
            "last_accepted_at": self.rate_limiter.last_accepted_at,
            "stats": dict(self.stats),
        }

    async def submit(self, transcript: Transcript) -> bool:
        """Queue a transcript for processing. Refused once shutdown has begun."""
        if self._stopping:
            await self._reject(transcript, RejectionReason.SHUTTING_DOWN, speak=False)
            return False
        await self._queue.put(transcript)
        return True

    async def run(self) -> None:
        """Consume the transcript queue until ``shutdown``."""
        self._running = True
        logger.info("Pipeline started")
        try:
            while True:
                transcript = await self._queue.get()
                try:
                    if transcript is None:
                        break
                    await self.process(transcript)
                except Exception:
                    logger.exception("Transcript processing failed", text=transcript.text)
                finally:
                    self._queue.task_done()
        finally:
            self._running = False
            logger.info("Pipeline stopped")

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Stop accepting input, settle pending work and audit anything dropped."""
        self._stopping = True
        while not self._queue.empty():
            transcript = self._queue.get_nowait()
            self._queue.task_done()
            if transcript is not None:
                await self._reject(transcript, RejectionReason.SHUTTING_DOWN, speak=False)
        await self._queue.put(None)

        self.coordinator.shutdown()
        await self.dispatcher.drain(timeout=drain_timeout or self.config.action_timeout_s)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Processing

    async def process(self, transcript: Transcript) -> ProcessResult:
        self.stats["received"] += 1
        received_at = time.time()

        if self._paused:
            return await self._reject(transcript, RejectionReason.PAUSED, speak=False)

        if not self.gate.admit(transcript):
            return await self._reject(transcript, RejectionReason.LOW_CONFIDENCE)

        # Answers to a pending prompt bypass the rate limiter
        pending = self.coordinator.pending
        if pending is not None and self.coordinator.handle_utterance(transcript.text, received_at):
            return ProcessResult("consumed", prompt=pending)

        if not self.rate_limiter.try_acquire():
            return await self._reject(transcript, RejectionReason.RATE_LIMITED)

        intent = await self.resolver.resolve(transcript.text)
        if intent is None:
            return await self._reject(transcript, RejectionReason.NO_INTENT_MATCHED)

        validation = await self.validator.validate(intent)
        if validation.reason is ValidationReason.ENTITY_NOT_FOUND:
            return await self._reject(
                transcript, RejectionReason.ENTITY_NOT_FOUND, intent=intent, detail=validation.value
            )
        if validation.reason is ValidationReason.AMBIGUOUS:
            prompt = self.coordinator.request_selection(intent, validation.parameter, validation.candidates)
            self._announce(prompt)
            self._spawn(self._await_selection(prompt, transcript), name=f"selection-{prompt.id}")
            return ProcessResult("awaiting_selection", intent=intent, prompt=prompt)

        return self._gate_and_dispatch(intent, validation, transcript)

    def _gate_and_dispatch(self, intent: Intent, validation: ValidationOutcome, transcript: Transcript) -> ProcessResult:
        if intent.is_high_risk:
            request = self.coordinator.request_confirmation(intent)
            self._announce(request)
            self._spawn(self._await_confirmation(request, validation, transcript), name=f"confirm-{request.id}")
            return ProcessResult("awaiting_confirmation", intent=intent, prompt=request)

        task = self._dispatch(intent, validation, transcript)
        return ProcessResult("dispatched", intent=intent, task=task)

    def _dispatch(
        self,
        intent: Intent,
        validation: ValidationOutcome,
        transcript: Transcript,
        confirmation: Optional[ConfirmationRequest | SelectionPrompt] = None,
    ) -> asyncio.Task:
        self.stats["dispatched"] += 1
        task = self.dispatcher.dispatch(intent, validation, confirmation=confirmation, transcript=transcript)
        self._spawn(self._report(intent, task), name=f"report-{intent.name}")
        return task

    async def _report(self, intent: Intent, task: asyncio.Task) -> None:
        outcome: ActionOutcome = await task
        if outcome.success:
            self.stats["executed"] += 1
            self._emit("executed", {"intent": intent.to_dict(), "detail": outcome.detail})
            return
        self.stats["failed"] += 1
        self._emit("failed", {"intent": intent.to_dict(), "detail": outcome.detail})
        self._say(user_message(RejectionReason.ACTION_FAILED))

    async def _await_confirmation(
        self,
        request: ConfirmationRequest,
        validation: ValidationOutcome,
        transcript: Transcript,
    ) -> None:
        state = await request.wait()
        if state is PromptState.CONFIRMED:
            if self._stopping:
                await self._reject(transcript, RejectionReason.SHUTTING_DOWN, intent=request.intent, speak=False)
                return
            self._dispatch(request.intent, validation, transcript, confirmation=request)
            return
        outcome, reason = _TERMINAL_AUDIT[state]
        await self._reject(transcript, reason, intent=request.intent, outcome=outcome, speak=request.resolved_by != "shutdown")

    async def _await_selection(self, prompt: SelectionPrompt, transcript: Transcript) -> None:
        state = await prompt.wait()
        if state is not PromptState.CONFIRMED:
            outcome, reason = _TERMINAL_AUDIT[state]
            if state is PromptState.EXPIRED:
                reason = RejectionReason.SELECTION_EXPIRED
            await self._reject(transcript, reason, intent=prompt.intent, outcome=outcome, speak=prompt.resolved_by != "shutdown")
            return

        intent = prompt.resolved_intent()
        validation = await self.validator.validate(intent)
        if not validation.ok:
            await self._reject(transcript, RejectionReason.ENTITY_NOT_FOUND, intent=intent, detail=validation.value)
            return
        if self._stopping:
            await self._reject(transcript, RejectionReason.SHUTTING_DOWN, intent=intent, speak=False)
            return
        self._gate_and_dispatch(intent, validation, transcript)

    async def _reject(
        self,
        transcript: Transcript,
        reason: RejectionReason,
        intent: Optional[Intent] = None,
        detail: Optional[str] = None,
        outcome: AuditOutcome = AuditOutcome.REJECTED,
        speak: bool = True,
    ) -> ProcessResult:
        self.stats[reason.value] += 1
        logger.warning(
            "Command rejected",
            reason=reason.value,
            text=transcript.text,
            confidence=round(transcript.confidence, 3),
            intent=intent.name if intent else None,
        )
        await self.audit.record(
            AuditRecord.for_transcript(transcript, outcome, reason=reason.value, intent=intent, detail=detail)
        )
        self._emit("rejected", {"reason": reason.value, "text": transcript.text, "outcome": outcome.value})
        if speak:
            self._say(user_message(reason, detail))
        return ProcessResult("rejected", reason=reason, intent=intent)

    # Feedback

    def _announce(self, prompt: ConfirmationRequest | SelectionPrompt) -> None:
        self._emit("prompt", prompt.to_dict())
        self._say(prompt.prompt_text())

    def _say(self, text: Optional[str]) -> None:
        if text:
            self._spawn(self._speak(text), name="speak")

    async def _speak(self, text: str) -> None:
        self._speaking += 1
        try:
            await self.speech.speak(text)
        except Exception as e:
            logger.warning("Speech output unavailable", error=str(e))
        finally:
            self._speaking -= 1

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as e:
                logger.error("Event listener failed", kind=kind, error=str(e))
        if self.events is not None:
            self._spawn(self.events.publish(kind, payload), name=f"event-{kind}")

    def _spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", task=task.get_name(), error=str(task.exception()))

    async def wait_idle(self) -> None:
        """Wait until queued transcripts and their follow-up tasks have settled."""
        await self._queue.join()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
