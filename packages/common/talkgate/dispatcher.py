"""Command dispatch to external action handlers."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Sequence, Set

import structlog

from .audit import AuditLogger
from .confirmation import ConfirmationRequest, SelectionPrompt
from .errors import ActionHandlerUnavailable, DispatchRefused, RejectionReason
from .models import (
    ActionOutcome,
    AuditOutcome,
    AuditRecord,
    Intent,
    PromptState,
    Transcript,
    TranscriptSource,
    ValidationOutcome,
)

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Intent], Awaitable[ActionOutcome]]


class SubprocessActionHandler:
    """Runs a configured command line for an intent.

    Arguments are templates formatted with the intent name and parameters,
    e.g. ``["playerctl", "{name}"]`` or ``["mpc", "search", "artist", "{artist}"]``.
    """

    def __init__(self, command: Sequence[str]):
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)

    def argv(self, intent: Intent) -> list:
        values = dict(intent.parameters)
        values["name"] = intent.name
        try:
            return [part.format(**values) for part in self.command]
        except KeyError as e:
            raise ActionHandlerUnavailable(f"{intent.name}: command template needs parameter {e}") from e

    async def __call__(self, intent: Intent) -> ActionOutcome:
        argv = self.argv(intent)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ActionHandlerUnavailable(f"{argv[0]}: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode == 0:
            return ActionOutcome(success=True, detail=stdout.decode(errors="replace").strip() or None)
        return ActionOutcome(
            success=False,
            detail=stderr.decode(errors="replace").strip() or f"exit status {proc.returncode}",
        )


class CommandDispatcher:
    """Invokes action handlers without blocking the pipeline.

    ``dispatch`` returns immediately with a task; the handler runs, is bounded
    by ``action_timeout`` and its outcome is audited when it finishes.
    """

    def __init__(
        self,
        audit: Optional[AuditLogger] = None,
        action_timeout: float = 30.0,
        fallback: Optional[ActionHandler] = None,
    ):
        self.audit = audit
        self.action_timeout = action_timeout
        self.fallback = fallback
        self._handlers: Dict[str, ActionHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler
        logger.debug("Action handler registered", intent=name)

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def handler_for(self, name: str) -> Optional[ActionHandler]:
        return self._handlers.get(name, self.fallback)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        intent: Intent,
        validation: ValidationOutcome,
        confirmation: Optional[ConfirmationRequest | SelectionPrompt] = None,
        transcript: Optional[Transcript] = None,
    ) -> asyncio.Task:
        if not validation.ok:
            raise DispatchRefused(f"{intent.name}: validation failed ({validation.reason.value})")
        if intent.is_high_risk and (confirmation is None or confirmation.state is not PromptState.CONFIRMED):
            raise DispatchRefused(f"{intent.name}: high-risk intent is not confirmed")

        task = asyncio.create_task(self._run(intent, transcript), name=f"dispatch-{intent.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, intent: Intent, transcript: Optional[Transcript]) -> ActionOutcome:
        handler = self.handler_for(intent.name)
        reason: Optional[RejectionReason] = None

        if handler is None:
            outcome = ActionOutcome(success=False, detail="no handler registered")
            reason = RejectionReason.ACTION_HANDLER_UNAVAILABLE
        else:
            logger.info("Dispatching action", intent=intent.name, parameters=dict(intent.parameters))
            try:
                outcome = await asyncio.wait_for(handler(intent), timeout=self.action_timeout)
            except asyncio.CancelledError:
                # The handler may already have had side effects
                logger.warning("Action cancelled", reason=RejectionReason.SHUTTING_DOWN.value, intent=intent.name)
                await self._record(
                    intent,
                    transcript,
                    ActionOutcome(success=False, detail="cancelled before completion"),
                    RejectionReason.SHUTTING_DOWN,
                    AuditOutcome.CANCELLED,
                )
                raise
            except asyncio.TimeoutError:
                outcome = ActionOutcome(success=False, detail=f"timed out after {self.action_timeout}s")
                reason = RejectionReason.ACTION_HANDLER_UNAVAILABLE
            except ActionHandlerUnavailable as e:
                outcome = ActionOutcome(success=False, detail=str(e))
                reason = RejectionReason.ACTION_HANDLER_UNAVAILABLE
            except Exception as e:
                logger.exception("Action handler crashed", intent=intent.name)
                outcome = ActionOutcome(success=False, detail=str(e))
                reason = RejectionReason.ACTION_HANDLER_UNAVAILABLE
            else:
                if not outcome.success:
                    reason = RejectionReason.ACTION_FAILED

        if reason is None:
            logger.info("Action executed", intent=intent.name, detail=outcome.detail)
            await self._record(intent, transcript, outcome, None, AuditOutcome.EXECUTED)
        else:
            logger.warning("Action not executed", reason=reason.value, intent=intent.name, detail=outcome.detail)
            await self._record(intent, transcript, outcome, reason, AuditOutcome.REJECTED)
        return outcome

    async def _record(
        self,
        intent: Intent,
        transcript: Optional[Transcript],
        outcome: ActionOutcome,
        reason: Optional[RejectionReason],
        result: AuditOutcome,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditRecord(
                command=transcript.text if transcript else intent.utterance or intent.describe(),
                confidence=transcript.confidence if transcript else intent.confidence,
                source=(transcript.source if transcript else TranscriptSource.LIVE_MIC).value,
                outcome=result,
                reason=reason.value if reason else None,
                intent=intent.name,
                detail=outcome.detail,
            )
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight actions; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("Draining in-flight actions", count=len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled unfinished actions", count=len(still_running))
