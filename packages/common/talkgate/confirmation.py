"""Confirmation coordinator.

Holds the single live ConfirmationRequest or SelectionPrompt for the process.
A prompt leaves ``pending`` exactly once: through a matching utterance, an IPC
resolution, a superseding prompt, shutdown, or its deadline timer.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import structlog

from .config import TalkgateConfig
from .errors import RejectionReason
from .models import Intent, PromptState
from .normalizer import TextNormalizer, parse_number

logger = structlog.get_logger(__name__)

PAGE_SIZE = 5
NEXT_PAGE_WORDS = ("next", "more")
PREVIOUS_PAGE_WORDS = ("previous", "back")
SELECTION_EXIT_WORDS = ("quit", "exit")


class _Prompt:
    kind = "prompt"

    def __init__(self, intent: Intent, timeout: float):
        self.id = uuid.uuid4().hex[:12]
        self.intent = intent
        self.created_at = time.time()
        self.deadline = self.created_at + timeout
        self.state = PromptState.PENDING
        self.resolved_by: Optional[str] = None
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_pending(self) -> bool:
        return self.state is PromptState.PENDING

    async def wait(self) -> PromptState:
        """Wait for the terminal state."""
        return await asyncio.shield(self._future)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "intent": self.intent.describe(),
            "state": self.state.value,
            "deadline": self.deadline,
            "resolved_by": self.resolved_by,
        }


class ConfirmationRequest(_Prompt):
    """Yes/no gate in front of a high-risk intent."""

    kind = "confirmation"

    def prompt_text(self) -> str:
        return f"Are you sure you want to {self.intent.describe()}? Say confirm or cancel."


class SelectionPrompt(_Prompt):
    """Index-resolved disambiguation among entity candidates."""

    kind = "selection"

    def __init__(self, intent: Intent, parameter: str, labels: Sequence[str], timeout: float):
        if not labels:
            raise ValueError("a selection prompt needs at least one candidate")
        super().__init__(intent, timeout)
        self.parameter = parameter
        self.candidates: Tuple[Tuple[int, str], ...] = tuple(
            (i, label) for i, label in enumerate(labels, start=1)
        )
        self.chosen: Optional[int] = None
        self.page = 0

    @property
    def total_pages(self) -> int:
        return (len(self.candidates) - 1) // PAGE_SIZE + 1

    def page_items(self) -> Tuple[Tuple[int, str], ...]:
        start = self.page * PAGE_SIZE
        return self.candidates[start:start + PAGE_SIZE]

    def label(self, index: int) -> Optional[str]:
        if 1 <= index <= len(self.candidates):
            return self.candidates[index - 1][1]
        return None

    @property
    def chosen_label(self) -> Optional[str]:
        return self.label(self.chosen) if self.chosen is not None else None

    def resolved_intent(self) -> Optional[Intent]:
        """The intent with the chosen candidate substituted, once chosen."""
        label = self.chosen_label
        if label is None:
            return None
        return self.intent.with_parameter(self.parameter, label)

    def prompt_text(self) -> str:
        items = ", ".join(f"{i}. {label}" for i, label in self.page_items())
        msg = f"Found {len(self.candidates)} matches. {items}"
        if self.total_pages > 1:
            msg = f"Page {self.page + 1}. {msg}"
        if (self.page + 1) * PAGE_SIZE < len(self.candidates):
            msg += ". Say 'next' for more."
        return msg

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            parameter=self.parameter,
            candidates=[{"index": i, "label": label} for i, label in self.candidates],
            page=self.page,
            total_pages=self.total_pages,
            chosen=self.chosen,
        )
        return data


Prompt = Union[ConfirmationRequest, SelectionPrompt]
PromptListener = Callable[[str, Prompt], None]


def _has_phrase(text: str, phrases: Iterable[str]) -> bool:
    return any(text == p or text.startswith(p + " ") for p in phrases)


class ConfirmationCoordinator:
    """Owner of the single pending prompt.

    All transitions run on the event loop thread, so the first resolution to be
    applied wins; later resolutions of the same prompt are refused.
    """

    def __init__(
        self,
        confirmation_timeout: float = 10.0,
        selection_timeout: float = 10.0,
        confirm_words: Sequence[str] = ("confirm", "yes", "do it"),
        deny_words: Sequence[str] = ("no", "deny", "abort"),
        cancel_words: Sequence[str] = ("cancel", "stop", "never mind"),
    ):
        self.confirmation_timeout = confirmation_timeout
        self.selection_timeout = selection_timeout
        self.confirm_words = tuple(confirm_words)
        self.deny_words = tuple(deny_words)
        self.cancel_words = tuple(cancel_words)
        self._normalizer = TextNormalizer()
        self._pending: Optional[Prompt] = None
        self._listeners: List[PromptListener] = []

    @classmethod
    def from_config(cls, config: TalkgateConfig) -> ConfirmationCoordinator:
        coordinator = cls()
        coordinator.apply_config(config)
        return coordinator

    def apply_config(self, config: TalkgateConfig) -> None:
        self.confirmation_timeout = config.confirmation_timeout_s
        self.selection_timeout = config.selection_timeout_s
        self.confirm_words = tuple(w.lower() for w in config.confirm_words)
        self.deny_words = tuple(w.lower() for w in config.deny_words)
        self.cancel_words = tuple(w.lower() for w in config.cancel_words)

    @property
    def pending(self) -> Optional[Prompt]:
        return self._pending

    def add_listener(self, listener: PromptListener) -> None:
        """Register a callback for ``opened``, ``updated`` and ``resolved`` events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: PromptListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Opening prompts

    def request_confirmation(self, intent: Intent, timeout: Optional[float] = None) -> ConfirmationRequest:
        request = ConfirmationRequest(intent, timeout or self.confirmation_timeout)
        self._open(request, timeout or self.confirmation_timeout)
        return request

    def request_selection(
        self,
        intent: Intent,
        parameter: str,
        candidates: Sequence[str],
        timeout: Optional[float] = None,
    ) -> SelectionPrompt:
        window = min(timeout or self.selection_timeout, 10.0)
        prompt = SelectionPrompt(intent, parameter, candidates, window)
        self._open(prompt, window)
        return prompt

    def _open(self, prompt: Prompt, timeout: float) -> None:
        previous = self._pending
        if previous is not None:
            logger.warning(
                "Prompt superseded",
                reason=RejectionReason.CONFIRMATION_CANCELLED.value,
                prompt_id=previous.id,
                intent=previous.intent.name,
                superseded_by=prompt.id,
            )
            self._transition(previous, PromptState.CANCELLED, channel="superseded")

        self._pending = prompt
        prompt._timer = asyncio.get_running_loop().call_later(timeout, self._expire, prompt)
        logger.info(
            "Prompt opened",
            kind=prompt.kind,
            prompt_id=prompt.id,
            intent=prompt.intent.name,
            timeout=timeout,
        )
        self._notify("opened", prompt)

    # Resolution

    def handle_utterance(self, text: str, received_at: Optional[float] = None) -> bool:
        """Match an utterance against the pending prompt.

        Returns True when the utterance was consumed by the prompt.
        """
        prompt = self._pending
        if prompt is None:
            return False
        normalized = self._normalizer.normalize(text)

        if isinstance(prompt, ConfirmationRequest):
            if _has_phrase(normalized, self.confirm_words):
                return self._resolve(prompt, PromptState.CONFIRMED, "voice", received_at)
            if _has_phrase(normalized, self.deny_words):
                return self._resolve(prompt, PromptState.DENIED, "voice", received_at)
            if _has_phrase(normalized, self.cancel_words):
                return self._resolve(prompt, PromptState.CANCELLED, "voice", received_at)
        else:
            words = normalized.split()
            if any(w in words for w in NEXT_PAGE_WORDS):
                self._turn_page(prompt, 1)
                return True
            if any(w in words for w in PREVIOUS_PAGE_WORDS):
                self._turn_page(prompt, -1)
                return True
            if _has_phrase(normalized, self.cancel_words + self.deny_words + SELECTION_EXIT_WORDS):
                return self._resolve(prompt, PromptState.CANCELLED, "voice", received_at)
            index = parse_number(normalized)
            if index is not None and prompt.label(index) is not None:
                return self.select(prompt.id, index, channel="voice", received_at=received_at)

        logger.info("Prompt input not recognized", prompt_id=prompt.id, kind=prompt.kind, text=normalized)
        return False

    def confirm(self, request_id: str, channel: str = "ipc", received_at: Optional[float] = None) -> bool:
        return self._resolve_by_id(request_id, PromptState.CONFIRMED, channel, received_at, ConfirmationRequest)

    def deny(self, request_id: str, channel: str = "ipc", received_at: Optional[float] = None) -> bool:
        return self._resolve_by_id(request_id, PromptState.DENIED, channel, received_at, ConfirmationRequest)

    def cancel(self, request_id: str, channel: str = "ipc", received_at: Optional[float] = None) -> bool:
        return self._resolve_by_id(request_id, PromptState.CANCELLED, channel, received_at, None)

    def select(
        self,
        prompt_id: str,
        index: int,
        channel: str = "gui",
        received_at: Optional[float] = None,
    ) -> bool:
        prompt = self._lookup(prompt_id, SelectionPrompt)
        if prompt is None:
            return False
        if prompt.label(index) is None:
            logger.warning(
                "Selection out of range",
                prompt_id=prompt_id,
                index=index,
                candidates=len(prompt.candidates),
                channel=channel,
            )
            return False
        if not self._within_deadline(prompt, received_at):
            return False
        prompt.chosen = index
        logger.info("Selection made", prompt_id=prompt_id, index=index, label=prompt.chosen_label, channel=channel)
        return self._transition(prompt, PromptState.CONFIRMED, channel)

    def shutdown(self) -> None:
        """Cancel whatever is pending; called once on process teardown."""
        if self._pending is not None:
            self._transition(self._pending, PromptState.CANCELLED, channel="shutdown")
        self._listeners.clear()

    # Internals

    def _lookup(self, prompt_id: str, kind: Optional[type]) -> Optional[Prompt]:
        prompt = self._pending
        if prompt is None or prompt.id != prompt_id or (kind is not None and not isinstance(prompt, kind)):
            logger.warning("Stale prompt resolution", prompt_id=prompt_id, pending=prompt.id if prompt else None)
            return None
        return prompt

    def _resolve_by_id(
        self,
        prompt_id: str,
        state: PromptState,
        channel: str,
        received_at: Optional[float],
        kind: Optional[type],
    ) -> bool:
        prompt = self._lookup(prompt_id, kind)
        if prompt is None:
            return False
        return self._resolve(prompt, state, channel, received_at)

    def _resolve(self, prompt: Prompt, state: PromptState, channel: str, received_at: Optional[float]) -> bool:
        if not self._within_deadline(prompt, received_at):
            return False
        return self._transition(prompt, state, channel)

    def _within_deadline(self, prompt: Prompt, received_at: Optional[float]) -> bool:
        received_at = time.time() if received_at is None else received_at
        if received_at > prompt.deadline:
            # Arrived after the deadline but before the timer ran
            self._expire(prompt)
            return False
        return True

    def _turn_page(self, prompt: SelectionPrompt, step: int) -> None:
        page = min(max(prompt.page + step, 0), prompt.total_pages - 1)
        if page != prompt.page:
            prompt.page = page
            logger.debug("Selection page changed", prompt_id=prompt.id, page=page + 1)
        self._notify("updated", prompt)

    def _expire(self, prompt: Prompt) -> None:
        if not prompt.is_pending:
            return
        if isinstance(prompt, ConfirmationRequest):
            reason = RejectionReason.CONFIRMATION_EXPIRED
        else:
            reason = RejectionReason.SELECTION_EXPIRED
        logger.warning("Prompt expired", reason=reason.value, prompt_id=prompt.id, intent=prompt.intent.name)
        self._transition(prompt, PromptState.EXPIRED, channel="timer")

    def _transition(self, prompt: Prompt, state: PromptState, channel: str) -> bool:
        if not prompt.is_pending:
            return False
        prompt.state = state
        prompt.resolved_by = channel
        if prompt._timer is not None:
            prompt._timer.cancel()
        if self._pending is prompt:
            self._pending = None
        if not prompt._future.done():
            prompt._future.set_result(state)
        logger.info(
            "Prompt resolved",
            kind=prompt.kind,
            prompt_id=prompt.id,
            intent=prompt.intent.name,
            state=state.value,
            channel=channel,
        )
        self._notify("resolved", prompt)
        return True

    def _notify(self, event: str, prompt: Prompt) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, prompt)
            except Exception as e:
                logger.error("Prompt listener failed", event=event, prompt_id=prompt.id, error=str(e))
