"""Tests for the command dispatcher."""

import asyncio

import pytest

from talkgate.audit import AuditLogger
from talkgate.confirmation import ConfirmationCoordinator
from talkgate.dispatcher import CommandDispatcher, SubprocessActionHandler
from talkgate.errors import ActionHandlerUnavailable, DispatchRefused
from talkgate.models import ActionOutcome, AuditOutcome, Intent, RiskTier, Transcript, ValidationOutcome

LIGHTS_OFF = Intent("lights_off", risk_tier=RiskTier.SAFE, utterance="turn off the lights")
SELF_DESTRUCT = Intent("self_destruct", risk_tier=RiskTier.HIGH_RISK, utterance="self destruct")


class RecordingHandler:
    def __init__(self, outcome=None, delay=0.0):
        self.outcome = outcome or ActionOutcome(success=True)
        self.delay = delay
        self.calls = []

    async def __call__(self, intent):
        self.calls.append(intent)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.mark.asyncio
async def test_dispatch_runs_handler_and_audits(audit):
    handler = RecordingHandler()
    dispatcher = CommandDispatcher(audit)
    dispatcher.register("lights_off", handler)

    task = dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid(), transcript=Transcript("turn off the lights", 0.9))
    outcome = await task

    assert outcome.success
    assert handler.calls == [LIGHTS_OFF]
    records = await audit.read()
    assert [(r.outcome, r.intent, r.command) for r in records] == [
        (AuditOutcome.EXECUTED, "lights_off", "turn off the lights")
    ]
    assert records[0].confidence == 0.9


@pytest.mark.asyncio
async def test_invalid_validation_is_refused(audit):
    dispatcher = CommandDispatcher(audit)
    dispatcher.register("play_artist", RecordingHandler())

    with pytest.raises(DispatchRefused):
        dispatcher.dispatch(Intent("play_artist", {"artist": "xyzzy"}), ValidationOutcome.not_found("artist", "xyzzy"))
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_high_risk_needs_confirmed_request():
    handler = RecordingHandler()
    dispatcher = CommandDispatcher()
    dispatcher.register("self_destruct", handler)
    coordinator = ConfirmationCoordinator()

    with pytest.raises(DispatchRefused):
        dispatcher.dispatch(SELF_DESTRUCT, ValidationOutcome.valid())

    request = coordinator.request_confirmation(SELF_DESTRUCT)
    with pytest.raises(DispatchRefused):
        dispatcher.dispatch(SELF_DESTRUCT, ValidationOutcome.valid(), confirmation=request)

    coordinator.confirm(request.id)
    await dispatcher.dispatch(SELF_DESTRUCT, ValidationOutcome.valid(), confirmation=request)
    assert handler.calls == [SELF_DESTRUCT]


@pytest.mark.asyncio
async def test_missing_handler_is_audited(audit):
    dispatcher = CommandDispatcher(audit)
    outcome = await dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())

    assert not outcome.success
    (record,) = await audit.read()
    assert record.outcome is AuditOutcome.REJECTED
    assert record.reason == "action_handler_unavailable"
    assert record.command == "turn off the lights"


@pytest.mark.asyncio
async def test_fallback_handler():
    fallback = RecordingHandler()
    dispatcher = CommandDispatcher(fallback=fallback)
    await dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())
    assert fallback.calls == [LIGHTS_OFF]


@pytest.mark.asyncio
async def test_handler_timeout(audit):
    dispatcher = CommandDispatcher(audit, action_timeout=0.05)
    dispatcher.register("lights_off", RecordingHandler(delay=1.0))

    outcome = await dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())

    assert not outcome.success
    assert "timed out" in outcome.detail
    (record,) = await audit.read()
    assert record.reason == "action_handler_unavailable"


@pytest.mark.asyncio
async def test_failed_action_is_audited(audit):
    dispatcher = CommandDispatcher(audit)
    dispatcher.register("lights_off", RecordingHandler(ActionOutcome(success=False, detail="bulb offline")))

    await dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())

    (record,) = await audit.read()
    assert record.outcome is AuditOutcome.REJECTED
    assert record.reason == "action_failed"
    assert record.detail == "bulb offline"


@pytest.mark.asyncio
async def test_dispatch_does_not_block():
    handler = RecordingHandler(delay=0.2)
    dispatcher = CommandDispatcher()
    dispatcher.register("lights_off", handler)

    task = dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())
    assert not task.done()
    assert dispatcher.in_flight == 1
    await task
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_drain_cancels_stragglers(audit):
    dispatcher = CommandDispatcher(audit)
    dispatcher.register("lights_off", RecordingHandler(delay=5.0))
    task = dispatcher.dispatch(LIGHTS_OFF, ValidationOutcome.valid())
    await asyncio.sleep(0)

    await dispatcher.drain(timeout=0.05)
    assert task.cancelled()

    (record,) = await audit.read()
    assert record.outcome is AuditOutcome.CANCELLED
    assert record.reason == "shutting_down"
    assert record.intent == "lights_off"


@pytest.mark.asyncio
async def test_cancelled_confirmed_action_is_audited(audit):
    coordinator = ConfirmationCoordinator()
    request = coordinator.request_confirmation(SELF_DESTRUCT)
    coordinator.confirm(request.id)

    dispatcher = CommandDispatcher(audit)
    dispatcher.register("self_destruct", RecordingHandler(delay=5.0))
    task = dispatcher.dispatch(SELF_DESTRUCT, ValidationOutcome.valid(), confirmation=request)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (record,) = await audit.read()
    assert (record.intent, record.outcome, record.command) == ("self_destruct", AuditOutcome.CANCELLED, "self destruct")


@pytest.mark.asyncio
async def test_subprocess_handler():
    ok = await SubprocessActionHandler(["echo", "{name}", "{artist}"])(Intent("play_artist", {"artist": "abba"}))
    assert ok.success
    assert ok.detail == "play_artist abba"

    failed = await SubprocessActionHandler(["false"])(LIGHTS_OFF)
    assert not failed.success


@pytest.mark.asyncio
async def test_subprocess_handler_unavailable():
    with pytest.raises(ActionHandlerUnavailable):
        await SubprocessActionHandler(["echo", "{artist}"])(LIGHTS_OFF)
    with pytest.raises(ActionHandlerUnavailable):
        await SubprocessActionHandler(["/nonexistent/talkgate-action"])(LIGHTS_OFF)
