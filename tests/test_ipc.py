"""Tests for the IPC broker over a real Unix socket."""

import asyncio
import contextlib
import shutil
import stat
import tempfile
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from talkgate.audit import AuditLogger
from talkgate.collaborators import LoggingSpeechOutput
from talkgate.config import TalkgateConfig
from talkgate.confirmation import ConfirmationCoordinator
from talkgate.dispatcher import CommandDispatcher
from talkgate.errors import IPCPermissionError
from talkgate.intent import IntentResolver
from talkgate.ipc import IPCBroker, IPCClient, IPCMessage, IPCReply, MessageType, ReplyType
from talkgate.ipc.messages import encode
from talkgate.models import ActionOutcome, PromptState, Transcript
from talkgate.pipeline import CommandPipeline
from talkgate.validation import EntityValidator, InMemoryCatalog

LIBRARY = {"playlist": ["Workout", "Workout Mix", "Chill"]}


class FakeActions:
    def __init__(self):
        self.calls = []

    async def __call__(self, intent):
        self.calls.append(intent)
        return ActionOutcome(success=True)


def make_config(tmp_path, socket_dir, **overrides):
    overrides.setdefault("min_command_interval_ms", 0)
    return TalkgateConfig(
        ipc_socket_path=Path(socket_dir) / "tg.sock",
        audit_log_path=tmp_path / "audit.jsonl",
        **overrides,
    )


@contextlib.asynccontextmanager
async def running_broker(tmp_path, **overrides):
    # Unix socket paths are length limited; keep them out of deep tmp_path trees
    socket_dir = tempfile.mkdtemp(prefix="tg")
    config = make_config(tmp_path, socket_dir, **overrides)
    audit = AuditLogger(config.audit_path)
    actions = FakeActions()
    resolver = IntentResolver.from_config(config)
    coordinator = ConfirmationCoordinator.from_config(config)
    pipeline = CommandPipeline(
        config,
        resolver,
        EntityValidator(InMemoryCatalog(LIBRARY), resolver),
        coordinator,
        CommandDispatcher(audit, fallback=actions),
        audit,
        speech=LoggingSpeechOutput(),
    )
    reloads = []

    async def on_reload():
        reloads.append(True)
        return config

    broker = IPCBroker(config, pipeline, coordinator, audit, on_reload=on_reload)
    await broker.start()
    runner = asyncio.create_task(pipeline.run())
    try:
        yield SimpleNamespace(
            config=config,
            broker=broker,
            pipeline=pipeline,
            coordinator=coordinator,
            audit=audit,
            actions=actions,
            reloads=reloads,
        )
    finally:
        await broker.stop()
        await pipeline.shutdown(drain_timeout=1.0)
        await asyncio.wait_for(runner, timeout=1.0)
        shutil.rmtree(socket_dir, ignore_errors=True)


@pytest.mark.asyncio
async def test_socket_is_owner_only(tmp_path):
    async with running_broker(tmp_path) as env:
        path = env.config.ipc_socket_path
        assert stat.S_ISSOCK(path.stat().st_mode)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert not path.exists()


@pytest.mark.asyncio
async def test_refuses_to_replace_regular_file(tmp_path):
    socket_dir = tempfile.mkdtemp(prefix="tg")
    try:
        config = make_config(tmp_path, socket_dir)
        config.ipc_socket_path.write_text("not a socket")
        audit = AuditLogger(config.audit_path)
        resolver = IntentResolver.from_config(config)
        coordinator = ConfirmationCoordinator()
        pipeline = CommandPipeline(
            config, resolver, EntityValidator(InMemoryCatalog(), resolver), coordinator, CommandDispatcher(), audit
        )
        broker = IPCBroker(config, pipeline, coordinator, audit)

        with pytest.raises(IPCPermissionError):
            await broker.start()
        assert config.ipc_socket_path.read_text() == "not a socket"
    finally:
        shutil.rmtree(socket_dir, ignore_errors=True)


@pytest.mark.asyncio
async def test_status_request(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            reply = await client.request(MessageType.STATUS_REQUEST)

    assert reply.type is ReplyType.STATUS_RESPONSE
    assert reply.seq_id == 1
    assert reply.data["clients"] == 1
    assert reply.data["paused"] is False
    assert reply.data.get("pending_prompt") is None


@pytest.mark.asyncio
async def test_control_is_applied_and_audited(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path, sender="overlay") as client:
            reply = await client.request(MessageType.CONTROL, {"action": "pause"})
            assert reply.success
            assert env.pipeline.paused

            reply = await client.request(MessageType.CONTROL, {"action": "resume"})
            assert not env.pipeline.paused

            bad = await client.request(MessageType.CONTROL, {"action": "explode"})
            assert not bad.success
            assert bad.reason == "malformed_message"

        records = await env.audit.read()

    assert [(r.command, r.source) for r in records] == [
        ("ipc pause", "ipc:overlay"),
        ("ipc resume", "ipc:overlay"),
    ]


@pytest.mark.asyncio
async def test_reload_config(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            reply = await client.request(MessageType.RELOAD_CONFIG)
        assert reply.success
        assert env.reloads == [True]


@pytest.mark.asyncio
async def test_repeated_sequence_id_is_rejected(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            line = encode(IPCMessage.build("control", "test", {"action": "pause"}, seq_id=1))

            first = await client.send_raw(line, 1)
            assert first.success
            env.pipeline.resume()

            replayed = await client.send_raw(line, 1)

        assert not replayed.success
        assert replayed.reason == "ipc_replay_rejected"
        assert not env.pipeline.paused
        assert len(await env.audit.read()) == 1


@pytest.mark.asyncio
async def test_out_of_order_sequence_is_rejected(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            line = encode(IPCMessage.build("status_request", "test", seq_id=3))
            reply = await client.send_raw(line, 3)

    assert reply.reason == "ipc_replay_rejected"


@pytest.mark.asyncio
async def test_nonce_replay_across_connections(tmp_path):
    async with running_broker(tmp_path) as env:
        message = IPCMessage.build("status_request", "test")
        async with IPCClient(env.config.ipc_socket_path) as client:
            first = await client.send_raw(encode(message), message.nonce)
        async with IPCClient(env.config.ipc_socket_path) as client:
            second = await client.send_raw(encode(message), message.nonce)

    assert first.type is ReplyType.STATUS_RESPONSE
    assert second.type is ReplyType.ERROR
    assert second.reason == "ipc_replay_rejected"


@pytest.mark.asyncio
async def test_stale_timestamp_is_rejected(tmp_path):
    async with running_broker(tmp_path) as env:
        message = IPCMessage(type="status_request", sender="test", nonce="f" * 32, timestamp=time.time() - 3600)
        async with IPCClient(env.config.ipc_socket_path) as client:
            reply = await client.send_raw(encode(message), message.nonce)

    assert reply.reason == "ipc_replay_rejected"


@pytest.mark.asyncio
async def test_connection_rate_limit(tmp_path):
    async with running_broker(tmp_path, ipc_rate_burst=2, ipc_rate_per_second=0.01) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            assert (await client.request(MessageType.STATUS_REQUEST)).success
            assert (await client.request(MessageType.STATUS_REQUEST)).success
            limited = await client.request(MessageType.STATUS_REQUEST)

    assert not limited.success
    assert limited.reason == "ipc_rate_limited"
    assert limited.seq_id == 3


@pytest.mark.asyncio
async def test_connection_recovers_after_rate_limit(tmp_path):
    async with running_broker(tmp_path, ipc_rate_burst=1, ipc_rate_per_second=2.0) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            assert (await client.request(MessageType.STATUS_REQUEST)).success
            limited = await client.request(MessageType.STATUS_REQUEST)

            await asyncio.sleep(0.6)
            after = await client.request(MessageType.STATUS_REQUEST)
            await asyncio.sleep(0.6)
            again = await client.request(MessageType.STATUS_REQUEST)

    assert limited.reason == "ipc_rate_limited"
    assert after.type is ReplyType.STATUS_RESPONSE
    assert again.type is ReplyType.STATUS_RESPONSE


@pytest.mark.asyncio
async def test_stale_sequenced_message_keeps_connection_usable(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            stale = IPCMessage(type="status_request", sender="test", seq_id=1, timestamp=time.time() - 3600)
            rejected = await client.send_raw(encode(stale), 1)
            status = await client.send_raw(encode(IPCMessage.build("status_request", "test", seq_id=2)), 2)

    assert rejected.reason == "ipc_replay_rejected"
    assert status.type is ReplyType.STATUS_RESPONSE


@pytest.mark.asyncio
async def test_unknown_message_type(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            reply = await client.request("launch_missiles")
            # The connection stays usable
            status = await client.request(MessageType.STATUS_REQUEST)

    assert reply.type is ReplyType.ERROR
    assert reply.reason == "unhandled_message"
    assert status.type is ReplyType.STATUS_RESPONSE


@pytest.mark.asyncio
async def test_malformed_lines(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            garbage = await client.send_raw(b"not json\n", None)
            unknown_field = await client.send_raw(
                b'{"type": "status_request", "seq_id": 1, "sender": "x", "timestamp": 1, "admin": true}\n', None
            )

    assert garbage.reason == "malformed_message"
    assert unknown_field.reason == "malformed_message"


@pytest.mark.asyncio
async def test_oversized_message(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path) as client:
            reply = await client.request(MessageType.TRANSCRIPT, {"text": "x" * 5000, "confidence": 0.9})

    assert reply.reason == "malformed_message"


@pytest.mark.asyncio
async def test_confirm_over_ipc(tmp_path):
    async with running_broker(tmp_path) as env:
        result = await env.pipeline.process(Transcript("self destruct", 0.9))
        prompt_id = result.prompt.id

        async with IPCClient(env.config.ipc_socket_path) as client:
            stale = await client.request(MessageType.CONFIRM, {"prompt_id": "0" * 12})
            reply = await client.request(MessageType.CONFIRM, {"prompt_id": prompt_id})

        await env.pipeline.wait_idle()
        assert [i.name for i in env.actions.calls] == ["self_destruct"]

    assert not stale.success
    assert reply.success
    assert result.prompt.resolved_by == "ipc:tgctl"


@pytest.mark.asyncio
async def test_gui_selection_preempts_voice(tmp_path):
    async with running_broker(tmp_path) as env:
        result = await env.pipeline.process(Transcript("play playlist workout mx", 0.9))
        prompt = result.prompt

        async with IPCClient(env.config.ipc_socket_path, sender="overlay") as client:
            reply = await client.request(MessageType.SELECT, {"prompt_id": prompt.id, "index": 1})

        late = await env.pipeline.process(Transcript("two", 0.9))
        await env.pipeline.wait_idle()

        assert reply.success
        assert prompt.state is PromptState.CONFIRMED
        assert prompt.resolved_by == "gui:overlay"
        assert prompt.chosen == 1
        assert late.status != "consumed"
        (call,) = env.actions.calls
        assert call.parameters["playlist"] == prompt.label(1)


@pytest.mark.asyncio
async def test_subscribers_receive_prompts(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path, sender="overlay") as client:
            reply = await client.request(MessageType.SUBSCRIBE)
            assert reply.data.get("pending_prompt") is None

            events = client.events()
            await env.pipeline.process(Transcript("eject", 0.9))
            pushed = await asyncio.wait_for(events.__anext__(), timeout=1.0)

            assert pushed.type is ReplyType.CONFIRMATION_REQUEST
            assert pushed.data["intent"] == "eject"
            env.coordinator.cancel(pushed.data["id"])

            resolved = await asyncio.wait_for(events.__anext__(), timeout=1.0)
            assert resolved.type is ReplyType.PROMPT_RESOLVED
            assert resolved.data["state"] == "cancelled"


@pytest.mark.asyncio
async def test_transcript_over_ipc(tmp_path):
    async with running_broker(tmp_path) as env:
        async with IPCClient(env.config.ipc_socket_path, sender="voice") as client:
            reply = await client.request(MessageType.TRANSCRIPT, {"text": "lights off", "confidence": 0.9})
        assert reply.success
        await env.pipeline.wait_idle()
        assert [i.name for i in env.actions.calls] == ["lights_off"]


@pytest.mark.asyncio
async def test_subscriber_that_stops_reading_is_dropped(tmp_path):
    async with running_broker(tmp_path, ipc_outbox_size=2, ipc_send_timeout_s=0.5) as env:
        reader, writer = await asyncio.open_unix_connection(str(env.config.ipc_socket_path))
        writer.write(encode(IPCMessage.build("subscribe", "stuck", seq_id=1)))
        await writer.drain()
        await reader.readline()
        assert env.broker.client_count == 1

        bulk = IPCReply(type=ReplyType.EVENT, message="bulk", data={"blob": "x" * 65536})
        for _ in range(200):
            if env.broker.client_count == 0:
                break
            env.broker.broadcast(bulk)
            await asyncio.sleep(0.01)

        assert env.broker.client_count == 0
        assert env.broker.broadcast(bulk) == 0
        await asyncio.wait_for(env.broker.stop(), timeout=5.0)
        writer.close()
