"""Tests for daemon start-up and shutdown wiring."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from talkgate.audit import read_records
from talkgate.collaborators import LoggingSpeechOutput
from talkgate.config import TalkgateConfig
from talkgate.errors import IPCPermissionError
from talkgate.ipc import IPCClient, MessageType
from talkgate.service import TalkgateService


@pytest.fixture
def socket_dir():
    path = Path(tempfile.mkdtemp(prefix="tg"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


def make_config(tmp_path, socket_dir, **overrides):
    catalog = tmp_path / "library.json"
    catalog.write_text(json.dumps({"artist": ["ABBA"]}))
    return TalkgateConfig(
        ipc_socket_path=socket_dir / "tg.sock",
        audit_log_path=tmp_path / "audit.jsonl",
        entity_catalog_path=catalog,
        bus_enabled=False,
        **overrides,
    )


@pytest.mark.asyncio
async def test_start_serve_and_stop(tmp_path, socket_dir):
    config = make_config(tmp_path, socket_dir, action_commands={"lights_off": ["true"]})
    speech = LoggingSpeechOutput()
    service = TalkgateService(config, speech=speech)
    await service.start()

    assert service.is_running
    assert config.ipc_socket_path.exists()
    assert await service.catalog.exists("artist", "abba")

    async with IPCClient(config.ipc_socket_path) as client:
        status = await client.request(MessageType.STATUS_REQUEST)
        assert status.data["listening"] is True
        reply = await client.request(MessageType.TRANSCRIPT, {"text": "lights off", "confidence": 0.9})
        assert reply.success

    await service.pipeline.wait_idle()
    await service.stop()

    assert not config.ipc_socket_path.exists()
    records = read_records(config.audit_path)
    assert [(r.intent, r.outcome.value) for r in records] == [("lights_off", "executed")]
    await service.wait_stopped()


@pytest.mark.asyncio
async def test_reload_applies_new_thresholds(tmp_path, socket_dir, monkeypatch):
    service = TalkgateService(make_config(tmp_path, socket_dir), speech=LoggingSpeechOutput())
    await service.start()
    try:
        monkeypatch.setenv("TALKGATE_CONFIDENCE_THRESHOLD", "0.8")
        monkeypatch.setenv("TALKGATE_IPC_SOCKET_PATH", str(socket_dir / "tg.sock"))
        config = await service.reload_config()

        assert config.confidence_threshold == 0.8
        assert service.pipeline.gate.threshold == 0.8
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_unsecurable_socket_is_fatal(tmp_path, socket_dir):
    config = make_config(tmp_path, socket_dir)
    config.ipc_socket_path.write_text("squatter")
    service = TalkgateService(config)

    with pytest.raises(IPCPermissionError):
        await service.start()
    assert not service.is_running
