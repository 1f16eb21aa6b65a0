"""Tests for message bus functionality."""

import asyncio
import pytest

from talkgate.collaborators import BusActionHandler
from talkgate.config import TalkgateConfig
from talkgate.messaging import MessageBusClient
from talkgate.models import Intent


async def connected_client() -> MessageBusClient:
    client = MessageBusClient(TalkgateConfig(nats_max_reconnect_attempts=0))
    try:
        await asyncio.wait_for(client.connect(), timeout=2.0)
    except Exception:
        pytest.skip("NATS not available")
    return client


@pytest.mark.asyncio
async def test_connect_disconnect():
    """Test connecting and disconnecting from the message bus."""
    client = await connected_client()
    assert client.is_connected
    await client.disconnect()
    assert not client.is_connected


@pytest.mark.asyncio
async def test_publish_subscribe():
    """Test publish/subscribe functionality."""
    client = await connected_client()
    received_messages = []

    async def callback(msg):
        received_messages.append(msg)

    await client.subscribe("talkgate.test.subject", callback)
    await client.publish("talkgate.test.subject", {"test": "data"})
    await client.publish("talkgate.test.subject", b"not json")
    await asyncio.sleep(0.5)

    assert received_messages == [{"test": "data"}]
    await client.disconnect()


@pytest.mark.asyncio
async def test_request_reply():
    """Test request/reply functionality."""
    client = await connected_client()

    async def handler(request):
        return {"response": f"Echo: {request.get('message')}"}

    await client.reply_handler("talkgate.test.echo", handler)
    response = await client.request("talkgate.test.echo", {"message": "Hello"}, timeout=5.0)

    assert response == {"response": "Echo: Hello"}
    await client.disconnect()


@pytest.mark.asyncio
async def test_action_handler_round_trip():
    """An action service replying in the system service format."""
    client = await connected_client()

    async def lights(request):
        return {"status": "success", "message": "Lights off"}

    await client.reply_handler("system.action.lights_off", lights)
    outcome = await BusActionHandler(client, timeout=5.0)(Intent("lights_off"))

    assert outcome.success
    assert outcome.detail == "Lights off"
    await client.disconnect()


@pytest.mark.asyncio
async def test_not_connected():
    client = MessageBusClient(TalkgateConfig())
    with pytest.raises(RuntimeError):
        await client.publish("talkgate.test.subject", {})
    assert not client.is_connected
