"""Message bus client wrapper for NATS."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import nats
from nats.aio.client import Client as NATSClient
import structlog

from .config import TalkgateConfig

logger = structlog.get_logger(__name__)

Payload = Union[Dict[str, Any], str, bytes]


def _encode(message: Payload) -> bytes:
    if isinstance(message, dict):
        return json.dumps(message).encode()
    if isinstance(message, str):
        return message.encode()
    return message


class MessageBusClient:
    """Wrapper for the NATS bus shared with the speech, LLM and action services."""

    def __init__(self, config: Optional[TalkgateConfig] = None):
        self.config = config or TalkgateConfig()
        self.nc: Optional[NATSClient] = None
        self._subscriptions: Dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return self.nc is not None and self.nc.is_connected

    async def connect(self) -> None:
        """Connect to the NATS server."""
        try:
            self.nc = await nats.connect(
                servers=[self.config.nats_url],
                max_reconnect_attempts=self.config.nats_max_reconnect_attempts,
                reconnect_time_wait=2,
                error_cb=self._error_callback,
                disconnected_cb=self._disconnected_callback,
                reconnected_cb=self._reconnected_callback,
            )
            logger.info("Connected to NATS", url=self.config.nats_url)
        except Exception as e:
            logger.error("Failed to connect to NATS", url=self.config.nats_url, error=str(e))
            raise

    async def disconnect(self) -> None:
        """Drain subscriptions and close the connection."""
        if self.nc:
            await self.nc.drain()
            self.nc = None
            self._subscriptions.clear()
            logger.info("Disconnected from NATS")

    async def publish(
        self,
        subject: str,
        message: Payload,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if not self.nc:
            raise RuntimeError("Not connected to NATS")
        payload = _encode(message)
        await self.nc.publish(subject, payload, headers=headers)
        logger.debug("Published message", subject=subject, size=len(payload))

    async def request(
        self,
        subject: str,
        message: Payload,
        timeout: float = 10.0,
    ) -> Dict[str, Any]:
        """Send a request and wait for a JSON reply."""
        if not self.nc:
            raise RuntimeError("Not connected to NATS")
        try:
            response = await self.nc.request(subject, _encode(message), timeout=timeout)
            return json.loads(response.data.decode())
        except asyncio.TimeoutError:
            logger.error("Request timeout", subject=subject, timeout=timeout)
            raise
        except Exception as e:
            logger.error("Request failed", subject=subject, error=str(e))
            raise

    async def subscribe(
        self,
        subject: str,
        callback: Callable[[Dict[str, Any]], Awaitable[None]],
        queue: Optional[str] = None,
    ) -> None:
        if not self.nc:
            raise RuntimeError("Not connected to NATS")

        async def message_handler(msg):
            try:
                data = json.loads(msg.data.decode())
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.error("Malformed bus message", subject=subject, error=str(e))
                return
            try:
                await callback(data)
            except Exception as e:
                logger.error("Error handling message", subject=subject, error=str(e))

        sub = await self.nc.subscribe(subject, queue=queue or "", cb=message_handler)
        self._subscriptions[subject] = sub
        logger.info("Subscribed to subject", subject=subject, queue=queue)

    async def reply_handler(
        self,
        subject: str,
        handler: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]],
    ) -> None:
        """Register a request/reply handler."""
        if not self.nc:
            raise RuntimeError("Not connected to NATS")

        async def reply_callback(msg):
            try:
                request_data = json.loads(msg.data.decode())
                response_data = await handler(request_data)
            except Exception as e:
                logger.error("Error handling request", subject=subject, error=str(e))
                response_data = {"error": str(e)}
            await msg.respond(json.dumps(response_data).encode())

        sub = await self.nc.subscribe(subject, cb=reply_callback)
        self._subscriptions[subject] = sub
        logger.info("Registered reply handler", subject=subject)

    async def _error_callback(self, e: Exception) -> None:
        logger.error("NATS error", error=str(e))

    async def _disconnected_callback(self) -> None:
        logger.warning("Disconnected from NATS")

    async def _reconnected_callback(self) -> None:
        logger.info("Reconnected to NATS")
