"""Async client for the talkgate IPC socket."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from pydantic import ValidationError

from .messages import IPCMessage, IPCReply, MessageType, ReplyType, encode

logger = structlog.get_logger(__name__)

_PUSH_TYPES = {ReplyType.CONFIRMATION_REQUEST, ReplyType.SELECTION_REQUEST, ReplyType.PROMPT_RESOLVED, ReplyType.EVENT}


class IPCClient:
    """Numbers its own requests and matches replies by sequence id.

    Push messages from the broker (prompts, pipeline events) are queued and
    exposed through ``events()`` once the client has subscribed.
    """

    def __init__(self, socket_path: Path, sender: str = "tgctl", timeout: float = 5.0):
        self.socket_path = Path(socket_path)
        self.sender = sender
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._seq = 0
        self._waiters: Dict[Any, asyncio.Future] = {}
        self._events: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> IPCClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.debug("Connected to talkgate", path=str(self.socket_path))

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass
            self._writer = None
        if self._reader_task is not None:
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None

    async def request(
        self,
        type: MessageType | str,
        payload: Optional[Dict[str, Any]] = None,
        use_nonce: bool = False,
    ) -> IPCReply:
        """Send one message and wait for its reply."""
        if self._writer is None:
            raise RuntimeError("IPC client is not connected")
        kind = type.value if isinstance(type, MessageType) else type
        if use_nonce:
            message = IPCMessage.build(kind, self.sender, payload)
            key: Any = message.nonce
        else:
            self._seq += 1
            message = IPCMessage.build(kind, self.sender, payload, seq_id=self._seq)
            key = self._seq
        return await self.send_raw(encode(message), key)

    async def send_raw(self, line: bytes, key: Any) -> IPCReply:
        """Write an already framed message and wait for the reply keyed by ``key``."""
        future = asyncio.get_running_loop().create_future()
        self._waiters[key] = future
        try:
            self._writer.write(line)
            await self._writer.drain()
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._waiters.pop(key, None)

    async def events(self) -> AsyncIterator[IPCReply]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    reply = IPCReply.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Unreadable reply from talkgate", error=str(e))
                    continue
                self._route(reply)
        finally:
            self._events.put_nowait(None)
            for future in self._waiters.values():
                if not future.done():
                    future.set_exception(ConnectionError("talkgate closed the connection"))

    def _route(self, reply: IPCReply) -> None:
        if reply.type in _PUSH_TYPES:
            self._events.put_nowait(reply)
            return
        key = reply.seq_id if reply.seq_id is not None else reply.nonce
        future = self._waiters.get(key)
        if future is None and len(self._waiters) == 1 and key is None:
            # Errors raised before the envelope parsed carry no id
            future = next(iter(self._waiters.values()))
        if future is not None and not future.done():
            future.set_result(reply)
        else:
            logger.debug("Unmatched reply", type=reply.type.value, key=key)
