"""Unix socket broker between the pipeline and GUI, CLI and voice clients."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from pydantic import BaseModel, ValidationError

from ..audit import AuditLogger
from ..config import TalkgateConfig
from ..confirmation import ConfirmationCoordinator, ConfirmationRequest, Prompt
from ..errors import IPCPermissionError, RateLimitExceeded, RejectionReason, ReplayRejected
from ..models import AuditOutcome, AuditRecord, Transcript
from ..pipeline import CommandPipeline
from .messages import (
    PAYLOADS,
    ControlPayload,
    IPCMessage,
    IPCReply,
    MessageType,
    PromptPayload,
    ReplyType,
    SelectPayload,
    TranscriptPayload,
    encode,
)
from .replay import ReplayGuard, SequenceTracker, TokenBucket

logger = structlog.get_logger(__name__)

ReloadCallback = Callable[[], Awaitable[TalkgateConfig]]


@dataclass(eq=False)
class _Connection:
    id: int
    writer: asyncio.StreamWriter
    bucket: TokenBucket
    send_timeout: float
    outbox: asyncio.Queue
    sequence: SequenceTracker = field(default_factory=SequenceTracker)
    subscribed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pusher: Optional[asyncio.Task] = None

    async def send(self, reply: IPCReply) -> None:
        """Write one frame. Raises asyncio.TimeoutError if the peer stops reading."""
        async with self.lock:
            self.writer.write(encode(reply))
            await asyncio.wait_for(self.writer.drain(), timeout=self.send_timeout)

    def offer(self, reply: IPCReply) -> bool:
        try:
            self.outbox.put_nowait(reply)
        except asyncio.QueueFull:
            return False
        return True

    async def push_loop(self) -> None:
        while True:
            reply = await self.outbox.get()
            try:
                await self.send(reply)
            except (ConnectionError, asyncio.TimeoutError) as e:
                logger.info("Dropping subscriber", conn=self.id, error=str(e) or type(e).__name__)
                self.abort()
                return

    def abort(self) -> None:
        self.subscribed = False
        self.writer.transport.abort()


class IPCBroker:
    """Owner-only Unix socket server.

    Each connection is served by its own task and applies its messages in
    order. Replay state (the nonce window) is shared by all connections and
    only touched from the event loop.
    """

    def __init__(
        self,
        config: TalkgateConfig,
        pipeline: CommandPipeline,
        coordinator: ConfirmationCoordinator,
        audit: AuditLogger,
        on_reload: Optional[ReloadCallback] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.coordinator = coordinator
        self.audit = audit
        self.on_reload = on_reload
        self.socket_path = Path(config.ipc_socket_path)
        self.replay = ReplayGuard(config.ipc_replay_window_s, config.ipc_future_skew_s)

        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Dict[int, _Connection] = {}
        self._client_tasks: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._stopping = False

        self._handlers: Dict[MessageType, Callable[[_Connection, IPCMessage, Any, float], Awaitable[IPCReply]]] = {
            MessageType.STATUS_REQUEST: self._on_status,
            MessageType.CONTROL: self._on_control,
            MessageType.RELOAD_CONFIG: self._on_reload,
            MessageType.CONFIRM: self._on_prompt_answer,
            MessageType.DENY: self._on_prompt_answer,
            MessageType.CANCEL: self._on_prompt_answer,
            MessageType.SELECT: self._on_select,
            MessageType.SUBSCRIBE: self._on_subscribe,
            MessageType.TRANSCRIPT: self._on_transcript,
        }
        missing = set(MessageType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no IPC handler for {sorted(m.value for m in missing)}")

    @property
    def client_count(self) -> int:
        return len(self._connections)

    # Lifecycle

    async def start(self) -> None:
        """Bind the socket with mode 0600. Raises IPCPermissionError if that fails."""
        path = self.socket_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() or path.is_symlink():
            if not stat.S_ISSOCK(os.lstat(path).st_mode):
                raise IPCPermissionError(f"{path} exists and is not a socket")
            path.unlink()

        old_umask = os.umask(0o177)
        try:
            self._server = await asyncio.start_unix_server(
                self._serve_client,
                path=str(path),
                limit=self.config.ipc_max_message_bytes,
            )
        finally:
            os.umask(old_umask)

        try:
            os.chmod(path, 0o600)
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except OSError as e:
            await self._close_server()
            raise IPCPermissionError(f"cannot restrict {path}: {e}") from e
        if mode != 0o600:
            await self._close_server()
            raise IPCPermissionError(f"{path} has mode {oct(mode)}, expected 0o600")

        self.coordinator.add_listener(self._on_prompt_event)
        self.pipeline.add_listener(self._on_pipeline_event)
        logger.info("IPC broker listening", path=str(path))

    async def stop(self) -> None:
        """Refuse new input, close every connection and remove the socket."""
        self._stopping = True
        self.coordinator.remove_listener(self._on_prompt_event)
        await self._close_server()

        for conn in list(self._connections.values()):
            if conn.pusher is not None:
                conn.pusher.cancel()
            conn.writer.close()
        if self._client_tasks:
            _, stuck = await asyncio.wait(list(self._client_tasks), timeout=self.config.ipc_send_timeout_s)
            if stuck:
                # Peers that stopped reading keep their buffers full; drop them
                for conn in list(self._connections.values()):
                    conn.abort()
                await asyncio.gather(*stuck, return_exceptions=True)

        if self.socket_path.exists():
            self.socket_path.unlink()
        logger.info("IPC broker stopped")

    async def _close_server(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None

    # Connections

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._client_tasks.add(task)
        conn = _Connection(
            id=next(self._ids),
            writer=writer,
            bucket=TokenBucket(self.config.ipc_rate_per_second, self.config.ipc_rate_burst),
            send_timeout=self.config.ipc_send_timeout_s,
            outbox=asyncio.Queue(maxsize=self.config.ipc_outbox_size),
        )
        conn.pusher = asyncio.create_task(conn.push_loop())
        self._connections[conn.id] = conn
        logger.info("IPC client connected", conn=conn.id)
        try:
            while not self._stopping:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Longer than the stream limit; framing is lost
                    logger.error(
                        "Malformed IPC message",
                        reason=RejectionReason.MALFORMED_MESSAGE.value,
                        conn=conn.id,
                        error=f"message exceeds {self.config.ipc_max_message_bytes} bytes",
                    )
                    await conn.send(
                        IPCReply(type=ReplyType.ERROR, success=False, reason=RejectionReason.MALFORMED_MESSAGE.value,
                                 message="message too large")
                    )
                    break
                if not line:
                    break
                reply = await self.handle_line(conn, line, time.time())
                await conn.send(reply)
        except ConnectionError as e:
            logger.info("IPC client connection lost", conn=conn.id, error=str(e))
        except asyncio.TimeoutError:
            logger.warning("IPC client stopped reading", conn=conn.id, timeout=self.config.ipc_send_timeout_s)
            conn.abort()
        finally:
            self._connections.pop(conn.id, None)
            if task is not None:
                self._client_tasks.discard(task)
            conn.pusher.cancel()
            await asyncio.gather(conn.pusher, return_exceptions=True)
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=self.config.ipc_send_timeout_s)
            except (ConnectionError, asyncio.TimeoutError):
                conn.abort()
            logger.info("IPC client disconnected", conn=conn.id)

    async def handle_line(self, conn: _Connection, line: bytes, received_at: float) -> IPCReply:
        """Validate one framed message and apply it. Always produces a reply."""
        if len(line) > self.config.ipc_max_message_bytes:
            return self._error(None, RejectionReason.MALFORMED_MESSAGE, "message too large", conn)

        message: Optional[IPCMessage] = None
        malformed: Optional[str] = None
        try:
            message = IPCMessage.model_validate(json.loads(line))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            malformed = str(e).splitlines()[0]

        try:
            conn.bucket.consume()
        except RateLimitExceeded as e:
            if message is not None:
                # Dropped, but the sender has already spent this sequence number
                self.replay.skip(message, conn.sequence)
            return self._error(message, RejectionReason.IPC_RATE_LIMITED, str(e), conn)

        if message is None:
            return self._error(None, RejectionReason.MALFORMED_MESSAGE, malformed or "unreadable message", conn)

        if self._stopping:
            return self._error(message, RejectionReason.SHUTTING_DOWN, "broker is shutting down", conn)

        try:
            self.replay.check(message, conn.sequence)
        except ReplayRejected as e:
            return self._error(message, RejectionReason.IPC_REPLAY_REJECTED, str(e), conn)

        try:
            kind = MessageType(message.type)
        except ValueError:
            logger.error(
                "Unhandled IPC message",
                reason=RejectionReason.UNHANDLED_MESSAGE.value,
                conn=conn.id,
                type=message.type,
                sender=message.sender,
            )
            return IPCReply.to(
                message,
                ReplyType.ERROR,
                success=False,
                reason=RejectionReason.UNHANDLED_MESSAGE.value,
                message=f"unknown message type {message.type!r}",
            )

        try:
            payload = PAYLOADS[kind].model_validate(message.payload)
        except ValidationError as e:
            return self._error(message, RejectionReason.MALFORMED_MESSAGE, str(e).splitlines()[0], conn)

        logger.debug("IPC message", conn=conn.id, type=kind.value, sender=message.sender)
        return await self._handlers[kind](conn, message, payload, received_at)

    def _error(
        self,
        message: Optional[IPCMessage],
        reason: RejectionReason,
        detail: str,
        conn: _Connection,
    ) -> IPCReply:
        logger.warning(
            "IPC message rejected",
            reason=reason.value,
            conn=conn.id,
            detail=detail,
            type=message.type if message else None,
        )
        return IPCReply.to(message, ReplyType.ERROR, success=False, reason=reason.value, message=detail)

    # Handlers

    async def _on_status(self, conn: _Connection, message: IPCMessage, payload: BaseModel, received_at: float) -> IPCReply:
        data = self.pipeline.status()
        data["clients"] = self.client_count
        return IPCReply.to(message, ReplyType.STATUS_RESPONSE, data=data)

    async def _on_control(self, conn: _Connection, message: IPCMessage, payload: ControlPayload, received_at: float) -> IPCReply:
        if payload.action == "pause":
            self.pipeline.pause()
        else:
            self.pipeline.resume()
        await self._audit_control(message, payload.action)
        return IPCReply.to(message, message=f"Executed: {payload.action}")

    async def _on_reload(self, conn: _Connection, message: IPCMessage, payload: BaseModel, received_at: float) -> IPCReply:
        if self.on_reload is None:
            return IPCReply.to(message, ReplyType.ERROR, success=False, message="reload not supported")
        try:
            await self.on_reload()
        except ValidationError as e:
            logger.error("Config reload failed", error=str(e))
            await self._audit_control(message, "reload_config", ok=False, detail=str(e).splitlines()[0])
            return IPCReply.to(message, ReplyType.ERROR, success=False, message="invalid configuration")
        await self._audit_control(message, "reload_config")
        return IPCReply.to(message, message="Config reloaded")

    async def _on_prompt_answer(
        self, conn: _Connection, message: IPCMessage, payload: PromptPayload, received_at: float
    ) -> IPCReply:
        channel = f"ipc:{message.sender}"
        resolve = {
            MessageType.CONFIRM: self.coordinator.confirm,
            MessageType.DENY: self.coordinator.deny,
            MessageType.CANCEL: self.coordinator.cancel,
        }[MessageType(message.type)]
        applied = resolve(payload.prompt_id, channel=channel, received_at=received_at)
        if not applied:
            return IPCReply.to(message, success=False, message="no matching pending prompt")
        return IPCReply.to(message, message=f"{message.type} applied")

    async def _on_select(self, conn: _Connection, message: IPCMessage, payload: SelectPayload, received_at: float) -> IPCReply:
        channel = f"gui:{message.sender}"
        if payload.cancelled:
            applied = self.coordinator.cancel(payload.prompt_id, channel=channel, received_at=received_at)
        else:
            applied = self.coordinator.select(payload.prompt_id, payload.index, channel=channel, received_at=received_at)
        if not applied:
            return IPCReply.to(message, success=False, message="selection not applied")
        return IPCReply.to(message, message="selection applied", data={"index": payload.index})

    async def _on_subscribe(self, conn: _Connection, message: IPCMessage, payload: BaseModel, received_at: float) -> IPCReply:
        conn.subscribed = True
        pending = self.coordinator.pending
        return IPCReply.to(message, message="subscribed", data={"pending_prompt": pending.to_dict() if pending else None})

    async def _on_transcript(
        self, conn: _Connection, message: IPCMessage, payload: TranscriptPayload, received_at: float
    ) -> IPCReply:
        transcript = Transcript(
            text=payload.text,
            confidence=payload.confidence,
            timestamp=received_at,
            source=payload.source,
        )
        accepted = await self.pipeline.submit(transcript)
        return IPCReply.to(message, success=accepted, message="queued" if accepted else "refused")

    async def _audit_control(self, message: IPCMessage, action: str, ok: bool = True, detail: Optional[str] = None) -> None:
        await self.audit.record(
            AuditRecord(
                command=f"ipc {action}",
                confidence=1.0,
                source=f"ipc:{message.sender}",
                outcome=AuditOutcome.EXECUTED if ok else AuditOutcome.REJECTED,
                detail=detail,
            )
        )

    # Push notifications

    def broadcast(self, reply: IPCReply) -> int:
        """Queue a push message for every subscribed client. Returns the number queued.

        A subscriber whose outbox is full is disconnected rather than buffered.
        """
        if self._stopping:
            return 0
        queued = 0
        for conn in list(self._connections.values()):
            if not conn.subscribed:
                continue
            if conn.offer(reply):
                queued += 1
            else:
                logger.warning("Dropping slow subscriber", conn=conn.id, backlog=conn.outbox.qsize())
                conn.abort()
        return queued

    def _on_prompt_event(self, event: str, prompt: Prompt) -> None:
        if event == "resolved":
            kind = ReplyType.PROMPT_RESOLVED
        elif isinstance(prompt, ConfirmationRequest):
            kind = ReplyType.CONFIRMATION_REQUEST
        else:
            kind = ReplyType.SELECTION_REQUEST
        self.broadcast(IPCReply(type=kind, data=prompt.to_dict()))

    def _on_pipeline_event(self, kind: str, payload: Dict[str, Any]) -> None:
        if kind == "prompt":
            return
        self.broadcast(IPCReply(type=ReplyType.EVENT, message=kind, data=payload))
