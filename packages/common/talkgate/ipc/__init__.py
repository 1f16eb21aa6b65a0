"""Local IPC between the talkgate daemon and its GUI, CLI and voice clients."""

from .client import IPCClient
from .messages import IPCMessage, IPCReply, MessageType, ReplyType
from .server import IPCBroker

__all__ = ["IPCBroker", "IPCClient", "IPCMessage", "IPCReply", "MessageType", "ReplyType"]
