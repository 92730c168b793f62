"""Real-time chat gateway: presence, conversation routing and call signaling."""

from .calls import Call, CallRelay
from .conversations import ConversationStore, direct_conv_id
from .hub import Connection
from .moderation import BlockList
from .presence import PresenceRegistry
from .routing import Router
from .server import main, simulate

__all__ = [
    "BlockList",
    "Call",
    "CallRelay",
    "Connection",
    "ConversationStore",
    "PresenceRegistry",
    "Router",
    "direct_conv_id",
    "main",
    "simulate",
]
