"""Two-party realtime messaging gateway."""

from .accounts import AccountService
from .channel import Connection
from .delivery import DeliveryEngine
from .identities import Identity, InMemoryIdentityStore, SQLiteIdentityStore
from .pairing import ConversationPairing
from .presence import PresenceRegistry
from .store import InMemoryMessageStore, Message, MessageKind, MessagePage
from .ws_transport import create_app

__all__ = [
    "AccountService",
    "Connection",
    "ConversationPairing",
    "DeliveryEngine",
    "Identity",
    "InMemoryIdentityStore",
    "InMemoryMessageStore",
    "Message",
    "MessageKind",
    "MessagePage",
    "PresenceRegistry",
    "SQLiteIdentityStore",
    "create_app",
]
