"""nostr-session: identity, signing and publication for Nostr clients."""

__version__ = "0.1.0"

from .client import NostrClient, build_client
from .config import Settings, load_settings
from .deletion import DeletedEventTracker, DeletionManager
from .draft import DraftComposer
from .errors import NostrSessionError
from .models import AccountPointer, AccountRecord, DraftEvent, Event, PublishOptions, PublishResult, SignerType
from .publisher import Publisher
from .session import AccountSession, SessionState
from .storage import InMemoryCredentialStore, JsonFileCredentialStore

__all__ = [
    "AccountPointer",
    "AccountRecord",
    "AccountSession",
    "DeletedEventTracker",
    "DeletionManager",
    "DraftComposer",
    "DraftEvent",
    "Event",
    "InMemoryCredentialStore",
    "JsonFileCredentialStore",
    "NostrClient",
    "NostrSessionError",
    "PublishOptions",
    "PublishResult",
    "Publisher",
    "SessionState",
    "Settings",
    "SignerType",
    "build_client",
    "load_settings",
]
