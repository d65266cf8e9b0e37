"""Wiring of the session components from Settings."""

import logging
from dataclasses import dataclass

from .config import Settings, load_settings
from .deletion import DeletionManager
from .draft import DraftComposer
from .publisher import Publisher
from .relay_client import WebSocketRelayTransport
from .services import (
    EmojiRegistry,
    EventFetcher,
    ExtensionCapability,
    MediaMetadataLookup,
    RelayHintLookup,
    RelayTransport,
)
from .session import AccountSession, PasswordPrompt
from .storage import CredentialStore, JsonFileCredentialStore

logger = logging.getLogger(__name__)


@dataclass
class NostrClient:
    settings: Settings
    store: CredentialStore
    transport: RelayTransport
    composer: DraftComposer
    session: AccountSession
    publisher: Publisher
    deletions: DeletionManager


def build_client(
    settings: Settings | None = None,
    store: CredentialStore | None = None,
    transport: RelayTransport | None = None,
    hints: RelayHintLookup | None = None,
    fetcher: EventFetcher | None = None,
    emojis: EmojiRegistry | None = None,
    media: MediaMetadataLookup | None = None,
    extension: ExtensionCapability | None = None,
    password_prompt: PasswordPrompt | None = None,
) -> NostrClient:
    """Build every component with the values from settings.

    Without settings, load_settings() reads the environment and .env. The
    store defaults to a JSON file at settings.credentials_path and the
    transport to websockets with settings.publish_timeout.
    """
    if settings is None:
        settings = load_settings()
    if store is None:
        store = JsonFileCredentialStore(settings.credentials_path)
    if transport is None:
        transport = WebSocketRelayTransport(timeout=settings.publish_timeout)

    composer = DraftComposer(hints=hints, fetcher=fetcher, emojis=emojis, media=media, client_tag=settings.client_tag)
    session = AccountSession(
        store,
        transport=transport,
        fetcher=fetcher,
        extension=extension,
        password_prompt=password_prompt,
        composer=composer,
        default_relays=settings.default_relays,
        signer_timeout=settings.signer_timeout,
    )
    publisher = Publisher(
        session,
        transport,
        hints=hints,
        fetcher=fetcher,
        default_relays=settings.default_relays,
        max_relays=settings.max_publish_relays,
        max_write_relays=settings.max_write_relays,
    )
    deletions = DeletionManager(session, publisher, composer, hints=hints)
    logger.debug(f"Built client with {len(settings.default_relays)} default relays, store at {settings.credentials_path}")
    return NostrClient(settings, store, transport, composer, session, publisher, deletions)
