"""Collaborator contracts consumed by nostr-session.

Relay I/O, event caches, emoji and media registries live outside this package;
these protocols are the only surface the subsystem relies on.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .models import Emoji, Event, Profile, RelayList, Tag


class RelayHintLookup(Protocol):
    def get_event_hint(self, event_id: str) -> str:
        """Relay URL the event was last seen on, or "" when unknown."""

    def get_seen_event_relay_urls(self, event_id: str) -> list[str]:
        """Every relay URL the event was observed on."""


class EventFetcher(Protocol):
    async def fetch_event(self, event_id: str) -> Event | None: ...

    async def fetch_relay_list(self, pubkey: str) -> RelayList: ...

    async def fetch_profile(self, pubkey: str) -> Profile | None: ...


class EmojiRegistry(Protocol):
    def get_emoji_by_shortcode(self, shortcode: str) -> Emoji | None: ...


class MediaMetadataLookup(Protocol):
    def get_imeta_tag_by_url(self, url: str) -> Tag | None: ...


class Subscription(Protocol):
    async def close(self) -> None: ...


EventCallback = Callable[[Event], Awaitable[None] | None]


class RelayTransport(Protocol):
    async def send_event(self, relay_url: str, event: Event) -> None:
        """Send one event to one relay; raises on rejection or transport failure."""

    async def subscribe(self, relay_urls: list[str], filters: dict, on_event: EventCallback) -> Subscription: ...


class ExtensionCapability(Protocol):
    """Injected browser-extension style signer (NIP-07 shape).

    sign_event takes and returns plain event dictionaries. An optional
    ``nip04`` attribute exposes async ``encrypt(pubkey, text)`` and
    ``decrypt(pubkey, text)``.
    """

    async def get_public_key(self) -> str | None: ...

    async def sign_event(self, draft: dict) -> dict[str, Any]: ...


class LoginReference(Protocol):
    """Transient external reference that may embed a one-time credential."""

    def read(self) -> str | None: ...

    def clear(self) -> None: ...
