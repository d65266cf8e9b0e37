"""Shared fixtures and in-memory collaborators for unit tests.

No test touches the network: relays, the event cache and the remote signer
are all fakes driven from here.
"""

import asyncio
import json
import os

import pytest

from nostr_session.constants import KIND_NOSTR_CONNECT
from nostr_session.draft import DraftComposer
from nostr_session.event import finalize_event
from nostr_session.keys import KeyPair
from nostr_session.models import DraftEvent, Event, Profile, RelayList
from nostr_session.storage import InMemoryCredentialStore

# Secret key '1'
ALICE_SECRET = "0000000000000000000000000000000000000000000000000000000000000001"
ALICE_PUBKEY = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
# Secret key '2'
BOB_SECRET = "0000000000000000000000000000000000000000000000000000000000000002"
# Secret key '3', plays the remote signer
BUNKER_SECRET = "0000000000000000000000000000000000000000000000000000000000000003"

FIXED_NOW = 1700000000


def make_event(kind: int = 1, content: str = "", tags=(), secret: str = ALICE_SECRET, created_at: int = FIXED_NOW) -> Event:
    """Signed event authored by the holder of secret."""
    key = KeyPair(secret)
    draft = DraftEvent(kind=kind, content=content, tags=tags, created_at=created_at)
    return finalize_event(draft, key.public_key, key.sign)


class FakeHints:
    def __init__(self, hints: dict[str, str] | None = None, seen: dict[str, list[str]] | None = None):
        self.hints = hints or {}
        self.seen = seen or {}

    def get_event_hint(self, event_id: str) -> str:
        return self.hints.get(event_id, "")

    def get_seen_event_relay_urls(self, event_id: str) -> list[str]:
        return list(self.seen.get(event_id, []))


class FakeFetcher:
    def __init__(self):
        self.events: dict[str, Event] = {}
        self.relay_lists: dict[str, RelayList] = {}
        self.profiles: dict[str, Profile] = {}
        self.fetched_events: list[str] = []

    async def fetch_event(self, event_id: str) -> Event | None:
        self.fetched_events.append(event_id)
        return self.events.get(event_id)

    async def fetch_relay_list(self, pubkey: str) -> RelayList:
        return self.relay_lists.get(pubkey, RelayList())

    async def fetch_profile(self, pubkey: str) -> Profile | None:
        return self.profiles.get(pubkey)


class FakeEmojis:
    def __init__(self, emojis=None):
        self.emojis = emojis or {}

    def get_emoji_by_shortcode(self, shortcode: str):
        return self.emojis.get(shortcode)


class FakeMedia:
    def __init__(self, tags=None):
        self.tags = tags or {}

    def get_imeta_tag_by_url(self, url: str):
        return self.tags.get(url)


class FakeExtension:
    """Browser signing extension backed by a local key."""

    def __init__(self, pubkey=ALICE_PUBKEY, secret=ALICE_SECRET, declines=False):
        self.pubkey = pubkey
        self.key = KeyPair(secret)
        self.declines = declines

    async def get_public_key(self):
        return self.pubkey

    async def sign_event(self, draft):
        if self.declines:
            raise RuntimeError("User rejected")
        return finalize_event(DraftEvent(**draft), self.key.public_key, self.key.sign).to_dict()


class FakeSubscription:
    def __init__(self, transport: "FakeTransport", callback):
        self.transport = transport
        self.callback = callback
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        if self in self.transport.subscriptions:
            self.transport.subscriptions.remove(self)


class FakeTransport:
    """Records sends; relays listed in failures raise instead of accepting."""

    def __init__(self, failures: dict[str, Exception] | None = None):
        self.failures = failures or {}
        self.sent: list[tuple[str, Event]] = []
        self.subscriptions: list[FakeSubscription] = []
        self.subscribed_filters: list[dict] = []
        self.handlers = []

    async def send_event(self, relay_url: str, event: Event) -> None:
        await asyncio.sleep(0)
        if relay_url in self.failures:
            raise self.failures[relay_url]
        self.sent.append((relay_url, event))
        for handler in self.handlers:
            handler(event)

    async def subscribe(self, relay_urls, filters, on_event):
        subscription = FakeSubscription(self, on_event)
        self.subscriptions.append(subscription)
        self.subscribed_filters.append(filters)
        return subscription

    async def deliver(self, event: Event) -> None:
        for subscription in list(self.subscriptions):
            result = subscription.callback(event)
            if asyncio.iscoroutine(result):
                await result

    def sent_events(self) -> list[Event]:
        return deduplicate_events(event for _, event in self.sent)


def deduplicate_events(events) -> list[Event]:
    unique = {}
    for event in events:
        unique.setdefault(event.id, event)
    return list(unique.values())


class FakeRemoteSigner:
    """Answers Nostr Connect requests sent through a FakeTransport.

    With auto_respond off, requests queue up in ``requests`` and are answered
    explicitly via respond(), which allows out-of-order and late replies.
    """

    def __init__(self, transport: FakeTransport, user_secret: str = ALICE_SECRET, secret: str | None = None):
        self.transport = transport
        self.key = KeyPair(BUNKER_SECRET)
        self.user = KeyPair(user_secret)
        self.secret = secret
        self.auto_respond = True
        self.reject_methods: set[str] = set()
        self.requests: list[tuple[str, dict]] = []
        self._seen: set[str] = set()
        self._tasks = []
        transport.handlers.append(self._on_sent)

    @property
    def pubkey(self) -> str:
        return self.key.public_key

    def bunker_url(self, relay: str = "wss://bunker.example.com", secret: str | None = None) -> str:
        url = f"bunker://{self.pubkey}?relay={relay}"
        return url + (f"&secret={secret}" if secret else "")

    def _on_sent(self, event: Event) -> None:
        if event.kind != KIND_NOSTR_CONNECT or event.id in self._seen:
            return
        if ("p", self.pubkey) not in event.tags:
            return
        self._seen.add(event.id)
        request = json.loads(self.key.nip44_decrypt(event.pubkey, event.content))
        self.requests.append((event.pubkey, request))
        if self.auto_respond:
            self._tasks.append(asyncio.ensure_future(self.respond(event.pubkey, request)))

    def answer(self, request: dict) -> tuple[str | None, str | None]:
        method, params = request["method"], request["params"]
        if method in self.reject_methods:
            return None, f"{method} not allowed"
        if method == "connect":
            return (self.secret or "ack"), None
        if method == "get_public_key":
            return self.user.public_key, None
        if method == "sign_event":
            draft = json.loads(params[0])
            event = finalize_event(
                DraftEvent(
                    kind=draft["kind"], content=draft["content"], tags=draft["tags"], created_at=draft["created_at"]
                ),
                self.user.public_key,
                self.user.sign,
            )
            return json.dumps(event.to_dict()), None
        if method == "nip04_encrypt":
            return self.user.nip04_encrypt(params[0], params[1]), None
        if method == "nip04_decrypt":
            return self.user.nip04_decrypt(params[0], params[1]), None
        return None, f"unknown method {method}"

    async def respond(self, client_pubkey: str, request: dict, result=None, error=None) -> None:
        if result is None and error is None:
            result, error = self.answer(request)
        await self.send(client_pubkey, {"id": request["id"], "result": result, "error": error})

    async def send(self, client_pubkey: str, message: dict) -> None:
        draft = DraftEvent(
            kind=KIND_NOSTR_CONNECT,
            content=self.key.nip44_encrypt(client_pubkey, json.dumps(message)),
            tags=[("p", client_pubkey)],
            created_at=FIXED_NOW,
        )
        await self.transport.deliver(finalize_event(draft, self.pubkey, self.key.sign))


@pytest.fixture
def hints():
    return FakeHints()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def composer(hints, fetcher):
    counter = iter(range(1, 1000))
    return DraftComposer(
        hints=hints,
        fetcher=fetcher,
        emojis=FakeEmojis(),
        media=FakeMedia(),
        clock=lambda: FIXED_NOW,
        option_id_factory=lambda: f"opt{next(counter)}",
    )


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def clean_env(monkeypatch):
    """Private copy of the environment without NOSTR_SESSION_* variables.

    Variables loaded from .env files during a test vanish with the copy.
    """
    environ = {name: value for name, value in os.environ.items() if not name.startswith("NOSTR_SESSION_")}
    monkeypatch.setattr(os, "environ", environ)
    return monkeypatch
