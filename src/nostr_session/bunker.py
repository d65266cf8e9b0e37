"""Remote signers speaking the Nostr Connect protocol (NIP-46).

Requests and responses are kind-24133 events whose content is the encrypted
JSON ``{"id", "method", "params"}`` / ``{"id", "result", "error"}``. Each
outgoing request registers a future in PendingRequests; the relay
subscription resolves it by id. Responses with unknown ids are ignored.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from urllib.parse import parse_qs, quote, urlencode, urlparse

from .constants import KIND_NOSTR_CONNECT
from .errors import (
    AuthRejectedError,
    InvalidCredentialFormatError,
    RemoteSignerRejectedError,
    RemoteSignerTimeoutError,
)
from .event import finalize_event
from .keys import HEX_KEY_RE, KeyPair, parse_secret_key
from .models import DraftEvent, Event, SignerType
from .relay import normalize_relay_url
from .services import RelayTransport, Subscription
from .signer import Signer, check_signed_event
from .tags import build_p_tag
from .utils import deduplicate_preserving_order, random_string, unix_now

logger = logging.getLogger(__name__)

BUNKER_SCHEME = "bunker"
NOSTR_CONNECT_SCHEME = "nostrconnect"
DEFAULT_SIGNER_TIMEOUT = 30.0


@dataclass(frozen=True)
class BunkerPointer:
    remote_pubkey: str
    relays: list[str] = field(default_factory=list)
    secret: str | None = None

    def to_url(self, include_secret: bool = False) -> str:
        params = [("relay", relay) for relay in self.relays]
        if include_secret and self.secret:
            params.append(("secret", self.secret))
        query = urlencode(params, quote_via=quote)
        return f"{BUNKER_SCHEME}://{self.remote_pubkey}" + (f"?{query}" if query else "")


def parse_bunker_url(url: str) -> BunkerPointer:
    """Parse ``bunker://<remote-pubkey>?relay=...&secret=...``.

    Raises:
      - InvalidCredentialFormatError: wrong scheme, bad pubkey or no relays
    """
    parsed = urlparse(url.strip())
    if parsed.scheme != BUNKER_SCHEME:
        raise InvalidCredentialFormatError(f"Not a bunker URL: {url}")
    remote_pubkey = parsed.netloc or parsed.path.lstrip("/")
    if not HEX_KEY_RE.match(remote_pubkey):
        raise InvalidCredentialFormatError("Bunker URL does not name a valid remote signer pubkey")
    query = parse_qs(parsed.query)
    relays = deduplicate_preserving_order(normalize_relay_url(relay) for relay in query.get("relay", []))
    if not relays:
        raise InvalidCredentialFormatError("Bunker URL does not name any relay")
    secret = query.get("secret", [None])[0]
    return BunkerPointer(remote_pubkey=remote_pubkey.lower(), relays=relays, secret=secret)


def strip_bunker_secret(url: str) -> str:
    """Bunker URL without its one-time secret, safe to persist."""
    return parse_bunker_url(url).to_url(include_secret=False)


class PendingRequests:
    """Correlates outstanding request ids with the futures awaiting them."""

    def __init__(self):
        self._futures: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._futures)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._futures

    def register(self, request_id: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._futures[request_id] = future
        return future

    def discard(self, request_id: str) -> None:
        self._futures.pop(request_id, None)

    def resolve(self, request_id: str, result: str | None = None, error: str | None = None) -> bool:
        """Complete the matching future. Returns False for unknown ids."""
        future = self._futures.pop(request_id, None)
        if future is None or future.done():
            return False
        if error:
            future.set_exception(RemoteSignerRejectedError(error))
        else:
            future.set_result(result)
        return True

    def fail_all(self, exc: Exception) -> None:
        futures, self._futures = self._futures, {}
        for future in futures.values():
            if not future.done():
                future.set_exception(exc)


class RemoteSigner(Signer):
    """Shared request/response machinery of both remote-signer variants."""

    signer_type = SignerType.BUNKER

    def __init__(
        self,
        transport: RelayTransport,
        client_secret_key: str | None = None,
        timeout: float = DEFAULT_SIGNER_TIMEOUT,
    ):
        self._transport = transport
        self._client = KeyPair(parse_secret_key(client_secret_key)) if client_secret_key else KeyPair.generate()
        self._timeout = timeout
        self._pending = PendingRequests()
        self._subscription: Subscription | None = None
        self._relays: list[str] = []
        self._remote_pubkey: str | None = None
        self._user_pubkey: str | None = None

    @property
    def client_secret_key(self) -> str:
        return self._client.secret_key_hex()

    @property
    def client_pubkey(self) -> str:
        return self._client.public_key

    @property
    def remote_pubkey(self) -> str | None:
        return self._remote_pubkey

    @property
    def bunker_url(self) -> str:
        if self._remote_pubkey is None:
            raise AuthRejectedError("Remote signer is not connected")
        return BunkerPointer(remote_pubkey=self._remote_pubkey, relays=list(self._relays)).to_url()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _open(self, relays: list[str]) -> None:
        self._relays = list(relays)
        filters = {"kinds": [KIND_NOSTR_CONNECT], "#p": [self.client_pubkey], "since": unix_now() - 10}
        self._subscription = await self._transport.subscribe(self._relays, filters, self._on_event)

    def _decrypt(self, sender: str, content: str) -> str:
        if "?iv=" in content:
            return self._client.nip04_decrypt(sender, content)
        return self._client.nip44_decrypt(sender, content)

    async def _on_event(self, event: Event) -> None:
        if event.kind != KIND_NOSTR_CONNECT:
            return
        if self._remote_pubkey and event.pubkey != self._remote_pubkey:
            logger.debug(f"Ignoring nostr connect event from unexpected author {event.pubkey}")
            return
        try:
            message = json.loads(self._decrypt(event.pubkey, event.content))
        except Exception as e:
            logger.debug(f"Ignoring undecryptable nostr connect event {event.id}: {e}")
            return
        if not isinstance(message, dict):
            return
        self._handle_message(event.pubkey, message)

    def _handle_message(self, sender: str, message: dict) -> None:
        result = message.get("result")
        error = message.get("error")
        if result == "auth_url":
            logger.warning(f"Remote signer requires authorization at {error}")
            return
        if not self._pending.resolve(str(message.get("id", "")), result, error):
            logger.debug(f"Ignoring response with unknown id {message.get('id')!r}")

    async def _send(self, event: Event) -> None:
        results = await asyncio.gather(
            *(self._transport.send_event(relay, event) for relay in self._relays),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        for relay, result in zip(self._relays, results):
            if isinstance(result, BaseException):
                logger.warning(f"Could not reach remote signer via {relay}: {result}")
        if failures and len(failures) == len(results):
            raise RemoteSignerRejectedError("Could not reach the remote signer on any relay")

    async def _request(self, method: str, params: list[str]) -> str:
        if self._remote_pubkey is None:
            raise AuthRejectedError("Remote signer is not connected")
        request_id = random_string(12)
        payload = json.dumps({"id": request_id, "method": method, "params": params})
        draft = DraftEvent(
            kind=KIND_NOSTR_CONNECT,
            content=self._client.nip44_encrypt(self._remote_pubkey, payload),
            tags=[build_p_tag(self._remote_pubkey)],
            created_at=unix_now(),
        )
        request = finalize_event(draft, self.client_pubkey, self._client.sign)

        future = self._pending.register(request_id)
        try:
            await self._send(request)
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise RemoteSignerTimeoutError(f"Remote signer did not answer {method} within {self._timeout}s") from None
        finally:
            self._pending.discard(request_id)

    async def get_public_key(self) -> str:
        if self._user_pubkey is None:
            pubkey = await self._request("get_public_key", [])
            if not pubkey or not HEX_KEY_RE.match(pubkey):
                raise RemoteSignerRejectedError("Remote signer returned an invalid public key")
            self._user_pubkey = pubkey.lower()
        return self._user_pubkey

    async def sign_event(self, draft: DraftEvent) -> Event:
        pubkey = await self.get_public_key()
        result = await self._request("sign_event", [json.dumps(draft.to_dict(), ensure_ascii=False)])
        try:
            event = Event.from_dict(json.loads(result))
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteSignerRejectedError(f"Remote signer returned a malformed event: {e}") from e
        return check_signed_event(event, draft, pubkey)

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._request("nip04_encrypt", [peer_pubkey, plaintext])

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._request("nip04_decrypt", [peer_pubkey, ciphertext])

    async def close(self) -> None:
        self._pending.fail_all(AuthRejectedError("Remote signer session was closed"))
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()


class BunkerSigner(RemoteSigner):
    """Remote signer reached through a bunker:// URL."""

    async def login(self, bunker_url: str, is_initial_connection: bool = True) -> str:
        """Connect to the remote signer and return the user's public key.

        Reconnecting with a stored client key skips the connect handshake.
        """
        pointer = parse_bunker_url(bunker_url)
        self._remote_pubkey = pointer.remote_pubkey
        await self._open(pointer.relays)
        if is_initial_connection:
            params = [pointer.remote_pubkey]
            if pointer.secret:
                params.append(pointer.secret)
            result = await self._request("connect", params)
            if result not in ("ack", pointer.secret):
                raise RemoteSignerRejectedError(f"Unexpected connect response: {result!r}")
            logger.debug(f"Connected to remote signer {pointer.remote_pubkey}")
        return await self.get_public_key()


class NostrConnectSigner(RemoteSigner):
    """Client-initiated pairing via a nostrconnect:// string.

    The remote signer answers the pairing with the shared secret as its
    result; the author of that response becomes the remote signer pubkey.
    """

    def __init__(
        self,
        transport: RelayTransport,
        client_secret_key: str | None = None,
        connection_string: str | None = None,
        relays: list[str] | None = None,
        app_name: str | None = None,
        timeout: float = DEFAULT_SIGNER_TIMEOUT,
    ):
        super().__init__(transport, client_secret_key, timeout)
        if connection_string:
            self._pairing_relays, self._secret = self._parse_connection_string(connection_string)
        else:
            self._pairing_relays = [normalize_relay_url(relay) for relay in relays or []]
            self._secret = random_string(16)
        if not self._pairing_relays:
            raise InvalidCredentialFormatError("Nostr connect pairing requires at least one relay")
        self._app_name = app_name
        self._pairing: asyncio.Future | None = None

    def _parse_connection_string(self, connection_string: str) -> tuple[list[str], str]:
        parsed = urlparse(connection_string.strip())
        if parsed.scheme != NOSTR_CONNECT_SCHEME:
            raise InvalidCredentialFormatError(f"Not a nostrconnect string: {connection_string}")
        client_pubkey = parsed.netloc or parsed.path.lstrip("/")
        if client_pubkey.lower() != self.client_pubkey:
            raise InvalidCredentialFormatError("Connection string was not issued for this client key")
        query = parse_qs(parsed.query)
        secret = query.get("secret", [None])[0]
        if not secret:
            raise InvalidCredentialFormatError("Connection string carries no secret")
        relays = deduplicate_preserving_order(normalize_relay_url(relay) for relay in query.get("relay", []))
        return relays, secret

    @property
    def connection_string(self) -> str:
        params = [("relay", relay) for relay in self._pairing_relays]
        params.append(("secret", self._secret))
        if self._app_name:
            params.append(("name", self._app_name))
        return f"{NOSTR_CONNECT_SCHEME}://{self.client_pubkey}?{urlencode(params, quote_via=quote)}"

    def _handle_message(self, sender: str, message: dict) -> None:
        if self._pairing is not None and not self._pairing.done() and message.get("result") == self._secret:
            self._pairing.set_result(sender)
            return
        super()._handle_message(sender, message)

    async def login(self) -> tuple[str, str]:
        """Wait for the remote signer to pair.

        Returns the user's public key and a secret-free bunker URL for
        reconnecting later.
        """
        self._pairing = asyncio.get_running_loop().create_future()
        await self._open(self._pairing_relays)
        try:
            self._remote_pubkey = await asyncio.wait_for(self._pairing, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise RemoteSignerTimeoutError("Remote signer did not pair in time") from None
        finally:
            self._pairing = None
        logger.debug(f"Paired with remote signer {self._remote_pubkey}")
        pubkey = await self.get_public_key()
        return pubkey, self.bunker_url

    async def close(self) -> None:
        if self._pairing is not None and not self._pairing.done():
            self._pairing.set_exception(AuthRejectedError("Remote signer session was closed"))
        await super().close()
