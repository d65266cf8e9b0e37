"""Account session: login flows, account switching and the active signer.

State machine: LOGGED_OUT -> AUTHENTICATING -> ACTIVE -> LOGGED_OUT.

A second login while AUTHENTICATING is rejected. Every login snapshots a
generation counter; logging out bumps it, so a login that completes after
the session moved on tears its signer down instead of activating it.
Switching accounts closes the previous signer before the next one becomes
active, which also fails any remote-signer request still in flight.
"""

import base64
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from enum import Enum
from typing import NamedTuple
from urllib.parse import unquote

from .bunker import DEFAULT_SIGNER_TIMEOUT, BunkerSigner, NostrConnectSigner, strip_bunker_secret
from .constants import DEFAULT_RELAY_URLS
from .draft import DraftComposer
from .errors import (
    AlreadyInProgressError,
    DecryptionFailedError,
    InvalidCredentialFormatError,
    NotLoggedInError,
    UnsupportedOperationError,
)
from .keys import encrypt_secret_key, parse_public_key, parse_secret_key
from .models import AccountPointer, AccountRecord, DraftEvent, Event, MailboxRelay, RelayList, SignerType
from .nip19 import npub_encode, nsec_encode
from .publisher import broadcast
from .relay import normalize_relay_urls
from .services import EventFetcher, ExtensionCapability, LoginReference, RelayTransport
from .signer import ExtensionSigner, LocalKeySigner, NcryptsecSigner, ReadOnlySigner, Signer, is_signing_capable
from .storage import CredentialStore

logger = logging.getLogger(__name__)

PasswordPrompt = Callable[[], Awaitable[str | None] | str | None]

LOGIN_FRAGMENT_KEY = "nostr-login"


class SessionState(Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"


class _Login(NamedTuple):
    signer: Signer
    record: AccountRecord
    # Stored pointer superseded by record (migration or pubkey reconciliation).
    replaces: AccountPointer | None = None


class UrlFragmentLoginReference:
    """Login reference carried in a URL fragment: ``#nostr-login=<credential>``."""

    def __init__(self, url: str):
        self.url = url

    def read(self) -> str | None:
        _, _, fragment = self.url.partition("#")
        for part in fragment.split("&"):
            key, _, value = part.partition("=")
            if key == LOGIN_FRAGMENT_KEY and value:
                return unquote(value)
        return None

    def clear(self) -> None:
        self.url = self.url.split("#", 1)[0]


class AccountSession:
    """Owns the credential store, the current account and its signer."""

    def __init__(
        self,
        store: CredentialStore,
        transport: RelayTransport | None = None,
        fetcher: EventFetcher | None = None,
        extension: ExtensionCapability | None = None,
        login_reference: LoginReference | None = None,
        password_prompt: PasswordPrompt | None = None,
        composer: DraftComposer | None = None,
        default_relays: list[str] | tuple[str, ...] = DEFAULT_RELAY_URLS,
        signer_timeout: float = DEFAULT_SIGNER_TIMEOUT,
    ):
        self.store = store
        self.transport = transport
        self.fetcher = fetcher
        self.extension = extension
        self.login_reference = login_reference
        self.password_prompt = password_prompt
        self.composer = composer or DraftComposer(fetcher=fetcher)
        self.default_relays = list(default_relays)
        self.signer_timeout = signer_timeout

        self.state = SessionState.LOGGED_OUT
        self.account: AccountPointer | None = None
        self.signer: Signer | None = None
        self.relay_list: RelayList | None = None
        self.is_initialized = False
        self._generation = 0

    @property
    def pubkey(self) -> str | None:
        return self.account.pubkey if self.account else None

    @property
    def accounts(self) -> list[AccountPointer]:
        return self.store.get_accounts()

    @property
    def nsec(self) -> str | None:
        return self.store.get_account_secret(self.pubkey) if self.pubkey else None

    @property
    def ncryptsec(self) -> str | None:
        return self.store.get_account_ncryptsec(self.pubkey) if self.pubkey else None

    # -- lifecycle -------------------------------------------------------------

    async def _authenticate(self, connect: Callable[[], Awaitable[_Login | None]]) -> str | None:
        if self.state is SessionState.AUTHENTICATING:
            raise AlreadyInProgressError("A login is already in progress")
        self._generation += 1
        generation = self._generation
        self.state = SessionState.AUTHENTICATING
        try:
            login = await connect()
        except BaseException:
            if generation == self._generation:
                self._restore_state()
            raise
        if generation != self._generation:
            logger.info("Discarding login that completed after the session changed")
            if login is not None:
                await login.signer.close()
            return None
        if login is None:
            self._restore_state()
            return None
        return await self._activate(login)

    def _restore_state(self) -> None:
        self.state = SessionState.ACTIVE if self.signer is not None else SessionState.LOGGED_OUT

    async def _activate(self, login: _Login) -> str:
        previous = self.signer
        if previous is not None and previous is not login.signer:
            await previous.close()

        if login.replaces is not None:
            self.store.remove_account(login.replaces)
        self.store.add_account(login.record)
        self.store.switch_account(login.record.pointer)

        self.account = login.record.pointer
        self.signer = login.signer
        self.relay_list = None
        self.state = SessionState.ACTIVE
        logger.info(f"Logged in as {npub_encode(login.record.pubkey)} ({login.record.signer_type.value})")

        if self.fetcher is not None:
            try:
                self.relay_list = await self.fetcher.fetch_relay_list(login.record.pubkey)
            except Exception as e:
                logger.warning(f"Could not fetch relay list for {login.record.pubkey}: {e}")
        return login.record.pubkey

    async def _teardown(self) -> None:
        self._generation += 1
        signer, self.signer = self.signer, None
        self.account = None
        self.relay_list = None
        self.state = SessionState.LOGGED_OUT
        if signer is not None:
            await signer.close()

    async def logout(self) -> None:
        self.store.switch_account(None)
        await self._teardown()
        logger.info("Logged out")

    async def switch_account(self, pointer: AccountPointer | None) -> str | None:
        """Activate a stored account, or log out when pointer is None."""
        if pointer is None:
            await self.logout()
            return None
        return await self._authenticate(lambda: self._login_with_account_pointer(pointer))

    async def remove_account(self, pointer: AccountPointer) -> list[AccountPointer]:
        accounts = self.store.remove_account(pointer)
        if self.account is not None and self.account.pubkey == pointer.pubkey:
            await self._teardown()
        return accounts

    async def initialize(self) -> str | None:
        """Log in from the login reference, else the current or first stored account."""
        try:
            pubkey = await self.login_from_reference()
            if pubkey is None:
                pointer = self.store.get_current_account()
                if pointer is None and self.accounts:
                    pointer = self.accounts[0]
                if pointer is not None:
                    pubkey = await self.switch_account(pointer)
            return pubkey
        finally:
            self.is_initialized = True

    # -- login flows -------------------------------------------------------------

    async def _prompt_password(self) -> str | None:
        if self.password_prompt is None:
            return None
        password = self.password_prompt()
        if inspect.isawaitable(password):
            password = await password
        return password

    async def nsec_login(self, nsec_or_hex: str, password: str | None = None, need_setup: bool = False) -> str:
        """Log in with a raw secret key.

        With a password the key is stored NIP-49 encrypted instead of in the clear.
        """
        secret_key = parse_secret_key(nsec_or_hex)

        async def connect() -> _Login:
            signer = LocalKeySigner(secret_key)
            if password:
                record = AccountRecord(
                    pubkey=signer.public_key,
                    signer_type=SignerType.NCRYPTSEC,
                    ncryptsec=encrypt_secret_key(secret_key, password),
                )
            else:
                record = AccountRecord(pubkey=signer.public_key, signer_type=SignerType.NSEC, nsec=nsec_encode(secret_key))
            return _Login(signer, record)

        pubkey = await self._authenticate(connect)
        if need_setup and pubkey is not None:
            await self.setup_new_user()
        return pubkey

    async def ncryptsec_login(self, ncryptsec: str, password: str | None = None) -> str:
        async def connect() -> _Login:
            secret = password or await self._prompt_password()
            if not secret:
                raise DecryptionFailedError("Password is required")
            signer = NcryptsecSigner(ncryptsec, secret)
            return _Login(signer, AccountRecord(pubkey=signer.public_key, signer_type=SignerType.NCRYPTSEC, ncryptsec=ncryptsec))

        return await self._authenticate(connect)

    async def npub_login(self, npub: str) -> str:
        async def connect() -> _Login:
            signer = ReadOnlySigner(npub)
            pubkey = await signer.get_public_key()
            return _Login(signer, AccountRecord(pubkey=pubkey, signer_type=SignerType.NPUB, npub=npub_encode(pubkey)))

        return await self._authenticate(connect)

    async def nip07_login(self) -> str:
        async def connect() -> _Login:
            signer = ExtensionSigner(self.extension)
            pubkey = await signer.get_public_key()
            return _Login(signer, AccountRecord(pubkey=pubkey, signer_type=SignerType.NIP07))

        return await self._authenticate(connect)

    def _require_transport(self) -> RelayTransport:
        if self.transport is None:
            raise UnsupportedOperationError("Remote signer login needs a relay transport")
        return self.transport

    async def bunker_login(self, bunker_url: str) -> str:
        bunker = strip_bunker_secret(bunker_url)

        async def connect() -> _Login:
            signer = BunkerSigner(self._require_transport(), timeout=self.signer_timeout)
            try:
                pubkey = await signer.login(bunker_url)
            except BaseException:
                await signer.close()
                raise
            record = AccountRecord(
                pubkey=pubkey,
                signer_type=SignerType.BUNKER,
                bunker=bunker,
                bunker_client_secret_key=signer.client_secret_key,
            )
            return _Login(signer, record)

        return await self._authenticate(connect)

    async def nostr_connection_login(self, client_secret_key: str, connection_string: str) -> str:
        async def connect() -> _Login:
            signer = NostrConnectSigner(
                self._require_transport(),
                client_secret_key=client_secret_key,
                connection_string=connection_string,
                timeout=self.signer_timeout,
            )
            try:
                pubkey, bunker = await signer.login()
            except BaseException:
                await signer.close()
                raise
            record = AccountRecord(
                pubkey=pubkey,
                signer_type=SignerType.BUNKER,
                bunker=strip_bunker_secret(bunker),
                bunker_client_secret_key=signer.client_secret_key,
            )
            return _Login(signer, record)

        return await self._authenticate(connect)

    async def login_from_reference(self) -> str | None:
        """One-shot login from the transient login reference.

        The reference is cleared before the login is attempted, so the
        credential is consumed exactly once even if the login fails.
        """
        if self.login_reference is None:
            return None
        credential = self.login_reference.read()
        if not credential:
            return None
        self.login_reference.clear()

        if credential.startswith("bunker://"):
            return await self.bunker_login(credential)
        if credential.startswith("ncryptsec"):
            return await self.ncryptsec_login(credential)
        if credential.startswith("nsec"):
            return await self.nsec_login(credential)
        logger.debug("Ignoring login reference with an unrecognised credential")
        return None

    async def _login_with_account_pointer(self, pointer: AccountPointer) -> _Login | None:
        record = self.store.find_account(pointer)
        if record is None:
            return None

        if record.signer_type in (SignerType.NSEC, SignerType.BROWSER_NSEC) and record.nsec:
            try:
                signer = LocalKeySigner(record.nsec)
            except InvalidCredentialFormatError:
                self.store.remove_account(record.pointer)
                raise
            if record.signer_type is SignerType.BROWSER_NSEC:
                logger.info(f"Migrating account {record.pubkey} to nsec")
                return _Login(signer, replace(record, signer_type=SignerType.NSEC), replaces=record.pointer)
            return _Login(signer, record)

        if record.signer_type is SignerType.NCRYPTSEC and record.ncryptsec:
            password = await self._prompt_password()
            if not password:
                return None
            return _Login(NcryptsecSigner(record.ncryptsec, password), record)

        if record.signer_type is SignerType.NIP07:
            signer = ExtensionSigner(self.extension)
            await signer.get_public_key()
            return _Login(signer, record)

        if record.signer_type is SignerType.BUNKER and record.bunker and record.bunker_client_secret_key:
            signer = BunkerSigner(
                self._require_transport(),
                client_secret_key=record.bunker_client_secret_key,
                timeout=self.signer_timeout,
            )
            try:
                pubkey = await signer.login(record.bunker, is_initial_connection=False)
            except BaseException:
                await signer.close()
                raise
            return self._reconcile(signer, record, pubkey)

        if record.signer_type is SignerType.NPUB and record.npub:
            try:
                pubkey = parse_public_key(record.npub)
            except InvalidCredentialFormatError:
                self.store.remove_account(record.pointer)
                raise
            return self._reconcile(ReadOnlySigner(pubkey), record, pubkey)

        logger.warning(f"Removing unusable account record {record.pubkey} ({record.signer_type.value})")
        self.store.remove_account(record.pointer)
        return None

    def _reconcile(self, signer: Signer, record: AccountRecord, pubkey: str) -> _Login:
        if pubkey == record.pubkey:
            return _Login(signer, record)
        logger.warning(f"Signer reports pubkey {pubkey} for account stored as {record.pubkey}; updating record")
        return _Login(signer, replace(record, pubkey=pubkey), replaces=record.pointer)

    # -- signing -----------------------------------------------------------------

    def require_signer(self) -> Signer:
        """Active signer, which must be able to sign.

        Raises:
          - NotLoggedInError: no active account
          - UnsupportedOperationError: the active account is read-only
        """
        if self.signer is None or self.account is None:
            raise NotLoggedInError("You need to login first")
        if not is_signing_capable(self.signer):
            raise UnsupportedOperationError("The active account is read-only")
        return self.signer

    async def sign_event(self, draft: DraftEvent) -> Event:
        return await self.require_signer().sign_event(draft)

    async def sign_http_auth(self, url: str, method: str, content: str = "") -> str:
        """Authorization header value for NIP-98 HTTP auth."""
        event = await self.sign_event(self.composer.create_http_auth(url, method, content))
        payload = json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"))
        return "Nostr " + base64.b64encode(payload.encode("utf-8")).decode("ascii")

    async def nip04_encrypt(self, pubkey: str, plaintext: str) -> str:
        if self.signer is None:
            raise NotLoggedInError("You need to login first")
        return await self.signer.nip04_encrypt(pubkey, plaintext)

    async def nip04_decrypt(self, pubkey: str, ciphertext: str) -> str:
        if self.signer is None:
            raise NotLoggedInError("You need to login first")
        return await self.signer.nip04_decrypt(pubkey, ciphertext)

    async def setup_new_user(self) -> None:
        """Publish empty follow and mute lists and a default relay list."""
        if self.transport is None:
            raise UnsupportedOperationError("New user setup needs a relay transport")
        relays = normalize_relay_urls(self.default_relays)
        drafts = [
            self.composer.create_follow_list([]),
            self.composer.create_mute_list([]),
            self.composer.create_relay_list([MailboxRelay(url=url) for url in relays]),
        ]
        for draft in drafts:
            event = await self.sign_event(draft)
            outcomes = await broadcast(self.transport, relays, event)
            if not any(outcome.success for outcome in outcomes):
                logger.warning(f"New user setup event kind {event.kind} was not accepted by any relay")
