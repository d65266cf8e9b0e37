"""Tests for the account session: logins, switching and signing."""

import asyncio
import base64
import json
from urllib.parse import quote

import pytest

from conftest import (
    ALICE_PUBKEY,
    ALICE_SECRET,
    BOB_SECRET,
    FIXED_NOW,
    FakeExtension,
    FakeRemoteSigner,
    FakeTransport,
)
from nostr_session.constants import KIND_CONTACTS, KIND_HTTP_AUTH, KIND_MUTE_LIST, KIND_RELAY_LIST
from nostr_session.errors import (
    AlreadyInProgressError,
    AuthRejectedError,
    DecryptionFailedError,
    ExtensionUnavailableError,
    InvalidCredentialFormatError,
    NotLoggedInError,
    UnsupportedOperationError,
)
from nostr_session.keys import KeyPair, decrypt_secret_key, encrypt_secret_key
from nostr_session.models import AccountPointer, AccountRecord, DraftEvent, RelayList, SignerType
from nostr_session.nip19 import npub_encode, nsec_encode
from nostr_session.session import AccountSession, SessionState, UrlFragmentLoginReference
from nostr_session.storage import InMemoryCredentialStore

BOB_PUBKEY = KeyPair(BOB_SECRET).public_key
STALE_PUBKEY = "ab" * 32
DRAFT = DraftEvent(kind=1, content="hello", tags=[], created_at=FIXED_NOW)


async def wait_for_requests(remote, count):
    while len(remote.requests) < count:
        await asyncio.sleep(0)


def store_with(*records, current=None):
    return InMemoryCredentialStore(list(records), current=current)


class TestLocalLogins:
    @pytest.mark.asyncio
    async def test_nsec_login(self, store):
        session = AccountSession(store)
        assert await session.nsec_login(nsec_encode(ALICE_SECRET)) == ALICE_PUBKEY
        assert session.state is SessionState.ACTIVE
        assert session.nsec == nsec_encode(ALICE_SECRET)
        assert store.get_current_account() == AccountPointer(ALICE_PUBKEY, SignerType.NSEC)

    @pytest.mark.asyncio
    async def test_nsec_login_with_password_stores_ncryptsec(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET, password="hunter2")
        assert session.nsec is None
        assert decrypt_secret_key(session.ncryptsec, "hunter2") == ALICE_SECRET
        assert session.accounts == [AccountPointer(ALICE_PUBKEY, SignerType.NCRYPTSEC)]

    @pytest.mark.asyncio
    async def test_invalid_nsec(self, store):
        session = AccountSession(store)
        with pytest.raises(InvalidCredentialFormatError):
            await session.nsec_login("nsec1broken")
        assert session.state is SessionState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_ncryptsec_login_prompts_for_password(self, store):
        async def prompt():
            return "pw"

        session = AccountSession(store, password_prompt=prompt)
        assert await session.ncryptsec_login(encrypt_secret_key(ALICE_SECRET, "pw")) == ALICE_PUBKEY

    @pytest.mark.asyncio
    async def test_ncryptsec_login_without_password(self, store):
        session = AccountSession(store)
        with pytest.raises(DecryptionFailedError):
            await session.ncryptsec_login(encrypt_secret_key(ALICE_SECRET, "pw"))
        assert session.state is SessionState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_failed_login_keeps_active_account(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        with pytest.raises(DecryptionFailedError):
            await session.ncryptsec_login(encrypt_secret_key(BOB_SECRET, "pw"), "wrong")
        assert session.state is SessionState.ACTIVE
        assert session.pubkey == ALICE_PUBKEY

    @pytest.mark.asyncio
    async def test_npub_login_is_read_only(self, store):
        session = AccountSession(store)
        await session.npub_login(npub_encode(ALICE_PUBKEY))
        with pytest.raises(UnsupportedOperationError):
            await session.sign_event(DRAFT)

    @pytest.mark.asyncio
    async def test_nip07_login(self, store):
        session = AccountSession(store, extension=FakeExtension())
        assert await session.nip07_login() == ALICE_PUBKEY
        event = await session.sign_event(DRAFT)
        assert event.pubkey == ALICE_PUBKEY

    @pytest.mark.asyncio
    async def test_nip07_login_without_extension(self, store):
        session = AccountSession(store)
        with pytest.raises(ExtensionUnavailableError):
            await session.nip07_login()
        assert session.state is SessionState.LOGGED_OUT
        assert store.get_accounts() == []

    @pytest.mark.asyncio
    async def test_relay_list_fetched_on_login(self, store, fetcher):
        fetcher.relay_lists[ALICE_PUBKEY] = RelayList(write=["wss://w.example.com"])
        session = AccountSession(store, fetcher=fetcher)
        await session.nsec_login(ALICE_SECRET)
        assert session.relay_list.write == ["wss://w.example.com"]


class TestSwitching:
    @pytest.mark.asyncio
    async def test_switch_between_stored_accounts(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        await session.nsec_login(BOB_SECRET)
        assert session.pubkey == BOB_PUBKEY

        assert await session.switch_account(AccountPointer(ALICE_PUBKEY, SignerType.NSEC)) == ALICE_PUBKEY
        assert store.get_current_account() == AccountPointer(ALICE_PUBKEY, SignerType.NSEC)
        assert len(session.accounts) == 2

    @pytest.mark.asyncio
    async def test_switch_to_none_logs_out(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        assert await session.switch_account(None) is None
        assert session.state is SessionState.LOGGED_OUT
        assert session.signer is None
        assert store.get_current_account() is None
        with pytest.raises(NotLoggedInError):
            await session.nip04_encrypt(BOB_PUBKEY, "x")

    @pytest.mark.asyncio
    async def test_remove_active_account_logs_out(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        assert await session.remove_account(AccountPointer(ALICE_PUBKEY, SignerType.NSEC)) == []
        assert session.state is SessionState.LOGGED_OUT
        assert session.pubkey is None

    @pytest.mark.asyncio
    async def test_browser_nsec_migrated(self):
        record = AccountRecord(ALICE_PUBKEY, SignerType.BROWSER_NSEC, nsec=nsec_encode(ALICE_SECRET))
        store = store_with(record, current=record.pointer)
        session = AccountSession(store)
        assert await session.initialize() == ALICE_PUBKEY
        pointer = AccountPointer(ALICE_PUBKEY, SignerType.NSEC)
        assert store.get_accounts() == [pointer]
        assert store.get_current_account() == pointer
        assert store.find_account(pointer).nsec == nsec_encode(ALICE_SECRET)

    @pytest.mark.asyncio
    async def test_npub_pubkey_reconciled(self):
        record = AccountRecord(STALE_PUBKEY, SignerType.NPUB, npub=npub_encode(ALICE_PUBKEY))
        store = store_with(record, current=record.pointer)
        session = AccountSession(store)
        assert await session.initialize() == ALICE_PUBKEY
        assert store.get_accounts() == [AccountPointer(ALICE_PUBKEY, SignerType.NPUB)]

    @pytest.mark.asyncio
    async def test_corrupt_nsec_record_removed(self):
        record = AccountRecord(ALICE_PUBKEY, SignerType.NSEC, nsec="nsec1corrupt")
        store = store_with(record, current=record.pointer)
        session = AccountSession(store)
        with pytest.raises(InvalidCredentialFormatError):
            await session.switch_account(record.pointer)
        assert store.get_accounts() == []
        assert session.state is SessionState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_record_without_material_removed(self):
        record = AccountRecord(ALICE_PUBKEY, SignerType.NCRYPTSEC)
        store = store_with(record)
        session = AccountSession(store)
        assert await session.switch_account(record.pointer) is None
        assert store.get_accounts() == []

    @pytest.mark.asyncio
    async def test_stored_ncryptsec_without_password_stays_logged_out(self):
        record = AccountRecord(ALICE_PUBKEY, SignerType.NCRYPTSEC, ncryptsec=encrypt_secret_key(ALICE_SECRET, "pw"))
        session = AccountSession(store_with(record))
        assert await session.switch_account(record.pointer) is None
        assert session.state is SessionState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_initialize_uses_first_account_without_current(self):
        first = AccountRecord(BOB_PUBKEY, SignerType.NSEC, nsec=nsec_encode(BOB_SECRET))
        second = AccountRecord(ALICE_PUBKEY, SignerType.NSEC, nsec=nsec_encode(ALICE_SECRET))
        session = AccountSession(store_with(first, second))
        assert await session.initialize() == BOB_PUBKEY
        assert session.is_initialized

    @pytest.mark.asyncio
    async def test_initialize_with_empty_store(self, store):
        session = AccountSession(store)
        assert await session.initialize() is None
        assert session.is_initialized
        assert session.state is SessionState.LOGGED_OUT


class TestLoginReference:
    @pytest.mark.asyncio
    async def test_nsec_reference_consumed(self, store):
        reference = UrlFragmentLoginReference(f"https://app.example.com/#nostr-login={nsec_encode(ALICE_SECRET)}")
        session = AccountSession(store, login_reference=reference)
        assert await session.initialize() == ALICE_PUBKEY
        assert reference.url == "https://app.example.com/"
        assert reference.read() is None

    @pytest.mark.asyncio
    async def test_reference_cleared_even_when_login_fails(self, store):
        reference = UrlFragmentLoginReference("https://app.example.com/#nostr-login=nsec1broken")
        session = AccountSession(store, login_reference=reference)
        with pytest.raises(InvalidCredentialFormatError):
            await session.initialize()
        assert reference.read() is None
        assert session.is_initialized

    @pytest.mark.asyncio
    async def test_bunker_reference(self, store):
        transport = FakeTransport()
        remote = FakeRemoteSigner(transport, secret="s3")
        reference = UrlFragmentLoginReference(
            f"https://app.example.com/#nostr-login={quote(remote.bunker_url(secret='s3'), safe='')}"
        )
        session = AccountSession(store, transport=transport, login_reference=reference, signer_timeout=1)
        assert await session.login_from_reference() == ALICE_PUBKEY
        record = store.find_account(AccountPointer(ALICE_PUBKEY, SignerType.BUNKER))
        assert "secret" not in record.bunker
        assert record.bunker_client_secret_key

    @pytest.mark.asyncio
    async def test_unknown_credential_ignored(self, store):
        reference = UrlFragmentLoginReference("https://app.example.com/#nostr-login=hello")
        session = AccountSession(store, login_reference=reference)
        assert await session.login_from_reference() is None
        assert reference.read() is None


class TestRemoteSignerSession:
    @pytest.mark.asyncio
    async def test_second_login_while_authenticating_rejected(self, store):
        transport = FakeTransport()
        remote = FakeRemoteSigner(transport)
        remote.auto_respond = False
        session = AccountSession(store, transport=transport, signer_timeout=1)

        login = asyncio.ensure_future(session.bunker_login(remote.bunker_url()))
        await wait_for_requests(remote, 1)
        assert session.state is SessionState.AUTHENTICATING
        with pytest.raises(AlreadyInProgressError):
            await session.nsec_login(BOB_SECRET)

        remote.auto_respond = True
        client_pubkey, request = remote.requests[0]
        await remote.respond(client_pubkey, request)
        assert await login == ALICE_PUBKEY
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_login_finishing_after_logout_is_discarded(self, store):
        transport = FakeTransport()
        remote = FakeRemoteSigner(transport)
        remote.auto_respond = False
        session = AccountSession(store, transport=transport, signer_timeout=1)

        login = asyncio.ensure_future(session.bunker_login(remote.bunker_url()))
        await wait_for_requests(remote, 1)
        await session.switch_account(None)

        remote.auto_respond = True
        client_pubkey, request = remote.requests[0]
        await remote.respond(client_pubkey, request)
        assert await login is None
        assert session.state is SessionState.LOGGED_OUT
        assert store.get_accounts() == []
        assert transport.subscriptions == []

    @pytest.mark.asyncio
    async def test_switch_fails_pending_remote_request(self, store):
        transport = FakeTransport()
        remote = FakeRemoteSigner(transport)
        session = AccountSession(store, transport=transport, signer_timeout=1)
        await session.bunker_login(remote.bunker_url())
        remote.auto_respond = False

        signing = asyncio.ensure_future(session.sign_event(DRAFT))
        await wait_for_requests(remote, 3)
        await session.nsec_login(BOB_SECRET)

        with pytest.raises(AuthRejectedError):
            await signing
        client_pubkey, request = remote.requests[2]
        await remote.respond(client_pubkey, request)
        assert session.pubkey == BOB_PUBKEY

    @pytest.mark.asyncio
    async def test_stored_bunker_reconnects_and_reconciles_pubkey(self):
        transport = FakeTransport()
        remote = FakeRemoteSigner(transport)
        record = AccountRecord(
            STALE_PUBKEY,
            SignerType.BUNKER,
            bunker=remote.bunker_url(),
            bunker_client_secret_key=BOB_SECRET,
        )
        store = store_with(record, current=record.pointer)
        session = AccountSession(store, transport=transport, signer_timeout=1)

        assert await session.initialize() == ALICE_PUBKEY
        assert [request["method"] for _, request in remote.requests] == ["get_public_key"]
        assert store.get_accounts() == [AccountPointer(ALICE_PUBKEY, SignerType.BUNKER)]
        assert store.find_account(store.get_current_account()).bunker_client_secret_key == BOB_SECRET

    @pytest.mark.asyncio
    async def test_bunker_login_needs_transport(self, store):
        session = AccountSession(store)
        with pytest.raises(UnsupportedOperationError):
            await session.bunker_login(f"bunker://{ALICE_PUBKEY}?relay=wss://r.example.com")


class TestSigning:
    @pytest.mark.asyncio
    async def test_sign_requires_login(self, store):
        with pytest.raises(NotLoggedInError):
            await AccountSession(store).sign_event(DRAFT)

    @pytest.mark.asyncio
    async def test_http_auth_header(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        header = await session.sign_http_auth("https://media.example.com/upload", "POST")

        assert header.startswith("Nostr ")
        payload = json.loads(base64.b64decode(header.removeprefix("Nostr ")))
        assert payload["kind"] == KIND_HTTP_AUTH
        assert payload["pubkey"] == ALICE_PUBKEY
        assert ["u", "https://media.example.com/upload"] in payload["tags"]
        assert ["method", "POST"] in payload["tags"]

    @pytest.mark.asyncio
    async def test_nip04_through_active_signer(self, store):
        session = AccountSession(store)
        await session.nsec_login(ALICE_SECRET)
        ciphertext = await session.nip04_encrypt(BOB_PUBKEY, "psst")
        assert KeyPair(BOB_SECRET).nip04_decrypt(ALICE_PUBKEY, ciphertext) == "psst"

    @pytest.mark.asyncio
    async def test_new_user_setup(self, store):
        transport = FakeTransport()
        relays = ["wss://a.example.com", "wss://b.example.com"]
        session = AccountSession(store, transport=transport, default_relays=relays)
        await session.nsec_login(ALICE_SECRET, need_setup=True)

        events = transport.sent_events()
        assert [event.kind for event in events] == [KIND_CONTACTS, KIND_MUTE_LIST, KIND_RELAY_LIST]
        assert all(event.pubkey == ALICE_PUBKEY for event in events)
        assert len(transport.sent) == 6
        assert {tag[1] for tag in events[2].tags} == set(relays)
