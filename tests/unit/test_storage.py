"""Tests for the credential stores."""

import json
import logging
import stat

import pytest

from conftest import ALICE_PUBKEY
from nostr_session.models import AccountPointer, AccountRecord, SignerType
from nostr_session.storage import InMemoryCredentialStore, JsonFileCredentialStore

NSEC_RECORD = AccountRecord(ALICE_PUBKEY, SignerType.NSEC, nsec="nsec1alice")
NPUB_RECORD = AccountRecord(ALICE_PUBKEY, SignerType.NPUB, npub="npub1alice")
BUNKER_RECORD = AccountRecord(
    "b" * 64, SignerType.BUNKER, bunker="bunker://remote?relay=wss://r.example.com", bunker_client_secret_key="c" * 64
)


class TestInMemoryCredentialStore:
    def test_add_keeps_order_and_replaces_same_pointer(self, store):
        store.add_account(NSEC_RECORD)
        store.add_account(BUNKER_RECORD)
        updated = AccountRecord(ALICE_PUBKEY, SignerType.NSEC, nsec="nsec1rotated")
        assert store.add_account(updated) == [NSEC_RECORD.pointer, BUNKER_RECORD.pointer]
        assert store.find_account(NSEC_RECORD.pointer).nsec == "nsec1rotated"

    def test_same_pubkey_different_signer_types_coexist(self, store):
        store.add_account(NSEC_RECORD)
        store.add_account(NPUB_RECORD)
        assert len(store.get_accounts()) == 2

    def test_remove_current_clears_it(self, store):
        store.add_account(NSEC_RECORD)
        store.switch_account(NSEC_RECORD.pointer)
        assert store.remove_account(NSEC_RECORD.pointer) == []
        assert store.get_current_account() is None

    def test_switch_to_unknown_account(self, store):
        with pytest.raises(KeyError):
            store.switch_account(AccountPointer(ALICE_PUBKEY, SignerType.NSEC))

    def test_secret_lookups(self, store):
        store.add_account(NPUB_RECORD)
        store.add_account(NSEC_RECORD)
        assert store.get_account_secret(ALICE_PUBKEY) == "nsec1alice"
        assert store.get_account_ncryptsec(ALICE_PUBKEY) is None
        assert store.get_account_secret("0" * 64) is None


class TestJsonFileCredentialStore:
    def test_persists_accounts_and_current(self, tmp_path):
        path = tmp_path / "nested" / "accounts.json"
        store = JsonFileCredentialStore(path)
        store.add_account(NSEC_RECORD)
        store.add_account(BUNKER_RECORD)
        store.switch_account(BUNKER_RECORD.pointer)

        reopened = JsonFileCredentialStore(path)
        assert reopened.get_accounts() == [NSEC_RECORD.pointer, BUNKER_RECORD.pointer]
        assert reopened.get_current_account() == BUNKER_RECORD.pointer
        assert reopened.find_account(BUNKER_RECORD.pointer) == BUNKER_RECORD

    def test_file_format(self, tmp_path):
        path = tmp_path / "accounts.json"
        store = JsonFileCredentialStore(path)
        store.add_account(BUNKER_RECORD)
        store.switch_account(BUNKER_RECORD.pointer)

        data = json.loads(path.read_text())
        assert data["currentAccount"] == {"pubkey": "b" * 64, "signerType": "bunker"}
        assert data["accounts"][0]["bunkerClientSecretKey"] == "c" * 64
        assert "nsec" not in data["accounts"][0]

    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "accounts.json"
        JsonFileCredentialStore(path).add_account(NSEC_RECORD)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileCredentialStore(tmp_path / "absent.json")
        assert store.get_accounts() == []
        assert store.get_current_account() is None

    def test_malformed_records_dropped(self, tmp_path, caplog):
        path = tmp_path / "accounts.json"
        path.write_text(
            json.dumps(
                {
                    "accounts": [NSEC_RECORD.to_dict(), {"pubkey": "x"}, {"pubkey": "y", "signerType": "carrier-pigeon"}],
                    "currentAccount": None,
                }
            )
        )
        with caplog.at_level(logging.WARNING, logger="nostr_session.storage"):
            store = JsonFileCredentialStore(path)
        assert store.get_accounts() == [NSEC_RECORD.pointer]
        assert "Dropping malformed account record" in caplog.text


def test_in_memory_store_accepts_initial_records():
    store = InMemoryCredentialStore([NSEC_RECORD], current=NSEC_RECORD.pointer)
    assert store.get_current_account() == NSEC_RECORD.pointer
