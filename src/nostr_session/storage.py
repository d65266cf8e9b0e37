"""Credential stores.

Both stores keep an ordered list of AccountRecords and the pointer of the
current account. Records are keyed by (pubkey, signer type): adding a record
with an existing pointer replaces it in place.
"""

import json
import logging
import os
from pathlib import Path
from typing import Protocol

from .models import AccountPointer, AccountRecord

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def get_accounts(self) -> list[AccountPointer]: ...

    def get_current_account(self) -> AccountPointer | None: ...

    def add_account(self, record: AccountRecord) -> list[AccountPointer]: ...

    def remove_account(self, pointer: AccountPointer) -> list[AccountPointer]: ...

    def switch_account(self, pointer: AccountPointer | None) -> None: ...

    def find_account(self, pointer: AccountPointer) -> AccountRecord | None: ...

    def get_account_secret(self, pubkey: str) -> str | None: ...

    def get_account_ncryptsec(self, pubkey: str) -> str | None: ...


class InMemoryCredentialStore:
    """Process-lifetime store; also the base for persistent stores."""

    def __init__(self, records: list[AccountRecord] | None = None, current: AccountPointer | None = None):
        self._records: list[AccountRecord] = list(records or [])
        self._current = current

    def _changed(self) -> None:
        """Hook run after every mutation."""

    def get_accounts(self) -> list[AccountPointer]:
        return [record.pointer for record in self._records]

    def get_current_account(self) -> AccountPointer | None:
        return self._current

    def add_account(self, record: AccountRecord) -> list[AccountPointer]:
        for index, existing in enumerate(self._records):
            if existing.matches(record.pointer):
                self._records[index] = record
                break
        else:
            self._records.append(record)
        self._changed()
        return self.get_accounts()

    def remove_account(self, pointer: AccountPointer) -> list[AccountPointer]:
        self._records = [record for record in self._records if not record.matches(pointer)]
        if self._current == pointer:
            self._current = None
        self._changed()
        return self.get_accounts()

    def switch_account(self, pointer: AccountPointer | None) -> None:
        if pointer is not None and self.find_account(pointer) is None:
            raise KeyError(f"Unknown account {pointer.pubkey} ({pointer.signer_type.value})")
        self._current = pointer
        self._changed()

    def find_account(self, pointer: AccountPointer) -> AccountRecord | None:
        for record in self._records:
            if record.matches(pointer):
                return record
        return None

    def _find_by_pubkey(self, pubkey: str, attribute: str) -> str | None:
        for record in self._records:
            value = getattr(record, attribute)
            if record.pubkey == pubkey and value:
                return value
        return None

    def get_account_secret(self, pubkey: str) -> str | None:
        return self._find_by_pubkey(pubkey, "nsec")

    def get_account_ncryptsec(self, pubkey: str) -> str | None:
        return self._find_by_pubkey(pubkey, "ncryptsec")


class JsonFileCredentialStore(InMemoryCredentialStore):
    """Store persisted as a JSON document, written with owner-only permissions.

    Format: {"accounts": [record, ...], "currentAccount": pointer | null}
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        records, current = self._load()
        super().__init__(records, current)

    def _load(self) -> tuple[list[AccountRecord], AccountPointer | None]:
        if not self.path.exists():
            return [], None
        data = json.loads(self.path.read_text(encoding="utf-8"))
        records = []
        for item in data.get("accounts", []):
            try:
                records.append(AccountRecord.from_dict(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"Dropping malformed account record in {self.path}: {e}")
        current = data.get("currentAccount")
        pointer = AccountPointer(pubkey=current["pubkey"], signer_type=current["signerType"]) if current else None
        return records, pointer

    def _changed(self) -> None:
        current = self.get_current_account()
        data = {
            "accounts": [record.to_dict() for record in self._records],
            "currentAccount": (
                {"pubkey": current.pubkey, "signerType": current.signer_type.value} if current else None
            ),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)
