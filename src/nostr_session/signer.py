"""Signer capability and its local variants.

A signer exposes get_public_key, sign_event and NIP-04 encrypt/decrypt. The
variant set is closed: local key, password-encrypted local key, browser
extension and read-only live here; both remote-signer variants live in
bunker.py. Capability checks go through is_signing_capable, which covers
every SignerType explicitly.
"""

from abc import ABC, abstractmethod

from .errors import (
    AuthRejectedError,
    ExtensionUnavailableError,
    NostrSessionError,
    PermissionDeniedError,
    UnsupportedOperationError,
)
from .event import finalize_event, verify_event_id
from .keys import KeyPair, decrypt_secret_key, parse_public_key, parse_secret_key, verify_signature
from .models import DraftEvent, Event, SignerType
from .services import ExtensionCapability


class Signer(ABC):
    """Capability contract shared by every signer variant."""

    signer_type: SignerType

    @abstractmethod
    async def get_public_key(self) -> str: ...

    @abstractmethod
    async def sign_event(self, draft: DraftEvent) -> Event: ...

    @abstractmethod
    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str: ...

    @abstractmethod
    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str: ...

    async def close(self) -> None:
        """Tear down the signer, discarding any in-memory secret."""


def is_signing_capable(signer: Signer) -> bool:
    """Whether signer can sign and encrypt. Every SignerType is listed."""
    signer_type = signer.signer_type
    if signer_type in (SignerType.NSEC, SignerType.BROWSER_NSEC, SignerType.NCRYPTSEC):
        return True
    if signer_type in (SignerType.NIP07, SignerType.BUNKER):
        return True
    if signer_type == SignerType.NPUB:
        return False
    raise ValueError(f"Unknown signer type: {signer_type}")


def check_signed_event(event: Event, draft: DraftEvent, expected_pubkey: str | None = None) -> Event:
    """Validate an event returned by an external custody mechanism.

    Raises:
      - AuthRejectedError: the event does not match the draft, its id is not the
        canonical hash, its signature does not verify, or it is signed by an
        unexpected key
    """
    if event.kind != draft.kind or event.content != draft.content or event.tags != draft.tags:
        raise AuthRejectedError("Signer returned an event that differs from the draft")
    if not verify_event_id(event):
        raise AuthRejectedError("Signer returned an event with an invalid id")
    if not verify_signature(event.to_dict()):
        raise AuthRejectedError("Signer returned an event with an invalid signature")
    if expected_pubkey and event.pubkey != expected_pubkey:
        raise AuthRejectedError("Signer returned an event signed by a different key")
    return event


class LocalKeySigner(Signer):
    """Holds a raw secret key in memory for the session only."""

    signer_type = SignerType.NSEC

    def __init__(self, secret_key: str):
        self._key: KeyPair | None = KeyPair(parse_secret_key(secret_key))

    def _require_key(self) -> KeyPair:
        if self._key is None:
            raise AuthRejectedError("Signer has been closed")
        return self._key

    @property
    def public_key(self) -> str:
        return self._require_key().public_key

    def nsec(self) -> str:
        return self._require_key().nsec()

    async def get_public_key(self) -> str:
        return self.public_key

    def sign_event_sync(self, draft: DraftEvent) -> Event:
        key = self._require_key()
        return finalize_event(draft, key.public_key, key.sign)

    async def sign_event(self, draft: DraftEvent) -> Event:
        return self.sign_event_sync(draft)

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return self._require_key().nip04_encrypt(peer_pubkey, plaintext)

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return self._require_key().nip04_decrypt(peer_pubkey, ciphertext)

    async def close(self) -> None:
        self._key = None


class NcryptsecSigner(LocalKeySigner):
    """Local key unlocked from a NIP-49 ncryptsec with a passphrase."""

    signer_type = SignerType.NCRYPTSEC

    def __init__(self, ncryptsec: str, password: str):
        super().__init__(decrypt_secret_key(ncryptsec, password))
        self.ncryptsec = ncryptsec


class ExtensionSigner(Signer):
    """Delegates every operation to an injected browser-extension capability."""

    signer_type = SignerType.NIP07

    def __init__(self, extension: ExtensionCapability | None):
        if extension is None:
            raise ExtensionUnavailableError("No browser extension signer is available")
        self._extension = extension
        self._pubkey: str | None = None

    async def get_public_key(self) -> str:
        if self._pubkey is None:
            try:
                pubkey = await self._extension.get_public_key()
            except NostrSessionError:
                raise
            except Exception as e:
                raise PermissionDeniedError(f"Extension refused to share the public key: {e}") from e
            if not pubkey:
                raise PermissionDeniedError("You did not allow access to your public key")
            self._pubkey = pubkey
        return self._pubkey

    async def sign_event(self, draft: DraftEvent) -> Event:
        pubkey = await self.get_public_key()
        try:
            signed = await self._extension.sign_event(draft.to_dict())
        except NostrSessionError:
            raise
        except Exception as e:
            raise PermissionDeniedError(f"Extension refused to sign: {e}") from e
        if not signed:
            raise PermissionDeniedError("Extension refused to sign")
        try:
            event = Event.from_dict(signed)
        except (KeyError, TypeError, ValueError) as e:
            raise AuthRejectedError(f"Extension returned a malformed event: {e}") from e
        return check_signed_event(event, draft, pubkey)

    def _nip04(self, operation: str):
        nip04 = getattr(self._extension, "nip04", None)
        method = getattr(nip04, operation, None)
        if method is None:
            raise UnsupportedOperationError(f"Extension does not support nip04 {operation}")
        return method

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        method = self._nip04("encrypt")
        try:
            return await method(peer_pubkey, plaintext)
        except Exception as e:
            raise PermissionDeniedError(f"Extension refused to encrypt: {e}") from e

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        method = self._nip04("decrypt")
        try:
            return await method(peer_pubkey, ciphertext)
        except Exception as e:
            raise PermissionDeniedError(f"Extension refused to decrypt: {e}") from e


class ReadOnlySigner(Signer):
    """Public key only; every signing or encryption request fails."""

    signer_type = SignerType.NPUB

    def __init__(self, npub_or_hex: str):
        self._pubkey = parse_public_key(npub_or_hex)

    async def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, draft: DraftEvent) -> Event:
        raise UnsupportedOperationError("Read-only account cannot sign events")

    async def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        raise UnsupportedOperationError("Read-only account cannot encrypt messages")

    async def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        raise UnsupportedOperationError("Read-only account cannot decrypt messages")
