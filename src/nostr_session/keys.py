"""Key material operations backed by nostr-sdk.

Schnorr signing, NIP-04/NIP-44 payload encryption and NIP-49 password
encryption of secret keys. Everything else in the package handles keys as
hex strings; nostr-sdk types never leave this module.
"""

import json
import re

from nostr_sdk import (
    EncryptedSecretKey,
    Event as SdkEvent,
    Keys,
    Nip44Version,
    PublicKey,
    SecretKey,
    nip04_decrypt,
    nip04_encrypt,
    nip44_decrypt,
    nip44_encrypt,
)

from .errors import DecryptionFailedError, InvalidCredentialFormatError, Nip19DecodeError
from .nip19 import decode, nsec_encode

HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_secret_key(value: str) -> str:
    """Normalize an nsec or 64-character hex secret to lower-case hex.

    Raises:
      - InvalidCredentialFormatError: neither a valid nsec nor hex key
    """
    value = value.strip()
    if value.startswith("nsec"):
        try:
            decoded = decode(value)
        except Nip19DecodeError as e:
            raise InvalidCredentialFormatError(f"Invalid nsec: {e}") from None
        return decoded.data
    if HEX_KEY_RE.match(value):
        return value.lower()
    raise InvalidCredentialFormatError("Expected an nsec or a 64-character hex secret key")


def parse_public_key(value: str) -> str:
    """Normalize an npub, nprofile or hex public key to lower-case hex."""
    value = value.strip()
    if value.startswith(("npub", "nprofile")):
        try:
            decoded = decode(value)
        except Nip19DecodeError as e:
            raise InvalidCredentialFormatError(f"Invalid public key: {e}") from None
        return decoded.data if decoded.type == "npub" else decoded.data.pubkey
    if HEX_KEY_RE.match(value):
        return value.lower()
    raise InvalidCredentialFormatError("Expected an npub or a 64-character hex public key")


class KeyPair:
    """secp256k1 key pair held in memory for one signer instance."""

    def __init__(self, secret_key_hex: str):
        self._keys = Keys.parse(secret_key_hex)

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(Keys.generate().secret_key().to_hex())

    @property
    def public_key(self) -> str:
        return self._keys.public_key().to_hex()

    def secret_key_hex(self) -> str:
        return self._keys.secret_key().to_hex()

    def nsec(self) -> str:
        return nsec_encode(self.secret_key_hex())

    def sign(self, message: bytes) -> str:
        """BIP-340 Schnorr signature over a 32-byte message, hex encoded."""
        return self._keys.sign_schnorr(message)

    def nip04_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip04_encrypt(self._keys.secret_key(), PublicKey.parse(peer_pubkey), plaintext)

    def nip04_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return nip04_decrypt(self._keys.secret_key(), PublicKey.parse(peer_pubkey), ciphertext)

    def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip44_encrypt(self._keys.secret_key(), PublicKey.parse(peer_pubkey), plaintext, Nip44Version.V2)

    def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str:
        return nip44_decrypt(self._keys.secret_key(), PublicKey.parse(peer_pubkey), payload)


def verify_signature(event_data: dict) -> bool:
    """True when the BIP-340 signature of a NIP-01 event dict matches its id and pubkey."""
    try:
        return SdkEvent.from_json(json.dumps(event_data)).verify()
    except Exception:
        return False


def encrypt_secret_key(secret_key_hex: str, password: str) -> str:
    """NIP-49 encrypt a secret key, returning an ncryptsec string."""
    return SecretKey.parse(secret_key_hex).encrypt(password).to_bech32()


def decrypt_secret_key(ncryptsec: str, password: str) -> str:
    """Decrypt an ncryptsec string to a hex secret key.

    Raises:
      - InvalidCredentialFormatError: not an ncryptsec string
      - DecryptionFailedError: wrong password or corrupted payload
    """
    if not ncryptsec.startswith("ncryptsec1"):
        raise InvalidCredentialFormatError("Expected an ncryptsec string")
    try:
        encrypted = EncryptedSecretKey.from_bech32(ncryptsec)
    except Exception as e:
        raise InvalidCredentialFormatError(f"Invalid ncryptsec: {e}") from None
    try:
        return encrypted.decrypt(password).to_hex()
    except Exception:
        raise DecryptionFailedError("Could not decrypt ncryptsec: wrong password?") from None
