"""NIP-19 bech32 identifiers.

Encodes and decodes npub, nsec, note, nprofile, nevent and naddr strings on
top of the bech32 primitives. TLV entities routinely exceed the 90 character
limit of BIP-173, so decoding checks the checksum directly instead of going
through bech32.bech32_decode.
"""

from dataclasses import dataclass, field

import bech32

from .errors import Nip19DecodeError

TLV_SPECIAL = 0
TLV_RELAY = 1
TLV_AUTHOR = 2
TLV_KIND = 3

NOSTR_URI_PREFIX = "nostr:"


@dataclass(frozen=True)
class ProfilePointer:
    pubkey: str
    relays: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EventPointer:
    id: str
    relays: list[str] = field(default_factory=list)
    author: str | None = None
    kind: int | None = None


@dataclass(frozen=True)
class AddressPointer:
    identifier: str
    pubkey: str
    kind: int
    relays: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DecodeResult:
    """Decoded identifier: type is the bech32 prefix, data depends on it.

    npub/nsec/note decode to a hex string, nprofile to ProfilePointer,
    nevent to EventPointer and naddr to AddressPointer.
    """

    type: str
    data: object


def _bech32_split(value: str) -> tuple[str, list[int]]:
    if not value or value.lower() != value and value.upper() != value:
        raise Nip19DecodeError(f"Not a bech32 string: {value[:16]!r}")
    value = value.lower()
    separator = value.rfind("1")
    if separator < 1 or separator + 7 > len(value):
        raise Nip19DecodeError(f"Not a bech32 string: {value[:16]!r}")

    hrp = value[:separator]
    words = []
    for char in value[separator + 1 :]:
        index = bech32.CHARSET.find(char)
        if index == -1:
            raise Nip19DecodeError(f"Invalid bech32 character: {char!r}")
        words.append(index)

    if not bech32.bech32_verify_checksum(hrp, words):
        raise Nip19DecodeError("Invalid bech32 checksum")
    return hrp, words[:-6]


def _words_to_bytes(words: list[int]) -> bytes:
    converted = bech32.convertbits(words, 5, 8, False)
    if converted is None:
        raise Nip19DecodeError("Invalid bech32 padding")
    return bytes(converted)


def _encode(prefix: str, payload: bytes) -> str:
    return bech32.bech32_encode(prefix, bech32.convertbits(payload, 8, 5))


def _parse_tlv(payload: bytes) -> dict[int, list[bytes]]:
    result: dict[int, list[bytes]] = {}
    offset = 0
    while offset < len(payload):
        if offset + 2 > len(payload):
            raise Nip19DecodeError("Truncated TLV entry")
        tlv_type, length = payload[offset], payload[offset + 1]
        value = payload[offset + 2 : offset + 2 + length]
        if len(value) < length:
            raise Nip19DecodeError("Truncated TLV value")
        result.setdefault(tlv_type, []).append(value)
        offset += 2 + length
    return result


def _encode_tlv(entries: list[tuple[int, bytes]]) -> bytes:
    payload = bytearray()
    for tlv_type, value in entries:
        if len(value) > 255:
            raise ValueError("TLV value too long")
        payload.extend((tlv_type, len(value)))
        payload.extend(value)
    return bytes(payload)


def _require_hex32(value: bytes, what: str) -> str:
    if len(value) != 32:
        raise Nip19DecodeError(f"{what} must be 32 bytes, got {len(value)}")
    return value.hex()


def _hex32(value: str, what: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError):
        raise ValueError(f"{what} must be hex") from None
    if len(raw) != 32:
        raise ValueError(f"{what} must be 32 bytes")
    return raw


def _utf8(value: bytes, what: str) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        raise Nip19DecodeError(f"{what} is not valid UTF-8") from None


def strip_uri(value: str) -> str:
    return value[len(NOSTR_URI_PREFIX) :] if value.startswith(NOSTR_URI_PREFIX) else value


def decode(value: str) -> DecodeResult:
    """Decode a NIP-19 identifier (with or without nostr: prefix).

    CONTRACT:
      Inputs:
        - value: bech32 string such as "npub1...", "nevent1..." or "nostr:naddr1..."

      Outputs:
        - DecodeResult(type=prefix, data=...) as documented on DecodeResult

      Invariants:
        - Checksum is always verified
        - 32-byte fields are returned as lower-case hex

      Raises:
        - Nip19DecodeError: malformed string, bad checksum, unknown prefix or
          missing mandatory TLV entry. Callers probing user input catch it.
    """
    prefix, words = _bech32_split(strip_uri(value.strip()))
    payload = _words_to_bytes(words)

    if prefix in ("npub", "nsec", "note"):
        return DecodeResult(prefix, _require_hex32(payload, prefix))

    if prefix not in ("nprofile", "nevent", "naddr"):
        raise Nip19DecodeError(f"Unsupported bech32 prefix: {prefix}")

    tlv = _parse_tlv(payload)
    special = tlv.get(TLV_SPECIAL)
    if not special:
        raise Nip19DecodeError(f"{prefix} is missing its special TLV entry")
    relays = [_utf8(relay, "relay") for relay in tlv.get(TLV_RELAY, [])]

    if prefix == "nprofile":
        return DecodeResult(prefix, ProfilePointer(pubkey=_require_hex32(special[0], "pubkey"), relays=relays))

    author = _require_hex32(tlv[TLV_AUTHOR][0], "author") if TLV_AUTHOR in tlv else None
    kind = int.from_bytes(tlv[TLV_KIND][0], "big") if TLV_KIND in tlv else None

    if prefix == "nevent":
        return DecodeResult(
            prefix, EventPointer(id=_require_hex32(special[0], "event id"), relays=relays, author=author, kind=kind)
        )

    if author is None or kind is None:
        raise Nip19DecodeError("naddr requires author and kind")
    return DecodeResult(
        prefix,
        AddressPointer(identifier=_utf8(special[0], "identifier"), pubkey=author, kind=kind, relays=relays),
    )


def npub_encode(pubkey: str) -> str:
    return _encode("npub", _hex32(pubkey, "pubkey"))


def nsec_encode(secret_key: str) -> str:
    return _encode("nsec", _hex32(secret_key, "secret key"))


def note_encode(event_id: str) -> str:
    return _encode("note", _hex32(event_id, "event id"))


def nprofile_encode(pubkey: str, relays: list[str] | None = None) -> str:
    entries = [(TLV_SPECIAL, _hex32(pubkey, "pubkey"))]
    entries.extend((TLV_RELAY, relay.encode("utf-8")) for relay in relays or [])
    return _encode("nprofile", _encode_tlv(entries))


def nevent_encode(event_id: str, relays: list[str] | None = None, author: str | None = None, kind: int | None = None) -> str:
    entries = [(TLV_SPECIAL, _hex32(event_id, "event id"))]
    entries.extend((TLV_RELAY, relay.encode("utf-8")) for relay in relays or [])
    if author:
        entries.append((TLV_AUTHOR, _hex32(author, "author")))
    if kind is not None:
        entries.append((TLV_KIND, kind.to_bytes(4, "big")))
    return _encode("nevent", _encode_tlv(entries))


def naddr_encode(identifier: str, pubkey: str, kind: int, relays: list[str] | None = None) -> str:
    entries = [(TLV_SPECIAL, identifier.encode("utf-8"))]
    entries.extend((TLV_RELAY, relay.encode("utf-8")) for relay in relays or [])
    entries.append((TLV_AUTHOR, _hex32(pubkey, "pubkey")))
    entries.append((TLV_KIND, kind.to_bytes(4, "big")))
    return _encode("naddr", _encode_tlv(entries))
