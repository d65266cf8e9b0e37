"""Event identity and structural helpers.

Canonical id computation, replaceable/addressable kind rules and tag lookups.
"""

import hashlib
import json
from collections.abc import Callable

from .constants import KIND_CONTACTS, KIND_METADATA
from .models import DraftEvent, Event, Tag


def serialize_for_id(pubkey: str, created_at: int, kind: int, tags, content: str) -> str:
    """Serialize the canonical id tuple.

    CONTRACT:
      Inputs:
        - pubkey: 64-character hex public key of the author
        - created_at: unix timestamp in seconds
        - kind: integer event kind
        - tags: sequence of tag sequences
        - content: event content

      Outputs:
        - serialized: compact JSON of [0, pubkey, created_at, kind, tags, content]

      Invariants:
        - No whitespace between tokens
        - Non-ASCII characters are emitted verbatim (not escaped)

      Properties:
        - Deterministic: same tuple always yields the same string
    """
    return json.dumps(
        [0, pubkey, created_at, kind, [list(tag) for tag in tags], content],
        ensure_ascii=False,
        separators=(",", ":"),
    )


def compute_event_id(pubkey: str, draft: DraftEvent) -> str:
    """Return the hex SHA-256 id the draft would have when signed by pubkey."""
    serialized = serialize_for_id(pubkey, draft.created_at, draft.kind, draft.tags, draft.content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def finalize_event(draft: DraftEvent, pubkey: str, sign: Callable[[bytes], str]) -> Event:
    """Attach pubkey, id and signature to a draft.

    sign receives the 32-byte id and returns a hex signature.
    """
    event_id = compute_event_id(pubkey, draft)
    sig = sign(bytes.fromhex(event_id))
    return Event(
        id=event_id,
        pubkey=pubkey,
        created_at=draft.created_at,
        kind=draft.kind,
        tags=draft.tags,
        content=draft.content,
        sig=sig,
    )


def verify_event_id(event: Event) -> bool:
    """Check that the event id equals the canonical hash of its contents."""
    draft = DraftEvent(kind=event.kind, content=event.content, tags=event.tags, created_at=event.created_at)
    return compute_event_id(event.pubkey, draft) == event.id


def serialize_event(event: Event) -> str:
    """Full JSON form of a signed event, as embedded in repost content."""
    return json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"))


def is_replaceable_kind(kind: int) -> bool:
    return kind in (KIND_METADATA, KIND_CONTACTS) or 10000 <= kind < 20000 or 30000 <= kind < 40000


def is_addressable_kind(kind: int) -> bool:
    return 30000 <= kind < 40000


def find_tag(tags, name: str) -> Tag | None:
    """Return the first tag named name, or None."""
    for tag in tags:
        if tag and tag[0] == name:
            return tuple(tag)
    return None


def get_replaceable_identifier(event: Event) -> str:
    tag = find_tag(event.tags, "d")
    return tag[1] if tag and len(tag) > 1 else ""


def get_replaceable_coordinate(kind: int, pubkey: str, identifier: str = "") -> str:
    return f"{kind}:{pubkey}:{identifier}"


def get_replaceable_coordinate_from_event(event: Event) -> str:
    identifier = get_replaceable_identifier(event) if is_addressable_kind(event.kind) else ""
    return get_replaceable_coordinate(event.kind, event.pubkey, identifier)


def get_root_e_tag(event: Event) -> Tag | None:
    """Return the e tag carrying the "root" marker, if the event declares one."""
    for tag in event.tags:
        if len(tag) > 3 and tag[0] == "e" and tag[3] == "root":
            return tuple(tag)
    return None


def is_protected_event(event: Event) -> bool:
    return any(len(tag) == 1 and tag[0] == "-" for tag in event.tags)
