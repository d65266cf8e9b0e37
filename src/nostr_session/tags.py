"""Tag builders.

Pure functions returning tag tuples. Optional trailing fields are trimmed from
the tail only, so a dropped field is never followed by a present one. The e/a/q
builders may consult an injected RelayHintLookup for a relay hint; nothing
else performs I/O.
"""

from .event import get_replaceable_coordinate_from_event
from .models import Emoji, Event, Tag
from .services import RelayHintLookup


def trim_tag_end(tag) -> Tag:
    """Drop empty trailing fields.

    CONTRACT:
      Inputs:
        - tag: sequence of strings, first element is the tag name

      Outputs:
        - tuple with every trailing "" removed

      Invariants:
        - Only the tail is trimmed: an empty field followed by a non-empty one
          is kept as a placeholder
        - Result is a prefix of the input

      Properties:
        - Idempotent: trim_tag_end(trim_tag_end(t)) == trim_tag_end(t)
    """
    end = len(tag)
    while end > 0 and tag[end - 1] == "":
        end -= 1
    return tuple(tag[:end])


def _hint(hints: RelayHintLookup | None, event_id: str) -> str:
    if hints is None:
        return ""
    return hints.get_event_hint(event_id) or ""


def build_e_tag(
    event_id: str,
    pubkey: str = "",
    hint: str = "",
    upper_case: bool = False,
    hints: RelayHintLookup | None = None,
) -> Tag:
    """Reference tag ["e"|"E", id, relay hint, author]."""
    if not hint:
        hint = _hint(hints, event_id)
    return trim_tag_end(("E" if upper_case else "e", event_id, hint, pubkey))


def build_e_tag_with_marker(
    event_id: str,
    pubkey: str = "",
    hint: str = "",
    marker: str = "",
    hints: RelayHintLookup | None = None,
) -> Tag:
    """Threading reference ["e", id, relay hint, marker, author]; marker is "root", "reply" or ""."""
    if not hint:
        hint = _hint(hints, event_id)
    return trim_tag_end(("e", event_id, hint, marker, pubkey))


def build_a_tag(event: Event, upper_case: bool = False, hints: RelayHintLookup | None = None) -> Tag:
    """Coordinate tag for an addressable/replaceable event."""
    coordinate = get_replaceable_coordinate_from_event(event)
    return trim_tag_end(("A" if upper_case else "a", coordinate, _hint(hints, event.id)))


def build_p_tag(pubkey: str, upper_case: bool = False, marker: str = "") -> Tag:
    return trim_tag_end(("P" if upper_case else "p", pubkey, "", marker))


def build_k_tag(kind: int | str, upper_case: bool = False) -> Tag:
    return ("K" if upper_case else "k", str(kind))


def build_i_tag(value: str, upper_case: bool = False) -> Tag:
    """External content tag."""
    return ("I" if upper_case else "i", value)


def build_q_tag(event_id: str, hints: RelayHintLookup | None = None) -> Tag:
    return trim_tag_end(("q", event_id, _hint(hints, event_id)))


def build_replaceable_q_tag(coordinate: str) -> Tag:
    return trim_tag_end(("q", coordinate))


def build_t_tag(hashtag: str) -> Tag:
    return ("t", hashtag)


def build_r_tag(url: str, scope: str = "both") -> Tag:
    """Mailbox relay tag; scope is omitted when it is the default "both"."""
    return ("r", url) if scope == "both" else ("r", url, scope)


def build_emoji_tag(emoji: Emoji) -> Tag:
    return ("emoji", emoji.shortcode, emoji.url)


def build_imeta_tag(url: str, fields: dict[str, str] | None = None) -> Tag:
    """Media metadata tag ["imeta", "url <url>", "<key> <value>", ...]."""
    entries = [f"url {url}"]
    for key, value in (fields or {}).items():
        if value:
            entries.append(f"{key} {value}")
    return ("imeta", *entries)


def build_d_tag(identifier: str) -> Tag:
    return ("d", identifier)


def build_title_tag(title: str) -> Tag:
    return ("title", title)


def build_relay_tag(url: str) -> Tag:
    return ("relay", url)


def build_server_tag(url: str) -> Tag:
    return ("server", url)


def build_option_tag(option_id: str, label: str) -> Tag:
    return ("option", option_id, label)


def build_response_tag(option_id: str) -> Tag:
    return ("response", option_id)


def build_client_tag(name: str) -> Tag:
    return ("client", name)


def build_nsfw_tag() -> Tag:
    return ("content-warning", "NSFW")


def build_protected_tag() -> Tag:
    return ("-",)
