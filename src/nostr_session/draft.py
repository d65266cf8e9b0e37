"""Draft composition.

Turns user intent into unsigned, protocol-valid DraftEvents. Composition is
deterministic apart from the injected clock (and poll option ids, drawn on a
cache miss only); identical compositions within one composer are memoized by
the serialized pre-timestamp draft.
"""

import json
import logging
import re
import unicodedata
from collections import OrderedDict
from collections.abc import Callable, Sequence

from .constants import (
    APPLICATION_DATA_NOTIFICATIONS_SEEN_AT,
    DEFAULT_CLIENT_TAG,
    DELETION_REQUEST_CONTENT,
    DRAFT_CACHE_SIZE,
    KIND_APPLICATION,
    KIND_BLOSSOM_SERVER_LIST,
    KIND_BOOKMARK_LIST,
    KIND_COMMENT,
    KIND_CONTACTS,
    KIND_DELETION,
    KIND_FAVORITE_RELAYS,
    KIND_GENERIC_REPOST,
    KIND_HTTP_AUTH,
    KIND_METADATA,
    KIND_MUTE_LIST,
    KIND_POLL,
    KIND_POLL_RESPONSE,
    KIND_REACTION,
    KIND_RELAY_LIST,
    KIND_RELAY_SET,
    KIND_REPOST,
    KIND_SHORT_TEXT_NOTE,
    KIND_VOICE_COMMENT,
    POLL_DEFAULT_RELAY_COUNT,
    POLL_TYPE_MULTIPLE_CHOICE,
    POLL_TYPE_SINGLE_CHOICE,
    SEEN_NOTIFICATIONS_CONTENT,
)
from .errors import Nip19DecodeError
from .event import (
    find_tag,
    get_replaceable_coordinate,
    get_replaceable_coordinate_from_event,
    get_root_e_tag,
    is_protected_event,
    is_replaceable_kind,
    serialize_event,
)
from .models import DraftEvent, Emoji, Event, MailboxRelay, PollCreateData, RelaySet, Tag
from .nip19 import AddressPointer, EventPointer, decode
from .services import EmojiRegistry, EventFetcher, MediaMetadataLookup, RelayHintLookup
from .tags import (
    build_a_tag,
    build_client_tag,
    build_d_tag,
    build_e_tag,
    build_e_tag_with_marker,
    build_emoji_tag,
    build_k_tag,
    build_nsfw_tag,
    build_option_tag,
    build_p_tag,
    build_protected_tag,
    build_q_tag,
    build_r_tag,
    build_relay_tag,
    build_replaceable_q_tag,
    build_response_tag,
    build_server_tag,
    build_t_tag,
    build_title_tag,
)
from .utils import deduplicate_preserving_order, random_string, unix_now

logger = logging.getLogger(__name__)

EMBEDDED_EVENT_RE = re.compile(r"nostr:(note1[a-z0-9]{58}|nevent1[a-z0-9]+|naddr1[a-z0-9]+)")
SHORTCODE_RE = re.compile(r":([a-zA-Z0-9_]+):")
IMAGE_URL_RE = re.compile(r"https?://[^\s\"']+\.(?:jpg|jpeg|png|gif|webp|heic)", re.IGNORECASE)

COMMENT_KINDS = (KIND_COMMENT, KIND_VOICE_COMMENT)


def _is_hashtag_char(char: str) -> bool:
    return unicodedata.category(char)[0] in ("L", "N", "M")


def extract_hashtags(content: str) -> list[str]:
    """Collect hashtags in order of first appearance.

    CONTRACT:
      Inputs:
        - content: note text

      Outputs:
        - hashtags: lower-cased tag names without "#", deduplicated

      Invariants:
        - A hashtag is "#" followed by a maximal run of Unicode letters,
          numbers or combining marks
        - A bare "#" yields nothing

      Properties:
        - Order-preserving: first-seen order is kept
    """
    hashtags = []
    index = content.find("#")
    while index != -1:
        end = index + 1
        while end < len(content) and _is_hashtag_char(content[end]):
            end += 1
        if end > index + 1:
            hashtags.append(content[index + 1 : end].lower())
        index = content.find("#", end)
    return deduplicate_preserving_order(hashtags)


def extract_image_urls(content: str) -> list[str]:
    return deduplicate_preserving_order(IMAGE_URL_RE.findall(content))


def extract_quotes(content: str) -> tuple[list[str], list[str]]:
    """Find embedded nostr: references.

    Returns (event ids, addressable coordinates), each deduplicated. Malformed
    identifiers are skipped and stay in the content untouched.
    """
    event_ids = []
    coordinates = []
    for match in EMBEDDED_EVENT_RE.finditer(content):
        try:
            decoded = decode(match.group(1))
        except Nip19DecodeError as e:
            logger.debug(f"Skipping embedded reference {match.group(1)[:16]}: {e}")
            continue

        if decoded.type == "note":
            event_ids.append(decoded.data)
        elif isinstance(decoded.data, EventPointer):
            event_ids.append(decoded.data.id)
        elif isinstance(decoded.data, AddressPointer):
            pointer = decoded.data
            coordinates.append(get_replaceable_coordinate(pointer.kind, pointer.pubkey, pointer.identifier))
    return deduplicate_preserving_order(event_ids), deduplicate_preserving_order(coordinates)


class DraftComposer:
    """Builds unsigned drafts for every user-facing action.

    Collaborators are injected: a relay hint lookup for e/a/q hints, an event
    fetcher for root re-resolution and poll relay defaults, the custom emoji
    registry and the media metadata lookup. ``clock`` is the only source of
    time.
    """

    def __init__(
        self,
        hints: RelayHintLookup | None = None,
        fetcher: EventFetcher | None = None,
        emojis: EmojiRegistry | None = None,
        media: MediaMetadataLookup | None = None,
        clock: Callable[[], int] = unix_now,
        client_tag: str = DEFAULT_CLIENT_TAG,
        option_id_factory: Callable[[], str] = random_string,
        cache_size: int = DRAFT_CACHE_SIZE,
    ):
        self.hints = hints
        self.fetcher = fetcher
        self.emojis = emojis
        self.media = media
        self.clock = clock
        self.client_tag = client_tag
        self.option_id_factory = option_id_factory
        self.cache_size = cache_size
        self._cache: OrderedDict[str, DraftEvent] = OrderedDict()

    # -- memoization -----------------------------------------------------

    @staticmethod
    def cache_key(kind: int, content: str, tags: Sequence[Sequence[str]]) -> str:
        """Serialized pre-timestamp draft used as memoization key."""
        return json.dumps(
            {"kind": kind, "content": content, "tags": [list(tag) for tag in tags]},
            ensure_ascii=False,
            separators=(",", ":"),
        )

    def _cached(self, key: str) -> DraftEvent | None:
        draft = self._cache.get(key)
        if draft is not None:
            self._cache.move_to_end(key)
        return draft

    def _remember(self, key: str, draft: DraftEvent) -> None:
        self._cache[key] = draft
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def _finalize(self, kind: int, content: str, tags: Sequence[Sequence[str]], fresh: bool = False) -> DraftEvent:
        # Replaceable drafts supersede state on relays; a cached older
        # timestamp would lose against the version it is meant to replace.
        if is_replaceable_kind(kind):
            return DraftEvent(kind=kind, content=content, tags=tags, created_at=self.clock())

        key = self.cache_key(kind, content, tags)
        if not fresh:
            cached = self._cached(key)
            if cached is not None:
                return cached
        draft = DraftEvent(kind=kind, content=content, tags=tags, created_at=self.clock())
        self._remember(key, draft)
        return draft

    def clear_cache(self) -> None:
        self._cache.clear()

    # -- content scanning --------------------------------------------------

    def transform_custom_emojis(self, content: str) -> tuple[str, list[Tag]]:
        """Rewrite :code: to the registered canonical short-code and collect emoji tags."""
        if self.emojis is None:
            return content, []

        emoji_tags: list[Tag] = []
        seen_codes = set()
        for match in SHORTCODE_RE.finditer(content):
            code = match.group(1)
            if code in seen_codes:
                continue
            seen_codes.add(code)

            emoji = self.emojis.get_emoji_by_shortcode(code)
            if emoji is None:
                continue
            tag = build_emoji_tag(emoji)
            if tag not in emoji_tags:
                emoji_tags.append(tag)
            content = content.replace(f":{code}:", f":{emoji.shortcode}:")
        return content, emoji_tags

    def _imeta_tags(self, content: str) -> list[Tag]:
        if self.media is None:
            return []
        tags = []
        for url in extract_image_urls(content):
            tag = self.media.get_imeta_tag_by_url(url)
            if tag:
                tags.append(tuple(tag))
        return tags

    def _quote_tags(self, content: str) -> list[Tag]:
        event_ids, coordinates = extract_quotes(content)
        tags = [build_q_tag(event_id, hints=self.hints) for event_id in event_ids]
        tags.extend(build_replaceable_q_tag(coordinate) for coordinate in coordinates)
        return tags

    def _trailing_tags(self, add_client_tag: bool, nsfw: bool, protected: bool = False) -> list[Tag]:
        tags = []
        if add_client_tag:
            tags.append(build_client_tag(self.client_tag))
        if nsfw:
            tags.append(build_nsfw_tag())
        if protected:
            tags.append(build_protected_tag())
        return tags

    async def _thread_tags(self, parent: Event) -> list[Tag]:
        """Root/reply e tags for a note replying to parent."""
        root_tag = get_root_e_tag(parent)
        if root_tag is None:
            return [build_e_tag_with_marker(parent.id, parent.pubkey, "", "root", hints=self.hints)]

        root_id = root_tag[1]
        hint = root_tag[2] if len(root_tag) > 2 else ""
        root_pubkey = root_tag[4] if len(root_tag) > 4 else ""
        if not root_pubkey and self.fetcher is not None:
            root_event = await self._fetch_root(root_id)
            if root_event is not None:
                root_id, root_pubkey = root_event.id, root_event.pubkey

        return [
            build_e_tag_with_marker(root_id, root_pubkey, hint, "root", hints=self.hints),
            build_e_tag_with_marker(parent.id, parent.pubkey, "", "reply", hints=self.hints),
        ]

    async def _fetch_root(self, event_id: str) -> Event | None:
        try:
            return await self.fetcher.fetch_event(event_id)
        except Exception as e:
            logger.warning(f"Could not resolve thread root {event_id}: {e}")
            return None

    # -- notes and comments --------------------------------------------------

    async def create_short_text_note(
        self,
        content: str,
        mentions: Sequence[str] = (),
        parent_event: Event | None = None,
        add_client_tag: bool = False,
        protected: bool = False,
        nsfw: bool = False,
        fresh: bool = False,
    ) -> DraftEvent:
        """Draft a kind-1 note, optionally replying to parent_event.

        CONTRACT:
          Inputs:
            - content: raw note text
            - mentions: hex pubkeys to p-tag
            - parent_event: note being replied to, if any
            - add_client_tag / protected / nsfw: optional trailing tags
            - fresh: bypass the memoization cache

          Outputs:
            - DraftEvent kind 1

          Invariants:
            - Tag order: emoji, t, imeta, q (ids), q (coordinates), root e,
              reply e, p mentions, client, content-warning, "-"
            - Exactly one q tag per distinct quoted event
            - Unresolvable embedded references are left in content untagged

          Properties:
            - Memoized: identical inputs return the identical draft
        """
        content, emoji_tags = self.transform_custom_emojis(content)
        tags = list(emoji_tags)
        tags.extend(build_t_tag(hashtag) for hashtag in extract_hashtags(content))
        tags.extend(self._imeta_tags(content))
        tags.extend(self._quote_tags(content))
        if parent_event is not None:
            tags.extend(await self._thread_tags(parent_event))
        tags.extend(build_p_tag(pubkey) for pubkey in deduplicate_preserving_order(mentions))
        tags.extend(self._trailing_tags(add_client_tag, nsfw, protected))
        return self._finalize(KIND_SHORT_TEXT_NOTE, content, tags, fresh)

    async def create_comment(
        self,
        content: str,
        parent_event: Event,
        mentions: Sequence[str] = (),
        add_client_tag: bool = False,
        protected: bool = False,
        nsfw: bool = False,
        fresh: bool = False,
    ) -> DraftEvent:
        """Draft a kind-1111 comment on parent_event.

        When the parent is itself a comment its upper-case root tags (A or E,
        P, K, I) are copied verbatim, so every comment in a thread declares
        the same root. Otherwise the parent becomes the root.
        """
        content, emoji_tags = self.transform_custom_emojis(content)
        tags = list(emoji_tags)
        tags.extend(build_t_tag(hashtag) for hashtag in extract_hashtags(content))
        tags.extend(self._quote_tags(content))
        tags.extend(self._imeta_tags(content))
        tags.extend(
            build_p_tag(pubkey)
            for pubkey in deduplicate_preserving_order(mentions)
            if pubkey != parent_event.pubkey
        )
        tags.extend(self._comment_root_tags(parent_event))

        if is_replaceable_kind(parent_event.kind):
            tags.append(build_a_tag(parent_event, hints=self.hints))
        else:
            tags.append(build_e_tag(parent_event.id, parent_event.pubkey, hints=self.hints))
        tags.append(build_k_tag(parent_event.kind))
        tags.append(build_p_tag(parent_event.pubkey))

        tags.extend(self._trailing_tags(add_client_tag, nsfw, protected))
        return self._finalize(KIND_COMMENT, content, tags, fresh)

    def _comment_root_tags(self, parent: Event) -> list[Tag]:
        if parent.kind in COMMENT_KINDS:
            root_reference = find_tag(parent.tags, "A") or find_tag(parent.tags, "E")
            inherited = [root_reference, find_tag(parent.tags, "P"), find_tag(parent.tags, "K"), find_tag(parent.tags, "I")]
            return [tag for tag in inherited if tag is not None]

        if is_replaceable_kind(parent.kind):
            root_reference = build_a_tag(parent, upper_case=True, hints=self.hints)
        else:
            root_reference = build_e_tag(parent.id, parent.pubkey, upper_case=True, hints=self.hints)
        return [root_reference, build_p_tag(parent.pubkey, upper_case=True), build_k_tag(parent.kind, upper_case=True)]

    # -- reactions and reposts -----------------------------------------------

    def create_reaction(self, event: Event, emoji: Emoji | str = "+", fresh: bool = False) -> DraftEvent:
        """Draft a kind-7 reaction; emoji is a literal glyph or a custom Emoji."""
        tags = [build_e_tag(event.id, event.pubkey, hints=self.hints), build_p_tag(event.pubkey)]
        if event.kind != KIND_SHORT_TEXT_NOTE:
            tags.append(build_k_tag(event.kind))
        if is_replaceable_kind(event.kind):
            tags.append(build_a_tag(event, hints=self.hints))

        if isinstance(emoji, Emoji):
            content = f":{emoji.shortcode}:"
            tags.append(build_emoji_tag(emoji))
        else:
            content = emoji
        return self._finalize(KIND_REACTION, content, tags, fresh)

    def create_repost(self, event: Event, fresh: bool = False) -> DraftEvent:
        """Draft a repost; protected events are reposted without their content."""
        tags = [build_e_tag(event.id, event.pubkey, hints=self.hints), build_p_tag(event.pubkey)]
        if is_replaceable_kind(event.kind):
            tags.append(build_a_tag(event, hints=self.hints))

        kind = KIND_REPOST
        if event.kind != KIND_SHORT_TEXT_NOTE:
            kind = KIND_GENERIC_REPOST
            tags.append(build_k_tag(event.kind))

        content = "" if is_protected_event(event) else serialize_event(event)
        return self._finalize(kind, content, tags, fresh)

    # -- polls -----------------------------------------------------------------

    async def create_poll(
        self,
        author: str,
        question: str,
        poll: PollCreateData,
        mentions: Sequence[str] = (),
        add_client_tag: bool = False,
        nsfw: bool = False,
        fresh: bool = False,
    ) -> DraftEvent:
        """Draft a poll.

        Blank options are dropped and each remaining option gets a random
        opaque id. Without explicit relays the author's first read relays are
        used. The memoization key is taken before ids are drawn.
        """
        content, emoji_tags = self.transform_custom_emojis(question)
        head = list(emoji_tags)
        head.extend(build_t_tag(hashtag) for hashtag in extract_hashtags(content))
        head.extend(self._imeta_tags(content))
        head.extend(self._quote_tags(content))
        head.extend(build_p_tag(pubkey) for pubkey in deduplicate_preserving_order(mentions))

        labels = [option.strip() for option in poll.options if option.strip()]

        tail = [("polltype", POLL_TYPE_MULTIPLE_CHOICE if poll.is_multiple_choice else POLL_TYPE_SINGLE_CHOICE)]
        if poll.ends_at:
            tail.append(("endsAt", str(poll.ends_at)))
        relays = list(poll.relays)
        if not relays and self.fetcher is not None:
            relay_list = await self.fetcher.fetch_relay_list(author)
            relays = relay_list.read[:POLL_DEFAULT_RELAY_COUNT]
        tail.extend(build_relay_tag(relay) for relay in relays)
        tail.extend(self._trailing_tags(add_client_tag, nsfw))

        content = content.strip()
        key = self.cache_key(KIND_POLL, content, head + [("option", label) for label in labels] + tail)
        if not fresh:
            cached = self._cached(key)
            if cached is not None:
                return cached

        options = [build_option_tag(self.option_id_factory(), label) for label in labels]
        draft = DraftEvent(kind=KIND_POLL, content=content, tags=head + options + tail, created_at=self.clock())
        self._remember(key, draft)
        return draft

    def create_poll_response(self, poll_event: Event, selected_option_ids: Sequence[str], fresh: bool = False) -> DraftEvent:
        tags = [build_e_tag(poll_event.id, poll_event.pubkey, hints=self.hints), build_p_tag(poll_event.pubkey)]
        tags.extend(build_response_tag(option_id) for option_id in selected_option_ids)
        return self._finalize(KIND_POLL_RESPONSE, "", tags, fresh)

    # -- lists -----------------------------------------------------------------

    def create_relay_list(self, mailbox_relays: Sequence[MailboxRelay]) -> DraftEvent:
        tags = [build_r_tag(relay.url, relay.scope) for relay in mailbox_relays]
        return self._finalize(KIND_RELAY_LIST, "", tags)

    def create_follow_list(self, tags: Sequence[Sequence[str]], content: str = "") -> DraftEvent:
        return self._finalize(KIND_CONTACTS, content, tags)

    def create_mute_list(self, tags: Sequence[Sequence[str]], content: str = "") -> DraftEvent:
        return self._finalize(KIND_MUTE_LIST, content, tags)

    def create_bookmark_list(self, tags: Sequence[Sequence[str]], content: str = "") -> DraftEvent:
        return self._finalize(KIND_BOOKMARK_LIST, content, tags)

    def create_favorite_relays(
        self,
        relay_urls: Sequence[str],
        relay_sets: Sequence[Event | Sequence[str]] = (),
    ) -> DraftEvent:
        """Favorite relays plus nested relay-set references (events or prebuilt a tags)."""
        tags = [build_relay_tag(url) for url in relay_urls]
        tags.extend(self._relay_set_references(relay_sets))
        return self._finalize(KIND_FAVORITE_RELAYS, "", tags)

    def create_relay_set(
        self,
        relay_set: RelaySet,
        nested_sets: Sequence[Event | Sequence[str]] = (),
    ) -> DraftEvent:
        tags = [build_d_tag(relay_set.id), build_title_tag(relay_set.name)]
        tags.extend(build_relay_tag(url) for url in relay_set.relay_urls)
        tags.extend(self._relay_set_references(nested_sets))
        return self._finalize(KIND_RELAY_SET, "", tags)

    def _relay_set_references(self, items: Sequence[Event | Sequence[str]]) -> list[Tag]:
        references = []
        for item in items:
            if isinstance(item, Event):
                references.append(build_a_tag(item, hints=self.hints))
            else:
                references.append(tuple(item))
        return references

    def create_blossom_server_list(self, servers: Sequence[str]) -> DraftEvent:
        return self._finalize(KIND_BLOSSOM_SERVER_LIST, "", [build_server_tag(server) for server in servers])

    def create_profile(self, content: str, tags: Sequence[Sequence[str]] = ()) -> DraftEvent:
        return self._finalize(KIND_METADATA, content, tags)

    def create_seen_notifications_at(self) -> DraftEvent:
        # The timestamp is the payload, so never memoized.
        tags = [build_d_tag(APPLICATION_DATA_NOTIFICATIONS_SEEN_AT)]
        return self._finalize(KIND_APPLICATION, SEEN_NOTIFICATIONS_CONTENT, tags, fresh=True)

    def create_http_auth(self, url: str, method: str, content: str = "") -> DraftEvent:
        return self._finalize(KIND_HTTP_AUTH, content, [("u", url), ("method", method)], fresh=True)

    # -- deletion --------------------------------------------------------------

    def create_deletion_request(self, event: Event, fresh: bool = False) -> DraftEvent:
        """Kind-5 request naming the target by coordinate (replaceable) or id."""
        tags = [build_k_tag(event.kind)]
        if is_replaceable_kind(event.kind):
            tags.append(("a", get_replaceable_coordinate_from_event(event)))
        else:
            tags.append(("e", event.id))
        return self._finalize(KIND_DELETION, DELETION_REQUEST_CONTENT, tags, fresh)
