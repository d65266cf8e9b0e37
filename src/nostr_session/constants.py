"""Protocol constants: event kinds, tag values and relay defaults."""

# Event kinds
KIND_METADATA = 0
KIND_SHORT_TEXT_NOTE = 1
KIND_CONTACTS = 3
KIND_DELETION = 5
KIND_REPOST = 6
KIND_REACTION = 7
KIND_GENERIC_REPOST = 16
KIND_POLL_RESPONSE = 1018
KIND_POLL = 1068
KIND_COMMENT = 1111
KIND_VOICE_COMMENT = 1244
KIND_MUTE_LIST = 10000
KIND_RELAY_LIST = 10002
KIND_BOOKMARK_LIST = 10003
KIND_FAVORITE_RELAYS = 10012
KIND_BLOSSOM_SERVER_LIST = 10063
KIND_NOSTR_CONNECT = 24133
KIND_HTTP_AUTH = 27235
KIND_RELAY_SET = 30002
KIND_APPLICATION = 30078

# Kinds that are published to the default relays as well, so that other
# clients can discover them.
DISCOVERY_KINDS = frozenset(
    {KIND_RELAY_LIST, KIND_CONTACTS, KIND_FAVORITE_RELAYS, KIND_BLOSSOM_SERVER_LIST}
)

POLL_TYPE_SINGLE_CHOICE = "singlechoice"
POLL_TYPE_MULTIPLE_CHOICE = "multiplechoice"

APPLICATION_DATA_NOTIFICATIONS_SEEN_AT = "seen_notifications_at"

DEFAULT_CLIENT_TAG = "nostr-session"

DEFAULT_RELAY_URLS = (
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
    "wss://nostr.mom",
)

MAX_PUBLISH_RELAYS = 12
MAX_WRITE_RELAYS = 10
POLL_DEFAULT_RELAY_COUNT = 4
DRAFT_CACHE_SIZE = 256

DELETION_REQUEST_CONTENT = "Request for deletion of the event."
SEEN_NOTIFICATIONS_CONTENT = "Records read time to sync notification status across devices."
