"""Data models for nostr-session.

Events and drafts are frozen: tags are stored as tuples of tuples so a tag
list attached to a draft can never be mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum

Tag = tuple[str, ...]


def freeze_tags(tags) -> tuple[Tag, ...]:
    """Copy a sequence of tag sequences into nested tuples."""
    return tuple(tuple(str(value) for value in tag) for tag in tags)


def thaw_tags(tags) -> list[list[str]]:
    return [list(tag) for tag in tags]


class SignerType(str, Enum):
    """Key custody mechanism recorded with an account."""

    NSEC = "nsec"
    NCRYPTSEC = "ncryptsec"
    NIP07 = "nip-07"
    BUNKER = "bunker"
    NPUB = "npub"
    # Deprecated shape, migrated to NSEC on login.
    BROWSER_NSEC = "browser-nsec"


@dataclass(frozen=True)
class DraftEvent:
    """Unsigned event payload.

    Never carries pubkey, id or sig; the signer adds those.
    """

    kind: int
    content: str
    tags: tuple[Tag, ...]
    created_at: int

    def __post_init__(self):
        object.__setattr__(self, "tags", freeze_tags(self.tags))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind,
            "content": self.content,
            "tags": thaw_tags(self.tags),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Event:
    """Signed protocol event. Immutable once signed."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[Tag, ...]
    content: str
    sig: str

    def __post_init__(self):
        object.__setattr__(self, "tags", freeze_tags(self.tags))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": thaw_tags(self.tags),
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            created_at=int(data["created_at"]),
            kind=int(data["kind"]),
            tags=data.get("tags", []),
            content=data.get("content", ""),
            sig=data.get("sig", ""),
        )


@dataclass(frozen=True)
class AccountPointer:
    """Minimal handle of a known identity, free of secret material."""

    pubkey: str
    signer_type: SignerType

    def __post_init__(self):
        object.__setattr__(self, "signer_type", SignerType(self.signer_type))


@dataclass(frozen=True)
class AccountRecord:
    """Account pointer plus signer-specific secret or handle material."""

    pubkey: str
    signer_type: SignerType
    nsec: str | None = None
    ncryptsec: str | None = None
    bunker: str | None = None
    bunker_client_secret_key: str | None = None
    npub: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "signer_type", SignerType(self.signer_type))

    @property
    def pointer(self) -> AccountPointer:
        return AccountPointer(pubkey=self.pubkey, signer_type=self.signer_type)

    def matches(self, pointer: AccountPointer) -> bool:
        return self.pubkey == pointer.pubkey and self.signer_type == pointer.signer_type

    def to_dict(self) -> dict:
        data = {"pubkey": self.pubkey, "signerType": self.signer_type.value}
        optional = {
            "nsec": self.nsec,
            "ncryptsec": self.ncryptsec,
            "bunker": self.bunker,
            "bunkerClientSecretKey": self.bunker_client_secret_key,
            "npub": self.npub,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AccountRecord":
        return cls(
            pubkey=data["pubkey"],
            signer_type=data["signerType"],
            nsec=data.get("nsec"),
            ncryptsec=data.get("ncryptsec"),
            bunker=data.get("bunker"),
            bunker_client_secret_key=data.get("bunkerClientSecretKey"),
            npub=data.get("npub"),
        )


@dataclass
class PublishOptions:
    """Narrows (specified) or extends (additional) the default relay targeting."""

    specified_relay_urls: list[str] | None = None
    additional_relay_urls: list[str] | None = None


@dataclass(frozen=True)
class RelayOutcome:
    relay_url: str
    success: bool
    error_reason: str | None = None


@dataclass
class PublishResult:
    """Outcome of a publish that at least one relay accepted."""

    event: Event
    outcomes: list[RelayOutcome] = field(default_factory=list)

    @property
    def accepted_relays(self) -> list[str]:
        return [outcome.relay_url for outcome in self.outcomes if outcome.success]

    @property
    def failed_relays(self) -> list[str]:
        return [outcome.relay_url for outcome in self.outcomes if not outcome.success]

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_relays)


@dataclass(frozen=True)
class MailboxRelay:
    url: str
    scope: str = "both"


@dataclass
class RelayList:
    """An author's declared read/write relays (kind 10002)."""

    read: list[str] = field(default_factory=list)
    write: list[str] = field(default_factory=list)
    original_relays: list[MailboxRelay] = field(default_factory=list)


@dataclass(frozen=True)
class Emoji:
    shortcode: str
    url: str


@dataclass
class RelaySet:
    id: str
    name: str
    relay_urls: list[str] = field(default_factory=list)


@dataclass
class PollCreateData:
    options: list[str]
    is_multiple_choice: bool = False
    relays: list[str] = field(default_factory=list)
    ends_at: int | None = None


@dataclass
class Profile:
    pubkey: str
    username: str
    npub: str = ""
    about: str | None = None
    avatar: str | None = None
