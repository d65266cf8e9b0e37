"""Relay URL handling and relay list parsing.

Only ws:// and wss:// URLs are relays. URLs are normalized before they are
compared or deduplicated so that "wss://Relay.Example.com/" and
"wss://relay.example.com" are the same target.
"""

import logging
from urllib.parse import urlsplit, urlunsplit

from .constants import KIND_RELAY_LIST
from .errors import InvalidRelayURLError
from .models import Event, MailboxRelay, RelayList
from .utils import deduplicate_preserving_order

logger = logging.getLogger(__name__)

LOCALHOST_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
DEFAULT_PORTS = {"ws": 80, "wss": 443}
RELAY_SCOPES = ("read", "write")


def validate_relay_url(url: str) -> bool:
    """Return True if url uses the ws:// or wss:// scheme (case-sensitive)."""
    return url.startswith("wss://") or url.startswith("ws://")


def normalize_relay_url(url: str) -> str:
    """Canonical form of a relay URL.

    Lower-cases scheme and host, drops default ports, fragments and a bare
    trailing slash.

    Raises:
      - InvalidRelayURLError: not a ws:// or wss:// URL with a host
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise InvalidRelayURLError(f"Invalid relay URL {url!r}: {e}") from None
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parts.hostname:
        raise InvalidRelayURLError(f"Relay URL must be ws:// or wss:// with a host: {url!r}")

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port in (None, DEFAULT_PORTS[scheme]) else f"{host}:{port}"
    path = parts.path.rstrip("/")
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def is_localhost_relay(url: str) -> bool:
    """Return True if the relay URL points at the local machine."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return False
    return host is not None and host.lower() in LOCALHOST_HOSTS


def warn_insecure_relays(relays: list[str]) -> list[str]:
    """Log a warning for each ws:// relay that is not on localhost.

    Returns the insecure relays.
    """
    insecure = [relay for relay in relays if relay.startswith("ws://") and not is_localhost_relay(relay)]
    for relay in insecure:
        logger.warning(f"Relay {relay} uses unencrypted ws://")
    return insecure


def normalize_relay_urls(urls) -> list[str]:
    """Normalize and deduplicate, dropping invalid URLs with a debug log."""
    normalized = []
    for url in urls:
        try:
            normalized.append(normalize_relay_url(url))
        except InvalidRelayURLError as e:
            logger.debug(f"Skipping relay: {e}")
    return deduplicate_preserving_order(normalized)


def get_relay_list_from_event(event: Event | None) -> RelayList:
    """Parse a kind-10002 relay list event into read and write relays.

    An "r" tag without a scope counts for both. Unknown scopes and invalid
    URLs are skipped.
    """
    relay_list = RelayList()
    if event is None or event.kind != KIND_RELAY_LIST:
        return relay_list

    seen = set()
    for tag in event.tags:
        if len(tag) < 2 or tag[0] != "r":
            continue
        scope = tag[2] if len(tag) > 2 and tag[2] else "both"
        if scope != "both" and scope not in RELAY_SCOPES:
            continue
        try:
            url = normalize_relay_url(tag[1])
        except InvalidRelayURLError:
            continue
        if url in seen:
            continue
        seen.add(url)
        relay_list.original_relays.append(MailboxRelay(url=url, scope=scope))
        if scope in ("both", "read"):
            relay_list.read.append(url)
        if scope in ("both", "write"):
            relay_list.write.append(url)
    return relay_list
