"""Runtime settings loaded from the environment.

Values come from NOSTR_SESSION_* variables, optionally seeded from a .env
file via python-dotenv. Components receive the values they need as
constructor arguments; only wiring code calls load_settings.
"""

import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from .constants import DEFAULT_CLIENT_TAG, DEFAULT_RELAY_URLS, MAX_PUBLISH_RELAYS, MAX_WRITE_RELAYS
from .relay import normalize_relay_url

ENV_PREFIX = "NOSTR_SESSION_"
DEFAULT_CREDENTIALS_PATH = "~/.config/nostr-session/accounts.json"


@dataclass(frozen=True)
class Settings:
    default_relays: tuple[str, ...] = field(default=DEFAULT_RELAY_URLS)
    max_publish_relays: int = MAX_PUBLISH_RELAYS
    max_write_relays: int = MAX_WRITE_RELAYS
    signer_timeout: float = 30.0
    publish_timeout: float = 10.0
    client_tag: str = DEFAULT_CLIENT_TAG
    credentials_path: str = DEFAULT_CREDENTIALS_PATH


def _get(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _positive(name: str, convert, default):
    raw = _get(name)
    if raw is None:
        return default
    try:
        value = convert(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value


def load_settings(env_file: str | None = None) -> Settings:
    """Read settings from the environment, after loading env_file (or .env).

    Variables already set in the environment win over the file.

    Raises:
      - ValueError: a numeric value is malformed or not positive
      - InvalidRelayURLError: a default relay is not a ws:// or wss:// URL
    """
    load_dotenv(env_file or find_dotenv(usecwd=True))

    relays = _get("DEFAULT_RELAYS")
    default_relays = (
        tuple(normalize_relay_url(url) for url in relays.split(",") if url.strip()) if relays else DEFAULT_RELAY_URLS
    )
    return Settings(
        default_relays=default_relays,
        max_publish_relays=_positive("MAX_PUBLISH_RELAYS", int, MAX_PUBLISH_RELAYS),
        max_write_relays=_positive("MAX_WRITE_RELAYS", int, MAX_WRITE_RELAYS),
        signer_timeout=_positive("SIGNER_TIMEOUT", float, 30.0),
        publish_timeout=_positive("PUBLISH_TIMEOUT", float, 10.0),
        client_tag=_get("CLIENT_TAG") or DEFAULT_CLIENT_TAG,
        credentials_path=_get("CREDENTIALS_PATH") or DEFAULT_CREDENTIALS_PATH,
    )
