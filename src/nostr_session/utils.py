"""Small helpers shared across modules."""

import secrets
import string
import time
from collections.abc import Hashable, Iterable

_RANDOM_ALPHABET = string.ascii_letters + string.digits


def deduplicate_preserving_order(items: Iterable[Hashable]) -> list:
    """Remove duplicates, keeping the first occurrence of each item."""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def random_string(length: int = 9) -> str:
    """Return an opaque alphanumeric identifier."""
    return "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(length))


def unix_now() -> int:
    return int(time.time())
