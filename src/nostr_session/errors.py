"""Error taxonomy for nostr-session.

Every failure raised by this package derives from NostrSessionError so callers
can catch the whole family at the UI boundary.
"""


class NostrSessionError(Exception):
    """Base exception for nostr-session errors."""


class InvalidCredentialFormatError(NostrSessionError):
    """Credential string is not a recognised nsec, hex key, npub or bunker URL."""


class DecryptionFailedError(NostrSessionError):
    """Password-encrypted secret could not be decrypted."""


class ExtensionUnavailableError(NostrSessionError):
    """No browser-extension signer capability was injected."""


class AuthRejectedError(NostrSessionError):
    """Key custody mechanism denied or cancelled the request."""


class PermissionDeniedError(AuthRejectedError):
    """User declined an extension signer prompt."""


class RemoteSignerRejectedError(AuthRejectedError):
    """Remote signer answered a request with an error."""


class RemoteSignerTimeoutError(NostrSessionError):
    """Remote signer did not answer within the timeout."""


class UnsupportedOperationError(NostrSessionError):
    """Signer cannot perform the requested operation (read-only account)."""


class ForbiddenError(NostrSessionError):
    """Active account is not allowed to act on the target event."""


class AlreadyInProgressError(NostrSessionError):
    """A login is already running for this session."""


class NotLoggedInError(NostrSessionError):
    """Operation requires an active account."""


class InvalidRelayURLError(NostrSessionError):
    """Relay URL does not use the ws:// or wss:// scheme."""


class RelayRejectedError(NostrSessionError):
    """Relay answered an EVENT with OK false."""


class PublishFailedError(NostrSessionError):
    """No relay accepted the event.

    Carries the per-relay outcomes so callers can show every error reason.
    """

    def __init__(self, message: str, outcomes: list | None = None):
        super().__init__(message)
        self.outcomes = list(outcomes or [])


class Nip19DecodeError(NostrSessionError, ValueError):
    """Bech32 identifier is malformed or has an unexpected prefix."""
