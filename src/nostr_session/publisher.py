"""Relay targeting and concurrent publish fan-out.

A publish settles every relay before returning, so callers always get the
complete per-relay outcome list. Only a publish that no relay accepted is an
error; partial failure is reported in the result and logged.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from .constants import (
    DEFAULT_RELAY_URLS,
    DISCOVERY_KINDS,
    KIND_APPLICATION,
    MAX_PUBLISH_RELAYS,
    MAX_WRITE_RELAYS,
)
from .errors import AuthRejectedError, PublishFailedError
from .models import DraftEvent, Event, Profile, PublishOptions, PublishResult, RelayList, RelayOutcome
from .relay import normalize_relay_urls, warn_insecure_relays
from .services import EventFetcher, RelayHintLookup, RelayTransport

if TYPE_CHECKING:
    from .session import AccountSession

logger = logging.getLogger(__name__)

ConfirmForeignAuthor = Callable[[Event, Profile | None], Awaitable[bool] | bool]


async def broadcast(transport: RelayTransport, relays: list[str], event: Event) -> list[RelayOutcome]:
    """Send event to every relay concurrently and wait for all of them to settle."""
    results = await asyncio.gather(
        *(transport.send_event(relay, event) for relay in relays),
        return_exceptions=True,
    )
    outcomes = []
    for relay, result in zip(relays, results):
        if isinstance(result, BaseException):
            reason = str(result) or type(result).__name__
            outcomes.append(RelayOutcome(relay_url=relay, success=False, error_reason=reason))
        else:
            outcomes.append(RelayOutcome(relay_url=relay, success=True))
    return outcomes


class Publisher:
    """Chooses target relays and publishes signed events to them."""

    def __init__(
        self,
        session: "AccountSession",
        transport: RelayTransport,
        hints: RelayHintLookup | None = None,
        fetcher: EventFetcher | None = None,
        default_relays: list[str] | tuple[str, ...] = DEFAULT_RELAY_URLS,
        max_relays: int = MAX_PUBLISH_RELAYS,
        max_write_relays: int = MAX_WRITE_RELAYS,
        confirm_foreign_author: ConfirmForeignAuthor | None = None,
    ):
        self.session = session
        self.transport = transport
        self.hints = hints
        self.fetcher = fetcher
        self.default_relays = list(default_relays)
        self.max_relays = max_relays
        self.max_write_relays = max_write_relays
        self.confirm_foreign_author = confirm_foreign_author

    async def _account_relay_list(self) -> RelayList:
        if self.session.relay_list is not None:
            return self.session.relay_list
        pubkey = self.session.pubkey
        if pubkey is None or self.fetcher is None:
            return RelayList()
        return await self.fetcher.fetch_relay_list(pubkey)

    async def determine_target_relays(self, event: Event, options: PublishOptions | None = None) -> list[str]:
        """Relay set for publishing event.

        CONTRACT:
          Inputs:
            - event: the event whose seen-on relays seed the target set
            - options: optional specified (override) and additional relays

          Outputs:
            - relays: normalized, deduplicated relay URLs

          Invariants:
            - Specified relays, when given, are the whole result and are not capped
            - Otherwise: seen-on, then the account's write relays, then
              additional relays, then the default relays for discovery kinds
            - Falls back to the default relays when nothing else is known
            - Never more than max_relays entries unless specified
        """
        options = options or PublishOptions()
        if options.specified_relay_urls:
            return normalize_relay_urls(options.specified_relay_urls)

        candidates = []
        if self.hints is not None:
            candidates.extend(self.hints.get_seen_event_relay_urls(event.id))
        relay_list = await self._account_relay_list()
        candidates.extend(relay_list.write[: self.max_write_relays])
        candidates.extend(options.additional_relay_urls or [])
        if event.kind in DISCOVERY_KINDS:
            candidates.extend(self.default_relays)

        relays = normalize_relay_urls(candidates)
        if not relays:
            relays = normalize_relay_urls(self.default_relays)
        return relays[: self.max_relays]

    async def publish(self, relays: list[str], event: Event) -> PublishResult:
        """Publish to every relay; raise PublishFailedError if none accepts.

        Raises:
          - PublishFailedError: zero relays accepted, carrying every outcome
        """
        warn_insecure_relays(relays)
        outcomes = await broadcast(self.transport, relays, event)
        result = PublishResult(event=event, outcomes=outcomes)
        if not result.accepted_relays:
            reasons = "; ".join(f"{o.relay_url}: {o.error_reason}" for o in outcomes) or "no relays"
            raise PublishFailedError(f"Failed to publish event {event.id}: {reasons}", outcomes)
        if result.partial_failure:
            logger.warning(
                f"Event {event.id} accepted by {len(result.accepted_relays)}/{len(outcomes)} relays; "
                f"failed: {', '.join(result.failed_relays)}"
            )
        else:
            logger.info(f"Event {event.id} accepted by {len(outcomes)} relays")
        return result

    async def publish_draft(self, draft: DraftEvent, options: PublishOptions | None = None) -> PublishResult:
        """Sign draft with the active signer and publish it.

        Raises:
          - NotLoggedInError, UnsupportedOperationError: no signing-capable account
          - AuthRejectedError: the signer declined, or publishing as another
            author was not confirmed
          - PublishFailedError: no relay accepted the event
        """
        self.session.require_signer()
        event = await self.session.sign_event(draft)
        if event.kind != KIND_APPLICATION and event.pubkey != self.session.pubkey:
            await self._confirm_foreign_author(event)
        relays = await self.determine_target_relays(event, options)
        return await self.publish(relays, event)

    async def _confirm_foreign_author(self, event: Event) -> None:
        if self.confirm_foreign_author is None:
            raise AuthRejectedError("Signed event author differs from the active account")
        author = await self.fetcher.fetch_profile(event.pubkey) if self.fetcher else None
        confirmed = self.confirm_foreign_author(event, author)
        if inspect.isawaitable(confirmed):
            confirmed = await confirmed
        if not confirmed:
            raise AuthRejectedError("Cancelled")
