"""Deletion requests and local deleted-event tracking."""

import logging

from .draft import DraftComposer
from .errors import ForbiddenError, NotLoggedInError
from .event import get_replaceable_coordinate_from_event, is_protected_event, is_replaceable_kind
from .models import Event, PublishOptions, PublishResult
from .publisher import Publisher
from .services import RelayHintLookup
from .session import AccountSession
from .utils import unix_now

logger = logging.getLogger(__name__)


class DeletedEventTracker:
    """Events the local user asked to delete, for UI filtering.

    Regular events are tracked by id. Replaceable events are tracked by
    coordinate and deletion time, so a newer version published later is
    not hidden.
    """

    def __init__(self):
        self._ids: set[str] = set()
        self._coordinates: dict[str, int] = {}

    def mark_deleted(self, event: Event, deleted_at: int | None = None) -> None:
        if is_replaceable_kind(event.kind):
            coordinate = get_replaceable_coordinate_from_event(event)
            deleted_at = deleted_at if deleted_at is not None else unix_now()
            self._coordinates[coordinate] = max(deleted_at, self._coordinates.get(coordinate, 0))
        else:
            self._ids.add(event.id)

    def is_deleted(self, event: Event) -> bool:
        if is_replaceable_kind(event.kind):
            deleted_at = self._coordinates.get(get_replaceable_coordinate_from_event(event))
            return deleted_at is not None and event.created_at <= deleted_at
        return event.id in self._ids


class DeletionManager:
    def __init__(
        self,
        session: AccountSession,
        publisher: Publisher,
        composer: DraftComposer,
        hints: RelayHintLookup | None = None,
        tracker: DeletedEventTracker | None = None,
    ):
        self.session = session
        self.publisher = publisher
        self.composer = composer
        self.hints = hints
        self.tracker = tracker or DeletedEventTracker()

    async def attempt_delete(self, event: Event) -> PublishResult:
        """Request deletion of one of the active account's own events.

        Targets the relays the event was seen on (only those, for protected
        events) on top of the default policy. On success the event is marked
        deleted locally even if some relays refused.

        Raises:
          - NotLoggedInError: no active account
          - ForbiddenError: the active account did not author the event
          - UnsupportedOperationError: the active account is read-only
          - PublishFailedError: no relay accepted the deletion request
        """
        if self.session.account is None:
            raise NotLoggedInError("You need to login first")
        if self.session.pubkey != event.pubkey:
            raise ForbiddenError("You can only delete your own events")
        self.session.require_signer()

        deletion = await self.session.sign_event(self.composer.create_deletion_request(event, fresh=True))

        seen_on = self.hints.get_seen_event_relay_urls(event.id) if self.hints else []
        options = PublishOptions(
            specified_relay_urls=seen_on if is_protected_event(event) and seen_on else None,
            additional_relay_urls=seen_on,
        )
        relays = await self.publisher.determine_target_relays(event, options)
        result = await self.publisher.publish(relays, deletion)

        self.tracker.mark_deleted(event, deletion.created_at)
        logger.info(f"Deletion request for {event.id} sent to {len(result.accepted_relays)} relays")
        return result
