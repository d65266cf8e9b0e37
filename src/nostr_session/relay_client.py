"""Default relay transport over websockets.

One short-lived connection per published event (EVENT, then wait for OK) and
one long-lived connection per relay for each subscription (REQ until the
subscription is closed). subscribe() returns once every relay has acknowledged
the REQ with EOSE, so events published afterwards are delivered live.
"""

import asyncio
import inspect
import json
import logging

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .errors import RelayRejectedError
from .event import verify_event_id
from .models import Event
from .services import EventCallback
from .utils import random_string

logger = logging.getLogger(__name__)

DEFAULT_RELAY_TIMEOUT = 10.0


def parse_relay_message(raw: str | bytes) -> list | None:
    """Decode one relay frame, or None when it is not a JSON array."""
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(message, list) or not message or not isinstance(message[0], str):
        return None
    return message


class RelaySubscription:
    """Handle for the per-relay reader tasks of one REQ."""

    def __init__(self, subscription_id: str, tasks: list[asyncio.Task]):
        self.subscription_id = subscription_id
        self._tasks = tasks

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []


class WebSocketRelayTransport:
    """RelayTransport speaking NIP-01 over websockets."""

    def __init__(self, timeout: float = DEFAULT_RELAY_TIMEOUT):
        self.timeout = timeout

    async def send_event(self, relay_url: str, event: Event) -> None:
        """Publish event and wait for the relay's OK.

        Raises:
          - RelayRejectedError: OK false, no OK within the timeout, or the
            connection closed first
        """
        async with connect(relay_url, open_timeout=self.timeout, close_timeout=self.timeout) as websocket:
            frame = json.dumps(["EVENT", event.to_dict()], ensure_ascii=False)
            logger.debug(f"{relay_url} <= {frame}")
            await websocket.send(frame)
            try:
                async with asyncio.timeout(self.timeout):
                    while True:
                        raw = await websocket.recv()
                        logger.debug(f"{relay_url} => {raw}")
                        message = parse_relay_message(raw)
                        if message is None:
                            continue
                        if message[0] == "OK" and len(message) >= 3 and message[1] == event.id:
                            if message[2] is True:
                                return
                            reason = message[3] if len(message) > 3 else ""
                            raise RelayRejectedError(reason or "rejected")
                        if message[0] == "NOTICE" and len(message) > 1:
                            logger.info(f"{relay_url} notice: {message[1]}")
            except TimeoutError:
                raise RelayRejectedError(f"no OK from {relay_url} within {self.timeout}s") from None
            except ConnectionClosed as e:
                raise RelayRejectedError(f"connection to {relay_url} closed: {e}") from None

    async def subscribe(self, relay_urls: list[str], filters: dict, on_event: EventCallback) -> RelaySubscription:
        """Open the REQ on every relay and return once each has answered EOSE.

        Relays that fail to connect count as settled. Waiting is bounded by
        the transport timeout so a relay that never sends EOSE cannot stall
        the caller.
        """
        subscription_id = random_string(12)
        readiness = [asyncio.Event() for _ in relay_urls]
        tasks = [
            asyncio.create_task(self._read_subscription(url, subscription_id, filters, on_event, ready))
            for url, ready in zip(relay_urls, readiness)
        ]
        try:
            async with asyncio.timeout(self.timeout):
                for ready in readiness:
                    await ready.wait()
        except TimeoutError:
            pending = [url for url, ready in zip(relay_urls, readiness) if not ready.is_set()]
            logger.warning(f"No EOSE for subscription {subscription_id} from {pending} within {self.timeout}s")
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        return RelaySubscription(subscription_id, tasks)

    async def _read_subscription(
        self,
        relay_url: str,
        subscription_id: str,
        filters: dict,
        on_event: EventCallback,
        ready: asyncio.Event,
    ):
        try:
            async with connect(relay_url, open_timeout=self.timeout, close_timeout=self.timeout) as websocket:
                await websocket.send(json.dumps(["REQ", subscription_id, filters]))
                try:
                    async for raw in websocket:
                        message = parse_relay_message(raw)
                        if message is None:
                            continue
                        if message[0] == "EVENT" and len(message) >= 3 and message[1] == subscription_id:
                            await self._dispatch(relay_url, message[2], on_event)
                        elif message[0] == "EOSE" and message[1:2] == [subscription_id]:
                            ready.set()
                        elif message[0] == "CLOSED" and message[1:2] == [subscription_id]:
                            logger.warning(f"{relay_url} closed subscription: {message[2:3]}")
                            return
                finally:
                    if websocket.state.name == "OPEN":
                        await websocket.send(json.dumps(["CLOSE", subscription_id]))
        except asyncio.CancelledError:
            raise
        except (OSError, ConnectionClosed, TimeoutError) as e:
            logger.warning(f"Subscription on {relay_url} ended: {e}")
        finally:
            ready.set()

    async def _dispatch(self, relay_url: str, data, on_event: EventCallback) -> None:
        try:
            event = Event.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"{relay_url} sent a malformed event: {e}")
            return
        if not verify_event_id(event):
            logger.debug(f"{relay_url} sent event {event.id} with a mismatched id")
            return
        result = on_event(event)
        if inspect.isawaitable(result):
            await result
