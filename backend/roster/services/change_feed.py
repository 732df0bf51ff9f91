"""
In-process change feed for roster_status rows.

The store publishes one event per committed status write. Subscribers are
scoped to a roster date, the same way a realtime channel is filtered to
``roster_date=eq.<today>``.
"""
import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import date
from typing import Awaitable, Callable, Dict

from roster.schemas.roster import RosterChangeEvent

logger = logging.getLogger(__name__)

FeedCallback = Callable[[RosterChangeEvent], Awaitable[None]]


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``."""

    def __init__(self, feed: "ChangeFeed", subscription_id: int, roster_date: date):
        self._feed = feed
        self.subscription_id = subscription_id
        self.roster_date = roster_date
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self)


class ChangeFeed:
    """Fan-out of roster change events to subscribers of a roster date."""

    def __init__(self):
        # roster_date -> subscription id -> callback
        self._subscribers: Dict[date, Dict[int, FeedCallback]] = defaultdict(dict)
        self._ids = itertools.count(1)

    async def subscribe(self, roster_date: date, callback: FeedCallback) -> Subscription:
        """
        Register ``callback`` for events on ``roster_date``.

        Returning means the subscription is acknowledged: every event
        published afterwards reaches the callback.
        """
        subscription = Subscription(self, next(self._ids), roster_date)
        self._subscribers[roster_date][subscription.subscription_id] = callback
        logger.info(f"Change feed subscription {subscription.subscription_id} opened for {roster_date}")
        # Yield once so the acknowledgement is asynchronous like a network subscribe
        await asyncio.sleep(0)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        callbacks = self._subscribers.get(subscription.roster_date)
        if callbacks is None:
            return
        callbacks.pop(subscription.subscription_id, None)
        if not callbacks:
            del self._subscribers[subscription.roster_date]
        logger.info(f"Change feed subscription {subscription.subscription_id} closed")

    def subscriber_count(self, roster_date: date) -> int:
        return len(self._subscribers.get(roster_date, {}))

    async def publish(self, event: RosterChangeEvent) -> None:
        """Deliver ``event`` to every subscriber of its roster date."""
        callbacks = list(self._subscribers.get(event.roster_date, {}).items())
        for subscription_id, callback in callbacks:
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Change feed subscriber {subscription_id} failed on {event.student_id}: {e}")
