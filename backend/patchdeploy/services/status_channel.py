"""
Per-deployment publish/subscribe channel for status updates.

Each subscriber gets its own queue. When a deployment reaches a terminal
status the channel publishes the final update and closes every subscription.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from patchdeploy.models.deployment import StatusUpdate

logger = logging.getLogger(__name__)


class Subscription:
    """Async iterator over one deployment's updates. Ends when the channel closes."""

    def __init__(self, broker: "StatusBroker", deployment_id: str):
        self.broker = broker
        self.deployment_id = deployment_id
        self.queue: "asyncio.Queue[Optional[StatusUpdate]]" = asyncio.Queue()
        self.closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StatusUpdate:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        update = await self.queue.get()
        if update is None:
            self.closed = True
            raise StopAsyncIteration
        return update

    async def get(self, timeout: Optional[float] = None) -> Optional[StatusUpdate]:
        """
        Wait for the next update.

        Returns:
            The update, or None once the channel is closed

        Raises:
            asyncio.TimeoutError: if nothing arrives within ``timeout``
        """
        try:
            return await asyncio.wait_for(self.__anext__(), timeout=timeout)
        except StopAsyncIteration:
            return None

    def close(self) -> None:
        """Stop receiving updates."""
        if not self.closed:
            self.broker.unsubscribe(self)
            self.closed = True
            self.queue.put_nowait(None)


class StatusBroker:
    """Fans out status updates to the subscribers of each deployment."""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscriber_count(self, deployment_id: str) -> int:
        return len(self._subscribers.get(deployment_id, []))

    def subscribe(self, deployment_id: str, initial: Optional[StatusUpdate] = None) -> Subscription:
        """
        Register a subscriber.

        Args:
            deployment_id: Deployment to follow
            initial: Current state, delivered before any later update
        """
        subscription = Subscription(self, deployment_id)
        if initial is not None:
            subscription.queue.put_nowait(initial)
        self._subscribers.setdefault(deployment_id, []).append(subscription)
        logger.debug(f"New subscriber for deployment {deployment_id}")
        return subscription

    def closed_subscription(self, deployment_id: str, final: StatusUpdate) -> Subscription:
        """A subscription for a deployment that has already finished."""
        subscription = Subscription(self, deployment_id)
        subscription.queue.put_nowait(final)
        subscription.queue.put_nowait(None)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.deployment_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.deployment_id]

    def publish(self, update: StatusUpdate) -> None:
        for subscription in self._subscribers.get(update.deployment_id, []):
            subscription.queue.put_nowait(update)

    def close(self, deployment_id: str, final: Optional[StatusUpdate] = None) -> None:
        """Deliver the final update and end every subscription for a deployment."""
        subscribers = self._subscribers.pop(deployment_id, [])
        for subscription in subscribers:
            if final is not None:
                subscription.queue.put_nowait(final)
            subscription.queue.put_nowait(None)
        if subscribers:
            logger.info(f"Closed status channel for deployment {deployment_id} ({len(subscribers)} subscribers)")
