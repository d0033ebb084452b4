import asyncio
from collections import defaultdict
from typing import Any, Dict, Optional, Set, Tuple

import structlog

logger = structlog.get_logger(__name__)

ChannelKey = Tuple[str, Optional[str]]

_CLOSED = object()


def channel_key(agent_id: str, message_id: Optional[str] = None) -> ChannelKey:
    """Instance channel when message_id is None, message channel otherwise"""
    return (agent_id, message_id)


class Subscription:
    """Async iterator over the values published to one channel"""

    def __init__(self, broadcaster: "UpdateBroadcaster", key: ChannelKey):
        self.key = key
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _push(self, value: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(value)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        self._broadcaster._discard(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        value = await self._queue.get()
        if value is _CLOSED:
            raise StopAsyncIteration
        return value

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class UpdateBroadcaster:
    """Fan-out of instance and message updates to subscribers

    Every channel remembers its latest value; a new subscriber gets it first.
    """

    def __init__(self):
        self._subscriptions: Dict[ChannelKey, Set[Subscription]] = defaultdict(set)
        self._latest: Dict[ChannelKey, Any] = {}

    def subscribe(self, key: ChannelKey) -> Subscription:
        subscription = Subscription(self, key)
        self._subscriptions[key].add(subscription)
        if key in self._latest:
            subscription._push(self._latest[key])
        logger.debug("Subscribed", agent_id=key[0], message_id=key[1])
        return subscription

    def publish(self, key: ChannelKey, value: Any) -> None:
        self._latest[key] = value
        for subscription in list(self._subscriptions.get(key, ())):
            subscription._push(value)

    def has_latest(self, key: ChannelKey) -> bool:
        return key in self._latest

    def subscriber_count(self, key: ChannelKey) -> int:
        return len(self._subscriptions.get(key, ()))

    def close_agent(self, agent_id: str) -> None:
        """Close every channel of an instance and forget its cached values"""

        keys = [key for key in set(self._subscriptions) | set(self._latest) if key[0] == agent_id]
        for key in keys:
            for subscription in list(self._subscriptions.get(key, ())):
                subscription.close()
            self._subscriptions.pop(key, None)
            self._latest.pop(key, None)
        if keys:
            logger.debug("Closed agent channels", agent_id=agent_id, channels=len(keys))

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.key)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.key, None)
