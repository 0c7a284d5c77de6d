"""
Subscription registry for the message broker.
Maps topic names to the endpoints currently subscribed to them.
"""
import threading
import logging
from typing import Dict, FrozenSet, Hashable, Set, Any


logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """
    Thread-safe topic -> endpoints mapping.

    Every mutation and every snapshot read happens under one lock that guards
    the two indexes below and nothing else. Callers must never send to an
    endpoint while holding it; subscribers_of() hands out an immutable copy so
    fan-out can run after the lock is released.
    """

    def __init__(self):
        self._topic_subscribers: Dict[str, Set[Hashable]] = {}  # topic -> endpoints
        self._endpoint_topics: Dict[Hashable, Set[str]] = {}  # endpoint -> topics

        self._lock = threading.Lock()

    def subscribe(self, endpoint: Hashable, topic: str) -> bool:
        """Subscribe endpoint to topic; returns False if it already was"""
        with self._lock:
            topics = self._endpoint_topics.setdefault(endpoint, set())
            if topic in topics:
                return False

            topics.add(topic)
            self._topic_subscribers.setdefault(topic, set()).add(endpoint)

        logger.debug(f"Subscribed {endpoint} to topic {topic}")
        return True

    def unsubscribe_all(self, endpoint: Hashable) -> Set[str]:
        """Remove every subscription held by endpoint, returning its topics"""
        with self._lock:
            topics = self._endpoint_topics.pop(endpoint, set())

            for topic in topics:
                subscribers = self._topic_subscribers.get(topic)
                if subscribers is None:
                    continue
                subscribers.discard(endpoint)
                if not subscribers:
                    del self._topic_subscribers[topic]

        if topics:
            logger.info(f"Removed {len(topics)} subscription(s) for {endpoint}")
        return topics

    def subscribers_of(self, topic: str) -> FrozenSet[Hashable]:
        """Snapshot of the endpoints subscribed to topic right now"""
        with self._lock:
            return frozenset(self._topic_subscribers.get(topic, ()))

    def topics_of(self, endpoint: Hashable) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._endpoint_topics.get(endpoint, ()))

    def topic_count(self) -> int:
        with self._lock:
            return len(self._topic_subscribers)

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics"""
        with self._lock:
            return {
                'topics': len(self._topic_subscribers),
                'endpoints': len(self._endpoint_topics),
                'subscriptions': sum(len(s) for s in self._topic_subscribers.values()),
                'topic_subscribers': {
                    topic: len(subscribers)
                    for topic, subscribers in self._topic_subscribers.items()
                },
            }
