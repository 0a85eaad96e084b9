"""
Pub/sub transports for real-time notifications
"""
import json
import threading
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, str, Dict[str, Any]], None]


class EventBus(ABC):
    """Publish(channel, event) seam between the engine and its transport"""

    @abstractmethod
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        """Deliver an event to a quiz-scoped channel"""


class RedisEventBus(EventBus):
    """Redis PUBLISH with a JSON envelope {event, data}"""

    def __init__(self, client, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"event": event, "data": payload}, default=str)
        receivers = self.client.publish(f"{self.prefix}{channel}", message)
        logger.debug(f"Published {event} to {channel} ({receivers} receivers)")


class InMemoryEventBus(EventBus):
    """
    Local fan-out bus

    Keeps every published message in `published` so callers can inspect
    what went out.
    """

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._mutex = threading.Lock()

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        with self._mutex:
            self._subscribers[channel].append(callback)

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        with self._mutex:
            self.published.append({"channel": channel, "event": event, "data": payload})
            callbacks = list(self._subscribers.get(channel, []))
        for callback in callbacks:
            callback(channel, event, payload)

    def events(self, event: str = None, channel: str = None) -> List[Dict[str, Any]]:
        with self._mutex:
            return [
                message for message in self.published
                if (event is None or message["event"] == event)
                and (channel is None or message["channel"] == channel)
            ]
