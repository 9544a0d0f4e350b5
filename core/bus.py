# core/bus.py
import asyncio
import logging
from collections import defaultdict
from typing import Callable, Any, Awaitable

log = logging.getLogger(__name__)

# Topics used by the uplink
TOPIC_CONNECTION = "uplink/connection"
TOPIC_SEND = "uplink/send"

class MessageBus:
    """
    Local Async Pub/Sub Bus.
    Decouples the connection manager and the uplink loop from whoever
    observes them (event log, CLI, tests).
    """
    def __init__(self):
        self.subscribers = defaultdict(list)

    def subscribe(self, topic: str, callback: Callable[[Any], Awaitable[None]]):
        """Register an async callback for a topic."""
        self.subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Callable[[Any], Awaitable[None]]):
        try:
            self.subscribers[topic].remove(callback)
        except ValueError:
            pass

    async def publish(self, topic: str, data: Any):
        """Publish data to a topic. Subscriber errors are logged, never raised."""
        if topic in self.subscribers:
            # Run all callbacks concurrently
            results = await asyncio.gather(
                *[cb(data) for cb in self.subscribers[topic]],
                return_exceptions=True
            )
            for result in results:
                if isinstance(result, Exception):
                    log.error(f"[Bus] Error in subscriber for {topic}: {result}")
