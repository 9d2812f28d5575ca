"""
In-process event bus for run lifecycle messages.
Handlers may be plain functions or coroutines. A failing handler is logged
and does not affect the publisher or other handlers.
"""
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RUN_REQUESTED = "run.requested"
RUN_PROGRESS = "run.progress"
RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Callable[[dict], Any]]] = defaultdict(list)
        self.published: List[tuple] = []
        self.keep_history = False

    def subscribe(self, topic: str, handler: Callable[[dict], Any]):
        self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Callable[[dict], Any]):
        if handler in self._handlers.get(topic, []):
            self._handlers[topic].remove(handler)

    async def publish(self, topic: str, payload: dict):
        if self.keep_history:
            self.published.append((topic, payload))

        for handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[EVENTS] Handler for '{topic}' failed: {e}")

    def payloads_for(self, topic: str) -> List[dict]:
        """Payloads published on `topic` (requires keep_history)."""
        return [payload for t, payload in self.published if t == topic]
