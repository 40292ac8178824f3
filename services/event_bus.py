"""
Domain event bus.

Decouples aggregate recomputation (partner ledger) from the transitions that
cause it. One instance per process, injected where needed.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class DomainEvents:
    """Standard deal lifecycle events"""

    DEAL_CREATED = "deal.created"
    DEAL_TERMINATED = "deal.terminated"


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable):
        """Subscribe handler to event."""
        self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Handler {_handler_name(handler)} subscribed to {event_name}")

    def unsubscribe(self, event_name: str, handler: Callable):
        if event_name in self._handlers:
            self._handlers[event_name].remove(handler)

    async def emit(self, event_name: str, data: Dict[str, Any]):
        """Run every subscriber in order; a failing handler is logged and does not stop the rest."""
        handlers = self._handlers.get(event_name)
        if not handlers:
            return

        logger.debug(f"Emitting event {event_name} with data: {data}")

        for handler in list(handlers):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"Error in handler {_handler_name(handler)} for event {event_name}: {e}")

    def clear(self):
        self._handlers.clear()
