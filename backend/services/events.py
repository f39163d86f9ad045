"""
EventPublisher — push channel from the core to connected dashboards.

Services run in scheduler / thread-pool threads while the WebSocket
broadcast lives on the asyncio loop.  ``publish`` is safe from any thread:
it hands the coroutine to the bound loop and returns immediately.  Before
a loop is bound (tests, CLI use) events are dropped.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Event types understood by the dashboard
PRICE_UPDATE = "price_update"
MARKET_DATA = "market_data"
SETTINGS_UPDATED = "settings_updated"
BALANCE_UPDATE = "balance_update"
TRADE_UPDATE = "trade_update"


def jsonable(value: Any) -> Any:
    """Decimals become strings, datetimes ISO strings, containers recurse."""
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


class EventPublisher:
    """Thread-safe fan-out of ``{"type", "data"}`` messages."""

    def __init__(self, broadcast_fn: Optional[Callable[[Dict], Awaitable[None]]] = None):
        self._broadcast_fn = broadcast_fn
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.published = 0

    def bind(self, loop: asyncio.AbstractEventLoop,
             broadcast_fn: Optional[Callable[[Dict], Awaitable[None]]] = None):
        """Attach the running event loop (called from the app lifespan)."""
        self._loop = loop
        if broadcast_fn is not None:
            self._broadcast_fn = broadcast_fn

    def publish(self, event_type: str, data: Any) -> None:
        message = {
            "type": event_type,
            "data": jsonable(data),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if not self._loop or not self._broadcast_fn or self._loop.is_closed():
            logger.debug(f"Event {event_type} dropped (no loop bound)")
            return
        try:
            asyncio.run_coroutine_threadsafe(self._broadcast_fn(message), self._loop)
            self.published += 1
        except RuntimeError as e:
            logger.warning(f"Event {event_type} not delivered: {e}")
