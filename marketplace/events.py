"""
events.py - Marketplace notifications

One notification per successful mutating operation:
1. Listed, Sold, PriceChanged, Canceled: immutable event records
2. EventBus: ordered history plus plain-function subscribers
3. HandlerFailure: a subscriber error, kept instead of failing the operation

Events are just data, handlers are just functions. The history list IS the
audit trail of item operations, mirroring the funds book's transaction log.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Any, Union


# ============================================================================
# EVENT DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Listed:
    """An item entered LISTED state with custody moved to the market."""
    item_id: int
    collection_ref: str
    token_ref: str
    seller: str
    price: Decimal
    timestamp: datetime

    action = "listed"


@dataclass(frozen=True, slots=True)
class Sold:
    item_id: int
    buyer: str
    amount: Decimal
    timestamp: datetime

    action = "sold"


@dataclass(frozen=True, slots=True)
class PriceChanged:
    item_id: int
    new_price: Decimal
    timestamp: datetime

    action = "price_changed"


@dataclass(frozen=True, slots=True)
class Canceled:
    item_id: int
    timestamp: datetime

    action = "canceled"


MarketEvent = Union[Listed, Sold, PriceChanged, Canceled]

EventHandler = Callable[[MarketEvent], None]


def event_to_dict(event: MarketEvent) -> Dict[str, Any]:
    """Flatten an event to a plain dict with its action name."""
    return {"action": event.action, **asdict(event)}


# ============================================================================
# EVENT BUS
# ============================================================================

@dataclass(frozen=True, slots=True)
class HandlerFailure:
    """A subscriber that raised while being notified of event."""
    event: MarketEvent
    handler: str
    error: Exception


class EventBus:
    """
    Ordered record of emitted notifications with synchronous fan-out.

    Design:
    - publish() appends to history first, then calls subscribers in
      registration order
    - events describe operations that already committed, so a handler that
      raises cannot fail the publisher; the error is recorded in failures
      (and printed when verbose) and the remaining handlers still run
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self._history: List[MarketEvent] = []
        self._handlers: List[EventHandler] = []
        self._failures: List[HandlerFailure] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Register a handler called with every published event."""
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers.remove(handler)

    def publish(self, event: MarketEvent) -> List[HandlerFailure]:
        """
        Record event and notify every subscriber.

        Returns:
            The handler failures raised while delivering this event
        """
        self._history.append(event)
        failures = []
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                name = getattr(handler, "__qualname__", repr(handler))
                failures.append(HandlerFailure(event, name, e))
                if self.verbose:
                    print(f"⚠️  HANDLER FAILED: {name} on {event.action} "
                          f"item={event.item_id}: {type(e).__name__}: {e}")
        self._failures.extend(failures)
        return failures

    @property
    def history(self) -> List[MarketEvent]:
        return list(self._history)

    @property
    def failures(self) -> List[HandlerFailure]:
        """Every handler error seen so far, in delivery order."""
        return list(self._failures)

    def history_for(self, item_id: int) -> List[MarketEvent]:
        """All events for one item, in emission order."""
        return [e for e in self._history if e.item_id == item_id]
