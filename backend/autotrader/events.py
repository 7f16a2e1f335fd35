"""
AutoTrader - Event Bus

Typed events and an in-process publish/subscribe bus.

Each subscriber owns a bounded FIFO queue. ``publish`` awaits room in every
matching queue, so a slow consumer applies backpressure to its producer
instead of losing events. Delivery is at-most-once: events published before
a subscription exists are never replayed to it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field

from autotrader.models import (
    AlertType,
    Pattern,
    RiskLimitType,
    Token,
    Trade,
    TradingSignal,
    utcnow,
)

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Event Models
# ──────────────────────────────────────────────

class PatternDetected(BaseModel):
    kind: Literal["pattern_detected"] = "pattern_detected"
    pattern: Pattern
    token_symbol: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class TradeExecuted(BaseModel):
    kind: Literal["trade_executed"] = "trade_executed"
    portfolio_id: str
    trade: Trade
    signal: TradingSignal
    token: Token
    realized_pnl: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StatsUpdate(BaseModel):
    """Portfolio summary emitted after every execution monitor tick."""
    kind: Literal["stats_update"] = "stats_update"
    portfolio_id: str
    total_value: float
    total_pnl: float
    daily_pnl: float
    total_trades: int
    active_positions: int
    timestamp: datetime = Field(default_factory=utcnow)


class RiskLimitExceeded(BaseModel):
    kind: Literal["risk_limit_exceeded"] = "risk_limit_exceeded"
    portfolio_id: str
    limit_type: RiskLimitType
    current: float
    limit: float
    timestamp: datetime = Field(default_factory=utcnow)


class StopLossTriggered(BaseModel):
    kind: Literal["stop_loss_triggered"] = "stop_loss_triggered"
    portfolio_id: str
    position_id: str
    token_id: str
    token_symbol: Optional[str] = None
    stop_loss_price: float
    current_price: float
    loss: float
    timestamp: datetime = Field(default_factory=utcnow)


class AlertTriggered(BaseModel):
    kind: Literal["alert_triggered"] = "alert_triggered"
    alert_type: AlertType
    token_id: str
    token_symbol: Optional[str] = None
    confidence: float
    change_pct: float = 0.0
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class ThresholdUpdated(BaseModel):
    kind: Literal["threshold_updated"] = "threshold_updated"
    min_confidence: float
    recent_win_rate: float
    closed_trades: int
    timestamp: datetime = Field(default_factory=utcnow)


Event = Annotated[
    Union[
        PatternDetected,
        TradeExecuted,
        StatsUpdate,
        RiskLimitExceeded,
        StopLossTriggered,
        AlertTriggered,
        ThresholdUpdated,
    ],
    Field(discriminator="kind"),
]

EVENT_TYPES = (
    PatternDetected,
    TradeExecuted,
    StatsUpdate,
    RiskLimitExceeded,
    StopLossTriggered,
    AlertTriggered,
    ThresholdUpdated,
)


# ──────────────────────────────────────────────
# Bus
# ──────────────────────────────────────────────

_CLOSED = object()


class Subscription:
    """One consumer's view of the bus. Iterate it, or call ``get``.

    Closing detaches it from the bus. Events already queued are still
    delivered before iteration ends; a publish still waiting for room when
    the subscription closes gives up and the event is not delivered.
    """

    def __init__(self, bus: "EventBus", event_types: tuple[type, ...], maxsize: int):
        self._bus = bus
        self.event_types = event_types
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closing = asyncio.Event()
        self._marker_queued = False

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize() - int(self._marker_queued)

    def accepts(self, event: BaseModel) -> bool:
        return not self.closed and (not self.event_types or isinstance(event, self.event_types))

    async def _put(self, event: BaseModel) -> bool:
        """Queue ``event``, waiting for room. False when closed before it fit."""
        if self.closed:
            return False
        if not self._queue.full():
            self._queue.put_nowait(event)
            return True

        put = asyncio.ensure_future(self._queue.put(event))
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({put, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not put.done():
                put.cancel()
        if put.done() and not put.cancelled():
            return True
        log.warning("event_bus.dropped_on_close", kind=getattr(event, "kind", type(event).__name__))
        return False

    async def get(self) -> Optional[BaseModel]:
        """Next event, or ``None`` once the subscription is closed and drained."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._marker_queued = False
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self._closing.set()
        self._bus._detach(self)
        # Wakes a consumer parked on an empty queue. A non-empty queue needs no
        # marker: get() returns None once it has drained.
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)
            self._marker_queued = True

    def __aiter__(self):
        return self

    async def __anext__(self) -> BaseModel:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """In-process typed pub/sub with per-subscriber bounded queues.

    Usage:
        bus = EventBus()
        sub = bus.subscribe(PatternDetected)
        await bus.publish(PatternDetected(pattern=p))
        event = await sub.get()
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, *event_types: type, maxsize: Optional[int] = None) -> Subscription:
        """Subscribe to the given event classes, or to everything when none are given."""
        for event_type in event_types:
            if event_type not in EVENT_TYPES:
                raise TypeError(f"{event_type!r} is not an event type")
        subscription = Subscription(self, tuple(event_types), maxsize or self.maxsize)
        self._subscriptions.append(subscription)
        log.debug("event_bus.subscribed", event_types=[t.__name__ for t in event_types])
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, event: BaseModel) -> int:
        """Deliver ``event`` to every matching subscriber. Returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                if await subscription._put(event):
                    delivered += 1
        log.debug("event_bus.published", kind=getattr(event, "kind", type(event).__name__), delivered=delivered)
        return delivered

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
