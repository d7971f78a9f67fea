"""Typed publish/subscribe bus scoped to an orchestration context."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

_logger = logging.getLogger(__name__)

E = TypeVar("E")


class Subscription(Generic[E]):
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: EventBus[E], handler: Callable[[E], None]) -> None:
        self._bus = bus
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)  # noqa: SLF001


class EventBus(Generic[E]):
    """Synchronous in-order fan-out.

    Events are delivered to subscribers in subscription order, inline in
    :meth:`publish`, so everything a single source publishes is observed
    in the order it happened.  A failing subscriber is logged and skipped;
    it never prevents delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscriptions: list[Subscription[E]] = []

    def subscribe(self, handler: Callable[[E], None]) -> Subscription[E]:
        subscription = Subscription(self, handler)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription[E]) -> None:
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]

    def publish(self, event: E) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.handler(event)
            except Exception:
                _logger.warning("Subscriber on bus %s failed", self.name, exc_info=True)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
