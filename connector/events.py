"""Publish/subscribe channel for binding status changes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable
import inspect
import logging

if TYPE_CHECKING:
    from .bindings import Binding, BindingStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BindingEvent:
    tenant_id: str
    line_id: str
    previous: "BindingStatus | None"
    current: "Binding"
    source: str


Subscriber = Callable[[BindingEvent], Any]


class BindingEvents:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    async def publish(self, event: BindingEvent) -> None:
        for callback in list(self._subscribers):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # noqa: BLE001 - subscribers must not break the publisher
                logger.exception("Binding subscriber failed for line %s", event.line_id)


__all__ = ["BindingEvent", "BindingEvents", "Subscriber"]
