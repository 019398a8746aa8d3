"""In-process event bus for billing lifecycle hooks.

Handlers are registered on an explicitly constructed :class:`EventBus`
(created in the application lifespan and kept on ``app.state``).  Handler
errors are logged but never reach the caller, so a failing hook cannot turn
an acknowledged notification into a provider retry.

Usage::

    bus = request.app.state.event_bus
    await bus.emit(EventType.SUBSCRIPTION_CHANGED, user_id="u1", data={...})
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Lifecycle events emitted by the billing service."""

    SUBSCRIPTION_CHANGED = "subscription.changed"
    LEDGER_RECORDED = "ledger.recorded"
    EVENT_FAILED = "event.failed"


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    user_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Async fan-out to registered handlers.

    Handlers run concurrently via ``asyncio.gather``; each one is wrapped so
    that a single failure does not affect the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register a handler for one event type, or for all when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered event handler %s for %s", handler.__name__, event_type or "ALL")

    async def emit(
        self,
        event_type: EventType,
        *,
        user_id: str | None = None,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Dispatch an event to every matching handler.

        Parameters
        ----------
        event_type:
            What happened.
        user_id:
            Affected user, when known.
        data:
            Arbitrary JSON-compatible payload.
        correlation_id:
            Request correlation id, if any.
        """
        payload = EventPayload(
            event_type=event_type,
            user_id=user_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (user=%s)",
                    handler.__name__,
                    event_type.value,
                    user_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    def clear(self) -> None:
        self._handlers.clear()

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all event types."""
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def audit_log_handler(payload: EventPayload) -> None:
    """Write every billing event to the audit logger."""
    logging.getLogger("billing_api.audit").info(
        "AUDIT: %s user=%s corr=%s data_keys=%s",
        payload.event_type.value,
        payload.user_id,
        payload.correlation_id[:8],
        sorted(payload.data.keys()),
    )


def build_event_bus() -> EventBus:
    """Create an event bus with the built-in handlers registered."""
    bus = EventBus()
    bus.register_handler(audit_log_handler)
    logger.info("Event bus initialised with %d handler(s)", bus.handler_count)
    return bus
