"""
Order change notifications and the in-process runner that hosts their
handlers.

A handler that raises is re-invoked with the same change after a delay,
the way a managed trigger runtime retries a failed function. Handlers
must be idempotent; the runner only provides the retries.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from . import config
from .model.orders import OrderRecord
from .model.states import OrderStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    status: OrderStatus
    tickets_generated: bool

    @classmethod
    def of(cls, order: OrderRecord) -> "OrderSnapshot":
        return cls(status=order.status,
                   tickets_generated=order.tickets_generated)


@dataclass(frozen=True)
class OrderChange:
    order_id: str
    before: Optional[OrderSnapshot]
    after: OrderSnapshot


Handler = Callable[[OrderChange], Awaitable[object]]


class TriggerRunner:
    def __init__(
        self,
        attempts: int = config.TRIGGER_ATTEMPTS,
        backoff: float = config.TRIGGER_BACKOFF_SECONDS,
        budget: float = config.ISSUANCE_TIMEOUT,
    ) -> None:
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.budget = budget

    async def fire(self, name: str, handler: Handler,
                   change: OrderChange) -> bool:
        """
        Returns True once the handler completed, False if it kept failing.
        """
        log = logger.bind(trigger=name, order_id=change.order_id)
        for attempt in range(1, self.attempts + 1):
            try:
                await asyncio.wait_for(handler(change), timeout=self.budget)
                return True
            except asyncio.TimeoutError:
                log.error("trigger_timeout", attempt=attempt,
                          budget=self.budget)
            except Exception as exc:
                log.error("trigger_failed", attempt=attempt,
                          error=str(exc), exc_info=True)
            if attempt < self.attempts:
                await asyncio.sleep(self.backoff * (2 ** (attempt - 1)))
        log.error("trigger_gave_up", attempts=self.attempts)
        return False
