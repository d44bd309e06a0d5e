from enum import Enum
from typing import Dict, FrozenSet

from ..errors import IllegalTransition


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    OVERSOLD_ERROR = "OVERSOLD_ERROR"
    FAILED = "FAILED"
    ERROR = "ERROR"


S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.CREATED: frozenset({S.PAID, S.OVERSOLD_ERROR, S.FAILED}),
    # a later attempt on the same provider order got captured
    S.FAILED: frozenset({S.PAID, S.OVERSOLD_ERROR}),
    S.PAID: frozenset({S.ERROR}),
    # ERROR is final for the failed run only: a retried issuance that
    # commits its tickets moves the order back to PAID
    S.ERROR: frozenset({S.PAID}),
    # refund follow-up happens outside this service
    S.OVERSOLD_ERROR: frozenset(),
}

# statuses in which a captured payment still has to be applied
PAYABLE = frozenset({S.CREATED, S.FAILED})

# statuses from which issuance may run
ISSUABLE = frozenset({S.PAID, S.ERROR})


def can_transition(current: OrderStatus | str,
                   target: OrderStatus | str) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def check_transition(current: OrderStatus | str,
                     target: OrderStatus | str) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(OrderStatus(current).value,
                                OrderStatus(target).value)
