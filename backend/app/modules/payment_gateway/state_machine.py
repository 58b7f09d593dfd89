"""Order lifecycle rules.

    PENDING -> COMPLETED | FAILED | CANCELLED

Terminal states are absorbing: asking to leave one is a no-op rather than
an error, because duplicate and out-of-order callbacks are expected.
"""

from enum import Enum

from app.modules.payment_gateway.errors import InvalidTransition
from app.modules.payment_gateway.models import OrderStatus


class TransitionDecision(str, Enum):
    APPLY = "apply"
    NOOP = "noop"


def evaluate(current: OrderStatus, target: OrderStatus) -> TransitionDecision:
    """Decide what to do when an order in current is asked to become target.

    Raises:
        InvalidTransition: target is PENDING, which is never a destination
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if target == OrderStatus.PENDING:
        raise InvalidTransition(f"Cannot transition {current.value} -> pending")
    if current.is_terminal:
        return TransitionDecision.NOOP
    return TransitionDecision.APPLY