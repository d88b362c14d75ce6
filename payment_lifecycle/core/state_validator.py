"""
Order state transition rules.

The table below is the only place that decides whether an action is legal
for an order's current status.
"""
from typing import Dict, FrozenSet

from payment_lifecycle.database.models import PaymentAction, PaymentStatus
from payment_lifecycle.exceptions import InvalidTransitionError

# Action -> statuses it may be applied from
ALLOWED_TRANSITIONS: Dict[PaymentAction, FrozenSet[PaymentStatus]] = {
    PaymentAction.PURCHASE: frozenset({PaymentStatus.CREATED}),
    PaymentAction.AUTHORIZE: frozenset({PaymentStatus.CREATED}),
    PaymentAction.CAPTURE: frozenset({PaymentStatus.AUTHORIZED}),
    PaymentAction.CANCEL: frozenset({PaymentStatus.AUTHORIZED}),
    PaymentAction.REFUND: frozenset(
        {PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
}


class StateValidator:
    """Pure check of (current status, action) against the transition table."""

    @staticmethod
    def is_allowed(current_status: PaymentStatus, action: PaymentAction) -> bool:
        return current_status in ALLOWED_TRANSITIONS.get(action, frozenset())

    @classmethod
    def validate(cls, current_status: PaymentStatus, action: PaymentAction) -> None:
        """
        Ensure the action is legal from the current status.

        Raises:
            InvalidTransitionError: If the pair is not in the transition table
        """
        if not cls.is_allowed(current_status, action):
            raise InvalidTransitionError(current_status, action)

    @staticmethod
    def allowed_actions(current_status: PaymentStatus) -> FrozenSet[PaymentAction]:
        """Actions that may be applied to an order in this status."""
        return frozenset(
            action
            for action, statuses in ALLOWED_TRANSITIONS.items()
            if current_status in statuses
        )
