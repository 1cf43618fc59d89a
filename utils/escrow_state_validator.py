"""
Escrow State Transition Validator
================================

Prevents invalid state transitions and ensures escrow lifecycle integrity.
An escrow hold is created frozen and ends exactly once, released or refunded.
"""

import logging
from typing import Dict, Set, Union

from models import EscrowStatus
from utils.ledger_exceptions import InvalidState

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """
    Validates escrow state transitions.

    Rejects transitions like:
    - RELEASED -> REFUNDED (money already paid out)
    - REFUNDED -> RELEASED (money already returned)
    - any terminal state -> FROZEN (resurrection)
    """

    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
        EscrowStatus.FROZEN: {
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
        },
        # Terminal states
        EscrowStatus.RELEASED: set(),
        EscrowStatus.REFUNDED: set(),
    }

    @staticmethod
    def _coerce(status: Union[str, EscrowStatus]) -> EscrowStatus:
        if isinstance(status, EscrowStatus):
            return status
        try:
            return EscrowStatus(status)
        except ValueError as e:
            raise InvalidState(f"Unknown escrow status '{status}'") from e

    @classmethod
    def is_valid_transition(cls, current_status, new_status) -> bool:
        current = cls._coerce(current_status)
        new = cls._coerce(new_status)
        return new in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, status) -> bool:
        return not cls.VALID_TRANSITIONS.get(cls._coerce(status))

    @classmethod
    def validate_transition(cls, current_status, new_status, order_id: str = None) -> None:
        """Raise InvalidState when the transition is not allowed"""
        if not cls.is_valid_transition(current_status, new_status):
            current = cls._coerce(current_status).value
            new = cls._coerce(new_status).value
            logger.warning(
                f"🚫 ESCROW_INVALID_TRANSITION: order {order_id} {current} -> {new}"
            )
            raise InvalidState(
                f"Escrow for order {order_id} cannot move from {current} to {new}"
            )
