"""
Balance Projector
=================

Pure mapping from (current balances, transaction type, amount) to the new
balances. Used only inside the locked confirmation section of the ledger, and
by the consistency monitor to replay history.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Tuple, Union

from models import TransactionType
from utils.ledger_exceptions import InsufficientFunds, InvalidAmount


@dataclass(frozen=True)
class BalanceState:
    balance: Decimal
    frozen_balance: Decimal

    @property
    def available_balance(self) -> Decimal:
        return self.balance - self.frozen_balance

    def is_consistent(self) -> bool:
        return 0 <= self.frozen_balance <= self.balance


# Precondition names
NONE = "none"
AVAILABLE = "available"
FROZEN = "frozen"

# type -> (balance sign, frozen sign, precondition)
BALANCE_DELTAS: Dict[TransactionType, Tuple[int, int, str]] = {
    TransactionType.DEPOSIT: (1, 0, NONE),
    TransactionType.BONUS: (1, 0, NONE),
    TransactionType.REFUND: (1, 0, NONE),
    TransactionType.WITHDRAW: (-1, 0, AVAILABLE),
    TransactionType.FAST_WITHDRAW: (-1, 0, AVAILABLE),
    TransactionType.SUBSCRIPTION_PAYMENT: (-1, 0, AVAILABLE),
    TransactionType.PROMOTION: (-1, 0, AVAILABLE),
    TransactionType.COMMISSION: (-1, 0, AVAILABLE),
    TransactionType.FREEZE: (0, 1, AVAILABLE),
    # Settles escrowed funds out of the payer's account
    TransactionType.RELEASE: (-1, -1, FROZEN),
}


def _coerce_type(transaction_type: Union[str, TransactionType]) -> TransactionType:
    if isinstance(transaction_type, TransactionType):
        return transaction_type
    return TransactionType(transaction_type)


def project_balance(state: BalanceState, transaction_type, amount: Decimal) -> BalanceState:
    """Return the balances after confirming one transaction, or raise InsufficientFunds"""
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")

    tx_type = _coerce_type(transaction_type)
    balance_sign, frozen_sign, precondition = BALANCE_DELTAS[tx_type]

    if precondition == AVAILABLE and state.available_balance < amount:
        raise InsufficientFunds(
            f"{tx_type.value} of {amount} exceeds available balance {state.available_balance}",
            required=amount,
            available=state.available_balance,
        )
    if precondition == FROZEN and state.frozen_balance < amount:
        raise InsufficientFunds(
            f"{tx_type.value} of {amount} exceeds frozen balance {state.frozen_balance}",
            required=amount,
            available=state.frozen_balance,
        )

    projected = BalanceState(
        balance=state.balance + balance_sign * amount,
        frozen_balance=state.frozen_balance + frozen_sign * amount,
    )
    # 0 <= frozen_balance <= balance must hold after every delta
    if not projected.is_consistent():
        raise InsufficientFunds(
            f"{tx_type.value} of {amount} would leave balance {projected.balance} "
            f"with frozen {projected.frozen_balance}",
            required=amount,
            available=state.available_balance,
        )
    return projected


def replay_balances(transactions: Iterable[Tuple[str, Decimal]]) -> BalanceState:
    """Fold confirmed (type, amount) pairs from an empty account"""
    state = BalanceState(Decimal("0"), Decimal("0"))
    for transaction_type, amount in transactions:
        state = project_balance(state, transaction_type, amount)
    return state
