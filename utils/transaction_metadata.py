"""
Transaction metadata validation.

Metadata is an open map in storage but every transaction type accepts only a
fixed set of keys with scalar values, so ledger rows stay queryable.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from models import TransactionType
from utils.ledger_exceptions import InvalidMetadata

logger = logging.getLogger(__name__)

_COMMON_KEYS = frozenset({"source", "note", "admin_id", "request_id"})
_ESCROW_KEYS = frozenset({"escrow_step", "escrow_request_key", "client_id", "carrier_id"})

ALLOWED_METADATA_KEYS: Dict[TransactionType, FrozenSet[str]] = {
    TransactionType.DEPOSIT: _COMMON_KEYS | _ESCROW_KEYS | {"provider", "external_id", "gross_amount"},
    TransactionType.WITHDRAW: _COMMON_KEYS | {"destination", "provider"},
    TransactionType.FAST_WITHDRAW: _COMMON_KEYS | {"destination", "provider", "fee_transaction_key"},
    TransactionType.FREEZE: _COMMON_KEYS | _ESCROW_KEYS,
    TransactionType.RELEASE: _COMMON_KEYS | _ESCROW_KEYS | {"reason"},
    TransactionType.REFUND: _COMMON_KEYS | _ESCROW_KEYS | {"reason"},
    TransactionType.COMMISSION: _COMMON_KEYS | _ESCROW_KEYS | {
        "commission_percent", "commission_source", "applied_rule", "order_amount",
        "withdraw_transaction_key",
    },
    TransactionType.SUBSCRIPTION_PAYMENT: _COMMON_KEYS | {"plan_id", "plan_name", "months"},
    TransactionType.PROMOTION: _COMMON_KEYS | {"promotion_id", "placement", "days"},
    TransactionType.BONUS: _COMMON_KEYS | {"reason", "campaign"},
}

_SCALAR_TYPES = (str, int, float, bool, Decimal, datetime)


def normalize_metadata(transaction_type: TransactionType,
                       metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Validate keys against the per-type allow-list and make values JSON safe"""
    if not metadata:
        return None
    if not isinstance(metadata, dict):
        raise InvalidMetadata(f"Metadata must be a mapping, got {type(metadata).__name__}")

    allowed = ALLOWED_METADATA_KEYS[transaction_type]
    unknown = sorted(set(metadata) - allowed)
    if unknown:
        logger.warning(f"⚠️ METADATA_REJECTED: {transaction_type.value} unknown keys {unknown}")
        raise InvalidMetadata(
            f"Keys {unknown} are not allowed for {transaction_type.value} transactions"
        )

    normalized: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if not isinstance(value, _SCALAR_TYPES):
            raise InvalidMetadata(f"Metadata value for '{key}' must be a scalar")
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        normalized[key] = value
    return normalized or None
