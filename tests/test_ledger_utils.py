"""
Money helpers, escrow state transitions, metadata rules and key generation
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from models import EscrowStatus, TransactionType
from services.idempotency_service import EscrowStep, IdempotencyGuard, IdempotencyKeyGenerator
from utils.datetime_helpers import add_months, ensure_naive_datetime, period_start
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_state_validator import EscrowStateValidator
from utils.ledger_exceptions import InvalidAmount, InvalidMetadata, InvalidPercent, InvalidState
from utils.transaction_metadata import normalize_metadata


# ============================================================================
# MONEY
# ============================================================================

class TestMonetaryDecimal:
    """Decimal-only monetary arithmetic"""

    def test_float_input_goes_through_string(self):
        assert MonetaryDecimal.to_decimal(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [None, True, "NaN", "Infinity", "12,5", ""])
    def test_rejects_non_amounts(self, value):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.to_decimal(value)

    def test_quantize_half_up(self):
        assert MonetaryDecimal.quantize_money("2.345") == Decimal("2.35")
        assert MonetaryDecimal.quantize_money("2.344") == Decimal("2.34")

    def test_positive_amount_after_rounding(self):
        with pytest.raises(InvalidAmount):
            MonetaryDecimal.positive_amount("0.004")

    @pytest.mark.parametrize("value,expected", [("0", Decimal("0.00")), ("100", Decimal("100.00")),
                                                ("12.345", Decimal("12.35"))])
    def test_percent_bounds_inclusive(self, value, expected):
        assert MonetaryDecimal.to_percent(value) == expected

    @pytest.mark.parametrize("value", ["-1", "100.5", "x"])
    def test_percent_out_of_range(self, value):
        with pytest.raises(InvalidPercent):
            MonetaryDecimal.to_percent(value)

    def test_percent_of(self):
        assert MonetaryDecimal.percent_of("300000", "5") == Decimal("15000.00")
        assert MonetaryDecimal.percent_of("0.10", "5") == Decimal("0.01")


# ============================================================================
# ESCROW STATES
# ============================================================================

class TestEscrowStateValidator:
    """frozen -> released | refunded, nothing else"""

    @pytest.mark.parametrize("target", [EscrowStatus.RELEASED, EscrowStatus.REFUNDED])
    def test_frozen_can_settle(self, target):
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FROZEN, target)

    @pytest.mark.parametrize("current,target", [
        ("released", "refunded"),
        ("refunded", "released"),
        ("released", "frozen"),
        ("released", "released"),
        ("frozen", "frozen"),
    ])
    def test_blocked_transitions(self, current, target):
        assert not EscrowStateValidator.is_valid_transition(current, target)
        with pytest.raises(InvalidState):
            EscrowStateValidator.validate_transition(current, target, "order-1")

    def test_terminal_states(self):
        assert EscrowStateValidator.is_terminal("released")
        assert EscrowStateValidator.is_terminal("refunded")
        assert not EscrowStateValidator.is_terminal("frozen")

    def test_unknown_status(self):
        with pytest.raises(InvalidState):
            EscrowStateValidator.is_valid_transition("pending", "released")


# ============================================================================
# METADATA
# ============================================================================

class TestTransactionMetadata:
    """Per-type allow-lists with scalar values"""

    def test_empty_metadata_is_none(self):
        assert normalize_metadata(TransactionType.DEPOSIT, None) is None
        assert normalize_metadata(TransactionType.DEPOSIT, {"note": None}) is None

    def test_values_made_json_safe(self):
        stamp = datetime(2026, 1, 2, 3, 4, 5)
        result = normalize_metadata(TransactionType.COMMISSION, {
            "order_amount": Decimal("100.00"),
            "request_id": "r-1",
            "note": stamp,
        })
        assert result == {"order_amount": "100.00", "request_id": "r-1", "note": stamp.isoformat()}

    def test_key_not_allowed_for_type(self):
        with pytest.raises(InvalidMetadata):
            normalize_metadata(TransactionType.WITHDRAW, {"plan_id": "p-1"})

    def test_nested_values_rejected(self):
        with pytest.raises(InvalidMetadata):
            normalize_metadata(TransactionType.DEPOSIT, {"note": {"nested": True}})

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidMetadata):
            normalize_metadata(TransactionType.DEPOSIT, ["note"])


# ============================================================================
# DATES
# ============================================================================

class TestDatetimeHelpers:

    def test_aware_converted_to_naive_utc(self):
        aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=5)))
        assert ensure_naive_datetime(aware) == datetime(2026, 1, 1, 7, 0)

    def test_add_months_clamps_day(self):
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)

    def test_period_start(self):
        now = datetime(2026, 3, 31)
        assert period_start("week", now) == datetime(2026, 3, 24)
        with pytest.raises(ValueError):
            period_start("decade", now)


# ============================================================================
# IDEMPOTENCY KEYS
# ============================================================================

class TestIdempotencyKeys:

    def test_escrow_step_keys_are_deterministic(self):
        assert IdempotencyKeyGenerator.escrow_step_key("order-1", EscrowStep.PAYOUT) == "escrow:order-1:payout"

    def test_gateway_key_normalizes_provider(self):
        assert IdempotencyKeyGenerator.gateway_key("Payme", "77") == "gateway:payme:77"

    def test_derived_key(self):
        assert IdempotencyKeyGenerator.derived_key("fw-1", "fee") == "fw-1:fee"
        assert IdempotencyKeyGenerator.derived_key(None, "fee") is None

    def test_generate_key_ignores_dict_order(self):
        first = IdempotencyKeyGenerator.generate_key("deposit", "user-1", {"a": 1, "b": 2})
        second = IdempotencyKeyGenerator.generate_key("deposit", "user-1", {"b": 2, "a": 1})
        assert first == second
        assert first.startswith("idempotency:deposit:user-1:")

    def test_guard_without_key_finds_nothing(self, session_factory):
        assert IdempotencyGuard(session_factory).find(None) is None
