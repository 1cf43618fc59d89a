"""
Platform Settings Service
Typed access to the platform_settings key/value table with Config defaults
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from database import SessionLocal, managed_session
from models import PlatformSetting, SubscriptionPlan
from utils.decimal_precision import MonetaryDecimal
from utils.ledger_exceptions import InvalidAmount, InvalidState, LedgerError, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformSettings:
    global_commission_percent: Decimal
    commission_enabled: bool
    auto_trial_enabled: bool
    default_trial_subscription_id: Optional[str]
    default_trial_days: int
    fast_withdraw_commission: Decimal
    min_withdraw_amount: Decimal
    max_withdraw_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    raise InvalidState(f"Invalid boolean setting value {value!r}")


def _parse_int(value: Any) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as e:
        raise InvalidAmount(f"Invalid integer setting value {value!r}") from e
    if parsed < 0:
        raise InvalidAmount(f"Setting value must not be negative, got {value!r}")
    return parsed


def _parse_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# key -> (value_type, parser, default)
SETTING_DEFINITIONS: Dict[str, tuple] = {
    "global_commission_percent": ("decimal", lambda v: MonetaryDecimal.to_percent(v, "global_commission_percent"),
                                  Config.DEFAULT_GLOBAL_COMMISSION_PERCENT),
    "commission_enabled": ("bool", _parse_bool, Config.DEFAULT_COMMISSION_ENABLED),
    "auto_trial_enabled": ("bool", _parse_bool, Config.DEFAULT_AUTO_TRIAL_ENABLED),
    "default_trial_subscription_id": ("string", _parse_optional_str, Config.DEFAULT_TRIAL_SUBSCRIPTION_ID),
    "default_trial_days": ("int", _parse_int, Config.DEFAULT_TRIAL_DAYS),
    "fast_withdraw_commission": ("decimal", lambda v: MonetaryDecimal.to_percent(v, "fast_withdraw_commission"),
                                 Config.DEFAULT_FAST_WITHDRAW_COMMISSION),
    "min_withdraw_amount": ("decimal", lambda v: MonetaryDecimal.non_negative_amount(v, "min_withdraw_amount"),
                            Config.DEFAULT_MIN_WITHDRAW_AMOUNT),
    "max_withdraw_amount": ("decimal", lambda v: MonetaryDecimal.positive_amount(v, "max_withdraw_amount"),
                            Config.DEFAULT_MAX_WITHDRAW_AMOUNT),
}


def default_platform_settings() -> PlatformSettings:
    return PlatformSettings(**{key: definition[2] for key, definition in SETTING_DEFINITIONS.items()})


class PlatformSettingsService:
    """Read and update platform settings"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def get_platform_settings(self) -> PlatformSettings:
        """Stored rows override Config defaults; an unparsable row keeps its default"""
        with managed_session(self.session_factory) as session:
            rows = (
                session.query(PlatformSetting)
                .filter(PlatformSetting.key.in_(list(SETTING_DEFINITIONS)))
                .all()
            )
            stored = {row.key: row.value for row in rows}

        values = {}
        for key, (_value_type, parser, default) in SETTING_DEFINITIONS.items():
            if key not in stored or stored[key] is None:
                values[key] = default
                continue
            try:
                values[key] = parser(stored[key])
            except LedgerError as e:
                logger.error(f"❌ PLATFORM_SETTING_INVALID: {key}={stored[key]!r} ({e}); using default {default}")
                values[key] = default
        return PlatformSettings(**values)

    def update_platform_setting(self, key: str, value: Any, updated_by: str = None) -> PlatformSettings:
        """Validate and store one setting; returns the resulting settings"""
        if key not in SETTING_DEFINITIONS:
            raise NotFound(f"Unknown platform setting '{key}'")
        value_type, parser, _default = SETTING_DEFINITIONS[key]
        parsed = parser(value)

        current = self.get_platform_settings()
        if key == "min_withdraw_amount" and parsed > current.max_withdraw_amount:
            raise InvalidAmount("min_withdraw_amount cannot exceed max_withdraw_amount")
        if key == "max_withdraw_amount" and parsed < current.min_withdraw_amount:
            raise InvalidAmount("max_withdraw_amount cannot be below min_withdraw_amount")

        if isinstance(parsed, bool):
            stored_value = "true" if parsed else "false"
        else:
            stored_value = None if parsed is None else str(parsed)

        with managed_session(self.session_factory) as session:
            if key == "default_trial_subscription_id" and parsed is not None:
                if session.get(SubscriptionPlan, parsed) is None:
                    raise NotFound(f"Subscription plan {parsed} does not exist")
            row = session.get(PlatformSetting, key)
            if row is None:
                row = PlatformSetting(key=key, value_type=value_type)
                session.add(row)
            row.value = stored_value
            row.updated_by = updated_by

        logger.info(f"⚙️ PLATFORM_SETTING_UPDATED: {key}={stored_value} by {updated_by or 'system'}")
        return self.get_platform_settings()

    def update_global_commission(self, percent, updated_by: str = None) -> PlatformSettings:
        return self.update_platform_setting("global_commission_percent", percent, updated_by)

    def toggle_commission_system(self, enabled: bool, updated_by: str = None) -> PlatformSettings:
        return self.update_platform_setting("commission_enabled", enabled, updated_by)
