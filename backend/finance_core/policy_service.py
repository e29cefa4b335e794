"""
FINANCE POLICY SERVICE

Reads tunable finance policies from the ``global_settings`` collection
(key ``finance_policies``) with fallback to defaults.

Policies:
- capital_removal_warning_ratio: warn when an allocation decrease leaves
  less than this share of the previously available capital
- overtime_multiplier: rate multiplier for overtime labour hours
- regular_hours_per_day: hours above this count as overtime
- professional_fee_category: ledger category professional fee payments hit
- warn_on_fee_capital_shortfall: attach a warning (never block) when a fee
  approval exceeds available capital
- reallocation_capital_warning_ratio: warn when a budget reallocation moves
  more than this share of the available capital

Usage:
    policy = PolicyService(db)
    ratio = await policy.get_capital_removal_warning_ratio()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Optional, Dict, Any
from datetime import datetime
import logging

from finance_core.financial_precision import to_decimal
from finance_core.financial_errors import ValidationError
from finance_core.ledger_primitives import ensure_category

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT POLICY VALUES
# =============================================================================

DEFAULT_POLICIES = {
    "capital_removal_warning_ratio": "0.2",
    "overtime_multiplier": "1.5",
    "regular_hours_per_day": "8",
    "professional_fee_category": "subcontractors",
    "warn_on_fee_capital_shortfall": True,
    "reallocation_capital_warning_ratio": "0.8",
}


class PolicyService:
    """
    Cached access to finance policies with fallback to defaults.
    """

    COLLECTION = "global_settings"
    SETTINGS_KEY = "finance_policies"

    def __init__(self, db: AsyncIOMotorDatabase, cache_ttl_seconds: int = 60):
        self.db = db
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: Optional[datetime] = None
        self._cache_ttl_seconds = cache_ttl_seconds

    # =========================================================================
    # INTERNAL: SETTINGS RETRIEVAL
    # =========================================================================

    async def _get_settings(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Retrieve policy settings, DB values overriding defaults.
        Uses caching with TTL to reduce database calls.
        """
        now = datetime.utcnow()

        if (
            not force_refresh
            and self._cache is not None
            and self._cache_timestamp is not None
            and (now - self._cache_timestamp).total_seconds() < self._cache_ttl_seconds
        ):
            return self._cache

        try:
            doc = await self.db[self.COLLECTION].find_one({"key": self.SETTINGS_KEY})

            if doc and "settings" in doc:
                settings = {**DEFAULT_POLICIES, **doc["settings"]}
                logger.debug(f"[POLICY] Loaded settings from DB: {settings}")
            else:
                settings = DEFAULT_POLICIES.copy()
                logger.debug("[POLICY] Using default settings (none in DB)")

            self._cache = settings
            self._cache_timestamp = now

            return settings

        except Exception as e:
            logger.error(f"[POLICY] Error loading settings: {e}")
            return DEFAULT_POLICIES.copy()

    async def _get_policy(self, key: str) -> Any:
        settings = await self._get_settings()
        return settings.get(key, DEFAULT_POLICIES[key])

    # =========================================================================
    # PUBLIC: POLICY VALUES
    # =========================================================================

    async def get_capital_removal_warning_ratio(self) -> Decimal:
        return to_decimal(await self._get_policy("capital_removal_warning_ratio"))

    async def get_overtime_multiplier(self) -> Decimal:
        return to_decimal(await self._get_policy("overtime_multiplier"))

    async def get_regular_hours_per_day(self) -> Decimal:
        return to_decimal(await self._get_policy("regular_hours_per_day"))

    async def get_professional_fee_category(self) -> str:
        return await self._get_policy("professional_fee_category")

    async def should_warn_on_fee_capital_shortfall(self) -> bool:
        return bool(await self._get_policy("warn_on_fee_capital_shortfall"))

    async def get_reallocation_capital_warning_ratio(self) -> Decimal:
        return to_decimal(await self._get_policy("reallocation_capital_warning_ratio"))

    # =========================================================================
    # ADMIN: SETTINGS MANAGEMENT
    # =========================================================================

    async def get_all_policies(self) -> Dict[str, Any]:
        settings = await self._get_settings(force_refresh=True)
        return {
            "policies": settings,
            "defaults": DEFAULT_POLICIES,
            "cache_ttl_seconds": self._cache_ttl_seconds
        }

    async def update_policy(self, key: str, value: Any) -> Dict[str, Any]:
        """
        Update a specific policy setting.

        Numeric policies are stored as strings so they round-trip exactly.
        """
        if key not in DEFAULT_POLICIES:
            raise ValidationError(f"Unknown policy key: {key}", {"key": key})

        if key == "professional_fee_category":
            ensure_category(value)
        elif isinstance(DEFAULT_POLICIES[key], str):
            value = str(to_decimal(value))
        elif isinstance(value, str):
            value = value.strip().lower() in ("true", "1", "yes", "on")
        else:
            value = bool(value)

        await self.db[self.COLLECTION].update_one(
            {"key": self.SETTINGS_KEY},
            {
                "$set": {
                    f"settings.{key}": value,
                    "updated_at": datetime.utcnow()
                },
                "$setOnInsert": {
                    "key": self.SETTINGS_KEY,
                    "created_at": datetime.utcnow()
                }
            },
            upsert=True
        )

        # Invalidate cache
        self._cache = None
        self._cache_timestamp = None

        logger.info(f"[POLICY] Updated {key} = {value}")

        return await self.get_all_policies()
