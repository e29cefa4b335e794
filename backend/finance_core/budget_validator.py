"""
BUDGET VALIDATOR

Validates proposed spend against phase or project budget ceilings, overall
or per category. Same optional-constraint policy as capital: an unset
budget never blocks.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any
import logging

from finance_core.financial_precision import to_decimal, round_financial, validate_positive, to_float
from finance_core.financial_errors import InsufficientFunds, EntityNotFoundError, ValidationError
from finance_core.ledger_primitives import Ceiling, bucket_total, calculate_available
from finance_core.mongo_utils import as_object_id

logger = logging.getLogger(__name__)

# scope -> (collection, budget field)
BUDGET_SOURCES = {
    "phase": ("phases", "budget_allocation"),
    "project": ("projects", "budget"),
}


class BudgetValidator:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _load(self, scope: str, scope_id: str, session=None) -> Dict[str, Any]:
        if scope not in BUDGET_SOURCES:
            raise ValidationError(f"Unknown budget scope: {scope}", {"scope": scope})
        collection, _ = BUDGET_SOURCES[scope]
        doc = await self.db[collection].find_one(
            {"_id": as_object_id(scope_id, f"{scope}_id")},
            session=session
        )
        if not doc:
            raise EntityNotFoundError(scope, scope_id)
        return doc

    async def validate_availability(
        self,
        scope: str,
        scope_id: str,
        proposed_amount,
        category: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        required = round_financial(validate_positive(proposed_amount, "proposed_amount"))
        doc = await self._load(scope, scope_id, session=session)
        _, budget_field = BUDGET_SOURCES[scope]

        ceiling = Ceiling.from_budget(doc.get(budget_field), category)
        label = f"{scope} {category} budget" if category else f"{scope} budget"

        if not ceiling.is_set:
            return {
                "is_valid": True,
                "available": None,
                "required": required,
                "constraint_not_set": True,
                "message": f"No {label} set. Spending is tracked but not limited."
            }

        actual_bucket = doc.get("actual_spending") or {}
        committed_bucket = doc.get("committed_cost") or {}
        if category:
            actual = to_decimal(actual_bucket.get(category))
            committed = to_decimal(committed_bucket.get(category))
        else:
            actual = bucket_total(actual_bucket)
            committed = bucket_total(committed_bucket)

        available = calculate_available(ceiling, actual, committed)
        is_valid = required <= available

        if is_valid:
            message = f"Within {label}: {to_float(available)} available"
        else:
            message = (
                f"Exceeds {label}. Available: {to_float(available)}, required: {to_float(required)}, "
                f"shortfall: {to_float(required - available)}"
            )

        return {
            "is_valid": is_valid,
            "available": available,
            "required": required,
            "constraint_not_set": False,
            "message": message
        }

    async def ensure_availability(
        self,
        scope: str,
        scope_id: str,
        proposed_amount,
        category: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        result = await self.validate_availability(scope, scope_id, proposed_amount, category, session=session)
        if not result["is_valid"]:
            logger.warning(f"[BUDGET] Blocked {scope}:{scope_id}: {result['message']}")
            raise InsufficientFunds(
                result["available"], result["required"], f"{scope} budget", result["message"]
            )
        return result
