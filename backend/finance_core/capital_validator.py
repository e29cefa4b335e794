"""
CAPITAL VALIDATOR

Investor capital available to a project:

    total_invested = sum of investor allocations to the project
    available      = max(0, total_invested - total_used - committed)

RULES:
- No allocations means capital is "not set": availability checks pass
  with constraint_not_set=True
- Capital removal is ALWAYS validated, whatever the ceiling state, so that
  money already committed or spent stays covered
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Dict, Any
import logging

from finance_core.financial_precision import round_financial, validate_positive, to_float, ZERO
from finance_core.financial_errors import InsufficientFunds, CapitalRemovalBlocked, EntityNotFoundError
from finance_core.ledger_primitives import (
    Ceiling, bucket_total, calculate_available, classify_capital_status, sum_amounts
)
from finance_core.mongo_utils import as_object_id

logger = logging.getLogger(__name__)


class CapitalValidator:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # =========================================================================
    # CAPITAL POSITION
    # =========================================================================

    async def get_invested_ceiling(self, project_id: str, session=None) -> Ceiling:
        """Sum of investor allocations for the project; unset when there are none"""
        cursor = self.db.investors.find(
            {"project_allocations.project_id": project_id},
            session=session
        )
        investors = await cursor.to_list(length=None)

        amounts = [
            allocation.get("amount")
            for investor in investors
            for allocation in investor.get("project_allocations", [])
            if allocation.get("project_id") == project_id
        ]
        if not amounts:
            return Ceiling.unset()
        return Ceiling.of(sum_amounts(amounts))

    async def get_capital_position(self, project_id: str, session=None) -> Dict[str, Any]:
        """
        Current capital figures for a project.
        Values are Decimals; ``available`` is None when capital is not set.
        """
        project = await self.db.projects.find_one(
            {"_id": as_object_id(project_id, "project_id")},
            session=session
        )
        if not project:
            raise EntityNotFoundError("project", project_id)

        invested = await self.get_invested_ceiling(project_id, session=session)
        used = bucket_total(project.get("actual_spending"))
        committed = bucket_total(project.get("committed_cost"))

        total_invested = invested.amount if invested.is_set else ZERO
        return {
            "total_invested": round_financial(total_invested),
            "total_used": round_financial(used),
            "committed": round_financial(committed),
            "capital_balance": round_financial(total_invested - used),
            "available": calculate_available(invested, used, committed),
            "constraint_not_set": not invested.is_set,
            "status": classify_capital_status(invested, used, committed),
        }

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    async def validate_availability(self, project_id: str, proposed_amount, session=None) -> Dict[str, Any]:
        required = round_financial(validate_positive(proposed_amount, "proposed_amount"))
        position = await self.get_capital_position(project_id, session=session)

        if position["constraint_not_set"]:
            return {
                "is_valid": True,
                "available": None,
                "required": required,
                "constraint_not_set": True,
                "message": "Capital not set. Spending is tracked but not limited."
            }

        available = position["available"]
        is_valid = required <= available
        if is_valid:
            message = f"Sufficient capital: {to_float(available)} available"
        else:
            message = (
                f"Insufficient capital. Available: {to_float(available)}, "
                f"required: {to_float(required)}, shortfall: {to_float(required - available)}"
            )

        return {
            "is_valid": is_valid,
            "available": available,
            "required": required,
            "constraint_not_set": False,
            "message": message
        }

    async def ensure_availability(self, project_id: str, proposed_amount, session=None) -> Dict[str, Any]:
        """validate_availability, raising InsufficientFunds when blocked"""
        result = await self.validate_availability(project_id, proposed_amount, session=session)
        if not result["is_valid"]:
            logger.warning(f"[CAPITAL] Blocked for project {project_id}: {result['message']}")
            raise InsufficientFunds(result["available"], result["required"], "capital", result["message"])
        return result

    # =========================================================================
    # REMOVAL
    # =========================================================================

    async def validate_capital_removal(self, project_id: str, amount_to_remove, session=None) -> Dict[str, Any]:
        """
        Check whether ``amount_to_remove`` can leave the project.

        available_after_removal is not floored, so a negative value shows
        exactly how much committed/spent money would be uncovered.
        """
        amount = round_financial(validate_positive(amount_to_remove, "amount_to_remove"))
        position = await self.get_capital_position(project_id, session=session)

        current_available = round_financial(
            position["total_invested"] - position["total_used"] - position["committed"]
        )
        available_after = current_available - amount
        can_remove = available_after >= ZERO
        shortfall = ZERO if can_remove else -available_after

        if can_remove:
            message = f"Capital can be removed. Available after removal: {to_float(available_after)}"
        else:
            message = (
                f"Cannot remove {to_float(amount)}. Used ({to_float(position['total_used'])}) plus committed "
                f"({to_float(position['committed'])}) would exceed remaining capital by {to_float(shortfall)}"
            )

        return {
            "can_remove": can_remove,
            "available_after_removal": available_after,
            "current_available": current_available,
            "shortfall": shortfall,
            "message": message
        }

    async def ensure_capital_removal(self, project_id: str, amount_to_remove, session=None) -> Dict[str, Any]:
        result = await self.validate_capital_removal(project_id, amount_to_remove, session=session)
        if not result["can_remove"]:
            logger.warning(f"[CAPITAL] Removal blocked for project {project_id}: {result['message']}")
            raise CapitalRemovalBlocked(project_id, result["shortfall"], result["message"])
        return result
