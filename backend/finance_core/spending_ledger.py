"""
SPENDING LEDGER STORE

The only writer of the ``actual_spending`` and ``committed_cost`` aggregates
on phases and projects.

RULES:
- Every mutation runs inside a caller-supplied transaction session
- Category and total move by exactly the signed delta
- Aggregates never go below zero
- Phase and project are always adjusted together (conservation)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from finance_core.financial_precision import to_decimal, to_decimal128, validate_positive, round_financial, ZERO
from finance_core.financial_errors import ValidationError, EntityNotFoundError, LedgerConfigurationError
from finance_core.ledger_primitives import ensure_category, SPENDING_CATEGORIES
from finance_core.mongo_utils import as_object_id

logger = logging.getLogger(__name__)


class LedgerScope:
    PHASE = "phase"
    PROJECT = "project"


class LedgerBucket:
    ACTUAL = "actual_spending"
    COMMITTED = "committed_cost"


class Direction:
    ADD = "add"
    SUBTRACT = "subtract"


SCOPE_COLLECTIONS = {
    LedgerScope.PHASE: "phases",
    LedgerScope.PROJECT: "projects",
}


def empty_bucket() -> Dict[str, Any]:
    """Zeroed spending bucket for new projects / phases"""
    bucket = {c: to_decimal128(0) for c in SPENDING_CATEGORIES}
    bucket["total"] = to_decimal128(0)
    return bucket


class SpendingLedgerStore:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @staticmethod
    def _require_session(session) -> None:
        if session is None or not getattr(session, "in_transaction", False):
            raise LedgerConfigurationError(
                "Ledger mutations require an active transaction session"
            )

    async def adjust(
        self,
        scope: str,
        scope_id: str,
        category: str,
        amount,
        direction: str,
        session,
        bucket: str = LedgerBucket.ACTUAL
    ) -> Dict[str, Any]:
        """
        Move one category of one aggregate by ``amount``.

        Returns the new category amount and bucket total.
        """
        self._require_session(session)
        ensure_category(category)

        if scope not in SCOPE_COLLECTIONS:
            raise LedgerConfigurationError(f"Unknown ledger scope: {scope}", {"scope": scope})
        if bucket not in (LedgerBucket.ACTUAL, LedgerBucket.COMMITTED):
            raise LedgerConfigurationError(f"Unknown ledger bucket: {bucket}", {"bucket": bucket})
        if direction not in (Direction.ADD, Direction.SUBTRACT):
            raise ValidationError(f"Invalid ledger direction: {direction}", {"direction": direction})

        amount = round_financial(validate_positive(amount, "amount"))
        delta = amount if direction == Direction.ADD else -amount

        collection = self.db[SCOPE_COLLECTIONS[scope]]
        oid = as_object_id(scope_id, f"{scope}_id")

        doc = await collection.find_one({"_id": oid}, {bucket: 1}, session=session)
        if not doc:
            raise EntityNotFoundError(scope, scope_id)

        current = doc.get(bucket)
        current_amount = to_decimal((current or {}).get(category))
        current_total = to_decimal((current or {}).get("total"))

        new_amount = current_amount + delta
        new_total = current_total + delta

        if new_amount < ZERO or new_total < ZERO:
            raise ValidationError(
                f"Cannot reduce {scope} {bucket}.{category} below zero "
                f"(current {current_amount}, requested -{amount})",
                {
                    "scope": scope,
                    "scope_id": scope_id,
                    "bucket": bucket,
                    "category": category,
                    "current": str(current_amount),
                    "requested": str(amount)
                }
            )

        if isinstance(current, dict):
            update = {
                "$inc": {
                    f"{bucket}.{category}": to_decimal128(delta),
                    f"{bucket}.total": to_decimal128(delta)
                },
                "$set": {"updated_at": datetime.utcnow()}
            }
        else:
            initial = empty_bucket()
            initial[category] = to_decimal128(new_amount)
            initial["total"] = to_decimal128(new_total)
            update = {"$set": {bucket: initial, "updated_at": datetime.utcnow()}}

        result = await collection.update_one({"_id": oid}, update, session=session)
        if result.matched_count == 0:
            raise EntityNotFoundError(scope, scope_id)

        logger.info(
            f"[LEDGER] {scope}:{scope_id} {bucket}.{category} {'+' if delta > ZERO else ''}{delta} "
            f"-> {new_amount} (total {new_total})"
        )

        return {
            "scope": scope,
            "scope_id": scope_id,
            "bucket": bucket,
            "category": category,
            "amount": new_amount,
            "total": new_total
        }

    # =========================================================================
    # PAIRED PHASE + PROJECT MUTATIONS
    # =========================================================================

    async def _phase_for_project(self, project_id: str, phase_id: str, session) -> Dict[str, Any]:
        phase = await self.db.phases.find_one({"_id": as_object_id(phase_id, "phase_id")}, session=session)
        if not phase:
            raise EntityNotFoundError("phase", phase_id)
        if str(phase.get("project_id")) != str(project_id):
            raise ValidationError(
                f"Phase {phase_id} does not belong to project {project_id}",
                {"phase_id": phase_id, "project_id": project_id}
            )
        return phase

    async def _adjust_pair(
        self,
        project_id: str,
        phase_id: Optional[str],
        category: str,
        amount,
        direction: str,
        session,
        bucket: str
    ) -> Dict[str, Any]:
        self._require_session(session)
        result = {"phase": None}
        if phase_id:
            await self._phase_for_project(project_id, phase_id, session)
            result["phase"] = await self.adjust(
                LedgerScope.PHASE, phase_id, category, amount, direction, session, bucket
            )
        result["project"] = await self.adjust(
            LedgerScope.PROJECT, project_id, category, amount, direction, session, bucket
        )
        return result

    async def record_spend(
        self,
        project_id: str,
        phase_id: str,
        category: str,
        amount,
        session,
        direction: str = Direction.ADD
    ) -> Dict[str, Any]:
        """Actual spend is always phase-attributed"""
        if not phase_id:
            raise ValidationError("Actual spend must be attributed to a phase", {"project_id": project_id})
        return await self._adjust_pair(
            project_id, phase_id, category, amount, direction, session, LedgerBucket.ACTUAL
        )

    async def record_commitment(
        self,
        project_id: str,
        phase_id: Optional[str],
        category: str,
        amount,
        session
    ) -> Dict[str, Any]:
        return await self._adjust_pair(
            project_id, phase_id, category, amount, Direction.ADD, session, LedgerBucket.COMMITTED
        )

    async def release_commitment(
        self,
        project_id: str,
        phase_id: Optional[str],
        category: str,
        amount,
        session
    ) -> Dict[str, Any]:
        return await self._adjust_pair(
            project_id, phase_id, category, amount, Direction.SUBTRACT, session, LedgerBucket.COMMITTED
        )

    async def fulfil_commitment(
        self,
        project_id: str,
        phase_id: str,
        category: str,
        committed_amount,
        actual_amount,
        session
    ) -> Dict[str, Any]:
        """
        Move a commitment into actual spend (delivery confirmed).
        The released and spent amounts may differ.
        """
        released = await self.release_commitment(project_id, phase_id, category, committed_amount, session)
        spent = await self.record_spend(project_id, phase_id, category, actual_amount, session)
        return {"released": released, "spent": spent}
