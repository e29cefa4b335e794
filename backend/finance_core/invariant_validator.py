"""
FINANCIAL INVARIANT VALIDATOR

Checks that persisted aggregates are mutually consistent:
1. Phase actual spending sums to project actual spending (per category)
2. Phase commitments never exceed project commitments
3. No aggregate is negative
4. Stored bucket totals equal their category sums
5. No investor has allocated more than they invested
6. Approved labour entries match phase labour spend

Reports violations; never raises and never auto-fixes.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Dict, List, Any
import logging

from finance_core.financial_precision import to_decimal, to_float, ZERO
from finance_core.financial_errors import EntityNotFoundError
from finance_core.ledger_primitives import SPENDING_CATEGORIES, category_amounts, sum_amounts
from finance_core.spending_ledger import LedgerBucket
from finance_core.mongo_utils import as_object_id

logger = logging.getLogger(__name__)

# 1 cent
TOLERANCE = Decimal('0.01')

APPROVED_LABOUR_STATUSES = ["approved", "paid"]


class FinancialInvariantValidator:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @staticmethod
    def _differs(a: Decimal, b: Decimal) -> bool:
        return abs(a - b) > TOLERANCE

    def _check_bucket_shape(self, owner: str, owner_id: str, bucket_name: str, bucket: Dict[str, Any]) -> List[Dict]:
        violations = []
        if not bucket:
            return violations

        amounts = category_amounts(bucket)
        for category, amount in amounts.items():
            if amount < ZERO:
                violations.append({
                    "type": "NEGATIVE_AGGREGATE",
                    "message": f"{owner} {owner_id} {bucket_name}.{category} is negative ({to_float(amount)})",
                    "owner": owner,
                    "owner_id": owner_id,
                    "field": f"{bucket_name}.{category}"
                })

        if "total" in bucket:
            stored_total = to_decimal(bucket.get("total"))
            category_sum = sum(amounts.values(), ZERO)
            if self._differs(stored_total, category_sum):
                violations.append({
                    "type": "BUCKET_TOTAL_MISMATCH",
                    "message": (
                        f"{owner} {owner_id} {bucket_name}.total ({to_float(stored_total)}) "
                        f"!= category sum ({to_float(category_sum)})"
                    ),
                    "owner": owner,
                    "owner_id": owner_id,
                    "field": f"{bucket_name}.total"
                })
        return violations

    async def validate_project(self, project_id: str, session=None) -> Dict[str, Any]:
        project = await self.db.projects.find_one(
            {"_id": as_object_id(project_id, "project_id")},
            session=session
        )
        if not project:
            raise EntityNotFoundError("project", project_id)

        phases = await self.db.phases.find({"project_id": project_id}, session=session).to_list(length=None)

        violations: List[Dict[str, Any]] = []

        for bucket_name in (LedgerBucket.ACTUAL, LedgerBucket.COMMITTED):
            violations.extend(
                self._check_bucket_shape("project", project_id, bucket_name, project.get(bucket_name))
            )
            for phase in phases:
                violations.extend(
                    self._check_bucket_shape("phase", str(phase["_id"]), bucket_name, phase.get(bucket_name))
                )

        # CONSERVATION: phase actual spend == project actual spend
        project_actual = category_amounts(project.get(LedgerBucket.ACTUAL))
        for category in SPENDING_CATEGORIES:
            phase_sum = sum_amounts(
                (phase.get(LedgerBucket.ACTUAL) or {}).get(category) for phase in phases
            )
            if self._differs(phase_sum, project_actual[category]):
                violations.append({
                    "type": "PHASE_ACTUAL_MISMATCH",
                    "message": (
                        f"Phase {category} spend ({to_float(phase_sum)}) != project {category} spend "
                        f"({to_float(project_actual[category])})"
                    ),
                    "category": category,
                    "phase_sum": to_float(phase_sum),
                    "project_value": to_float(project_actual[category])
                })

        # Commitments may exist without a phase, so only an excess is a violation
        project_committed = category_amounts(project.get(LedgerBucket.COMMITTED))
        for category in SPENDING_CATEGORIES:
            phase_sum = sum_amounts(
                (phase.get(LedgerBucket.COMMITTED) or {}).get(category) for phase in phases
            )
            if phase_sum - project_committed[category] > TOLERANCE:
                violations.append({
                    "type": "PHASE_COMMITTED_EXCEEDS_PROJECT",
                    "message": (
                        f"Phase {category} commitments ({to_float(phase_sum)}) exceed project "
                        f"commitments ({to_float(project_committed[category])})"
                    ),
                    "category": category,
                    "phase_sum": to_float(phase_sum),
                    "project_value": to_float(project_committed[category])
                })

        investors = await self.db.investors.find(
            {"project_allocations.project_id": project_id},
            session=session
        ).to_list(length=None)
        for investor in investors:
            allocated = sum_amounts(a.get("amount") for a in investor.get("project_allocations", []))
            invested = to_decimal(investor.get("total_invested"))
            if allocated - invested > TOLERANCE:
                violations.append({
                    "type": "INVESTOR_OVER_ALLOCATION",
                    "message": (
                        f"Investor {investor['_id']} allocated {to_float(allocated)} "
                        f"but invested {to_float(invested)}"
                    ),
                    "investor_id": str(investor["_id"]),
                    "allocated": to_float(allocated),
                    "total_invested": to_float(invested)
                })

        for phase in phases:
            phase_id = str(phase["_id"])
            entries = await self.db.labour_entries.find(
                {"phase_id": phase_id, "status": {"$in": APPROVED_LABOUR_STATUSES}},
                session=session
            ).to_list(length=None)
            entry_total = sum_amounts(e.get("total_cost") for e in entries)
            phase_labour = to_decimal((phase.get(LedgerBucket.ACTUAL) or {}).get("labour"))
            if self._differs(entry_total, phase_labour):
                violations.append({
                    "type": "LABOUR_DRIFT",
                    "message": (
                        f"Phase {phase_id} approved labour entries ({to_float(entry_total)}) "
                        f"!= phase labour spend ({to_float(phase_labour)})"
                    ),
                    "phase_id": phase_id,
                    "entries_total": to_float(entry_total),
                    "phase_labour": to_float(phase_labour)
                })

        if violations:
            logger.warning(f"[INVARIANT] Project {project_id}: {len(violations)} violation(s)")

        return {
            "project_id": project_id,
            "is_valid": not violations,
            "violations": violations,
            "phases_checked": len(phases)
        }
