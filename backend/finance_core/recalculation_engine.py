"""
RECALCULATION ENGINE

Re-derives phase and project financial summaries from persisted aggregates:

    variance               = actual - budget            (None when unset)
    utilization_percentage = actual / budget * 100      (None when unset / zero)
    remaining              = budget - actual - committed (may be negative)
    status                 = over_budget | at_risk | on_track | not_set

RULES:
- Single entry point per scope: recalculate_phase() / recalculate()
- Pure re-derivation: reads budgets and aggregates, writes only derived
  fields (financial_summary, financial_states, capital)
- Idempotent: summaries carry no timestamps; last_recalculated_at is
  stored beside them
- A failing forecast hook degrades the forecast section only
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable
import logging

from finance_core.financial_precision import (
    round_financial, decimals_to_storage, safe_divide, ZERO, HUNDRED
)
from finance_core.financial_errors import EntityNotFoundError, RecalculationDegraded
from finance_core.ledger_primitives import (
    SPENDING_CATEGORIES, Ceiling, category_amounts, bucket_total, constraint_summary,
    AT_RISK_UTILIZATION, PHASE_VARIANCE_RISK_PERCENTAGE
)
from finance_core.capital_validator import CapitalValidator
from finance_core.mongo_utils import as_object_id

logger = logging.getLogger(__name__)

# async def forecast(project_doc, summary) -> Decimal
ForecastHook = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Decimal]]

COMPLETED_PHASE_STATUS = "completed"


class RiskSeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecalculationEngine:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        capital_validator: Optional[CapitalValidator] = None,
        forecast_hook: Optional[ForecastHook] = None
    ):
        self.db = db
        self.capital_validator = capital_validator or CapitalValidator(db)
        self.forecast_hook = forecast_hook

    # =========================================================================
    # DERIVATION (PURE)
    # =========================================================================

    @staticmethod
    def derive_phase_summary(phase: Dict[str, Any]) -> Dict[str, Any]:
        allocation = phase.get("budget_allocation")
        actual_bucket = phase.get("actual_spending")
        committed_bucket = phase.get("committed_cost")

        ceiling = Ceiling.from_budget(allocation)
        actual_total = bucket_total(actual_bucket)
        committed_total = bucket_total(committed_bucket)

        summary = constraint_summary(ceiling, actual_total, committed_total)

        actual_by_category = category_amounts(actual_bucket)
        committed_by_category = category_amounts(committed_bucket)
        summary["by_category"] = {
            category: constraint_summary(
                Ceiling.from_budget(allocation, category),
                actual_by_category[category],
                committed_by_category[category]
            )
            for category in SPENDING_CATEGORIES
        }
        return summary

    @staticmethod
    def derive_financial_states(summary: Dict[str, Any]) -> Dict[str, Any]:
        """Stored on the phase for list views; remaining is floored at zero here"""
        remaining = summary["remaining"]
        return {
            "actual": summary["actual"],
            "committed": summary["committed"],
            "estimated": round_financial(summary["actual"] + summary["committed"]),
            "remaining": None if remaining is None else max(ZERO, remaining),
        }

    @staticmethod
    def derive_phase_risks(phase: Dict[str, Any], summary: Dict[str, Any]) -> List[Dict[str, Any]]:
        risks = []
        phase_id = str(phase["_id"])
        phase_name = phase.get("phase_name") or phase.get("name")
        status = phase.get("status")
        utilization = summary["utilization_percentage"]
        variance = summary["variance"]
        budget = summary["budget"]

        if variance is not None and budget is not None and budget > ZERO:
            variance_percentage = round_financial(safe_divide(variance, budget) * HUNDRED)
            if variance_percentage > PHASE_VARIANCE_RISK_PERCENTAGE:
                risks.append({
                    "type": "phase_variance",
                    "severity": RiskSeverity.MEDIUM,
                    "phase_id": phase_id,
                    "phase_name": phase_name,
                    "value": variance_percentage,
                    "message": f"Phase is {variance_percentage}% over its allocation"
                })

        if utilization is not None and utilization > AT_RISK_UTILIZATION and status != COMPLETED_PHASE_STATUS:
            risks.append({
                "type": "phase_utilization",
                "severity": RiskSeverity.MEDIUM,
                "phase_id": phase_id,
                "phase_name": phase_name,
                "value": utilization,
                "message": f"Phase has used {utilization}% of its allocation"
            })

        if status == "on_hold":
            risks.append({
                "type": "phase_on_hold",
                "severity": RiskSeverity.MEDIUM,
                "phase_id": phase_id,
                "phase_name": phase_name,
                "value": None,
                "message": "Phase is on hold"
            })

        return risks

    @staticmethod
    def overall_risk_level(risks: List[Dict[str, Any]]) -> str:
        severities = {r["severity"] for r in risks}
        if RiskSeverity.HIGH in severities:
            return RiskSeverity.HIGH
        if RiskSeverity.MEDIUM in severities:
            return RiskSeverity.MEDIUM
        return RiskSeverity.LOW

    # =========================================================================
    # PHASE
    # =========================================================================

    async def _write_phase(self, phase: Dict[str, Any], session=None) -> Dict[str, Any]:
        summary = self.derive_phase_summary(phase)
        states = self.derive_financial_states(summary)

        await self.db.phases.update_one(
            {"_id": phase["_id"]},
            {
                "$set": {
                    "financial_summary": decimals_to_storage(summary),
                    "financial_states": decimals_to_storage(states),
                    "last_recalculated_at": datetime.utcnow()
                }
            },
            session=session
        )
        return summary

    async def recalculate_phase(self, phase_id: str, session=None) -> Dict[str, Any]:
        phase = await self.db.phases.find_one({"_id": as_object_id(phase_id, "phase_id")}, session=session)
        if not phase:
            raise EntityNotFoundError("phase", phase_id)

        summary = await self._write_phase(phase, session=session)
        logger.info(f"[RECALC] Phase {phase_id}: status={summary['status']} actual={summary['actual']}")
        return summary

    # =========================================================================
    # PROJECT
    # =========================================================================

    async def _run_forecast(self, project: Dict[str, Any], summary: Dict[str, Any]) -> Dict[str, Any]:
        if self.forecast_hook is None:
            return {"status": "not_configured", "forecast_at_completion": None}

        try:
            forecast_value = await self.forecast_hook(project, summary)
            return {
                "status": "available",
                "forecast_at_completion": round_financial(forecast_value)
            }
        except Exception as e:
            degraded = RecalculationDegraded(
                f"Forecast unavailable for project {project['_id']}: {e}",
                {"project_id": str(project["_id"]), "step": "forecast"}
            )
            logger.warning(f"[RECALC] {degraded.message}")
            return {"status": "unavailable", "forecast_at_completion": None, "reason": str(e)}

    async def recalculate(self, project_id: str, session=None) -> Dict[str, Any]:
        """
        Re-derive every phase summary and the project summary.
        Pass the active session when called inside a mutating transaction.
        """
        project = await self.db.projects.find_one(
            {"_id": as_object_id(project_id, "project_id")},
            session=session
        )
        if not project:
            raise EntityNotFoundError("project", project_id)

        cursor = self.db.phases.find({"project_id": project_id}, session=session).sort("sequence", 1)
        phases = await cursor.to_list(length=None)

        risks = []
        allocation_total = ZERO
        phase_summaries = []
        for phase in phases:
            phase_summary = await self._write_phase(phase, session=session)
            if phase_summary["budget"] is not None:
                allocation_total += phase_summary["budget"]
            risks.extend(self.derive_phase_risks(phase, phase_summary))
            phase_summaries.append({
                "phase_id": str(phase["_id"]),
                "status": phase_summary["status"],
                "actual": phase_summary["actual"],
                "committed": phase_summary["committed"],
            })

        budget = project.get("budget")
        ceiling = Ceiling.from_budget(budget)
        actual_bucket = project.get("actual_spending")
        committed_bucket = project.get("committed_cost")

        summary = constraint_summary(ceiling, bucket_total(actual_bucket), bucket_total(committed_bucket))

        actual_by_category = category_amounts(actual_bucket)
        committed_by_category = category_amounts(committed_bucket)
        summary["by_category"] = {
            category: constraint_summary(
                Ceiling.from_budget(budget, category),
                actual_by_category[category],
                committed_by_category[category]
            )
            for category in SPENDING_CATEGORIES
        }

        summary["phase_count"] = len(phases)
        summary["phases"] = phase_summaries
        summary["phase_allocation_total"] = round_financial(allocation_total)
        if ceiling.is_set:
            summary["unallocated_budget"] = round_financial(ceiling.amount - allocation_total)
            summary["over_allocated"] = allocation_total > ceiling.amount
        else:
            summary["unallocated_budget"] = None
            summary["over_allocated"] = False

        summary["risk_indicators"] = risks
        summary["risk_level"] = self.overall_risk_level(risks)

        capital = await self.capital_validator.get_capital_position(project_id, session=session)
        summary["forecast"] = await self._run_forecast(project, summary)

        await self.db.projects.update_one(
            {"_id": project["_id"]},
            {
                "$set": {
                    "financial_summary": decimals_to_storage(summary),
                    "capital": decimals_to_storage(capital),
                    "last_recalculated_at": datetime.utcnow()
                }
            },
            session=session
        )

        summary["capital"] = capital
        logger.info(
            f"[RECALC] Project {project_id}: status={summary['status']} phases={len(phases)} "
            f"risk={summary['risk_level']}"
        )
        return summary
