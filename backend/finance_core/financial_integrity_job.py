"""
FINANCIAL INTEGRITY JOB

Runs FinancialInvariantValidator over every project, writes an alert per
project with violations and returns a report. Reports only, no auto-fix.

Usage:
    job = FinancialIntegrityJob(db)
    report = await job.run()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Dict, Any, List
import logging

from finance_core.invariant_validator import FinancialInvariantValidator

logger = logging.getLogger(__name__)


class FinancialIntegrityJob:

    ALERT_COLLECTION = "financial_alerts"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.validator = FinancialInvariantValidator(db)

    async def run(self) -> Dict[str, Any]:
        start_time = datetime.utcnow()
        checked_count = 0
        failing: List[Dict[str, Any]] = []

        logger.info("[INTEGRITY_JOB] Starting financial integrity check...")

        async for project in self.db.projects.find({}):
            project_id = str(project["_id"])
            result = await self.validator.validate_project(project_id)
            checked_count += 1

            if not result["is_valid"]:
                failing.append(result)
                await self.db[self.ALERT_COLLECTION].insert_one({
                    "alert_type": "FINANCIAL_INTEGRITY",
                    "project_id": project_id,
                    "violations": result["violations"],
                    "resolved": False,
                    "created_at": datetime.utcnow()
                })

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        if failing:
            logger.warning(
                f"[INTEGRITY_JOB] Completed with {len(failing)} failing project(s) "
                f"out of {checked_count}"
            )
        else:
            logger.info(f"[INTEGRITY_JOB] Completed successfully. All {checked_count} projects verified.")

        return {
            "job_name": "FinancialIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "projects_checked": checked_count,
            "projects_with_violations": len(failing),
            "results": failing
        }
