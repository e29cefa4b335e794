from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from finance_core.financial_errors import ValidationError
from finance_core.financial_precision import decimals_to_storage

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: Financial entity types that CANNOT be deleted
FINANCIAL_ENTITY_TYPES = [
    "PROJECT",
    "PHASE",
    "INVESTOR_ALLOCATION",
    "PURCHASE_ORDER",
    "LABOUR_BATCH",
    "LABOUR_ENTRY",
    "PROFESSIONAL_FEE",
    "EXPENSE",
    "BUDGET_REALLOCATION",
]


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def enforce_financial_delete_guard(self, entity_type: str, action: str):
        """
        ARCHITECTURAL GUARD: Prevent DELETE operations on financial entities.

        Monetary records are never physically deleted; rejection and
        cancellation are status transitions.
        """
        if action == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise ValidationError(
                f"Cannot DELETE {entity_type}. Financial entities are immutable. Use a status transition instead.",
                {"entity_type": entity_type}
            )

    async def record_audit_entry(
        self,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Append an entry to the audit trail (INSERT ONLY).

        Best-effort: runs after commit and never rolls back the operation.
        Returns the audit id, or None when the write failed.
        """
        self.enforce_financial_delete_guard(entity_type, action)

        try:
            entry = {
                "actor": actor,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "project_id": project_id,
                "before": decimals_to_storage(before),
                "after": decimals_to_storage(after),
                "timestamp": datetime.utcnow()
            }

            result = await self.collection.insert_one(entry)
            logger.info(f"[AUDIT] {action} on {entity_type}:{entity_id} by {actor}")
            return str(result.inserted_id)
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to record {action} on {entity_type}:{entity_id}: {e}")
            return None

    async def get_audit_entries(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit entries (READ ONLY)"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if project_id:
            query["project_id"] = project_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        entries = await cursor.to_list(length=limit)

        for entry in entries:
            entry["audit_id"] = str(entry.pop("_id"))

        return entries
