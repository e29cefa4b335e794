"""
Notification dispatch for financial events.

Delivery (SMS / email / push) lives elsewhere; this service records each
event in the ``notifications`` collection from a detached task so that a
slow or failing sink never affects the operation that raised it.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List, Set
import asyncio
import logging

from finance_core.financial_precision import decimals_to_storage

logger = logging.getLogger(__name__)


class NotificationService:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.notifications
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, event_type: str, recipients: List[str], payload: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Fire-and-forget; returns the detached task"""
        if not recipients:
            logger.debug(f"[NOTIFY] {event_type}: no recipients, skipped")
            return None

        task = asyncio.create_task(self._deliver(event_type, list(recipients), payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, event_type: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        try:
            await self.collection.insert_one({
                "event_type": event_type,
                "recipients": recipients,
                "payload": decimals_to_storage(payload),
                "status": "queued",
                "created_at": datetime.utcnow()
            })
            logger.info(f"[NOTIFY] {event_type} queued for {len(recipients)} recipient(s)")
        except Exception as e:
            logger.error(f"[NOTIFY] Failed to queue {event_type}: {e}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
