"""
RECALCULATION QUEUE - DETACHED POST-COMMIT RECALCULATION

Post-commit recalculations run as detached asyncio tasks so the request
that triggered them returns immediately.

RULES:
- Tasks are NOT tied to the request and are never cancelled with it
- Failures are retried with exponential backoff
- Exhausted retries land in the dead-letter collection and the log;
  they are never raised to the original caller
- drain() waits for everything in flight (shutdown and tests)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, Set
import asyncio
import logging
import traceback

from finance_core.financial_errors import RecalculationDegraded, ValidationError
from finance_core.spending_ledger import LedgerScope

logger = logging.getLogger(__name__)


class RecalculationJobStatus:
    COMPLETED = "COMPLETED"
    RETRYING = "RETRYING"
    DEAD_LETTERED = "DEAD_LETTERED"


class RecalculationQueue:
    """
    Fire-and-forget recalculation runner.

    Features:
    - Detached task per request
    - Retry with exponential backoff
    - Dead-letter sink (collection + error log)
    - Counters for monitoring
    """

    MAX_RETRY_ATTEMPTS = 3
    BASE_RETRY_DELAY = 1.0  # seconds
    DEAD_LETTER_COLLECTION = "recalculation_dead_letters"

    def __init__(
        self,
        engine,
        db: AsyncIOMotorDatabase,
        max_attempts: Optional[int] = None,
        base_retry_delay: Optional[float] = None
    ):
        self.engine = engine
        self.db = db
        self.max_attempts = max_attempts if max_attempts is not None else self.MAX_RETRY_ATTEMPTS
        self.base_retry_delay = base_retry_delay if base_retry_delay is not None else self.BASE_RETRY_DELAY
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {
            "scheduled": 0,
            "completed": 0,
            "retried": 0,
            "dead_lettered": 0
        }

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def enqueue(self, scope: str, scope_id: str, reason: Optional[str] = None) -> asyncio.Task:
        """Schedule a recalculation; must be called from a running event loop"""
        if scope not in (LedgerScope.PHASE, LedgerScope.PROJECT):
            raise ValidationError(f"Unknown recalculation scope: {scope}", {"scope": scope})

        task = asyncio.create_task(self._execute(scope, scope_id, reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats["scheduled"] += 1

        logger.info(f"[QUEUE] Scheduled {scope} recalculation: {scope_id} ({reason or 'unspecified'})")
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all in-flight recalculations, including ones they schedule"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _recalculate(self, scope: str, scope_id: str) -> Dict[str, Any]:
        if scope == LedgerScope.PHASE:
            return await self.engine.recalculate_phase(scope_id)
        return await self.engine.recalculate(scope_id)

    async def _execute(self, scope: str, scope_id: str, reason: Optional[str]) -> str:
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._recalculate(scope, scope_id)
                self.stats["completed"] += 1
                logger.info(f"[QUEUE] Completed {scope} recalculation: {scope_id} (attempt {attempt})")
                return RecalculationJobStatus.COMPLETED

            except Exception as e:
                last_error = e
                logger.error(f"[QUEUE] {scope} recalculation failed: {scope_id} attempt {attempt} - {e}")
                logger.error(traceback.format_exc())

                if attempt < self.max_attempts:
                    delay = self.base_retry_delay * (2 ** (attempt - 1))
                    self.stats["retried"] += 1
                    logger.info(f"[QUEUE] Retry {attempt + 1} for {scope}:{scope_id} in {delay}s")
                    await asyncio.sleep(delay)

        await self._dead_letter(scope, scope_id, reason, last_error)
        return RecalculationJobStatus.DEAD_LETTERED

    async def _dead_letter(self, scope: str, scope_id: str, reason: Optional[str], error: Exception) -> None:
        degraded = RecalculationDegraded(
            f"{scope} recalculation for {scope_id} abandoned after {self.max_attempts} attempts: {error}",
            {"scope": scope, "scope_id": scope_id, "reason": reason}
        )
        self.stats["dead_lettered"] += 1
        logger.error(f"[QUEUE] DEAD LETTER: {degraded.message}")

        try:
            await self.db[self.DEAD_LETTER_COLLECTION].insert_one({
                "scope": scope,
                "scope_id": scope_id,
                "reason": reason,
                "attempts": self.max_attempts,
                "error_type": type(error).__name__,
                "error_message": str(error),
                "status": RecalculationJobStatus.DEAD_LETTERED,
                "created_at": datetime.utcnow()
            })
        except Exception as e:
            # Log sink is the last resort
            logger.error(f"[QUEUE] Failed to persist dead letter for {scope}:{scope_id}: {e}")

    async def get_dead_letters(self, limit: int = 100):
        cursor = self.db[self.DEAD_LETTER_COLLECTION].find({}).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)
