"""
TRANSACTION COORDINATOR

Runs one unit of work inside a single MongoDB transaction.

RULES:
- fn(session) receives the live session; every read/write inside it must
  pass session=session
- Any error raised by fn aborts everything and propagates unchanged
- Store failures (write conflicts, commit errors) surface as TransactionFailure
- No retries here: the caller retries the whole operation
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from typing import Any, Awaitable, Callable
import logging

from finance_core.financial_errors import TransactionFailure

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[Any], Awaitable[Any]]


class TransactionCoordinator:

    def __init__(self, client: AsyncIOMotorClient):
        self.client = client

    async def run(self, fn: UnitOfWork, label: str = "unit_of_work") -> Any:
        """
        Execute fn(session) atomically and return its result.
        """
        work_completed = False
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    result = await fn(session)
                    work_completed = True
        except PyMongoError as e:
            logger.error(f"[TRANSACTION] {label} aborted by store: {e}")
            raise TransactionFailure(
                f"Transaction '{label}' could not be committed; no changes were applied. Retry the operation.",
                {"label": label, "store_error": str(e)}
            ) from e
        except Exception as e:
            if not work_completed:
                logger.info(f"[TRANSACTION] {label} rolled back: {type(e).__name__}: {e}")
                raise
            logger.error(f"[TRANSACTION] {label} commit failed: {e}")
            raise TransactionFailure(
                f"Transaction '{label}' could not be committed; no changes were applied. Retry the operation.",
                {"label": label, "store_error": str(e)}
            ) from e

        logger.info(f"[TRANSACTION] {label} committed")
        return result
