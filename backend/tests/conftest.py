"""
Shared fixtures: an in-memory Mongo double and a fully wired
FinancialOperations instance on top of it.
"""
import asyncio
import pytest

from fake_motor import FakeMotorClient
from audit_service import AuditService
from notification_service import NotificationService
from finance_core.financial_operations import FinancialOperations
from finance_core.recalculation_engine import RecalculationEngine
from finance_core.recalculation_queue import RecalculationQueue
from finance_core.policy_service import PolicyService

TEST_DB_NAME = "finance_test"
ACTOR = "user-admin"


@pytest.fixture
def client():
    return FakeMotorClient()


@pytest.fixture
def db(client):
    return client[TEST_DB_NAME]


@pytest.fixture
def operations(client, db):
    engine = RecalculationEngine(db)
    return FinancialOperations(
        client,
        db,
        audit_service=AuditService(db),
        notification_service=NotificationService(db),
        policy_service=PolicyService(db),
        recalculation_queue=RecalculationQueue(engine, db, base_retry_delay=0)
    )


@pytest.fixture
def run(operations):
    """Run a coroutine to completion, then let detached work finish"""
    def _run(coro):
        async def _with_drain():
            result = await coro
            await operations.queue.drain()
            await operations.notifications.drain()
            return result
        return asyncio.run(_with_drain())
    return _run


@pytest.fixture
def project_with_phase(operations, run):
    """Project with a 100000 budget and one phase with a 40000 allocation"""
    project = run(operations.create_project(
        "Riverside Towers", ACTOR, budget={"total": 100000}, owner_id="owner-1", manager_ids=["pm-1"]
    ))
    project_id = str(project["_id"])
    phase = run(operations.create_phase(
        project_id, "Foundation", ACTOR, sequence=1,
        budget_allocation={"materials": 30000, "labour": 10000}
    ))
    return project_id, str(phase["_id"])
