from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
from pathlib import Path
import os
import logging

from audit_service import AuditService
from notification_service import NotificationService
from financial_routes import finance_router
from finance_core.financial_operations import FinancialOperations
from finance_core.recalculation_engine import RecalculationEngine
from finance_core.recalculation_queue import RecalculationQueue
from finance_core.capital_validator import CapitalValidator
from finance_core.policy_service import PolicyService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_operations(client: AsyncIOMotorClient, db) -> FinancialOperations:
    """Wire the service graph for one database"""
    capital_validator = CapitalValidator(db)
    engine = RecalculationEngine(db, capital_validator)
    queue = RecalculationQueue(
        engine,
        db,
        max_attempts=int(os.environ.get('RECALC_MAX_ATTEMPTS', RecalculationQueue.MAX_RETRY_ATTEMPTS)),
        base_retry_delay=float(os.environ.get('RECALC_RETRY_DELAY_SECONDS', RecalculationQueue.BASE_RETRY_DELAY))
    )
    return FinancialOperations(
        client,
        db,
        audit_service=AuditService(db),
        notification_service=NotificationService(db),
        policy_service=PolicyService(db),
        recalculation_queue=queue
    )


async def ensure_indexes(db) -> None:
    await db.phases.create_index([("project_id", 1), ("sequence", 1)])
    await db.investors.create_index("project_allocations.project_id")
    await db.purchase_orders.create_index([("project_id", 1), ("status", 1)])
    await db.labour_entries.create_index([("phase_id", 1), ("status", 1)])
    await db.professional_fees.create_index([("professional_service_id", 1), ("status", 1)])
    await db.expenses.create_index([("project_id", 1), ("status", 1)])
    await db.budget_reallocations.create_index([("project_id", 1), ("executed_at", -1)])
    await db.audit_logs.create_index([("entity_type", 1), ("entity_id", 1), ("timestamp", -1)])


def create_app(client: AsyncIOMotorClient = None, db_name: str = None) -> FastAPI:
    """
    Build the API. The Mongo client is created on startup from MONGO_URL /
    DB_NAME unless one is passed in.
    """
    app = FastAPI(
        title="Construction Finance Engine",
        version="1.0.0",
        description="Financial consistency and recalculation for construction projects"
    )
    app.include_router(finance_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0"
        }

    @app.on_event("startup")
    async def startup_services():
        mongo_client = client or AsyncIOMotorClient(os.environ['MONGO_URL'])
        db = mongo_client[db_name or os.environ['DB_NAME']]

        app.state.client = mongo_client
        app.state.owns_client = client is None
        app.state.operations = build_operations(mongo_client, db)

        await ensure_indexes(db)
        logger.info("[STARTUP] Finance engine ready")

    @app.on_event("shutdown")
    async def shutdown_services():
        operations = app.state.operations
        # Let detached recalculations finish so nothing is silently lost
        await operations.queue.drain()
        if operations.notifications is not None:
            await operations.notifications.drain()
        if app.state.owns_client:
            app.state.client.close()
        logger.info(f"[SHUTDOWN] Recalculation stats: {operations.queue.stats}")

    return app


app = create_app()
