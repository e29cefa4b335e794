"""
FINANCIAL OPERATIONS - MUTATION SITES

Every operation that moves money or constraints:

1. Setup: projects, phases, investors, professional services, purchase orders
2. Constraints: project budget, phase allocation, investor allocation,
   budget reallocation between phases and the project
3. Purchase orders: supplier response, modification approval / rejection,
   delivery, reassignment after rejection
4. Labour: batch approval (batch + entries + ledger + site report, atomic)
5. Professional fees: create, approve, reject, pay
6. Expenses: create, approve (capital + phase budget, then actual spend), reject

RULES:
- Validate first, then mutate inside ONE transaction
- Ledger aggregates are only touched through SpendingLedgerStore
- Recalculation is synchronous (in-session) when the response needs fresh
  figures, otherwise queued after commit
- Audit and notifications run after commit and never fail the operation
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from finance_core.financial_precision import (
    to_decimal, to_decimal128, round_financial, validate_positive, validate_non_negative, ZERO
)
from finance_core.financial_errors import (
    ValidationError, EntityNotFoundError, InsufficientFunds, TransactionFailure
)
from finance_core.ledger_primitives import (
    Ceiling, ensure_category, sum_amounts, bucket_total, calculate_available
)
from finance_core.mongo_utils import as_object_id
from finance_core.spending_ledger import SpendingLedgerStore, LedgerScope, empty_bucket
from finance_core.capital_validator import CapitalValidator
from finance_core.budget_validator import BudgetValidator
from finance_core.recalculation_engine import RecalculationEngine, ForecastHook
from finance_core.recalculation_queue import RecalculationQueue
from finance_core.transaction_coordinator import TransactionCoordinator
from finance_core.policy_service import PolicyService
from finance_core.rejection_advisor import assess
from finance_core.state_machine import (
    PURCHASE_ORDER_MACHINE, PURCHASE_ORDER_FINANCIAL_MACHINE, PROFESSIONAL_FEE_MACHINE, EXPENSE_MACHINE,
    PurchaseOrderStatus, PurchaseOrderFinancialStatus, ProfessionalFeeStatus, ExpenseStatus
)

logger = logging.getLogger(__name__)


PHASE_STATUSES = ("not_started", "in_progress", "completed", "on_hold", "cancelled")
SUPPLIER_ACTIONS = ("accept", "reject", "modify")
MODIFIABLE_PO_FIELDS = ("unit_cost", "quantity_ordered", "delivery_date", "notes")


class ReallocationType:
    PHASE_TO_PHASE = "phase_to_phase"
    PROJECT_TO_PHASE = "project_to_phase"
    PHASE_TO_PROJECT = "phase_to_project"


def normalize_budget(budget: Optional[Dict[str, Any]], field_name: str = "budget") -> Optional[Dict[str, Any]]:
    """
    Validate a budget / allocation payload and convert it for storage.
    None (or an empty dict) means "not set".
    """
    if not budget:
        return None

    normalized = {}
    for key, value in budget.items():
        if key != "total":
            ensure_category(key)
        if value is None:
            continue
        normalized[key] = to_decimal128(validate_non_negative(value, f"{field_name}.{key}"))

    return normalized or None


class FinancialOperations:

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit_service=None,
        notification_service=None,
        policy_service: Optional[PolicyService] = None,
        recalculation_queue: Optional[RecalculationQueue] = None,
        forecast_hook: Optional[ForecastHook] = None
    ):
        self.client = client
        self.db = db
        self.coordinator = TransactionCoordinator(client)
        self.ledger = SpendingLedgerStore(db)
        self.capital = CapitalValidator(db)
        self.budgets = BudgetValidator(db)
        self.engine = RecalculationEngine(db, self.capital, forecast_hook)
        self.queue = recalculation_queue or RecalculationQueue(self.engine, db)
        self.policy = policy_service or PolicyService(db)
        self.audit = audit_service
        self.notifications = notification_service

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _load(self, collection: str, entity: str, entity_id: str, session=None) -> Dict[str, Any]:
        doc = await self.db[collection].find_one(
            {"_id": as_object_id(entity_id, f"{entity}_id")},
            session=session
        )
        if not doc:
            raise EntityNotFoundError(entity, entity_id)
        return doc

    async def _record_audit(self, actor, action, entity_type, entity_id, before=None, after=None, project_id=None):
        if self.audit is None:
            return
        await self.audit.record_audit_entry(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
            project_id=project_id
        )

    def _notify(self, event_type: str, project: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> None:
        if self.notifications is None or not project:
            return
        recipients = [project.get("owner_id")] + list(project.get("manager_ids") or [])
        self.notifications.notify(event_type, [r for r in recipients if r], payload)

    async def _guarded_update(self, collection: str, doc: Dict[str, Any], update: Dict[str, Any], session) -> None:
        """Update only if the status we validated against is still current"""
        result = await self.db[collection].update_one(
            {"_id": doc["_id"], "status": doc.get("status")},
            update,
            session=session
        )
        if result.matched_count == 0:
            raise TransactionFailure(
                f"{collection} {doc['_id']} changed concurrently; retry the operation",
                {"collection": collection, "id": str(doc["_id"])}
            )

    def _schedule(self, scope: str, scope_id: Optional[str], reason: str) -> None:
        if scope_id:
            self.queue.enqueue(scope, scope_id, reason)

    # =========================================================================
    # SETUP
    # =========================================================================

    async def create_project(
        self,
        name: str,
        actor: str,
        budget: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
        manager_ids: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        if not name:
            raise ValidationError("Project name is required")

        now = datetime.utcnow()
        doc = {
            "name": name,
            "budget": normalize_budget(budget),
            "actual_spending": empty_bucket(),
            "committed_cost": empty_bucket(),
            "owner_id": owner_id or actor,
            "manager_ids": manager_ids or [],
            "created_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.projects.insert_one(doc)
        doc["_id"] = result.inserted_id
        project_id = str(result.inserted_id)

        await self.engine.recalculate(project_id)
        await self._record_audit(actor, "CREATE", "PROJECT", project_id, after={"name": name}, project_id=project_id)
        logger.info(f"[SETUP] Project created: {project_id}")
        return doc

    async def create_phase(
        self,
        project_id: str,
        name: str,
        actor: str,
        sequence: int = 0,
        budget_allocation: Optional[Dict[str, Any]] = None,
        status: str = "not_started"
    ) -> Dict[str, Any]:
        await self._load("projects", "project", project_id)
        if status not in PHASE_STATUSES:
            raise ValidationError(f"Invalid phase status: {status}", {"allowed": list(PHASE_STATUSES)})

        now = datetime.utcnow()
        doc = {
            "project_id": project_id,
            "phase_name": name,
            "sequence": sequence,
            "status": status,
            "completion_percentage": 0,
            "budget_allocation": normalize_budget(budget_allocation, "budget_allocation"),
            "actual_spending": empty_bucket(),
            "committed_cost": empty_bucket(),
            "created_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.phases.insert_one(doc)
        doc["_id"] = result.inserted_id
        phase_id = str(result.inserted_id)

        await self.engine.recalculate(project_id)
        await self._record_audit(actor, "CREATE", "PHASE", phase_id, after={"phase_name": name}, project_id=project_id)
        return doc

    async def create_investor(self, name: str, total_invested, actor: str) -> Dict[str, Any]:
        now = datetime.utcnow()
        doc = {
            "name": name,
            "total_invested": to_decimal128(validate_non_negative(total_invested, "total_invested")),
            "project_allocations": [],
            "created_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.investors.insert_one(doc)
        doc["_id"] = result.inserted_id
        await self._record_audit(actor, "CREATE", "INVESTOR", str(result.inserted_id), after={"name": name})
        return doc

    async def create_professional_service(self, project_id: str, name: str, actor: str) -> Dict[str, Any]:
        await self._load("projects", "project", project_id)
        now = datetime.utcnow()
        doc = {
            "project_id": project_id,
            "name": name,
            "fees_pending": to_decimal128(0),
            "fees_approved": to_decimal128(0),
            "fees_paid": to_decimal128(0),
            "created_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.professional_services.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def create_purchase_order(
        self,
        project_id: str,
        supplier_id: str,
        unit_cost,
        quantity_ordered,
        actor: str,
        phase_id: Optional[str] = None,
        budget_category: str = "materials",
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        ensure_category(budget_category)
        unit = validate_positive(unit_cost, "unit_cost")
        quantity = validate_positive(quantity_ordered, "quantity_ordered")

        await self._load("projects", "project", project_id)
        if phase_id:
            phase = await self._load("phases", "phase", phase_id)
            if phase.get("project_id") != project_id:
                raise ValidationError(f"Phase {phase_id} does not belong to project {project_id}")

        now = datetime.utcnow()
        doc = {
            "project_id": project_id,
            "phase_id": phase_id,
            "supplier_id": supplier_id,
            "description": description,
            "budget_category": budget_category,
            "unit_cost": to_decimal128(unit),
            "quantity_ordered": to_decimal128(quantity),
            "total_cost": to_decimal128(unit * quantity),
            "status": PurchaseOrderStatus.ORDER_SENT,
            "financial_status": PurchaseOrderFinancialStatus.UNCOMMITTED,
            "supplier_modifications": None,
            "modification_approved": None,
            "original_order_id": None,
            "state_history": [],
            "created_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.purchase_orders.insert_one(doc)
        doc["_id"] = result.inserted_id
        await self._record_audit(
            actor, "CREATE", "PURCHASE_ORDER", str(result.inserted_id),
            after={"total_cost": unit * quantity, "supplier_id": supplier_id}, project_id=project_id
        )
        return doc

    # =========================================================================
    # CONSTRAINTS
    # =========================================================================

    async def update_project_budget(self, project_id: str, budget: Optional[Dict[str, Any]], actor: str) -> Dict[str, Any]:
        """Set, change or clear (None) the project budget"""
        normalized = normalize_budget(budget)

        async def work(session):
            project = await self._load("projects", "project", project_id, session=session)
            await self.db.projects.update_one(
                {"_id": project["_id"]},
                {"$set": {"budget": normalized, "updated_at": datetime.utcnow()}},
                session=session
            )
            summary = await self.engine.recalculate(project_id, session=session)
            return project.get("budget"), summary

        before, summary = await self.coordinator.run(work, label="update_project_budget")

        await self._record_audit(
            actor, "UPDATE_BUDGET", "PROJECT", project_id,
            before={"budget": before}, after={"budget": normalized}, project_id=project_id
        )
        return {"project_id": project_id, "financial_summary": summary}

    async def update_phase_allocation(
        self,
        phase_id: str,
        budget_allocation: Optional[Dict[str, Any]],
        actor: str
    ) -> Dict[str, Any]:
        """
        Change a phase's budget allocation.
        Exceeding the project budget is reported, never rejected.
        """
        normalized = normalize_budget(budget_allocation, "budget_allocation")

        async def work(session):
            phase = await self._load("phases", "phase", phase_id, session=session)
            await self.db.phases.update_one(
                {"_id": phase["_id"]},
                {"$set": {"budget_allocation": normalized, "updated_at": datetime.utcnow()}},
                session=session
            )
            summary = await self.engine.recalculate(phase["project_id"], session=session)
            return phase, summary

        phase, summary = await self.coordinator.run(work, label="update_phase_allocation")
        project_id = phase["project_id"]

        warnings = []
        if summary["over_allocated"]:
            warnings.append({
                "type": "over_allocated",
                "message": (
                    f"Phase allocations ({summary['phase_allocation_total']}) exceed the project budget "
                    f"by {-summary['unallocated_budget']}"
                )
            })

        await self._record_audit(
            actor, "UPDATE_ALLOCATION", "PHASE", phase_id,
            before={"budget_allocation": phase.get("budget_allocation")},
            after={"budget_allocation": normalized},
            project_id=project_id
        )

        return {
            "phase_id": phase_id,
            "project_id": project_id,
            "phase_allocation_total": summary["phase_allocation_total"],
            "unallocated_budget": summary["unallocated_budget"],
            "over_allocated": summary["over_allocated"],
            "warnings": warnings
        }

    async def change_investor_allocation(
        self,
        investor_id: str,
        project_id: str,
        amount,
        actor: str,
        loan_percentage=None
    ) -> Dict[str, Any]:
        """
        Set an investor's allocation to a project (0 removes it).

        Increases are limited by the investor's total_invested.
        Decreases are capital removals and are blocked when money already
        used or committed on the project would be left uncovered.
        """
        new_amount = round_financial(validate_non_negative(amount, "amount"))
        if loan_percentage is not None:
            loan_percentage = validate_non_negative(loan_percentage, "loan_percentage")
            if loan_percentage > Decimal('100'):
                raise ValidationError("loan_percentage cannot exceed 100")

        warning_ratio = await self.policy.get_capital_removal_warning_ratio()

        async def work(session):
            investor = await self._load("investors", "investor", investor_id, session=session)
            project = await self._load("projects", "project", project_id, session=session)

            allocations = investor.get("project_allocations") or []
            existing = next((a for a in allocations if a.get("project_id") == project_id), None)
            previous_amount = round_financial(to_decimal(existing.get("amount"))) if existing else ZERO
            others = [a for a in allocations if a.get("project_id") != project_id]

            total_invested = to_decimal(investor.get("total_invested"))
            other_total = sum_amounts(a.get("amount") for a in others)
            if other_total + new_amount > total_invested:
                available = max(ZERO, total_invested - other_total)
                raise InsufficientFunds(
                    round_financial(available), new_amount, "investor funds",
                    f"Investor has {available} unallocated, cannot allocate {new_amount} to project {project_id}"
                )

            delta = new_amount - previous_amount
            warnings = []
            removal = None
            if delta < ZERO:
                removal = await self.capital.ensure_capital_removal(project_id, -delta, session=session)
                threshold = removal["current_available"] * warning_ratio
                if removal["current_available"] > ZERO and removal["available_after_removal"] < threshold:
                    warnings.append({
                        "type": "low_available_capital",
                        "message": (
                            f"Available capital drops from {removal['current_available']} to "
                            f"{removal['available_after_removal']} (below {warning_ratio * 100}% of current)"
                        ),
                        "current_available": removal["current_available"],
                        "available_after_removal": removal["available_after_removal"]
                    })

            if new_amount > ZERO:
                entry = dict(existing or {})
                entry.update({
                    "project_id": project_id,
                    "amount": to_decimal128(new_amount),
                    "allocated_at": datetime.utcnow(),
                    "allocated_by": actor
                })
                if loan_percentage is not None:
                    entry["loan_percentage"] = to_decimal128(loan_percentage)
                new_allocations = others + [entry]
            else:
                new_allocations = others

            await self.db.investors.update_one(
                {"_id": investor["_id"]},
                {"$set": {"project_allocations": new_allocations, "updated_at": datetime.utcnow()}},
                session=session
            )

            summary = await self.engine.recalculate(project_id, session=session)
            return {
                "project": project,
                "previous_amount": previous_amount,
                "delta": delta,
                "warnings": warnings,
                "removal_check": removal,
                "summary": summary
            }

        outcome = await self.coordinator.run(work, label="change_investor_allocation")

        await self._record_audit(
            actor, "UPDATE_ALLOCATION", "INVESTOR_ALLOCATION", investor_id,
            before={"project_id": project_id, "amount": outcome["previous_amount"]},
            after={"project_id": project_id, "amount": new_amount},
            project_id=project_id
        )
        self._notify("investor_allocation_changed", outcome["project"], {
            "investor_id": investor_id,
            "project_id": project_id,
            "previous_amount": outcome["previous_amount"],
            "amount": new_amount
        })

        return {
            "investor_id": investor_id,
            "project_id": project_id,
            "previous_amount": outcome["previous_amount"],
            "amount": new_amount,
            "delta": outcome["delta"],
            "warnings": outcome["warnings"],
            "removal_check": outcome["removal_check"],
            "capital": outcome["summary"]["capital"],
            "financial_summary": outcome["summary"]
        }

    @staticmethod
    def _allocation_with_total(phase: Dict[str, Any], delta: Decimal) -> Dict[str, Any]:
        allocation = dict(phase.get("budget_allocation") or {})
        ceiling = Ceiling.from_budget(allocation)
        current = ceiling.amount if ceiling.is_set else ZERO
        allocation["total"] = to_decimal128(round_financial(current + delta))
        return allocation

    async def reallocate_budget(
        self,
        project_id: str,
        amount,
        actor: str,
        from_phase_id: Optional[str] = None,
        to_phase_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move budget allocation between phases, or between a phase and the
        project's unallocated budget.

        phase_to_phase / phase_to_project: limited by what the source phase
        has neither spent nor committed.
        project_to_phase: limited by the project budget not yet allocated
        to phases. The project budget itself does not change.

        Capital is informational only: moving a large share of the
        available capital produces a warning.
        """
        move = round_financial(validate_positive(amount, "amount"))
        if not from_phase_id and not to_phase_id:
            raise ValidationError("A reallocation needs a source phase, a target phase or both")
        if from_phase_id and from_phase_id == to_phase_id:
            raise ValidationError("Source and target phase must differ")

        if from_phase_id and to_phase_id:
            reallocation_type = ReallocationType.PHASE_TO_PHASE
        elif to_phase_id:
            reallocation_type = ReallocationType.PROJECT_TO_PHASE
        else:
            reallocation_type = ReallocationType.PHASE_TO_PROJECT

        warning_ratio = await self.policy.get_reallocation_capital_warning_ratio()

        async def phase_of_project(phase_id, session):
            phase = await self._load("phases", "phase", phase_id, session=session)
            if phase.get("project_id") != project_id:
                raise ValidationError(f"Phase {phase_id} does not belong to project {project_id}")
            return phase

        async def work(session):
            project = await self._load("projects", "project", project_id, session=session)
            source = await phase_of_project(from_phase_id, session) if from_phase_id else None
            target = await phase_of_project(to_phase_id, session) if to_phase_id else None

            if source is not None:
                source_ceiling = Ceiling.from_budget(source.get("budget_allocation"))
                if not source_ceiling.is_set:
                    raise ValidationError(f"Phase {from_phase_id} has no budget allocation to move")
                source_available = calculate_available(
                    source_ceiling,
                    bucket_total(source.get("actual_spending")),
                    bucket_total(source.get("committed_cost"))
                )
                if move > source_available:
                    raise InsufficientFunds(
                        source_available, move, "phase budget",
                        f"Phase {from_phase_id} has {source_available} unspent and uncommitted, cannot move {move}"
                    )
            else:
                project_ceiling = Ceiling.from_budget(project.get("budget"))
                if not project_ceiling.is_set:
                    raise ValidationError(f"Project {project_id} has no budget to allocate from")
                cursor = self.db.phases.find({"project_id": project_id}, session=session)
                allocated = ZERO
                for phase in await cursor.to_list(length=None):
                    phase_ceiling = Ceiling.from_budget(phase.get("budget_allocation"))
                    if phase_ceiling.is_set:
                        allocated += phase_ceiling.amount
                unallocated = round_financial(max(ZERO, project_ceiling.amount - allocated))
                if move > unallocated:
                    raise InsufficientFunds(
                        unallocated, move, "unallocated project budget",
                        f"Project {project_id} has {unallocated} unallocated, cannot move {move} to a phase"
                    )

            warnings = []
            capital = await self.capital.get_capital_position(project_id, session=session)
            available_capital = capital["available"]
            if available_capital is not None and available_capital > ZERO and move > available_capital * warning_ratio:
                warnings.append({
                    "type": "large_share_of_capital",
                    "message": (
                        f"Reallocating {move} while available capital is {available_capital} "
                        f"(more than {warning_ratio * 100}%)"
                    )
                })

            now = datetime.utcnow()
            if source is not None:
                await self.db.phases.update_one(
                    {"_id": source["_id"]},
                    {"$set": {"budget_allocation": self._allocation_with_total(source, -move), "updated_at": now}},
                    session=session
                )
            if target is not None:
                await self.db.phases.update_one(
                    {"_id": target["_id"]},
                    {"$set": {"budget_allocation": self._allocation_with_total(target, move), "updated_at": now}},
                    session=session
                )

            record = {
                "project_id": project_id,
                "reallocation_type": reallocation_type,
                "from_phase_id": from_phase_id,
                "to_phase_id": to_phase_id,
                "amount": to_decimal128(move),
                "reason": reason,
                "status": "executed",
                "warnings": warnings,
                "executed_by": actor,
                "executed_at": now,
                "created_at": now
            }
            result = await self.db.budget_reallocations.insert_one(record, session=session)

            summary = await self.engine.recalculate(project_id, session=session)
            return str(result.inserted_id), project, warnings, summary

        reallocation_id, project, warnings, summary = await self.coordinator.run(work, label="reallocate_budget")

        await self._record_audit(
            actor, "REALLOCATE", "BUDGET_REALLOCATION", reallocation_id,
            after={
                "reallocation_type": reallocation_type,
                "from_phase_id": from_phase_id,
                "to_phase_id": to_phase_id,
                "amount": move
            },
            project_id=project_id
        )
        self._notify("budget_reallocated", project, {
            "reallocation_id": reallocation_id,
            "reallocation_type": reallocation_type,
            "amount": move
        })
        logger.info(f"[REALLOCATION] {reallocation_type} {move} on project {project_id}")

        return {
            "reallocation_id": reallocation_id,
            "reallocation_type": reallocation_type,
            "amount": move,
            "from_phase_id": from_phase_id,
            "to_phase_id": to_phase_id,
            "phase_allocation_total": summary["phase_allocation_total"],
            "unallocated_budget": summary["unallocated_budget"],
            "warnings": warnings,
            "financial_summary": summary
        }

    # =========================================================================
    # PURCHASE ORDERS
    # =========================================================================

    @staticmethod
    def _po_update(
        po: Dict[str, Any],
        to_state: str,
        actor: str,
        extra_set: Optional[Dict[str, Any]] = None,
        financial_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        extra_set = dict(extra_set or {})
        if financial_to:
            PURCHASE_ORDER_FINANCIAL_MACHINE.validate_transition(
                po.get("financial_status", PurchaseOrderFinancialStatus.UNCOMMITTED), financial_to
            )
            extra_set["financial_status"] = financial_to
        return PURCHASE_ORDER_MACHINE.build_update(po, to_state, actor, metadata, extra_set)

    @staticmethod
    def _require_phase(po: Dict[str, Any], step: str) -> None:
        # Delivery moves the commitment to a phase, so it must be known up front
        if not po.get("phase_id"):
            raise ValidationError(
                f"Purchase order {po['_id']} must be assigned to a phase before {step}",
                {"po_id": str(po["_id"]), "step": step}
            )

    async def supplier_respond(
        self,
        po_id: str,
        action: str,
        actor: str,
        reason_category: Optional[str] = None,
        subcategory: Optional[str] = None,
        notes: Optional[str] = None,
        modifications: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Record the supplier's answer to a purchase order.

        accept: commits the order cost (no capital check on this path)
        reject: classifies the reason with the retry advisor
        modify: stores the proposed terms for buyer approval
        """
        if action not in SUPPLIER_ACTIONS:
            raise ValidationError(f"Invalid supplier action: {action}", {"allowed": list(SUPPLIER_ACTIONS)})

        advice = None
        clean_mods = None
        if action == "reject":
            if not reason_category:
                raise ValidationError("A rejection reason is required")
            advice = assess(reason_category, subcategory)
        elif action == "modify":
            clean_mods = self._clean_modifications(modifications)

        async def work(session):
            po = await self._load("purchase_orders", "purchase_order", po_id, session=session)

            if action == "accept":
                extra = {"accepted_at": datetime.utcnow(), "supplier_notes": notes}
                if po.get("supplier_modifications"):
                    # Accepting the order as sent withdraws the proposed terms
                    extra.update({
                        "supplier_modifications": None,
                        "withdrawn_modifications": po["supplier_modifications"],
                        "modification_approved": False
                    })
                update = self._po_update(
                    po, PurchaseOrderStatus.ORDER_ACCEPTED, actor, extra,
                    financial_to=PurchaseOrderFinancialStatus.COMMITTED
                )
                self._require_phase(po, "it is committed")
                await self._guarded_update("purchase_orders", po, update, session)
                await self.ledger.record_commitment(
                    po["project_id"], po.get("phase_id"), po.get("budget_category", "materials"),
                    po["total_cost"], session
                )
            elif action == "reject":
                update = self._po_update(
                    po, PurchaseOrderStatus.ORDER_REJECTED, actor,
                    {
                        "rejection_reason": reason_category,
                        "rejection_subcategory": subcategory,
                        "rejection_notes": notes,
                        "is_retryable": advice["retryable"],
                        "retry_recommendation": advice["recommendation"],
                        "rejected_at": datetime.utcnow()
                    },
                    metadata={"reason": reason_category, "subcategory": subcategory}
                )
                await self._guarded_update("purchase_orders", po, update, session)
            else:
                update = self._po_update(
                    po, PurchaseOrderStatus.ORDER_MODIFIED, actor,
                    {
                        "supplier_modifications": clean_mods,
                        "modification_approved": None,
                        "supplier_notes": notes,
                        "modified_at": datetime.utcnow()
                    }
                )
                await self._guarded_update("purchase_orders", po, update, session)

            project = await self._load("projects", "project", po["project_id"], session=session)
            return po, project

        po, project = await self.coordinator.run(work, label=f"supplier_{action}")
        project_id = po["project_id"]

        if action == "accept":
            self._schedule(LedgerScope.PROJECT, project_id, "po_accepted")

        await self._record_audit(
            actor, f"SUPPLIER_{action.upper()}", "PURCHASE_ORDER", po_id,
            before={"status": po["status"]},
            after={"action": action, "advice": advice, "modifications": clean_mods},
            project_id=project_id
        )
        self._notify(f"purchase_order_{action}", project, {"po_id": po_id, "advice": advice})

        result = {"po_id": po_id, "action": action, "previous_status": po["status"]}
        if advice:
            result["advice"] = advice
        if clean_mods:
            result["supplier_modifications"] = clean_mods
        return result

    @staticmethod
    def _clean_modifications(modifications: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        mods = {k: v for k, v in (modifications or {}).items() if v is not None}
        if not mods:
            raise ValidationError("Supplier modifications cannot be empty")
        unknown = set(mods) - set(MODIFIABLE_PO_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unsupported modification fields: {sorted(unknown)}",
                {"allowed": list(MODIFIABLE_PO_FIELDS)}
            )
        for field in ("unit_cost", "quantity_ordered"):
            if field in mods:
                mods[field] = to_decimal128(validate_positive(mods[field], field))
        return mods

    async def approve_po_modification(
        self,
        po_id: str,
        actor: str,
        auto_commit: bool = False,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Accept the supplier's modified terms.

        With auto_commit the order is accepted and committed immediately,
        after a capital check (blocks only when capital is set). Without it
        the revised order goes back to the supplier.
        """

        async def work(session):
            po = await self._load("purchase_orders", "purchase_order", po_id, session=session)

            if po.get("status") != PurchaseOrderStatus.ORDER_MODIFIED:
                raise ValidationError(
                    f"Purchase order {po_id} has no pending modification (status {po.get('status')})",
                    {"status": po.get("status")}
                )
            mods = po.get("supplier_modifications") or {}
            if not mods:
                raise ValidationError("Purchase order has no supplier modifications to approve")
            if po.get("modification_approved") is not None:
                raise ValidationError("Modification has already been decided")

            quantity = to_decimal(mods.get("quantity_ordered") or po.get("quantity_ordered"))
            unit_cost = to_decimal(
                mods["unit_cost"] if mods.get("unit_cost") is not None else po.get("unit_cost")
            )
            validate_positive(quantity, "quantity_ordered")
            validate_positive(unit_cost, "unit_cost")
            new_total = round_financial(quantity * unit_cost)

            capital_check = None
            if auto_commit:
                self._require_phase(po, "it is committed")
                capital_check = await self.capital.ensure_availability(po["project_id"], new_total, session=session)

            now = datetime.utcnow()
            extra = {
                "unit_cost": to_decimal128(unit_cost),
                "quantity_ordered": to_decimal128(quantity),
                "total_cost": to_decimal128(new_total),
                "original_terms": {
                    "unit_cost": po.get("unit_cost"),
                    "quantity_ordered": po.get("quantity_ordered"),
                    "total_cost": po.get("total_cost")
                },
                "modification_approved": True,
                "modification_approved_by": actor,
                "modification_approved_at": now,
                "modification_notes": notes
            }

            if auto_commit:
                extra["accepted_at"] = now
                update = self._po_update(
                    po, PurchaseOrderStatus.ORDER_ACCEPTED, actor, extra,
                    financial_to=PurchaseOrderFinancialStatus.COMMITTED,
                    metadata={"auto_commit": True}
                )
                await self._guarded_update("purchase_orders", po, update, session)
                await self.ledger.record_commitment(
                    po["project_id"], po.get("phase_id"), po.get("budget_category", "materials"),
                    new_total, session
                )
                summary = await self.engine.recalculate(po["project_id"], session=session)
            else:
                update = self._po_update(
                    po, PurchaseOrderStatus.ORDER_SENT, actor, extra,
                    metadata={"auto_commit": False}
                )
                await self._guarded_update("purchase_orders", po, update, session)
                summary = None

            project = await self._load("projects", "project", po["project_id"], session=session)
            return po, project, new_total, capital_check, summary

        po, project, new_total, capital_check, summary = await self.coordinator.run(
            work, label="approve_po_modification"
        )

        if auto_commit:
            self._schedule(LedgerScope.PHASE, po.get("phase_id"), "po_modification_committed")

        await self._record_audit(
            actor, "APPROVE_MODIFICATION", "PURCHASE_ORDER", po_id,
            before={"total_cost": po.get("total_cost"), "status": po["status"]},
            after={"total_cost": new_total, "auto_commit": auto_commit},
            project_id=po["project_id"]
        )
        self._notify("purchase_order_modification_approved", project, {
            "po_id": po_id, "total_cost": new_total, "auto_commit": auto_commit
        })

        return {
            "po_id": po_id,
            "status": PurchaseOrderStatus.ORDER_ACCEPTED if auto_commit else PurchaseOrderStatus.ORDER_SENT,
            "financial_status": (
                PurchaseOrderFinancialStatus.COMMITTED if auto_commit
                else po.get("financial_status", PurchaseOrderFinancialStatus.UNCOMMITTED)
            ),
            "total_cost": new_total,
            "committed": new_total if auto_commit else ZERO,
            "capital_check": capital_check,
            "financial_summary": summary
        }

    async def reject_po_modification(
        self,
        po_id: str,
        actor: str,
        reason: Optional[str] = None,
        revert_to_original: bool = True
    ) -> Dict[str, Any]:
        """Decline the supplier's terms; the original order goes back out"""

        async def work(session):
            po = await self._load("purchase_orders", "purchase_order", po_id, session=session)
            if po.get("status") != PurchaseOrderStatus.ORDER_MODIFIED:
                raise ValidationError(
                    f"Purchase order {po_id} has no pending modification (status {po.get('status')})"
                )
            if po.get("modification_approved") is not None:
                raise ValidationError("Modification has already been decided")

            extra = {
                "modification_approved": False,
                "modification_rejected_by": actor,
                "modification_rejected_at": datetime.utcnow(),
                "modification_rejection_reason": reason
            }
            if revert_to_original:
                extra["rejected_modifications"] = po.get("supplier_modifications")
                extra["supplier_modifications"] = None

            update = self._po_update(po, PurchaseOrderStatus.ORDER_SENT, actor, extra, metadata={"reason": reason})
            await self._guarded_update("purchase_orders", po, update, session)
            return po

        po = await self.coordinator.run(work, label="reject_po_modification")

        await self._record_audit(
            actor, "REJECT_MODIFICATION", "PURCHASE_ORDER", po_id,
            before={"supplier_modifications": po.get("supplier_modifications")},
            after={"reason": reason, "reverted": revert_to_original},
            project_id=po["project_id"]
        )
        return {"po_id": po_id, "status": PurchaseOrderStatus.ORDER_SENT, "reverted": revert_to_original}

    async def confirm_po_delivery(self, po_id: str, actor: str, actual_total=None) -> Dict[str, Any]:
        """Delivered orders move from committed cost to actual spend"""

        async def work(session):
            po = await self._load("purchase_orders", "purchase_order", po_id, session=session)
            self._require_phase(po, "delivery is recorded")

            committed_amount = round_financial(to_decimal(po["total_cost"]))
            spent_amount = round_financial(
                validate_positive(actual_total, "actual_total") if actual_total is not None else committed_amount
            )

            update = self._po_update(
                po, PurchaseOrderStatus.DELIVERED, actor,
                {"delivered_at": datetime.utcnow(), "actual_total_cost": to_decimal128(spent_amount)},
                financial_to=PurchaseOrderFinancialStatus.FULFILLED
            )
            await self._guarded_update("purchase_orders", po, update, session)
            await self.ledger.fulfil_commitment(
                po["project_id"], po["phase_id"], po.get("budget_category", "materials"),
                committed_amount, spent_amount, session
            )
            return po, spent_amount

        po, spent_amount = await self.coordinator.run(work, label="confirm_po_delivery")

        self._schedule(LedgerScope.PHASE, po["phase_id"], "po_delivered")
        self._schedule(LedgerScope.PROJECT, po["project_id"], "po_delivered")

        await self._record_audit(
            actor, "DELIVER", "PURCHASE_ORDER", po_id,
            before={"financial_status": po.get("financial_status")},
            after={"financial_status": PurchaseOrderFinancialStatus.FULFILLED, "actual_total_cost": spent_amount},
            project_id=po["project_id"]
        )
        return {"po_id": po_id, "status": PurchaseOrderStatus.DELIVERED, "actual_total_cost": spent_amount}

    async def reassign_rejected_po(
        self,
        po_id: str,
        new_supplier_id: str,
        actor: str,
        unit_cost=None,
        quantity_ordered=None
    ) -> Dict[str, Any]:
        """
        Rejected orders are terminal; a new order linked by
        original_order_id goes to a different supplier.
        """

        async def work(session):
            po = await self._load("purchase_orders", "purchase_order", po_id, session=session)
            if po.get("status") != PurchaseOrderStatus.ORDER_REJECTED:
                raise ValidationError(
                    f"Only rejected purchase orders can be reassigned (status {po.get('status')})"
                )
            if po.get("reassigned_to"):
                raise ValidationError(f"Purchase order {po_id} was already reassigned to {po['reassigned_to']}")
            if new_supplier_id == po.get("supplier_id"):
                raise ValidationError("New supplier must differ from the supplier who rejected the order")

            unit = validate_positive(unit_cost if unit_cost is not None else po["unit_cost"], "unit_cost")
            quantity = validate_positive(
                quantity_ordered if quantity_ordered is not None else po["quantity_ordered"], "quantity_ordered"
            )

            now = datetime.utcnow()
            new_po = {
                "project_id": po["project_id"],
                "phase_id": po.get("phase_id"),
                "supplier_id": new_supplier_id,
                "description": po.get("description"),
                "budget_category": po.get("budget_category", "materials"),
                "unit_cost": to_decimal128(unit),
                "quantity_ordered": to_decimal128(quantity),
                "total_cost": to_decimal128(unit * quantity),
                "status": PurchaseOrderStatus.ORDER_SENT,
                "financial_status": PurchaseOrderFinancialStatus.UNCOMMITTED,
                "supplier_modifications": None,
                "modification_approved": None,
                "original_order_id": po_id,
                "state_history": [],
                "created_by": actor,
                "created_at": now,
                "updated_at": now
            }
            result = await self.db.purchase_orders.insert_one(new_po, session=session)
            new_id = str(result.inserted_id)

            await self.db.purchase_orders.update_one(
                {"_id": po["_id"]},
                {"$set": {"reassigned_to": new_id, "updated_at": now}},
                session=session
            )
            return po, new_id

        po, new_id = await self.coordinator.run(work, label="reassign_rejected_po")

        await self._record_audit(
            actor, "REASSIGN", "PURCHASE_ORDER", po_id,
            before={"supplier_id": po.get("supplier_id")},
            after={"supplier_id": new_supplier_id, "new_po_id": new_id},
            project_id=po["project_id"]
        )
        return {"original_order_id": po_id, "po_id": new_id, "supplier_id": new_supplier_id}

    # =========================================================================
    # LABOUR
    # =========================================================================

    async def _cost_labour_entries(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Split hours into regular / overtime and price them.
        Overtime is either given per entry or derived from the daily threshold.
        """
        if not entries:
            raise ValidationError("Labour batch has no entries")

        multiplier = await self.policy.get_overtime_multiplier()
        regular_day = await self.policy.get_regular_hours_per_day()

        costed = []
        for index, entry in enumerate(entries):
            total_hours = validate_positive(entry.get("total_hours"), f"entries[{index}].total_hours")
            rate = validate_positive(entry.get("hourly_rate"), f"entries[{index}].hourly_rate")

            if entry.get("overtime_hours") is not None:
                overtime_hours = validate_non_negative(entry["overtime_hours"], f"entries[{index}].overtime_hours")
                if overtime_hours > total_hours:
                    raise ValidationError(f"entries[{index}]: overtime hours exceed total hours")
            else:
                overtime_hours = max(ZERO, total_hours - regular_day)
            regular_hours = total_hours - overtime_hours

            regular_cost = round_financial(regular_hours * rate)
            overtime_cost = round_financial(overtime_hours * rate * multiplier)

            costed.append({
                "worker_id": entry.get("worker_id"),
                "worker_name": entry.get("worker_name"),
                "skill_type": entry.get("skill_type"),
                "work_date": entry.get("work_date"),
                "total_hours": to_decimal128(total_hours),
                "regular_hours": to_decimal128(regular_hours),
                "overtime_hours": to_decimal128(overtime_hours),
                "hourly_rate": to_decimal128(rate),
                "regular_cost": to_decimal128(regular_cost),
                "overtime_cost": to_decimal128(overtime_cost),
                "total_cost": to_decimal128(regular_cost + overtime_cost),
            })
        return costed

    async def approve_labour_batch(
        self,
        project_id: str,
        phase_id: str,
        entries: List[Dict[str, Any]],
        actor: str,
        source_report_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Approve a batch of labour entries in one transaction:
        batch, entries, entry ids on the batch, phase and project labour
        spend and the source site report. Any failure leaves nothing behind.
        """
        costed = await self._cost_labour_entries(entries)
        batch_total = round_financial(sum_amounts(e["total_cost"] for e in costed))
        total_hours = sum_amounts(e["total_hours"] for e in costed)

        async def work(session):
            # Blocks only when the phase labour allocation is set
            budget_check = await self.budgets.ensure_availability(
                LedgerScope.PHASE, phase_id, batch_total, category="labour", session=session
            )

            report = None
            if source_report_id:
                report = await self._load("site_reports", "site_report", source_report_id, session=session)
                if report.get("status") == "converted":
                    raise ValidationError(f"Site report {source_report_id} was already converted")

            now = datetime.utcnow()
            batch_doc = {
                "project_id": project_id,
                "phase_id": phase_id,
                "status": "approved",
                "entry_ids": [],
                "entry_count": len(costed),
                "total_hours": to_decimal128(total_hours),
                "total_cost": to_decimal128(batch_total),
                "source_report_id": source_report_id,
                "approved_by": actor,
                "approved_at": now,
                "created_at": now
            }
            batch_result = await self.db.labour_batches.insert_one(batch_doc, session=session)
            batch_id = str(batch_result.inserted_id)

            entry_docs = [
                {
                    **entry,
                    "batch_id": batch_id,
                    "project_id": project_id,
                    "phase_id": phase_id,
                    "status": "approved",
                    "approved_by": actor,
                    "approved_at": now,
                    "created_at": now
                }
                for entry in costed
            ]
            entries_result = await self.db.labour_entries.insert_many(entry_docs, session=session)
            entry_ids = [str(i) for i in entries_result.inserted_ids]

            await self.db.labour_batches.update_one(
                {"_id": batch_result.inserted_id},
                {"$set": {"entry_ids": entry_ids}},
                session=session
            )

            await self.ledger.record_spend(project_id, phase_id, "labour", batch_total, session)

            if report:
                await self.db.site_reports.update_one(
                    {"_id": report["_id"]},
                    {"$set": {"status": "converted", "labour_batch_id": batch_id, "converted_at": now}},
                    session=session
                )

            project = await self._load("projects", "project", project_id, session=session)
            return batch_id, entry_ids, budget_check, project

        batch_id, entry_ids, budget_check, project = await self.coordinator.run(
            work, label="approve_labour_batch"
        )

        self._schedule(LedgerScope.PHASE, phase_id, "labour_batch_approved")
        self._schedule(LedgerScope.PROJECT, project_id, "labour_batch_approved")

        await self._record_audit(
            actor, "APPROVE", "LABOUR_BATCH", batch_id,
            after={"total_cost": batch_total, "entry_count": len(entry_ids), "phase_id": phase_id},
            project_id=project_id
        )
        self._notify("labour_batch_approved", project, {
            "batch_id": batch_id, "phase_id": phase_id, "total_cost": batch_total
        })

        return {
            "batch_id": batch_id,
            "entry_ids": entry_ids,
            "total_cost": batch_total,
            "total_hours": total_hours,
            "budget_check": budget_check
        }

    # =========================================================================
    # PROFESSIONAL FEES
    # =========================================================================

    async def create_professional_fee(
        self,
        service_id: str,
        amount,
        actor: str,
        phase_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        fee_amount = round_financial(validate_positive(amount, "amount"))

        async def work(session):
            service = await self._load("professional_services", "professional_service", service_id, session=session)
            if phase_id:
                phase = await self._load("phases", "phase", phase_id, session=session)
                if phase.get("project_id") != service["project_id"]:
                    raise ValidationError(f"Phase {phase_id} does not belong to the service's project")

            now = datetime.utcnow()
            fee = {
                "professional_service_id": service_id,
                "project_id": service["project_id"],
                "phase_id": phase_id,
                "amount": to_decimal128(fee_amount),
                "description": description,
                "status": ProfessionalFeeStatus.PENDING,
                "state_history": [],
                "created_by": actor,
                "created_at": now,
                "updated_at": now
            }
            result = await self.db.professional_fees.insert_one(fee, session=session)
            await self.db.professional_services.update_one(
                {"_id": service["_id"]},
                {"$inc": {"fees_pending": to_decimal128(fee_amount)}},
                session=session
            )
            fee["_id"] = result.inserted_id
            return fee

        fee = await self.coordinator.run(work, label="create_professional_fee")
        await self._record_audit(
            actor, "CREATE", "PROFESSIONAL_FEE", str(fee["_id"]),
            after={"amount": fee_amount}, project_id=fee["project_id"]
        )
        return fee

    async def approve_professional_fee(self, fee_id: str, actor: str) -> Dict[str, Any]:
        """
        Approved fees count as spent: the fee amount is recorded against
        the phase. The capital check only produces a warning.
        """
        category = await self.policy.get_professional_fee_category()
        warn_on_shortfall = await self.policy.should_warn_on_fee_capital_shortfall()

        async def work(session):
            fee = await self._load("professional_fees", "professional_fee", fee_id, session=session)
            PROFESSIONAL_FEE_MACHINE.validate_transition(fee.get("status"), ProfessionalFeeStatus.APPROVED)
            if not fee.get("phase_id"):
                raise ValidationError("Professional fee must be assigned to a phase before approval")

            amount = round_financial(to_decimal(fee["amount"]))

            warnings = []
            if warn_on_shortfall:
                capital_check = await self.capital.validate_availability(fee["project_id"], amount, session=session)
                if not capital_check["is_valid"]:
                    warnings.append({"type": "capital_shortfall", "message": capital_check["message"]})

            now = datetime.utcnow()
            update = PROFESSIONAL_FEE_MACHINE.build_update(
                fee, ProfessionalFeeStatus.APPROVED, actor,
                extra_set={"approved_by": actor, "approved_at": now}
            )
            await self._guarded_update("professional_fees", fee, update, session)

            await self.db.professional_services.update_one(
                {"_id": as_object_id(fee["professional_service_id"], "professional_service_id")},
                {"$inc": {
                    "fees_pending": to_decimal128(-amount),
                    "fees_approved": to_decimal128(amount)
                }},
                session=session
            )
            await self.ledger.record_spend(fee["project_id"], fee["phase_id"], category, amount, session)

            project = await self._load("projects", "project", fee["project_id"], session=session)
            return fee, amount, warnings, project

        fee, amount, warnings, project = await self.coordinator.run(work, label="approve_professional_fee")

        self._schedule(LedgerScope.PHASE, fee["phase_id"], "professional_fee_approved")
        self._schedule(LedgerScope.PROJECT, fee["project_id"], "professional_fee_approved")

        await self._record_audit(
            actor, "APPROVE", "PROFESSIONAL_FEE", fee_id,
            before={"status": fee["status"]}, after={"status": ProfessionalFeeStatus.APPROVED, "amount": amount},
            project_id=fee["project_id"]
        )
        self._notify("professional_fee_approved", project, {"fee_id": fee_id, "amount": amount})

        return {"fee_id": fee_id, "status": ProfessionalFeeStatus.APPROVED, "amount": amount, "warnings": warnings}

    async def reject_professional_fee(self, fee_id: str, actor: str, reason: Optional[str] = None) -> Dict[str, Any]:

        async def work(session):
            fee = await self._load("professional_fees", "professional_fee", fee_id, session=session)
            update = PROFESSIONAL_FEE_MACHINE.build_update(
                fee, ProfessionalFeeStatus.REJECTED, actor,
                metadata={"reason": reason},
                extra_set={"rejected_by": actor, "rejected_at": datetime.utcnow(), "rejection_reason": reason}
            )
            await self._guarded_update("professional_fees", fee, update, session)
            await self.db.professional_services.update_one(
                {"_id": as_object_id(fee["professional_service_id"], "professional_service_id")},
                {"$inc": {"fees_pending": to_decimal128(-to_decimal(fee["amount"]))}},
                session=session
            )
            return fee

        fee = await self.coordinator.run(work, label="reject_professional_fee")
        await self._record_audit(
            actor, "REJECT", "PROFESSIONAL_FEE", fee_id,
            before={"status": fee["status"]}, after={"status": ProfessionalFeeStatus.REJECTED, "reason": reason},
            project_id=fee["project_id"]
        )
        return {"fee_id": fee_id, "status": ProfessionalFeeStatus.REJECTED}

    async def pay_professional_fee(self, fee_id: str, actor: str, payment_reference: Optional[str] = None) -> Dict[str, Any]:

        async def work(session):
            fee = await self._load("professional_fees", "professional_fee", fee_id, session=session)
            amount = to_decimal(fee["amount"])
            update = PROFESSIONAL_FEE_MACHINE.build_update(
                fee, ProfessionalFeeStatus.PAID, actor,
                extra_set={"paid_by": actor, "paid_at": datetime.utcnow(), "payment_reference": payment_reference}
            )
            await self._guarded_update("professional_fees", fee, update, session)
            await self.db.professional_services.update_one(
                {"_id": as_object_id(fee["professional_service_id"], "professional_service_id")},
                {"$inc": {
                    "fees_approved": to_decimal128(-amount),
                    "fees_paid": to_decimal128(amount)
                }},
                session=session
            )
            return fee, amount

        fee, amount = await self.coordinator.run(work, label="pay_professional_fee")
        await self._record_audit(
            actor, "PAY", "PROFESSIONAL_FEE", fee_id,
            before={"status": fee["status"]}, after={"status": ProfessionalFeeStatus.PAID},
            project_id=fee["project_id"]
        )
        return {"fee_id": fee_id, "status": ProfessionalFeeStatus.PAID, "amount": round_financial(amount)}

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def create_expense(
        self,
        project_id: str,
        amount,
        actor: str,
        phase_id: Optional[str] = None,
        category: str = "materials",
        description: Optional[str] = None
    ) -> Dict[str, Any]:
        ensure_category(category)
        expense_amount = round_financial(validate_positive(amount, "amount"))

        await self._load("projects", "project", project_id)
        if phase_id:
            phase = await self._load("phases", "phase", phase_id)
            if phase.get("project_id") != project_id:
                raise ValidationError(f"Phase {phase_id} does not belong to project {project_id}")

        now = datetime.utcnow()
        doc = {
            "project_id": project_id,
            "phase_id": phase_id,
            "category": category,
            "amount": to_decimal128(expense_amount),
            "description": description,
            "status": ExpenseStatus.PENDING,
            "state_history": [],
            "submitted_by": actor,
            "created_at": now,
            "updated_at": now
        }
        result = await self.db.expenses.insert_one(doc)
        doc["_id"] = result.inserted_id
        await self._record_audit(
            actor, "CREATE", "EXPENSE", str(result.inserted_id),
            after={"amount": expense_amount, "category": category}, project_id=project_id
        )
        return doc

    async def approve_expense(self, expense_id: str, actor: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Approved expenses are actual spend. Capital and the phase budget
        block only when they are set.
        """

        async def work(session):
            expense = await self._load("expenses", "expense", expense_id, session=session)
            EXPENSE_MACHINE.validate_transition(expense.get("status"), ExpenseStatus.APPROVED)
            if not expense.get("phase_id"):
                raise ValidationError("Expense must be assigned to a phase before approval")

            amount = round_financial(to_decimal(expense["amount"]))
            capital_check = await self.capital.ensure_availability(expense["project_id"], amount, session=session)
            budget_check = await self.budgets.ensure_availability(
                LedgerScope.PHASE, expense["phase_id"], amount, session=session
            )

            update = EXPENSE_MACHINE.build_update(
                expense, ExpenseStatus.APPROVED, actor,
                metadata={"notes": notes},
                extra_set={"approved_by": actor, "approved_at": datetime.utcnow(), "approval_notes": notes}
            )
            await self._guarded_update("expenses", expense, update, session)
            await self.ledger.record_spend(
                expense["project_id"], expense["phase_id"], expense.get("category", "materials"), amount, session
            )

            project = await self._load("projects", "project", expense["project_id"], session=session)
            return expense, amount, capital_check, budget_check, project

        expense, amount, capital_check, budget_check, project = await self.coordinator.run(
            work, label="approve_expense"
        )

        self._schedule(LedgerScope.PHASE, expense["phase_id"], "expense_approved")
        self._schedule(LedgerScope.PROJECT, expense["project_id"], "expense_approved")

        await self._record_audit(
            actor, "APPROVE", "EXPENSE", expense_id,
            before={"status": expense["status"]}, after={"status": ExpenseStatus.APPROVED, "amount": amount},
            project_id=expense["project_id"]
        )
        self._notify("expense_approved", project, {"expense_id": expense_id, "amount": amount})

        return {
            "expense_id": expense_id,
            "status": ExpenseStatus.APPROVED,
            "amount": amount,
            "capital_check": capital_check,
            "budget_check": budget_check
        }

    async def reject_expense(self, expense_id: str, actor: str, reason: Optional[str] = None) -> Dict[str, Any]:

        async def work(session):
            expense = await self._load("expenses", "expense", expense_id, session=session)
            update = EXPENSE_MACHINE.build_update(
                expense, ExpenseStatus.REJECTED, actor,
                metadata={"reason": reason},
                extra_set={"rejected_by": actor, "rejected_at": datetime.utcnow(), "rejection_reason": reason}
            )
            await self._guarded_update("expenses", expense, update, session)
            return expense

        expense = await self.coordinator.run(work, label="reject_expense")
        await self._record_audit(
            actor, "REJECT", "EXPENSE", expense_id,
            before={"status": expense["status"]}, after={"status": ExpenseStatus.REJECTED, "reason": reason},
            project_id=expense["project_id"]
        )
        return {"expense_id": expense_id, "status": ExpenseStatus.REJECTED}
