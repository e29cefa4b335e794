"""
Financial operation scenario tests
Testing: purchase order lifecycle, labour batch atomicity, professional fees,
constraint changes, budget reallocation, expenses,
integrity checks and the audit trail
"""
import pytest
from decimal import Decimal
from bson import ObjectId, Decimal128
from pymongo.errors import OperationFailure

from finance_core.financial_errors import (
    ValidationError, InsufficientFunds, TransactionFailure, InvalidTransitionError, EntityNotFoundError,
    LedgerConfigurationError
)
from finance_core.financial_precision import to_decimal
from finance_core.financial_integrity_job import FinancialIntegrityJob
from finance_core.invariant_validator import FinancialInvariantValidator
from finance_core.state_machine import (
    PurchaseOrderStatus, PurchaseOrderFinancialStatus, ProfessionalFeeStatus, ExpenseStatus
)

ACTOR = "user-admin"


def load(run, db, collection, doc_id):
    return run(db[collection].find_one({"_id": ObjectId(doc_id)}))


def bucket_value(doc, bucket, category):
    return to_decimal((doc.get(bucket) or {}).get(category))


def fund_project(operations, run, project_id, amount, invested=None):
    investor = run(operations.create_investor("Harbour Fund", invested or amount, ACTOR))
    run(operations.change_investor_allocation(str(investor["_id"]), project_id, amount, ACTOR))
    return str(investor["_id"])


# ============================================
# PURCHASE ORDERS
# ============================================

class TestPurchaseOrderLifecycle:
    """Supplier responses, modification approval and delivery"""

    def _create_po(self, operations, run, project_id, phase_id, unit_cost=500, quantity=10, supplier="sup-1"):
        po = run(operations.create_purchase_order(
            project_id, supplier, unit_cost, quantity, ACTOR, phase_id=phase_id, description="Rebar"
        ))
        return str(po["_id"])

    def test_modification_auto_commit(self, operations, db, run, project_with_phase):
        """500 x 10 modified to 450 x 10 and auto-committed: 4500 committed"""
        project_id, phase_id = project_with_phase
        fund_project(operations, run, project_id, 100000)
        po_id = self._create_po(operations, run, project_id, phase_id)

        response = run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 450}))
        assert response["previous_status"] == PurchaseOrderStatus.ORDER_SENT

        result = run(operations.approve_po_modification(po_id, ACTOR, auto_commit=True))
        assert result["status"] == PurchaseOrderStatus.ORDER_ACCEPTED
        assert result["financial_status"] == PurchaseOrderFinancialStatus.COMMITTED
        assert result["total_cost"] == Decimal("4500.00")
        assert result["committed"] == Decimal("4500.00")
        assert result["capital_check"]["is_valid"] is True
        assert result["financial_summary"]["committed"] == Decimal("4500.00")

        po = load(run, db, "purchase_orders", po_id)
        assert po["status"] == PurchaseOrderStatus.ORDER_ACCEPTED
        assert to_decimal(po["original_terms"]["total_cost"]) == Decimal("5000.00")
        assert [h["to_state"] for h in po["state_history"]] == [
            PurchaseOrderStatus.ORDER_MODIFIED, PurchaseOrderStatus.ORDER_ACCEPTED
        ]

        project = load(run, db, "projects", project_id)
        phase = load(run, db, "phases", phase_id)
        assert bucket_value(project, "committed_cost", "materials") == Decimal("4500.00")
        assert bucket_value(phase, "committed_cost", "materials") == Decimal("4500.00")
        assert to_decimal(project["capital"]["available"]) == Decimal("95500.00")
        print(f"Committed after auto-commit: {project['committed_cost']['total']}")

    def test_auto_commit_blocked_by_capital(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        fund_project(operations, run, project_id, 1000)
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"quantity_ordered": 8}))

        with pytest.raises(InsufficientFunds):
            run(operations.approve_po_modification(po_id, ACTOR, auto_commit=True))

        po = load(run, db, "purchase_orders", po_id)
        assert po["status"] == PurchaseOrderStatus.ORDER_MODIFIED
        assert po["modification_approved"] is None
        assert bucket_value(load(run, db, "projects", project_id), "committed_cost", "total") == Decimal("0")

    def test_approval_without_auto_commit_resends(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 450}))

        result = run(operations.approve_po_modification(po_id, ACTOR))
        assert result["status"] == PurchaseOrderStatus.ORDER_SENT
        assert result["committed"] == Decimal("0")
        assert bucket_value(load(run, db, "projects", project_id), "committed_cost", "total") == Decimal("0")

        # The supplier then accepts the revised order at the new price
        run(operations.supplier_respond(po_id, "accept", "sup-1"))
        project = load(run, db, "projects", project_id)
        assert bucket_value(project, "committed_cost", "materials") == Decimal("4500.00")

    def test_modification_decided_once(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 450}))
        run(operations.reject_po_modification(po_id, ACTOR, reason="Too slow"))

        with pytest.raises(ValidationError):
            run(operations.approve_po_modification(po_id, ACTOR, auto_commit=True))

    def test_reject_modification_reverts(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 450}))

        result = run(operations.reject_po_modification(po_id, ACTOR, reason="Price not agreed"))
        assert result == {"po_id": po_id, "status": PurchaseOrderStatus.ORDER_SENT, "reverted": True}

        po = load(run, db, "purchase_orders", po_id)
        assert po["supplier_modifications"] is None
        assert po["modification_approved"] is False
        assert to_decimal(po["rejected_modifications"]["unit_cost"]) == Decimal("450.00")
        assert to_decimal(po["total_cost"]) == Decimal("5000.00")

    def test_empty_or_unknown_modifications_rejected(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        with pytest.raises(ValidationError):
            run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={}))
        with pytest.raises(ValidationError):
            run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"supplier_id": "x"}))
        with pytest.raises(ValidationError):
            run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": -5}))

    def test_accept_then_deliver(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id, unit_cost=100, quantity=20)
        run(operations.supplier_respond(po_id, "accept", "sup-1", notes="Ships Monday"))

        project = load(run, db, "projects", project_id)
        assert bucket_value(project, "committed_cost", "materials") == Decimal("2000.00")

        result = run(operations.confirm_po_delivery(po_id, ACTOR, actual_total="1950.00"))
        assert result["status"] == PurchaseOrderStatus.DELIVERED

        project = load(run, db, "projects", project_id)
        phase = load(run, db, "phases", phase_id)
        assert bucket_value(project, "committed_cost", "materials") == Decimal("0")
        assert bucket_value(project, "actual_spending", "materials") == Decimal("1950.00")
        assert bucket_value(phase, "actual_spending", "materials") == Decimal("1950.00")
        assert load(run, db, "purchase_orders", po_id)["financial_status"] == PurchaseOrderFinancialStatus.FULFILLED

        # Detached recalculation refreshed the phase summary
        assert to_decimal(phase["financial_summary"]["actual"]) == Decimal("1950.00")

    def test_order_without_phase_cannot_be_committed(self, operations, db, run, project_with_phase):
        project_id, _ = project_with_phase
        fund_project(operations, run, project_id, 100000)
        po_id = self._create_po(operations, run, project_id, None, unit_cost=100, quantity=10)

        with pytest.raises(ValidationError):
            run(operations.supplier_respond(po_id, "accept", "sup-1"))

        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 90}))
        with pytest.raises(ValidationError):
            run(operations.approve_po_modification(po_id, ACTOR, auto_commit=True))

        po = load(run, db, "purchase_orders", po_id)
        assert po["status"] == PurchaseOrderStatus.ORDER_MODIFIED
        assert po["financial_status"] == PurchaseOrderFinancialStatus.UNCOMMITTED
        project = load(run, db, "projects", project_id)
        assert bucket_value(project, "committed_cost", "total") == Decimal("0")
        assert to_decimal(project["capital"]["available"]) == Decimal("100000.00")

    def test_supplier_accepting_modified_order_withdraws_terms(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "modify", "sup-1", modifications={"unit_cost": 450}))

        run(operations.supplier_respond(po_id, "accept", "sup-1"))

        po = load(run, db, "purchase_orders", po_id)
        assert po["status"] == PurchaseOrderStatus.ORDER_ACCEPTED
        assert po["supplier_modifications"] is None
        assert po["modification_approved"] is False
        assert to_decimal(po["withdrawn_modifications"]["unit_cost"]) == Decimal("450.00")
        assert to_decimal(po["total_cost"]) == Decimal("5000.00")
        assert bucket_value(load(run, db, "projects", project_id), "committed_cost", "materials") == Decimal("5000.00")

        with pytest.raises(ValidationError):
            run(operations.approve_po_modification(po_id, ACTOR, auto_commit=True))

    def test_cannot_deliver_unaccepted_order(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        with pytest.raises(InvalidTransitionError):
            run(operations.confirm_po_delivery(po_id, ACTOR))

    def test_reject_and_reassign(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)

        result = run(operations.supplier_respond(
            po_id, "reject", "sup-1", reason_category="unavailable", subcategory="out_of_stock"
        ))
        assert result["advice"]["retryable"] is False
        assert result["advice"]["subcategory_label"] == "Out of stock"

        po = load(run, db, "purchase_orders", po_id)
        assert po["is_retryable"] is False
        assert po["retry_recommendation"] == "Find alternative supplier or material"

        with pytest.raises(ValidationError):
            run(operations.reassign_rejected_po(po_id, "sup-1", ACTOR))

        reassigned = run(operations.reassign_rejected_po(po_id, "sup-2", ACTOR, unit_cost=520))
        new_po = load(run, db, "purchase_orders", reassigned["po_id"])
        assert new_po["original_order_id"] == po_id
        assert new_po["status"] == PurchaseOrderStatus.ORDER_SENT
        assert to_decimal(new_po["total_cost"]) == Decimal("5200.00")

        with pytest.raises(ValidationError):
            run(operations.reassign_rejected_po(po_id, "sup-3", ACTOR))

    def test_rejection_requires_reason(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        with pytest.raises(ValidationError):
            run(operations.supplier_respond(po_id, "reject", "sup-1"))

    def test_rejected_order_is_terminal(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        po_id = self._create_po(operations, run, project_id, phase_id)
        run(operations.supplier_respond(po_id, "reject", "sup-1", reason_category="price_too_high"))
        with pytest.raises(InvalidTransitionError):
            run(operations.supplier_respond(po_id, "accept", "sup-1"))

    def test_unknown_order(self, operations, run):
        with pytest.raises(EntityNotFoundError):
            run(operations.supplier_respond(str(ObjectId()), "accept", "sup-1"))


# ============================================
# LABOUR
# ============================================

LABOUR_ENTRIES = [
    {"worker_name": "Ravi", "skill_type": "mason", "total_hours": 10, "hourly_rate": 20},
    {"worker_name": "Sunil", "skill_type": "helper", "total_hours": 8, "hourly_rate": 25},
]


class TestLabourBatchApproval:
    """Batch, entries, ledger and site report commit together or not at all"""

    def _site_report(self, run, db, project_id):
        result = run(db.site_reports.insert_one({"project_id": project_id, "status": "submitted"}))
        return str(result.inserted_id)

    def test_batch_approval(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        report_id = self._site_report(run, db, project_id)

        result = run(operations.approve_labour_batch(
            project_id, phase_id, LABOUR_ENTRIES, ACTOR, source_report_id=report_id
        ))
        # 8h x 20 + 2h x 20 x 1.5 = 220; 8h x 25 = 200
        assert result["total_cost"] == Decimal("420.00")
        assert result["total_hours"] == Decimal("18")
        assert len(result["entry_ids"]) == 2
        assert result["budget_check"]["is_valid"] is True

        batch = load(run, db, "labour_batches", result["batch_id"])
        assert batch["entry_ids"] == result["entry_ids"]

        entry = load(run, db, "labour_entries", result["entry_ids"][0])
        assert to_decimal(entry["overtime_hours"]) == Decimal("2.00")
        assert to_decimal(entry["overtime_cost"]) == Decimal("60.00")
        assert entry["batch_id"] == result["batch_id"]

        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "labour") == Decimal("420.00")
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "labour") == Decimal("420.00")
        assert load(run, db, "site_reports", report_id)["status"] == "converted"

        notifications = run(db.notifications.find({"event_type": "labour_batch_approved"}).to_list(None))
        assert len(notifications) == 1
        assert notifications[0]["recipients"] == ["owner-1", "pm-1"]

    def test_failure_on_last_write_leaves_nothing(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        report_id = self._site_report(run, db, project_id)
        db.site_reports.fail_next("update_one", OperationFailure("WriteConflict"))

        with pytest.raises(TransactionFailure):
            run(operations.approve_labour_batch(
                project_id, phase_id, LABOUR_ENTRIES, ACTOR, source_report_id=report_id
            ))

        assert run(db.labour_batches.count_documents({})) == 0
        assert run(db.labour_entries.count_documents({})) == 0
        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "labour") == Decimal("0")
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "labour") == Decimal("0")
        assert load(run, db, "site_reports", report_id)["status"] == "submitted"
        print("Labour batch rolled back completely")

    def test_project_spend_failure_rolls_back_batch(self, operations, db, run, project_with_phase):
        """The project-spend update is the last ledger write; failing it undoes the whole batch"""
        project_id, phase_id = project_with_phase
        db.projects.fail_next("update_one", OperationFailure("WriteConflict"))

        with pytest.raises(TransactionFailure):
            run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))

        assert run(db.labour_batches.count_documents({})) == 0
        assert run(db.labour_entries.count_documents({})) == 0
        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "labour") == Decimal("0")
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "labour") == Decimal("0")

    def test_audit_failure_keeps_committed_batch(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        db.audit_logs.fail_next("insert_one", RuntimeError("audit store offline"))

        result = run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))
        assert result["total_cost"] == Decimal("420.00")

        assert run(db.labour_batches.count_documents({})) == 1
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "labour") == Decimal("420.00")
        assert run(db.audit_logs.count_documents({"entity_type": "LABOUR_BATCH"})) == 0

    def test_notification_failure_keeps_committed_batch(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        db.notifications.fail_next("insert_one", RuntimeError("notification sink down"))

        result = run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))
        assert len(result["entry_ids"]) == 2

        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "labour") == Decimal("420.00")
        assert run(db.notifications.count_documents({})) == 0
        assert run(db.audit_logs.count_documents({"entity_type": "LABOUR_BATCH"})) == 1

    def test_phase_labour_budget_enforced(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        expensive = [{"worker_name": "Crew", "total_hours": 8, "hourly_rate": 1300}]

        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.approve_labour_batch(project_id, phase_id, expensive, ACTOR))
        assert exc_info.value.scope == "phase budget"
        assert run(db.labour_batches.count_documents({})) == 0

    def test_report_converted_only_once(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        report_id = self._site_report(run, db, project_id)
        run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR, source_report_id=report_id))

        with pytest.raises(ValidationError):
            run(operations.approve_labour_batch(
                project_id, phase_id, LABOUR_ENTRIES, ACTOR, source_report_id=report_id
            ))
        assert run(db.labour_batches.count_documents({})) == 1

    def test_explicit_overtime_and_policy_multiplier(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        run(operations.policy.update_policy("overtime_multiplier", "2"))
        entries = [{"worker_name": "Anil", "total_hours": 6, "overtime_hours": 1, "hourly_rate": 10}]

        result = run(operations.approve_labour_batch(project_id, phase_id, entries, ACTOR))
        # 5h x 10 + 1h x 10 x 2
        assert result["total_cost"] == Decimal("70.00")

    def test_invalid_entries(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        with pytest.raises(ValidationError):
            run(operations.approve_labour_batch(project_id, phase_id, [], ACTOR))
        with pytest.raises(ValidationError):
            run(operations.approve_labour_batch(
                project_id, phase_id, [{"worker_name": "X", "total_hours": 4, "overtime_hours": 5, "hourly_rate": 10}],
                ACTOR
            ))


# ============================================
# PROFESSIONAL FEES
# ============================================

class TestProfessionalFees:
    """PENDING -> APPROVED -> PAID with service counters and ledger spend"""

    def _fee(self, operations, run, project_id, phase_id, amount=5000):
        service = run(operations.create_professional_service(project_id, "Structural Consultants", ACTOR))
        service_id = str(service["_id"])
        fee = run(operations.create_professional_fee(service_id, amount, ACTOR, phase_id=phase_id))
        return service_id, str(fee["_id"])

    def test_fee_lifecycle(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        service_id, fee_id = self._fee(operations, run, project_id, phase_id)

        service = load(run, db, "professional_services", service_id)
        assert to_decimal(service["fees_pending"]) == Decimal("5000.00")

        approved = run(operations.approve_professional_fee(fee_id, ACTOR))
        assert approved["status"] == ProfessionalFeeStatus.APPROVED
        assert approved["warnings"] == []

        service = load(run, db, "professional_services", service_id)
        assert to_decimal(service["fees_pending"]) == Decimal("0")
        assert to_decimal(service["fees_approved"]) == Decimal("5000.00")
        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "subcontractors") == Decimal("5000.00")

        paid = run(operations.pay_professional_fee(fee_id, ACTOR, payment_reference="NEFT-991"))
        assert paid["amount"] == Decimal("5000.00")
        service = load(run, db, "professional_services", service_id)
        assert to_decimal(service["fees_approved"]) == Decimal("0")
        assert to_decimal(service["fees_paid"]) == Decimal("5000.00")

        with pytest.raises(InvalidTransitionError):
            run(operations.approve_professional_fee(fee_id, ACTOR))

    def test_capital_shortfall_is_a_warning(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        fund_project(operations, run, project_id, 1000)
        _, fee_id = self._fee(operations, run, project_id, phase_id)

        result = run(operations.approve_professional_fee(fee_id, ACTOR))
        assert result["status"] == ProfessionalFeeStatus.APPROVED
        assert result["warnings"][0]["type"] == "capital_shortfall"

    def test_reject_pending_fee(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        service_id, fee_id = self._fee(operations, run, project_id, phase_id, amount=1200)

        run(operations.reject_professional_fee(fee_id, ACTOR, reason="Duplicate invoice"))
        assert to_decimal(load(run, db, "professional_services", service_id)["fees_pending"]) == Decimal("0")
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "total") == Decimal("0")

        with pytest.raises(InvalidTransitionError):
            run(operations.pay_professional_fee(fee_id, ACTOR))

    def test_approval_requires_phase(self, operations, run, project_with_phase):
        project_id, _ = project_with_phase
        _, fee_id = self._fee(operations, run, project_id, None)
        with pytest.raises(ValidationError):
            run(operations.approve_professional_fee(fee_id, ACTOR))


# ============================================
# CONSTRAINT CHANGES
# ============================================

class TestConstraintChanges:
    """Budgets, phase allocations and investor allocations"""

    def test_phase_over_allocation_is_reported(self, operations, run, project_with_phase):
        _, phase_id = project_with_phase
        result = run(operations.update_phase_allocation(phase_id, {"total": 120000}, ACTOR))
        assert result["over_allocated"] is True
        assert result["unallocated_budget"] == Decimal("-20000.00")
        assert result["warnings"][0]["type"] == "over_allocated"

    def test_clear_project_budget(self, operations, run, project_with_phase):
        project_id, _ = project_with_phase
        result = run(operations.update_project_budget(project_id, None, ACTOR))
        summary = result["financial_summary"]
        assert summary["status"] == "not_set"
        assert summary["constraint_not_set"] is True
        assert summary["unallocated_budget"] is None

    def test_budget_rejects_unknown_category(self, operations, run, project_with_phase):
        project_id, _ = project_with_phase
        with pytest.raises(LedgerConfigurationError):
            run(operations.update_project_budget(project_id, {"catering": 10}, ACTOR))

    def test_investor_cannot_over_allocate(self, operations, run, project_with_phase):
        project_id, _ = project_with_phase
        investor = run(operations.create_investor("Small Fund", 50000, ACTOR))
        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.change_investor_allocation(str(investor["_id"]), project_id, 60000, ACTOR))
        assert exc_info.value.scope == "investor funds"

    def test_low_capital_warning(self, operations, run, project_with_phase):
        project_id, _ = project_with_phase
        investor_id = fund_project(operations, run, project_id, 100000)

        async def commit(session):
            await operations.ledger.record_commitment(project_id, None, "materials", 70000, session)

        run(operations.coordinator.run(commit))

        result = run(operations.change_investor_allocation(investor_id, project_id, 74000, ACTOR))
        assert result["delta"] == Decimal("-26000.00")
        assert result["removal_check"]["available_after_removal"] == Decimal("4000.00")
        assert result["warnings"][0]["type"] == "low_available_capital"
        assert result["capital"]["total_invested"] == Decimal("74000.00")

    def test_zero_allocation_removes_entry(self, operations, db, run, project_with_phase):
        project_id, _ = project_with_phase
        investor_id = fund_project(operations, run, project_id, 10000)

        result = run(operations.change_investor_allocation(investor_id, project_id, 0, ACTOR))
        assert result["previous_amount"] == Decimal("10000.00")
        assert result["capital"]["constraint_not_set"] is True
        assert load(run, db, "investors", investor_id)["project_allocations"] == []


# ============================================
# BUDGET REALLOCATION
# ============================================

class TestBudgetReallocation:
    """Moving allocation between phases and the unallocated project budget"""

    def _second_phase(self, operations, run, project_id, allocation=None):
        phase = run(operations.create_phase(
            project_id, "Structure", ACTOR, sequence=2, budget_allocation=allocation
        ))
        return str(phase["_id"])

    def test_phase_to_phase(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        target_id = self._second_phase(operations, run, project_id, {"total": 10000})

        result = run(operations.reallocate_budget(
            project_id, 5000, ACTOR, from_phase_id=phase_id, to_phase_id=target_id, reason="Piling rework"
        ))
        assert result["reallocation_type"] == "phase_to_phase"
        assert result["amount"] == Decimal("5000.00")
        assert result["phase_allocation_total"] == Decimal("50000.00")
        assert result["unallocated_budget"] == Decimal("50000.00")
        assert result["warnings"] == []

        source = load(run, db, "phases", phase_id)
        assert to_decimal(source["budget_allocation"]["total"]) == Decimal("35000.00")
        # Category allocations are kept alongside the new total
        assert to_decimal(source["budget_allocation"]["materials"]) == Decimal("30000")
        target = load(run, db, "phases", target_id)
        assert to_decimal(target["budget_allocation"]["total"]) == Decimal("15000.00")

        record = load(run, db, "budget_reallocations", result["reallocation_id"])
        assert record["status"] == "executed"
        assert record["executed_by"] == ACTOR
        assert to_decimal(record["amount"]) == Decimal("5000.00")

        audit = run(db.audit_logs.find({"entity_type": "BUDGET_REALLOCATION"}).to_list(length=None))
        assert len(audit) == 1
        assert audit[0]["action"] == "REALLOCATE"

    def test_project_to_phase_limited_by_unallocated_budget(self, operations, db, run, project_with_phase):
        project_id, _ = project_with_phase
        target_id = self._second_phase(operations, run, project_id)

        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.reallocate_budget(project_id, 70000, ACTOR, to_phase_id=target_id))
        assert exc_info.value.scope == "unallocated project budget"
        assert exc_info.value.available == Decimal("60000.00")
        assert load(run, db, "phases", target_id).get("budget_allocation") is None

        result = run(operations.reallocate_budget(project_id, 10000, ACTOR, to_phase_id=target_id))
        assert result["reallocation_type"] == "project_to_phase"
        assert result["unallocated_budget"] == Decimal("50000.00")
        assert to_decimal(load(run, db, "phases", target_id)["budget_allocation"]["total"]) == Decimal("10000.00")
        # The project budget itself is unchanged
        assert to_decimal(load(run, db, "projects", project_id)["budget"]["total"]) == Decimal("100000")

    def test_phase_to_project(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        result = run(operations.reallocate_budget(project_id, 8000, ACTOR, from_phase_id=phase_id))
        assert result["reallocation_type"] == "phase_to_project"
        assert result["phase_allocation_total"] == Decimal("32000.00")
        assert result["unallocated_budget"] == Decimal("68000.00")

    def test_source_cannot_move_spent_allocation(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        target_id = self._second_phase(operations, run, project_id)
        run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))

        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.reallocate_budget(
                project_id, 39600, ACTOR, from_phase_id=phase_id, to_phase_id=target_id
            ))
        assert exc_info.value.scope == "phase budget"
        assert exc_info.value.available == Decimal("39580.00")
        assert run(db.budget_reallocations.count_documents({})) == 0

    def test_invalid_requests(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        empty_id = self._second_phase(operations, run, project_id)

        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(project_id, 100, ACTOR))
        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(project_id, 100, ACTOR, from_phase_id=phase_id, to_phase_id=phase_id))
        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(project_id, 0, ACTOR, from_phase_id=phase_id))
        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(project_id, 100, ACTOR, from_phase_id=empty_id, to_phase_id=phase_id))

        other = run(operations.create_project("Hillcrest", ACTOR, budget={"total": 5000}))
        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(str(other["_id"]), 100, ACTOR, to_phase_id=phase_id))

    def test_project_without_budget_has_nothing_to_allocate(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        run(operations.update_project_budget(project_id, None, ACTOR))
        with pytest.raises(ValidationError):
            run(operations.reallocate_budget(project_id, 100, ACTOR, to_phase_id=phase_id))

    def test_large_share_of_capital_is_a_warning(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        fund_project(operations, run, project_id, 10000)

        result = run(operations.reallocate_budget(project_id, 9000, ACTOR, to_phase_id=phase_id))
        assert [w["type"] for w in result["warnings"]] == ["large_share_of_capital"]
        assert result["phase_allocation_total"] == Decimal("49000.00")

    def test_failed_record_write_rolls_back_allocations(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        target_id = self._second_phase(operations, run, project_id, {"total": 10000})
        db.budget_reallocations.fail_next("insert_one", OperationFailure("write conflict"))

        with pytest.raises(TransactionFailure):
            run(operations.reallocate_budget(
                project_id, 5000, ACTOR, from_phase_id=phase_id, to_phase_id=target_id
            ))

        assert "total" not in load(run, db, "phases", phase_id)["budget_allocation"]
        assert to_decimal(load(run, db, "phases", target_id)["budget_allocation"]["total"]) == Decimal("10000")


# ============================================
# EXPENSES
# ============================================

class TestExpenseApproval:
    """PENDING -> APPROVED records actual spend against the phase and project"""

    def _expense(self, operations, run, project_id, phase_id, amount=2500, category="materials"):
        expense = run(operations.create_expense(
            project_id, amount, ACTOR, phase_id=phase_id, category=category, description="Site cement"
        ))
        return str(expense["_id"])

    def test_approval_records_spend(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        expense_id = self._expense(operations, run, project_id, phase_id)
        assert load(run, db, "expenses", expense_id)["status"] == ExpenseStatus.PENDING

        result = run(operations.approve_expense(expense_id, ACTOR, notes="Invoice checked"))
        assert result["status"] == ExpenseStatus.APPROVED
        assert result["amount"] == Decimal("2500.00")
        assert result["capital_check"]["constraint_not_set"] is True
        assert result["budget_check"]["is_valid"] is True

        expense = load(run, db, "expenses", expense_id)
        assert expense["approved_by"] == ACTOR
        assert expense["approval_notes"] == "Invoice checked"
        assert [h["to_state"] for h in expense["state_history"]] == [ExpenseStatus.APPROVED]

        phase = load(run, db, "phases", phase_id)
        project = load(run, db, "projects", project_id)
        assert bucket_value(phase, "actual_spending", "materials") == Decimal("2500.00")
        assert bucket_value(project, "actual_spending", "total") == Decimal("2500.00")
        # Detached recalculation has refreshed the stored summary
        assert to_decimal(project["financial_summary"]["actual"]) == Decimal("2500.00")

        with pytest.raises(InvalidTransitionError):
            run(operations.approve_expense(expense_id, ACTOR))
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "total") == Decimal("2500.00")

    def test_insufficient_capital_blocks_approval(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        fund_project(operations, run, project_id, 1000)
        expense_id = self._expense(operations, run, project_id, phase_id)

        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.approve_expense(expense_id, ACTOR))
        assert exc_info.value.scope == "capital"
        assert load(run, db, "expenses", expense_id)["status"] == ExpenseStatus.PENDING
        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "total") == Decimal("0")

    def test_phase_budget_blocks_approval(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        expense_id = self._expense(operations, run, project_id, phase_id, amount="40000.01")

        with pytest.raises(InsufficientFunds) as exc_info:
            run(operations.approve_expense(expense_id, ACTOR))
        assert exc_info.value.scope == "phase budget"
        assert load(run, db, "expenses", expense_id)["status"] == ExpenseStatus.PENDING

    def test_rejected_expense_approved_later(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        expense_id = self._expense(operations, run, project_id, phase_id, amount=800, category="equipment")

        rejected = run(operations.reject_expense(expense_id, ACTOR, reason="Missing receipt"))
        assert rejected["status"] == ExpenseStatus.REJECTED
        assert load(run, db, "expenses", expense_id)["rejection_reason"] == "Missing receipt"
        assert bucket_value(load(run, db, "projects", project_id), "actual_spending", "total") == Decimal("0")

        run(operations.approve_expense(expense_id, ACTOR))
        assert bucket_value(load(run, db, "phases", phase_id), "actual_spending", "equipment") == Decimal("800.00")

    def test_approval_requires_phase(self, operations, db, run, project_with_phase):
        project_id, _ = project_with_phase
        expense_id = self._expense(operations, run, project_id, None)
        with pytest.raises(ValidationError):
            run(operations.approve_expense(expense_id, ACTOR))
        assert load(run, db, "expenses", expense_id)["status"] == ExpenseStatus.PENDING

    def test_create_validation(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        with pytest.raises(LedgerConfigurationError):
            run(operations.create_expense(project_id, 100, ACTOR, phase_id=phase_id, category="catering"))
        with pytest.raises(ValidationError):
            run(operations.create_expense(project_id, -5, ACTOR, phase_id=phase_id))
        other = run(operations.create_project("Hillcrest", ACTOR))
        with pytest.raises(ValidationError):
            run(operations.create_expense(str(other["_id"]), 100, ACTOR, phase_id=phase_id))


# ============================================
# INTEGRITY & AUDIT
# ============================================

class TestIntegrityAndAudit:
    """Invariant checks over persisted aggregates and the audit trail"""

    def test_consistent_after_operations(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))

        report = run(FinancialInvariantValidator(db).validate_project(project_id))
        assert report["is_valid"] is True, report["violations"]
        assert report["phases_checked"] == 1

    def test_drift_detected_and_alerted(self, operations, db, run, project_with_phase):
        project_id, _ = project_with_phase
        run(db.projects.update_one(
            {"_id": ObjectId(project_id)},
            {"$set": {"actual_spending.materials": Decimal128("999.00")}}
        ))

        report = run(FinancialInvariantValidator(db).validate_project(project_id))
        violation_types = {v["type"] for v in report["violations"]}
        assert "PHASE_ACTUAL_MISMATCH" in violation_types
        assert "BUCKET_TOTAL_MISMATCH" in violation_types

        job_report = run(FinancialIntegrityJob(db).run())
        assert job_report["projects_checked"] == 1
        assert job_report["projects_with_violations"] == 1
        assert run(db.financial_alerts.count_documents({"project_id": project_id})) == 1

    def test_labour_drift_detected(self, operations, db, run, project_with_phase):
        project_id, phase_id = project_with_phase
        result = run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))
        run(db.labour_entries.update_one(
            {"_id": ObjectId(result["entry_ids"][0])},
            {"$set": {"total_cost": Decimal128("1.00")}}
        ))

        report = run(FinancialInvariantValidator(db).validate_project(project_id))
        assert [v["type"] for v in report["violations"]] == ["LABOUR_DRIFT"]

    def test_audit_trail(self, operations, run, project_with_phase):
        project_id, phase_id = project_with_phase
        result = run(operations.approve_labour_batch(project_id, phase_id, LABOUR_ENTRIES, ACTOR))

        entries = run(operations.audit.get_audit_entries(entity_type="LABOUR_BATCH"))
        assert len(entries) == 1
        assert entries[0]["entity_id"] == result["batch_id"]
        assert entries[0]["actor"] == ACTOR
        assert to_decimal(entries[0]["after"]["total_cost"]) == Decimal("420.00")

    def test_financial_records_cannot_be_deleted(self, operations):
        with pytest.raises(ValidationError):
            operations.audit.enforce_financial_delete_guard("LABOUR_BATCH", "DELETE")
        operations.audit.enforce_financial_delete_guard("LABOUR_BATCH", "UPDATE")
