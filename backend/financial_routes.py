"""
FINANCE API ROUTES

Thin HTTP surface over FinancialOperations:
- Setup: projects, phases, investors, professional services, purchase orders
- Constraints: project budget, phase allocation, investor allocation,
  budget reallocation
- Purchase order lifecycle
- Labour batch approval
- Professional fees
- Expenses
- Recalculation, integrity and rejection advice

Engine errors are mapped to HTTP status codes in one place.
The acting user comes from the X-Actor-Id header.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Header, Request, Query
from typing import Optional
import logging

from models import (
    ProjectCreate, ProjectBudgetUpdate, PhaseCreate, PhaseAllocationUpdate,
    InvestorCreate, InvestorAllocationChange, ProfessionalServiceCreate,
    PurchaseOrderCreate, SupplierResponse, ModificationApproval, ModificationRejection,
    DeliveryConfirmation, PurchaseOrderReassignment, LabourBatchApproval,
    ProfessionalFeeCreate, ProfessionalFeeRejection, ProfessionalFeePayment, PolicyUpdate,
    BudgetReallocationCreate, ExpenseCreate, ExpenseApproval, ExpenseRejection
)
from finance_core.financial_errors import (
    FinancialEngineError, ValidationError, EntityNotFoundError, InsufficientFunds,
    CapitalRemovalBlocked, TransactionFailure, LedgerConfigurationError
)
from finance_core.financial_operations import FinancialOperations
from finance_core.invariant_validator import FinancialInvariantValidator
from finance_core.rejection_advisor import assess, list_reasons
from finance_core.mongo_utils import serialize_doc

logger = logging.getLogger(__name__)

finance_router = APIRouter(prefix="/api/finance", tags=["Finance"])


# ============================================
# DEPENDENCIES
# ============================================

def get_operations(request: Request) -> FinancialOperations:
    return request.app.state.operations


def get_actor(x_actor_id: str = Header(...)) -> str:
    if not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header is required")
    return x_actor_id


def to_http_exception(error: FinancialEngineError) -> HTTPException:
    """Map an engine error to the HTTP response the client sees"""
    detail = {"message": error.message, "error_type": type(error).__name__, **error.details}

    if isinstance(error, EntityNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(error, CapitalRemovalBlocked):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, TransactionFailure):
        detail["retryable"] = True
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, LedgerConfigurationError):
        logger.error(f"[API] Ledger configuration error: {error.message}")
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
    if isinstance(error, (ValidationError, InsufficientFunds)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    logger.error(f"[API] Unmapped engine error: {error.message}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# ============================================
# SETUP
# ============================================

@finance_router.post("/projects", status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        project = await ops.create_project(
            body.name, actor,
            budget=body.budget.to_payload() if body.budget else None,
            owner_id=body.owner_id,
            manager_ids=body.manager_ids
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(project)


@finance_router.put("/projects/{project_id}/budget")
async def update_project_budget(
    project_id: str,
    body: ProjectBudgetUpdate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.update_project_budget(
            project_id, body.budget.to_payload() if body.budget else None, actor
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/phases", status_code=status.HTTP_201_CREATED)
async def create_phase(
    body: PhaseCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        phase = await ops.create_phase(
            body.project_id, body.name, actor,
            sequence=body.sequence,
            budget_allocation=body.budget_allocation.to_payload() if body.budget_allocation else None,
            status=body.status
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(phase)


@finance_router.put("/phases/{phase_id}/allocation")
async def update_phase_allocation(
    phase_id: str,
    body: PhaseAllocationUpdate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.update_phase_allocation(
            phase_id, body.budget_allocation.to_payload() if body.budget_allocation else None, actor
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/investors", status_code=status.HTTP_201_CREATED)
async def create_investor(
    body: InvestorCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        investor = await ops.create_investor(body.name, body.total_invested, actor)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(investor)


@finance_router.put("/investors/{investor_id}/allocations")
async def change_investor_allocation(
    investor_id: str,
    body: InvestorAllocationChange,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.change_investor_allocation(
            investor_id, body.project_id, body.amount, actor, loan_percentage=body.loan_percentage
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/budget-reallocations", status_code=status.HTTP_201_CREATED)
async def reallocate_budget(
    body: BudgetReallocationCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.reallocate_budget(
            body.project_id, body.amount, actor,
            from_phase_id=body.from_phase_id,
            to_phase_id=body.to_phase_id,
            reason=body.reason
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/professional-services", status_code=status.HTTP_201_CREATED)
async def create_professional_service(
    body: ProfessionalServiceCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        service = await ops.create_professional_service(body.project_id, body.name, actor)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(service)


# ============================================
# PURCHASE ORDERS
# ============================================

@finance_router.post("/purchase-orders", status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    body: PurchaseOrderCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        po = await ops.create_purchase_order(
            body.project_id, body.supplier_id, body.unit_cost, body.quantity_ordered, actor,
            phase_id=body.phase_id,
            budget_category=body.budget_category,
            description=body.description
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(po)


@finance_router.post("/purchase-orders/{po_id}/respond")
async def supplier_respond(
    po_id: str,
    body: SupplierResponse,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.supplier_respond(
            po_id, body.action, actor,
            reason_category=body.reason_category,
            subcategory=body.subcategory,
            notes=body.notes,
            modifications=body.modifications.model_dump(exclude_none=True) if body.modifications else None
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/purchase-orders/{po_id}/approve-modification")
async def approve_po_modification(
    po_id: str,
    body: ModificationApproval,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.approve_po_modification(po_id, actor, auto_commit=body.auto_commit, notes=body.notes)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/purchase-orders/{po_id}/reject-modification")
async def reject_po_modification(
    po_id: str,
    body: ModificationRejection,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.reject_po_modification(
            po_id, actor, reason=body.reason, revert_to_original=body.revert_to_original
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/purchase-orders/{po_id}/deliver")
async def confirm_po_delivery(
    po_id: str,
    body: DeliveryConfirmation,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.confirm_po_delivery(po_id, actor, actual_total=body.actual_total)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/purchase-orders/{po_id}/reassign", status_code=status.HTTP_201_CREATED)
async def reassign_rejected_po(
    po_id: str,
    body: PurchaseOrderReassignment,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.reassign_rejected_po(
            po_id, body.new_supplier_id, actor,
            unit_cost=body.unit_cost,
            quantity_ordered=body.quantity_ordered
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.get("/rejections/reasons")
async def get_rejection_reasons():
    return {"reasons": list_reasons()}


@finance_router.get("/rejections/assess")
async def assess_rejection(
    reason_category: str = Query(...),
    subcategory: Optional[str] = Query(None)
):
    return assess(reason_category, subcategory)


# ============================================
# LABOUR
# ============================================

@finance_router.post("/labour-batches/approve", status_code=status.HTTP_201_CREATED)
async def approve_labour_batch(
    body: LabourBatchApproval,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.approve_labour_batch(
            body.project_id, body.phase_id,
            [entry.model_dump() for entry in body.entries],
            actor,
            source_report_id=body.source_report_id
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# ============================================
# PROFESSIONAL FEES
# ============================================

@finance_router.post("/professional-fees", status_code=status.HTTP_201_CREATED)
async def create_professional_fee(
    body: ProfessionalFeeCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        fee = await ops.create_professional_fee(
            body.professional_service_id, body.amount, actor,
            phase_id=body.phase_id,
            description=body.description
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(fee)


@finance_router.post("/professional-fees/{fee_id}/approve")
async def approve_professional_fee(
    fee_id: str,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.approve_professional_fee(fee_id, actor)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/professional-fees/{fee_id}/reject")
async def reject_professional_fee(
    fee_id: str,
    body: ProfessionalFeeRejection,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.reject_professional_fee(fee_id, actor, reason=body.reason)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/professional-fees/{fee_id}/pay")
async def pay_professional_fee(
    fee_id: str,
    body: ProfessionalFeePayment,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.pay_professional_fee(fee_id, actor, payment_reference=body.payment_reference)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# ============================================
# EXPENSES
# ============================================

@finance_router.post("/expenses", status_code=status.HTTP_201_CREATED)
async def create_expense(
    body: ExpenseCreate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        expense = await ops.create_expense(
            body.project_id, body.amount, actor,
            phase_id=body.phase_id,
            category=body.category,
            description=body.description
        )
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(expense)


@finance_router.post("/expenses/{expense_id}/approve")
async def approve_expense(
    expense_id: str,
    body: Optional[ExpenseApproval] = None,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.approve_expense(expense_id, actor, notes=body.notes if body else None)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


@finance_router.post("/expenses/{expense_id}/reject")
async def reject_expense(
    expense_id: str,
    body: ExpenseRejection,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.reject_expense(expense_id, actor, reason=body.reason)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(result)


# ============================================
# RECALCULATION & INTEGRITY
# ============================================

@finance_router.post("/projects/{project_id}/recalculate")
async def recalculate_project(project_id: str, ops: FinancialOperations = Depends(get_operations)):
    try:
        summary = await ops.engine.recalculate(project_id)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(summary)


@finance_router.post("/phases/{phase_id}/recalculate")
async def recalculate_phase(phase_id: str, ops: FinancialOperations = Depends(get_operations)):
    try:
        summary = await ops.engine.recalculate_phase(phase_id)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(summary)


@finance_router.get("/projects/{project_id}/integrity")
async def check_project_integrity(project_id: str, ops: FinancialOperations = Depends(get_operations)):
    try:
        report = await FinancialInvariantValidator(ops.db).validate_project(project_id)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    return serialize_doc(report)


@finance_router.get("/recalculation/dead-letters")
async def get_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    ops: FinancialOperations = Depends(get_operations)
):
    letters = await ops.queue.get_dead_letters(limit)
    return {"dead_letters": [serialize_doc(d) for d in letters], "stats": ops.queue.stats}


# ============================================
# POLICIES
# ============================================

@finance_router.get("/policies")
async def get_policies(ops: FinancialOperations = Depends(get_operations)):
    return await ops.policy.get_all_policies()


@finance_router.put("/policies")
async def update_policy(
    body: PolicyUpdate,
    actor: str = Depends(get_actor),
    ops: FinancialOperations = Depends(get_operations)
):
    try:
        result = await ops.policy.update_policy(body.key, body.value)
    except FinancialEngineError as e:
        raise to_http_exception(e)
    logger.info(f"[API] Policy {body.key} updated by {actor}")
    return result
