from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from decimal import Decimal
from datetime import datetime


# ============================================
# BUDGET / ALLOCATION
# ============================================
class BudgetAllocation(BaseModel):
    """Absent categories are "not set"; an explicit total overrides the category sum"""
    materials: Optional[Decimal] = None
    labour: Optional[Decimal] = None
    equipment: Optional[Decimal] = None
    subcontractors: Optional[Decimal] = None
    preconstruction: Optional[Decimal] = None
    indirect: Optional[Decimal] = None
    contingency: Optional[Decimal] = None
    total: Optional[Decimal] = None

    def to_payload(self) -> Optional[Dict[str, Decimal]]:
        payload = self.model_dump(exclude_none=True)
        return payload or None


# ============================================
# SETUP MODELS
# ============================================
class ProjectCreate(BaseModel):
    name: str
    budget: Optional[BudgetAllocation] = None
    owner_id: Optional[str] = None
    manager_ids: List[str] = []


class ProjectBudgetUpdate(BaseModel):
    budget: Optional[BudgetAllocation] = None


class PhaseCreate(BaseModel):
    project_id: str
    name: str
    sequence: int = 0
    budget_allocation: Optional[BudgetAllocation] = None
    status: str = "not_started"


class PhaseAllocationUpdate(BaseModel):
    budget_allocation: Optional[BudgetAllocation] = None


class InvestorCreate(BaseModel):
    name: str
    total_invested: Decimal = Field(ge=0)


class InvestorAllocationChange(BaseModel):
    project_id: str
    amount: Decimal = Field(ge=0)
    loan_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)


class ProfessionalServiceCreate(BaseModel):
    project_id: str
    name: str


class BudgetReallocationCreate(BaseModel):
    """Omit from_phase_id to draw from the unallocated project budget, to_phase_id to return to it"""
    project_id: str
    amount: Decimal = Field(gt=0)
    from_phase_id: Optional[str] = None
    to_phase_id: Optional[str] = None
    reason: Optional[str] = None


# ============================================
# PURCHASE ORDER MODELS
# ============================================
class PurchaseOrderCreate(BaseModel):
    project_id: str
    supplier_id: str
    unit_cost: Decimal = Field(gt=0)
    quantity_ordered: Decimal = Field(gt=0)
    phase_id: Optional[str] = None
    budget_category: str = "materials"
    description: Optional[str] = None


class SupplierModifications(BaseModel):
    unit_cost: Optional[Decimal] = Field(default=None, gt=0)
    quantity_ordered: Optional[Decimal] = Field(default=None, gt=0)
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = None


class SupplierResponse(BaseModel):
    action: Literal["accept", "reject", "modify"]
    reason_category: Optional[str] = None
    subcategory: Optional[str] = None
    notes: Optional[str] = None
    modifications: Optional[SupplierModifications] = None


class ModificationApproval(BaseModel):
    auto_commit: bool = False
    notes: Optional[str] = None


class ModificationRejection(BaseModel):
    reason: Optional[str] = None
    revert_to_original: bool = True


class DeliveryConfirmation(BaseModel):
    actual_total: Optional[Decimal] = Field(default=None, gt=0)


class PurchaseOrderReassignment(BaseModel):
    new_supplier_id: str
    unit_cost: Optional[Decimal] = Field(default=None, gt=0)
    quantity_ordered: Optional[Decimal] = Field(default=None, gt=0)


# ============================================
# LABOUR MODELS
# ============================================
class LabourEntryInput(BaseModel):
    worker_id: Optional[str] = None
    worker_name: str
    skill_type: Optional[str] = None
    work_date: Optional[datetime] = None
    total_hours: Decimal = Field(gt=0)
    hourly_rate: Decimal = Field(gt=0)
    overtime_hours: Optional[Decimal] = Field(default=None, ge=0)


class LabourBatchApproval(BaseModel):
    project_id: str
    phase_id: str
    entries: List[LabourEntryInput]
    source_report_id: Optional[str] = None


# ============================================
# PROFESSIONAL FEE MODELS
# ============================================
class ProfessionalFeeCreate(BaseModel):
    professional_service_id: str
    amount: Decimal = Field(gt=0)
    phase_id: Optional[str] = None
    description: Optional[str] = None


class ProfessionalFeeRejection(BaseModel):
    reason: Optional[str] = None


class ProfessionalFeePayment(BaseModel):
    payment_reference: Optional[str] = None


# ============================================
# EXPENSE MODELS
# ============================================
class ExpenseCreate(BaseModel):
    project_id: str
    amount: Decimal = Field(gt=0)
    phase_id: Optional[str] = None
    category: str = "materials"
    description: Optional[str] = None


class ExpenseApproval(BaseModel):
    notes: Optional[str] = None


class ExpenseRejection(BaseModel):
    reason: Optional[str] = None


# ============================================
# POLICY MODELS
# ============================================
class PolicyUpdate(BaseModel):
    key: str
    value: Any
