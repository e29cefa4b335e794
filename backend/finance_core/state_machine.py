"""
STATE MACHINES FOR FINANCIAL ENTITIES

A small transition table per entity with:
- Transition registration
- Validation (InvalidTransitionError for unregistered moves)
- Mongo update builder: status field, change timestamp and a pushed
  state_history entry

Usage:
    update = PURCHASE_ORDER_MACHINE.build_update(po_doc, "order_accepted", user_id="u1")
    await db.purchase_orders.update_one({"_id": po_doc["_id"]}, update, session=session)

Machines defined here:
- purchase_order: supplier response lifecycle
- purchase_order_financial: uncommitted -> committed -> fulfilled
- professional_fee: PENDING -> APPROVED -> PAID (or REJECTED)
- expense: PENDING -> APPROVED, PENDING -> REJECTED -> APPROVED
"""

from typing import Dict, Any, Optional, List, Set, Tuple
from datetime import datetime
import logging

from finance_core.financial_errors import InvalidTransitionError, ValidationError

logger = logging.getLogger(__name__)


class StateMachine:
    """
    Transition table for one entity type.

    Example:
        machine = StateMachine("purchase_order")
        machine.register("order_sent", "order_accepted")
        machine.validate_transition("order_sent", "order_accepted")
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], str] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: str, to_state: str, description: str = "") -> "StateMachine":
        key = (from_state, to_state)
        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )
        self._transitions[key] = description
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    @property
    def states(self) -> Set[str]:
        return set(self._states)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        return sorted(dst for (src, dst) in self._transitions if src == from_state)

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def is_terminal(self, state: str) -> bool:
        return state in self._states and not self.get_allowed_transitions(state)

    def validate_transition(self, from_state: str, to_state: str) -> None:
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    # =========================================================================
    # UPDATE BUILDERS
    # =========================================================================

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def build_update(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        extra_set: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validate the move and return the Mongo update document for it.
        """
        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise ValidationError(
                f"{self.entity_name} is missing status field '{self.status_field}'",
                {"entity": self.entity_name}
            )

        self.validate_transition(from_state, to_state)

        now = datetime.utcnow()
        update = {
            "$set": {
                self.status_field: to_state,
                f"{self.status_field}_changed_at": now,
                "updated_at": now,
                **(extra_set or {})
            }
        }
        if self.history_field:
            update["$push"] = {
                self.history_field: self.get_history_entry(from_state, to_state, user_id, metadata)
            }

        logger.info(f"[STATE_MACHINE] {self.entity_name}: '{from_state}' -> '{to_state}'")
        return update


# =============================================================================
# PURCHASE ORDER
# =============================================================================

class PurchaseOrderStatus:
    ORDER_SENT = "order_sent"
    ORDER_ACCEPTED = "order_accepted"
    ORDER_REJECTED = "order_rejected"
    ORDER_MODIFIED = "order_modified"
    DELIVERED = "delivered"


class PurchaseOrderFinancialStatus:
    UNCOMMITTED = "uncommitted"
    COMMITTED = "committed"
    FULFILLED = "fulfilled"


PURCHASE_ORDER_MACHINE = (
    StateMachine("purchase_order")
    .register(PurchaseOrderStatus.ORDER_SENT, PurchaseOrderStatus.ORDER_ACCEPTED, "Supplier accepted")
    .register(PurchaseOrderStatus.ORDER_SENT, PurchaseOrderStatus.ORDER_REJECTED, "Supplier rejected")
    .register(PurchaseOrderStatus.ORDER_SENT, PurchaseOrderStatus.ORDER_MODIFIED, "Supplier proposed changes")
    .register(PurchaseOrderStatus.ORDER_MODIFIED, PurchaseOrderStatus.ORDER_SENT, "Modification approved or rejected without auto-commit")
    .register(PurchaseOrderStatus.ORDER_MODIFIED, PurchaseOrderStatus.ORDER_ACCEPTED, "Modification approved with auto-commit")
    .register(PurchaseOrderStatus.ORDER_MODIFIED, PurchaseOrderStatus.ORDER_REJECTED, "Supplier withdrew")
    .register(PurchaseOrderStatus.ORDER_ACCEPTED, PurchaseOrderStatus.DELIVERED, "Delivery confirmed")
)

PURCHASE_ORDER_FINANCIAL_MACHINE = (
    StateMachine("purchase_order_financial", status_field="financial_status", history_field=None)
    .register(PurchaseOrderFinancialStatus.UNCOMMITTED, PurchaseOrderFinancialStatus.COMMITTED)
    .register(PurchaseOrderFinancialStatus.COMMITTED, PurchaseOrderFinancialStatus.FULFILLED)
)


# =============================================================================
# PROFESSIONAL FEE
# =============================================================================

class ProfessionalFeeStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    REJECTED = "REJECTED"


PROFESSIONAL_FEE_MACHINE = (
    StateMachine("professional_fee")
    .register(ProfessionalFeeStatus.PENDING, ProfessionalFeeStatus.APPROVED)
    .register(ProfessionalFeeStatus.PENDING, ProfessionalFeeStatus.REJECTED)
    .register(ProfessionalFeeStatus.APPROVED, ProfessionalFeeStatus.PAID)
)


# =============================================================================
# EXPENSE
# =============================================================================

class ExpenseStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# A rejected expense can be reconsidered and approved later
EXPENSE_MACHINE = (
    StateMachine("expense")
    .register(ExpenseStatus.PENDING, ExpenseStatus.APPROVED)
    .register(ExpenseStatus.PENDING, ExpenseStatus.REJECTED)
    .register(ExpenseStatus.REJECTED, ExpenseStatus.APPROVED)
)
