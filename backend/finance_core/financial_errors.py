"""
FINANCIAL ENGINE EXCEPTIONS

All engine errors carry a human readable ``message`` and a ``details`` dict
so the HTTP layer can surface them without knowing the concrete type.
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List


class FinancialEngineError(Exception):
    """Base exception for the financial engine"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FinancialEngineError):
    """Malformed input: non-positive amount, unknown id, wrong state"""
    pass


class EntityNotFoundError(ValidationError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            {"entity_type": entity_type, "entity_id": entity_id}
        )


class InvalidTransitionError(ValidationError):
    """Raised when attempting a state transition the entity does not allow."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: Optional[List[str]] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "to_state": to_state,
            "allowed": self.allowed
        })


class InsufficientFunds(FinancialEngineError):
    """A set ceiling would be exceeded"""
    def __init__(self, available: Decimal, required: Decimal, scope: str = "capital", message: Optional[str] = None):
        self.available = available
        self.required = required
        self.scope = scope
        super().__init__(
            message or f"Insufficient {scope}: available {available}, required {required}",
            {"scope": scope, "available": str(available), "required": str(required)}
        )


class CapitalRemovalBlocked(FinancialEngineError):
    """Removing capital would leave already committed/spent amounts uncovered"""
    def __init__(self, project_id: str, shortfall: Decimal, message: Optional[str] = None):
        self.project_id = project_id
        self.shortfall = shortfall
        super().__init__(
            message or f"Capital removal blocked for project {project_id}: shortfall {shortfall}",
            {"project_id": project_id, "shortfall": str(shortfall)}
        )


class TransactionFailure(FinancialEngineError):
    """The store could not commit the unit of work; nothing was applied"""
    pass


class RecalculationDegraded(FinancialEngineError):
    """
    A recalculation or forecast step failed.
    Never raised to callers of mutating operations; logged and dead-lettered.
    """
    pass


class LedgerConfigurationError(FinancialEngineError):
    """Unknown category or a ledger mutation attempted outside a transaction"""
    pass
