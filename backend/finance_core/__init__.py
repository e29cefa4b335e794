"""
Financial consistency and recalculation core
"""
from .financial_precision import (
    to_decimal,
    to_decimal128,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
)

from .financial_errors import (
    FinancialEngineError,
    ValidationError,
    EntityNotFoundError,
    InvalidTransitionError,
    InsufficientFunds,
    CapitalRemovalBlocked,
    TransactionFailure,
    RecalculationDegraded,
    LedgerConfigurationError,
)

from .ledger_primitives import (
    SPENDING_CATEGORIES,
    Ceiling,
    BudgetStatus,
    CapitalStatus,
)

from .capital_validator import CapitalValidator
from .budget_validator import BudgetValidator
from .spending_ledger import SpendingLedgerStore, LedgerScope, LedgerBucket, Direction
from .recalculation_engine import RecalculationEngine
from .recalculation_queue import RecalculationQueue
from .transaction_coordinator import TransactionCoordinator
from .rejection_advisor import assess as assess_rejection
from .policy_service import PolicyService
from .invariant_validator import FinancialInvariantValidator
from .financial_integrity_job import FinancialIntegrityJob
from .financial_operations import FinancialOperations

__all__ = [
    # Precision
    'to_decimal',
    'to_decimal128',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',

    # Errors
    'FinancialEngineError',
    'ValidationError',
    'EntityNotFoundError',
    'InvalidTransitionError',
    'InsufficientFunds',
    'CapitalRemovalBlocked',
    'TransactionFailure',
    'RecalculationDegraded',
    'LedgerConfigurationError',

    # Primitives
    'SPENDING_CATEGORIES',
    'Ceiling',
    'BudgetStatus',
    'CapitalStatus',

    # Components
    'CapitalValidator',
    'BudgetValidator',
    'SpendingLedgerStore',
    'LedgerScope',
    'LedgerBucket',
    'Direction',
    'RecalculationEngine',
    'RecalculationQueue',
    'TransactionCoordinator',
    'assess_rejection',
    'PolicyService',
    'FinancialInvariantValidator',
    'FinancialIntegrityJob',
    'FinancialOperations',
]
