"""
LEDGER PRIMITIVES - PURE FINANCIAL ARITHMETIC

Pure functions shared by the validators and the recalculation engine:
1. Optional constraints (Ceiling: unset or set to an amount)
2. Totals over spending categories
3. Variance, utilization and remaining amounts
4. Budget / capital status classification

RULES:
- No I/O, no logging side effects
- A zero ceiling is a real ceiling; only an absent value is "not set"
"""

from decimal import Decimal
from typing import Optional, Dict, Any, Iterable

from finance_core.financial_precision import to_decimal, round_financial, ZERO, HUNDRED
from finance_core.financial_errors import LedgerConfigurationError


# =============================================================================
# CATEGORIES & THRESHOLDS
# =============================================================================

SPENDING_CATEGORIES = (
    "materials",
    "labour",
    "equipment",
    "subcontractors",
    "preconstruction",
    "indirect",
    "contingency",
)

AT_RISK_UTILIZATION = Decimal('80')
OVER_BUDGET_UTILIZATION = Decimal('100')
PHASE_VARIANCE_RISK_PERCENTAGE = Decimal('15')
LOW_CAPITAL_RATIO = Decimal('0.1')


class BudgetStatus:
    NOT_SET = "not_set"
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    OVER_BUDGET = "over_budget"


class CapitalStatus:
    NOT_SET = "not_set"
    OVERSPENT = "overspent"
    LOW = "low"
    SUFFICIENT = "sufficient"


def ensure_category(category: str) -> str:
    if category not in SPENDING_CATEGORIES:
        raise LedgerConfigurationError(
            f"Unknown spending category: {category}",
            {"category": category, "allowed": list(SPENDING_CATEGORIES)}
        )
    return category


# =============================================================================
# CEILING (OPTIONAL CONSTRAINT)
# =============================================================================

class Ceiling:
    """
    Optional monetary constraint.

    ``Ceiling.unset()`` never blocks. ``Ceiling.of(amount)`` blocks anything
    beyond ``amount``, including ``Ceiling.of(0)``.
    """

    __slots__ = ("amount",)

    def __init__(self, amount: Optional[Decimal] = None):
        self.amount = None if amount is None else to_decimal(amount)

    @classmethod
    def unset(cls) -> "Ceiling":
        return cls(None)

    @classmethod
    def of(cls, amount) -> "Ceiling":
        if amount is None:
            raise ValueError("Ceiling.of requires an amount; use Ceiling.unset()")
        return cls(amount)

    @property
    def is_set(self) -> bool:
        return self.amount is not None

    @classmethod
    def from_budget(cls, budget: Optional[Dict[str, Any]], category: Optional[str] = None) -> "Ceiling":
        """
        Read a ceiling from a stored budget / allocation document.

        With a category: that category's amount (absent = unset).
        Without: the explicit ``total`` if present, else the sum of the
        categories that are present (none present = unset).
        """
        if not budget:
            return cls.unset()

        if category is not None:
            ensure_category(category)
            value = budget.get(category)
            return cls.unset() if value is None else cls.of(value)

        if budget.get("total") is not None:
            return cls.of(budget["total"])

        present = [budget[c] for c in SPENDING_CATEGORIES if budget.get(c) is not None]
        if not present:
            return cls.unset()
        return cls.of(sum((to_decimal(v) for v in present), ZERO))

    def __eq__(self, other):
        return isinstance(other, Ceiling) and self.amount == other.amount

    def __repr__(self):
        return "Ceiling.unset()" if self.amount is None else f"Ceiling.of({self.amount})"


# =============================================================================
# TOTALS
# =============================================================================

def category_amounts(bucket: Optional[Dict[str, Any]]) -> Dict[str, Decimal]:
    """Per-category Decimal amounts of a spending bucket (missing = 0)"""
    bucket = bucket or {}
    return {c: to_decimal(bucket.get(c)) for c in SPENDING_CATEGORIES}


def bucket_total(bucket: Optional[Dict[str, Any]]) -> Decimal:
    """
    Total of a spending bucket.
    Category sum when categories are tracked, otherwise the stored total.
    """
    bucket = bucket or {}
    if any(c in bucket for c in SPENDING_CATEGORIES):
        return sum(category_amounts(bucket).values(), ZERO)
    return to_decimal(bucket.get("total"))


def sum_amounts(values: Iterable[Any]) -> Decimal:
    return sum((to_decimal(v) for v in values), ZERO)


# =============================================================================
# DERIVED METRICS
# =============================================================================

def calculate_variance(ceiling: Ceiling, actual: Decimal) -> Optional[Decimal]:
    """actual - budget; positive means overspent. None when unset."""
    if not ceiling.is_set:
        return None
    return round_financial(to_decimal(actual) - ceiling.amount)


def calculate_utilization(ceiling: Ceiling, actual: Decimal) -> Optional[Decimal]:
    """actual / budget * 100, None when unset or zero"""
    if not ceiling.is_set or ceiling.amount <= ZERO:
        return None
    return round_financial(to_decimal(actual) / ceiling.amount * HUNDRED)


def calculate_remaining(ceiling: Ceiling, actual: Decimal, committed: Decimal) -> Optional[Decimal]:
    """budget - actual - committed; may be negative"""
    if not ceiling.is_set:
        return None
    return round_financial(ceiling.amount - to_decimal(actual) - to_decimal(committed))


def calculate_available(ceiling: Ceiling, used: Decimal, committed: Decimal) -> Optional[Decimal]:
    """Headroom under a ceiling, floored at zero. None when unset."""
    if not ceiling.is_set:
        return None
    return round_financial(max(ZERO, ceiling.amount - to_decimal(used) - to_decimal(committed)))


def classify_budget_status(ceiling: Ceiling, actual: Decimal) -> str:
    if not ceiling.is_set:
        return BudgetStatus.NOT_SET

    actual = to_decimal(actual)
    if ceiling.amount <= ZERO:
        # Zero ceiling: any spend is an overrun
        return BudgetStatus.OVER_BUDGET if actual > ZERO else BudgetStatus.ON_TRACK

    utilization = actual / ceiling.amount * HUNDRED
    if utilization > OVER_BUDGET_UTILIZATION:
        return BudgetStatus.OVER_BUDGET
    if utilization > AT_RISK_UTILIZATION:
        return BudgetStatus.AT_RISK
    return BudgetStatus.ON_TRACK


def classify_capital_status(invested: Ceiling, used: Decimal, committed: Decimal) -> str:
    if not invested.is_set:
        return CapitalStatus.NOT_SET

    used = to_decimal(used)
    balance = invested.amount - used - to_decimal(committed)
    if balance < ZERO:
        return CapitalStatus.OVERSPENT
    if invested.amount > ZERO and used / invested.amount * HUNDRED > AT_RISK_UTILIZATION:
        return CapitalStatus.LOW
    if balance < invested.amount * LOW_CAPITAL_RATIO:
        return CapitalStatus.LOW
    return CapitalStatus.SUFFICIENT


def constraint_summary(ceiling: Ceiling, actual: Decimal, committed: Decimal) -> Dict[str, Any]:
    """
    Everything a caller needs to display one optional constraint.

    Values are Decimals (or None); persistence converts them.
    """
    actual = round_financial(actual)
    committed = round_financial(committed)
    return {
        "budget": ceiling.amount if ceiling.is_set else None,
        "constraint_not_set": not ceiling.is_set,
        "actual": actual,
        "committed": committed,
        "variance": calculate_variance(ceiling, actual),
        "utilization_percentage": calculate_utilization(ceiling, actual),
        "remaining": calculate_remaining(ceiling, actual, committed),
        "status": classify_budget_status(ceiling, actual),
    }
