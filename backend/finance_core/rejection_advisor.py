"""
REJECTION RETRY ADVISOR

Classifies supplier purchase-order rejections into retry advice.
Pure rule table, no I/O.
"""

from typing import Optional, Dict, Any, List


PRIORITY_VALUES = {
    "critical": 5,
    "high": 4,
    "medium": 3,
    "low": 2,
    "variable": 1,
}

MANUAL_REVIEW_RECOMMENDATION = "Manual review required"

REJECTION_RULES: Dict[str, Dict[str, Any]] = {
    "price_too_high": {
        "label": "Price Too High",
        "retryable": True,
        "recommendation": "Consider price negotiation or alternative specifications",
        "confidence": 0.7,
        "priority": "high",
        "subcategories": {
            "market_rates_higher": "Market rates are higher",
            "material_costs_increased": "Material costs increased",
            "labor_costs_high": "Labor costs too high",
            "overhead_costs": "Overhead costs",
            "insufficient_profit_margin": "Insufficient profit margin",
            "currency_fluctuation": "Currency fluctuation",
        },
    },
    "unavailable": {
        "label": "Material Unavailable",
        "retryable": False,
        "recommendation": "Find alternative supplier or material",
        "confidence": 0.9,
        "priority": "critical",
        "subcategories": {
            "out_of_stock": "Out of stock",
            "material_discontinued": "Material discontinued",
            "seasonal_unavailable": "Seasonally unavailable",
            "supplier_shortage": "Supplier shortage",
            "manufacturing_delay": "Manufacturing delay",
            "shipping_constraints": "Shipping constraints",
        },
    },
    "timeline": {
        "label": "Timeline Issues",
        "retryable": True,
        "recommendation": "Adjust delivery date or split order",
        "confidence": 0.6,
        "priority": "medium",
        "subcategories": {
            "delivery_date_too_soon": "Delivery date too soon",
            "insufficient_production_time": "Insufficient production time",
            "logistics_delay": "Logistics delay",
            "weather_related_delays": "Weather related delays",
            "current_workload_too_high": "Current workload too high",
            "staff_shortage": "Staff shortage",
        },
    },
    "specifications": {
        "label": "Specification Issues",
        "retryable": True,
        "recommendation": "Review specifications or find specialized supplier",
        "confidence": 0.5,
        "priority": "high",
        "subcategories": {
            "cannot_meet_quality_standards": "Cannot meet quality standards",
            "technical_specifications_unmet": "Technical specifications unmet",
            "material_grade_unavailable": "Material grade unavailable",
            "custom_requirements_impossible": "Custom requirements impossible",
            "certification_requirements": "Certification requirements",
            "testing_requirements": "Testing requirements",
        },
    },
    "quantity": {
        "label": "Quantity Issues",
        "retryable": True,
        "recommendation": "Adjust quantity or split into multiple orders",
        "confidence": 0.8,
        "priority": "medium",
        "subcategories": {
            "below_minimum_order_quantity": "Below minimum order quantity",
            "exceeds_production_capacity": "Exceeds production capacity",
            "batch_size_constraints": "Batch size constraints",
            "storage_limitations": "Storage limitations",
            "can_only_partial_fulfill": "Can only partially fulfil",
        },
    },
    "business_policy": {
        "label": "Business Policy",
        "retryable": False,
        "recommendation": "Respect supplier policies or find alternative",
        "confidence": 0.8,
        "priority": "low",
        "subcategories": {
            "unacceptable_payment_terms": "Unacceptable payment terms",
            "contract_terms_unacceptable": "Contract terms unacceptable",
            "insurance_requirements": "Insurance requirements",
            "licensing_restrictions": "Licensing restrictions",
            "geographic_service_limits": "Geographic service limits",
            "client_specific_restrictions": "Client specific restrictions",
        },
    },
    "external_factors": {
        "label": "External Factors",
        "retryable": True,
        "recommendation": "Monitor conditions and retry when resolved",
        "confidence": 0.4,
        "priority": "variable",
        "subcategories": {
            "regulatory_changes": "Regulatory changes",
            "market_volatility": "Market volatility",
            "force_majeure": "Force majeure",
            "transportation_issues": "Transportation issues",
            "supply_chain_disruption": "Supply chain disruption",
            "economic_conditions": "Economic conditions",
        },
    },
    "other": {
        "label": "Other Reasons",
        "retryable": True,
        "recommendation": "Contact supplier for clarification",
        "confidence": 0.3,
        "priority": "low",
        "subcategories": {
            "custom_reason": "Custom reason",
            "not_specified": "Not specified",
            "supplier_preference": "Supplier preference",
            "business_relationship_issues": "Business relationship issues",
        },
    },
}


def assess(reason_category: Optional[str], subcategory: Optional[str] = None) -> Dict[str, Any]:
    """
    Retry advice for a rejection.

    Unknown categories are not retryable and need manual review.
    An unknown subcategory keeps the category advice with no subcategory label.
    """
    rule = REJECTION_RULES.get(reason_category or "")

    if rule is None:
        return {
            "reason_category": reason_category,
            "reason_label": None,
            "subcategory": subcategory,
            "subcategory_label": None,
            "retryable": False,
            "recommendation": MANUAL_REVIEW_RECOMMENDATION,
            "confidence": 0.0,
            "priority": "low",
            "priority_value": PRIORITY_VALUES["low"],
            "known_reason": False,
        }

    return {
        "reason_category": reason_category,
        "reason_label": rule["label"],
        "subcategory": subcategory,
        "subcategory_label": rule["subcategories"].get(subcategory) if subcategory else None,
        "retryable": rule["retryable"],
        "recommendation": rule["recommendation"],
        "confidence": rule["confidence"],
        "priority": rule["priority"],
        "priority_value": PRIORITY_VALUES[rule["priority"]],
        "known_reason": True,
    }


def list_reasons() -> List[Dict[str, Any]]:
    """Reason catalogue for pickers, most urgent first"""
    reasons = [
        {
            "value": key,
            "label": rule["label"],
            "retryable": rule["retryable"],
            "priority": rule["priority"],
            "subcategories": [
                {"value": sub_key, "label": sub_label}
                for sub_key, sub_label in rule["subcategories"].items()
            ],
        }
        for key, rule in REJECTION_RULES.items()
    ]
    return sorted(reasons, key=lambda r: -PRIORITY_VALUES[r["priority"]])
