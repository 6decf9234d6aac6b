"""
Record schemas for the detection engine.
"""

from amlguard.schemas.records import (
    DEFAULT_RISK_BANDS,
    Alert,
    AlertStatus,
    AlertType,
    Entity,
    EntityCategory,
    EntityRelationship,
    RelationshipType,
    RiskBands,
    RiskLevel,
    Transaction,
    TransactionCategory,
    TransactionType,
    risk_level_for_score,
    utcnow,
)
from amlguard.schemas.validation import (
    RejectedRecord,
    screen_relationships,
    screen_transactions,
    validate_relationship,
    validate_transaction,
)

__all__ = [
    # Records
    "Entity",
    "Transaction",
    "EntityRelationship",
    "Alert",
    # Enums
    "EntityCategory",
    "TransactionType",
    "TransactionCategory",
    "RelationshipType",
    "AlertType",
    "AlertStatus",
    "RiskLevel",
    # Banding
    "RiskBands",
    "DEFAULT_RISK_BANDS",
    "risk_level_for_score",
    "utcnow",
    # Validation
    "RejectedRecord",
    "validate_transaction",
    "validate_relationship",
    "screen_transactions",
    "screen_relationships",
]
