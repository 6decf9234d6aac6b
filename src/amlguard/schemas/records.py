"""
Pydantic models for the records exchanged with the detection engine.

Provides:
- Entity, Transaction, EntityRelationship and Alert records
- Record enums (categories, transaction types, relationship types)
- RiskBands, the canonical score-to-level banding
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RiskLevel(str, Enum):
    """Risk band of a score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "RiskLevel":
        rank = max(1, min(4, rank))
        return _RANK_LEVEL[rank]


_LEVEL_RANK = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}
_RANK_LEVEL = {rank: level for level, rank in _LEVEL_RANK.items()}


@dataclass(frozen=True)
class RiskBands:
    """Score cutoffs for the medium, high and critical bands."""

    medium: float = 40.0
    high: float = 70.0
    critical: float = 85.0

    def level_for(self, score: float) -> RiskLevel:
        if score >= self.critical:
            return RiskLevel.CRITICAL
        if score >= self.high:
            return RiskLevel.HIGH
        if score >= self.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


DEFAULT_RISK_BANDS = RiskBands()


def risk_level_for_score(score: float, bands: Optional[RiskBands] = None) -> RiskLevel:
    """Map a 0-100 score to its risk level."""
    return (bands or DEFAULT_RISK_BANDS).level_for(score)


class EntityCategory(str, Enum):
    """Kinds of monitored entities."""

    INDIVIDUAL = "individual"
    CORPORATE = "corporate"
    FINANCIAL_INSTITUTION = "financial_institution"
    GOVERNMENT = "government"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    EXCHANGE = "exchange"
    PAYMENT = "payment"


class TransactionCategory(str, Enum):
    FIAT = "fiat"
    CRYPTO = "crypto"
    CROSS_BORDER = "cross_border"


class RelationshipType(str, Enum):
    """Directed relationship kinds; owner edges form the ownership graph."""

    OWNER = "owner"
    BENEFICIARY = "beneficiary"
    AFFILIATE = "affiliate"
    INTERMEDIARY = "intermediary"
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class AlertType(str, Enum):
    """Types of alerts."""

    TRANSACTION_PATTERN = "transaction_pattern"
    ENTITY_RISK = "entity_risk"
    NETWORK_ACTIVITY = "network_activity"
    ANOMALY_DETECTION = "anomaly_detection"
    MANUAL = "manual"


class AlertStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in progress"
    UNDER_INVESTIGATION = "under investigation"
    NEEDS_REVIEW = "needs review"
    COMPLETED = "completed"
    RESOLVED = "resolved"


class ScoredRecord(BaseModel):
    """Shared behavior for records carrying a risk score and level."""

    risk_score: float = Field(default=0.0, ge=0, le=100)
    risk_level: Optional[RiskLevel] = None

    @model_validator(mode="after")
    def derive_risk_level(self):
        # The level always follows the score; a supplied level is overridden
        self.risk_level = risk_level_for_score(self.risk_score)
        return self

    def with_risk(self, score: float, bands: Optional[RiskBands] = None):
        """Copy of the record with a new score and its matching level."""
        score = max(0.0, min(100.0, score))
        return self.model_copy(
            update={"risk_score": score, "risk_level": risk_level_for_score(score, bands)}
        )


class Entity(ScoredRecord):
    """A monitored party: person, company, institution or agency."""

    id: str
    name: str
    category: EntityCategory = EntityCategory.CORPORATE
    jurisdiction: str = ""
    registration_date: datetime
    status: str = "active"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("registration_date")
    @classmethod
    def normalize_registration_date(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class Transaction(ScoredRecord):
    """A movement of funds between two entities."""

    id: str
    source_entity_id: str
    destination_entity_id: str
    amount: float
    currency: str = "USD"
    timestamp: datetime
    description: Optional[str] = None
    type: TransactionType = TransactionType.TRANSFER
    category: TransactionCategory = TransactionCategory.FIAT
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class EntityRelationship(BaseModel):
    """Directed relationship between two entities."""

    id: str
    source_entity_id: str
    target_entity_id: str
    relationship_type: RelationshipType
    strength: float = 1.0
    start_date: datetime
    end_date: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None


class Alert(BaseModel):
    """An investigator alert raised by the engine."""

    id: str
    entity_id: str
    transaction_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    type: AlertType
    title: str
    description: str
    risk_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    status: AlertStatus = AlertStatus.PENDING
    assigned_to: Optional[str] = None
    detection_method: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump(mode="json")
