"""
Risk scoring for entities and transactions.

Provides additive, explainable risk assessment for:
- Transactions (amount, counterparties, type, jurisdiction, timing, narrative)
- Entities (age, jurisdiction, activity volume, share of risky transactions)

Scores start from a base of 20 and are clamped to [0, 100].
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from amlguard.config import Settings, settings as default_settings
from amlguard.schemas.records import (
    Entity,
    RiskBands,
    RiskLevel,
    Transaction,
    TransactionCategory,
    TransactionType,
    utcnow,
)

logger = logging.getLogger(__name__)

BASE_SCORE = 20.0
HIGH_RISK_COUNTERPARTY_SCORE = 70.0
MAX_ENTITY_FACTORS = 5


class RiskCategory(str, Enum):
    """Categories of risk factors."""

    AMOUNT = "amount"
    COUNTERPARTY = "counterparty"
    PRODUCT = "product"
    GEOGRAPHIC = "geographic"
    TIMING = "timing"
    NARRATIVE = "narrative"
    BEHAVIORAL = "behavioral"


@dataclass
class RiskFactor:
    """Individual risk factor contributing to overall score."""

    category: RiskCategory
    name: str
    description: str
    score: float
    evidence: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "name": self.name,
            "description": self.description,
            "score": self.score,
            "evidence": self.evidence,
        }


@dataclass
class RiskAssessment:
    """Complete risk assessment result."""

    subject_id: str
    score: float
    risk_level: RiskLevel
    factors: list[RiskFactor] = field(default_factory=list)
    calculated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "score": self.score,
            "risk_level": self.risk_level.value,
            "factors": [f.to_dict() for f in self.factors],
            "calculated_at": self.calculated_at.isoformat(),
        }


@dataclass
class TransactionContext:
    """
    Counterparty facts needed to score a transaction.

    Everything the scorer knows about the two entities is passed here
    explicitly; unknown values are None and contribute nothing.
    """

    source_risk_score: Optional[float] = None
    destination_risk_score: Optional[float] = None
    source_jurisdiction: Optional[str] = None
    destination_jurisdiction: Optional[str] = None
    source_newly_created: bool = False
    destination_newly_created: bool = False
    is_first_transaction: bool = False

    @classmethod
    def from_records(
        cls,
        transaction: Transaction,
        entities_by_id: dict[str, Entity],
        seen_pairs: Optional[set[tuple[str, str]]] = None,
        new_entity_days: int = 90,
    ) -> "TransactionContext":
        """
        Build a context from entity records.

        Args:
            transaction: Transaction being scored
            entities_by_id: Known entities keyed by id
            seen_pairs: Ordered (source, destination) pairs that already
                transacted before this transaction; None means unknown
            new_entity_days: Age below which a counterparty is newly created
        """
        source = entities_by_id.get(transaction.source_entity_id)
        destination = entities_by_id.get(transaction.destination_entity_id)
        cutoff = timedelta(days=new_entity_days)

        def newly_created(entity: Optional[Entity]) -> bool:
            if entity is None:
                return False
            age = transaction.timestamp - entity.registration_date
            return timedelta(0) <= age < cutoff

        pair = (transaction.source_entity_id, transaction.destination_entity_id)
        return cls(
            source_risk_score=source.risk_score if source else None,
            destination_risk_score=destination.risk_score if destination else None,
            source_jurisdiction=source.jurisdiction if source else None,
            destination_jurisdiction=destination.jurisdiction if destination else None,
            source_newly_created=newly_created(source),
            destination_newly_created=newly_created(destination),
            is_first_transaction=seen_pairs is not None and pair not in seen_pairs,
        )


@dataclass
class EntityContext:
    """Reference time for entity scoring."""

    as_of: datetime = field(default_factory=utcnow)


class _JurisdictionList:
    """Case-insensitive membership test for jurisdiction names."""

    def __init__(self, names: Iterable[str]):
        self._names = {n.strip().casefold() for n in names}

    def __contains__(self, name: Optional[str]) -> bool:
        return bool(name) and name.strip().casefold() in self._names


def _calendar_months_between(start: datetime, end: datetime) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


class TransactionRiskScorer:
    """
    Risk scoring for individual transactions.

    Factors considered:
    - Amount (large, just under the reporting threshold, round)
    - Counterparties (newly created, already high risk, first contact)
    - Product (cross-border, crypto, currency exchange)
    - Jurisdiction of source and destination
    - Timing (outside business hours, weekend)
    - Narrative (vague phrases, suspicious keywords, near-empty text)
    """

    BUSINESS_HOURS = (6, 22)

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.bands: RiskBands = self.config.risk_bands()
        self.high_risk_jurisdictions = _JurisdictionList(self.config.high_risk_jurisdictions)

    def score_transaction(
        self,
        transaction: Transaction,
        context: Optional[TransactionContext] = None,
    ) -> RiskAssessment:
        """
        Score a single transaction.

        Args:
            transaction: Transaction to score
            context: Counterparty facts; an empty context when None

        Returns:
            RiskAssessment with factors sorted by contribution
        """
        context = context or TransactionContext()
        factors: list[RiskFactor] = []

        factors.extend(self._assess_amount_risk(transaction.amount))
        factors.extend(self._assess_counterparty_risk(context))
        factors.extend(self._assess_product_risk(transaction))
        factors.extend(self._assess_jurisdiction_risk(context))
        factors.extend(self._assess_timing_risk(transaction.timestamp))
        factors.extend(self._assess_description_risk(transaction.description))

        return self._build_assessment(transaction.id, factors)

    def score_batch(
        self,
        transactions: list[Transaction],
        entities_by_id: dict[str, Entity],
    ) -> dict[str, RiskAssessment]:
        """
        Score transactions in timestamp order.

        The first-transaction flag is derived from the batch itself: a pair
        is new until its earliest transaction has been scored.
        """
        seen_pairs: set[tuple[str, str]] = set()
        results = {}
        for txn in sorted(transactions, key=lambda t: (t.timestamp, t.id)):
            context = TransactionContext.from_records(
                txn, entities_by_id, seen_pairs, self.config.new_entity_days
            )
            results[txn.id] = self.score_transaction(txn, context)
            seen_pairs.add((txn.source_entity_id, txn.destination_entity_id))
        return results

    def _assess_amount_risk(self, amount: float) -> list[RiskFactor]:
        """Assess risk based on transaction amount."""
        factors = []
        threshold = self.config.reporting_threshold

        if amount >= threshold:
            factors.append(RiskFactor(
                category=RiskCategory.AMOUNT,
                name="large_amount",
                description=f"Large transaction amount: {amount:,.2f}",
                score=min(5 + (amount - threshold) / threshold, 15),
                evidence={"amount": amount},
            ))
        elif amount >= threshold * self.config.structuring_band:
            factors.append(RiskFactor(
                category=RiskCategory.AMOUNT,
                name="below_reporting_threshold",
                description="Transaction amount just below reporting threshold",
                score=20,
                evidence={"amount": amount, "threshold": threshold},
            ))

        if amount >= 1000 and amount % 1000 == 0:
            factors.append(RiskFactor(
                category=RiskCategory.AMOUNT,
                name="round_amount",
                description="Suspiciously round transaction amount",
                score=5,
                evidence={"amount": amount},
            ))

        return factors

    def _assess_counterparty_risk(self, context: TransactionContext) -> list[RiskFactor]:
        """Assess risk from the entities on either side."""
        factors = []

        if context.source_newly_created or context.destination_newly_created:
            factors.append(RiskFactor(
                category=RiskCategory.COUNTERPARTY,
                name="new_counterparty",
                description="Transaction involves newly created entity",
                score=15,
            ))

        for side, score in (
            ("source", context.source_risk_score),
            ("destination", context.destination_risk_score),
        ):
            if score is not None and score > HIGH_RISK_COUNTERPARTY_SCORE:
                factors.append(RiskFactor(
                    category=RiskCategory.COUNTERPARTY,
                    name=f"high_risk_{side}",
                    description=f"{side.capitalize()} entity has high risk score",
                    score=15,
                    evidence={"risk_score": score},
                ))

        if context.is_first_transaction:
            factors.append(RiskFactor(
                category=RiskCategory.COUNTERPARTY,
                name="first_transaction",
                description="First transaction between these entities",
                score=10,
            ))

        return factors

    def _assess_product_risk(self, transaction: Transaction) -> list[RiskFactor]:
        """Assess risk based on transaction type and category."""
        factors = []

        if transaction.category == TransactionCategory.CROSS_BORDER:
            factors.append(RiskFactor(
                category=RiskCategory.PRODUCT,
                name="cross_border",
                description="Cross-border transaction",
                score=15,
            ))
        elif transaction.category == TransactionCategory.CRYPTO:
            factors.append(RiskFactor(
                category=RiskCategory.PRODUCT,
                name="crypto",
                description="Cryptocurrency transaction",
                score=10,
            ))

        if transaction.type == TransactionType.EXCHANGE:
            factors.append(RiskFactor(
                category=RiskCategory.PRODUCT,
                name="currency_exchange",
                description="Currency exchange transaction",
                score=5,
            ))

        return factors

    def _assess_jurisdiction_risk(self, context: TransactionContext) -> list[RiskFactor]:
        factors = []
        for side, jurisdiction in (
            ("source", context.source_jurisdiction),
            ("destination", context.destination_jurisdiction),
        ):
            if jurisdiction in self.high_risk_jurisdictions:
                factors.append(RiskFactor(
                    category=RiskCategory.GEOGRAPHIC,
                    name=f"{side}_high_risk_jurisdiction",
                    description=(
                        f"{side.capitalize()} entity in high-risk jurisdiction: {jurisdiction}"
                    ),
                    score=20,
                    evidence={"jurisdiction": jurisdiction},
                ))
        return factors

    def _assess_timing_risk(self, timestamp: datetime) -> list[RiskFactor]:
        factors = []
        opens, closes = self.BUSINESS_HOURS

        if not opens <= timestamp.hour < closes:
            factors.append(RiskFactor(
                category=RiskCategory.TIMING,
                name="outside_business_hours",
                description=f"Transaction conducted outside business hours: {timestamp.hour}:00",
                score=5,
            ))
        if timestamp.weekday() >= 5:
            factors.append(RiskFactor(
                category=RiskCategory.TIMING,
                name="weekend",
                description="Transaction conducted on weekend",
                score=5,
            ))

        return factors

    def _assess_description_risk(self, description: Optional[str]) -> list[RiskFactor]:
        """Assess the free-text narrative; absent text is not scored."""
        if not description:
            return []

        factors = []
        text = description.lower()

        phrase = next((p for p in self.config.vague_description_phrases if p in text), None)
        if phrase:
            factors.append(RiskFactor(
                category=RiskCategory.NARRATIVE,
                name="vague_description",
                description=f'Vague description containing "{phrase}"',
                score=10,
            ))

        keyword = next(
            (k for k in self.config.suspicious_description_keywords if k in text), None
        )
        if keyword:
            factors.append(RiskFactor(
                category=RiskCategory.NARRATIVE,
                name="suspicious_keyword",
                description=f'Suspicious keyword in description: "{keyword}"',
                score=15,
            ))

        if len(text) < 5:
            factors.append(RiskFactor(
                category=RiskCategory.NARRATIVE,
                name="short_description",
                description="Missing or extremely short description",
                score=10,
            ))

        return factors

    def _build_assessment(self, subject_id: str, factors: list[RiskFactor]) -> RiskAssessment:
        score = max(0.0, min(100.0, BASE_SCORE + sum(f.score for f in factors)))
        factors.sort(key=lambda f: f.score, reverse=True)
        return RiskAssessment(
            subject_id=subject_id,
            score=score,
            risk_level=self.bands.level_for(score),
            factors=factors,
        )


class EntityRiskScorer:
    """
    Risk scoring for entities.

    Factors considered:
    - Entity age (registered under 6 or 12 months ago)
    - Jurisdiction of registration
    - Transaction volume and total value
    - Share of the entity's transactions already scored high risk
    """

    HIGH_VOLUME_COUNT = 50
    HIGH_TOTAL_VALUE = 1_000_000

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.bands: RiskBands = self.config.risk_bands()
        self.high_risk_jurisdictions = _JurisdictionList(self.config.high_risk_jurisdictions)

    def score_entity(
        self,
        entity: Entity,
        related_transactions: Optional[list[Transaction]] = None,
        context: Optional[EntityContext] = None,
    ) -> RiskAssessment:
        """
        Calculate risk score for an entity.

        Args:
            entity: Entity to score
            related_transactions: Transactions where the entity is source or destination
            context: Reference time for age calculations

        Returns:
            RiskAssessment carrying at most the five largest factors
        """
        context = context or EntityContext()
        factors: list[RiskFactor] = []

        if entity.jurisdiction in self.high_risk_jurisdictions:
            factors.append(RiskFactor(
                category=RiskCategory.GEOGRAPHIC,
                name="high_risk_jurisdiction",
                description=f"Registered in high-risk jurisdiction: {entity.jurisdiction}",
                score=25,
                evidence={"jurisdiction": entity.jurisdiction},
            ))

        age_factor = self._assess_age_risk(entity, context.as_of)
        if age_factor:
            factors.append(age_factor)

        if related_transactions:
            factors.extend(self._assess_activity_risk(related_transactions))

        score = max(0.0, min(100.0, BASE_SCORE + sum(f.score for f in factors)))
        factors.sort(key=lambda f: f.score, reverse=True)

        return RiskAssessment(
            subject_id=entity.id,
            score=score,
            risk_level=self.bands.level_for(score),
            factors=factors[:MAX_ENTITY_FACTORS],
        )

    def score_batch(
        self,
        entities: list[Entity],
        transactions: list[Transaction],
        context: Optional[EntityContext] = None,
    ) -> dict[str, RiskAssessment]:
        """Score every entity against the transactions it takes part in."""
        by_entity: dict[str, list[Transaction]] = {}
        for txn in transactions:
            by_entity.setdefault(txn.source_entity_id, []).append(txn)
            by_entity.setdefault(txn.destination_entity_id, []).append(txn)

        return {
            entity.id: self.score_entity(entity, by_entity.get(entity.id, []), context)
            for entity in sorted(entities, key=lambda e: e.id)
        }

    def _assess_age_risk(self, entity: Entity, as_of: datetime) -> Optional[RiskFactor]:
        """Assess risk from how recently the entity was registered."""
        months = _calendar_months_between(entity.registration_date, as_of)
        if months < 6:
            return RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="recently_registered",
                description="Recently registered entity (less than 6 months old)",
                score=15,
                evidence={"age_months": months},
            )
        if months < 12:
            return RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="young_entity",
                description="Relatively new entity (less than 1 year old)",
                score=10,
                evidence={"age_months": months},
            )
        return None

    def _assess_activity_risk(self, transactions: list[Transaction]) -> list[RiskFactor]:
        factors = []
        count = len(transactions)

        if count > self.HIGH_VOLUME_COUNT:
            factors.append(RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="high_volume",
                description=f"High transaction volume: {count} transactions",
                score=10,
                evidence={"transaction_count": count},
            ))

        total = sum(t.amount for t in transactions)
        if total > self.HIGH_TOTAL_VALUE:
            factors.append(RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="high_total_value",
                description=f"High total transaction value: {total:,.2f}",
                score=15,
                evidence={"total_value": total},
            ))

        risky = sum(1 for t in transactions if t.risk_score > HIGH_RISK_COUNTERPARTY_SCORE)
        percentage = risky / count * 100
        if percentage > 30:
            factors.append(RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="risky_transaction_share",
                description=f"High percentage of risky transactions: {percentage:.1f}%",
                score=20,
                evidence={"percentage": percentage},
            ))
        elif percentage > 10:
            factors.append(RiskFactor(
                category=RiskCategory.BEHAVIORAL,
                name="risky_transaction_share",
                description=f"Moderate percentage of risky transactions: {percentage:.1f}%",
                score=10,
                evidence={"percentage": percentage},
            ))

        return factors


class RiskScorer:
    """
    Facade over the transaction and entity scorers.

    Usage:
        scorer = RiskScorer()
        assessment = scorer.score_transaction(txn, context)
    """

    def __init__(self, config: Optional[Settings] = None):
        self.transactions = TransactionRiskScorer(config)
        self.entities = EntityRiskScorer(config)

    def score_transaction(
        self,
        transaction: Transaction,
        context: Optional[TransactionContext] = None,
    ) -> RiskAssessment:
        return self.transactions.score_transaction(transaction, context)

    def score_entity(
        self,
        entity: Entity,
        related_transactions: Optional[list[Transaction]] = None,
        context: Optional[EntityContext] = None,
    ) -> RiskAssessment:
        return self.entities.score_entity(entity, related_transactions, context)

    def score_batch(
        self,
        transactions: list[Transaction],
        entities: list[Entity],
        context: Optional[EntityContext] = None,
    ) -> tuple[dict[str, RiskAssessment], dict[str, RiskAssessment]]:
        """
        Score a batch: transactions in timestamp order, then entities.

        Entities are scored against the freshly scored transactions.

        Returns:
            (transaction assessments, entity assessments), each keyed by id
        """
        entities_by_id = {e.id: e for e in entities}
        txn_results = self.transactions.score_batch(transactions, entities_by_id)
        scored = [
            t.with_risk(txn_results[t.id].score, self.transactions.bands) for t in transactions
        ]
        return txn_results, self.entities.score_batch(entities, scored, context)
