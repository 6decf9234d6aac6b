"""
Statistical anomaly detection over entity transaction histories.

Detects, per entity and direction (incoming / outgoing):
- Velocity spikes: days with far more transactions than the entity's average
- Volume outliers: amounts more than three standard deviations above the mean
- Flow patterns: fan-in consolidation, fan-out distribution, round amounts
- Risky connections: transactions with high or critical risk counterparties
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Optional

import numpy as np

from amlguard.config import Settings, settings as default_settings
from amlguard.errors import InsufficientDataError
from amlguard.pipeline.cancellation import CancellationToken, check_cancelled
from amlguard.schemas.records import Entity, RiskLevel, Transaction

logger = logging.getLogger(__name__)


class AnomalyType(str, Enum):
    """Types of statistical anomalies."""

    VELOCITY = "velocity"
    VOLUME = "volume"
    PATTERN = "pattern"
    CONNECTION = "connection"


# Contribution of each anomaly type to the entity score
TYPE_WEIGHTS = {
    AnomalyType.VELOCITY: 0.8,
    AnomalyType.VOLUME: 0.7,
    AnomalyType.PATTERN: 1.0,
    AnomalyType.CONNECTION: 0.9,
}

# Findings of these types mark their transactions as anomalous
TRANSACTION_LEVEL_TYPES = {AnomalyType.VELOCITY, AnomalyType.VOLUME, AnomalyType.PATTERN}

FAN_MIN_TRANSACTIONS = 5
FAN_TOLERANCE = 0.1
ROUND_AMOUNT_MINIMUM = 10_000
Z_SCORE_LIMIT = 3.0


def calculate_severity(ratio: float) -> float:
    """Map a ratio to a severity in [0.3, 1.0]."""
    return min(max(ratio / 5, 0.3), 1.0)


@dataclass
class Anomaly:
    """A single anomaly finding for an entity."""

    anomaly_type: AnomalyType
    description: str
    severity: float
    transaction_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.anomaly_type.value,
            "description": self.description,
            "severity": self.severity,
            "transaction_ids": self.transaction_ids,
        }


@dataclass
class EntityAnomalyResult:
    """All anomalies found for one entity, with the aggregate score."""

    entity_id: str
    anomaly_score: float
    anomalies: list[Anomaly] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "anomaly_score": self.anomaly_score,
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


@dataclass
class AnomalyResult:
    """Per-transaction anomaly verdict."""

    transaction_id: str
    anomaly_score: float
    is_anomaly: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "anomaly_score": self.anomaly_score,
            "is_anomaly": self.is_anomaly,
        }


@dataclass
class EntityFlows:
    incoming: list[Transaction] = field(default_factory=list)
    outgoing: list[Transaction] = field(default_factory=list)


def _leave_one_out_z_scores(amounts: list[float]) -> np.ndarray:
    """
    Z-score of each amount against the remaining amounts.

    Uses the population standard deviation of the reference sample with a
    floor of 1.
    """
    values = np.asarray(amounts, dtype=float)
    n = len(values)
    total = values.sum()
    total_sq = np.square(values).sum()

    ref_mean = (total - values) / (n - 1)
    ref_var = (total_sq - np.square(values)) / (n - 1) - np.square(ref_mean)
    ref_std = np.sqrt(np.clip(ref_var, 0.0, None))
    ref_std = np.maximum(ref_std, 1.0)

    return (values - ref_mean) / ref_std


class AnomalyDetector:
    """
    Detects statistical outliers in entity transaction flows.

    Usage:
        detector = AnomalyDetector()
        results = detector.detect(transactions, entities)
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.fan_window = timedelta(hours=self.config.fan_window_hours)
        self.min_volume_samples = self.config.min_volume_samples

    def detect(
        self,
        transactions: list[Transaction],
        entities: list[Entity],
        cancel: Optional[CancellationToken] = None,
    ) -> list[EntityAnomalyResult]:
        """
        Analyze every known entity that takes part in a transaction.

        Returns:
            Results sorted by descending anomaly score, ties by entity id
        """
        entities_by_id = {e.id: e for e in entities}
        flows = self.build_flows(transactions)
        return self.rank(self.analyze_entities(sorted(flows), flows, entities_by_id, cancel))

    def analyze_entities(
        self,
        entity_ids: list[str],
        flows: dict[str, EntityFlows],
        entities_by_id: dict[str, Entity],
        cancel: Optional[CancellationToken] = None,
    ) -> list[EntityAnomalyResult]:
        """Analyze a subset of entities; unknown entities are skipped."""
        results = []
        for entity_id in entity_ids:
            check_cancelled(cancel)
            if entity_id not in entities_by_id or entity_id not in flows:
                logger.debug(f"Skipping entity {entity_id} without records")
                continue
            results.append(self.analyze_entity(entity_id, flows[entity_id], entities_by_id))
        return results

    @staticmethod
    def build_flows(transactions: list[Transaction]) -> dict[str, EntityFlows]:
        """Group transactions by entity into incoming and outgoing lists."""
        flows: dict[str, EntityFlows] = {}
        for txn in sorted(transactions, key=lambda t: (t.timestamp, t.id)):
            flows.setdefault(txn.source_entity_id, EntityFlows()).outgoing.append(txn)
            flows.setdefault(txn.destination_entity_id, EntityFlows()).incoming.append(txn)
        return flows

    @staticmethod
    def rank(results: list[EntityAnomalyResult]) -> list[EntityAnomalyResult]:
        return sorted(results, key=lambda r: (-r.anomaly_score, r.entity_id))

    def analyze_entity(
        self,
        entity_id: str,
        flows: EntityFlows,
        entities_by_id: dict[str, Entity],
    ) -> EntityAnomalyResult:
        """Run every check for one entity."""
        anomalies: list[Anomaly] = []

        for direction, txns in (("incoming", flows.incoming), ("outgoing", flows.outgoing)):
            anomalies.extend(self._detect_velocity(direction, txns))
            try:
                anomalies.extend(self._detect_volume(direction, txns))
            except InsufficientDataError as e:
                logger.debug(f"Volume check skipped for {entity_id} ({direction}): {e}")

        anomalies.extend(self._detect_fan_in(flows))
        anomalies.extend(self._detect_fan_out(flows))
        anomalies.extend(self._detect_round_amounts(flows))

        connection = self._detect_risky_connections(entity_id, flows, entities_by_id)
        if connection:
            anomalies.append(connection)

        return EntityAnomalyResult(
            entity_id=entity_id,
            anomaly_score=self._calculate_score(anomalies),
            anomalies=anomalies,
        )

    def score_transactions(
        self,
        transactions: list[Transaction],
        entity_results: list[EntityAnomalyResult],
    ) -> list[AnomalyResult]:
        """
        Derive one AnomalyResult per transaction.

        The score is the largest volume z-score of the transaction in either
        direction (0 when there is not enough history); the flag is set when
        a velocity, volume or pattern finding implicates the transaction.
        """
        flagged: set[str] = set()
        for result in entity_results:
            for anomaly in result.anomalies:
                if anomaly.anomaly_type in TRANSACTION_LEVEL_TYPES:
                    flagged.update(anomaly.transaction_ids)

        z_scores: dict[str, float] = {}
        for flows in self.build_flows(transactions).values():
            for txns in (flows.incoming, flows.outgoing):
                if len(txns) < self.min_volume_samples:
                    continue
                scores = _leave_one_out_z_scores([t.amount for t in txns])
                for txn, z in zip(txns, scores):
                    z_scores[txn.id] = max(z_scores.get(txn.id, 0.0), float(z))

        return [
            AnomalyResult(
                transaction_id=txn.id,
                anomaly_score=max(0.0, z_scores.get(txn.id, 0.0)),
                is_anomaly=txn.id in flagged,
            )
            for txn in transactions
        ]

    def _detect_velocity(self, direction: str, txns: list[Transaction]) -> list[Anomaly]:
        """Flag days whose transaction count spikes above the average."""
        if not txns:
            return []

        by_day: dict[date, list[Transaction]] = {}
        for txn in txns:
            by_day.setdefault(txn.timestamp.date(), []).append(txn)

        average = len(txns) / len(by_day)
        anomalies = []
        for day, day_txns in sorted(by_day.items()):
            count = len(day_txns)
            if count > average * 3 and count >= 3:
                anomalies.append(Anomaly(
                    anomaly_type=AnomalyType.VELOCITY,
                    description=(
                        f"Unusual spike in {direction} transactions on {day.isoformat()} "
                        f"({count} vs avg {average:.1f})"
                    ),
                    severity=calculate_severity(count / average),
                    transaction_ids=[t.id for t in day_txns],
                ))
        return anomalies

    def _detect_volume(self, direction: str, txns: list[Transaction]) -> list[Anomaly]:
        """Flag amounts more than three standard deviations above the mean."""
        if len(txns) < self.min_volume_samples:
            raise InsufficientDataError("volume", self.min_volume_samples, len(txns))

        scores = _leave_one_out_z_scores([t.amount for t in txns])
        anomalies = []
        for txn, z in zip(txns, scores):
            if z > Z_SCORE_LIMIT:
                anomalies.append(Anomaly(
                    anomaly_type=AnomalyType.VOLUME,
                    description=(
                        f"Unusually large {direction} transaction of {txn.amount:,.2f} "
                        f"{txn.currency} ({z:.1f} std devs above mean)"
                    ),
                    severity=calculate_severity(float(z) / 3),
                    transaction_ids=[txn.id],
                ))
        return anomalies

    def _detect_fan_in(self, flows: EntityFlows) -> list[Anomaly]:
        """Many incoming transactions consolidated into one outgoing transaction."""
        if len(flows.incoming) < FAN_MIN_TRANSACTIONS or not flows.outgoing:
            return []

        anomalies = []
        for out_txn in flows.outgoing:
            preceding = [
                t for t in flows.incoming
                if timedelta(0) <= out_txn.timestamp - t.timestamp <= self.fan_window
            ]
            if len(preceding) < FAN_MIN_TRANSACTIONS:
                continue

            total = sum(t.amount for t in preceding)
            if abs(out_txn.amount - total) / total < FAN_TOLERANCE:
                anomalies.append(Anomaly(
                    anomaly_type=AnomalyType.PATTERN,
                    description=(
                        f"Fan-in pattern: {len(preceding)} incoming transactions consolidated "
                        f"into one outgoing transaction of {out_txn.amount:,.2f} {out_txn.currency}"
                    ),
                    severity=min(0.7 + len(preceding) / 20, 1.0),
                    transaction_ids=[t.id for t in preceding] + [out_txn.id],
                ))
        return anomalies

    def _detect_fan_out(self, flows: EntityFlows) -> list[Anomaly]:
        """One incoming transaction distributed into many outgoing transactions."""
        if len(flows.outgoing) < FAN_MIN_TRANSACTIONS or not flows.incoming:
            return []

        anomalies = []
        for in_txn in flows.incoming:
            following = [
                t for t in flows.outgoing
                if timedelta(0) <= t.timestamp - in_txn.timestamp <= self.fan_window
            ]
            if len(following) < FAN_MIN_TRANSACTIONS:
                continue

            total = sum(t.amount for t in following)
            if abs(in_txn.amount - total) / in_txn.amount < FAN_TOLERANCE:
                anomalies.append(Anomaly(
                    anomaly_type=AnomalyType.PATTERN,
                    description=(
                        f"Fan-out pattern: one incoming transaction of {in_txn.amount:,.2f} "
                        f"{in_txn.currency} distributed into {len(following)} outgoing transactions"
                    ),
                    severity=min(0.7 + len(following) / 20, 1.0),
                    transaction_ids=[in_txn.id] + [t.id for t in following],
                ))
        return anomalies

    def _detect_round_amounts(self, flows: EntityFlows) -> list[Anomaly]:
        anomalies = []
        for txn in flows.incoming + flows.outgoing:
            if txn.amount >= ROUND_AMOUNT_MINIMUM and txn.amount % 1000 == 0:
                anomalies.append(Anomaly(
                    anomaly_type=AnomalyType.PATTERN,
                    description=(
                        f"Suspicious round number transaction of {txn.amount:,.0f} {txn.currency}"
                    ),
                    severity=0.5,
                    transaction_ids=[txn.id],
                ))
        return anomalies

    def _detect_risky_connections(
        self,
        entity_id: str,
        flows: EntityFlows,
        entities_by_id: dict[str, Entity],
    ) -> Optional[Anomaly]:
        """Count transactions with high or critical risk counterparties."""
        risky_levels = {RiskLevel.HIGH, RiskLevel.CRITICAL}
        risky_txns = []
        for txn in flows.incoming + flows.outgoing:
            counterparty_id = (
                txn.source_entity_id if txn.destination_entity_id == entity_id
                else txn.destination_entity_id
            )
            counterparty = entities_by_id.get(counterparty_id)
            if counterparty is not None and counterparty.risk_level in risky_levels:
                risky_txns.append(txn)

        if not risky_txns:
            return None

        count = len(risky_txns)
        return Anomaly(
            anomaly_type=AnomalyType.CONNECTION,
            description=f"{count} transactions with high-risk counterparties",
            severity=min(0.5 + count / 10, 1.0),
            transaction_ids=[t.id for t in risky_txns],
        )

    def _calculate_score(self, anomalies: list[Anomaly]) -> float:
        """Weighted mean severity over the findings, scaled to 0-100."""
        if not anomalies:
            return 0.0

        weighted = sum(a.severity * TYPE_WEIGHTS[a.anomaly_type] for a in anomalies)
        weights = sum(TYPE_WEIGHTS[a.anomaly_type] for a in anomalies)
        return min(100.0, weighted / weights * 100)
