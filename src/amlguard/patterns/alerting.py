"""
Alert generation from detection results.

Turns risk scores, anomalies, transaction patterns and network findings
into investigator alerts, deduplicated against alerts that already exist.
Also provides the alert queue views used by investigators (filtering,
priority queue, statistics).
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional
from uuid import uuid4

from amlguard.anomaly.detector import AnomalyResult, EntityAnomalyResult
from amlguard.config import Settings, settings as default_settings
from amlguard.errors import DeduplicationConflict
from amlguard.fincrime.aml_patterns import DetectedPattern
from amlguard.schemas.records import (
    Alert,
    AlertStatus,
    AlertType,
    Entity,
    RiskLevel,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)

# Multiplier and cap applied to confidence x 100 per pattern risk level
PATTERN_SCORE_SCALING = {
    RiskLevel.CRITICAL: (1.3, 95.0),
    RiskLevel.HIGH: (1.2, 85.0),
    RiskLevel.MEDIUM: (1.1, 70.0),
    RiskLevel.LOW: (1.0, 50.0),
}

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def pattern_alert_score(pattern: DetectedPattern) -> float:
    """Alert risk score for a pattern-derived alert."""
    multiplier, cap = PATTERN_SCORE_SCALING[pattern.risk_level]
    return min(cap, pattern.confidence * 100 * multiplier)


def _alert_id() -> str:
    return f"ALT-{uuid4().hex[:12]}"


@dataclass
class DetectionBundle:
    """Everything the detectors produced in one run."""

    transactions: list[Transaction] = field(default_factory=list)
    entities: list[Entity] = field(default_factory=list)
    patterns: list[DetectedPattern] = field(default_factory=list)
    network_patterns: list[DetectedPattern] = field(default_factory=list)
    anomaly_results: list[AnomalyResult] = field(default_factory=list)
    entity_anomalies: list[EntityAnomalyResult] = field(default_factory=list)


class _KeyedLocks:
    """One lock per dedup key, dropped once no caller holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: dict[Any, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class _AlertIndex:
    """Existing and newly created alerts, indexed for dedup lookups."""

    def __init__(self, alerts: list[Alert]):
        self._lock = threading.Lock()
        self.alerts: list[Alert] = []
        self.by_transaction: dict[str, list[Alert]] = {}
        self.by_entity: dict[str, list[Alert]] = {}
        for alert in alerts:
            self.add(alert)

    def add(self, alert: Alert) -> None:
        with self._lock:
            self.alerts.append(alert)
            self.by_entity.setdefault(alert.entity_id, []).append(alert)
            for txn_id in self._referenced_transactions(alert):
                self.by_transaction.setdefault(txn_id, []).append(alert)

    def for_transactions(self, transaction_ids: list[str]) -> list[Alert]:
        with self._lock:
            found = []
            for txn_id in transaction_ids:
                found.extend(self.by_transaction.get(txn_id, []))
            return found

    def for_entities(self, entity_ids: list[str]) -> list[Alert]:
        with self._lock:
            found = []
            for entity_id in entity_ids:
                found.extend(self.by_entity.get(entity_id, []))
            return found

    @staticmethod
    def _referenced_transactions(alert: Alert) -> set[str]:
        ids = set(alert.metadata.get("transaction_ids", []))
        if alert.transaction_id:
            ids.add(alert.transaction_id)
        return ids


class AlertGenerator:
    """
    Generate alerts from detection results.

    Rules, applied in order:
    - Transactions scoring at or above the transaction threshold
    - Entities scoring at or above the entity threshold (24h cooldown)
    - Transaction patterns and network findings
    - Transactions flagged as anomalous

    Each check-and-create runs under a lock keyed by the alert's
    (entity, transaction or pattern) key.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.bands = self.config.risk_bands()
        self._locks = _KeyedLocks()

    def generate(
        self,
        detections: DetectionBundle,
        existing_alerts: Optional[list[Alert]] = None,
        as_of: Optional[datetime] = None,
    ) -> list[Alert]:
        """
        Create the alerts warranted by one run's detections.

        Args:
            detections: Detector outputs for the run
            existing_alerts: Alerts already known, used for deduplication
            as_of: Reference time for the entity cooldown and alert timestamps

        Returns:
            Newly created alerts only
        """
        as_of = as_of or utcnow()
        index = _AlertIndex(existing_alerts or [])
        created: list[Alert] = []

        for txn in sorted(detections.transactions, key=lambda t: (t.timestamp, t.id)):
            alert = self._transaction_alert(txn, index, as_of)
            if alert:
                created.append(alert)

        for entity in sorted(detections.entities, key=lambda e: e.id):
            alert = self._entity_alert(entity, index, as_of)
            if alert:
                created.append(alert)

        for pattern in detections.patterns:
            alert = self._pattern_alert(pattern, index, as_of, network=False)
            if alert:
                created.append(alert)

        for pattern in detections.network_patterns:
            alert = self._pattern_alert(pattern, index, as_of, network=True)
            if alert:
                created.append(alert)

        transactions_by_id = {t.id: t for t in detections.transactions}
        for result in detections.anomaly_results:
            if not result.is_anomaly or result.transaction_id not in transactions_by_id:
                continue
            alert = self._anomaly_alert(
                transactions_by_id[result.transaction_id],
                detections.entity_anomalies,
                index,
                as_of,
            )
            if alert:
                created.append(alert)

        logger.info(f"Generated {len(created)} alerts")
        return created

    def alert_for_transaction(
        self,
        transaction: Transaction,
        existing_alerts: Optional[list[Alert]] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """Real-time path: alert on a single freshly scored transaction."""
        index = _AlertIndex(existing_alerts or [])
        return self._transaction_alert(
            transaction,
            index,
            as_of or utcnow(),
            detection_method="Real-time Transaction Monitoring",
        )

    def _create_once(
        self,
        key: Any,
        duplicate_of: Callable[[], Optional[Alert]],
        build: Callable[[], Alert],
        index: _AlertIndex,
    ) -> Optional[Alert]:
        """Check for a duplicate and create the alert atomically per key."""
        try:
            with self._locks.hold(key):
                existing = duplicate_of()
                if existing is not None:
                    raise DeduplicationConflict(str(key), existing.id)
                alert = build()
                index.add(alert)
        except DeduplicationConflict as e:
            logger.debug(f"Duplicate alert for {e.key}, skipping")
            return None

        logger.info(f"Generated {alert.risk_level.value} alert: {alert.title}")
        return alert

    def _transaction_alert(
        self,
        txn: Transaction,
        index: _AlertIndex,
        as_of: datetime,
        detection_method: str = "ML Transaction Pattern Analysis",
    ) -> Optional[Alert]:
        if txn.risk_score < self.config.transaction_alert_threshold:
            return None

        def duplicate_of():
            return next(iter(index.for_transactions([txn.id])), None)

        def build():
            return Alert(
                id=_alert_id(),
                entity_id=txn.source_entity_id,
                transaction_id=txn.id,
                timestamp=as_of,
                type=AlertType.TRANSACTION_PATTERN,
                title=f"High Risk Transaction Detected (Score: {txn.risk_score:.0f})",
                description=(
                    f"Unusual transaction pattern detected for transaction {txn.id} from "
                    f"{txn.source_entity_id} to {txn.destination_entity_id}. "
                    f"Amount: {txn.amount:,.2f} {txn.currency}"
                ),
                risk_score=txn.risk_score,
                risk_level=self.bands.level_for(txn.risk_score),
                status=AlertStatus.PENDING,
                detection_method=detection_method,
            )

        return self._create_once((txn.source_entity_id, txn.id), duplicate_of, build, index)

    def _entity_alert(
        self,
        entity: Entity,
        index: _AlertIndex,
        as_of: datetime,
    ) -> Optional[Alert]:
        level = self.bands.level_for(entity.risk_score)
        if entity.risk_score < self.config.entity_alert_threshold or level == RiskLevel.LOW:
            return None

        since = as_of - timedelta(hours=self.config.entity_alert_cooldown_hours)

        def duplicate_of():
            return next(
                (
                    a for a in index.for_entities([entity.id])
                    if a.type == AlertType.ENTITY_RISK and a.timestamp >= since
                ),
                None,
            )

        def build():
            return Alert(
                id=_alert_id(),
                entity_id=entity.id,
                timestamp=as_of,
                type=AlertType.ENTITY_RISK,
                title=f"High Risk Entity Detected (Score: {entity.risk_score:.0f})",
                description=(
                    f"Entity {entity.id} has been flagged as high risk ({level.value}). "
                    f"Jurisdiction: {entity.jurisdiction}"
                ),
                risk_score=entity.risk_score,
                risk_level=level,
                status=AlertStatus.PENDING,
                detection_method="Entity Risk Assessment Model",
            )

        return self._create_once((entity.id, AlertType.ENTITY_RISK.value), duplicate_of, build, index)

    def _pattern_alert(
        self,
        pattern: DetectedPattern,
        index: _AlertIndex,
        as_of: datetime,
        network: bool,
    ) -> Optional[Alert]:
        if not pattern.entity_ids:
            return None

        if network:
            alert_type = AlertType.NETWORK_ACTIVITY
            title = f"{pattern.name} Network Detected"
            detection_method = "Entity Network Analysis"
            def candidates():
                return index.for_entities(pattern.entity_ids)
        else:
            alert_type = AlertType.TRANSACTION_PATTERN
            title = f"{pattern.name} Pattern Detected"
            detection_method = "Transaction Pattern Recognition"
            def candidates():
                return index.for_transactions(pattern.transaction_ids)

        def duplicate_of():
            return next(
                (
                    a for a in candidates()
                    if a.type == alert_type and a.title.startswith(pattern.name)
                ),
                None,
            )

        def build():
            score = pattern_alert_score(pattern)
            return Alert(
                id=_alert_id(),
                entity_id=pattern.entity_ids[0],
                transaction_id=pattern.transaction_ids[0] if pattern.transaction_ids else None,
                timestamp=as_of,
                type=alert_type,
                title=title,
                description=(
                    f"{pattern.description} (Confidence: {pattern.confidence * 100:.1f}%)"
                ),
                risk_score=score,
                risk_level=self.bands.level_for(score),
                status=AlertStatus.PENDING,
                detection_method=detection_method,
                metadata={
                    "pattern_id": pattern.id,
                    "pattern_type": pattern.pattern_type,
                    "confidence": pattern.confidence,
                    "entity_ids": pattern.entity_ids,
                    "transaction_ids": pattern.transaction_ids,
                },
            )

        key = (pattern.entity_ids[0], pattern.content_key())
        return self._create_once(key, duplicate_of, build, index)

    def _anomaly_alert(
        self,
        txn: Transaction,
        entity_anomalies: list[EntityAnomalyResult],
        index: _AlertIndex,
        as_of: datetime,
    ) -> Optional[Alert]:
        reasons = []
        for result in entity_anomalies:
            for anomaly in result.anomalies:
                if txn.id in anomaly.transaction_ids and anomaly.description not in reasons:
                    reasons.append(anomaly.description)

        def duplicate_of():
            return next(iter(index.for_transactions([txn.id])), None)

        def build():
            factors = "; ".join(reasons[:3]) or "statistical outlier"
            return Alert(
                id=_alert_id(),
                entity_id=txn.source_entity_id,
                transaction_id=txn.id,
                timestamp=as_of,
                type=AlertType.ANOMALY_DETECTION,
                title="Anomalous Transaction Detected",
                description=f"Transaction flagged as anomalous based on: {factors}",
                risk_score=txn.risk_score,
                risk_level=self.bands.level_for(txn.risk_score),
                status=AlertStatus.PENDING,
                detection_method="Statistical Anomaly Detection",
            )

        return self._create_once((txn.source_entity_id, txn.id), duplicate_of, build, index)


def filter_alerts(
    alerts: list[Alert],
    time_range: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    risk_level: Optional[RiskLevel] = None,
    status: Optional[AlertStatus] = None,
    limit: Optional[int] = None,
    as_of: Optional[datetime] = None,
) -> list[Alert]:
    """
    Get alerts with optional filtering, newest first.

    Args:
        alerts: Alerts to filter
        time_range: One of "24h", "7d", "30d"; ignored when start is given
        start: Earliest alert timestamp to keep
        end: Latest alert timestamp to keep
        risk_level: Keep only this risk level
        status: Keep only this status
        limit: Maximum number of alerts returned
        as_of: Reference time for time_range

    Raises:
        ValueError: If time_range is not recognized
    """
    if start is None and time_range is not None:
        if time_range not in TIME_RANGES:
            raise ValueError(f"Unknown time range: {time_range}")
        start = (as_of or utcnow()) - TIME_RANGES[time_range]

    result = list(alerts)
    if start is not None:
        result = [a for a in result if a.timestamp >= start]
    if end is not None:
        result = [a for a in result if a.timestamp <= end]
    if risk_level:
        result = [a for a in result if a.risk_level == risk_level]
    if status:
        result = [a for a in result if a.status == status]

    # Sort by timestamp descending
    result.sort(key=lambda a: a.timestamp, reverse=True)

    return result[:limit] if limit else result


def priority_alerts(alerts: list[Alert], limit: int = 5) -> list[Alert]:
    """Pending alerts ordered by risk score, then recency."""
    pending = [a for a in alerts if a.status == AlertStatus.PENDING]
    pending.sort(key=lambda a: (a.risk_score, a.timestamp), reverse=True)
    return pending[:limit]


def alert_stats(alerts: list[Alert]) -> dict[str, Any]:
    """Get alert statistics."""
    by_type: dict[str, int] = {}
    by_level: dict[str, int] = {}
    by_status: dict[str, int] = {}

    for alert in alerts:
        by_type[alert.type.value] = by_type.get(alert.type.value, 0) + 1
        by_level[alert.risk_level.value] = by_level.get(alert.risk_level.value, 0) + 1
        by_status[alert.status.value] = by_status.get(alert.status.value, 0) + 1

    return {
        "total": len(alerts),
        "pending": by_status.get(AlertStatus.PENDING.value, 0),
        "by_type": by_type,
        "by_risk_level": by_level,
        "by_status": by_status,
    }
