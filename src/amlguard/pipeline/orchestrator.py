#!/usr/bin/env python3
"""
Detection engine orchestrator.

Runs one detection batch over snapshots of entities, transactions and
relationships:
  validate -> score transactions -> score entities
           -> anomalies | patterns | network (concurrently) -> alerts

Usage:
    # Analyze a JSON snapshot and print a summary
    python -m amlguard.pipeline.orchestrator --input snapshot.json

    # Write the full results and bound the run time
    python -m amlguard.pipeline.orchestrator --input snapshot.json \
        --output results.json --timeout 30
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, TypeVar

from pydantic import TypeAdapter

from amlguard.anomaly.detector import AnomalyDetector, AnomalyResult, EntityAnomalyResult
from amlguard.config import Settings, settings as default_settings
from amlguard.errors import OperationCancelled, RecordValidationError
from amlguard.fincrime.aml_patterns import AMLPatternDetector, DetectedPattern
from amlguard.fincrime.risk_scoring import (
    EntityContext,
    EntityRiskScorer,
    RiskAssessment,
    TransactionContext,
    TransactionRiskScorer,
)
from amlguard.fincrime.timeline import TimelineEntry, build_transaction_timeline
from amlguard.patterns.alerting import AlertGenerator, DetectionBundle
from amlguard.patterns.network import NetworkAnalysis, NetworkAnalyzer
from amlguard.pipeline.cancellation import CancellationToken, check_cancelled
from amlguard.pipeline.repository import RecordRepository
from amlguard.schemas.records import (
    Alert,
    Entity,
    EntityRelationship,
    RiskLevel,
    Transaction,
    utcnow,
)
from amlguard.schemas.validation import (
    RejectedRecord,
    screen_relationships,
    screen_transactions,
    validate_transaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMELINE_LOOKBACK = timedelta(hours=72)


def _chunks(items: list[T], count: int) -> list[list[T]]:
    """Split items into at most ``count`` contiguous chunks."""
    if not items:
        return []
    size = max(1, -(-len(items) // count))
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class RiskUpdate:
    """A score/level pair to write back onto a record."""

    record_id: str
    record_kind: str  # "entity" or "transaction"
    previous_score: float
    score: float
    risk_level: RiskLevel

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "record_kind": self.record_kind,
            "previous_score": self.previous_score,
            "score": self.score,
            "risk_level": self.risk_level.value,
        }


@dataclass
class DetectionRun:
    """Everything produced by one detection run."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    transaction_assessments: dict[str, RiskAssessment] = field(default_factory=dict)
    entity_assessments: dict[str, RiskAssessment] = field(default_factory=dict)
    risk_updates: list[RiskUpdate] = field(default_factory=list)
    entity_anomalies: list[EntityAnomalyResult] = field(default_factory=list)
    anomaly_results: list[AnomalyResult] = field(default_factory=list)
    patterns: list[DetectedPattern] = field(default_factory=list)
    network: NetworkAnalysis = field(default_factory=NetworkAnalysis)
    network_patterns: list[DetectedPattern] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "transactions_scored": len(self.transaction_assessments),
            "entities_scored": len(self.entity_assessments),
            "risk_updates": len(self.risk_updates),
            "anomalous_transactions": sum(1 for r in self.anomaly_results if r.is_anomaly),
            "patterns": len(self.patterns),
            "network_findings": len(self.network_patterns),
            "alerts": len(self.alerts),
            "rejected": len(self.rejected),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "summary": self.summary(),
            "transaction_assessments": {
                k: v.to_dict() for k, v in self.transaction_assessments.items()
            },
            "entity_assessments": {k: v.to_dict() for k, v in self.entity_assessments.items()},
            "risk_updates": [u.to_dict() for u in self.risk_updates],
            "entity_anomalies": [r.to_dict() for r in self.entity_anomalies],
            "anomaly_results": [r.to_dict() for r in self.anomaly_results],
            "patterns": [p.to_dict() for p in self.patterns],
            "network": self.network.to_dict(),
            "network_patterns": [p.to_dict() for p in self.network_patterns],
            "alerts": [a.to_dict() for a in self.alerts],
            "rejected": [r.to_dict() for r in self.rejected],
        }


@dataclass
class ProcessedTransaction:
    """Outcome of real-time transaction processing."""

    transaction: Transaction
    assessment: RiskAssessment
    alert: Optional[Alert] = None


class DetectionEngine:
    """
    Stateless batch detection pipeline.

    Usage:
        engine = DetectionEngine()
        run = engine.run_sync(entities, transactions, relationships, alerts)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        repository: Optional[RecordRepository] = None,
        concurrency: int = 4,
    ):
        """
        Initialize the engine and its components.

        Args:
            settings: Settings (uses the global settings if None)
            repository: Record store for load/persist and real-time processing
            concurrency: Worker threads used for per-entity analyses
        """
        self.config = settings or default_settings
        self.repository = repository
        self.concurrency = max(1, concurrency)
        self.bands = self.config.risk_bands()

        self.transaction_scorer = TransactionRiskScorer(self.config)
        self.entity_scorer = EntityRiskScorer(self.config)
        self.anomaly_detector = AnomalyDetector(self.config)
        self.pattern_detector = AMLPatternDetector(config=self.config)
        self.network_analyzer = NetworkAnalyzer(self.config)
        self.alert_generator = AlertGenerator(self.config)

    async def run(
        self,
        entities: list[Entity],
        transactions: list[Transaction],
        relationships: Optional[list[EntityRelationship]] = None,
        existing_alerts: Optional[list[Alert]] = None,
        timeout: Optional[float] = None,
        as_of: Optional[datetime] = None,
    ) -> DetectionRun:
        """
        Run a full detection batch.

        Args:
            entities: Entity snapshot
            transactions: Transaction snapshot
            relationships: Relationship snapshot
            existing_alerts: Current alerts, used for deduplication
            timeout: Seconds before the run is cancelled (settings default)
            as_of: Reference time for ages and alert cooldowns

        Returns:
            DetectionRun with all results

        Raises:
            OperationCancelled: If the run exceeds its timeout
        """
        timeout = timeout if timeout is not None else self.config.run_timeout_seconds
        token = CancellationToken(timeout)
        coro = self._run(
            entities, transactions, relationships or [], existing_alerts or [], token,
            as_of or utcnow(),
        )

        if timeout is None:
            return await coro

        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError:
            token.cancel("timeout")
            logger.error(f"Detection run exceeded {timeout}s timeout")
            raise OperationCancelled(f"Detection run exceeded {timeout}s") from None

    def run_sync(self, *args, **kwargs) -> DetectionRun:
        """Blocking wrapper around run()."""
        return asyncio.run(self.run(*args, **kwargs))

    async def _run(
        self,
        entities: list[Entity],
        transactions: list[Transaction],
        relationships: list[EntityRelationship],
        existing_alerts: list[Alert],
        token: CancellationToken,
        as_of: datetime,
    ) -> DetectionRun:
        result = DetectionRun(started_at=utcnow())
        entities_by_id = {e.id: e for e in entities}
        known_ids = set(entities_by_id)

        valid_txns, rejected_txns = screen_transactions(transactions, known_ids)
        valid_rels, rejected_rels = screen_relationships(relationships, known_ids)
        result.rejected = rejected_txns + rejected_rels
        logger.info(
            f"Starting detection run: {len(entities)} entities, {len(valid_txns)} "
            f"transactions, {len(valid_rels)} relationships ({len(result.rejected)} rejected)"
        )

        # Transaction scores feed the entity scores
        result.transaction_assessments = await asyncio.to_thread(
            self.transaction_scorer.score_batch, valid_txns, entities_by_id
        )
        scored_txns = [
            t.with_risk(result.transaction_assessments[t.id].score, self.bands)
            for t in valid_txns
        ]
        check_cancelled(token)

        result.entity_assessments = await self._score_entities(entities, scored_txns, as_of, token)
        scored_entities = [
            e.with_risk(result.entity_assessments[e.id].score, self.bands) for e in entities
        ]

        result.risk_updates = self._risk_updates(
            entities, result.entity_assessments, "entity"
        ) + self._risk_updates(valid_txns, result.transaction_assessments, "transaction")

        entity_anomalies, patterns, network = await asyncio.gather(
            self._detect_anomalies(scored_txns, scored_entities, token),
            self.pattern_detector.detect_all_concurrent(scored_txns, cancel=token),
            asyncio.to_thread(
                self.network_analyzer.analyze,
                scored_entities, valid_rels, scored_txns, as_of, token,
            ),
        )
        result.entity_anomalies = entity_anomalies
        result.anomaly_results = self.anomaly_detector.score_transactions(
            scored_txns, entity_anomalies
        )
        result.patterns = patterns
        result.network = network
        result.network_patterns = network.to_patterns()
        check_cancelled(token)

        result.alerts = self.alert_generator.generate(
            DetectionBundle(
                transactions=scored_txns,
                entities=scored_entities,
                patterns=patterns,
                network_patterns=result.network_patterns,
                anomaly_results=result.anomaly_results,
                entity_anomalies=entity_anomalies,
            ),
            existing_alerts,
            as_of,
        )

        result.finished_at = utcnow()
        logger.info(f"Detection run finished: {result.summary()}")
        return result

    async def _score_entities(
        self,
        entities: list[Entity],
        transactions: list[Transaction],
        as_of: datetime,
        token: CancellationToken,
    ) -> dict[str, RiskAssessment]:
        """Score entities in parallel chunks and merge by entity id."""
        context = EntityContext(as_of=as_of)
        ordered = sorted(entities, key=lambda e: e.id)

        def score_chunk(chunk: list[Entity]) -> dict[str, RiskAssessment]:
            check_cancelled(token)
            ids = {e.id for e in chunk}
            related = [
                t for t in transactions
                if t.source_entity_id in ids or t.destination_entity_id in ids
            ]
            return self.entity_scorer.score_batch(chunk, related, context)

        parts = await asyncio.gather(*[
            asyncio.to_thread(score_chunk, chunk)
            for chunk in _chunks(ordered, self.concurrency)
        ])
        merged: dict[str, RiskAssessment] = {}
        for part in parts:
            merged.update(part)
        return dict(sorted(merged.items()))

    async def _detect_anomalies(
        self,
        transactions: list[Transaction],
        entities: list[Entity],
        token: CancellationToken,
    ) -> list[EntityAnomalyResult]:
        """Run per-entity anomaly analyses in parallel chunks."""
        entities_by_id = {e.id: e for e in entities}
        flows = self.anomaly_detector.build_flows(transactions)
        entity_ids = sorted(e for e in flows if e in entities_by_id)

        parts = await asyncio.gather(*[
            asyncio.to_thread(
                self.anomaly_detector.analyze_entities, chunk, flows, entities_by_id, token
            )
            for chunk in _chunks(entity_ids, self.concurrency)
        ])
        return self.anomaly_detector.rank([r for part in parts for r in part])

    def _risk_updates(
        self,
        records: list,
        assessments: dict[str, RiskAssessment],
        kind: str,
    ) -> list[RiskUpdate]:
        """Write-backs for records whose score moved enough to matter."""
        updates = []
        for record in records:
            assessment = assessments.get(record.id)
            if assessment is None:
                continue
            changed = abs(assessment.score - record.risk_score) > self.config.risk_update_delta
            if changed or assessment.risk_level != record.risk_level:
                updates.append(RiskUpdate(
                    record_id=record.id,
                    record_kind=kind,
                    previous_score=record.risk_score,
                    score=assessment.score,
                    risk_level=assessment.risk_level,
                ))
        return updates

    def _require_repository(self) -> RecordRepository:
        if self.repository is None:
            raise RuntimeError("DetectionEngine was created without a repository")
        return self.repository

    async def run_from_repository(
        self,
        timeout: Optional[float] = None,
        persist: bool = False,
    ) -> DetectionRun:
        """Load snapshots from the repository, run, and optionally persist."""
        repo = self._require_repository()
        entities, transactions, relationships, alerts = await asyncio.gather(
            repo.list_entities(),
            repo.list_transactions(),
            repo.list_relationships(),
            repo.list_alerts(),
        )
        result = await self.run(entities, transactions, relationships, alerts, timeout)
        if persist:
            await self.persist(result)
        return result

    async def persist(self, result: DetectionRun) -> dict[str, int]:
        """Write risk updates and new alerts back through the repository."""
        repo = self._require_repository()
        updated = 0
        for update in result.risk_updates:
            if update.record_kind == "entity":
                record = await repo.update_entity_risk(
                    update.record_id, update.score, update.risk_level
                )
            else:
                record = await repo.update_transaction_risk(
                    update.record_id, update.score, update.risk_level
                )
            if record is not None:
                updated += 1

        for alert in result.alerts:
            await repo.create_alert(alert)

        logger.info(f"Persisted {updated} risk updates and {len(result.alerts)} alerts")
        return {"risk_updates": updated, "alerts": len(result.alerts)}

    async def process_transaction(self, transaction: Transaction) -> ProcessedTransaction:
        """
        Score and store a single incoming transaction.

        Raises:
            RecordValidationError: If the transaction is invalid
        """
        repo = self._require_repository()
        source = await repo.get_entity(transaction.source_entity_id)
        destination = await repo.get_entity(transaction.destination_entity_id)
        entities_by_id = {e.id: e for e in (source, destination) if e is not None}
        validate_transaction(transaction, set(entities_by_id))

        history = await repo.list_transactions()
        seen_pairs = {
            (t.source_entity_id, t.destination_entity_id)
            for t in history
            if t.id != transaction.id and t.timestamp <= transaction.timestamp
        }
        context = TransactionContext.from_records(
            transaction, entities_by_id, seen_pairs, self.config.new_entity_days
        )
        assessment = self.transaction_scorer.score_transaction(transaction, context)
        scored = await repo.save_transaction(transaction.with_risk(assessment.score, self.bands))

        alert = self.alert_generator.alert_for_transaction(scored, await repo.list_alerts())
        if alert is not None:
            await repo.create_alert(alert)

        return ProcessedTransaction(transaction=scored, assessment=assessment, alert=alert)

    async def transaction_timeline(self, transaction_id: str) -> list[TimelineEntry]:
        """Related transactions in the 72 hours before a stored transaction."""
        repo = self._require_repository()
        target = await repo.get_transaction(transaction_id)
        if target is None:
            raise RecordValidationError(transaction_id, "unknown transaction")
        return build_transaction_timeline(
            target, await repo.list_transactions(), TIMELINE_LOOKBACK
        )


def load_snapshot(path: Path) -> dict[str, list]:
    """Load a JSON snapshot with entities, transactions, relationships and alerts."""
    data = json.loads(path.read_text(encoding="utf-8"))
    return {
        "entities": TypeAdapter(list[Entity]).validate_python(data.get("entities", [])),
        "transactions": TypeAdapter(list[Transaction]).validate_python(
            data.get("transactions", [])
        ),
        "relationships": TypeAdapter(list[EntityRelationship]).validate_python(
            data.get("relationships", [])
        ),
        "existing_alerts": TypeAdapter(list[Alert]).validate_python(data.get("alerts", [])),
    }


def main(argv: Optional[list[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="AMLGuard detection engine")
    parser.add_argument("--input", type=Path, required=True, help="JSON snapshot to analyze")
    parser.add_argument("--output", type=Path, help="Write full results as JSON")
    parser.add_argument("--timeout", type=float, help="Run timeout in seconds")
    parser.add_argument("--log-level", help="Override the configured log level")
    args = parser.parse_args(argv)

    config = default_settings
    logging.basicConfig(
        level=getattr(logging, (args.log_level or config.log_level).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    engine = DetectionEngine(config)
    snapshot = load_snapshot(args.input)
    try:
        result = engine.run_sync(timeout=args.timeout, **snapshot)
    except OperationCancelled as e:
        logger.error(f"Run cancelled: {e}")
        return 1

    print("=" * 60)
    print("DETECTION RUN SUMMARY")
    print("=" * 60)
    for key, value in result.summary().items():
        print(f"  {key}: {value}")

    if args.output:
        args.output.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        print(f"\nResults written to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
