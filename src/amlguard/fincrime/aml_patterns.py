"""
AML (Anti-Money Laundering) pattern detection.

Implements detection for common money laundering typologies:
- Structuring - several deposits just below the reporting threshold
- Round-tripping - funds returning to origin through intermediaries
- Layering - chains of transfers through many entities to obscure origin
- Smurfing - many small deposits from distinct sources to one account
- Trade-based laundering - over/under invoicing between trading partners
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

import numpy as np

from amlguard.config import Settings, settings as default_settings
from amlguard.errors import OperationCancelled
from amlguard.pipeline.cancellation import CancellationToken, check_cancelled
from amlguard.schemas.records import Entity, RiskLevel, Transaction, TransactionType, utcnow

logger = logging.getLogger(__name__)

# Base risk rank per typology (1=low .. 4=critical)
BASE_RISK_RANKS = {
    "structuring": 3,
    "round_trip": 3,
    "layering": 4,
    "smurfing": 2,
    "trade_based": 3,
}


def pattern_risk_level(pattern_type: str, confidence: float) -> RiskLevel:
    """Base typology severity, escalated or de-escalated by confidence."""
    rank = BASE_RISK_RANKS.get(pattern_type, 2)
    if confidence > 0.9:
        rank += 1
    elif confidence < 0.7:
        rank -= 1
    return RiskLevel.from_rank(rank)


def _pattern_id() -> str:
    return f"PTN-{uuid4().hex[:12]}"


@dataclass
class DetectedPattern:
    """A detected AML pattern match."""

    name: str
    pattern_type: str
    description: str
    risk_level: RiskLevel
    confidence: float  # 0.0 to 1.0

    # Entities involved
    entity_ids: list[str] = field(default_factory=list)

    # Transactions involved
    transaction_ids: list[str] = field(default_factory=list)

    # Pattern-specific details
    details: dict[str, Any] = field(default_factory=dict)

    # Temporal info
    pattern_start: Optional[datetime] = None
    pattern_end: Optional[datetime] = None
    total_amount: Optional[float] = None

    id: str = field(default_factory=_pattern_id)
    detected_at: datetime = field(default_factory=utcnow)

    def content_key(self) -> tuple:
        """Identity by content, independent of the generated id."""
        return (
            self.pattern_type,
            tuple(sorted(self.transaction_ids)),
            tuple(sorted(self.entity_ids)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage/API."""
        return {
            "id": self.id,
            "name": self.name,
            "pattern_type": self.pattern_type,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "confidence": self.confidence,
            "entity_ids": self.entity_ids,
            "transaction_ids": self.transaction_ids,
            "details": self.details,
            "detected_at": self.detected_at.isoformat(),
            "pattern_start": self.pattern_start.isoformat() if self.pattern_start else None,
            "pattern_end": self.pattern_end.isoformat() if self.pattern_end else None,
            "total_amount": self.total_amount,
        }


def _unique(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def _chain_entities(chain: list[Transaction]) -> list[str]:
    """Entities along a transaction chain in visiting order."""
    return _unique(
        [chain[0].source_entity_id] + [t.destination_entity_id for t in chain]
    )


def _build_graph(transactions: list[Transaction]) -> dict[str, list[Transaction]]:
    """Outgoing transactions per source entity, oldest first."""
    graph: dict[str, list[Transaction]] = {}
    for txn in transactions:
        graph.setdefault(txn.source_entity_id, []).append(txn)
    return graph


def _group_by_destination(transactions: list[Transaction]) -> dict[str, list[Transaction]]:
    grouped: dict[str, list[Transaction]] = {}
    for txn in transactions:
        grouped.setdefault(txn.destination_entity_id, []).append(txn)
    return grouped


class AMLPattern(ABC):
    """Base class for AML pattern detectors."""

    name: str = ""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    @property
    @abstractmethod
    def pattern_type(self) -> str:
        """Unique identifier for this pattern type."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of the pattern."""
        pass

    def detect(
        self,
        transactions: list[Transaction],
        entity_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[DetectedPattern]:
        """
        Detect pattern in transactions.

        Args:
            transactions: Transactions to scan, in any order
            entity_id: Optional entity to focus analysis on; only findings
                implicating it are returned
            cancel: Cancellation token checked during long scans

        Returns:
            List of detected patterns
        """
        ordered = sorted(transactions, key=lambda t: (t.timestamp, t.id))
        matches = self._scan(ordered, cancel)
        if entity_id:
            matches = [m for m in matches if entity_id in m.entity_ids]
        return matches

    @abstractmethod
    def _scan(
        self,
        transactions: list[Transaction],
        cancel: Optional[CancellationToken],
    ) -> list[DetectedPattern]:
        """Scan time-ordered transactions."""
        pass

    def _make_pattern(
        self,
        transactions: list[Transaction],
        confidence: float,
        description: str,
        entity_ids: Optional[list[str]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> DetectedPattern:
        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        if entity_ids is None:
            entity_ids = _unique(
                [t.source_entity_id for t in transactions]
                + [t.destination_entity_id for t in transactions]
            )
        return DetectedPattern(
            name=self.name,
            pattern_type=self.pattern_type,
            description=description,
            risk_level=pattern_risk_level(self.pattern_type, confidence),
            confidence=confidence,
            entity_ids=entity_ids,
            transaction_ids=[t.id for t in transactions],
            details=details or {},
            pattern_start=transactions[0].timestamp,
            pattern_end=transactions[-1].timestamp,
            total_amount=sum(t.amount for t in transactions),
        )


class StructuringDetector(AMLPattern):
    """
    Detect structuring patterns.

    Structuring = breaking a large deposit into several deposits each
    just below the reporting threshold. Windows are non-overlapping: once
    a window is flagged, the scan resumes after its last transaction.
    """

    name = "Structuring"

    @property
    def pattern_type(self) -> str:
        return "structuring"

    @property
    def description(self) -> str:
        return "Multiple transactions just below reporting threshold"

    def _scan(self, transactions, cancel):
        matches = []
        threshold = self.config.reporting_threshold
        lower_bound = threshold * self.config.structuring_band
        window = timedelta(days=self.config.structuring_window_days)
        min_count = self.config.min_structuring_transactions

        for destination, incoming in sorted(_group_by_destination(transactions).items()):
            check_cancelled(cancel)
            candidates = [t for t in incoming if lower_bound < t.amount < threshold]

            i = 0
            while i < len(candidates):
                end = i
                while (
                    end + 1 < len(candidates)
                    and candidates[end + 1].timestamp - candidates[i].timestamp <= window
                ):
                    end += 1

                group = candidates[i:end + 1]
                total = sum(t.amount for t in group)
                if len(group) >= min_count and total > threshold:
                    confidence = min(0.95, 0.7 + (len(group) - min_count) * 0.05)
                    matches.append(self._make_pattern(
                        group,
                        confidence,
                        description=(
                            f"{len(group)} deposits just below the {threshold:,.0f} reporting "
                            f"threshold (total: {total:,.2f}) within "
                            f"{self.config.structuring_window_days} days"
                        ),
                        entity_ids=_unique(
                            [destination] + [t.source_entity_id for t in group]
                        ),
                        details={
                            "threshold": threshold,
                            "transaction_count": len(group),
                            "average_amount": total / len(group),
                        },
                    ))
                    i = end + 1
                else:
                    i += 1

        return matches


class RoundTripDetector(AMLPattern):
    """
    Detect round-trip transactions.

    Round-trip = funds leave an entity, pass through intermediaries and
    return to the same entity. Hops must be chronological and the whole
    cycle must complete inside the round-trip window.
    """

    name = "Round-Trip Transactions"
    MIN_CYCLE_ENTITIES = 3

    @property
    def pattern_type(self) -> str:
        return "round_trip"

    @property
    def description(self) -> str:
        return "Funds returning to origin through intermediaries"

    def _scan(self, transactions, cancel):
        graph = _build_graph(transactions)
        window = timedelta(days=self.config.round_trip_window_days)
        seen_cycles: set[tuple[str, ...]] = set()
        matches = []

        for start in sorted(graph):
            for cycle in self._find_round_trips(graph, start, window, cancel):
                entities = [t.source_entity_id for t in cycle]
                key = self._canonical_rotation(entities)
                if key in seen_cycles:
                    continue
                seen_cycles.add(key)

                retained = cycle[-1].amount / cycle[0].amount
                confidence = 0.75 + 0.05 * (len(entities) - self.MIN_CYCLE_ENTITIES)
                if retained < 0.5:
                    confidence -= 0.1
                hours = (cycle[-1].timestamp - cycle[0].timestamp).total_seconds() / 3600

                matches.append(self._make_pattern(
                    cycle,
                    min(confidence, 0.95),
                    description=(
                        f"Funds circulated through {len(entities)} entities and returned to "
                        f"the source within {hours:.1f} hours "
                        f"({cycle[0].amount:,.2f} out, {cycle[-1].amount:,.2f} back)"
                    ),
                    entity_ids=entities,
                    details={
                        "hop_count": len(cycle),
                        "hours_elapsed": hours,
                        "amount_retained": retained,
                    },
                ))

        return matches

    def _find_round_trips(
        self,
        graph: dict[str, list[Transaction]],
        start: str,
        window: timedelta,
        cancel: Optional[CancellationToken],
    ) -> list[list[Transaction]]:
        """Find chronological cycles back to start using an explicit stack."""
        cycles = []
        max_depth = self.config.max_traversal_depth
        stack: list[tuple[str, list[Transaction], frozenset]] = [(start, [], frozenset({start}))]
        expansions = 0

        while stack:
            check_cancelled(cancel)
            expansions += 1
            if expansions > self.config.max_paths_per_start:
                logger.warning(
                    f"Round-trip search from {start} truncated after "
                    f"{self.config.max_paths_per_start} paths, cycles may be missed"
                )
                break

            current, path, visited = stack.pop()
            for txn in reversed(graph.get(current, [])):
                if path:
                    if txn.timestamp < path[-1].timestamp:
                        continue
                    if txn.timestamp - path[0].timestamp > window:
                        continue

                nxt = txn.destination_entity_id
                if nxt == start:
                    if len(path) + 1 >= self.MIN_CYCLE_ENTITIES:
                        cycles.append(path + [txn])
                    continue
                if nxt in visited or len(path) + 1 >= max_depth:
                    continue
                stack.append((nxt, path + [txn], visited | {nxt}))

        return cycles

    @staticmethod
    def _canonical_rotation(entities: list[str]) -> tuple[str, ...]:
        pivot = entities.index(min(entities))
        return tuple(entities[pivot:] + entities[:pivot])


class LayeringDetector(AMLPattern):
    """
    Detect layering patterns.

    Layering = moving money through multiple accounts/entities
    to obscure the origin.

    Indicators:
    - Funds pass through 4+ distinct entities
    - Each hop happens after the previous one, inside the layering envelope
    - Amounts stay close to the initial amount
    """

    name = "Layering"
    MIN_ENTITIES = 4
    AMOUNT_TOLERANCE = 0.1

    @property
    def pattern_type(self) -> str:
        return "layering"

    @property
    def description(self) -> str:
        return "Complex transaction chains obscuring fund origin"

    def _scan(self, transactions, cancel):
        graph = _build_graph(transactions)
        envelope = timedelta(hours=self.config.layering_window_hours)

        chains: list[list[Transaction]] = []
        for start in sorted(graph):
            chains.extend(self._find_chains(graph, start, envelope, cancel))

        matches = []
        for chain in self._distinct_chains(chains):
            entities = _chain_entities(chain)
            hours = (chain[-1].timestamp - chain[0].timestamp).total_seconds() / 3600
            matches.append(self._make_pattern(
                chain,
                0.7 + min(0.25, len(chain) * 0.05),
                description=(
                    f"Complex chain of {len(chain)} transactions through {len(entities)} "
                    f"entities in {hours:.1f} hours"
                ),
                entity_ids=entities,
                details={
                    "hop_count": len(chain),
                    "hours_elapsed": hours,
                    "entity_count": len(entities),
                },
            ))
        return matches

    def _find_chains(
        self,
        graph: dict[str, list[Transaction]],
        start: str,
        envelope: timedelta,
        cancel: Optional[CancellationToken],
    ) -> list[list[Transaction]]:
        """Find maximal chronological simple paths from start."""
        chains = []
        max_depth = self.config.max_traversal_depth
        stack: list[tuple[str, list[Transaction], frozenset]] = [(start, [], frozenset({start}))]
        expansions = 0

        while stack:
            check_cancelled(cancel)
            expansions += 1
            if expansions > self.config.max_paths_per_start:
                logger.warning(
                    f"Layering search from {start} truncated after "
                    f"{self.config.max_paths_per_start} paths, chains may be missed"
                )
                break

            current, path, visited = stack.pop()
            extended = False
            if len(path) < max_depth:
                for txn in reversed(graph.get(current, [])):
                    nxt = txn.destination_entity_id
                    if nxt in visited:
                        continue
                    if path:
                        # Timing continuity
                        if txn.timestamp < path[-1].timestamp:
                            continue
                        if txn.timestamp - path[0].timestamp > envelope:
                            continue
                        if abs(txn.amount - path[0].amount) > path[0].amount * self.AMOUNT_TOLERANCE:
                            continue
                    stack.append((nxt, path + [txn], visited | {nxt}))
                    extended = True

            if not extended and len(path) + 1 >= self.MIN_ENTITIES:
                chains.append(path)

        return chains

    @staticmethod
    def _distinct_chains(chains: list[list[Transaction]]) -> list[list[Transaction]]:
        """Drop repeated entity paths and paths contained in longer ones."""
        by_path: dict[tuple[str, ...], list[Transaction]] = {}
        for chain in chains:
            by_path.setdefault(tuple(_chain_entities(chain)), chain)

        kept: list[tuple[str, ...]] = []
        for path in sorted(by_path, key=lambda p: (-len(p), p)):
            contained = any(
                longer[i:i + len(path)] == path
                for longer in kept
                for i in range(len(longer) - len(path) + 1)
            )
            if not contained:
                kept.append(path)

        return [by_path[p] for p in kept]


class SmurfingDetector(AMLPattern):
    """
    Detect smurfing.

    Smurfing = many small deposits made by different people into the same
    account.
    """

    name = "Smurfing"
    MIN_TRANSACTIONS = 5
    MIN_SMALL = 4
    MIN_SOURCES = 3

    @property
    def pattern_type(self) -> str:
        return "smurfing"

    @property
    def description(self) -> str:
        return "Many small deposits from distinct sources to one recipient"

    def _scan(self, transactions, cancel):
        matches = []
        window = timedelta(days=self.config.smurfing_window_days)
        small_limit = self.config.small_transaction_threshold

        for destination, incoming in sorted(_group_by_destination(transactions).items()):
            check_cancelled(cancel)
            if len(incoming) < self.MIN_TRANSACTIONS:
                continue

            i = 0
            while i < len(incoming):
                end = i
                while (
                    end + 1 < len(incoming)
                    and incoming[end + 1].timestamp - incoming[i].timestamp <= window
                ):
                    end += 1

                group = incoming[i:end + 1]
                small = [t for t in group if t.amount <= small_limit]
                sources = _unique([t.source_entity_id for t in small])

                if (
                    len(group) >= self.MIN_TRANSACTIONS
                    and len(small) >= self.MIN_SMALL
                    and len(sources) >= self.MIN_SOURCES
                ):
                    total = sum(t.amount for t in small)
                    confidence = min(
                        0.95,
                        0.6
                        + 0.05 * (len(sources) - self.MIN_SOURCES)
                        + 0.05 * (len(small) - self.MIN_SMALL),
                    )
                    matches.append(self._make_pattern(
                        small,
                        confidence,
                        description=(
                            f"{len(small)} small deposits (total: {total:,.2f}) from "
                            f"{len(sources)} different sources to the same recipient within "
                            f"{self.config.smurfing_window_days} days"
                        ),
                        entity_ids=[destination] + sources,
                        details={
                            "depositor_count": len(sources),
                            "small_transaction_count": len(small),
                            "window_transaction_count": len(group),
                        },
                    ))
                    i = end + 1
                else:
                    i += 1

        return matches


class TradeBasedDetector(AMLPattern):
    """
    Detect trade-based laundering.

    Two trading partners paying each other in both directions with large
    swings in the amounts suggests over- and under-invoicing.
    """

    name = "Trade-Based ML"
    MIN_TRANSACTIONS = 4
    MIN_VARIATION = 0.35

    @property
    def pattern_type(self) -> str:
        return "trade_based"

    @property
    def description(self) -> str:
        return "Over/under invoicing between trading partners"

    def _scan(self, transactions, cancel):
        window = timedelta(days=self.config.trade_window_days)
        by_pair: dict[tuple[str, str], list[Transaction]] = {}
        for txn in transactions:
            if txn.type != TransactionType.PAYMENT:
                continue
            pair = tuple(sorted((txn.source_entity_id, txn.destination_entity_id)))
            by_pair.setdefault(pair, []).append(txn)

        matches = []
        for pair, payments in sorted(by_pair.items()):
            check_cancelled(cancel)
            i = 0
            while i <= len(payments) - self.MIN_TRANSACTIONS:
                end = i
                while (
                    end + 1 < len(payments)
                    and payments[end + 1].timestamp - payments[i].timestamp <= window
                ):
                    end += 1

                group = payments[i:end + 1]
                directions = {t.source_entity_id for t in group}
                amounts = np.asarray([t.amount for t in group], dtype=float)
                variation = float(np.std(amounts) / np.mean(amounts))

                if (
                    len(group) >= self.MIN_TRANSACTIONS
                    and len(directions) == 2
                    and variation >= self.MIN_VARIATION
                ):
                    matches.append(self._make_pattern(
                        group,
                        min(0.95, 0.6 + variation * 0.3),
                        description=(
                            f"Significant price variations across {len(group)} trade payments "
                            f"between two partners (variation {variation:.2f}), potentially "
                            f"indicating over/under-invoicing"
                        ),
                        entity_ids=list(pair),
                        details={
                            "coefficient_of_variation": variation,
                            "min_amount": float(amounts.min()),
                            "max_amount": float(amounts.max()),
                        },
                    ))
                    i = end + 1
                else:
                    i += 1

        return matches


class AMLPatternDetector:
    """
    Orchestrates multiple AML pattern detectors.

    Usage:
        detector = AMLPatternDetector()
        matches = detector.detect_all(transactions)
    """

    def __init__(
        self,
        detectors: Optional[list[AMLPattern]] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize with pattern detectors.

        Args:
            detectors: List of pattern detectors (uses defaults if None)
            config: Settings passed to the default detectors
        """
        self.detectors = detectors or [
            StructuringDetector(config),
            RoundTripDetector(config),
            LayeringDetector(config),
            SmurfingDetector(config),
            TradeBasedDetector(config),
        ]

    def detect_all(
        self,
        transactions: list[Transaction],
        entity_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[DetectedPattern]:
        """
        Run all pattern detectors on transactions.

        Args:
            transactions: Transactions to scan
            entity_id: Optional entity to focus analysis on
            cancel: Cancellation token shared with the detectors

        Returns:
            All pattern matches from all detectors
        """
        all_matches = []
        for detector in self.detectors:
            all_matches.extend(self._run_detector(detector, transactions, entity_id, cancel))
        return self._sort(all_matches)

    async def detect_all_concurrent(
        self,
        transactions: list[Transaction],
        entity_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[DetectedPattern]:
        """Run every detector in its own worker thread."""
        results = await asyncio.gather(*[
            asyncio.to_thread(self._run_detector, detector, transactions, entity_id, cancel)
            for detector in self.detectors
        ])
        return self._sort([m for matches in results for m in matches])

    def detect(
        self,
        transactions: list[Transaction],
        entities: Optional[list[Entity]] = None,
        entity_id: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> list[DetectedPattern]:
        """
        Scan transactions between known entities.

        Transactions naming an entity outside ``entities`` are ignored.
        """
        if entities is not None:
            known = {e.id for e in entities}
            transactions = [
                t for t in transactions
                if t.source_entity_id in known and t.destination_entity_id in known
            ]
        return self.detect_all(transactions, entity_id, cancel)

    def detect_pattern(
        self,
        pattern_type: str,
        transactions: list[Transaction],
        entity_id: Optional[str] = None,
    ) -> list[DetectedPattern]:
        """
        Run a specific pattern detector.

        Args:
            pattern_type: Type of pattern to detect
            transactions: Transactions to scan
            entity_id: Optional entity to focus analysis on

        Returns:
            Pattern matches from the specified detector
        """
        for detector in self.detectors:
            if detector.pattern_type == pattern_type:
                return detector.detect(transactions, entity_id)

        raise ValueError(f"Unknown pattern type: {pattern_type}")

    def add_detector(self, detector: AMLPattern) -> None:
        """Add a custom pattern detector."""
        self.detectors.append(detector)

    @staticmethod
    def _run_detector(
        detector: AMLPattern,
        transactions: list[Transaction],
        entity_id: Optional[str],
        cancel: Optional[CancellationToken],
    ) -> list[DetectedPattern]:
        try:
            matches = detector.detect(transactions, entity_id, cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Error in {detector.pattern_type} detector: {e}")
            return []
        logger.debug(f"{detector.pattern_type}: found {len(matches)} matches")
        return matches

    @staticmethod
    def _sort(matches: list[DetectedPattern]) -> list[DetectedPattern]:
        """Sort by severity and confidence, then by content for a stable order."""
        return sorted(
            matches,
            key=lambda m: (-m.risk_level.rank, -m.confidence, m.content_key()),
        )
