"""
Pytest configuration and shared fixtures for AMLGuard tests.
"""

from datetime import timedelta

import pytest

from amlguard.anomaly.detector import AnomalyDetector
from amlguard.config import Settings
from amlguard.fincrime.aml_patterns import AMLPatternDetector
from amlguard.fincrime.risk_scoring import EntityRiskScorer, TransactionRiskScorer
from amlguard.patterns.alerting import AlertGenerator
from amlguard.patterns.network import NetworkAnalyzer
from amlguard.schemas.records import Entity, Transaction, TransactionType
from amlguard.tests.builders import BASE_TIME, make_entity, make_transaction


@pytest.fixture
def settings() -> Settings:
    """Default settings, independent of the environment."""
    return Settings(_env_file=None)


@pytest.fixture
def transaction_risk_scorer(settings) -> TransactionRiskScorer:
    """Create a transaction risk scorer for testing."""
    return TransactionRiskScorer(settings)


@pytest.fixture
def entity_risk_scorer(settings) -> EntityRiskScorer:
    """Create an entity risk scorer for testing."""
    return EntityRiskScorer(settings)


@pytest.fixture
def aml_detector(settings) -> AMLPatternDetector:
    """Create an AML pattern detector for testing."""
    return AMLPatternDetector(config=settings)


@pytest.fixture
def anomaly_detector(settings) -> AnomalyDetector:
    return AnomalyDetector(settings)


@pytest.fixture
def network_analyzer(settings) -> NetworkAnalyzer:
    return NetworkAnalyzer(settings)


@pytest.fixture
def alert_generator(settings) -> AlertGenerator:
    return AlertGenerator(settings)


@pytest.fixture
def entities() -> list[Entity]:
    """Ten ordinary entities A..J."""
    return [make_entity(entity_id) for entity_id in "ABCDEFGHIJ"]


@pytest.fixture
def structuring_transactions() -> list[Transaction]:
    """Five deposits of 9,100-9,900 to D within 48 hours."""
    amounts = [9100, 9350, 9500, 9720, 9900]
    return [
        make_transaction(
            f"STR-{i}",
            source,
            "D",
            amount,
            BASE_TIME + timedelta(hours=i * 12),
            type=TransactionType.DEPOSIT,
        )
        for i, (source, amount) in enumerate(zip("ABCEF", amounts))
    ]


@pytest.fixture
def round_trip_transactions() -> list[Transaction]:
    """A -> B -> C -> D -> A, amounts shrinking under 10% per hop, over 4 days."""
    hops = [("A", "B", 100_000), ("B", "C", 95_000), ("C", "D", 90_000), ("D", "A", 85_000)]
    return [
        make_transaction(f"RT-{i}", src, dst, amount, BASE_TIME + timedelta(days=i))
        for i, (src, dst, amount) in enumerate(hops)
    ]


@pytest.fixture
def smurfing_transactions() -> list[Transaction]:
    """Six deposits of 500-3,000 from six sources to J within 10 days."""
    amounts = [500, 1200, 2750, 3000, 1800, 950]
    return [
        make_transaction(
            f"SMF-{i}",
            source,
            "J",
            amount,
            BASE_TIME + timedelta(days=i * 2),
            type=TransactionType.DEPOSIT,
        )
        for i, (source, amount) in enumerate(zip("ABCDEF", amounts))
    ]


@pytest.fixture
def volume_outlier_transactions() -> list[Transaction]:
    """Nine payments of 1,000 +/- 50 and one of 50,000 from A, one per day."""
    amounts = [1000, 1050, 950, 1020, 980, 1010, 990, 1040, 960, 50_000]
    return [
        make_transaction(
            f"VOL-{i}",
            "A",
            "BCDEFGHIJB"[i],
            amount,
            BASE_TIME + timedelta(days=i),
        )
        for i, amount in enumerate(amounts)
    ]
