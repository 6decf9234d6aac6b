"""
Tests for AML pattern detection.

Tests the detection of:
- Structuring
- Round-trip transactions
- Layering
- Smurfing
- Trade-based laundering
"""

import asyncio
from datetime import timedelta

import pytest

from amlguard.config import Settings
from amlguard.errors import OperationCancelled
from amlguard.fincrime.aml_patterns import (
    LayeringDetector,
    RoundTripDetector,
    SmurfingDetector,
    StructuringDetector,
    TradeBasedDetector,
    pattern_risk_level,
)
from amlguard.pipeline.cancellation import CancellationToken
from amlguard.schemas.records import RiskLevel, TransactionType
from amlguard.tests.builders import BASE_TIME, make_entity, make_transaction


class TestStructuringDetector:
    """Tests for structuring detection."""

    def test_flags_all_transactions_in_window(self, settings, structuring_transactions):
        """Five deposits just below 10,000 within 48 hours form one match."""
        matches = StructuringDetector(settings).detect(structuring_transactions)

        assert len(matches) == 1
        assert sorted(matches[0].transaction_ids) == [f"STR-{i}" for i in range(5)]
        assert matches[0].pattern_type == "structuring"
        assert matches[0].confidence == pytest.approx(0.8)
        assert matches[0].entity_ids[0] == "D"

    def test_spread_out_transactions_not_flagged(self, settings, structuring_transactions):
        """The same deposits five days apart never share a 7-day window of three."""
        spread = [
            t.model_copy(update={"timestamp": BASE_TIME + timedelta(days=i * 5)})
            for i, t in enumerate(structuring_transactions)
        ]
        assert StructuringDetector(settings).detect(spread) == []

    def test_amounts_outside_band_ignored(self, settings):
        txns = [
            make_transaction(f"T{i}", "A", "D", amount, BASE_TIME + timedelta(hours=i))
            for i, amount in enumerate([8000, 8500, 10_000, 12_000])
        ]
        assert StructuringDetector(settings).detect(txns) == []

    def test_entity_focus(self, settings, structuring_transactions):
        detector = StructuringDetector(settings)

        assert detector.detect(structuring_transactions, entity_id="D")
        assert detector.detect(structuring_transactions, entity_id="Z") == []


class TestRoundTripDetector:
    """Tests for round-trip detection."""

    def test_finds_single_four_entity_cycle(self, settings, round_trip_transactions):
        matches = RoundTripDetector(settings).detect(round_trip_transactions)

        assert len(matches) == 1
        assert sorted(matches[0].entity_ids) == ["A", "B", "C", "D"]
        assert matches[0].transaction_ids == ["RT-0", "RT-1", "RT-2", "RT-3"]
        assert matches[0].confidence == pytest.approx(0.8)

    def test_two_entity_ping_pong_ignored(self, settings):
        txns = [
            make_transaction("T1", "A", "B", 1000, BASE_TIME),
            make_transaction("T2", "B", "A", 990, BASE_TIME + timedelta(hours=1)),
        ]
        assert RoundTripDetector(settings).detect(txns) == []

    def test_cycle_outside_window_ignored(self, settings, round_trip_transactions):
        slow = [
            t.model_copy(update={"timestamp": BASE_TIME + timedelta(days=i * 3)})
            for i, t in enumerate(round_trip_transactions)
        ]
        assert RoundTripDetector(settings).detect(slow) == []

    def test_out_of_order_hops_ignored(self, settings, round_trip_transactions):
        """The return leg happening before the outbound leg is not a round trip."""
        shuffled = list(round_trip_transactions)
        shuffled[3] = shuffled[3].model_copy(
            update={"timestamp": BASE_TIME - timedelta(hours=1)}
        )
        matches = RoundTripDetector(settings).detect(shuffled)

        # D -> A first, then A -> B -> C -> D is still chronological from D
        assert len(matches) == 1
        assert matches[0].transaction_ids[0] == "RT-3"

    def test_cancellation_stops_search(self, settings, round_trip_transactions):
        token = CancellationToken()
        token.cancel("test")

        with pytest.raises(OperationCancelled):
            RoundTripDetector(settings).detect(round_trip_transactions, cancel=token)

    def test_path_limit_is_reported(self, round_trip_transactions, caplog):
        """A search cut short by the path limit warns instead of passing silently."""
        limited = Settings(_env_file=None, max_paths_per_start=1)

        with caplog.at_level("WARNING", logger="amlguard.fincrime.aml_patterns"):
            matches = RoundTripDetector(limited).detect(round_trip_transactions)

        assert matches == []
        assert "truncated after 1 paths" in caplog.text


class TestLayeringDetector:
    """Tests for layering detection."""

    def test_detects_layering_chain(self, settings):
        """Funds moving A -> B -> C -> D -> E with small reductions."""
        hops = [("A", "B", 100_000), ("B", "C", 98_000), ("C", "D", 96_000), ("D", "E", 94_000)]
        txns = [
            make_transaction(f"L{i}", src, dst, amount, BASE_TIME + timedelta(hours=i * 6))
            for i, (src, dst, amount) in enumerate(hops)
        ]
        matches = LayeringDetector(settings).detect(txns)

        assert len(matches) == 1
        assert matches[0].entity_ids == ["A", "B", "C", "D", "E"]
        assert matches[0].risk_level == RiskLevel.CRITICAL

    def test_amount_drift_breaks_chain(self, settings):
        hops = [("A", "B", 100_000), ("B", "C", 50_000), ("C", "D", 49_000)]
        txns = [
            make_transaction(f"L{i}", src, dst, amount, BASE_TIME + timedelta(hours=i))
            for i, (src, dst, amount) in enumerate(hops)
        ]
        assert LayeringDetector(settings).detect(txns) == []

    def test_slow_chain_not_flagged(self, settings):
        hops = [("A", "B", 100_000), ("B", "C", 99_000), ("C", "D", 98_000)]
        txns = [
            make_transaction(f"L{i}", src, dst, amount, BASE_TIME + timedelta(days=i * 2))
            for i, (src, dst, amount) in enumerate(hops)
        ]
        assert LayeringDetector(settings).detect(txns) == []

    def test_path_limit_is_reported(self, caplog):
        hops = [("A", "B", 100_000), ("B", "C", 98_000), ("C", "D", 96_000), ("D", "E", 94_000)]
        txns = [
            make_transaction(f"L{i}", src, dst, amount, BASE_TIME + timedelta(hours=i * 6))
            for i, (src, dst, amount) in enumerate(hops)
        ]
        limited = Settings(_env_file=None, max_paths_per_start=1)

        with caplog.at_level("WARNING", logger="amlguard.fincrime.aml_patterns"):
            LayeringDetector(limited).detect(txns)

        assert "Layering search from A truncated" in caplog.text


class TestSmurfingDetector:
    """Tests for smurfing detection."""

    def test_flags_destination_window(self, settings, smurfing_transactions):
        matches = SmurfingDetector(settings).detect(smurfing_transactions)

        assert len(matches) == 1
        assert matches[0].entity_ids[0] == "J"
        assert matches[0].details["depositor_count"] == 6

    def test_two_sources_not_flagged(self, settings, smurfing_transactions):
        two_sources = [
            t.model_copy(update={"source_entity_id": "A" if i % 2 else "B"})
            for i, t in enumerate(smurfing_transactions)
        ]
        assert SmurfingDetector(settings).detect(two_sources) == []


class TestTradeBasedDetector:
    """Tests for trade-based laundering detection."""

    def test_volatile_two_way_payments(self, settings):
        amounts = [("A", "B", 10_000), ("B", "A", 45_000), ("A", "B", 3_000), ("B", "A", 60_000)]
        txns = [
            make_transaction(
                f"P{i}", src, dst, amount, BASE_TIME + timedelta(days=i * 20),
                type=TransactionType.PAYMENT,
            )
            for i, (src, dst, amount) in enumerate(amounts)
        ]
        matches = TradeBasedDetector(settings).detect(txns)

        assert len(matches) == 1
        assert sorted(matches[0].entity_ids) == ["A", "B"]

    def test_one_way_payments_ignored(self, settings):
        txns = [
            make_transaction(
                f"P{i}", "A", "B", amount, BASE_TIME + timedelta(days=i),
                type=TransactionType.PAYMENT,
            )
            for i, amount in enumerate([10_000, 45_000, 3_000, 60_000])
        ]
        assert TradeBasedDetector(settings).detect(txns) == []


class TestPatternRiskLevel:
    @pytest.mark.parametrize(
        "pattern_type,confidence,expected",
        [
            ("structuring", 0.8, RiskLevel.HIGH),
            ("structuring", 0.95, RiskLevel.CRITICAL),
            ("smurfing", 0.6, RiskLevel.LOW),
            ("layering", 0.95, RiskLevel.CRITICAL),
        ],
    )
    def test_confidence_adjusts_level(self, pattern_type, confidence, expected):
        assert pattern_risk_level(pattern_type, confidence) == expected


class TestAMLPatternDetector:
    """Tests for the detector orchestrator."""

    def test_detects_all_typologies(
        self, aml_detector, structuring_transactions, round_trip_transactions,
        smurfing_transactions,
    ):
        txns = structuring_transactions + round_trip_transactions + smurfing_transactions
        matches = aml_detector.detect_all(txns)

        found = {m.pattern_type for m in matches}
        assert {"structuring", "round_trip", "smurfing"} <= found

    def test_results_sorted_by_severity(self, aml_detector, structuring_transactions,
                                        smurfing_transactions):
        matches = aml_detector.detect_all(structuring_transactions + smurfing_transactions)
        ranks = [m.risk_level.rank for m in matches]

        assert ranks == sorted(ranks, reverse=True)

    def test_idempotent_by_content(self, aml_detector, round_trip_transactions,
                                   structuring_transactions):
        txns = round_trip_transactions + structuring_transactions
        first = [m.content_key() for m in aml_detector.detect_all(txns)]
        second = [m.content_key() for m in aml_detector.detect_all(list(reversed(txns)))]

        assert first == second

    def test_unknown_entities_dropped(self, aml_detector, round_trip_transactions):
        known = [make_entity(e) for e in "ABC"]
        assert aml_detector.detect(round_trip_transactions, known) == []

    def test_detect_pattern_unknown_type(self, aml_detector):
        with pytest.raises(ValueError):
            aml_detector.detect_pattern("unknown", [])

    def test_concurrent_matches_sequential(self, aml_detector, round_trip_transactions,
                                           smurfing_transactions):
        txns = round_trip_transactions + smurfing_transactions
        sequential = [m.content_key() for m in aml_detector.detect_all(txns)]
        concurrent = [
            m.content_key() for m in asyncio.run(aml_detector.detect_all_concurrent(txns))
        ]

        assert concurrent == sequential
