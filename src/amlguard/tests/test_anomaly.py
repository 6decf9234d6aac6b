"""
Tests for statistical anomaly detection.
"""

from datetime import timedelta

import pytest

from amlguard.anomaly.detector import (
    AnomalyDetector,
    AnomalyType,
    calculate_severity,
)
from amlguard.errors import OperationCancelled
from amlguard.pipeline.cancellation import CancellationToken
from amlguard.tests.builders import BASE_TIME, make_entity, make_transaction


def anomaly_types(result) -> set[AnomalyType]:
    return {a.anomaly_type for a in result.anomalies}


class TestVolumeAnomalies:
    """Z-score outlier detection."""

    def test_large_outlier_flagged(self, anomaly_detector, entities, volume_outlier_transactions):
        results = anomaly_detector.detect(volume_outlier_transactions, entities)
        scored = anomaly_detector.score_transactions(volume_outlier_transactions, results)
        by_id = {r.transaction_id: r for r in scored}

        assert by_id["VOL-9"].is_anomaly
        assert by_id["VOL-9"].anomaly_score > 3
        for i in range(9):
            assert not by_id[f"VOL-{i}"].is_anomaly

    def test_volume_finding_on_source(self, anomaly_detector, entities, volume_outlier_transactions):
        results = anomaly_detector.detect(volume_outlier_transactions, entities)
        source = next(r for r in results if r.entity_id == "A")

        volume = [a for a in source.anomalies if a.anomaly_type == AnomalyType.VOLUME]
        assert len(volume) == 1
        assert volume[0].transaction_ids == ["VOL-9"]

    def test_too_few_samples_skips_volume_check(self, anomaly_detector, entities):
        txns = [
            make_transaction("T1", "A", "B", 1000, BASE_TIME),
            make_transaction("T2", "A", "B", 90_500, BASE_TIME + timedelta(days=1)),
        ]
        results = anomaly_detector.detect(txns, entities)

        assert all(AnomalyType.VOLUME not in anomaly_types(r) for r in results)


class TestFlowAnomalies:
    def test_velocity_spike(self, anomaly_detector, entities):
        """One busy day against several quiet ones."""
        quiet = [
            make_transaction(f"Q{i}", "A", "B", 500.5, BASE_TIME + timedelta(days=i))
            for i in range(1, 9)
        ]
        busy = [
            make_transaction(f"S{i}", "A", "B", 500.5, BASE_TIME + timedelta(minutes=i))
            for i in range(10)
        ]
        results = anomaly_detector.detect(quiet + busy, entities)
        source = next(r for r in results if r.entity_id == "A")

        assert AnomalyType.VELOCITY in anomaly_types(source)

    def test_fan_in(self, anomaly_detector, entities):
        incoming = [
            make_transaction(f"IN{i}", src, "F", 2000.5, BASE_TIME + timedelta(hours=i))
            for i, src in enumerate("ABCDE")
        ]
        out = make_transaction("OUT", "F", "G", 10_000.5, BASE_TIME + timedelta(hours=10))
        results = anomaly_detector.detect(incoming + [out], entities)
        hub = next(r for r in results if r.entity_id == "F")

        fan = [a for a in hub.anomalies if a.description.startswith("Fan-in")]
        assert len(fan) == 1
        assert "OUT" in fan[0].transaction_ids

    def test_fan_out(self, anomaly_detector, entities):
        inbound = make_transaction("IN", "A", "F", 10_000.5, BASE_TIME)
        outgoing = [
            make_transaction(f"OUT{i}", "F", dst, 2000.5, BASE_TIME + timedelta(hours=i + 1))
            for i, dst in enumerate("BCDEG")
        ]
        results = anomaly_detector.detect([inbound] + outgoing, entities)
        hub = next(r for r in results if r.entity_id == "F")

        assert any(a.description.startswith("Fan-out") for a in hub.anomalies)

    def test_round_amounts(self, anomaly_detector, entities):
        txns = [make_transaction("T1", "A", "B", 25_000, BASE_TIME)]
        results = anomaly_detector.detect(txns, entities)

        assert all(AnomalyType.PATTERN in anomaly_types(r) for r in results)

    def test_risky_connection_not_transaction_level(self, anomaly_detector):
        entities = [make_entity("A"), make_entity("B").with_risk(90)]
        txns = [make_transaction("T1", "A", "B", 500.5, BASE_TIME)]

        results = anomaly_detector.detect(txns, entities)
        source = next(r for r in results if r.entity_id == "A")
        assert AnomalyType.CONNECTION in anomaly_types(source)

        scored = anomaly_detector.score_transactions(txns, results)
        assert not scored[0].is_anomaly


class TestScoring:
    def test_no_findings_scores_zero(self, anomaly_detector, entities):
        txns = [make_transaction("T1", "A", "B", 500.5, BASE_TIME)]
        results = anomaly_detector.detect(txns, entities)

        assert all(r.anomaly_score == 0 for r in results)

    def test_results_ranked(self, anomaly_detector, entities, volume_outlier_transactions):
        results = anomaly_detector.detect(volume_outlier_transactions, entities)
        scores = [r.anomaly_score for r in results]

        assert scores == sorted(scores, reverse=True)
        assert all(0 <= s <= 100 for s in scores)

    @pytest.mark.parametrize("ratio,expected", [(0, 0.3), (2.5, 0.5), (10, 1.0)])
    def test_severity_bounds(self, ratio, expected):
        assert calculate_severity(ratio) == pytest.approx(expected)

    def test_unknown_entities_skipped(self, anomaly_detector):
        txns = [make_transaction("T1", "A", "B", 500.5, BASE_TIME)]
        results = anomaly_detector.detect(txns, [make_entity("A")])

        assert [r.entity_id for r in results] == ["A"]

    def test_cancelled(self, anomaly_detector, entities, volume_outlier_transactions):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            anomaly_detector.detect(volume_outlier_transactions, entities, token)


def test_detector_uses_configured_sample_floor(settings, entities):
    config = settings.model_copy(update={"min_volume_samples": 20})
    detector = AnomalyDetector(config)
    txns = [
        make_transaction(f"T{i}", "A", "B", 1000.5, BASE_TIME + timedelta(days=i))
        for i in range(9)
    ] + [make_transaction("BIG", "A", "B", 90_000.5, BASE_TIME + timedelta(days=10))]

    results = detector.detect(txns, entities)
    assert all(AnomalyType.VOLUME not in anomaly_types(r) for r in results)
