"""
Tests for the detection engine.

Runs full batches over small synthetic snapshots and exercises the
repository-backed paths (load, persist, real-time processing, timelines).
"""

import json
import time
from datetime import timedelta

import pytest

from amlguard.errors import OperationCancelled, RecordValidationError
from amlguard.pipeline.orchestrator import DetectionEngine, load_snapshot, main
from amlguard.pipeline.repository import InMemoryRepository
from amlguard.schemas.records import AlertType, RiskLevel
from amlguard.tests.builders import BASE_TIME, make_entity, make_relationship, make_transaction


@pytest.fixture
def snapshot(entities, structuring_transactions, round_trip_transactions, smurfing_transactions):
    relationships = [
        make_relationship("R1", "A", "B"),
        make_relationship("R2", "B", "A"),
    ]
    transactions = structuring_transactions + round_trip_transactions + smurfing_transactions
    return entities, transactions, relationships


@pytest.fixture
def engine(settings) -> DetectionEngine:
    return DetectionEngine(settings, concurrency=3)


class TestDetectionRun:
    @pytest.mark.asyncio
    async def test_full_run(self, engine, snapshot):
        entities, transactions, relationships = snapshot
        result = await engine.run(entities, transactions, relationships, as_of=BASE_TIME)

        assert set(result.transaction_assessments) == {t.id for t in transactions}
        assert set(result.entity_assessments) == {e.id for e in entities}
        assert {"structuring", "round_trip", "smurfing"} <= {p.pattern_type for p in result.patterns}
        assert any(p.pattern_type == "circular_ownership" for p in result.network_patterns)
        assert result.alerts
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_invalid_records_rejected_not_fatal(self, engine, entities):
        transactions = [
            make_transaction("OK", "A", "B", 100.5, BASE_TIME),
            make_transaction("NEG", "A", "B", -5, BASE_TIME),
            make_transaction("SELF", "A", "A", 100.5, BASE_TIME),
            make_transaction("GHOST", "A", "Z", 100.5, BASE_TIME),
        ]
        relationships = [make_relationship("R1", "A", "Z")]
        result = await engine.run(entities, transactions, relationships, as_of=BASE_TIME)

        assert sorted(r.record_id for r in result.rejected) == ["GHOST", "NEG", "R1", "SELF"]
        assert list(result.transaction_assessments) == ["OK"]

    @pytest.mark.asyncio
    async def test_second_run_adds_no_alerts(self, engine, snapshot):
        entities, transactions, relationships = snapshot
        first = await engine.run(entities, transactions, relationships, as_of=BASE_TIME)
        second = await engine.run(
            entities, transactions, relationships, first.alerts, as_of=BASE_TIME
        )

        assert first.alerts
        assert second.alerts == []

    @pytest.mark.asyncio
    async def test_results_are_deterministic(self, engine, snapshot):
        entities, transactions, relationships = snapshot
        first = await engine.run(entities, transactions, relationships, as_of=BASE_TIME)
        second = await engine.run(
            list(reversed(entities)), list(reversed(transactions)), relationships, as_of=BASE_TIME
        )

        assert [p.content_key() for p in first.patterns] == [
            p.content_key() for p in second.patterns
        ]
        assert [r.entity_id for r in first.entity_anomalies] == [
            r.entity_id for r in second.entity_anomalies
        ]

    @pytest.mark.asyncio
    async def test_risk_updates_only_on_material_change(self, engine):
        entities = [
            make_entity("A").with_risk(20),
            make_entity("B").with_risk(60),
        ]
        result = await engine.run(entities, [], as_of=BASE_TIME)

        updated = {u.record_id: u for u in result.risk_updates}
        assert "A" not in updated
        assert updated["B"].score == 20
        assert updated["B"].risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_timeout_cancels_run(self, engine, snapshot, monkeypatch):
        entities, transactions, relationships = snapshot
        original = engine.transaction_scorer.score_batch

        def slow_score_batch(*args, **kwargs):
            time.sleep(0.5)
            return original(*args, **kwargs)

        monkeypatch.setattr(engine.transaction_scorer, "score_batch", slow_score_batch)

        with pytest.raises(OperationCancelled):
            await engine.run(entities, transactions, relationships, timeout=0.05)

    def test_run_sync(self, engine, snapshot):
        entities, transactions, relationships = snapshot
        result = engine.run_sync(entities, transactions, relationships, as_of=BASE_TIME)

        assert result.summary()["transactions_scored"] == len(transactions)
        assert json.dumps(result.to_dict())


class TestRepositoryPaths:
    @pytest.mark.asyncio
    async def test_run_from_repository_and_persist(self, settings, snapshot):
        entities, transactions, relationships = snapshot
        repo = InMemoryRepository(entities, transactions, relationships)
        engine = DetectionEngine(settings, repo)

        result = await engine.run_from_repository(persist=True)
        stored = await repo.list_alerts()

        assert len(stored) == len(result.alerts)
        for update in result.risk_updates:
            if update.record_kind == "transaction":
                record = await repo.get_transaction(update.record_id)
            else:
                record = await repo.get_entity(update.record_id)
            assert record.risk_score == update.score

        again = await engine.run_from_repository(persist=True)
        assert again.alerts == []

    @pytest.mark.asyncio
    async def test_process_transaction(self, settings):
        repo = InMemoryRepository(
            [make_entity("A"), make_entity("B", jurisdiction="Panama").with_risk(80)],
            [make_transaction("OLD", "A", "B", 100.5, BASE_TIME - timedelta(days=1))],
        )
        engine = DetectionEngine(settings, repo)

        txn = make_transaction(
            "NEW", "A", "B", 9800, BASE_TIME, description="urgent consulting"
        )
        processed = await engine.process_transaction(txn)
        names = {f.name for f in processed.assessment.factors}

        assert "first_transaction" not in names
        assert {"high_risk_destination", "destination_high_risk_jurisdiction"} <= names
        assert processed.transaction.risk_score == processed.assessment.score
        assert (await repo.get_transaction("NEW")).risk_score == processed.assessment.score
        assert processed.alert is not None
        assert processed.alert.type == AlertType.TRANSACTION_PATTERN

    @pytest.mark.asyncio
    async def test_process_invalid_transaction(self, settings):
        repo = InMemoryRepository([make_entity("A")])
        engine = DetectionEngine(settings, repo)

        with pytest.raises(RecordValidationError):
            await engine.process_transaction(make_transaction("T1", "A", "Z", 100.5, BASE_TIME))
        assert await repo.get_transaction("T1") is None

    @pytest.mark.asyncio
    async def test_transaction_timeline(self, settings):
        txns = [
            make_transaction("EARLY", "C", "A", 100.5, BASE_TIME - timedelta(days=5)),
            make_transaction("IN", "C", "A", 200.5, BASE_TIME - timedelta(hours=10)),
            make_transaction("OUT", "A", "D", 300.5, BASE_TIME - timedelta(hours=5)),
            make_transaction("OTHER", "E", "F", 400.5, BASE_TIME - timedelta(hours=1)),
            make_transaction("TARGET", "A", "B", 500.5, BASE_TIME),
        ]
        engine = DetectionEngine(settings, InMemoryRepository(transactions=txns))

        timeline = await engine.transaction_timeline("TARGET")

        assert [e.transaction.id for e in timeline] == ["IN", "OUT", "TARGET"]
        assert [e.direction for e in timeline] == ["incoming", "outgoing", "outgoing"]
        assert timeline[-1].is_target

    @pytest.mark.asyncio
    async def test_timeline_unknown_transaction(self, settings):
        engine = DetectionEngine(settings, InMemoryRepository())

        with pytest.raises(RecordValidationError):
            await engine.transaction_timeline("missing")

    @pytest.mark.asyncio
    async def test_repository_required(self, engine):
        with pytest.raises(RuntimeError):
            await engine.run_from_repository()


class TestCommandLine:
    def test_snapshot_round_trip(self, tmp_path, snapshot):
        entities, transactions, relationships = snapshot
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps({
            "entities": [e.model_dump(mode="json") for e in entities],
            "transactions": [t.model_dump(mode="json") for t in transactions],
            "relationships": [r.model_dump(mode="json") for r in relationships],
        }))

        loaded = load_snapshot(path)
        assert len(loaded["transactions"]) == len(transactions)
        assert loaded["existing_alerts"] == []

        output = tmp_path / "results.json"
        assert main(["--input", str(path), "--output", str(output)]) == 0
        assert json.loads(output.read_text())["summary"]["transactions_scored"] == len(transactions)
