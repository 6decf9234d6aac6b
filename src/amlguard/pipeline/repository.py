"""
Record store interface used by the detection engine.

The engine never owns persistence: it reads snapshots through a
RecordRepository and writes back risk updates and alerts through it.
InMemoryRepository is a per-instance implementation for tests and
embedding.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from amlguard.schemas.records import (
    Alert,
    Entity,
    EntityRelationship,
    RiskLevel,
    Transaction,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordRepository(Protocol):
    """Read/write access to the collaborator record store."""

    async def list_entities(self) -> list[Entity]: ...

    async def list_transactions(self) -> list[Transaction]: ...

    async def list_relationships(self) -> list[EntityRelationship]: ...

    async def list_alerts(self) -> list[Alert]: ...

    async def get_entity(self, entity_id: str) -> Optional[Entity]: ...

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    async def save_transaction(self, transaction: Transaction) -> Transaction: ...

    async def update_entity_risk(
        self, entity_id: str, risk_score: float, risk_level: RiskLevel
    ) -> Optional[Entity]: ...

    async def update_transaction_risk(
        self, transaction_id: str, risk_score: float, risk_level: RiskLevel
    ) -> Optional[Transaction]: ...

    async def create_alert(self, alert: Alert) -> Alert: ...


class InMemoryRepository:
    """Dictionary-backed RecordRepository."""

    def __init__(
        self,
        entities: Optional[list[Entity]] = None,
        transactions: Optional[list[Transaction]] = None,
        relationships: Optional[list[EntityRelationship]] = None,
        alerts: Optional[list[Alert]] = None,
    ):
        self._entities: dict[str, Entity] = {e.id: e for e in entities or []}
        self._transactions: dict[str, Transaction] = {t.id: t for t in transactions or []}
        self._relationships: dict[str, EntityRelationship] = {
            r.id: r for r in relationships or []
        }
        self._alerts: dict[str, Alert] = {a.id: a for a in alerts or []}

    async def list_entities(self) -> list[Entity]:
        return list(self._entities.values())

    async def list_transactions(self) -> list[Transaction]:
        return list(self._transactions.values())

    async def list_relationships(self) -> list[EntityRelationship]:
        return list(self._relationships.values())

    async def list_alerts(self) -> list[Alert]:
        return list(self._alerts.values())

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    async def save_transaction(self, transaction: Transaction) -> Transaction:
        self._transactions[transaction.id] = transaction
        return transaction

    async def update_entity_risk(
        self, entity_id: str, risk_score: float, risk_level: RiskLevel
    ) -> Optional[Entity]:
        entity = self._entities.get(entity_id)
        if entity is None:
            logger.warning(f"Cannot update risk of unknown entity {entity_id}")
            return None
        updated = entity.model_copy(update={"risk_score": risk_score, "risk_level": risk_level})
        self._entities[entity_id] = updated
        return updated

    async def update_transaction_risk(
        self, transaction_id: str, risk_score: float, risk_level: RiskLevel
    ) -> Optional[Transaction]:
        txn = self._transactions.get(transaction_id)
        if txn is None:
            logger.warning(f"Cannot update risk of unknown transaction {transaction_id}")
            return None
        updated = txn.model_copy(update={"risk_score": risk_score, "risk_level": risk_level})
        self._transactions[transaction_id] = updated
        return updated

    async def create_alert(self, alert: Alert) -> Alert:
        self._alerts[alert.id] = alert
        return alert
