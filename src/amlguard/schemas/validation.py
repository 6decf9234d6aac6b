"""
Validation of input records before analysis.

A record that fails validation is dropped from the batch with a logged
diagnostic; it never aborts the rest of the analysis.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from amlguard.errors import RecordValidationError
from amlguard.schemas.records import EntityRelationship, Transaction

logger = logging.getLogger(__name__)


@dataclass
class RejectedRecord:
    """A record dropped during screening."""

    record_id: str
    record_kind: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "record_id": self.record_id,
            "record_kind": self.record_kind,
            "reason": self.reason,
        }


def validate_transaction(
    transaction: Transaction,
    entity_ids: Optional[set[str]] = None,
) -> None:
    """
    Check a transaction's business invariants.

    Args:
        transaction: Transaction to check
        entity_ids: Known entity ids; references are not checked when None

    Raises:
        RecordValidationError: If the transaction cannot be analyzed
    """
    if transaction.amount <= 0:
        raise RecordValidationError(
            transaction.id, f"non-positive amount {transaction.amount}"
        )
    if transaction.source_entity_id == transaction.destination_entity_id:
        raise RecordValidationError(
            transaction.id, "source and destination entity are identical"
        )
    if entity_ids is not None:
        for entity_id in (transaction.source_entity_id, transaction.destination_entity_id):
            if entity_id not in entity_ids:
                raise RecordValidationError(
                    transaction.id, f"unknown entity {entity_id}"
                )


def validate_relationship(
    relationship: EntityRelationship,
    entity_ids: Optional[set[str]] = None,
) -> None:
    """Check a relationship's invariants, raising RecordValidationError."""
    if not 0 <= relationship.strength <= 1:
        raise RecordValidationError(
            relationship.id, f"strength {relationship.strength} outside [0, 1]"
        )
    if relationship.source_entity_id == relationship.target_entity_id:
        raise RecordValidationError(relationship.id, "relationship points to itself")
    if entity_ids is not None:
        for entity_id in (relationship.source_entity_id, relationship.target_entity_id):
            if entity_id not in entity_ids:
                raise RecordValidationError(relationship.id, f"unknown entity {entity_id}")


def screen_transactions(
    transactions: Iterable[Transaction],
    entity_ids: Optional[set[str]] = None,
) -> tuple[list[Transaction], list[RejectedRecord]]:
    """Split transactions into valid ones and rejected ones."""
    valid = []
    rejected = []
    for txn in transactions:
        try:
            validate_transaction(txn, entity_ids)
        except RecordValidationError as e:
            logger.warning(f"Skipping transaction {e}")
            rejected.append(RejectedRecord(e.record_id, "transaction", e.reason))
            continue
        valid.append(txn)
    return valid, rejected


def screen_relationships(
    relationships: Iterable[EntityRelationship],
    entity_ids: Optional[set[str]] = None,
) -> tuple[list[EntityRelationship], list[RejectedRecord]]:
    """Split relationships into valid ones and rejected ones."""
    valid = []
    rejected = []
    for rel in relationships:
        try:
            validate_relationship(rel, entity_ids)
        except RecordValidationError as e:
            logger.warning(f"Skipping relationship {e}")
            rejected.append(RejectedRecord(e.record_id, "relationship", e.reason))
            continue
        valid.append(rel)
    return valid, rejected
