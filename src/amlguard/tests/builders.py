"""
Record builders shared by the AMLGuard tests.
"""

from datetime import datetime

from amlguard.schemas.records import (
    Entity,
    EntityCategory,
    EntityRelationship,
    RelationshipType,
    Transaction,
)

# A Wednesday at noon, inside business hours
BASE_TIME = datetime(2024, 3, 6, 12, 0)
ESTABLISHED = datetime(2015, 1, 1)


def make_entity(entity_id: str, **kwargs) -> Entity:
    """Entity registered long ago in a low-risk jurisdiction unless overridden."""
    defaults = {
        "name": f"Entity {entity_id}",
        "category": EntityCategory.CORPORATE,
        "jurisdiction": "Sweden",
        "registration_date": ESTABLISHED,
    }
    defaults.update(kwargs)
    return Entity(id=entity_id, **defaults)


def make_transaction(
    txn_id: str,
    source: str,
    destination: str,
    amount: float,
    timestamp: datetime,
    **kwargs,
) -> Transaction:
    return Transaction(
        id=txn_id,
        source_entity_id=source,
        destination_entity_id=destination,
        amount=amount,
        timestamp=timestamp,
        **kwargs,
    )


def make_relationship(
    rel_id: str,
    source: str,
    target: str,
    relationship_type: RelationshipType = RelationshipType.OWNER,
) -> EntityRelationship:
    return EntityRelationship(
        id=rel_id,
        source_entity_id=source,
        target_entity_id=target,
        relationship_type=relationship_type,
        start_date=ESTABLISHED,
    )
