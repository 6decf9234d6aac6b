"""
Transaction timelines for investigators.

Shows what else moved through either side of a transaction in the days
leading up to it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from amlguard.schemas.records import Transaction


@dataclass
class TimelineEntry:
    transaction: Transaction
    direction: str  # "incoming" or "outgoing", relative to the target's source entity
    is_target: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction.id,
            "timestamp": self.transaction.timestamp.isoformat(),
            "amount": self.transaction.amount,
            "currency": self.transaction.currency,
            "direction": self.direction,
            "is_target": self.is_target,
        }


def build_transaction_timeline(
    target: Transaction,
    transactions: list[Transaction],
    lookback: timedelta = timedelta(hours=72),
) -> list[TimelineEntry]:
    """
    Transactions touching either endpoint of ``target`` in the lookback window.

    Args:
        target: Transaction under review
        transactions: Candidate transactions (may include the target)
        lookback: How far before the target to look

    Returns:
        Entries oldest first, ending with the target itself
    """
    endpoints = {target.source_entity_id, target.destination_entity_id}
    window_start: datetime = target.timestamp - lookback

    related = [
        t for t in transactions
        if t.id != target.id
        and window_start <= t.timestamp <= target.timestamp
        and (t.source_entity_id in endpoints or t.destination_entity_id in endpoints)
    ]
    related.sort(key=lambda t: (t.timestamp, t.id))

    entries = [
        TimelineEntry(
            transaction=t,
            direction="outgoing" if t.source_entity_id == target.source_entity_id else "incoming",
        )
        for t in related
    ]
    entries.append(TimelineEntry(transaction=target, direction="outgoing", is_target=True))
    return entries
