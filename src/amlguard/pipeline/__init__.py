"""
Detection pipeline plumbing.

The engine itself lives in amlguard.pipeline.orchestrator.
"""

from amlguard.pipeline.cancellation import CancellationToken, check_cancelled
from amlguard.pipeline.repository import InMemoryRepository, RecordRepository

__all__ = [
    "CancellationToken",
    "check_cancelled",
    "RecordRepository",
    "InMemoryRepository",
]
