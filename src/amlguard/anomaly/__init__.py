"""
Statistical anomaly detection.
"""

from amlguard.anomaly.detector import (
    Anomaly,
    AnomalyDetector,
    AnomalyResult,
    AnomalyType,
    EntityAnomalyResult,
    calculate_severity,
)

__all__ = [
    "AnomalyDetector",
    "Anomaly",
    "AnomalyType",
    "AnomalyResult",
    "EntityAnomalyResult",
    "calculate_severity",
]
