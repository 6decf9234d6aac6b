"""
Financial crime detection module.

Provides:
- AML (Anti-Money Laundering) pattern detection
- Risk scoring for entities and transactions
- Transaction timelines for investigators
"""

from amlguard.fincrime.aml_patterns import (
    AMLPattern,
    AMLPatternDetector,
    DetectedPattern,
    LayeringDetector,
    RoundTripDetector,
    SmurfingDetector,
    StructuringDetector,
    TradeBasedDetector,
    pattern_risk_level,
)
from amlguard.fincrime.risk_scoring import (
    EntityContext,
    EntityRiskScorer,
    RiskAssessment,
    RiskCategory,
    RiskFactor,
    RiskScorer,
    TransactionContext,
    TransactionRiskScorer,
)
from amlguard.fincrime.timeline import TimelineEntry, build_transaction_timeline

__all__ = [
    # AML Patterns
    "AMLPattern",
    "AMLPatternDetector",
    "DetectedPattern",
    "StructuringDetector",
    "RoundTripDetector",
    "LayeringDetector",
    "SmurfingDetector",
    "TradeBasedDetector",
    "pattern_risk_level",
    # Risk Scoring
    "RiskScorer",
    "EntityRiskScorer",
    "TransactionRiskScorer",
    "RiskAssessment",
    "RiskCategory",
    "RiskFactor",
    "TransactionContext",
    "EntityContext",
    # Timeline
    "TimelineEntry",
    "build_transaction_timeline",
]
