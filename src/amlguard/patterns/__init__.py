"""
Network analysis and alert generation.
"""

from amlguard.patterns.alerting import (
    AlertGenerator,
    DetectionBundle,
    alert_stats,
    filter_alerts,
    pattern_alert_score,
    priority_alerts,
)
from amlguard.patterns.network import (
    CentralityScore,
    NetworkAnalysis,
    NetworkAnalyzer,
    OwnershipCycle,
    RiskCluster,
    ShellCompanyCandidate,
    ShellNetworkParams,
)

__all__ = [
    # Network
    "NetworkAnalyzer",
    "NetworkAnalysis",
    "ShellNetworkParams",
    "ShellCompanyCandidate",
    "RiskCluster",
    "CentralityScore",
    "OwnershipCycle",
    # Alerting
    "AlertGenerator",
    "DetectionBundle",
    "pattern_alert_score",
    "filter_alerts",
    "priority_alerts",
    "alert_stats",
]
