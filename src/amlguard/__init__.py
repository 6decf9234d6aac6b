"""
AMLGuard - Anti-money-laundering detection engine

Analyzes snapshots of entities, transactions and relationships to:
- Score transactions and entities for money laundering risk
- Detect statistical anomalies in entity transaction histories
- Recognize laundering typologies (structuring, round-tripping, layering, smurfing)
- Analyze the relationship network for shell companies and ownership loops
- Raise deduplicated investigator alerts
"""

__version__ = "0.1.0"
