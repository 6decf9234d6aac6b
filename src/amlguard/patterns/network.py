"""
Entity relationship network analysis.

Builds a directed relationship graph (networkx) over entities and detects:
- Shell company candidates
- Risky clusters of connected entities
- Key players by degree and betweenness centrality
- Circular ownership structures
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import networkx as nx

from amlguard.config import Settings, settings as default_settings
from amlguard.fincrime.aml_patterns import DetectedPattern
from amlguard.pipeline.cancellation import CancellationToken, check_cancelled
from amlguard.schemas.records import (
    Entity,
    EntityRelationship,
    RelationshipType,
    RiskLevel,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)

HIGH_RISK_LEVELS = {RiskLevel.HIGH, RiskLevel.CRITICAL}


@dataclass
class ShellNetworkParams:
    """Parameters for shell company scoring."""

    jurisdiction_score: float = 30
    recent_registration_score: float = 20
    recent_registration_days: int = 365
    outgoing_skew_score: float = 25
    outgoing_skew_ratio: int = 3
    min_outgoing: int = 2
    high_risk_connection_score: float = 5
    candidate_threshold: float = 50
    min_cluster_size: int = 3


@dataclass
class ShellCompanyCandidate:
    """An entity identified as a potential shell company."""

    entity: Entity
    score: float
    indicators: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity.id,
            "name": self.entity.name,
            "score": self.score,
            "indicators": self.indicators,
        }


@dataclass
class RiskCluster:
    """A connected group of entities with its aggregate risk."""

    entities: list[Entity]
    avg_risk_score: float
    high_risk_count: int
    cluster_risk_score: float
    transaction_volume: float = 0.0

    @property
    def size(self) -> int:
        return len(self.entities)

    @property
    def high_risk_fraction(self) -> float:
        return self.high_risk_count / self.size

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_ids": [e.id for e in self.entities],
            "size": self.size,
            "avg_risk_score": self.avg_risk_score,
            "high_risk_count": self.high_risk_count,
            "high_risk_fraction": self.high_risk_fraction,
            "cluster_risk_score": self.cluster_risk_score,
            "transaction_volume": self.transaction_volume,
        }


@dataclass
class CentralityScore:
    entity: Entity
    degree: int
    betweenness: float
    overall_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity.id,
            "degree": self.degree,
            "betweenness": self.betweenness,
            "overall_score": self.overall_score,
        }


@dataclass
class OwnershipCycle:
    """Entities that own each other in a loop."""

    entities: list[Entity]
    path: list[str]

    def key(self) -> tuple[str, ...]:
        return tuple(sorted(set(self.path)))

    def to_dict(self) -> dict[str, Any]:
        return {"entity_ids": [e.id for e in self.entities], "path": self.path}


@dataclass
class NetworkAnalysis:
    """Complete result of a network analysis run."""

    shell_company_candidates: list[ShellCompanyCandidate] = field(default_factory=list)
    risky_clusters: list[RiskCluster] = field(default_factory=list)
    centrality: list[CentralityScore] = field(default_factory=list)
    circular_ownership: list[OwnershipCycle] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shell_company_candidates": [c.to_dict() for c in self.shell_company_candidates],
            "risky_clusters": [c.to_dict() for c in self.risky_clusters],
            "centrality": [c.to_dict() for c in self.centrality],
            "circular_ownership": [c.to_dict() for c in self.circular_ownership],
        }

    def to_patterns(self) -> list[DetectedPattern]:
        """Express network findings as detected patterns for alerting."""
        patterns = []

        for candidate in self.shell_company_candidates:
            confidence = min(candidate.score / 100, 1.0)
            patterns.append(DetectedPattern(
                name="Shell Company",
                pattern_type="shell_company",
                description=(
                    f"{candidate.entity.name} shows shell company indicators: "
                    f"{', '.join(candidate.indicators)}"
                ),
                risk_level=RiskLevel.HIGH if candidate.score >= 75 else RiskLevel.MEDIUM,
                confidence=confidence,
                entity_ids=[candidate.entity.id],
                details={"score": candidate.score, "indicators": candidate.indicators},
            ))

        for cycle in self.circular_ownership:
            names = " -> ".join(e.name for e in cycle.entities)
            patterns.append(DetectedPattern(
                name="Circular Ownership",
                pattern_type="circular_ownership",
                description=f"Circular ownership structure: {names}",
                risk_level=RiskLevel.HIGH,
                confidence=0.9,
                entity_ids=[e.id for e in cycle.entities],
                details={"path": cycle.path},
            ))

        for cluster in self.risky_clusters:
            if cluster.high_risk_count == 0:
                continue
            patterns.append(DetectedPattern(
                name="High-Risk Cluster",
                pattern_type="risky_cluster",
                description=(
                    f"Cluster of {cluster.size} connected entities, {cluster.high_risk_count} "
                    f"high risk (average score {cluster.avg_risk_score:.1f})"
                ),
                risk_level=RiskLevel.CRITICAL if cluster.cluster_risk_score >= 85
                else RiskLevel.HIGH,
                confidence=min(cluster.cluster_risk_score / 100, 1.0),
                entity_ids=[e.id for e in cluster.entities],
                details=cluster.to_dict(),
            ))

        return patterns


class NetworkAnalyzer:
    """
    Analyzes the entity relationship network.

    Usage:
        analyzer = NetworkAnalyzer()
        analysis = analyzer.analyze(entities, relationships, transactions)
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        params: Optional[ShellNetworkParams] = None,
    ):
        self.config = config or default_settings
        self.params = params or ShellNetworkParams()
        self._jurisdictions = {j.casefold() for j in self.config.high_risk_jurisdictions}

    def build_graph(
        self,
        entities: list[Entity],
        relationships: list[EntityRelationship],
    ) -> nx.MultiDiGraph:
        """Build the directed relationship graph keyed by entity id."""
        graph = nx.MultiDiGraph()
        for entity in sorted(entities, key=lambda e: e.id):
            graph.add_node(entity.id, entity=entity)

        for rel in sorted(relationships, key=lambda r: r.id):
            if rel.source_entity_id not in graph or rel.target_entity_id not in graph:
                logger.warning(f"Relationship {rel.id} references unknown entity, skipping")
                continue
            graph.add_edge(
                rel.source_entity_id,
                rel.target_entity_id,
                key=rel.id,
                relationship_type=rel.relationship_type,
                relationship=rel,
            )
        return graph

    def analyze(
        self,
        entities: list[Entity],
        relationships: list[EntityRelationship],
        transactions: Optional[list[Transaction]] = None,
        as_of: Optional[datetime] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> NetworkAnalysis:
        """
        Run all network analyses.

        Args:
            entities: Entities forming the graph nodes
            relationships: Directed relationship edges
            transactions: Optional transactions used for cluster volumes
            as_of: Reference time for registration age
            cancel: Cancellation token checked during traversals

        Returns:
            NetworkAnalysis with every finding
        """
        graph = self.build_graph(entities, relationships)
        as_of = as_of or utcnow()

        analysis = NetworkAnalysis(
            shell_company_candidates=self.find_shell_companies(graph, as_of),
            risky_clusters=self.find_risky_clusters(graph, transactions or []),
            centrality=self.compute_centrality(graph),
            circular_ownership=self.find_circular_ownership(graph, cancel),
        )
        logger.debug(
            f"Network analysis: {len(analysis.shell_company_candidates)} shell candidates, "
            f"{len(analysis.risky_clusters)} clusters, "
            f"{len(analysis.circular_ownership)} ownership cycles"
        )
        return analysis

    def find_shell_companies(
        self,
        graph: nx.MultiDiGraph,
        as_of: datetime,
    ) -> list[ShellCompanyCandidate]:
        """Score every entity for shell company indicators."""
        p = self.params
        recent_cutoff = as_of - timedelta(days=p.recent_registration_days)
        candidates = []

        for node_id in graph.nodes:
            entity: Entity = graph.nodes[node_id]["entity"]
            score = 0.0
            indicators = []

            if entity.jurisdiction.strip().casefold() in self._jurisdictions:
                score += p.jurisdiction_score
                indicators.append(f"high-risk jurisdiction ({entity.jurisdiction})")

            if entity.registration_date > recent_cutoff:
                score += p.recent_registration_score
                indicators.append("registered within the last year")

            outgoing = graph.out_degree(node_id)
            incoming = graph.in_degree(node_id)
            if outgoing > incoming * p.outgoing_skew_ratio and outgoing > p.min_outgoing:
                score += p.outgoing_skew_score
                indicators.append(f"{outgoing} outgoing vs {incoming} incoming relationships")

            risky_neighbors = {
                n for n in nx.all_neighbors(graph, node_id)
                if graph.nodes[n]["entity"].risk_level in HIGH_RISK_LEVELS
            }
            if risky_neighbors:
                score += p.high_risk_connection_score * len(risky_neighbors)
                indicators.append(f"{len(risky_neighbors)} high-risk connections")

            if score >= p.candidate_threshold:
                candidates.append(ShellCompanyCandidate(entity, score, indicators))

        candidates.sort(key=lambda c: (-c.score, c.entity.id))
        return candidates

    def find_risky_clusters(
        self,
        graph: nx.MultiDiGraph,
        transactions: list[Transaction],
    ) -> list[RiskCluster]:
        """Connected components of size >= 3, ranked by cluster risk."""
        clusters = []
        for component in nx.weakly_connected_components(graph):
            if len(component) < self.params.min_cluster_size:
                continue

            members = [graph.nodes[n]["entity"] for n in sorted(component)]
            avg_score = sum(e.risk_score for e in members) / len(members)
            high_risk = sum(1 for e in members if e.risk_level in HIGH_RISK_LEVELS)
            volume = sum(
                t.amount for t in transactions
                if t.source_entity_id in component and t.destination_entity_id in component
            )

            clusters.append(RiskCluster(
                entities=members,
                avg_risk_score=avg_score,
                high_risk_count=high_risk,
                cluster_risk_score=avg_score * (1 + high_risk / len(members)),
                transaction_volume=volume,
            ))

        clusters.sort(key=lambda c: (-c.cluster_risk_score, c.entities[0].id))
        return clusters

    def compute_centrality(self, graph: nx.MultiDiGraph) -> list[CentralityScore]:
        """Degree (in + out edges) and exact betweenness, ranked descending."""
        if graph.number_of_nodes() == 0:
            return []

        betweenness = nx.betweenness_centrality(nx.DiGraph(graph), normalized=False)
        scores = []
        for node_id in graph.nodes:
            degree = graph.in_degree(node_id) + graph.out_degree(node_id)
            between = float(betweenness.get(node_id, 0.0))
            scores.append(CentralityScore(
                entity=graph.nodes[node_id]["entity"],
                degree=degree,
                betweenness=between,
                overall_score=degree * 0.7 + between * 0.3,
            ))

        scores.sort(key=lambda s: (-s.overall_score, s.entity.id))
        return scores

    def find_circular_ownership(
        self,
        graph: nx.MultiDiGraph,
        cancel: Optional[CancellationToken] = None,
    ) -> list[OwnershipCycle]:
        """
        Find ownership loops.

        Depth-first search over owner edges only, using an explicit stack.
        Cycles are deduplicated by their set of entities.
        """
        owners = nx.DiGraph()
        owners.add_nodes_from(graph.nodes)
        owners.add_edges_from(
            (u, v) for u, v, data in graph.edges(data=True)
            if data["relationship_type"] == RelationshipType.OWNER
        )

        max_depth = self.config.max_traversal_depth
        seen: set[tuple[str, ...]] = set()
        cycles = []

        for start in sorted(owners.nodes):
            stack = [(start, [start])]
            while stack:
                check_cancelled(cancel)
                current, path = stack.pop()
                for target in sorted(owners.successors(current), reverse=True):
                    if target == start:
                        if len(path) > 1:
                            cycle = OwnershipCycle(
                                entities=[graph.nodes[n]["entity"] for n in path],
                                path=path + [start],
                            )
                            if cycle.key() not in seen:
                                seen.add(cycle.key())
                                cycles.append(cycle)
                        continue
                    if target in path or len(path) >= max_depth:
                        continue
                    stack.append((target, path + [target]))

        return cycles

    def entity_network(
        self,
        entity_id: str,
        entities: list[Entity],
        relationships: list[EntityRelationship],
    ) -> Optional[dict[str, Any]]:
        """
        Direct neighbourhood of one entity for investigators.

        Returns:
            Dict with the central entity, its relationships and the related
            entities, or None if the entity is unknown
        """
        graph = self.build_graph(entities, relationships)
        if entity_id not in graph:
            return None

        edges = list(graph.out_edges(entity_id, data=True)) + list(
            graph.in_edges(entity_id, data=True)
        )
        related_ids = sorted(set(nx.all_neighbors(graph, entity_id)))

        return {
            "central_entity": graph.nodes[entity_id]["entity"],
            "relationships": [data["relationship"] for _, _, data in edges],
            "related_entities": [graph.nodes[n]["entity"] for n in related_ids],
        }
