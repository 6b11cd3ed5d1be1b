"""
World graph: location nodes, undirected edges and shortest-route queries.

Node ids are derived from names (stable_id_from_name) so the same place keeps
its id across saves and repeated normalization.
"""
import logging
from typing import Dict, List, Optional, Tuple

from models import MapEdge, MapNode, Route, RouteLeg, WorldState
from utils import stable_id_from_name

logger = logging.getLogger(__name__)

# (keywords, cost); first match wins, english and russian roots
EDGE_COSTS: List[Tuple[Tuple[str, ...], float]] = [
    (("road", "дорог"), 1.0),
    (("path", "троп"), 1.2),
    (("forest", "лес"), 1.6),
    (("river", "река", "реки", "брод"), 2.0),
    (("mount", "перев", "горн"), 2.2),
]
DEFAULT_EDGE_COST = 1.2


def edge_cost(kind: Optional[str]) -> float:
    k = str(kind or "path").lower()
    for keywords, cost in EDGE_COSTS:
        if any(word in k for word in keywords):
            return cost
    return DEFAULT_EDGE_COST


# ============================================================================
# Normalization / integrity
# ============================================================================
def normalize_world_map(state: WorldState) -> None:
    """Drop nameless nodes, assign stable ids, de-duplicate, seed an anchor node."""
    nodes: List[MapNode] = []
    seen = set()
    for node in state.world_map:
        if not node.name or not node.name.strip():
            continue
        if not node.id:
            node.id = stable_id_from_name(node.name)
        if node.id in seen:
            continue
        seen.add(node.id)
        nodes.append(node)

    if not nodes and state.location:
        nodes.append(MapNode(
            id=stable_id_from_name(state.location),
            name=state.location,
            description="Current location",
            type="area",
            discovered_at_day=state.date.day_of_game,
            visited_count=1,
        ))
    state.world_map = nodes


def ensure_integrity(state: WorldState) -> None:
    """Repair the graph and the player marker so every invariant holds again."""
    normalize_world_map(state)
    known = {n.id for n in state.world_map}

    edges: List[MapEdge] = []
    for edge in state.world_edges:
        if edge.from_id not in known or edge.to_id not in known or edge.from_id == edge.to_id:
            logger.debug(f"Dropping edge with unknown endpoint: {edge.from_id} -> {edge.to_id}")
            continue
        if not edge.kind:
            edge.kind = "road"
        if any(e.links(edge.from_id, edge.to_id) for e in edges):
            continue
        edges.append(edge)
    state.world_edges = edges

    pos = state.player_pos
    if pos.location_id not in known:
        anchor = find_location_by_name(state, state.location, fuzzy=False) or (state.world_map[0] if state.world_map else None)
        pos.location_id = anchor.id if anchor else None
        if anchor:
            pos.x, pos.y = anchor.x, anchor.y

    if state.map_waypoint.location_id and state.map_waypoint.location_id not in known:
        state.map_waypoint.location_id = None


# ============================================================================
# Lookups
# ============================================================================
def find_location_by_name(state: WorldState, name: Optional[str], fuzzy: bool = True) -> Optional[MapNode]:
    """
    Resolve a free-text place name to a node.

    Exact id or case-insensitive name match first. With fuzzy=True a
    substring match in either direction is tried as a last resort; this is
    only meant for legacy free-text hints such as NPC sightings.
    """
    if not name:
        return None
    n = str(name).strip().lower()
    if not n:
        return None
    stable = stable_id_from_name(n)
    for node in state.world_map:
        if node.id == name or node.id == stable or node.name.lower() == n:
            return node
    if not fuzzy:
        return None
    for node in state.world_map:
        lowered = node.name.lower()
        if n in lowered or lowered in n:
            return node
    return None


def resolve_node_ref(state: WorldState, ref: str) -> Optional[MapNode]:
    return state.get_node(ref) or find_location_by_name(state, ref, fuzzy=False)


# ============================================================================
# Growth
# ============================================================================
def add_node(state: WorldState, node: MapNode) -> bool:
    """Add node unless its id or exact name is already on the map."""
    if any(n.id == node.id or n.name == node.name for n in state.world_map):
        return False
    state.world_map.append(node)
    return True


def connect(state: WorldState, from_id: str, to_id: str, kind: str = "path") -> bool:
    """Add an undirected edge between two existing nodes, once."""
    if from_id == to_id or not state.get_node(from_id) or not state.get_node(to_id):
        return False
    if any(e.links(from_id, to_id) for e in state.world_edges):
        return False
    state.world_edges.append(MapEdge(
        from_id=from_id, to_id=to_id, kind=kind or "path",
        discovered_at_day=state.date.day_of_game,
    ))
    return True


# ============================================================================
# Routing
# ============================================================================
def compute_route(state: WorldState, from_id: Optional[str], to_id: Optional[str]) -> Optional[Route]:
    """Cheapest path between two nodes, or None if either is unknown or unreachable."""
    if not from_id or not to_id or from_id == to_id:
        return None
    # dict keeps map order so ties resolve the same way every run
    nodes = dict.fromkeys(n.id for n in state.world_map)
    if from_id not in nodes or to_id not in nodes:
        return None

    adjacency: Dict[str, List[Tuple[str, float, str]]] = {node_id: [] for node_id in nodes}
    for e in state.world_edges:
        if e.from_id not in nodes or e.to_id not in nodes:
            continue
        cost = edge_cost(e.kind)
        adjacency[e.from_id].append((e.to_id, cost, e.kind))
        adjacency[e.to_id].append((e.from_id, cost, e.kind))

    dist: Dict[str, float] = {node_id: float("inf") for node_id in nodes}
    prev: Dict[str, RouteLeg] = {}
    visited = set()
    dist[from_id] = 0.0

    # Maps stay small, a linear scan for the next node is enough
    while True:
        current, best = None, float("inf")
        for node_id, d in dist.items():
            if node_id not in visited and d < best:
                current, best = node_id, d
        if current is None or current == to_id:
            break
        visited.add(current)
        for neighbor, cost, kind in adjacency[current]:
            alt = best + cost
            if alt < dist[neighbor]:
                dist[neighbor] = alt
                prev[neighbor] = RouteLeg(from_id=current, to_id=neighbor, kind=kind, cost=cost)

    if to_id not in prev:
        return None

    legs: List[RouteLeg] = []
    cursor = to_id
    while cursor != from_id:
        leg = prev[cursor]
        legs.append(leg)
        cursor = leg.from_id
    legs.reverse()
    path_ids = [from_id] + [leg.to_id for leg in legs]
    return Route(
        from_id=from_id, to_id=to_id, path_ids=path_ids, legs=legs,
        total_cost=round(dist[to_id], 6),
    )
