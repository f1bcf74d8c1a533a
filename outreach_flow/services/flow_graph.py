import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from outreach_flow.errors import GraphError, NodeNotFoundError
from outreach_flow.models.flow import (
    CanonicalBranch,
    ConditionNode,
    Edge,
    EndNode,
    FlowNode,
    LegacyEdge,
    StageNode,
)

logger = logging.getLogger(__name__)

END_PREFIX = "end-"
STAGE_TYPES = {"stage", "email", "sms"}


class FlowGraph:
    """
    Parsed, immutable view of one flow version.
    Traversal code only ever sees canonical edges.
    """

    def __init__(self, nodes: Dict[str, FlowNode], edges: List[Edge], end_node_ids: Optional[Set[str]] = None):
        self.nodes = nodes
        self.edges = list(edges)
        self.end_node_ids = set(end_node_ids or ())
        self._outgoing: Dict[str, List[Edge]] = {}
        self._incoming: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    def is_end(self, node_id: Optional[str]) -> bool:
        if not node_id:
            return False
        if node_id in self.end_node_ids or node_id.startswith(END_PREFIX):
            return True
        return isinstance(self.nodes.get(node_id), EndNode)

    def resolve_node(self, node_id: Optional[str]) -> FlowNode:
        if node_id and node_id in self.nodes:
            return self.nodes[node_id]
        if self.is_end(node_id):
            return EndNode(id=node_id, type="end")
        raise NodeNotFoundError(node_id)

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, []))

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return list(self._incoming.get(node_id, []))

    def next_edge(self, node_id: str, branch: Optional[str] = None) -> Optional[Edge]:
        """First outgoing edge, restricted to the branch handle when one is given."""
        for edge in self.outgoing_edges(node_id):
            if branch is None or edge.matches_branch(branch):
                return edge
        return None

    def entry_node_id(self) -> str:
        """First declared non-end node without incoming edges, else the first declared node."""
        candidates = [node_id for node_id in self.nodes if not self.is_end(node_id)]
        for node_id in candidates:
            if not self._incoming.get(node_id):
                return node_id
        if candidates:
            return candidates[0]
        raise GraphError("Flow graph has no entry node")

    def __repr__(self):
        return f"FlowGraph(nodes={list(self.nodes)}, edges={len(self.edges)})"


def _infer_kind(item: dict, default: str) -> str:
    explicit = str(item.get("type") or "").lower()
    if explicit in STAGE_TYPES:
        return "stage"
    if explicit in ("condition", "conditional"):
        return "condition"
    if explicit == "end":
        return "end"
    if "messageType" in item or "message_type" in item:
        return "stage"
    if "checkParam" in item or "check_param" in item:
        return "condition"
    return default


def _parse_node(item: Any, default: str) -> FlowNode:
    if not isinstance(item, dict) or not item.get("id"):
        raise GraphError(f"Malformed node entry: {item!r}")

    kind = _infer_kind(item, default)
    data = {key: value for key, value in item.items() if key != "kind"}
    if kind == "stage" and str(data.get("type") or "").lower() in ("email", "sms") and not data.get("messageType"):
        data["messageType"] = data["type"]
    try:
        if kind == "condition":
            return ConditionNode.model_validate(data)
        if kind == "end":
            return EndNode.model_validate(data)
        return StageNode.model_validate(data)
    except ValidationError as e:
        raise GraphError(f"Invalid {kind} node {item.get('id')}: {e}") from e


def _parse_edges(raw: dict) -> List[Edge]:
    branches = raw.get("branches")
    if branches:
        try:
            return [CanonicalBranch.model_validate(branch).to_edge() for branch in branches]
        except (ValidationError, TypeError) as e:
            raise GraphError(f"Invalid branches: {e}") from e

    edges: List[Edge] = []
    for item in raw.get("edges") or []:
        if not isinstance(item, dict):
            logger.warning(f"[GRAPH] Dropping malformed legacy edge: {item!r}")
            continue
        edge = LegacyEdge.model_validate(item).to_edge()
        if edge is None:
            logger.warning(f"[GRAPH] Dropping legacy edge without source/target: {item}")
            continue
        edges.append(edge)
    return edges


def _end_ids(entries: Iterable[Any]) -> Set[str]:
    ids = set()
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("id"):
            ids.add(str(entry["id"]))
        elif isinstance(entry, str):
            ids.add(entry)
    return ids


def parse_flow_graph(raw: Any) -> FlowGraph:
    """
    Parse the stored graph JSON into a FlowGraph.

    Accepts a dict or a JSON string. Legacy `edges` are normalized into
    canonical edges here, so the rest of the engine never branches on shape.
    Raises GraphError when the graph is missing, empty or unparseable.
    """
    if raw is None:
        raise GraphError("Flow graph is missing")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise GraphError(f"Flow graph is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise GraphError(f"Flow graph must be an object, got {type(raw).__name__}")

    stages = raw.get("stages") or []
    conditions = raw.get("conditions") or []
    if not stages and not conditions:
        raise GraphError("Flow graph has no stages or conditions")

    nodes: Dict[str, FlowNode] = {}
    for item in stages:
        node = _parse_node(item, "stage")
        nodes[node.id] = node
    for item in conditions:
        node = _parse_node(item, "condition")
        nodes[node.id] = node
    for item in raw.get("end_nodes") or []:
        if isinstance(item, dict) and item.get("id"):
            nodes.setdefault(item["id"], EndNode(id=item["id"], type="end"))

    graph = FlowGraph(nodes, _parse_edges(raw), _end_ids(raw.get("end_nodes")))
    logger.debug(f"[GRAPH] Parsed {graph!r}")
    return graph
