"""Pure helpers over the node tree: traversal, leaf selection, validation."""

import json
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from loomtree.core.errors import GraphValidationError
from loomtree.core.schemas_graph import LoomEdge, LoomNode, LoomNodeData, SerializedGraph


def get_path_to_root(node_id: str, nodes_map: Mapping[str, LoomNodeData]) -> list[LoomNodeData]:
    """Walk from a node up to the root, returning the path ordered root-first."""
    path: list[LoomNodeData] = []
    seen: set[str] = set()
    current = nodes_map.get(node_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append(current)
        current = nodes_map.get(current.parent_id) if current.parent_id else None
    path.reverse()
    return path


def collect_descendants(node_id: str, nodes_map: Mapping[str, LoomNodeData]) -> set[str]:
    """Return ``node_id`` and every node reachable from it through ``child_ids``."""
    found: set[str] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in found:
            continue
        found.add(current)
        data = nodes_map.get(current)
        if data is not None:
            stack.extend(data.child_ids)
    return found


def find_leaves(nodes: Iterable[LoomNode]) -> list[LoomNode]:
    """Nodes with no children and some non-blank text."""
    return [n for n in nodes if not n.data.child_ids and n.data.text.strip()]


# ============================================================================
# Import validation
# ============================================================================


def parse_graph(raw: str) -> SerializedGraph:
    """Parse and fully validate an exported document.

    Raises:
        GraphValidationError: with a message naming the violated rule
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise GraphValidationError("Invalid graph format: not valid JSON") from e
    return graph_from_dict(data)


def graph_from_dict(data: Any) -> SerializedGraph:
    """Validate an already-decoded document (see ``parse_graph``)."""
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("nodes"), list)
        or not isinstance(data.get("edges"), list)
    ):
        raise GraphValidationError("Invalid graph format: missing nodes or edges arrays")

    raw_nodes: list[Any] = data["nodes"]
    if not raw_nodes:
        raise GraphValidationError("Invalid graph: no nodes")

    if not any(_raw_data(n).get("isRoot") for n in raw_nodes):
        raise GraphValidationError("Invalid graph: no root node")

    for n in raw_nodes:
        node_data = n.get("data") if isinstance(n, dict) else None
        if (
            not isinstance(n, dict)
            or not n.get("id")
            or not isinstance(node_data, dict)
            or not isinstance(node_data.get("text"), str)
        ):
            raise GraphValidationError("Invalid graph: malformed node data")
        if node_data.setdefault("id", n["id"]) != n["id"]:
            raise GraphValidationError("Invalid graph: malformed node data")

    try:
        graph = SerializedGraph.model_validate(data)
    except ValidationError as e:
        raise GraphValidationError("Invalid graph: malformed node or edge data") from e

    validate_structure(graph.nodes, graph.edges)
    return graph


def _raw_data(node: Any) -> dict:
    if isinstance(node, dict) and isinstance(node.get("data"), dict):
        return node["data"]
    return {}


def validate_structure(nodes: list[LoomNode], edges: list[LoomEdge]) -> None:
    """Check every tree invariant; raise GraphValidationError on the first violation."""
    by_id: dict[str, LoomNodeData] = {}
    for node in nodes:
        if node.id in by_id:
            raise GraphValidationError(f"Invalid graph: duplicate node id {node.id}")
        by_id[node.id] = node.data

    roots = [d for d in by_id.values() if d.is_root]
    if not roots:
        raise GraphValidationError("Invalid graph: no root node")
    if len(roots) > 1:
        raise GraphValidationError("Invalid graph: multiple root nodes")
    root = roots[0]

    derived_children: dict[str, list[str]] = {node_id: [] for node_id in by_id}
    for data in by_id.values():
        if not 0 <= data.generated_text_start <= len(data.text):
            raise GraphValidationError(
                f"Invalid graph: generatedTextStart out of range on {data.id}"
            )
        if data.is_root:
            if data.parent_id is not None:
                raise GraphValidationError("Invalid graph: root node has a parent")
            continue
        if data.parent_id is None:
            raise GraphValidationError(f"Invalid graph: node {data.id} has no parent")
        if data.parent_id not in by_id:
            raise GraphValidationError(
                f"Invalid graph: node {data.id} references missing parent {data.parent_id}"
            )
        derived_children[data.parent_id].append(data.id)

    for data in by_id.values():
        expected = derived_children[data.id]
        if len(data.child_ids) != len(expected) or set(data.child_ids) != set(expected):
            raise GraphValidationError(
                f"Invalid graph: childIds of {data.id} do not match parent links"
            )

    reachable = collect_descendants(root.id, by_id)
    for node_id in by_id:
        if node_id not in reachable:
            raise GraphValidationError(
                f"Invalid graph: node {node_id} is not reachable from the root"
            )

    links = {(d.parent_id, d.id) for d in by_id.values() if d.parent_id is not None}
    edge_links = [(e.source, e.target) for e in edges]
    if len(edge_links) != len(links) or set(edge_links) != links:
        raise GraphValidationError("Invalid graph: edges do not match parent links")
