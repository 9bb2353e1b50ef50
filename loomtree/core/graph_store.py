"""Document store for the node/edge tree.

Owns the canonical node and edge lists plus the ``id -> data`` and
``id -> list position`` indices. Every mutation runs synchronously to
completion, so callers on the event loop never observe a half-applied change.

Persistence policy:
- structural changes (add, delete, import, clear) are written immediately
- text-only changes are written on a short debounce, restarted on every call
- positions are never written
"""

import asyncio
import json
from collections.abc import Callable, Mapping
from types import MappingProxyType

from loomtree.core.ids import create_id, edge_id
from loomtree.core.logging import get_logger
from loomtree.core.persistence import KeyValueStorage, load_graph, save_graph
from loomtree.core.schemas_graph import LoomEdge, LoomNode, LoomNodeData, SerializedGraph
from loomtree.core.structure_signal import StructureSignal, VersionListener
from loomtree.core.tree import collect_descendants, graph_from_dict, parse_graph

logger = get_logger(__name__)

Position = tuple[float, float]


class GraphStore:
    """Single-writer store for one document."""

    def __init__(self, storage: KeyValueStorage, persist_delay: float = 0.5):
        self._storage = storage
        self._persist_delay = persist_delay
        self._nodes: list[LoomNode] = []
        self._edges: list[LoomEdge] = []
        self._data_map: dict[str, LoomNodeData] = {}
        self._index_map: dict[str, int] = {}
        self._positions: dict[str, Position] = {}
        self._persist_handle: asyncio.TimerHandle | None = None
        self._signal = StructureSignal()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> tuple[LoomNode, ...]:
        return tuple(self._nodes)

    @property
    def edges(self) -> tuple[LoomEdge, ...]:
        return tuple(self._edges)

    @property
    def node_data_map(self) -> Mapping[str, LoomNodeData]:
        return MappingProxyType(self._data_map)

    @property
    def positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    @property
    def structure_version(self) -> int:
        return self._signal.version

    @property
    def root(self) -> LoomNodeData:
        return next(n.data for n in self._nodes if n.data.is_root)

    def get_node(self, node_id: str) -> LoomNodeData | None:
        return self._data_map.get(node_id)

    def get_prompt(self, node_id: str) -> str:
        """A node's text already holds the full accumulated prompt."""
        data = self._data_map.get(node_id)
        return data.text if data is not None else ""

    def subscribe(self, listener: VersionListener) -> Callable[[], None]:
        """Be told about every visible structural-version increment."""
        return self._signal.subscribe(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        """Load the persisted document, or start a fresh one with an empty root.

        Generating flags never survive a reload.
        """
        saved = load_graph(self._storage)
        graph: SerializedGraph | None = None
        if saved and saved.get("nodes"):
            try:
                graph = graph_from_dict(saved)
            except ValueError as e:
                logger.warning(f"Discarding persisted graph: {e}")

        if graph is not None:
            self._nodes = [n.with_data(is_generating=False) for n in graph.nodes]
            self._edges = list(graph.edges)
            logger.info(f"Loaded graph with {len(self._nodes)} nodes")
        else:
            self._nodes = [self._create_root()]
            self._edges = []
        self._positions.clear()
        self._rebuild_index()
        self._signal.mark()

    def clear(self) -> None:
        """Replace the whole document with a single fresh root."""
        self._nodes = [self._create_root()]
        self._edges = []
        self._positions.clear()
        self._rebuild_index()
        self.persist_immediate()
        self._signal.mark()

    # ------------------------------------------------------------------
    # Structural mutations
    # ------------------------------------------------------------------

    def add_child(self, parent_id: str, text: str, generated_text_start: int = 0) -> str:
        """Append a finished child. Returns ``""`` if the parent does not exist."""
        return self._append_child(parent_id, text, generated_text_start, is_generating=False)

    def add_streaming_child(
        self, parent_id: str, initial_text: str, generated_text_start: int = 0
    ) -> str:
        """Append a placeholder child whose text will arrive incrementally."""
        return self._append_child(parent_id, initial_text, generated_text_start, is_generating=True)

    def delete_node(self, node_id: str) -> None:
        """Remove a node and its whole subtree. The root is never deleted."""
        data = self._data_map.get(node_id)
        if data is None or data.is_root:
            return

        to_delete = collect_descendants(node_id, self._data_map)
        parent_id = data.parent_id

        self._nodes = [n for n in self._nodes if n.id not in to_delete]
        if parent_id is not None:
            self._nodes = [
                n.with_data(child_ids=[c for c in n.data.child_ids if c != node_id])
                if n.id == parent_id
                else n
                for n in self._nodes
            ]
        self._edges = [
            e for e in self._edges if e.source not in to_delete and e.target not in to_delete
        ]
        for removed in to_delete:
            self._positions.pop(removed, None)
        self._rebuild_index()
        self.persist_immediate()
        self._signal.mark()
        logger.debug(f"Deleted {len(to_delete)} nodes under {node_id}")

    def import_document(self, raw: str) -> None:
        """Replace the document with an exported one.

        Raises:
            GraphValidationError: on any contract violation; nothing is changed
        """
        graph = parse_graph(raw)
        self._nodes = [n.with_data(is_generating=False) for n in graph.nodes]
        self._edges = list(graph.edges)
        self._positions.clear()
        self._rebuild_index()
        self.persist_immediate()
        self._signal.mark()
        logger.info(f"Imported graph with {len(self._nodes)} nodes, {len(self._edges)} edges")

    def export_document(self) -> str:
        return json.dumps(self._snapshot().to_json_dict(), indent=2)

    # ------------------------------------------------------------------
    # Single-node patches (silent: no version bump, no persistence)
    # ------------------------------------------------------------------

    def patch_text(self, node_id: str, text: str) -> None:
        data = self._data_map.get(node_id)
        if data is None:
            return
        if data.generated_text_start > len(text):
            self._patch(node_id, text=text, generated_text_start=len(text))
        else:
            self._patch(node_id, text=text)

    def patch_generating(self, node_id: str, is_generating: bool) -> None:
        self._patch(node_id, is_generating=is_generating)

    def patch_error(self, node_id: str, error: str | None) -> None:
        self._patch(node_id, error=error)

    def update_text(self, node_id: str, text: str) -> None:
        """User edit: patch the text and schedule a debounced write."""
        self.patch_text(node_id, text)
        self.persist()

    def update_positions_silent(self, positions: Mapping[str, Position]) -> None:
        """Position-only update from the layout; not structural, never persisted."""
        for node_id, position in positions.items():
            if node_id in self._index_map:
                self._positions[node_id] = position

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> None:
        """Debounced write; each call restarts the delay."""
        self._cancel_pending_persist()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write()
            return
        self._persist_handle = loop.call_later(self._persist_delay, self._debounced_write)

    def persist_immediate(self) -> None:
        self._cancel_pending_persist()
        self._write()

    def flush(self) -> None:
        """Write now if a debounced write is pending."""
        if self._persist_handle is not None:
            self.persist_immediate()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append_child(
        self, parent_id: str, text: str, generated_text_start: int, is_generating: bool
    ) -> str:
        parent_idx = self._index_map.get(parent_id)
        if parent_idx is None:
            logger.warning(f"Cannot add child: parent {parent_id} not found")
            return ""

        child_id = create_id()
        child = LoomNode(
            id=child_id,
            data=LoomNodeData(
                id=child_id,
                text=text,
                parent_id=parent_id,
                child_ids=[],
                is_root=False,
                is_generating=is_generating,
                generated_text_start=max(0, min(generated_text_start, len(text))),
            ),
        )
        parent = self._nodes[parent_idx]
        updated_parent = parent.with_data(child_ids=[*parent.data.child_ids, child_id])

        self._nodes[parent_idx] = updated_parent
        self._data_map[parent_id] = updated_parent.data
        self._nodes.append(child)
        self._data_map[child_id] = child.data
        self._index_map[child_id] = len(self._nodes) - 1
        self._edges.append(LoomEdge(id=edge_id(parent_id, child_id), source=parent_id, target=child_id))

        self.persist_immediate()
        self._signal.mark()
        return child_id

    def _patch(self, node_id: str, **changes) -> None:
        idx = self._index_map.get(node_id)
        if idx is None:
            return
        updated = self._nodes[idx].with_data(**changes)
        self._nodes[idx] = updated
        self._data_map[node_id] = updated.data

    def _rebuild_index(self) -> None:
        self._data_map = {n.id: n.data for n in self._nodes}
        self._index_map = {n.id: i for i, n in enumerate(self._nodes)}

    def _create_root(self) -> LoomNode:
        root_id = create_id()
        return LoomNode(id=root_id, data=LoomNodeData(id=root_id, text="", is_root=True))

    def _snapshot(self) -> SerializedGraph:
        return SerializedGraph(nodes=list(self._nodes), edges=list(self._edges))

    def _cancel_pending_persist(self) -> None:
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None

    def _debounced_write(self) -> None:
        self._persist_handle = None
        self._write()

    def _write(self) -> None:
        save_graph(self._storage, self._snapshot().to_json_dict())
