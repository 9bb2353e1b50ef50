"""Tests for exporting and importing whole documents."""

import json

import pytest

from loomtree.core.errors import GraphValidationError
from loomtree.core.persistence import GRAPH_KEY


def _node(node_id, text="", parent=None, children=(), is_root=False, **extra):
    data = {
        "id": node_id,
        "text": text,
        "parentId": parent,
        "childIds": list(children),
        "isRoot": is_root,
        "isGenerating": False,
        "generatedTextStart": 0,
        **extra,
    }
    return {"id": node_id, "data": data}


def _edge(source, target):
    return {"id": f"e-{source}-{target}", "source": source, "target": target}


def _small_graph():
    return {
        "nodes": [
            _node("r", "root", children=["a", "b"], is_root=True),
            _node("a", "root a", parent="r"),
            _node("b", "root b", parent="r"),
        ],
        "edges": [_edge("r", "a"), _edge("r", "b")],
    }


class TestExport:
    def test_exports_valid_json_with_nodes_and_edges(self, store):
        """Test that export produces JSON with nodes and edges."""
        store.add_child(store.root.id, "child")

        parsed = json.loads(store.export_document())

        assert set(parsed) == {"nodes", "edges"}
        assert len(parsed["nodes"]) == 2
        assert len(parsed["edges"]) == 1

    def test_root_keeps_null_parent_and_omits_unset_error(self, store):
        """Root nodes export parentId as null; error appears only when set."""
        child = store.add_child(store.root.id, "child")
        store.patch_error(child, "Rate limited")

        parsed = json.loads(store.export_document())
        by_id = {n["id"]: n["data"] for n in parsed["nodes"]}

        root = by_id[store.root.id]
        assert "parentId" in root
        assert root["parentId"] is None
        assert "error" not in root
        assert by_id[child]["error"] == "Rate limited"


class TestImport:
    def test_round_trip_restores_same_graph(self, store):
        """Test export, clear, then import."""
        root_id = store.root.id
        store.update_text(root_id, "prompt text")
        c1 = store.add_child(root_id, "prompt text one", 11)
        c2 = store.add_child(root_id, "prompt text two", 11)
        store.add_child(c1, "prompt text one more", 15)
        exported = store.export_document()
        node_count, edge_count = len(store.nodes), len(store.edges)

        store.clear()
        assert len(store.nodes) == 1

        store.import_document(exported)

        assert len(store.nodes) == node_count
        assert len(store.edges) == edge_count
        root = store.get_node(root_id)
        assert root.text == "prompt text"
        assert root.child_ids == [c1, c2]
        assert store.get_node(c1).parent_id == root_id

    def test_import_resets_is_generating(self, store):
        """Test that imported nodes never come back generating."""
        store.add_streaming_child(store.root.id, "loading")
        exported = store.export_document()
        assert '"isGenerating": true' in exported

        store.import_document(exported)

        assert all(n.data.is_generating is False for n in store.nodes)

    def test_import_preserves_generated_text_start(self, store):
        """Test that generatedTextStart survives a round trip."""
        root_id = store.root.id
        store.update_text(root_id, "Hello")
        child = store.add_child(root_id, "Hello world", 5)

        store.import_document(store.export_document())

        assert store.get_node(child).generated_text_start == 5

    def test_import_persists_immediately(self, store, storage):
        """Test that an import is written to storage right away."""
        store.import_document(json.dumps(_small_graph()))

        saved = storage.load_json(GRAPH_KEY)
        assert len(saved["nodes"]) == 3

    def test_import_tolerates_presentation_keys(self, store):
        """Test importing nodes that carry layout keys."""
        graph = _small_graph()
        for node in graph["nodes"]:
            node.update({"type": "loomNode", "position": {"x": 1, "y": 2}, "width": 280})
        graph["edges"][0]["type"] = "default"

        store.import_document(json.dumps(graph))

        assert len(store.nodes) == 3

    def test_import_fills_missing_data_id(self, store):
        """Test a node whose data has no id."""
        graph = _small_graph()
        del graph["nodes"][1]["data"]["id"]

        store.import_document(json.dumps(graph))

        assert store.get_node("a").id == "a"


class TestImportValidation:
    @pytest.fixture(autouse=True)
    def _seed(self, store):
        store.update_text(store.root.id, "existing")
        store.add_child(store.root.id, "existing child")
        self.before = store.export_document()

    def _assert_rejected(self, store, payload, match):
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        with pytest.raises(GraphValidationError, match=match):
            store.import_document(raw)
        assert store.export_document() == self.before

    def test_rejects_invalid_json(self, store):
        """Test importing text that is not JSON."""
        self._assert_rejected(store, "not json", "not valid JSON")

    def test_rejects_missing_arrays(self, store):
        """Test documents without nodes or edges arrays."""
        self._assert_rejected(store, {"nodes": []}, "missing nodes or edges arrays")
        self._assert_rejected(store, [1, 2], "missing nodes or edges arrays")

    def test_rejects_empty_nodes(self, store):
        """Test a document with no nodes."""
        self._assert_rejected(store, {"nodes": [], "edges": []}, "no nodes")

    def test_rejects_missing_root(self, store):
        """Test a document without a root node."""
        graph = _small_graph()
        graph["nodes"][0]["data"]["isRoot"] = False
        self._assert_rejected(store, graph, "no root node")

    def test_rejects_malformed_node(self, store):
        """Test nodes with wrong field types or no data."""
        graph = _small_graph()
        graph["nodes"][1]["data"]["text"] = 42
        self._assert_rejected(store, graph, "malformed node data")

        graph = _small_graph()
        del graph["nodes"][2]["data"]
        self._assert_rejected(store, graph, "malformed node data")

    def test_rejects_multiple_roots(self, store):
        """Test a document with two roots."""
        graph = _small_graph()
        graph["nodes"].append(_node("r2", "other root", is_root=True))
        self._assert_rejected(store, graph, "multiple root nodes")

    def test_rejects_child_ids_mismatch(self, store):
        """Test childIds that disagree with parent links."""
        graph = _small_graph()
        graph["nodes"][0]["data"]["childIds"] = ["a"]
        self._assert_rejected(store, graph, "childIds of r do not match")

    def test_rejects_dangling_parent(self, store):
        """Test a node whose parent does not exist."""
        graph = _small_graph()
        graph["nodes"][2]["data"]["parentId"] = "ghost"
        self._assert_rejected(store, graph, "missing parent ghost")

    def test_rejects_cycle_detached_from_root(self, store):
        """Test a cycle that is unreachable from the root."""
        graph = _small_graph()
        graph["nodes"] += [
            _node("x", "x", parent="y", children=["y"]),
            _node("y", "y", parent="x", children=["x"]),
        ]
        graph["edges"] += [_edge("x", "y"), _edge("y", "x")]
        self._assert_rejected(store, graph, "not reachable from the root")

    def test_rejects_edges_that_do_not_match(self, store):
        """Test edges that disagree with parent links."""
        graph = _small_graph()
        graph["edges"] = [_edge("r", "a")]
        self._assert_rejected(store, graph, "edges do not match parent links")

    def test_rejects_generated_start_beyond_text(self, store):
        """Test generatedTextStart past the end of the text."""
        graph = _small_graph()
        graph["nodes"][1]["data"]["generatedTextStart"] = 99
        self._assert_rejected(store, graph, "generatedTextStart out of range on a")

    def test_rejects_duplicate_ids(self, store):
        """Test a document with a repeated node id."""
        graph = _small_graph()
        graph["nodes"].append(_node("a", "dup", parent="r"))
        self._assert_rejected(store, graph, "duplicate node id a")
