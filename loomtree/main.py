"""Command-line entry point.

Usage:
    loomtree show
    loomtree set-text root "Once upon a time"
    loomtree generate root -n 3
    loomtree generate-leaves
    loomtree export tree.json
    loomtree settings apiKey=sk-... numGenerations=4
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from loomtree.core.config import get_settings
from loomtree.core.errors import GenerationPreconditionError
from loomtree.core.graph_store import GraphStore
from loomtree.core.logging import set_log_level
from loomtree.core.persistence import JsonFileStorage, KeyValueStorage
from loomtree.core.schemas_graph import LoomNodeData
from loomtree.core.settings_store import SettingsStore
from loomtree.services.completion_client import BatchTransport, CompletionClient
from loomtree.services.completion_multiplexer import CompletionMultiplexer
from loomtree.services.generation import GenerationOrchestrator

PREVIEW_CHARS = 60


def build_transport() -> BatchTransport:
    """Use the remote batch endpoint when configured, otherwise fan out locally."""
    env = get_settings()
    client = CompletionClient(env.LOOM_BATCH_ENDPOINT, timeout=env.LOOM_REQUEST_TIMEOUT_SECONDS)
    if env.LOOM_BATCH_ENDPOINT:
        return client
    return CompletionMultiplexer(client)


def build_components(
    storage: KeyValueStorage,
) -> tuple[GraphStore, SettingsStore, GenerationOrchestrator]:
    env = get_settings()
    store = GraphStore(storage, persist_delay=env.LOOM_PERSIST_DEBOUNCE_SECONDS)
    settings = SettingsStore(storage)
    store.init()
    settings.init()
    orchestrator = GenerationOrchestrator(
        store,
        build_transport(),
        settings,
        flush_interval=env.LOOM_FLUSH_INTERVAL_SECONDS,
    )
    return store, settings, orchestrator


def _resolve(store: GraphStore, node_id: str) -> str:
    return store.root.id if node_id == "root" else node_id


def _preview(data: LoomNodeData) -> str:
    text = data.text[data.generated_text_start:] if data.generated_text_start else data.text
    text = text.replace("\n", " ")
    if len(text) > PREVIEW_CHARS:
        text = text[: PREVIEW_CHARS - 3] + "..."
    return text


def render_tree(store: GraphStore) -> str:
    """Indented outline of the tree; generated nodes show only their new text."""
    lines: list[str] = []
    data_map = store.node_data_map

    def walk(node_id: str, depth: int) -> None:
        data = data_map[node_id]
        flags = ""
        if data.is_generating:
            flags += " [generating]"
        if data.error:
            flags += f" [error: {data.error}]"
        lines.append(f"{'  ' * depth}{data.id}: {_preview(data)!r}{flags}")
        for child_id in data.child_ids:
            walk(child_id, depth + 1)

    walk(store.root.id, 0)
    return "\n".join(lines)


def _parse_assignment(raw: str) -> tuple[str, object]:
    key, sep, value = raw.partition("=")
    if not sep:
        raise ValueError(f"Expected KEY=VALUE, got {raw!r}")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loomtree", description="Grow a tree of text with streamed completions"
    )
    parser.add_argument("--data-dir", help="Directory for persisted state (overrides LOOM_DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("show", help="Print the tree")

    p = sub.add_parser("set-text", help="Replace a node's text")
    p.add_argument("node_id")
    p.add_argument("text")

    p = sub.add_parser("add", help="Append a child node")
    p.add_argument("parent_id")
    p.add_argument("text")

    p = sub.add_parser("delete", help="Delete a node and its subtree")
    p.add_argument("node_id")

    p = sub.add_parser("generate", help="Stream completions under a node")
    p.add_argument("node_id")
    p.add_argument("-n", "--count", type=int, default=None)

    sub.add_parser("generate-leaves", help="Stream completions under every leaf")

    p = sub.add_parser("export", help="Write the tree as JSON")
    p.add_argument("path")

    p = sub.add_parser("import", help="Replace the tree with an exported JSON file")
    p.add_argument("path")

    sub.add_parser("clear", help="Reset to a single empty root")

    p = sub.add_parser("settings", help="Show or update settings")
    p.add_argument("assignments", nargs="*", metavar="KEY=VALUE")

    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    if args.verbose:
        set_log_level(logging.DEBUG)
    storage = JsonFileStorage(args.data_dir or get_settings().LOOM_DATA_DIR)
    store, settings, orchestrator = build_components(storage)

    try:
        if args.command == "show":
            print(render_tree(store))
        elif args.command == "set-text":
            store.update_text(_resolve(store, args.node_id), args.text)
        elif args.command == "add":
            parent_id = _resolve(store, args.parent_id)
            prefix = store.get_prompt(parent_id)
            start = len(prefix) if args.text.startswith(prefix) else 0
            child_id = store.add_child(parent_id, args.text, start)
            if not child_id:
                print(f"No such node: {args.parent_id}", file=sys.stderr)
                return 1
            print(child_id)
        elif args.command == "delete":
            store.delete_node(_resolve(store, args.node_id))
        elif args.command == "generate":
            await orchestrator.generate_for_node(_resolve(store, args.node_id), args.count)
            print(render_tree(store))
        elif args.command == "generate-leaves":
            count = await orchestrator.generate_all_leaves()
            print(f"Generated from {count} leaves")
            print(render_tree(store))
        elif args.command == "export":
            Path(args.path).write_text(store.export_document(), encoding="utf-8")
        elif args.command == "import":
            store.import_document(Path(args.path).read_text(encoding="utf-8"))
        elif args.command == "clear":
            store.clear()
        elif args.command == "settings":
            if args.assignments:
                settings.update(**dict(_parse_assignment(a) for a in args.assignments))
            shown = settings.current.to_json_dict()
            if shown.get("apiKey"):
                shown["apiKey"] = "***"
            print(json.dumps(shown, indent=2))
    except (GenerationPreconditionError, ValueError, OSError) as e:
        # GraphValidationError and pydantic.ValidationError are ValueErrors
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.flush()

    return 0


def main(argv: list[str] | None = None) -> int:
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
