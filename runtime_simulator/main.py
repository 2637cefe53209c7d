"""
Entry point for the headless faceplate player.

Usage examples:
  - python -m runtime_simulator.main project.json
  - faceplate-sim project.json --entity pump-1 --set Temperature=50

The project file is JSON with ``entities`` (``{id: {"type", "fields"}}``),
``faceplates`` (``{id: {"name", "bindings", "configuration",
"notificationChannels"}}``) and optionally the default ``faceplate`` and
``entity`` to bind.  After loading, the binding slots are printed as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from PyQt6.QtCore import QCoreApplication

from bindings.models import BindingDefinition, NotificationChannel
from bindings.runtime import FaceplateRuntime
from services.faceplate_data_service import FACEPLATE_ENTITY_TYPE, FaceplateDataService, FaceplateRecord

from .data_manager import InMemoryDataStore

logger = logging.getLogger(__name__)


def _parse_assignment(text: str):
    """Parse ``Field=value``; the value is read as JSON when possible."""
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"Expected FIELD=VALUE, got {text!r}")
    path, raw = text.split("=", 1)
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return path.strip(), value


def load_project(file_path: str) -> Dict[str, Any]:
    with open(file_path, "r", encoding="utf-8") as f:
        project = json.load(f)
    if not isinstance(project, dict):
        raise ValueError("Project file must contain a JSON object")
    return project


async def populate_store(store: InMemoryDataStore, service: FaceplateDataService, project: Dict[str, Any]) -> None:
    store.load(project.get("entities") or {})
    for faceplate_id, data in (project.get("faceplates") or {}).items():
        if store.get_entity(faceplate_id) is None:
            store.add_entity(faceplate_id, entity_type=FACEPLATE_ENTITY_TYPE, name=data.get("name", ""))
        record = FaceplateRecord(
            id=faceplate_id,
            name=data.get("name", faceplate_id),
            target_entity_type=data.get("targetEntityType", ""),
            configuration=data.get("configuration") or {"layout": [], "bindings": [], "metadata": {}},
            bindings=[BindingDefinition.from_dict(b) for b in data.get("bindings") or []],
            components=list(data.get("components") or []),
            notification_channels=[NotificationChannel.from_dict(c) for c in data.get("notificationChannels") or []],
        )
        await service.write_faceplate(record)


async def run(project: Dict[str, Any], faceplate_id: Optional[str], entity_id: Optional[str],
              assignments: List) -> Dict[str, Any]:
    store = InMemoryDataStore()
    service = FaceplateDataService(store)
    await populate_store(store, service, project)

    runtime = FaceplateRuntime(store, service)
    await runtime.load_faceplate(faceplate_id, entity_id)
    for path, value in assignments:
        await service.write_value_indirect(entity_id, path, value)
    await runtime.wait_idle()

    result = {
        "faceplate": faceplate_id,
        "entity": entity_id,
        "bindings": dict(runtime.binding_values),
        "errors": [e.to_dict() for e in runtime.compile_errors + runtime.runtime_errors],
    }
    await runtime.teardown()
    return result


def main(argv: list[str] | None = None) -> int:
    raw_argv = list(sys.argv if argv is None else argv)
    app = QCoreApplication.instance() or QCoreApplication(raw_argv)

    parser = argparse.ArgumentParser(
        prog="faceplate-sim",
        description="Evaluate a faceplate's bindings against an in-memory data store.",
    )
    parser.add_argument("project", help="Path to the project file (JSON)")
    parser.add_argument("-f", "--faceplate", help="Faceplate id (defaults to the project's 'faceplate')")
    parser.add_argument("-e", "--entity", help="Entity id to bind (defaults to the project's 'entity')")
    parser.add_argument(
        "-s", "--set", dest="assignments", action="append", default=[], type=_parse_assignment,
        metavar="FIELD=VALUE", help="Write a field after loading; may be repeated",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(raw_argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not os.path.exists(args.project):
        print(f"[faceplate-sim] Project file not found: {args.project}", file=sys.stderr)
        return 2
    try:
        project = load_project(args.project)
    except (OSError, ValueError) as e:
        print(f"[faceplate-sim] Could not load project: {e}", file=sys.stderr)
        return 3

    faceplate_id = args.faceplate or project.get("faceplate")
    if not faceplate_id:
        faceplates = list((project.get("faceplates") or {}).keys())
        faceplate_id = faceplates[0] if faceplates else None
    if not faceplate_id:
        print("[faceplate-sim] No faceplate in project", file=sys.stderr)
        return 3
    if faceplate_id not in (project.get("faceplates") or {}) and faceplate_id not in (project.get("entities") or {}):
        print(f"[faceplate-sim] Unknown faceplate: {faceplate_id}", file=sys.stderr)
        return 3
    entity_id = args.entity or project.get("entity")
    if args.assignments and entity_id is None:
        print("[faceplate-sim] --set needs an entity to write to", file=sys.stderr)
        return 2

    result = asyncio.run(run(project, faceplate_id, entity_id, args.assignments))
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
