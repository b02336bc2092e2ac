"""Outbound persistence: journals receive every committed change.

The core never reads a journal back; a journal is where a durable store
(or a test) observes type, entity and trait records.
"""

from __future__ import annotations

import datetime
import json
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from typed_catalog.instance import Entity, Id, Struct, TraitInstance
from typed_catalog.types import (
    ClassTypeDefinition,
    EnumTypeDefinition,
    EnumValue,
    HierarchicalTypeDefinition,
    StructTypeDefinition,
    TypeDefinition,
    describe_attribute,
)


class Journal:
    """Receiver for committed changes. The base class ignores everything."""

    def types_registered(self, types: list[TypeDefinition]) -> None:
        pass

    def entity_created(self, entity: Entity) -> None:
        pass

    def entities_deleted(self, ids: list[Id]) -> None:
        pass

    def trait_attached(self, entity_id: Id, trait: TraitInstance) -> None:
        pass

    def trait_detached(self, entity_id: Id, trait_name: str) -> None:
        pass

    def close(self) -> None:
        pass


NullJournal = Journal


@dataclass
class JournalEvent:
    """One recorded change."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


class MemoryJournal(Journal):
    """Keeps every change in memory, in commit order."""

    def __init__(self) -> None:
        self.events: list[JournalEvent] = []
        self._lock = threading.Lock()

    def _record(self, kind: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append(JournalEvent(kind, payload))

    def types_registered(self, types: list[TypeDefinition]) -> None:
        self._record("types_registered", {"types": [t.name for t in types]})

    def entity_created(self, entity: Entity) -> None:
        self._record("entity_created", {"guid": entity.guid, "type": entity.type_name})

    def entities_deleted(self, ids: list[Id]) -> None:
        self._record("entities_deleted", {"guids": [i.guid for i in ids]})

    def trait_attached(self, entity_id: Id, trait: TraitInstance) -> None:
        self._record("trait_attached", {"guid": entity_id.guid, "trait": trait.type_name})

    def trait_detached(self, entity_id: Id, trait_name: str) -> None:
        self._record("trait_detached", {"guid": entity_id.guid, "trait": trait_name})

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


def serialize_type(type_def: TypeDefinition) -> dict[str, Any]:
    """Serialize a single type definition to a JSON-compatible dict."""
    if isinstance(type_def, EnumTypeDefinition):
        return {
            "kind": "enum",
            "values": [{"name": v.name, "ordinal": v.ordinal} for v in type_def.values],
        }
    if isinstance(type_def, HierarchicalTypeDefinition):
        result: dict[str, Any] = {
            "kind": type_def.kind,
            "superTypes": list(type_def.super_types),
            "attributes": [
                describe_attribute(a) for a in type_def.attributes if a.defined_in == type_def.name
            ],
        }
        if isinstance(type_def, ClassTypeDefinition) and type_def.reverse_attributes:
            result["reverseAttributes"] = [describe_attribute(a) for a in type_def.reverse_attributes]
        return result
    if isinstance(type_def, StructTypeDefinition):
        return {"kind": "struct", "attributes": [describe_attribute(a) for a in type_def.attributes]}
    return {"kind": type_def.kind}


def serialize_value(value: Any) -> Any:
    """Convert an attribute value to a JSON-compatible form."""
    if isinstance(value, Id):
        return {"guid": value.guid, "typeName": value.type_name, "version": value.version}
    if isinstance(value, EnumValue):
        return value.name
    if isinstance(value, Struct):
        return {"typeName": value.type_name, "values": serialize_value(value.values)}
    if isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def serialize_entity(entity: Entity) -> dict[str, Any]:
    """Serialize an entity record to a JSON-compatible dict."""
    return {
        "id": serialize_value(entity.id),
        "typeName": entity.type_name,
        "values": serialize_value(entity.values),
        "traits": {name: serialize_value(t.values) for name, t in entity.traits.items()},
    }


class JsonDirectoryJournal(Journal):
    """Writes the type catalog to ``_types.json`` and changes to ``journal.jsonl``."""

    TYPES_FILE = "_types.json"
    JOURNAL_FILE = "journal.jsonl"

    def __init__(self, data_dir: Path | str) -> None:
        """Initialize the journal.

        Args:
            data_dir: Directory for the journal files; created if missing.
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._types: dict[str, Any] = {}
        types_path = self.data_dir / self.TYPES_FILE
        if types_path.exists():
            with open(types_path) as f:
                self._types = json.load(f).get("types", {})
        self._journal = open(self.data_dir / self.JOURNAL_FILE, "a")

    def _append(self, kind: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._journal.write(json.dumps({"event": kind, **payload}) + "\n")
            self._journal.flush()

    def types_registered(self, types: list[TypeDefinition]) -> None:
        with self._lock:
            for type_def in types:
                self._types[type_def.name] = serialize_type(type_def)
            with open(self.data_dir / self.TYPES_FILE, "w") as f:
                json.dump({"types": self._types}, f, indent=2)

    def entity_created(self, entity: Entity) -> None:
        self._append("entity_created", serialize_entity(entity))

    def entities_deleted(self, ids: list[Id]) -> None:
        self._append("entities_deleted", {"guids": [i.guid for i in ids]})

    def trait_attached(self, entity_id: Id, trait: TraitInstance) -> None:
        self._append("trait_attached", {
            "guid": entity_id.guid,
            "trait": trait.type_name,
            "values": serialize_value(trait.values),
        })

    def trait_detached(self, entity_id: Id, trait_name: str) -> None:
        self._append("trait_detached", {"guid": entity_id.guid, "trait": trait_name})

    def close(self) -> None:
        with self._lock:
            if not self._journal.closed:
                self._journal.close()

    def __enter__(self) -> JsonDirectoryJournal:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
