"""Instance store: typed entities, references between them and composite ownership.

Invariants:
    - Records are immutable; a change replaces the record under the
      structural lock, so a snapshot never sees a half-written entity.
    - Every composite child has at most one owner.
    - A create validates the whole draft tree before anything is inserted.
"""

from __future__ import annotations

import logging
import threading
import uuid
import warnings
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator

from typed_catalog.attributes import conform_attributes
from typed_catalog.catalog import TypeCatalog
from typed_catalog.errors import (
    AttributeValidationFailed,
    CatalogError,
    CompositeOwnershipConflict,
    DanglingReferenceWarning,
    NotFound,
    TypeMismatch,
    UnknownTrait,
    UnresolvedReference,
    VersionMismatch,
)
from typed_catalog.instance import Entity, Id, Struct, TraitInstance
from typed_catalog.journal import Journal
from typed_catalog.types import ClassTypeDefinition

logger = logging.getLogger(__name__)
audit = logging.getLogger("typed_catalog.audit")


@dataclass(frozen=True)
class EntityRecord:
    """A stored entity. Never modified once it is in the store."""

    id: Id
    values: dict[str, Any]
    traits: dict[str, TraitInstance] = field(default_factory=dict)

    @property
    def guid(self) -> str:
        return self.id.guid  # type: ignore[return-value]

    @property
    def type_name(self) -> str:
        return self.id.type_name

    def to_entity(self) -> Entity:
        """Return a detached copy for callers."""
        return Entity(
            type_name=self.type_name,
            values=dict(self.values),
            traits=dict(self.traits),
            id=self.id,
        ).copy()


@dataclass(frozen=True)
class DanglingReference:
    """A surviving entity whose attribute still points at a removed entity."""

    source: Id
    attribute: str
    target: Id


@dataclass
class DeleteResult:
    """Outcome of a delete: every removed Id and every dangling reference left behind."""

    deleted: list[Id]
    dangling: list[DanglingReference] = field(default_factory=list)


def walk_values(value: Any, on_entity: Callable[[Entity], Id] | None = None,
                on_id: Callable[[Id], None] | None = None) -> Any:
    """Rebuild an attribute value, replacing draft entities and visiting Ids."""
    if isinstance(value, Entity):
        if value.id.is_assigned:
            value = value.id
        elif on_entity is None:
            raise TypeMismatch(f"Draft '{value.type_name}' entities are not allowed here")
        else:
            return on_entity(value)
    if isinstance(value, Id):
        if on_id is not None:
            on_id(value)
        return value
    if isinstance(value, Struct):
        return type(value)(type_name=value.type_name, values=walk_values(value.values, on_entity, on_id))
    if isinstance(value, list):
        return [walk_values(v, on_entity, on_id) for v in value]
    if isinstance(value, dict):
        return {k: walk_values(v, on_entity, on_id) for k, v in value.items()}
    return value


def iter_references(values: dict[str, Any]) -> Iterator[tuple[str, Id]]:
    """Yield (attribute name, Id) for every reference held in a value mapping."""
    for name, value in values.items():
        found: list[Id] = []
        walk_values(value, on_id=found.append)
        for ref in found:
            yield name, ref


def record_references(record: EntityRecord) -> Iterator[tuple[str, Id]]:
    """Yield (label, Id) for every reference a record holds.

    Attribute references are labelled by attribute name, trait references by
    ``Trait.attribute``.
    """
    yield from iter_references(record.values)
    for trait_name, trait in record.traits.items():
        for attr, ref in iter_references(trait.values):
            yield f"{trait_name}.{attr}", ref


def _as_ids(value: Any) -> list[Id]:
    if isinstance(value, Id):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, Id)]
    return []


class _CreatePlan:
    """Everything a create will insert, built before any lock is taken."""

    def __init__(self) -> None:
        self.pending: dict[str, EntityRecord] = {}
        self.order: list[str] = []
        self.existing_refs: list[tuple[Id, str]] = []  # (Id, declared type)
        self.claims: list[tuple[str, str, str]] = []  # (child, owner, attribute)


class InstanceStore:
    """Holds entity records and enforces the catalog's attribute rules.

    Thread-safety:
        - ``_guard`` protects the record map and indexes; it is only held
          for short, non-blocking sections.
        - Per-entity reentrant locks serialize writers of the same entity.
        - Cascade deletes lock the whole composite subtree, sorted by guid.
    """

    def __init__(self, catalog: TypeCatalog, journal: Journal | None = None) -> None:
        self.catalog = catalog
        self.journal = journal or Journal()
        self._guard = threading.Lock()
        self._records: dict[str, EntityRecord] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._owner: dict[str, tuple[str, str]] = {}
        self._owned: dict[str, set[str]] = {}
        self._incoming: dict[str, set[tuple[str, str]]] = {}

    def entity_lock(self, guid: str) -> threading.RLock:
        """Return the writer lock of one entity."""
        with self._guard:
            lock = self._locks.get(guid)
            if lock is None:
                lock = self._locks[guid] = threading.RLock()
            return lock

    # ---- Create ----

    def create(self, draft: Entity) -> Id:
        """Validate a draft (and any nested drafts) and store it.

        Returns:
            The Id of the new entity, at version 1.

        Raises:
            UnknownType, TypeMismatch, UnknownAttribute, RequiredAttributeMissing,
            UnknownTrait, AttributeValidationFailed, UnresolvedReference,
            CompositeOwnershipConflict. Nothing is stored on failure.
        """
        plan = _CreatePlan()
        root = self._prepare(draft, plan, {})
        existing_children = sorted({c for c, _, _ in plan.claims if c not in plan.pending})

        with ExitStack() as stack:
            for guid in existing_children:
                stack.enter_context(self.entity_lock(guid))
            with self._guard:
                self._verify(plan)
                for guid in plan.order:
                    self._insert(plan.pending[guid])
                for child, owner, attr in plan.claims:
                    self._owner[child] = (owner, attr)
                    self._owned.setdefault(owner, set()).add(child)

        for guid in plan.order:
            record = plan.pending[guid]
            self.journal.entity_created(record.to_entity())
            audit.info(f"create {record.type_name} {guid}")
        logger.debug(f"Created {len(plan.order)} entities rooted at {root.guid}")
        return root

    def _prepare(self, draft: Entity, plan: _CreatePlan, seen: dict[int, Id]) -> Id:
        """Validate one draft and schedule it; nested drafts are handled recursively."""
        if id(draft) in seen:
            return seen[id(draft)]
        td = self.catalog.resolve(draft.type_name)
        if not isinstance(td, ClassTypeDefinition):
            raise TypeMismatch(f"'{draft.type_name}' is not a class type")
        new_id = Id(guid=str(uuid.uuid4()), type_name=td.name, version=1)
        seen[id(draft)] = new_id

        conformed = conform_attributes(td, draft.values, self.catalog)
        traits = {name: self._check_trait(t, plan, seen) for name, t in draft.traits.items()}

        values: dict[str, Any] = {}
        for name, value in conformed.items():
            info = td.get_attribute(name)
            declared = info.element_type.name if info is not None else ""
            values[name] = walk_values(
                value,
                on_entity=lambda d: self._prepare(d, plan, seen),
                on_id=lambda ref, declared=declared: plan.existing_refs.append((ref, declared)),
            )
            if info is not None and info.is_composite:
                for child in _as_ids(values[name]):
                    plan.claims.append((child.guid, new_id.guid, name))  # type: ignore[arg-type]

        plan.pending[new_id.guid] = EntityRecord(new_id, values, traits)  # type: ignore[index]
        plan.order.append(new_id.guid)  # type: ignore[arg-type]
        return new_id

    def _check_trait(self, trait: TraitInstance, plan: _CreatePlan, seen: dict[int, Id]) -> TraitInstance:
        trait_def = self.catalog.get_trait(trait.type_name)
        if trait_def is None:
            raise UnknownTrait(trait.type_name)
        try:
            values = conform_attributes(trait_def, trait.values, self.catalog)
        except CatalogError as e:
            raise AttributeValidationFailed(trait.type_name, e) from e
        values = walk_values(
            values,
            on_entity=lambda d: self._prepare(d, plan, seen),
            on_id=lambda ref: plan.existing_refs.append((ref, ref.type_name)),
        )
        return TraitInstance(type_name=trait_def.name, values=values)

    def _verify(self, plan: _CreatePlan) -> None:
        """Check references and ownership against the live records. Caller holds ``_guard``."""
        for ref, declared in plan.existing_refs:
            if ref.guid in plan.pending:
                continue
            record = self._records.get(ref.guid)  # type: ignore[arg-type]
            if record is None:
                raise UnresolvedReference(ref.guid, ref.type_name)
            if record.type_name != ref.type_name or (
                declared and not self.catalog.is_subtype(record.type_name, declared)
            ):
                raise TypeMismatch(
                    f"Reference {ref.guid} is a '{record.type_name}', not a '{declared or ref.type_name}'"
                )
        claimed: set[str] = set()
        for child, owner, attr in plan.claims:
            current = self._owner.get(child)
            if child in claimed or (current is not None and current[0] != owner):
                raise CompositeOwnershipConflict(
                    f"Entity {child} is already owned; cannot be composite '{attr}' of {owner}"
                )
            claimed.add(child)

    def _insert(self, record: EntityRecord) -> None:
        self._records[record.guid] = record
        self._index(record)

    def _index(self, record: EntityRecord) -> None:
        for attr, ref in record_references(record):
            self._incoming.setdefault(ref.guid, set()).add((record.guid, attr))  # type: ignore[arg-type]

    def _unindex(self, record: EntityRecord) -> None:
        for attr, ref in record_references(record):
            sources = self._incoming.get(ref.guid)  # type: ignore[arg-type]
            if sources is not None:
                sources.discard((record.guid, attr))

    # ---- Read ----

    def _lookup(self, entity_id: Id | str) -> EntityRecord:
        guid = entity_id.guid if isinstance(entity_id, Id) else entity_id
        record = self._records.get(guid)  # type: ignore[arg-type]
        if record is None:
            raise NotFound(guid)
        if isinstance(entity_id, Id) and entity_id.version is not None and entity_id.version != record.id.version:
            raise VersionMismatch(record.guid, entity_id.version, record.id.version)  # type: ignore[arg-type]
        return record

    def get(self, entity_id: Id | str) -> Entity:
        """Return a detached copy of a stored entity.

        Raises:
            NotFound: No entity has the guid.
            VersionMismatch: The Id carries a version other than the stored one.
        """
        with self._guard:
            record = self._lookup(entity_id)
        return record.to_entity()

    def record(self, entity_id: Id | str) -> EntityRecord:
        """Return the stored record itself (read-only)."""
        with self._guard:
            return self._lookup(entity_id)

    def owner_of(self, entity_id: Id | str) -> Id | None:
        """Return the composite owner of an entity, if it has one."""
        with self._guard:
            record = self._lookup(entity_id)
            owner = self._owner.get(record.guid)
            return self._records[owner[0]].id if owner is not None else None

    def snapshot(self) -> StoreSnapshot:
        """Return a point-in-time, read-only view of every record."""
        with self._guard:
            records = dict(self._records)
        return StoreSnapshot(records, self.catalog)

    def instances_of(self, type_name: str, include_subtypes: bool = True) -> list[Entity]:
        return [r.to_entity() for r in self.snapshot().instances_of(type_name, include_subtypes)]

    def with_trait(self, trait_name: str) -> list[Entity]:
        return [r.to_entity() for r in self.snapshot().with_trait(trait_name)]

    def referrers(self, entity_id: Id | str) -> list[tuple[Id, str]]:
        """Return (source Id, attribute) for every stored reference to an entity."""
        guid = entity_id.guid if isinstance(entity_id, Id) else entity_id
        with self._guard:
            return [
                (self._records[src].id, attr)
                for src, attr in sorted(self._incoming.get(guid, ()))  # type: ignore[arg-type]
                if src in self._records
            ]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, entity_id: object) -> bool:
        guid = entity_id.guid if isinstance(entity_id, Id) else entity_id
        return guid in self._records

    # ---- Traits ----

    def replace_traits(
        self,
        entity_id: Id | str,
        update: Callable[[EntityRecord], dict[str, TraitInstance]],
    ) -> EntityRecord:
        """Swap in a new trait mapping computed from the current record.

        ``update`` runs under the entity's writer lock and may raise to abort.

        Raises:
            NotFound: The entity is gone.
            AttributeValidationFailed: A new trait instance references an
                entity that no longer exists.
        """
        guid = self.record(entity_id).guid
        with self.entity_lock(guid):
            with self._guard:
                current = self._lookup(entity_id)
            traits = update(current)
            new_record = replace(current, traits=traits)
            with self._guard:
                if guid not in self._records:
                    raise NotFound(guid)
                for name, instance in traits.items():
                    if current.traits.get(name) is instance:
                        continue
                    for _, ref in iter_references(instance.values):
                        if ref.guid not in self._records:
                            raise AttributeValidationFailed(name, UnresolvedReference(ref.guid, ref.type_name))
                self._unindex(self._records[guid])
                self._records[guid] = new_record
                self._index(new_record)
        return new_record

    # ---- Delete ----

    def _subtree(self, guid: str) -> set[str]:
        """Collect an entity and every composite child it transitively owns."""
        with self._guard:
            result: set[str] = set()
            worklist = [guid]
            while worklist:
                current = worklist.pop()
                if current in result:
                    continue
                result.add(current)
                worklist.extend(self._owned.get(current, ()))
            return result

    def delete(self, entity_id: Id | str) -> DeleteResult:
        """Delete an entity and, transitively, its composite children.

        Surviving references to removed entities are left in place, returned
        in ``DeleteResult.dangling`` and announced with a
        ``DanglingReferenceWarning`` each.

        Raises:
            NotFound: No entity has the guid.
            VersionMismatch: The Id carries a version other than the stored one.
        """
        guid = self.record(entity_id).guid
        with ExitStack() as stack:
            while True:
                subtree = self._subtree(guid)
                locks = ExitStack()
                for g in sorted(subtree):
                    locks.enter_context(self.entity_lock(g))
                if self._subtree(guid) == subtree:
                    stack.enter_context(locks)
                    break
                # A child was claimed while locking; retry with the new subtree.
                locks.close()

            with self._guard:
                self._lookup(entity_id)
                removed = [self._records[g] for g in self._records if g in subtree]
                for rec in removed:
                    self._remove(rec)
                dangling = self._collect_dangling({rec.guid: rec for rec in removed})
                for g in subtree:
                    self._locks.pop(g, None)

        deleted = [rec.id for rec in removed]
        self.journal.entities_deleted(deleted)
        audit.info(f"delete {', '.join(i.guid for i in deleted)}")  # type: ignore[misc]
        for ref in dangling:
            logger.warning(
                f"Dangling reference {ref.source.type_name}.{ref.attribute} "
                f"({ref.source.guid}) -> {ref.target.guid}"
            )
            warnings.warn(
                DanglingReferenceWarning(
                    f"{ref.source.type_name} {ref.source.guid} attribute '{ref.attribute}' "
                    f"references deleted {ref.target.type_name} {ref.target.guid}"
                ),
                stacklevel=2,
            )
        return DeleteResult(deleted=deleted, dangling=dangling)

    def _remove(self, record: EntityRecord) -> None:
        """Drop a record and its index entries. Caller holds ``_guard``."""
        del self._records[record.guid]
        self._unindex(record)
        owner = self._owner.pop(record.guid, None)
        if owner is not None and owner[0] in self._owned:
            self._owned[owner[0]].discard(record.guid)
        self._owned.pop(record.guid, None)

    def _collect_dangling(self, removed: dict[str, EntityRecord]) -> list[DanglingReference]:
        dangling: list[DanglingReference] = []
        for target in sorted(removed):
            for src, attr in sorted(self._incoming.pop(target, ())):
                source = self._records.get(src)
                if source is not None:
                    dangling.append(DanglingReference(source.id, attr, removed[target].id))
        return dangling


class StoreSnapshot:
    """A read-only, point-in-time view of the store used by queries."""

    def __init__(self, records: dict[str, EntityRecord], catalog: TypeCatalog) -> None:
        self._records = records
        self.catalog = catalog
        self._referrers: dict[str, list[tuple[EntityRecord, str]]] | None = None

    def get(self, guid: str) -> EntityRecord | None:
        return self._records.get(guid)

    def resolve(self, ref: Id) -> EntityRecord | None:
        """Dereference an Id, or None when the target is gone."""
        return self._records.get(ref.guid)  # type: ignore[arg-type]

    def instances_of(self, type_name: str, include_subtypes: bool = True) -> list[EntityRecord]:
        """Records of a class, optionally including its subtypes, in creation order."""
        if include_subtypes:
            names = set(self.catalog.subtypes_of(type_name))
        else:
            names = {type_name}
        return [r for r in self._records.values() if r.type_name in names]

    def with_trait(self, trait_name: str) -> list[EntityRecord]:
        """Records carrying the trait (or one of its subtraits), across all classes."""
        names = set(self.catalog.subtypes_of(trait_name))
        return [r for r in self._records.values() if names.intersection(r.traits)]

    def referrers(self, guid: str) -> list[tuple[EntityRecord, str]]:
        """Return (source record, attribute) for every reference to ``guid``."""
        if self._referrers is None:
            index: dict[str, list[tuple[EntityRecord, str]]] = {}
            for record in self._records.values():
                for attr, ref in record_references(record):
                    index.setdefault(ref.guid, []).append((record, attr))  # type: ignore[arg-type]
            self._referrers = index
        return self._referrers.get(guid, [])

    def __iter__(self) -> Iterator[EntityRecord]:
        return iter(self._records.values())

    def __len__(self) -> int:
        return len(self._records)
