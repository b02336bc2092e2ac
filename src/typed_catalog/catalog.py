"""Data type catalog: the registry of every type known to the system.

Invariants:
    - Type names are unique; user-defined names are plain identifiers.
    - Class supertypes are classes, trait supertypes are traits, and the
      supertype graph is acyclic.
    - A registration batch is validated against a working copy of the type
      table and published by a single reference swap, so readers see either
      the old catalog or the fully committed one.
    - Registered descriptors are never modified afterwards, except that a
      class picking up a reverse attribute is replaced by an updated copy.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Callable

from typed_catalog.attributes import validate_attribute
from typed_catalog.errors import (
    DuplicateType,
    InvalidAttributeDefinition,
    TypeCycle,
    TypeSystemError,
    UnknownSuperType,
    UnknownType,
)
from typed_catalog.types import (
    PRIMITIVE_TYPE_NAMES,
    TYPE_NAME_PATTERN,
    ArrayTypeDefinition,
    AttributeInfo,
    ClassSpec,
    ClassTypeDefinition,
    EnumSpec,
    EnumTypeDefinition,
    EnumValue,
    HierarchicalTypeDefinition,
    MapTypeDefinition,
    Multiplicity,
    PrimitiveTypeDefinition,
    StructSpec,
    StructTypeDefinition,
    TraitSpec,
    TraitTypeDefinition,
    TypeDefinition,
    TypesDef,
    array_type_name,
    parse_collection_type_name,
)

logger = logging.getLogger(__name__)


def _resolve_in(types: dict[str, TypeDefinition], name: str) -> TypeDefinition:
    """Resolve a type name against a type table, synthesizing collections."""
    found = types.get(name)
    if found is not None:
        return found
    parsed = parse_collection_type_name(name)
    if parsed is None:
        raise UnknownType(name)
    kind, args = parsed
    if kind == "array":
        element = _resolve_in(types, args[0])
        return ArrayTypeDefinition(name=array_type_name(element.name), element_type=element)
    key = _resolve_in(types, args[0])
    value = _resolve_in(types, args[1])
    return MapTypeDefinition(name=f"map<{key.name},{value.name}>", key_type=key, value_type=value)


@dataclasses.dataclass(frozen=True)
class _CatalogState:
    """One published version of the catalog: the type table and the user type names."""

    types: dict[str, TypeDefinition]
    names: tuple[str, ...]


class TypeCatalog:
    """Registry of all defined types.

    Thread-safety:
        - Registration is serialized by an internal lock.
        - Lookups are lock-free. A registration publishes a new
          ``_CatalogState`` with one reference swap, and every lookup reads
          the state once, so it sees either the old or the new catalog.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        primitives: dict[str, TypeDefinition] = {
            name: PrimitiveTypeDefinition(name=name, primitive=prim) for name, prim in PRIMITIVE_TYPE_NAMES.items()
        }
        self._state = _CatalogState(types=primitives, names=())

    # ---- Lookup ----

    def resolve(self, name: str) -> TypeDefinition:
        """Resolve a type name to its descriptor.

        ``array<T>`` and ``map<K,V>`` names are synthesized on demand.

        Raises:
            UnknownType: If the name (or a collection argument) is not registered.
        """
        return _resolve_in(self._state.types, name)

    def get(self, name: str) -> TypeDefinition | None:
        """Get a type by name, or None."""
        try:
            return self.resolve(name)
        except UnknownType:
            return None

    def get_class(self, name: str) -> ClassTypeDefinition | None:
        td = self._state.types.get(name)
        return td if isinstance(td, ClassTypeDefinition) else None

    def get_trait(self, name: str) -> TraitTypeDefinition | None:
        td = self._state.types.get(name)
        return td if isinstance(td, TraitTypeDefinition) else None

    def is_subtype(self, type_name: str, super_name: str) -> bool:
        """Whether ``type_name`` is ``super_name`` or one of its subtypes."""
        if type_name == super_name:
            return True
        td = self._state.types.get(type_name)
        return isinstance(td, HierarchicalTypeDefinition) and super_name in td.ancestors

    def subtypes_of(self, name: str) -> list[str]:
        """Return ``name`` and every registered subtype of it."""
        state = self._state
        types = state.types
        return [
            n for n in state.names
            if isinstance(types.get(n), HierarchicalTypeDefinition)
            and types[n].is_subtype_of(name)  # type: ignore[union-attr]
        ]

    def list_type_names(self, kind: str | None = None) -> list[str]:
        """List registered user type names in registration order.

        Args:
            kind: Restrict to ``class``, ``trait``, ``struct`` or ``enum``.
        """
        state = self._state
        return [n for n in state.names if kind is None or state.types[n].kind == kind]

    def attribute_of(self, type_name: str, attr_name: str) -> AttributeInfo | None:
        """Find an attribute on a type, including inherited reverse attributes."""
        types = self._state.types
        td = types.get(type_name)
        if not isinstance(td, StructTypeDefinition):
            return None
        found = td.get_attribute(attr_name)
        if found is not None or not isinstance(td, ClassTypeDefinition):
            return found
        for ancestor in td.ancestors:
            anc = types.get(ancestor)
            if isinstance(anc, ClassTypeDefinition):
                for rev in anc.reverse_attributes:
                    if rev.name == attr_name:
                        return rev
        return None

    def reverse_attributes(self, type_name: str) -> list[AttributeInfo]:
        """Back-reference attributes visible on a class (own and inherited)."""
        td = self.get_class(type_name)
        if td is None:
            return []
        result = list(td.reverse_attributes)
        for ancestor in td.ancestors:
            anc = self.get_class(ancestor)
            if anc is not None:
                result.extend(anc.reverse_attributes)
        return result

    def reference_attribute(self, source: str, target: str) -> AttributeInfo | None:
        """First attribute of ``source`` that points at ``target`` instances."""
        td = self.get_class(source)
        if td is None:
            return None
        for attr in [*td.attributes, *self.reverse_attributes(source)]:
            if attr.is_reference and self._related(attr.element_type.name, target):
                return attr
        return None

    def referencing_attribute(self, source: str, target: str) -> AttributeInfo | None:
        """First attribute of ``target`` that points back at ``source`` instances."""
        td = self.get_class(target)
        if td is None:
            return None
        for attr in td.attributes:
            if attr.is_reference and self._related(source, attr.element_type.name):
                return attr
        return None

    def _related(self, a: str, b: str) -> bool:
        return self.is_subtype(a, b) or self.is_subtype(b, a)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    # ---- Registration ----

    def register_types(self, types_def: TypesDef) -> list[str]:
        """Register a batch of type definitions atomically.

        Returns:
            The accepted type names, in submission order.

        Raises:
            DuplicateType, UnknownSuperType, TypeCycle, UnknownAttributeType,
            InvalidMultiplicity, InvalidAttributeDefinition. On any error
            nothing from the batch is registered.
        """
        with self._lock:
            working = dict(self._state.types)
            specs = types_def.all_specs()
            names = self._add_stubs(working, specs)
            hierarchical = [s for s in specs if isinstance(s, (ClassSpec, TraitSpec))]
            self._check_super_types(working, hierarchical)
            self._check_cycles(working, names)
            self._compute_ancestors(working, names)

            resolve: Callable[[str], TypeDefinition] = lambda n: _resolve_in(working, n)
            own: dict[str, list[AttributeInfo]] = {}
            for spec in specs:
                if isinstance(spec, EnumSpec):
                    continue
                own[spec.name] = [validate_attribute(spec.name, a, resolve) for a in spec.attributes]
                for info in own[spec.name]:
                    if info.is_composite and isinstance(spec, StructSpec):
                        raise InvalidAttributeDefinition(
                            f"Struct attribute '{spec.name}.{info.name}' cannot be composite"
                        )

            for spec in specs:
                if isinstance(spec, StructSpec):
                    working[spec.name].attributes = own[spec.name]  # type: ignore[attr-defined]
            flattened: dict[str, list[AttributeInfo]] = {}
            for spec in hierarchical:
                working[spec.name].attributes = self._flatten(  # type: ignore[attr-defined]
                    working, spec.name, own, flattened
                )

            self._add_reverse_attributes(working, names)

            self._state = _CatalogState(types=working, names=self._state.names + tuple(names))
        logger.debug(f"Registered types: {', '.join(names)}")
        return names

    def _add_stubs(self, working: dict[str, TypeDefinition], specs: list) -> list[str]:
        names: list[str] = []
        for spec in specs:
            if not TYPE_NAME_PATTERN.match(spec.name or ""):
                raise TypeSystemError(f"Invalid type name: {spec.name!r}")
            if spec.name in working or spec.name in names:
                raise DuplicateType(spec.name)
            names.append(spec.name)
            if isinstance(spec, EnumSpec):
                working[spec.name] = EnumTypeDefinition(name=spec.name, values=self._enum_values(spec))
            elif isinstance(spec, StructSpec):
                working[spec.name] = StructTypeDefinition(name=spec.name)
            elif isinstance(spec, ClassSpec):
                working[spec.name] = ClassTypeDefinition(name=spec.name, super_types=list(spec.super_types))
            elif isinstance(spec, TraitSpec):
                working[spec.name] = TraitTypeDefinition(name=spec.name, super_types=list(spec.super_types))
            else:
                raise TypeSystemError(f"Unsupported type definition: {type(spec).__name__}")
        return names

    @staticmethod
    def _enum_values(spec: EnumSpec) -> list[EnumValue]:
        values: list[EnumValue] = []
        next_ordinal = 1
        for entry in spec.values:
            if isinstance(entry, tuple):
                name, ordinal = entry
            else:
                name, ordinal = entry, next_ordinal
            if any(v.name == name or v.ordinal == ordinal for v in values):
                raise TypeSystemError(f"Enum '{spec.name}' repeats value {name!r} or ordinal {ordinal}")
            values.append(EnumValue(name=name, ordinal=ordinal))
            next_ordinal = ordinal + 1
        return values

    @staticmethod
    def _check_super_types(working: dict[str, TypeDefinition], specs: list) -> None:
        for spec in specs:
            expected = ClassTypeDefinition if isinstance(spec, ClassSpec) else TraitTypeDefinition
            for sup in spec.super_types:
                if not isinstance(working.get(sup), expected):
                    raise UnknownSuperType(spec.name, sup)

    @staticmethod
    def _check_cycles(working: dict[str, TypeDefinition], names: list[str]) -> None:
        """Depth-first walk; meeting a type already on the path is a cycle."""
        done: set[str] = set()

        def visit(name: str, path: list[str]) -> None:
            if name in path:
                raise TypeCycle(path[path.index(name):] + [name])
            if name in done:
                return
            td = working[name]
            if isinstance(td, HierarchicalTypeDefinition):
                for sup in td.super_types:
                    visit(sup, path + [name])
            done.add(name)

        for name in names:
            visit(name, [])

    @staticmethod
    def _compute_ancestors(working: dict[str, TypeDefinition], names: list[str]) -> None:
        def ancestors(name: str) -> frozenset[str]:
            td = working[name]
            assert isinstance(td, HierarchicalTypeDefinition)
            if td.ancestors or not td.super_types:
                return td.ancestors
            result: set[str] = set()
            for sup in td.super_types:
                result.add(sup)
                result |= ancestors(sup)
            td.ancestors = frozenset(result)
            return td.ancestors

        for name in names:
            if isinstance(working[name], HierarchicalTypeDefinition):
                ancestors(name)

    def _flatten(
        self,
        working: dict[str, TypeDefinition],
        name: str,
        own: dict[str, list[AttributeInfo]],
        memo: dict[str, list[AttributeInfo]],
    ) -> list[AttributeInfo]:
        """Effective attributes: supertypes first (in declaration order), then own."""
        if name in memo:
            return memo[name]
        td = working[name]
        assert isinstance(td, HierarchicalTypeDefinition)
        if name not in own:
            # Already registered: its attribute list is already flattened.
            memo[name] = list(td.attributes)
            return memo[name]
        result: list[AttributeInfo] = []
        seen: dict[str, AttributeInfo] = {}
        for sup in td.super_types:
            for attr in self._flatten(working, sup, own, memo):
                self._add_unique(name, attr, result, seen)
        for attr in own[name]:
            self._add_unique(name, attr, result, seen)
        memo[name] = result
        return result

    @staticmethod
    def _add_unique(owner: str, attr: AttributeInfo, result: list[AttributeInfo], seen: dict[str, AttributeInfo]) -> None:
        existing = seen.get(attr.name)
        if existing is attr:
            return  # diamond inheritance reaches the same attribute twice
        if existing is not None:
            raise InvalidAttributeDefinition(
                f"Attribute '{attr.name}' of '{owner}' is defined by both "
                f"'{existing.defined_in}' and '{attr.defined_in}'"
            )
        seen[attr.name] = attr
        result.append(attr)

    @staticmethod
    def _add_reverse_attributes(working: dict[str, TypeDefinition], names: list[str]) -> None:
        for name in names:
            td = working[name]
            if not isinstance(td, ClassTypeDefinition):
                continue
            for attr in td.attributes:
                if attr.defined_in != name or attr.reverse_attribute_name is None:
                    continue
                target_name = attr.element_type.name
                target = working[target_name]
                assert isinstance(target, ClassTypeDefinition)
                if target_name not in names:
                    # Replace, never mutate, a published descriptor.
                    target = dataclasses.replace(target, reverse_attributes=list(target.reverse_attributes))
                    working[target_name] = target
                rev_name = attr.reverse_attribute_name
                if target.get_attribute(rev_name) is not None:
                    raise InvalidAttributeDefinition(
                        f"Reverse attribute '{rev_name}' collides with an attribute of '{target_name}'"
                    )
                target.reverse_attributes.append(AttributeInfo(
                    name=rev_name,
                    data_type=_resolve_in(working, array_type_name(name)),
                    multiplicity=Multiplicity.COLLECTION,
                    reverse_attribute_name=attr.name,
                    defined_in=target_name,
                    is_reverse=True,
                ))
