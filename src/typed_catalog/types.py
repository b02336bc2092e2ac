"""Type definitions for the typed catalog."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PrimitiveType(Enum):
    """Built-in primitive types supported by the type system."""

    BOOLEAN = "boolean"
    BYTE = "byte"
    SHORT = "short"
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    BIGINTEGER = "biginteger"
    BIGDECIMAL = "bigdecimal"
    DATE = "date"
    STRING = "string"

    @property
    def is_integral(self) -> bool:
        """Return whether values of this type are whole numbers."""
        return self in _INTEGRAL

    @property
    def is_numeric(self) -> bool:
        """Return whether values of this type take part in arithmetic."""
        return self in _INTEGRAL or self in _FRACTIONAL

    @property
    def value_range(self) -> tuple[int, int] | None:
        """Return the inclusive range for bounded integral types."""
        ranges = {
            PrimitiveType.BYTE: (-(2**7), 2**7 - 1),
            PrimitiveType.SHORT: (-(2**15), 2**15 - 1),
            PrimitiveType.INT: (-(2**31), 2**31 - 1),
            PrimitiveType.LONG: (-(2**63), 2**63 - 1),
        }
        return ranges.get(self)


_INTEGRAL = frozenset({PrimitiveType.BYTE, PrimitiveType.SHORT, PrimitiveType.INT,
                       PrimitiveType.LONG, PrimitiveType.BIGINTEGER})
_FRACTIONAL = frozenset({PrimitiveType.FLOAT, PrimitiveType.DOUBLE, PrimitiveType.BIGDECIMAL})

# Mapping from type name strings to PrimitiveType enum values
PRIMITIVE_TYPE_NAMES: dict[str, PrimitiveType] = {pt.value: pt for pt in PrimitiveType}

# User-defined type names must be plain identifiers, which keeps them
# disjoint from the array<..> and map<..,..> syntax.
TYPE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def array_type_name(element_type_name: str) -> str:
    """Return the canonical name of an array of the given element type."""
    return f"array<{element_type_name}>"


def map_type_name(key_type_name: str, value_type_name: str) -> str:
    """Return the canonical name of a map type."""
    return f"map<{key_type_name},{value_type_name}>"


def parse_collection_type_name(name: str) -> tuple[str, list[str]] | None:
    """Split an ``array<..>`` or ``map<..,..>`` name into (kind, argument names).

    Returns None when the name is not collection syntax.
    """
    name = name.strip()
    for kind, arity in (("array", 1), ("map", 2)):
        prefix = kind + "<"
        if not (name.startswith(prefix) and name.endswith(">")):
            continue
        inner = name[len(prefix):-1]
        args: list[str] = []
        depth = 0
        start = 0
        for i, ch in enumerate(inner):
            if ch == "<":
                depth += 1
            elif ch == ">":
                depth -= 1
            elif ch == "," and depth == 0:
                args.append(inner[start:i].strip())
                start = i + 1
        args.append(inner[start:].strip())
        if len(args) != arity or not all(args):
            return None
        return kind, args
    return None


class Multiplicity(Enum):
    """Cardinality constraint on an attribute value."""

    OPTIONAL = "optional"  # 0..1
    REQUIRED = "required"  # 1..1
    COLLECTION = "collection"  # 0..N


# ---- Type definition submissions ----


@dataclass
class AttributeDefinition:
    """A named, typed field as submitted in a type definition batch."""

    name: str
    data_type_name: str
    multiplicity: Multiplicity = Multiplicity.OPTIONAL
    is_composite: bool = False
    reverse_attribute_name: str | None = None


@dataclass
class EnumSpec:
    """An enum definition: ordered (value name, ordinal) pairs.

    Plain strings in ``values`` get consecutive ordinals.
    """

    name: str
    values: list[str | tuple[str, int]] = field(default_factory=list)


@dataclass
class StructSpec:
    """A struct definition."""

    name: str
    attributes: list[AttributeDefinition] = field(default_factory=list)


@dataclass
class ClassSpec:
    """A class definition with optional supertypes."""

    name: str
    attributes: list[AttributeDefinition] = field(default_factory=list)
    super_types: list[str] = field(default_factory=list)


@dataclass
class TraitSpec:
    """A trait (mixin) definition with optional supertypes."""

    name: str
    attributes: list[AttributeDefinition] = field(default_factory=list)
    super_types: list[str] = field(default_factory=list)


@dataclass
class TypesDef:
    """A bulk type-definition submission."""

    enums: list[EnumSpec] = field(default_factory=list)
    structs: list[StructSpec] = field(default_factory=list)
    traits: list[TraitSpec] = field(default_factory=list)
    classes: list[ClassSpec] = field(default_factory=list)

    def all_specs(self) -> list[EnumSpec | StructSpec | TraitSpec | ClassSpec]:
        return [*self.enums, *self.structs, *self.traits, *self.classes]


# ---- Resolved type descriptors ----


@dataclass(eq=False)
class TypeDefinition:
    """Base class for all type descriptors."""

    name: str

    @property
    def kind(self) -> str:
        """Return the short kind name used in listings."""
        raise NotImplementedError

    @property
    def is_primitive(self) -> bool:
        return False

    @property
    def is_array(self) -> bool:
        return False

    @property
    def is_map(self) -> bool:
        return False

    @property
    def is_enum(self) -> bool:
        return False

    @property
    def is_struct(self) -> bool:
        return False

    @property
    def is_class(self) -> bool:
        return False

    @property
    def is_trait(self) -> bool:
        return False


@dataclass(eq=False)
class PrimitiveTypeDefinition(TypeDefinition):
    """Type definition wrapping a primitive type."""

    primitive: PrimitiveType

    @property
    def kind(self) -> str:
        return "primitive"

    @property
    def is_primitive(self) -> bool:
        return True


@dataclass(eq=False)
class ArrayTypeDefinition(TypeDefinition):
    """Type definition for array types (e.g., array<Column>)."""

    element_type: TypeDefinition

    @property
    def kind(self) -> str:
        return "array"

    @property
    def is_array(self) -> bool:
        return True


@dataclass(eq=False)
class MapTypeDefinition(TypeDefinition):
    """Type definition for map types (e.g., map<string,int>)."""

    key_type: TypeDefinition
    value_type: TypeDefinition

    @property
    def kind(self) -> str:
        return "map"

    @property
    def is_map(self) -> bool:
        return True


@dataclass(frozen=True)
class EnumValue:
    """One member of an enum type."""

    name: str
    ordinal: int


@dataclass(eq=False)
class EnumTypeDefinition(TypeDefinition):
    """Enum type definition with an ordered set of values."""

    values: list[EnumValue] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "enum"

    @property
    def is_enum(self) -> bool:
        return True

    def get_value(self, key: str | int) -> EnumValue | None:
        """Look a member up by name or ordinal."""
        for v in self.values:
            if (isinstance(key, str) and v.name == key) or (
                isinstance(key, int) and not isinstance(key, bool) and v.ordinal == key
            ):
                return v
        return None


@dataclass(eq=False)
class AttributeInfo:
    """A resolved attribute: the definition bound to its data type."""

    name: str
    data_type: TypeDefinition
    multiplicity: Multiplicity = Multiplicity.OPTIONAL
    is_composite: bool = False
    reverse_attribute_name: str | None = None
    defined_in: str = ""
    is_reverse: bool = False  # back-reference synthesized from another type

    @property
    def element_type(self) -> TypeDefinition:
        """The data type of one value (arrays unwrap to their element type)."""
        if isinstance(self.data_type, ArrayTypeDefinition):
            return self.data_type.element_type
        return self.data_type

    @property
    def is_reference(self) -> bool:
        """Whether values of this attribute point at class instances."""
        return self.element_type.is_class

    @property
    def is_many(self) -> bool:
        return self.data_type.is_array


@dataclass(eq=False)
class StructTypeDefinition(TypeDefinition):
    """Struct type: an ordered list of attributes, embedded by value."""

    attributes: list[AttributeInfo] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "struct"

    @property
    def is_struct(self) -> bool:
        return True

    def get_attribute(self, name: str) -> AttributeInfo | None:
        """Get an attribute by name."""
        for a in self.attributes:
            if a.name == name:
                return a
        return None

    @property
    def attribute_names(self) -> list[str]:
        return [a.name for a in self.attributes]


@dataclass(eq=False)
class HierarchicalTypeDefinition(StructTypeDefinition):
    """Base of class and trait types.

    ``attributes`` holds the effective attribute list: the supertype chain
    flattened ancestors-first at registration time. ``ancestors`` holds every
    transitive supertype name.
    """

    super_types: list[str] = field(default_factory=list)
    ancestors: frozenset[str] = frozenset()

    def is_subtype_of(self, type_name: str) -> bool:
        """Whether this type is ``type_name`` or inherits from it."""
        return type_name == self.name or type_name in self.ancestors


@dataclass(eq=False)
class ClassTypeDefinition(HierarchicalTypeDefinition):
    """Class type: instances are entities."""

    reverse_attributes: list[AttributeInfo] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "class"

    @property
    def is_struct(self) -> bool:
        return False

    @property
    def is_class(self) -> bool:
        return True

    def get_attribute(self, name: str) -> AttributeInfo | None:
        """Get an attribute by name, including reverse attributes."""
        found = super().get_attribute(name)
        if found is not None:
            return found
        for a in self.reverse_attributes:
            if a.name == name:
                return a
        return None


@dataclass(eq=False)
class TraitTypeDefinition(HierarchicalTypeDefinition):
    """Trait type: a mixin attachable to any entity."""

    @property
    def kind(self) -> str:
        return "trait"

    @property
    def is_struct(self) -> bool:
        return False

    @property
    def is_trait(self) -> bool:
        return True


def type_category(type_def: TypeDefinition) -> str:
    """Classify a type for comparison and arithmetic checks.

    Returns one of ``numeric``, ``string``, ``boolean``, ``date``, ``enum``,
    ``struct``, ``reference``, ``trait``, ``array`` or ``map``.
    """
    if isinstance(type_def, PrimitiveTypeDefinition):
        prim = type_def.primitive
        if prim.is_numeric:
            return "numeric"
        return prim.value
    if isinstance(type_def, ClassTypeDefinition):
        return "reference"
    return type_def.kind


def describe_attribute(info: AttributeInfo) -> dict[str, Any]:
    """Return a JSON-compatible description of a resolved attribute."""
    return {
        "name": info.name,
        "dataTypeName": info.data_type.name,
        "multiplicity": info.multiplicity.value,
        "isComposite": info.is_composite,
        "reverseAttributeName": info.reverse_attribute_name,
    }
