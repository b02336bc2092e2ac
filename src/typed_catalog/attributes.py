"""Attribute model: definition validation and value conformance."""

from __future__ import annotations

import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Callable

from typed_catalog.errors import (
    InvalidAttributeDefinition,
    InvalidMultiplicity,
    RequiredAttributeMissing,
    TypeMismatch,
    TypeSystemError,
    UnknownAttribute,
    UnknownAttributeType,
)
from typed_catalog.instance import Entity, Id, Struct
from typed_catalog.types import (
    ArrayTypeDefinition,
    AttributeDefinition,
    AttributeInfo,
    ClassTypeDefinition,
    EnumTypeDefinition,
    EnumValue,
    MapTypeDefinition,
    Multiplicity,
    PrimitiveType,
    PrimitiveTypeDefinition,
    StructTypeDefinition,
    TypeDefinition,
)

if TYPE_CHECKING:
    from typed_catalog.catalog import TypeCatalog


def validate_attribute(
    owner: str,
    definition: AttributeDefinition,
    resolve: Callable[[str], TypeDefinition],
) -> AttributeInfo:
    """Validate one attribute definition and bind it to its data type.

    Args:
        owner: Name of the type declaring the attribute.
        definition: The submitted definition.
        resolve: Name resolver; raises a TypeSystemError for unknown names.

    Raises:
        UnknownAttributeType: The data type (or an array element) does not resolve.
        InvalidMultiplicity: COLLECTION declared on a non-array type.
        InvalidAttributeDefinition: Composite or reverse semantics on a
            non-class attribute.
    """
    if not definition.name or not definition.name.isidentifier():
        raise InvalidAttributeDefinition(f"Invalid attribute name on '{owner}': {definition.name!r}")
    try:
        data_type = resolve(definition.data_type_name)
    except TypeSystemError as e:
        raise UnknownAttributeType(owner, definition.name, definition.data_type_name) from e

    if definition.multiplicity is Multiplicity.COLLECTION and not data_type.is_array:
        raise InvalidMultiplicity(
            f"Attribute '{owner}.{definition.name}' is a COLLECTION but its type "
            f"'{data_type.name}' is not an array"
        )

    info = AttributeInfo(
        name=definition.name,
        data_type=data_type,
        multiplicity=definition.multiplicity,
        is_composite=definition.is_composite,
        reverse_attribute_name=definition.reverse_attribute_name,
        defined_in=owner,
    )
    if definition.is_composite and not info.is_reference:
        raise InvalidAttributeDefinition(
            f"Composite attribute '{owner}.{definition.name}' must hold a class "
            f"or an array of a class, not '{data_type.name}'"
        )
    if definition.reverse_attribute_name is not None:
        if not info.is_reference:
            raise InvalidAttributeDefinition(
                f"Reverse attribute on '{owner}.{definition.name}' needs a class-typed attribute"
            )
        if not definition.reverse_attribute_name.isidentifier():
            raise InvalidAttributeDefinition(
                f"Invalid reverse attribute name {definition.reverse_attribute_name!r}"
            )
    return info


def check_value(info: AttributeInfo, value: Any, catalog: TypeCatalog) -> Any:
    """Check that ``value`` fits the attribute and return its normalized form.

    Class-typed values stay as ``Id`` or draft ``Entity``; the store resolves
    them. Raises TypeMismatch on any mismatch.
    """
    where = f"{info.defined_in}.{info.name}"
    if info.is_reverse:
        raise TypeMismatch(f"'{where}' is a reverse attribute and cannot be set")
    return _conform(info.data_type, value, catalog, where)


def conform_attributes(type_def: StructTypeDefinition, values: dict[str, Any], catalog: TypeCatalog) -> dict[str, Any]:
    """Check a whole attribute mapping against a struct, class or trait type.

    Unset (None) values are dropped from the result. An empty list does not
    satisfy a REQUIRED attribute.

    Raises:
        UnknownAttribute: A name the type does not declare.
        TypeMismatch: A value that does not fit its attribute.
        RequiredAttributeMissing: A REQUIRED attribute left unset.
    """
    result: dict[str, Any] = {}
    for name, value in values.items():
        info = catalog.attribute_of(type_def.name, name)
        if info is None:
            raise UnknownAttribute(type_def.name, name)
        conformed = check_value(info, value, catalog)
        if conformed is not None:
            result[name] = conformed
    for info in type_def.attributes:
        if info.multiplicity is Multiplicity.REQUIRED and result.get(info.name) in (None, []):
            raise RequiredAttributeMissing(type_def.name, info.name)
    return result


def _conform(data_type: TypeDefinition, value: Any, catalog: TypeCatalog, where: str) -> Any:
    if value is None:
        return None
    if isinstance(data_type, PrimitiveTypeDefinition):
        return _conform_primitive(data_type.primitive, value, where)
    if isinstance(data_type, EnumTypeDefinition):
        if isinstance(value, EnumValue):
            value = value.name
        member = data_type.get_value(value) if isinstance(value, (str, int)) else None
        if member is None:
            raise TypeMismatch(f"{where}: {value!r} is not a value of enum '{data_type.name}'")
        return member
    if isinstance(data_type, ArrayTypeDefinition):
        if isinstance(value, (str, bytes, dict)) or not hasattr(value, "__iter__"):
            raise TypeMismatch(f"{where}: expected a list for '{data_type.name}', got {type(value).__name__}")
        return [_conform(data_type.element_type, v, catalog, f"{where}[{i}]") for i, v in enumerate(value)]
    if isinstance(data_type, MapTypeDefinition):
        if not isinstance(value, dict):
            raise TypeMismatch(f"{where}: expected a dict for '{data_type.name}', got {type(value).__name__}")
        return {
            _conform(data_type.key_type, k, catalog, f"{where} key"):
                _conform(data_type.value_type, v, catalog, f"{where}[{k!r}]")
            for k, v in value.items()
        }
    if isinstance(data_type, ClassTypeDefinition):
        if not isinstance(value, (Id, Entity)):
            raise TypeMismatch(f"{where}: expected an Id or Entity of '{data_type.name}', got {type(value).__name__}")
        actual = value.type_name
        if not catalog.is_subtype(actual, data_type.name):
            raise TypeMismatch(f"{where}: '{actual}' is not assignable to '{data_type.name}'")
        return value
    if isinstance(data_type, StructTypeDefinition) and data_type.is_struct:
        return _conform_struct(data_type, value, catalog, where)
    raise TypeMismatch(f"{where}: values of '{data_type.name}' cannot be stored in attributes")


def _conform_struct(data_type: StructTypeDefinition, value: Any, catalog: TypeCatalog, where: str) -> Struct:
    if isinstance(value, Struct):
        if value.type_name != data_type.name:
            raise TypeMismatch(f"{where}: expected struct '{data_type.name}', got '{value.type_name}'")
        raw = value.values
    elif isinstance(value, dict):
        raw = value
    else:
        raise TypeMismatch(f"{where}: expected struct '{data_type.name}', got {type(value).__name__}")

    result = Struct(type_name=data_type.name)
    for name, v in raw.items():
        attr = data_type.get_attribute(name)
        if attr is None:
            raise TypeMismatch(f"{where}: struct '{data_type.name}' has no attribute '{name}'")
        conformed = _conform(attr.data_type, v, catalog, f"{where}.{name}")
        if conformed is not None:
            result.values[name] = conformed
    for attr in data_type.attributes:
        if attr.multiplicity is Multiplicity.REQUIRED and attr.name not in result.values:
            raise TypeMismatch(f"{where}: struct attribute '{attr.name}' is required")
    return result


def _conform_primitive(prim: PrimitiveType, value: Any, where: str) -> Any:
    if prim is PrimitiveType.STRING:
        if not isinstance(value, str):
            raise TypeMismatch(f"{where}: expected string, got {type(value).__name__}")
        return value
    if prim is PrimitiveType.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeMismatch(f"{where}: expected boolean, got {type(value).__name__}")
        return value
    if isinstance(value, bool):
        raise TypeMismatch(f"{where}: expected {prim.value}, got boolean")
    if prim.is_integral:
        if not isinstance(value, int):
            raise TypeMismatch(f"{where}: expected {prim.value}, got {type(value).__name__}")
        bounds = prim.value_range
        if bounds is not None and not bounds[0] <= value <= bounds[1]:
            raise TypeMismatch(f"{where}: {value} is out of range for {prim.value}")
        return value
    if prim is PrimitiveType.BIGDECIMAL:
        if isinstance(value, (int, float, str, Decimal)):
            try:
                return Decimal(str(value)) if isinstance(value, float) else Decimal(value)
            except InvalidOperation:
                pass
        raise TypeMismatch(f"{where}: {value!r} is not a decimal")
    if prim in (PrimitiveType.FLOAT, PrimitiveType.DOUBLE):
        if not isinstance(value, (int, float)):
            raise TypeMismatch(f"{where}: expected {prim.value}, got {type(value).__name__}")
        return float(value)
    if prim is PrimitiveType.DATE:
        if isinstance(value, (datetime.date, datetime.datetime)):
            return value
        if isinstance(value, str):
            try:
                return datetime.datetime.fromisoformat(value)
            except ValueError:
                pass
        raise TypeMismatch(f"{where}: {value!r} is not a date")
    raise TypeMismatch(f"{where}: unsupported primitive {prim.value}")
