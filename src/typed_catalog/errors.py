"""Exception taxonomy for the typed catalog."""

from __future__ import annotations

from typing import Any


class CatalogError(Exception):
    """Base class for every error raised by the catalog."""


# ---- Type system ----


class TypeSystemError(CatalogError):
    """Raised for invalid type definitions or lookups."""


class DuplicateType(TypeSystemError):
    """A type name is already registered (or repeated in one batch)."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Type '{type_name}' is already defined")
        self.type_name = type_name


class UnknownType(TypeSystemError):
    """A type name does not resolve in the catalog."""

    def __init__(self, type_name: str) -> None:
        super().__init__(f"Unknown type: {type_name}")
        self.type_name = type_name


class UnknownSuperType(TypeSystemError):
    """A supertype reference does not resolve to a type of the right kind."""

    def __init__(self, type_name: str, super_type: str) -> None:
        super().__init__(f"Type '{type_name}' has unknown supertype '{super_type}'")
        self.type_name = type_name
        self.super_type = super_type


class TypeCycle(TypeSystemError):
    """The supertype graph would contain a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Supertype cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class InvalidAttributeDefinition(TypeSystemError):
    """An attribute definition is malformed."""


class UnknownAttributeType(InvalidAttributeDefinition):
    """An attribute's declared data type does not resolve."""

    def __init__(self, owner: str, attribute: str, type_name: str) -> None:
        super().__init__(f"Attribute '{owner}.{attribute}' has unknown type '{type_name}'")
        self.owner = owner
        self.attribute = attribute
        self.type_name = type_name


class InvalidMultiplicity(InvalidAttributeDefinition):
    """An attribute's multiplicity does not fit its data type."""


# ---- Instances ----


class InstanceError(CatalogError):
    """Raised for invalid entity data or store operations."""


class RequiredAttributeMissing(InstanceError):
    """A REQUIRED attribute was not set on a draft."""

    def __init__(self, type_name: str, attribute: str) -> None:
        super().__init__(f"Required attribute '{type_name}.{attribute}' is not set")
        self.type_name = type_name
        self.attribute = attribute


class TypeMismatch(CatalogError):
    """A value (or query operand) does not conform to the declared type."""


class UnknownAttribute(InstanceError):
    """A draft sets an attribute its type does not declare."""

    def __init__(self, type_name: str, attribute: str) -> None:
        super().__init__(f"Type '{type_name}' has no attribute '{attribute}'")
        self.type_name = type_name
        self.attribute = attribute


class UnresolvedReference(InstanceError):
    """An Id-valued attribute points at an entity that does not exist."""

    def __init__(self, guid: str | None, type_name: str) -> None:
        super().__init__(f"Reference to {type_name} '{guid}' does not resolve")
        self.guid = guid
        self.type_name = type_name


class CompositeOwnershipConflict(InstanceError):
    """A composite value already has a different owner."""


class NotFound(InstanceError):
    """No entity exists with the given guid."""

    def __init__(self, guid: str | None) -> None:
        super().__init__(f"Entity '{guid}' not found")
        self.guid = guid


class VersionMismatch(InstanceError):
    """The caller's Id carries a version other than the stored one."""

    def __init__(self, guid: str, expected: int, actual: int) -> None:
        super().__init__(f"Entity '{guid}' is at version {actual}, not {expected}")
        self.guid = guid
        self.expected = expected
        self.actual = actual


class DanglingReferenceWarning(UserWarning):
    """A surviving entity still references an entity removed by a delete."""


# ---- Traits ----


class UnknownTrait(InstanceError):
    """The trait name is not a registered trait type."""

    def __init__(self, trait_name: str) -> None:
        super().__init__(f"Unknown trait: {trait_name}")
        self.trait_name = trait_name


class TraitAlreadyAttached(InstanceError):
    def __init__(self, guid: str, trait_name: str) -> None:
        super().__init__(f"Trait '{trait_name}' is already attached to '{guid}'")
        self.guid = guid
        self.trait_name = trait_name


class TraitNotAttached(InstanceError):
    def __init__(self, guid: str, trait_name: str) -> None:
        super().__init__(f"Trait '{trait_name}' is not attached to '{guid}'")
        self.guid = guid
        self.trait_name = trait_name


class AttributeValidationFailed(InstanceError):
    """A trait instance's attributes failed validation."""

    def __init__(self, trait_name: str, cause: CatalogError) -> None:
        super().__init__(f"Trait '{trait_name}': {cause}")
        self.trait_name = trait_name
        self.cause = cause


# ---- Queries ----


class QueryError(CatalogError):
    """Raised while parsing, planning or executing a DSL query."""


class DSLSyntaxError(QueryError, SyntaxError):
    """Query or type-definition text does not match its grammar."""

    def __init__(self, message: str, position: int, expected: list[str] | None = None) -> None:
        super().__init__(message)
        self.position = position
        self.expected = expected or []

    def __str__(self) -> str:
        text = f"{self.args[0]} (position {self.position})"
        if self.expected:
            text += f"; expected one of: {', '.join(self.expected)}"
        return text


class UnresolvedIdentifier(QueryError):
    """A type, alias or attribute name in a query does not resolve."""

    def __init__(self, name: str, context: Any = None) -> None:
        message = f"Unresolved identifier '{name}'"
        if context:
            message += f" in {context}"
        super().__init__(message)
        self.name = name


class DuplicateProjection(QueryError):
    """A query carries more than one select clause."""


class QueryCancelled(QueryError):
    """The caller cancelled the query while it was executing."""
