"""Instance model: Ids, struct values, trait instances and entities."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass(frozen=True)
class Id:
    """Immutable reference to an entity: (guid, type_name, version).

    A draft entity carries an unassigned Id (``guid is None``). A version of
    ``None`` means the holder does not care which version is stored.
    """

    guid: str | None
    type_name: str
    version: int | None = None

    @classmethod
    def unassigned(cls, type_name: str) -> Id:
        return cls(guid=None, type_name=type_name, version=0)

    @property
    def is_assigned(self) -> bool:
        return self.guid is not None

    def __repr__(self) -> str:
        return f"Id({self.type_name!r}, {self.guid!r}, v{self.version})"


@dataclass
class Struct:
    """A typed bag of attribute values, embedded by value in its owner."""

    type_name: str
    values: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.values[name] = value


@dataclass
class TraitInstance(Struct):
    """An instance of a trait type attached to an entity."""


@dataclass
class Entity(Struct):
    """An instance of a class type (a Referenceable).

    Draft entities are built by the caller and handed to the store, which
    validates them and assigns a guid. Entities returned by the store are
    detached copies; changing them does not change the store.
    """

    traits: dict[str, TraitInstance] = field(default_factory=dict)
    id: Id = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.id is None:
            self.id = Id.unassigned(self.type_name)

    @classmethod
    def draft(
        cls,
        type_name: str,
        values: dict[str, Any] | None = None,
        traits: Iterable[str | TraitInstance] = (),
    ) -> Entity:
        """Build a draft entity, optionally tagged with trait names or instances."""
        entity = cls(type_name=type_name, values=dict(values or {}))
        for trait in traits:
            entity.add_trait(trait)
        return entity

    @property
    def guid(self) -> str | None:
        return self.id.guid

    @property
    def trait_names(self) -> list[str]:
        return list(self.traits)

    def add_trait(self, trait: str | TraitInstance) -> TraitInstance:
        """Add a trait to a draft (use the trait engine for stored entities)."""
        if isinstance(trait, str):
            trait = TraitInstance(type_name=trait)
        self.traits[trait.type_name] = trait
        return trait

    def has_trait(self, trait_name: str) -> bool:
        return trait_name in self.traits

    def copy(self) -> Entity:
        """Return a deep copy, so callers never share state with the store."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"Entity({self.type_name!r}, {self.id.guid!r}, {self.values!r}, traits={self.trait_names})"
