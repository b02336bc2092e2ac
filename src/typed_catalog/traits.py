"""Trait engine: attach and detach mixin instances on stored entities."""

from __future__ import annotations

import logging

from typed_catalog.attributes import conform_attributes
from typed_catalog.errors import (
    AttributeValidationFailed,
    CatalogError,
    TraitAlreadyAttached,
    TraitNotAttached,
    UnknownTrait,
    UnresolvedReference,
)
from typed_catalog.instance import Id, TraitInstance
from typed_catalog.store import EntityRecord, InstanceStore, walk_values

logger = logging.getLogger(__name__)
audit = logging.getLogger("typed_catalog.audit")


class TraitEngine:
    """Attaches trait instances to entities without changing their class.

    An entity carries at most one instance of each trait type. Attach and
    detach hold the entity's writer lock, so they never interleave with
    another write to the same entity.
    """

    def __init__(self, store: InstanceStore) -> None:
        self.store = store
        self.catalog = store.catalog

    def attach(self, entity_id: Id | str, trait: TraitInstance | str) -> None:
        """Attach a trait instance (or an empty instance of the named trait).

        Raises:
            NotFound: The entity does not exist.
            UnknownTrait: The name is not a registered trait type.
            TraitAlreadyAttached: The entity already carries this trait.
            AttributeValidationFailed: The trait's attribute values are invalid.
        """
        if isinstance(trait, str):
            trait = TraitInstance(type_name=trait)
        trait_def = self.catalog.get_trait(trait.type_name)
        if trait_def is None:
            raise UnknownTrait(trait.type_name)
        try:
            values = conform_attributes(trait_def, trait.values, self.catalog)
            values = walk_values(values, on_id=self._check_reference)
        except CatalogError as e:
            raise AttributeValidationFailed(trait.type_name, e) from e
        instance = TraitInstance(type_name=trait_def.name, values=values)

        def add(record: EntityRecord) -> dict[str, TraitInstance]:
            if instance.type_name in record.traits:
                raise TraitAlreadyAttached(record.guid, instance.type_name)
            return {**record.traits, instance.type_name: instance}

        record = self.store.replace_traits(entity_id, add)
        self.store.journal.trait_attached(record.id, instance)
        audit.info(f"attach {instance.type_name} to {record.type_name} {record.guid}")

    def detach(self, entity_id: Id | str, trait_name: str) -> None:
        """Remove a trait from an entity.

        Raises:
            NotFound: The entity does not exist.
            TraitNotAttached: The entity does not carry the trait.
        """

        def remove(record: EntityRecord) -> dict[str, TraitInstance]:
            if trait_name not in record.traits:
                raise TraitNotAttached(record.guid, trait_name)
            return {name: t for name, t in record.traits.items() if name != trait_name}

        record = self.store.replace_traits(entity_id, remove)
        self.store.journal.trait_detached(record.id, trait_name)
        audit.info(f"detach {trait_name} from {record.type_name} {record.guid}")

    def traits_of(self, entity_id: Id | str) -> list[str]:
        """Return the names of the traits attached to an entity, in attach order."""
        return list(self.store.record(entity_id).traits)

    def _check_reference(self, ref: Id) -> None:
        if ref not in self.store:
            raise UnresolvedReference(ref.guid, ref.type_name)
