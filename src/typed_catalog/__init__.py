"""Typed Catalog - A typed metadata catalog with traits and a query DSL."""

from typed_catalog.catalog import TypeCatalog
from typed_catalog.config import CatalogConfig, configure_logging
from typed_catalog.instance import Entity, Id, Struct, TraitInstance
from typed_catalog.journal import JsonDirectoryJournal, MemoryJournal, NullJournal
from typed_catalog.parsing import QueryParser, TypeParser
from typed_catalog.query_executor import QueryResult
from typed_catalog.service import MetadataService
from typed_catalog.store import DeleteResult, InstanceStore
from typed_catalog.types import (
    AttributeDefinition,
    ClassSpec,
    EnumSpec,
    Multiplicity,
    PrimitiveType,
    StructSpec,
    TraitSpec,
    TypesDef,
)

__all__ = [
    # Main API
    "MetadataService",
    "CatalogConfig",
    "configure_logging",
    "QueryResult",
    # Components
    "TypeCatalog",
    "InstanceStore",
    "DeleteResult",
    "QueryParser",
    "TypeParser",
    # Journals
    "NullJournal",
    "MemoryJournal",
    "JsonDirectoryJournal",
    # Instances
    "Entity",
    "Id",
    "Struct",
    "TraitInstance",
    # Type definitions
    "AttributeDefinition",
    "ClassSpec",
    "EnumSpec",
    "Multiplicity",
    "PrimitiveType",
    "StructSpec",
    "TraitSpec",
    "TypesDef",
]

__version__ = "0.1.0"
