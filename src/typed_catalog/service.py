"""MetadataService: the public entry point tying the catalog components together."""

from __future__ import annotations

import logging
import threading
from typing import Any

from typed_catalog.catalog import TypeCatalog
from typed_catalog.config import CatalogConfig
from typed_catalog.instance import Entity, Id, TraitInstance
from typed_catalog.journal import Journal, JsonDirectoryJournal
from typed_catalog.parsing.query_parser import QueryParser
from typed_catalog.parsing.type_parser import TypeParser
from typed_catalog.query_executor import QueryExecutor, QueryResult
from typed_catalog.query_planner import PreparedQuery, QueryPlanner
from typed_catalog.store import DeleteResult, InstanceStore
from typed_catalog.traits import TraitEngine
from typed_catalog.types import TypesDef

logger = logging.getLogger(__name__)
audit = logging.getLogger("typed_catalog.audit")


class MetadataService:
    """Typed metadata catalog: types, entities, traits and queries.

    Example::

        service = MetadataService()
        service.register_types('class DB { name: string required } trait PII {}')
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        service.attach_trait(db, "PII")
        service.execute_query('DB where name = "Sales"')
    """

    def __init__(self, config: CatalogConfig | None = None, journal: Journal | None = None) -> None:
        self.config = config or CatalogConfig()
        if journal is None and self.config.journal_dir is not None:
            journal = JsonDirectoryJournal(self.config.journal_dir)
        self.journal = journal or Journal()
        self.catalog = TypeCatalog()
        self.store = InstanceStore(self.catalog, self.journal)
        self.traits = TraitEngine(self.store)
        self.planner = QueryPlanner(self.catalog)
        self.executor = QueryExecutor(self.store, loop_max_depth=self.config.loop_max_depth)
        # PLY parsers keep per-parse state
        self._parse_lock = threading.Lock()
        self._type_parser = TypeParser()
        self._query_parser = QueryParser()

    # ---- Types ----

    def register_types(self, types: TypesDef | str) -> list[str]:
        """Register a batch of types, given as a TypesDef or type-definition DSL text.

        Returns:
            The names of the registered types.
        """
        if isinstance(types, str):
            with self._parse_lock:
                types = self._type_parser.parse(types)
        names = self.catalog.register_types(types)
        self.journal.types_registered([self.catalog.resolve(n) for n in names])
        audit.info(f"register {', '.join(names)}")
        return names

    def list_registered_type_names(self, kind: str | None = None) -> list[str]:
        """Names of user-registered types, optionally only one kind (class, trait, struct, enum)."""
        return self.catalog.list_type_names(kind)

    # ---- Entities ----

    def create_entity(self, draft: Entity) -> Id:
        return self.store.create(draft)

    def get_entity(self, entity_id: Id | str) -> Entity:
        return self.store.get(entity_id)

    def delete_entity(self, entity_id: Id | str) -> DeleteResult:
        return self.store.delete(entity_id)

    def attach_trait(self, entity_id: Id | str, trait: TraitInstance | str) -> None:
        self.traits.attach(entity_id, trait)

    def detach_trait(self, entity_id: Id | str, trait_name: str) -> None:
        self.traits.detach(entity_id, trait_name)

    # ---- Queries ----

    def prepare_query(self, text: str) -> PreparedQuery:
        """Parse, type-check and plan a query without running it."""
        with self._parse_lock:
            query = self._query_parser.parse(text)
        return self.planner.prepare(text, query)

    def execute_query(self, text: str, cancel: threading.Event | None = None) -> QueryResult:
        """Run a query and return its rows.

        Raises:
            DSLSyntaxError: The text does not parse.
            UnresolvedIdentifier, TypeMismatch, DuplicateProjection: The query
                does not type-check.
            QueryCancelled: ``cancel`` was set while the query ran.
        """
        prepared = self.prepare_query(text)
        return self.executor.execute(prepared, cancel=cancel)

    def explain_query(self, text: str) -> list[str]:
        return self.prepare_query(text).explain()

    # ---- Lifecycle ----

    def close(self) -> None:
        self.journal.close()

    def __enter__(self) -> MetadataService:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
