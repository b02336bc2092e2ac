"""Tests for concurrent writers and readers."""

import threading
import warnings
from concurrent.futures import ThreadPoolExecutor

from typed_catalog import Entity
from typed_catalog.errors import (
    CompositeOwnershipConflict,
    NotFound,
    TraitAlreadyAttached,
    TraitNotAttached,
    UnresolvedReference,
)

from conftest import table_draft


def run_all(fn, args, workers=8):
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(fn, args))


class TestConcurrentWrites:
    """Tests for writers racing on the store."""

    def test_parallel_creates(self, service):
        """Test creating tables from many threads."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        ids = run_all(lambda i: service.create_entity(table_draft(f"t{i}", db, ("a", "b"))), range(50))

        assert len({i.guid for i in ids}) == 50
        assert len(service.store.instances_of("Table")) == 50
        assert len(service.store.instances_of("Column")) == 100
        assert len(service.store.referrers(db)) == 50

    def test_same_trait_attached_once(self, service):
        """Test that only one of several racing attaches succeeds."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        barrier = threading.Barrier(8)

        def attach(_):
            barrier.wait()
            try:
                service.attach_trait(db, "PII")
                return True
            except TraitAlreadyAttached:
                return False

        assert run_all(attach, range(8)).count(True) == 1
        assert service.traits.traits_of(db) == ["PII"]

    def test_different_traits(self, service):
        """Test attaching different traits from many threads."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        names = ["Dimension", "Fact", "PII", "Metric", "ETL", "JdbcAccess"]
        run_all(lambda name: service.attach_trait(db, name), names)
        assert sorted(service.traits.traits_of(db)) == sorted(names)

    def test_attach_detach_race(self, service):
        """Test racing attaches and detaches of one trait."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))

        def toggle(i):
            try:
                if i % 2:
                    service.attach_trait(db, "PII")
                else:
                    service.detach_trait(db, "PII")
            except (TraitAlreadyAttached, TraitNotAttached):
                pass

        run_all(toggle, range(100))
        assert service.traits.traits_of(db) in ([], ["PII"])

    def test_delete_while_attaching(self, service):
        """Test deleting entities while traits are attached."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        tables = [service.create_entity(table_draft(f"t{i}", db)) for i in range(20)]

        def work(i):
            table = tables[i % 20]
            try:
                if i < 20:
                    with warnings.catch_warnings():
                        warnings.simplefilter("ignore")
                        service.delete_entity(table)
                else:
                    service.attach_trait(table, "PII")
            except (NotFound, TraitAlreadyAttached):
                pass

        run_all(work, range(40))
        assert len(service.store) == 1
        assert service.store.instances_of("Table") == []


class TestSnapshotReads:
    """Tests for queries running next to writers."""

    def test_queries_see_whole_entities(self, service):
        """Test that queries never see a half-written entity."""
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))
        stop = threading.Event()
        errors = []

        def write():
            i = 0
            while not stop.is_set():
                service.create_entity(table_draft(f"t{i}", db, ("a", "b", "c")))
                i += 1

        def read(_):
            for _ in range(20):
                result = service.execute_query('Table as t, columns select t.name as table')
                counts = {}
                for row in result:
                    counts[row["table"]] = counts.get(row["table"], 0) + 1
                if any(n != 3 for n in counts.values()):
                    errors.append(counts)

        writer = threading.Thread(target=write)
        writer.start()
        try:
            run_all(read, range(4), workers=4)
        finally:
            stop.set()
            writer.join()

        assert errors == []


class TestCascadeRaces:
    """Tests for creators racing a cascade delete."""

    def test_claims_and_references_during_cascade(self, service):
        """Test that a cascade delete leaves no orphans and reports every surviving reference."""
        service.register_types("class Lineage { column: Column }")
        db = service.create_entity(Entity.draft("DB", {"name": "Sales"}))

        for round_ in range(10):
            table = service.create_entity(table_draft(f"t{round_}", db, ("a", "b")))
            column = service.get_entity(table).values["columns"][0]
            barrier = threading.Barrier(7)

            def work(i):
                barrier.wait()
                if i == 0:
                    with warnings.catch_warnings():
                        warnings.simplefilter("ignore")
                        return ("delete", service.delete_entity(table))
                try:
                    if i % 2:
                        draft = Entity.draft("Table", {"name": f"thief{i}", "db": db, "columns": [column]})
                        return ("claim", service.create_entity(draft))
                    return ("lineage", service.create_entity(Entity.draft("Lineage", {"column": column})))
                except (CompositeOwnershipConflict, UnresolvedReference) as e:
                    return ("rejected", e)

            outcomes = run_all(work, range(7), workers=7)
            result = next(value for kind, value in outcomes if kind == "delete")

            assert column in result.deleted
            assert column not in service.store
            # A column can never change owner
            assert not [value for kind, value in outcomes if kind == "claim"]
            dangling_sources = {d.source for d in result.dangling if d.target == column}
            for kind, value in outcomes:
                if kind == "lineage":
                    assert value in dangling_sources
            for record in service.store.snapshot():
                owner = service.store.owner_of(record.id)
                assert owner is None or owner in service.store


class TestCatalogReads:
    """Tests for catalog lookups during registration."""

    def test_lookups_see_whole_registrations(self, service):
        """Test that type listings never mix an old and a new registration."""
        stop = threading.Event()
        errors = []

        def register():
            for i in range(200):
                service.register_types(f"class Gen{i} extends DataSet {{ tag: string }} trait GenTrait{i} {{}}")
            stop.set()

        def read(_):
            while not stop.is_set():
                try:
                    subtypes = service.catalog.subtypes_of("DataSet")
                    names = service.catalog.list_type_names("class")
                except KeyError as e:
                    errors.append(e)
                    return
                if not set(subtypes) - {"DataSet"} <= set(names):
                    errors.append(subtypes)
                    return

        writer = threading.Thread(target=register)
        writer.start()
        try:
            run_all(read, range(4), workers=4)
        finally:
            writer.join()

        assert errors == []
        assert len(service.catalog.subtypes_of("DataSet")) == 3 + 200
