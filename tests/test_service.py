"""Tests for the MetadataService facade."""

import pytest

from typed_catalog import CatalogConfig, Entity, JsonDirectoryJournal, MetadataService, parsing
from typed_catalog.errors import DSLSyntaxError, DuplicateType


class TestTypes:
    """Tests for type registration through the service."""

    def test_register_from_text(self):
        """Test registering types from DSL text."""
        service = MetadataService()
        names = service.register_types("class DB { name: string } trait PII {}")
        assert names == ["PII", "DB"]

    def test_register_types_def(self):
        """Test registering parsed type definitions."""
        service = MetadataService()
        service.register_types(parsing.parse_types("enum Kind { A, B }"))
        assert service.list_registered_type_names() == ["Kind"]

    def test_list_by_kind(self, service):
        """Test listing registered names by kind."""
        assert service.list_registered_type_names("trait") == [
            "Dimension", "Fact", "PII", "Metric", "ETL", "JdbcAccess", "Retention",
        ]
        assert service.list_registered_type_names("enum") == ["TableType"]
        assert service.list_registered_type_names("struct") == ["Serde"]
        assert "Table" in service.list_registered_type_names("class")
        assert "string" not in service.list_registered_type_names()

    def test_duplicate_registration(self, service):
        """Test registering a type twice."""
        with pytest.raises(DuplicateType):
            service.register_types("class DB { name: string }")

    def test_syntax_error(self):
        """Test a syntax error in type text."""
        with pytest.raises(DSLSyntaxError):
            MetadataService().register_types("class { }")

    def test_audit_log(self, caplog):
        """Test that registration is audited."""
        with caplog.at_level("INFO", logger="typed_catalog.audit"):
            MetadataService().register_types("class DB {} trait PII {}")
        assert "register PII, DB" in caplog.text


class TestQueries:
    """Tests for query entry points."""

    def test_explain(self, service):
        """Test explaining a query plan."""
        assert service.explain_query("Table PII") == ["scan Table as Table", "filter is PII as PII"]

    def test_syntax_error(self, service):
        """Test a syntax error in query text."""
        with pytest.raises(DSLSyntaxError):
            service.execute_query("Table where")

    def test_prepared_query_is_reusable(self, warehouse, service):
        """Test executing one prepared query twice."""
        prepared = service.prepare_query("DB")
        assert len(service.executor.execute(prepared)) == 2
        service.create_entity(Entity.draft("DB", {"name": "Staging"}))
        assert len(service.executor.execute(prepared)) == 3


class TestLifecycle:
    """Tests for configuration and closing."""

    def test_journal_from_config(self, tmp_path):
        """Test opening a journal from the configured directory."""
        with MetadataService(CatalogConfig(journal_dir=tmp_path)) as service:
            assert isinstance(service.journal, JsonDirectoryJournal)
            service.register_types("class DB { name: string }")
        assert (tmp_path / JsonDirectoryJournal.TYPES_FILE).exists()

    def test_explicit_journal_wins(self, tmp_path, journal):
        """Test that a given journal overrides the configured one."""
        service = MetadataService(CatalogConfig(journal_dir=tmp_path), journal=journal)
        assert service.journal is journal

    def test_close_closes_journal(self, tmp_path):
        """Test that closing the service closes its journal."""
        service = MetadataService(CatalogConfig(journal_dir=tmp_path))
        service.close()
        assert service.journal._journal.closed
