"""Tests for the type definition DSL."""

import pytest

from typed_catalog.errors import DSLSyntaxError
from typed_catalog.parsing.type_lexer import TypeLexer
from typed_catalog.parsing.type_parser import TypeParser, parse_types
from typed_catalog.types import Multiplicity


@pytest.fixture
def parser():
    p = TypeParser()
    p.build(debug=False, write_tables=False)
    return p


class TestTypeLexer:
    """Tests for the type definition lexer."""

    def test_tokenize_class(self):
        """Test tokenizing a class definition."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("class Table extends DataSet { db: DB required }")
        token_types = [t.type for t in tokens]

        assert token_types == [
            "CLASS", "IDENTIFIER", "EXTENDS", "IDENTIFIER", "LBRACE",
            "IDENTIFIER", "COLON", "IDENTIFIER", "REQUIRED", "RBRACE",
        ]

    def test_comments_are_ignored(self):
        """Test that comments produce no tokens."""
        lexer = TypeLexer()
        lexer.build()

        tokens = lexer.tokenize("# a comment\ntrait PII {}")
        assert [t.type for t in tokens] == ["TRAIT", "IDENTIFIER", "LBRACE", "RBRACE"]

    def test_illegal_character(self):
        """Test that an illegal character raises."""
        lexer = TypeLexer()
        lexer.build()

        with pytest.raises(DSLSyntaxError):
            lexer.tokenize("class DB { name: string; }")


class TestTypeParser:
    """Tests for parsing type definitions."""

    def test_parse_class(self, parser):
        """Test parsing a class with attributes."""
        types_def = parser.parse("class DB { name: string required, description: string }")

        assert len(types_def.classes) == 1
        db = types_def.classes[0]
        assert db.name == "DB"
        assert db.super_types == []
        assert [(a.name, a.data_type_name, a.multiplicity) for a in db.attributes] == [
            ("name", "string", Multiplicity.REQUIRED),
            ("description", "string", Multiplicity.OPTIONAL),
        ]

    def test_parse_extends(self, parser):
        """Test parsing several supertypes."""
        types_def = parser.parse("class Table extends DataSet, Asset { }")
        assert types_def.classes[0].super_types == ["DataSet", "Asset"]

    def test_parse_empty_trait(self, parser):
        """Test parsing a trait without attributes."""
        types_def = parser.parse("trait PII {}")
        assert types_def.traits[0].name == "PII"
        assert types_def.traits[0].attributes == []

    def test_parse_enum(self, parser):
        """Test parsing enum values with an explicit ordinal."""
        types_def = parser.parse("enum TableType { MANAGED = 1, EXTERNAL, }")
        assert types_def.enums[0].values == [("MANAGED", 1), "EXTERNAL"]

    def test_parse_struct(self, parser):
        """Test parsing a struct with a trailing comma."""
        types_def = parser.parse("struct Serde { name: string, serializationLib: string, }")
        assert [a.name for a in types_def.structs[0].attributes] == ["name", "serializationLib"]

    def test_array_defaults_to_collection(self, parser):
        """Test that array attributes default to COLLECTION."""
        types_def = parser.parse("class Table { columns: Column[] composite, tags: array<string> }")
        columns, tags = types_def.classes[0].attributes
        assert columns.data_type_name == "array<Column>"
        assert columns.multiplicity is Multiplicity.COLLECTION
        assert columns.is_composite
        assert tags.data_type_name == "array<string>"

    def test_array_can_be_required(self, parser):
        """Test a required array attribute."""
        types_def = parser.parse("class Group { members: string[] required }")
        assert types_def.classes[0].attributes[0].multiplicity is Multiplicity.REQUIRED

    def test_map_type(self, parser):
        """Test parsing a nested map type."""
        types_def = parser.parse("class Table { parameters: map<string, array<int>> }")
        assert types_def.classes[0].attributes[0].data_type_name == "map<string,array<int>>"

    def test_reverse_attribute(self, parser):
        """Test parsing a reverse attribute name."""
        types_def = parser.parse("class Table { db: DB required reverse tables }")
        db = types_def.classes[0].attributes[0]
        assert db.reverse_attribute_name == "tables"
        assert db.multiplicity is Multiplicity.REQUIRED

    def test_statements_grouped_by_kind(self, parser):
        """Test that definitions are grouped by kind."""
        types_def = parser.parse("""
            class Table { db: DB }
            trait PII {}
            enum Kind { A }
            class DB {}
            struct Serde {}
        """)
        assert [c.name for c in types_def.classes] == ["Table", "DB"]
        assert [t.name for t in types_def.traits] == ["PII"]
        assert [e.name for e in types_def.enums] == ["Kind"]
        assert [s.name for s in types_def.structs] == ["Serde"]

    def test_empty_input(self, parser):
        """Test parsing empty input."""
        assert parser.parse("").all_specs() == []

    def test_parser_is_reusable(self, parser):
        """Test parsing twice with one parser."""
        parser.parse("class A {}")
        assert parser.parse("class B {}").classes[0].name == "B"

    def test_module_level_parse(self):
        """Test the module-level parse_types helper."""
        assert parse_types("trait PII {}").traits[0].name == "PII"


class TestTypeParserErrors:
    """Tests for syntax errors in type definitions."""

    def test_missing_colon(self, parser):
        """Test the position and expected tokens of a syntax error."""
        with pytest.raises(DSLSyntaxError) as exc_info:
            parser.parse("class DB { name string }")
        assert "COLON" in exc_info.value.expected
        assert exc_info.value.position == "class DB { name string }".index("string")

    def test_unterminated_body(self, parser):
        """Test an error at the end of input."""
        with pytest.raises(DSLSyntaxError) as exc_info:
            parser.parse("class DB { name: string")
        assert "end of input" in str(exc_info.value)

    def test_syntax_error_is_builtin_syntax_error(self, parser):
        """Test that DSL errors are also SyntaxErrors."""
        with pytest.raises(SyntaxError):
            parser.parse("class { }")
