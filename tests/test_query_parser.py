"""Tests for the catalog query parser."""

import pytest

from typed_catalog.errors import DSLSyntaxError
from typed_catalog.parsing.query_lexer import QueryLexer
from typed_catalog.parsing.query_parser import (
    BinaryOp,
    Comparison,
    HasAttribute,
    Literal,
    LogicalOp,
    Loop,
    Not,
    Path,
    PathHasAttribute,
    QueryParser,
    Step,
    TraitTest,
    Where,
)


@pytest.fixture
def parser():
    p = QueryParser()
    p.build(debug=False, write_tables=False)
    return p


class TestQueryLexer:
    """Tests for the query lexer."""

    def test_tokenize_where(self):
        """Test tokenizing a where query."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize('DB where name = "Sales"')
        assert [t.type for t in tokens] == ["IDENTIFIER", "WHERE", "IDENTIFIER", "EQ", "STRING"]
        assert tokens[-1].value == "Sales"

    def test_keywords_are_case_insensitive(self):
        """Test that keywords ignore case."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize("Table WHERE x Select y withPath")
        assert [t.type for t in tokens] == ["IDENTIFIER", "WHERE", "IDENTIFIER", "SELECT", "IDENTIFIER", "WITHPATH"]

    def test_numbers(self):
        """Test tokenizing integers and floats."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize("1 2.5")
        assert [(t.type, t.value) for t in tokens] == [("INTEGER", 1), ("FLOAT", 2.5)]

    def test_backtick_identifier(self):
        """Test that a backtick name is not a keyword."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize("`select`")
        assert [(t.type, t.value) for t in tokens] == [("IDENTIFIER", "select")]

    def test_comments(self):
        """Test that comments produce no tokens."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize("DB -- all databases")
        assert [t.type for t in tokens] == ["IDENTIFIER"]

    def test_non_ascii_string(self):
        """Test tokenizing non-ASCII string literals."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize("name = \"Café Zoë\" or name = '東京'")
        assert [t.value for t in tokens if t.type == "STRING"] == ["Café Zoë", "東京"]

    def test_string_escapes(self):
        """Test backslash escapes in string literals."""
        lexer = QueryLexer()
        lexer.build()

        tokens = lexer.tokenize(r'"a\"b\\c\nd" ')
        assert tokens[0].value == 'a"b\\c\nd'


class TestSteps:
    """Tests for step and clause parsing."""

    def test_single_type(self, parser):
        """Test parsing a single step."""
        query = parser.parse("DB")
        assert query.clauses == [Step("DB", position=0)]
        assert query.selects == []
        assert not query.with_path

    def test_from_keyword(self, parser):
        """Test the optional from keyword."""
        query = parser.parse("from DB")
        assert query.clauses[0].name == "DB"

    def test_alias(self, parser):
        """Test a step alias."""
        query = parser.parse("Table as t")
        assert query.clauses[0].alias == "t"

    def test_trait_filter_step(self, parser):
        """Test a step with an alias and a trait filter."""
        query = parser.parse("Table as t isa Dimension")
        step = query.clauses[0]
        assert (step.name, step.alias, step.trait) == ("Table", "t", "Dimension")

    def test_is_keyword(self, parser):
        """Test is as a trait filter."""
        assert parser.parse("Table is Dimension").clauses[0].trait == "Dimension"

    def test_has_step(self, parser):
        """Test a step with a has filter."""
        step = parser.parse("Table has owner").clauses[0]
        assert step.has_attribute == "owner"

    def test_comma_and_juxtaposed_steps(self, parser):
        """Test that steps may be separated by commas or spaces."""
        a = parser.parse("Table, columns")
        b = parser.parse("Table columns")
        assert [s.name for s in a.clauses] == ["Table", "columns"]
        assert [s.name for s in b.clauses] == ["Table", "columns"]

    def test_where_clause(self, parser):
        """Test parsing a where clause."""
        query = parser.parse('DB where name = "Sales"')
        where = query.clauses[1]
        assert isinstance(where, Where)
        assert where.condition == Comparison("eq", Path(["name"]), Literal("Sales"))

    def test_where_then_step(self, parser):
        """Test a step after a where clause."""
        query = parser.parse('DB where name = "Sales" Table')
        assert [type(c) for c in query.clauses] == [Step, Where, Step]

    def test_loop(self, parser):
        """Test parsing a loop with all options."""
        query = parser.parse("Table loop (Process outputTables) 3 times as dest withPath")
        loop = query.clauses[1]
        assert isinstance(loop, Loop)
        assert [s.name for s in loop.body] == ["Process", "outputTables"]
        assert loop.times == 3
        assert loop.alias == "dest"
        assert query.with_path

    def test_loop_without_bound(self, parser):
        """Test parsing a loop without options."""
        loop = parser.parse("Table loop (Process outputTables)").clauses[1]
        assert loop.times is None
        assert loop.alias is None


class TestExpressions:
    """Tests for where and select expressions."""

    def condition(self, parser, text):
        return parser.parse(f"T where {text}").clauses[1].condition

    def test_comparison_operators(self, parser):
        """Test every comparison operator."""
        ops = {"=": "eq", "==": "eq", "!=": "neq", "<": "lt", "<=": "lte", ">": "gt", ">=": "gte"}
        for symbol, op in ops.items():
            assert self.condition(parser, f"a {symbol} 1").op == op

    def test_dotted_path(self, parser):
        """Test parsing a dotted path."""
        cond = self.condition(parser, 'db.name = "Sales"')
        assert cond.left == Path(["db", "name"])

    def test_and_binds_tighter_than_or(self, parser):
        """Test that and binds tighter than or."""
        cond = self.condition(parser, "a = 1 or b = 2 and c = 3")
        assert isinstance(cond, LogicalOp)
        assert cond.op == "or"
        assert cond.right.op == "and"

    def test_not(self, parser):
        """Test parsing not."""
        cond = self.condition(parser, "not a = 1")
        assert isinstance(cond, Not)
        assert isinstance(cond.operand, Comparison)

    def test_arithmetic_precedence(self, parser):
        """Test arithmetic operator precedence."""
        cond = self.condition(parser, "a + b * 2 > 10")
        assert cond.left == BinaryOp("+", Path(["a"]), BinaryOp("*", Path(["b"]), Literal(2)))

    def test_negative_literal(self, parser):
        """Test a negative number literal."""
        cond = self.condition(parser, "a > -5")
        assert cond.right == Literal(-5)

    def test_literals(self, parser):
        """Test boolean, null and string literals."""
        assert self.condition(parser, "a = true").right == Literal(True)
        assert self.condition(parser, "a = false").right == Literal(False)
        assert self.condition(parser, "a = null").right == Literal(None)
        assert self.condition(parser, "a = 'x'").right == Literal("x")

    def test_has(self, parser):
        """Test has on the current entity and on a path."""
        assert self.condition(parser, "has owner") == HasAttribute(Path(["owner"]))
        assert self.condition(parser, "db has owner") == PathHasAttribute(Path(["db"]), "owner")

    def test_trait_test(self, parser):
        """Test parsing a trait test."""
        assert self.condition(parser, "db is PII") == TraitTest(Path(["db"]), "PII")

    def test_text_round_trip(self, parser):
        """Test the text of a parsed condition."""
        cond = self.condition(parser, 'a = "x" and not b > 1')
        assert cond.text == '(a = "x" and not (b > 1))'


class TestProjections:
    """Tests for select clauses."""

    def test_select_columns(self, parser):
        """Test parsing select columns with an alias."""
        query = parser.parse("Table as t select t.name as table, owner")
        assert [item.column for item in query.selects[0]] == ["table", "owner"]

    def test_select_expression_column(self, parser):
        """Test the column name of a selected expression."""
        query = parser.parse("Table select retention * 2")
        assert query.selects[0][0].column == "retention * 2"

    def test_multiple_selects_are_kept(self, parser):
        """Test that every select clause is kept."""
        query = parser.parse("Table select name select owner")
        assert len(query.selects) == 2


class TestSyntaxErrors:
    """Tests for query syntax errors."""

    def test_error_position_and_expected(self, parser):
        """Test the position and expected tokens of an error."""
        text = "Table where = 1"
        with pytest.raises(DSLSyntaxError) as exc_info:
            parser.parse(text)
        assert exc_info.value.position == text.index("=")
        assert "IDENTIFIER" in exc_info.value.expected

    def test_unexpected_end(self, parser):
        """Test an error at the end of input."""
        with pytest.raises(DSLSyntaxError) as exc_info:
            parser.parse("Table where")
        assert exc_info.value.position == len("Table where")

    def test_empty_query(self, parser):
        """Test parsing an empty query."""
        with pytest.raises(DSLSyntaxError):
            parser.parse("   ")

    def test_illegal_character(self, parser):
        """Test an illegal character in a query."""
        with pytest.raises(DSLSyntaxError):
            parser.parse("Table where a = #")
