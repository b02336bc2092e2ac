"""Parser for the catalog query DSL.

A query is a sequence of clauses, an optional projection and an optional
``withPath`` marker::

    DB where name = "Reporting"
    Table as t, columns where t.name = "sales_fact" select t.name, name as column
    Table isa Dimension
    Table as src loop (LoadProcess outputTable) as dest withPath

The parser only builds the AST; names are resolved by the planner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

import ply.yacc as yacc

from typed_catalog.errors import DSLSyntaxError
from typed_catalog.parsing.query_lexer import QueryLexer
from typed_catalog.parsing.type_parser import expected_tokens

# ---- Expressions ----


@dataclass
class Literal:
    """A string, number, boolean or null constant."""

    value: Any

    @property
    def text(self) -> str:
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, str):
            escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return str(self.value)


@dataclass
class Path:
    """A dotted reference: an alias, a type name or an attribute chain."""

    parts: list[str]

    @property
    def text(self) -> str:
        return ".".join(self.parts)


@dataclass
class BinaryOp:
    """Arithmetic: ``+``, ``-``, ``*`` or ``/``."""

    op: str
    left: Expr
    right: Expr

    @property
    def text(self) -> str:
        return f"{_wrap(self.left)} {self.op} {_wrap(self.right)}"


@dataclass
class Comparison:
    """A comparison; ``op`` is one of eq, neq, lt, lte, gt, gte."""

    op: str
    left: Expr
    right: Expr

    @property
    def text(self) -> str:
        return f"{_wrap(self.left)} {COMPARISON_SYMBOLS[self.op]} {_wrap(self.right)}"


@dataclass
class HasAttribute:
    """``has path``: the attribute is set."""

    path: Path

    @property
    def text(self) -> str:
        return f"has {self.path.text}"


@dataclass
class PathHasAttribute:
    """``path has name``: the entity at ``path`` has attribute ``name`` set."""

    path: Path
    attribute: str

    @property
    def text(self) -> str:
        return f"{self.path.text} has {self.attribute}"


@dataclass
class TraitTest:
    """``path is Trait``: the entity at ``path`` carries the trait."""

    path: Path
    trait: str

    @property
    def text(self) -> str:
        return f"{self.path.text} is {self.trait}"


@dataclass
class LogicalOp:
    """``and`` / ``or``."""

    op: str
    left: Expr
    right: Expr

    @property
    def text(self) -> str:
        return f"({self.left.text} {self.op} {self.right.text})"


@dataclass
class Not:
    operand: Expr

    @property
    def text(self) -> str:
        return f"not {_wrap(self.operand)}"


Expr = Union[Literal, Path, BinaryOp, Comparison, HasAttribute, PathHasAttribute, TraitTest, LogicalOp, Not]

COMPARISON_SYMBOLS = {"eq": "=", "neq": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


def _wrap(expr: Expr) -> str:
    if isinstance(expr, (BinaryOp, Comparison)):
        return f"({expr.text})"
    return expr.text


# ---- Clauses ----


@dataclass
class Step:
    """A type, trait or attribute name, optionally aliased and filtered.

    ``Table as t isa Dimension`` gives ``Step("Table", "t", trait="Dimension")``;
    ``Table has owner`` gives ``Step("Table", has_attribute="owner")``.
    """

    name: str
    alias: str | None = None
    trait: str | None = None
    has_attribute: str | None = None
    position: int = 0


@dataclass
class Where:
    """``where condition``."""

    condition: Expr
    position: int = 0


@dataclass
class Loop:
    """``loop (clauses) [N times] [as alias]``."""

    body: list[Clause]
    times: int | None = None
    alias: str | None = None
    position: int = 0


Clause = Union[Step, Where, Loop]


@dataclass
class SelectItem:
    """A projected expression with its output column name."""

    expr: Expr
    alias: str | None = None

    @property
    def column(self) -> str:
        return self.alias if self.alias is not None else self.expr.text


@dataclass
class Query:
    """A parsed query."""

    clauses: list[Clause]
    selects: list[list[SelectItem]] = field(default_factory=list)
    with_path: bool = False


class QueryParser:
    """Parser for catalog queries."""

    tokens = QueryLexer.tokens

    # Operator precedence
    precedence = (
        ("left", "OR"),
        ("left", "AND"),
        ("right", "NOT"),
        ("nonassoc", "EQ", "NEQ", "LT", "LTE", "GT", "GTE"),
        ("left", "PLUS", "MINUS"),
        ("left", "STAR", "SLASH"),
        ("right", "UMINUS"),
    )

    def __init__(self) -> None:
        self.lexer = QueryLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore
        self._text = ""

    def p_query(self, p: yacc.YaccProduction) -> None:
        """query : clauses projections with_path"""
        p[0] = Query(clauses=p[1], selects=p[2], with_path=p[3])

    def p_empty(self, p: yacc.YaccProduction) -> None:
        """empty :"""
        p[0] = None

    def p_clauses_single(self, p: yacc.YaccProduction) -> None:
        """clauses : clause"""
        p[0] = [p[1]]

    def p_clauses_multiple(self, p: yacc.YaccProduction) -> None:
        """clauses : clauses clause
                   | clauses COMMA clause"""
        p[0] = p[1] + [p[len(p) - 1]]

    def p_clause_from(self, p: yacc.YaccProduction) -> None:
        """clause : FROM step"""
        p[0] = p[2]

    def p_clause_step(self, p: yacc.YaccProduction) -> None:
        """clause : step"""
        p[0] = p[1]

    def p_clause_where(self, p: yacc.YaccProduction) -> None:
        """clause : WHERE expr"""
        p[0] = Where(condition=p[2], position=p.lexpos(1))

    def p_clause_loop(self, p: yacc.YaccProduction) -> None:
        """clause : LOOP LPAREN clauses RPAREN loop_times alias_opt"""
        p[0] = Loop(body=p[3], times=p[5], alias=p[6], position=p.lexpos(1))

    def p_loop_times(self, p: yacc.YaccProduction) -> None:
        """loop_times : INTEGER TIMES
                      | empty"""
        p[0] = p[1] if len(p) == 3 else None

    def p_step(self, p: yacc.YaccProduction) -> None:
        """step : IDENTIFIER alias_opt"""
        p[0] = Step(name=p[1], alias=p[2], position=p.lexpos(1))

    def p_step_trait(self, p: yacc.YaccProduction) -> None:
        """step : IDENTIFIER alias_opt IS IDENTIFIER
                | IDENTIFIER alias_opt ISA IDENTIFIER"""
        p[0] = Step(name=p[1], alias=p[2], trait=p[4], position=p.lexpos(1))

    def p_step_has(self, p: yacc.YaccProduction) -> None:
        """step : IDENTIFIER alias_opt HAS IDENTIFIER"""
        p[0] = Step(name=p[1], alias=p[2], has_attribute=p[4], position=p.lexpos(1))

    def p_alias_opt(self, p: yacc.YaccProduction) -> None:
        """alias_opt : AS IDENTIFIER
                     | empty"""
        p[0] = p[2] if len(p) == 3 else None

    # ---- Projections ----

    def p_projections_empty(self, p: yacc.YaccProduction) -> None:
        """projections : empty"""
        p[0] = []

    def p_projections(self, p: yacc.YaccProduction) -> None:
        """projections : projections SELECT select_list"""
        p[0] = p[1] + [p[3]]

    def p_select_list_single(self, p: yacc.YaccProduction) -> None:
        """select_list : select_item"""
        p[0] = [p[1]]

    def p_select_list_multiple(self, p: yacc.YaccProduction) -> None:
        """select_list : select_list COMMA select_item"""
        p[0] = p[1] + [p[3]]

    def p_select_item(self, p: yacc.YaccProduction) -> None:
        """select_item : expr alias_opt"""
        p[0] = SelectItem(expr=p[1], alias=p[2])

    def p_with_path(self, p: yacc.YaccProduction) -> None:
        """with_path : WITHPATH
                     | empty"""
        p[0] = p[1] is not None

    # ---- Expressions ----

    def p_expr_logical(self, p: yacc.YaccProduction) -> None:
        """expr : expr AND expr
                | expr OR expr"""
        p[0] = LogicalOp(op=p[2].lower(), left=p[1], right=p[3])

    def p_expr_not(self, p: yacc.YaccProduction) -> None:
        """expr : NOT expr"""
        p[0] = Not(operand=p[2])

    def p_expr_comparison(self, p: yacc.YaccProduction) -> None:
        """expr : expr EQ expr
                | expr NEQ expr
                | expr LT expr
                | expr LTE expr
                | expr GT expr
                | expr GTE expr"""
        ops = {"=": "eq", "==": "eq", "!=": "neq", "<": "lt", "<=": "lte", ">": "gt", ">=": "gte"}
        p[0] = Comparison(op=ops[p[2]], left=p[1], right=p[3])

    def p_expr_arithmetic(self, p: yacc.YaccProduction) -> None:
        """expr : expr PLUS expr
                | expr MINUS expr
                | expr STAR expr
                | expr SLASH expr"""
        p[0] = BinaryOp(op=p[2], left=p[1], right=p[3])

    def p_expr_negate(self, p: yacc.YaccProduction) -> None:
        """expr : MINUS expr %prec UMINUS"""
        operand = p[2]
        if isinstance(operand, Literal) and isinstance(operand.value, (int, float)) and not isinstance(operand.value, bool):
            p[0] = Literal(-operand.value)
        else:
            p[0] = BinaryOp(op="-", left=Literal(0), right=operand)

    def p_expr_group(self, p: yacc.YaccProduction) -> None:
        """expr : LPAREN expr RPAREN"""
        p[0] = p[2]

    def p_expr_has(self, p: yacc.YaccProduction) -> None:
        """expr : HAS path"""
        p[0] = HasAttribute(path=p[2])

    def p_expr_path_has(self, p: yacc.YaccProduction) -> None:
        """expr : path HAS IDENTIFIER"""
        p[0] = PathHasAttribute(path=p[1], attribute=p[3])

    def p_expr_trait(self, p: yacc.YaccProduction) -> None:
        """expr : path IS IDENTIFIER
                | path ISA IDENTIFIER"""
        p[0] = TraitTest(path=p[1], trait=p[3])

    def p_expr_path(self, p: yacc.YaccProduction) -> None:
        """expr : path"""
        p[0] = p[1]

    def p_expr_literal(self, p: yacc.YaccProduction) -> None:
        """expr : STRING
                | INTEGER
                | FLOAT"""
        p[0] = Literal(p[1])

    def p_expr_true(self, p: yacc.YaccProduction) -> None:
        """expr : TRUE"""
        p[0] = Literal(True)

    def p_expr_false(self, p: yacc.YaccProduction) -> None:
        """expr : FALSE"""
        p[0] = Literal(False)

    def p_expr_null(self, p: yacc.YaccProduction) -> None:
        """expr : NULL"""
        p[0] = Literal(None)

    def p_path_single(self, p: yacc.YaccProduction) -> None:
        """path : IDENTIFIER"""
        p[0] = Path(parts=[p[1]])

    def p_path_dotted(self, p: yacc.YaccProduction) -> None:
        """path : path DOT IDENTIFIER"""
        p[0] = Path(parts=p[1].parts + [p[3]])

    def p_error(self, p: yacc.YaccProduction) -> None:
        expected = expected_tokens(self.parser)
        if p:
            raise DSLSyntaxError(f"Syntax error at '{p.value}'", p.lexpos, expected)
        raise DSLSyntaxError("Syntax error at end of input", len(self._text), expected)

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, start="query", **kwargs)

    def parse(self, data: str) -> Query:
        """Parse a query string.

        Raises:
            DSLSyntaxError: With the failing position and the expected tokens.
        """
        if self.parser is None:
            self.build(debug=False, write_tables=False)
        self._text = data
        if not data.strip():
            raise DSLSyntaxError("Empty query", 0, ["IDENTIFIER"])
        return self.parser.parse(data, lexer=self.lexer.lexer)
