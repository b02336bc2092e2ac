"""Parsing module for type and query DSLs."""

from typed_catalog.parsing.type_parser import TypeParser, parse_types
from typed_catalog.parsing.query_parser import (
    Loop,
    Query,
    QueryParser,
    SelectItem,
    Step,
    Where,
)

__all__ = [
    "Loop",
    "Query",
    "QueryParser",
    "SelectItem",
    "Step",
    "TypeParser",
    "Where",
    "parse_types",
]
