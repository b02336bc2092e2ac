"""Parser for the type definition DSL.

Example::

    enum TableKind { MANAGED = 1, EXTERNAL }

    struct Serde { name: string, serializationLib: string }

    trait Dimension {}
    trait PII {}

    class DB { name: string required, description: string }
    class Table extends DataSet {
        db: DB required reverse tables,
        columns: Column[] composite,
        parameters: map<string,string>
    }

Array-typed attributes default to the COLLECTION multiplicity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import ply.yacc as yacc

from typed_catalog.errors import DSLSyntaxError
from typed_catalog.parsing.type_lexer import TypeLexer
from typed_catalog.types import (
    AttributeDefinition,
    ClassSpec,
    EnumSpec,
    Multiplicity,
    StructSpec,
    TraitSpec,
    TypesDef,
    array_type_name,
    map_type_name,
)


@dataclass
class TypeRef:
    """Reference to a type, possibly as an array."""

    name: str
    is_array: bool = False


@dataclass
class AttributeModifiers:
    """Keywords following an attribute's type."""

    multiplicity: Multiplicity | None = None
    is_composite: bool = False
    reverse: str | None = None


@dataclass
class _Body:
    attributes: list[AttributeDefinition] = field(default_factory=list)


def expected_tokens(parser: yacc.LRParser) -> list[str]:
    """Token names acceptable in the parser's current state."""
    names = [name if name != "$end" else "end of input" for name in parser.action[parser.state]]
    return sorted(names)


class TypeParser:
    """Parser for the type definition DSL."""

    tokens = TypeLexer.tokens

    def __init__(self) -> None:
        self.lexer = TypeLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore
        self._text = ""

    def p_schema(self, p: yacc.YaccProduction) -> None:
        """schema : statement_list"""
        p[0] = p[1]

    def p_schema_empty(self, p: yacc.YaccProduction) -> None:
        """schema : empty"""
        p[0] = []

    def p_empty(self, p: yacc.YaccProduction) -> None:
        """empty :"""
        p[0] = None

    def p_statement_list_single(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement"""
        p[0] = [p[1]]

    def p_statement_list_multiple(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement_list statement"""
        p[0] = p[1] + [p[2]]

    def p_statement(self, p: yacc.YaccProduction) -> None:
        """statement : enum_def
                     | struct_def
                     | trait_def
                     | class_def"""
        p[0] = p[1]

    def p_enum_def(self, p: yacc.YaccProduction) -> None:
        """enum_def : ENUM IDENTIFIER LBRACE enum_value_list RBRACE
                    | ENUM IDENTIFIER LBRACE enum_value_list COMMA RBRACE"""
        p[0] = EnumSpec(name=p[2], values=p[4])

    def p_enum_value_list_single(self, p: yacc.YaccProduction) -> None:
        """enum_value_list : enum_value"""
        p[0] = [p[1]]

    def p_enum_value_list_multiple(self, p: yacc.YaccProduction) -> None:
        """enum_value_list : enum_value_list COMMA enum_value"""
        p[0] = p[1] + [p[3]]

    def p_enum_value_bare(self, p: yacc.YaccProduction) -> None:
        """enum_value : IDENTIFIER"""
        p[0] = p[1]

    def p_enum_value_ordinal(self, p: yacc.YaccProduction) -> None:
        """enum_value : IDENTIFIER EQUALS INTEGER"""
        p[0] = (p[1], p[3])

    def p_struct_def(self, p: yacc.YaccProduction) -> None:
        """struct_def : STRUCT IDENTIFIER body"""
        p[0] = StructSpec(name=p[2], attributes=p[3].attributes)

    def p_trait_def(self, p: yacc.YaccProduction) -> None:
        """trait_def : TRAIT IDENTIFIER supers body"""
        p[0] = TraitSpec(name=p[2], attributes=p[4].attributes, super_types=p[3])

    def p_class_def(self, p: yacc.YaccProduction) -> None:
        """class_def : CLASS IDENTIFIER supers body"""
        p[0] = ClassSpec(name=p[2], attributes=p[4].attributes, super_types=p[3])

    def p_supers(self, p: yacc.YaccProduction) -> None:
        """supers : EXTENDS name_list
                  | empty"""
        p[0] = p[2] if len(p) == 3 else []

    def p_name_list_single(self, p: yacc.YaccProduction) -> None:
        """name_list : IDENTIFIER"""
        p[0] = [p[1]]

    def p_name_list_multiple(self, p: yacc.YaccProduction) -> None:
        """name_list : name_list COMMA IDENTIFIER"""
        p[0] = p[1] + [p[3]]

    def p_body(self, p: yacc.YaccProduction) -> None:
        """body : LBRACE attribute_list RBRACE
                | LBRACE attribute_list COMMA RBRACE"""
        p[0] = _Body(attributes=p[2])

    def p_body_empty(self, p: yacc.YaccProduction) -> None:
        """body : LBRACE RBRACE"""
        p[0] = _Body()

    def p_attribute_list_single(self, p: yacc.YaccProduction) -> None:
        """attribute_list : attribute"""
        p[0] = [p[1]]

    def p_attribute_list_multiple(self, p: yacc.YaccProduction) -> None:
        """attribute_list : attribute_list COMMA attribute"""
        p[0] = p[1] + [p[3]]

    def p_attribute(self, p: yacc.YaccProduction) -> None:
        """attribute : IDENTIFIER COLON type_ref modifiers"""
        type_ref: TypeRef = p[3]
        mods: AttributeModifiers = p[4]
        multiplicity = mods.multiplicity
        if multiplicity is None:
            multiplicity = Multiplicity.COLLECTION if type_ref.is_array else Multiplicity.OPTIONAL
        p[0] = AttributeDefinition(
            name=p[1],
            data_type_name=type_ref.name,
            multiplicity=multiplicity,
            is_composite=mods.is_composite,
            reverse_attribute_name=mods.reverse,
        )

    def p_type_ref_simple(self, p: yacc.YaccProduction) -> None:
        """type_ref : IDENTIFIER"""
        p[0] = TypeRef(name=p[1])

    def p_type_ref_array(self, p: yacc.YaccProduction) -> None:
        """type_ref : type_ref LBRACKET RBRACKET"""
        p[0] = TypeRef(name=array_type_name(p[1].name), is_array=True)

    def p_type_ref_array_generic(self, p: yacc.YaccProduction) -> None:
        """type_ref : ARRAY LT type_ref GT"""
        p[0] = TypeRef(name=array_type_name(p[3].name), is_array=True)

    def p_type_ref_map(self, p: yacc.YaccProduction) -> None:
        """type_ref : MAP LT type_ref COMMA type_ref GT"""
        p[0] = TypeRef(name=map_type_name(p[3].name, p[5].name))

    def p_modifiers_empty(self, p: yacc.YaccProduction) -> None:
        """modifiers : empty"""
        p[0] = AttributeModifiers()

    def p_modifiers_multiplicity(self, p: yacc.YaccProduction) -> None:
        """modifiers : modifiers REQUIRED
                     | modifiers OPTIONAL
                     | modifiers COLLECTION"""
        p[0] = p[1]
        p[0].multiplicity = Multiplicity(p[2])

    def p_modifiers_composite(self, p: yacc.YaccProduction) -> None:
        """modifiers : modifiers COMPOSITE"""
        p[0] = p[1]
        p[0].is_composite = True

    def p_modifiers_reverse(self, p: yacc.YaccProduction) -> None:
        """modifiers : modifiers REVERSE IDENTIFIER"""
        p[0] = p[1]
        p[0].reverse = p[3]

    def p_error(self, p: yacc.YaccProduction) -> None:
        expected = expected_tokens(self.parser)
        if p:
            raise DSLSyntaxError(f"Syntax error at '{p.value}' (line {p.lineno})", p.lexpos, expected)
        raise DSLSyntaxError("Syntax error at end of input", len(self._text), expected)

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, **kwargs)

    def parse(self, data: str) -> TypesDef:
        """Parse type definitions into a TypesDef ready for registration."""
        if self.parser is None:
            self.build(debug=False, write_tables=False)
        self._text = data
        self.lexer.lexer.lineno = 1
        specs = self.parser.parse(data, lexer=self.lexer.lexer) or []

        types_def = TypesDef()
        for spec in specs:
            if isinstance(spec, EnumSpec):
                types_def.enums.append(spec)
            elif isinstance(spec, StructSpec):
                types_def.structs.append(spec)
            elif isinstance(spec, TraitSpec):
                types_def.traits.append(spec)
            else:
                types_def.classes.append(spec)
        return types_def


def parse_types(text: str) -> TypesDef:
    """Parse type definition text with a fresh parser."""
    return TypeParser().parse(text)
