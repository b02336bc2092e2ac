"""Query planner: type-checks a parsed query against the catalog and orders it.

Every step of a query resolves, in order, to a trait, a class type or a
reference attribute of the current type. A class step after another step
joins through a forward reference attribute, else through the first
attribute of the new type that points back; with no relation it starts an
independent segment whose rows are unioned with the earlier ones.

Names in expressions resolve against the step bindings first (an alias,
else the step's type or attribute name; the latest binding wins) and
then as attributes of the current step.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from typed_catalog.catalog import TypeCatalog
from typed_catalog.errors import DuplicateProjection, QueryError, TypeMismatch, UnresolvedIdentifier
from typed_catalog.parsing.query_parser import (
    BinaryOp,
    Comparison,
    Expr,
    HasAttribute,
    Literal,
    LogicalOp,
    Loop,
    Not,
    Path,
    PathHasAttribute,
    Query,
    SelectItem,
    Step,
    TraitTest,
    Where,
)
from typed_catalog.types import (
    AttributeInfo,
    MapTypeDefinition,
    StructTypeDefinition,
    TypeDefinition,
    type_category,
)

logger = logging.getLogger(__name__)


class QueryState(enum.Enum):
    """Lifecycle of one query."""

    PARSED = "parsed"
    TYPE_CHECKED = "type_checked"
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---- Bound expressions ----


@dataclass
class BoundPath:
    """A path resolved against the catalog.

    ``binding`` names the frame binding the path starts from; None means the
    current step's entity. ``trait`` is set when the start is a trait binding,
    so the first attribute is read from the attached trait instance.
    """

    text: str
    binding: str | None
    attributes: list[str]
    category: str
    many: bool = False
    trait: str | None = None
    # Per attribute: (source type, forward attribute) for reverse attributes, else None.
    reverse: list[tuple[str, str] | None] = field(default_factory=list)


# ---- Plan operators ----


@dataclass
class ScanClass:
    """All entities of a class, including subtypes."""

    type_name: str
    binding: str

    def describe(self) -> str:
        return f"scan {self.type_name} as {self.binding}"


@dataclass
class ScanTrait:
    """All entities carrying a trait, across every class."""

    trait: str
    binding: str

    def describe(self) -> str:
        return f"scan trait {self.trait} as {self.binding}"


@dataclass
class FollowReference:
    """Follow a reference attribute (forward or reverse) of the current entity."""

    attribute: AttributeInfo
    target_type: str
    binding: str

    def describe(self) -> str:
        return f"follow {self.attribute.defined_in}.{self.attribute.name} to {self.target_type} as {self.binding}"


@dataclass
class ReverseJoin:
    """Entities of ``source_type`` whose ``attribute`` points at the current entity."""

    source_type: str
    attribute: str
    binding: str

    def describe(self) -> str:
        return f"join {self.source_type}.{self.attribute} as {self.binding}"


@dataclass
class TraitFilter:
    trait: str
    binding: str | None = None

    def describe(self) -> str:
        alias = f" as {self.binding}" if self.binding else ""
        return f"filter is {self.trait}{alias}"


@dataclass
class HasFilter:
    path: BoundPath

    def describe(self) -> str:
        return f"filter has {self.path.text}"


@dataclass
class Filter:
    """A where condition over bound expressions."""

    condition: Any
    text: str
    depends_on: frozenset[str] = frozenset()
    uses_current: bool = False

    def describe(self) -> str:
        return f"filter {self.text}"


@dataclass
class LoopOp:
    """Repeat ``body`` from each entity, emitting every newly reached entity."""

    body: list[Any]
    times: int | None
    binding: str | None

    def describe(self) -> str:
        inner = "; ".join(op.describe() for op in self.body)
        bound = f" {self.times} times" if self.times is not None else ""
        alias = f" as {self.binding}" if self.binding else ""
        return f"loop ({inner}){bound}{alias}"


Operator = Any


@dataclass
class Segment:
    """An independent pipeline; the rows of all segments are unioned."""

    operators: list[Operator] = field(default_factory=list)
    result_type: str | None = None


@dataclass
class Projection:
    column: str
    expr: Any


@dataclass
class PreparedQuery:
    """A type-checked, planned query ready for execution."""

    text: str
    query: Query
    segments: list[Segment] = field(default_factory=list)
    projections: list[Projection] = field(default_factory=list)
    with_path: bool = False
    default_attributes: list[str] = field(default_factory=list)
    state: QueryState = QueryState.PARSED

    @property
    def columns(self) -> list[str]:
        """Output column names, or the default row columns when nothing is projected."""
        if self.projections:
            columns = [p.column for p in self.projections]
        else:
            columns = ["_guid", "_type", *self.default_attributes]
        if self.with_path:
            columns.append("_path")
        return columns

    def explain(self) -> list[str]:
        """Describe the plan, one line per operator."""
        lines: list[str] = []
        for i, segment in enumerate(self.segments):
            if i:
                lines.append("union")
            lines.extend(op.describe() for op in segment.operators)
        if self.projections:
            lines.append("select " + ", ".join(p.column for p in self.projections))
        return lines


# ---- Planning ----


@dataclass
class _Binding:
    type_name: str
    kind: str  # "class" or "trait"


@dataclass
class _Scope:
    current: str | None = None
    current_kind: str = "class"
    bindings: dict[str, _Binding] = field(default_factory=dict)
    operators: list[Operator] = field(default_factory=list)
    in_loop: bool = False


class QueryPlanner:
    """Turns a parsed query into a PreparedQuery."""

    def __init__(self, catalog: TypeCatalog) -> None:
        self.catalog = catalog

    def prepare(self, text: str, query: Query) -> PreparedQuery:
        """Type-check and plan a parsed query.

        Raises:
            UnresolvedIdentifier: A type, trait, alias or attribute name does not resolve.
            TypeMismatch: Incompatible operands, or a loop body that does not
                return its start type.
            DuplicateProjection: More than one select clause.
        """
        prepared = PreparedQuery(text=text, query=query, with_path=query.with_path)
        if len(query.selects) > 1:
            raise DuplicateProjection("Only one select clause is allowed per query")

        segments: list[Segment] = []
        scope: _Scope | None = None
        for clause in query.clauses:
            if isinstance(clause, Step):
                new_scope = self._step(clause, scope)
                if new_scope is not scope:
                    if scope is not None:
                        segments.append(self._finish(scope))
                    scope = new_scope
            elif scope is None:
                raise QueryError("A query must start with a type or trait name")
            elif isinstance(clause, Where):
                scope.operators.append(self._where(clause, scope))
            else:
                self._loop(clause, scope)
        assert scope is not None
        projections = [self._projection(item, scope) for item in (query.selects[0] if query.selects else [])]
        segments.append(self._finish(scope))
        prepared.state = QueryState.TYPE_CHECKED

        columns = [p.column for p in projections]
        duplicates = {c for c in columns if columns.count(c) > 1}
        if duplicates:
            raise DuplicateProjection(f"Column(s) projected twice: {', '.join(sorted(duplicates))}")
        prepared.segments = [replace(s, operators=self._push_down(s.operators)) for s in segments]
        prepared.projections = projections
        result_types = {s.result_type for s in segments}
        if len(result_types) == 1 and None not in result_types:
            td = self.catalog.get_class(result_types.pop())  # type: ignore[arg-type]
            if td is not None:
                prepared.default_attributes = td.attribute_names
        prepared.state = QueryState.PLANNED
        logger.debug(f"Planned {text!r}: {'; '.join(prepared.explain())}")
        return prepared

    def _finish(self, scope: _Scope) -> Segment:
        result = scope.current if scope.current_kind == "class" else None
        return Segment(operators=scope.operators, result_type=result)

    # ---- Steps ----

    def _step(self, step: Step, scope: _Scope | None) -> _Scope:
        """Resolve one step; returns a new scope when the step starts a segment."""
        name = step.name
        binding = step.alias or name
        if scope is None or (scope.current_kind == "trait" and self.catalog.get_class(name) is not None):
            scope = self._source(step)
        elif self.catalog.get_trait(name) is not None:
            scope.operators.append(TraitFilter(name, binding))
            scope.bindings[binding] = _Binding(name, "trait")
        elif self.catalog.get_class(name) is not None:
            if not self._join(step, scope):
                if scope.in_loop:
                    raise TypeMismatch(f"'{name}' is not reachable from '{scope.current}' inside a loop")
                scope = self._source(step)
        else:
            attr = None
            if scope.current_kind == "class":
                attr = self.catalog.attribute_of(scope.current, name)  # type: ignore[arg-type]
            if attr is None:
                raise UnresolvedIdentifier(name, f"'{scope.current}'")
            if not attr.is_reference:
                raise TypeMismatch(f"'{scope.current}.{name}' is not a reference attribute")
            target = attr.element_type.name
            scope.operators.append(FollowReference(attr, target, binding))
            scope.current = target
            scope.bindings[binding] = _Binding(target, "class")

        self._step_filters(step, scope)
        return scope

    def _source(self, step: Step) -> _Scope:
        name = step.name
        binding = step.alias or name
        scope = _Scope()
        if self.catalog.get_trait(name) is not None:
            scope.operators.append(ScanTrait(name, binding))
            scope.current, scope.current_kind = name, "trait"
            scope.bindings[binding] = _Binding(name, "trait")
        elif self.catalog.get_class(name) is not None:
            scope.operators.append(ScanClass(name, binding))
            scope.current = name
            scope.bindings[binding] = _Binding(name, "class")
        else:
            raise UnresolvedIdentifier(name, "query")
        return scope

    def _join(self, step: Step, scope: _Scope) -> bool:
        name = step.name
        binding = step.alias or name
        current = scope.current
        assert current is not None
        attr = self.catalog.reference_attribute(current, name)
        if attr is not None:
            scope.operators.append(FollowReference(attr, name, binding))
        else:
            back = self.catalog.referencing_attribute(current, name)
            if back is None:
                return False
            scope.operators.append(ReverseJoin(name, back.name, binding))
        scope.current = name
        scope.bindings[binding] = _Binding(name, "class")
        return True

    def _step_filters(self, step: Step, scope: _Scope) -> None:
        if step.trait is not None:
            if self.catalog.get_trait(step.trait) is None:
                raise UnresolvedIdentifier(step.trait, "trait filter")
            scope.operators.append(TraitFilter(step.trait))
        if step.has_attribute is not None:
            path = self._bind_path(Path([step.has_attribute]), _Scope(scope.current, scope.current_kind), set(), [False])
            scope.operators.append(HasFilter(path))

    # ---- Loops ----

    def _loop(self, loop: Loop, scope: _Scope) -> None:
        if scope.current_kind != "class":
            raise TypeMismatch("A loop must start from a class step")
        start = scope.current
        assert start is not None
        body = _Scope(current=start, bindings=dict(scope.bindings), in_loop=True)
        for clause in loop.body:
            if isinstance(clause, Step):
                self._step(clause, body)
            elif isinstance(clause, Where):
                body.operators.append(self._where(clause, body))
            else:
                raise QueryError("Loops cannot be nested")
        end = body.current
        if end is None or not (self.catalog.is_subtype(end, start) or self.catalog.is_subtype(start, end)):
            raise TypeMismatch(f"Loop body returns '{end}' but starts from '{start}'")
        scope.operators.append(LoopOp(body=body.operators, times=loop.times, binding=loop.alias))
        if loop.alias:
            scope.bindings[loop.alias] = _Binding(start, "class")

    # ---- Expressions ----

    def _where(self, where: Where, scope: _Scope) -> Filter:
        refs: set[str] = set()
        uses_current = [False]
        condition, category = self._bind(where.condition, scope, refs, uses_current)
        if category != "boolean":
            raise TypeMismatch(f"where condition must be boolean, got {category}: {where.condition.text}")
        return Filter(
            condition=condition,
            text=where.condition.text,
            depends_on=frozenset(refs),
            uses_current=uses_current[0],
        )

    def _projection(self, item: SelectItem, scope: _Scope) -> Projection:
        expr, _ = self._bind(item.expr, scope, set(), [False])
        return Projection(column=item.column, expr=expr)

    def _bind(self, expr: Expr, scope: _Scope, refs: set[str], uses_current: list[bool]) -> tuple[Any, str]:
        """Resolve names in an expression; returns (bound expression, category)."""
        if isinstance(expr, Literal):
            return expr, _literal_category(expr.value)
        if isinstance(expr, Path):
            bound = self._bind_path(expr, scope, refs, uses_current)
            return bound, bound.category
        if isinstance(expr, BinaryOp):
            left, lc = self._bind(expr.left, scope, refs, uses_current)
            right, rc = self._bind(expr.right, scope, refs, uses_current)
            self._check_single(left, expr)
            self._check_single(right, expr)
            if lc == rc == "numeric" or (expr.op == "+" and lc == rc == "string"):
                return replace(expr, left=left, right=right), lc
            raise TypeMismatch(f"Cannot apply '{expr.op}' to {lc} and {rc}: {expr.text}")
        if isinstance(expr, Comparison):
            left, lc = self._bind(expr.left, scope, refs, uses_current)
            right, rc = self._bind(expr.right, scope, refs, uses_current)
            if not _comparable(lc, rc, expr.op):
                raise TypeMismatch(f"Cannot compare {lc} with {rc}: {expr.text}")
            return replace(expr, left=left, right=right), "boolean"
        if isinstance(expr, HasAttribute):
            return replace(expr, path=self._bind_path(expr.path, scope, refs, uses_current)), "boolean"
        if isinstance(expr, PathHasAttribute):
            target = Path(expr.path.parts + [expr.attribute])
            return HasAttribute(path=self._bind_path(target, scope, refs, uses_current)), "boolean"  # type: ignore[arg-type]
        if isinstance(expr, TraitTest):
            path = self._bind_path(expr.path, scope, refs, uses_current)
            if path.category != "reference":
                raise TypeMismatch(f"'{expr.path.text}' is not an entity; cannot test for trait {expr.trait}")
            if self.catalog.get_trait(expr.trait) is None:
                raise UnresolvedIdentifier(expr.trait, "trait test")
            return replace(expr, path=path), "boolean"
        if isinstance(expr, LogicalOp):
            left, lc = self._bind(expr.left, scope, refs, uses_current)
            right, rc = self._bind(expr.right, scope, refs, uses_current)
            if lc != "boolean" or rc != "boolean":
                raise TypeMismatch(f"'{expr.op}' needs boolean operands: {expr.text}")
            return replace(expr, left=left, right=right), "boolean"
        if isinstance(expr, Not):
            operand, oc = self._bind(expr.operand, scope, refs, uses_current)
            if oc != "boolean":
                raise TypeMismatch(f"'not' needs a boolean operand: {expr.text}")
            return replace(expr, operand=operand), "boolean"
        raise TypeMismatch(f"Unsupported expression: {expr!r}")

    @staticmethod
    def _check_single(bound: Any, expr: BinaryOp) -> None:
        if isinstance(bound, BoundPath) and bound.many:
            raise TypeMismatch(f"'{bound.text}' is multi-valued and cannot be used in arithmetic: {expr.text}")

    def _bind_path(self, path: Path, scope: _Scope, refs: set[str], uses_current: list[bool]) -> BoundPath:
        head, rest = path.parts[0], path.parts[1:]
        binding = scope.bindings.get(head)
        trait: str | None = None
        if binding is not None:
            refs.add(head)
            type_name = binding.type_name
            if binding.kind == "trait":
                trait = type_name
            if not rest:
                return BoundPath(path.text, head, [], "reference")
            attributes = rest
            start = head
        else:
            if scope.current is None:
                raise UnresolvedIdentifier(head, "query")
            uses_current[0] = True
            type_name = scope.current
            if scope.current_kind == "trait":
                trait = type_name
            attributes = path.parts
            start = None

        data_type: TypeDefinition = self.catalog.resolve(type_name)
        many = False
        reverse: list[tuple[str, str] | None] = []
        for name in attributes:
            if isinstance(data_type, MapTypeDefinition):
                data_type = data_type.value_type
                reverse.append(None)
                continue
            info = self.catalog.attribute_of(data_type.name, name) if isinstance(data_type, StructTypeDefinition) else None
            if info is None:
                raise UnresolvedIdentifier(name, f"'{data_type.name}' (path {path.text})")
            many = many or info.is_many
            reverse.append((info.element_type.name, info.reverse_attribute_name) if info.is_reverse else None)  # type: ignore[arg-type]
            data_type = info.element_type
        return BoundPath(path.text, start, attributes, type_category(data_type), many=many, trait=trait, reverse=reverse)

    # ---- Pushdown ----

    @staticmethod
    def _push_down(operators: list[Operator]) -> list[Operator]:
        """Move filters that only use earlier bindings right after the step binding them."""
        result: list[Operator] = []
        after: dict[str, int] = {}  # binding name -> insertion point after its step
        for op in operators:
            if (
                isinstance(op, Filter)
                and not op.uses_current
                and op.depends_on
                and op.depends_on <= after.keys()
            ):
                at = max(after[n] for n in op.depends_on)
                result.insert(at, op)
                for n, pos in after.items():
                    if pos >= at:
                        after[n] = pos + 1
            else:
                result.append(op)
            name = getattr(op, "binding", None)
            if name is not None:
                after[name] = len(result)
        return result


def _literal_category(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "numeric"
    return "string"


_COMPATIBLE = {
    frozenset({"numeric"}),
    frozenset({"string"}),
    frozenset({"boolean"}),
    frozenset({"date"}),
    frozenset({"date", "string"}),
    frozenset({"enum"}),
    frozenset({"enum", "string"}),
    frozenset({"enum", "numeric"}),
    frozenset({"reference"}),
    frozenset({"reference", "string"}),
    frozenset({"struct"}),
}


def _comparable(left: str, right: str, op: str) -> bool:
    if "null" in (left, right):
        return op in ("eq", "neq")
    pair = frozenset({left, right})
    if pair in (frozenset({"reference"}), frozenset({"reference", "string"}), frozenset({"struct"}), frozenset({"boolean"})):
        return op in ("eq", "neq")
    return pair in _COMPATIBLE
