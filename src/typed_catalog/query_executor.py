"""Query executor: runs planned queries against a store snapshot."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Iterator

from typed_catalog.errors import QueryCancelled
from typed_catalog.instance import Id, Struct
from typed_catalog.parsing.query_parser import (
    BinaryOp,
    Comparison,
    HasAttribute,
    Literal,
    LogicalOp,
    Not,
    TraitTest,
)
from typed_catalog.query_planner import (
    BoundPath,
    Filter,
    FollowReference,
    HasFilter,
    LoopOp,
    PreparedQuery,
    QueryState,
    ReverseJoin,
    ScanClass,
    ScanTrait,
    TraitFilter,
)
from typed_catalog.store import EntityRecord, InstanceStore, StoreSnapshot
from typed_catalog.types import EnumValue

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Result of a query execution."""

    columns: list[str]
    rows: list[dict[str, Any]]
    message: str | None = None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class Frame:
    """One partial result row: the current entity, every binding and the path walked."""

    current: EntityRecord
    bindings: dict[str, EntityRecord] = field(default_factory=dict)
    path: list[Id] = field(default_factory=list)

    def advance(self, target: EntityRecord, binding: str | None) -> Frame:
        bindings = dict(self.bindings)
        if binding:
            bindings[binding] = target
        return Frame(target, bindings, self.path + [target.id])


class _Context:
    def __init__(self, snapshot: StoreSnapshot, cancel: threading.Event | None) -> None:
        self.snapshot = snapshot
        self.catalog = snapshot.catalog
        self.cancel = cancel

    def check(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise QueryCancelled("Query cancelled")


class QueryExecutor:
    """Executes prepared queries.

    Each query reads one snapshot of the store, so concurrent writers never
    produce a torn result. A loop stops at ``loop_max_depth`` iterations when
    set, even without an explicit ``times`` bound.
    """

    def __init__(self, store: InstanceStore, loop_max_depth: int | None = None) -> None:
        self.store = store
        self.loop_max_depth = loop_max_depth

    def execute(self, prepared: PreparedQuery, cancel: threading.Event | None = None) -> QueryResult:
        """Execute a prepared query.

        Raises:
            QueryCancelled: ``cancel`` was set before the query finished.
        """
        prepared.state = QueryState.EXECUTING
        ctx = _Context(self.store.snapshot(), cancel)
        rows: list[dict[str, Any]] = []
        try:
            for segment in prepared.segments:
                for frame in self._run(segment.operators, iter(()), ctx):
                    ctx.check()
                    rows.append(self._row(prepared, frame, ctx))
        except Exception:
            prepared.state = QueryState.FAILED
            raise
        prepared.state = QueryState.COMPLETED
        logger.debug(f"Query {prepared.text!r} returned {len(rows)} rows")
        return QueryResult(columns=prepared.columns, rows=rows)

    def _row(self, prepared: PreparedQuery, frame: Frame, ctx: _Context) -> dict[str, Any]:
        if prepared.projections:
            row = {p.column: copy.deepcopy(self._evaluate(p.expr, frame, ctx)) for p in prepared.projections}
        else:
            row = {"_guid": frame.current.guid, "_type": frame.current.type_name}
            row.update(copy.deepcopy(frame.current.values))
        if prepared.with_path:
            row["_path"] = list(frame.path)
        return row

    # ---- Operators ----

    def _run(self, operators: list[Any], frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        for op in operators:
            frames = self._apply(op, frames, ctx)
        return iter(frames)

    def _apply(self, op: Any, frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        if isinstance(op, ScanClass):
            return self._scan(ctx.snapshot.instances_of(op.type_name), op.binding, ctx)
        if isinstance(op, ScanTrait):
            return self._scan(ctx.snapshot.with_trait(op.trait), op.binding, ctx)
        if isinstance(op, FollowReference):
            return self._follow(op, frames, ctx)
        if isinstance(op, ReverseJoin):
            return self._reverse_join(op, frames, ctx)
        if isinstance(op, TraitFilter):
            return self._trait_filter(op, frames, ctx)
        if isinstance(op, HasFilter):
            return (f for f in frames if _is_set(self._path_items(op.path, f, ctx)))
        if isinstance(op, Filter):
            return (f for f in frames if self._evaluate(op.condition, f, ctx) is True)
        if isinstance(op, LoopOp):
            return self._loop(op, frames, ctx)
        raise TypeError(f"Unknown operator: {op!r}")

    @staticmethod
    def _scan(records: list[EntityRecord], binding: str, ctx: _Context) -> Iterator[Frame]:
        for record in records:
            ctx.check()
            yield Frame(record, {binding: record}, [record.id])

    @staticmethod
    def _trait_filter(op: TraitFilter, frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        for frame in frames:
            if not _has_trait(frame.current, op.trait, ctx):
                continue
            if op.binding:
                frame = Frame(frame.current, {**frame.bindings, op.binding: frame.current}, frame.path)
            yield frame

    def _follow(self, op: FollowReference, frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        attr = op.attribute
        for frame in frames:
            ctx.check()
            if attr.is_reverse:
                targets = _referrers(frame.current, attr.element_type.name, attr.reverse_attribute_name, ctx)  # type: ignore[arg-type]
            else:
                targets = []
                for ref in _ids(frame.current.values.get(attr.name)):
                    record = ctx.snapshot.resolve(ref)
                    # Dangling references are skipped.
                    if record is not None:
                        targets.append(record)
            for target in targets:
                if ctx.catalog.is_subtype(target.type_name, op.target_type):
                    yield frame.advance(target, op.binding)

    def _reverse_join(self, op: ReverseJoin, frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        for frame in frames:
            ctx.check()
            for source in _referrers(frame.current, op.source_type, op.attribute, ctx):
                yield frame.advance(source, op.binding)

    def _loop(self, op: LoopOp, frames: Iterable[Frame], ctx: _Context) -> Iterator[Frame]:
        """Breadth-first repetition of the loop body.

        Every entity is emitted at most once per starting entity, and never
        the starting entity itself, so cyclic graphs terminate.
        """
        limits = [n for n in (op.times, self.loop_max_depth) if n is not None]
        max_depth = min(limits) if limits else None
        for frame in frames:
            root = frame.current
            visited = {root.guid}
            frontier: list[tuple[EntityRecord, list[Id]]] = [(root, [])]
            depth = 0
            while frontier and (max_depth is None or depth < max_depth):
                depth += 1
                next_frontier: list[tuple[EntityRecord, list[Id]]] = []
                for entity, trail in frontier:
                    ctx.check()
                    start = Frame(entity, dict(frame.bindings), [])
                    for reached in self._run(op.body, [start], ctx):
                        target = reached.current
                        if target.guid in visited:
                            continue
                        visited.add(target.guid)
                        walked = trail + reached.path
                        bindings = dict(frame.bindings)
                        if op.binding:
                            bindings[op.binding] = target
                        yield Frame(target, bindings, frame.path + walked)
                        next_frontier.append((target, walked))
                frontier = next_frontier

    # ---- Expressions ----

    def _evaluate(self, expr: Any, frame: Frame, ctx: _Context) -> Any:
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, BoundPath):
            items = self._path_items(expr, frame, ctx)
            if expr.many:
                return items
            return items[0] if items else None
        if isinstance(expr, BinaryOp):
            return _arithmetic(
                expr.op, self._evaluate(expr.left, frame, ctx), self._evaluate(expr.right, frame, ctx)
            )
        if isinstance(expr, Comparison):
            return self._evaluate_comparison(expr, frame, ctx)
        if isinstance(expr, HasAttribute):
            return _is_set(self._path_items(expr.path, frame, ctx))
        if isinstance(expr, TraitTest):
            for item in self._path_items(expr.path, frame, ctx):
                record = ctx.snapshot.resolve(item) if isinstance(item, Id) else item
                if isinstance(record, EntityRecord) and _has_trait(record, expr.trait, ctx):
                    return True
            return False
        if isinstance(expr, LogicalOp):
            left = self._evaluate(expr.left, frame, ctx)
            if expr.op == "and":
                return left and self._evaluate(expr.right, frame, ctx)
            return left or self._evaluate(expr.right, frame, ctx)
        if isinstance(expr, Not):
            operand = self._evaluate(expr.operand, frame, ctx)
            # An unset operand stays unset, so it never satisfies a filter.
            return None if operand is None else not operand
        raise TypeError(f"Cannot evaluate {expr!r}")

    def _evaluate_comparison(self, expr: Comparison, frame: Frame, ctx: _Context) -> bool | None:
        left = self._evaluate(expr.left, frame, ctx)
        right = self._evaluate(expr.right, frame, ctx)
        if _is_null_literal(expr.left):
            left, right = right, left
        if _is_null_literal(expr.left) or _is_null_literal(expr.right):
            is_null = left is None or left == []
            return is_null if expr.op == "eq" else not is_null
        lefts = left if isinstance(left, list) and _is_many(expr.left) else [left]
        rights = right if isinstance(right, list) and _is_many(expr.right) else [right]
        lefts = [a for a in lefts if a is not None]
        rights = [b for b in rights if b is not None]
        if not lefts or not rights:
            return None
        # Multi-valued paths match when any element matches.
        return any(_compare(a, expr.op, b) for a in lefts for b in rights)

    def _path_items(self, path: BoundPath, frame: Frame, ctx: _Context) -> list[Any]:
        """Every value a path reaches; references are left as Ids."""
        start = frame.bindings.get(path.binding) if path.binding else frame.current
        if start is None:
            return []
        if not path.attributes:
            return [start.id]

        items: list[Any] = [start]
        for i, name in enumerate(path.attributes):
            reverse = path.reverse[i] if i < len(path.reverse) else None
            found: list[Any] = []
            for item in items:
                if isinstance(item, Id):
                    item = ctx.snapshot.resolve(item)
                    if item is None:
                        continue
                if i == 0 and path.trait is not None and isinstance(item, EntityRecord):
                    item = _trait_instance(item, path.trait, ctx)
                    if item is None:
                        continue
                if reverse is not None and isinstance(item, EntityRecord):
                    found.extend(r.id for r in _referrers(item, reverse[0], reverse[1], ctx))
                    continue
                if isinstance(item, (EntityRecord, Struct)):
                    value = item.values.get(name)
                elif isinstance(item, dict):
                    value = item.get(name)
                else:
                    continue
                if isinstance(value, list):
                    found.extend(value)
                elif value is not None:
                    found.append(value)
            items = found
        return items


def _referrers(target: EntityRecord, source_type: str, attribute: str, ctx: _Context) -> list[EntityRecord]:
    """Entities of ``source_type`` whose ``attribute`` references ``target``, once each."""
    seen: set[str] = set()
    result: list[EntityRecord] = []
    for source, attr in ctx.snapshot.referrers(target.guid):
        if attr != attribute or source.guid in seen:
            continue
        if ctx.catalog.is_subtype(source.type_name, source_type):
            seen.add(source.guid)
            result.append(source)
    return result


def _ids(value: Any) -> list[Id]:
    if isinstance(value, Id):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, Id)]
    return []


def _has_trait(record: EntityRecord, trait: str, ctx: _Context) -> bool:
    return any(ctx.catalog.is_subtype(name, trait) for name in record.traits)


def _trait_instance(record: EntityRecord, trait: str, ctx: _Context) -> Struct | None:
    instance = record.traits.get(trait)
    if instance is not None:
        return instance
    for name, candidate in record.traits.items():
        if ctx.catalog.is_subtype(name, trait):
            return candidate
    return None


def _is_set(items: list[Any]) -> bool:
    return any(item is not None for item in items)


def _is_null_literal(expr: Any) -> bool:
    return isinstance(expr, Literal) and expr.value is None


def _is_many(expr: Any) -> bool:
    return isinstance(expr, BoundPath) and expr.many


def _normalize(a: Any, b: Any) -> tuple[Any, Any]:
    """Bring two operands to a common comparable form."""
    if isinstance(a, EnumValue) or isinstance(b, EnumValue):
        return _enum_key(a, b), _enum_key(b, a)
    if isinstance(a, Id):
        a = a.guid
    if isinstance(b, Id):
        b = b.guid
    if isinstance(a, Struct):
        a = a.values
    if isinstance(b, Struct):
        b = b.values
    if isinstance(a, (date, datetime)) or isinstance(b, (date, datetime)):
        return _as_datetime(a), _as_datetime(b)
    if isinstance(a, Decimal) and isinstance(b, float):
        b = Decimal(str(b))
    elif isinstance(b, Decimal) and isinstance(a, float):
        a = Decimal(str(a))
    return a, b


def _enum_key(value: Any, other: Any) -> Any:
    if not isinstance(value, EnumValue):
        return value
    if isinstance(other, str):
        return value.name
    return value.ordinal


def _as_datetime(value: Any) -> Any:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _compare(left: Any, op: str, right: Any) -> bool:
    """Compare two non-null values; incomparable values never match."""
    try:
        left, right = _normalize(left, right)
        if op == "eq":
            return left == right
        elif op == "neq":
            return left != right
        elif op == "lt":
            return left < right
        elif op == "lte":
            return left <= right
        elif op == "gt":
            return left > right
        elif op == "gte":
            return left >= right
    except (TypeError, ValueError):
        return False
    return False


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if isinstance(left, Decimal) and isinstance(right, float):
        right = Decimal(str(right))
    elif isinstance(right, Decimal) and isinstance(left, float):
        left = Decimal(str(left))
    if op == "+":
        return left + right
    elif op == "-":
        return left - right
    elif op == "*":
        return left * right
    elif op == "/":
        if right == 0:
            return None
        return left / right
    raise ValueError(f"Unknown operator: {op}")
