# src/async_odm/base/query.py
import logging
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import SimpleNamespace
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import BaseModel

from .exceptions import QueryStateError, ValueLimitError
from .utils import prepare_for_storage

if TYPE_CHECKING:
    from .executor import QueryExecutor

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Generic Type Variables ---
T = TypeVar("T")
M = TypeVar("M")

# Hard backend limit for in / not-in / array-contains-any
MAX_MEMBERSHIP_VALUES = 10


# --- Query Operator Enum ---
class QueryOperator(Enum):
    """Filter operators, spelled the way the document store expects them."""

    # Comparison
    EQUAL = "=="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    GREATER_THAN_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_EQUAL = "<="
    # Array
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"
    # Membership
    IN = "in"
    NOT_IN = "not-in"


class SortDirection(Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


# Values a filter may carry. Anything else is rejected by the backend.
FilterValue = Union[
    None, bool, int, float, str, bytes, datetime, List[Any], Dict[str, Any]
]

# (compiled_query, base_collection) -> compiled_query, sync or async
CustomQuery = Callable[[Any, Any], Union[Any, Awaitable[Any]]]


# --- Clause Records ---
@dataclass(frozen=True)
class FilterClause:
    """One recorded predicate: field_path <operator> value."""

    field_path: str
    operator: QueryOperator
    value: Any


@dataclass(frozen=True)
class OrderSpec:
    field_path: str
    direction: SortDirection = SortDirection.ASCENDING


@dataclass(frozen=True)
class QueryCursor:
    """Pagination bounds. At most one member of each start/end pair is set."""

    start_at: Optional[Tuple[Any, ...]] = None
    start_after: Optional[Tuple[Any, ...]] = None
    end_at: Optional[Tuple[Any, ...]] = None
    end_before: Optional[Tuple[Any, ...]] = None

    def members(self) -> List[Tuple[str, Tuple[Any, ...]]]:
        """Set members in compile order: start_at, start_after, end_at, end_before."""
        ordered = (
            ("start_at", self.start_at),
            ("start_after", self.start_after),
            ("end_at", self.end_at),
            ("end_before", self.end_before),
        )
        return [(name, values) for name, values in ordered if values is not None]


# --- Query Options ---
@dataclass(frozen=True)
class QueryOptions:
    """Immutable description of one query expression, consumed by an executor."""

    filters: Tuple[FilterClause, ...] = ()
    order: Optional[OrderSpec] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    cursor: QueryCursor = field(default_factory=QueryCursor)
    custom_query: Optional[CustomQuery] = None

    def __repr__(self) -> str:
        parts = [f"filters={list(self.filters)!r}"]
        if self.order:
            parts.append(f"order={self.order!r}")
        if self.limit is not None:
            parts.append(f"limit={self.limit!r}")
        if self.offset is not None:
            parts.append(f"offset={self.offset!r}")
        members = self.cursor.members()
        if members:
            parts.append(f"cursor={dict(members)!r}")
        if self.custom_query is not None:
            parts.append("custom_query=<set>")
        return f"QueryOptions({', '.join(parts)})"


# --- Field Representation ---
class Field(Generic[T]):
    """
    Represents a queryable field path, built by attribute and index access.

    When the field holds a nested model, attribute access resolves child
    names through that model, so pydantic aliases are used at every level.
    """

    _path: str
    _model: Optional[Type]

    def __init__(self, path: str, model: Optional[Type] = None):
        object.__setattr__(self, "_path", path)
        object.__setattr__(self, "_model", model)

    @property
    def path(self) -> str:
        return self._path

    def __getitem__(self, key: Any) -> "Field[Any]":
        """
        Handles indexed access (e.g., field[0] or field['key']).
        Both forms extend the dot path, which is how the store addresses
        array elements and map keys.
        """
        if isinstance(key, bool) or not isinstance(key, (int, str)):
            raise TypeError(
                f"Field index must be an integer or string, got {type(key).__name__}"
            )
        if isinstance(key, int) and key < 0:
            raise IndexError(
                "Negative indexing is not currently supported for query fields"
            )
        # Elements of a List[Model] / Dict[str, Model] are still that model.
        return Field(f"{self._path}.{key}", self._model)

    def __getattr__(self, name: str) -> "Field[Any]":
        """Dynamically create nested Field objects."""
        if name.startswith("_"):
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            )
        part, model = _child_field(self._model, name)
        return Field(f"{self._path}.{part}", model)

    def __repr__(self) -> str:
        return f"Field(path={self._path!r})"

    def __setattr__(self, name: str, value: Any):
        raise AttributeError(f"Cannot set attribute '{name}' on Field object.")


# --- Fields Proxy Generation ---
_PROXY_CACHE: Dict[Type, SimpleNamespace] = {}


def _nested_model(annotation: Any) -> Optional[Type]:
    """The pydantic model an annotation holds, looking through Optional and containers."""
    if get_origin(annotation) is None and isinstance(annotation, type):
        return annotation if issubclass(annotation, BaseModel) else None
    for arg in get_args(annotation):
        model = _nested_model(arg)
        if model is not None:
            return model
    return None


def _model_fields(model_cls: Type) -> Dict[str, Tuple[str, Optional[Type]]]:
    """Maps attribute names to (stored field name, nested model) for a model class."""
    if isinstance(model_cls, type) and issubclass(model_cls, BaseModel):
        return {
            name: (info.alias or name, _nested_model(info.annotation))
            for name, info in model_cls.model_fields.items()
        }
    try:
        annotations = get_type_hints(model_cls)
    except (TypeError, NameError) as e:
        log.warning(
            f"get_type_hints failed for {model_cls.__name__}: {e}. "
            "Falling back to __annotations__."
        )
        annotations = getattr(model_cls, "__annotations__", {})
    return {
        name: (name, _nested_model(annotation))
        for name, annotation in annotations.items()
        if not name.startswith("_")
    }


def _child_field(model_cls: Optional[Type], name: str) -> Tuple[str, Optional[Type]]:
    """Stored name and nested model of ``name`` on ``model_cls``; unknown names pass through."""
    if model_cls is None:
        return name, None
    return _model_fields(model_cls).get(name, (name, None))


def _generate_fields_proxy(model_cls: Type[M]) -> SimpleNamespace:
    """Introspects a model and creates a SimpleNamespace with Field attributes."""
    if model_cls in _PROXY_CACHE:
        return _PROXY_CACHE[model_cls]

    if not isinstance(model_cls, type):
        raise TypeError(f"model_cls must be a class, received {type(model_cls)}.")

    proxy_obj = SimpleNamespace()
    for name, (path, nested) in _model_fields(model_cls).items():
        setattr(proxy_obj, name, Field(path, nested))
    log.debug(
        f"Generated fields proxy for {model_cls.__name__}: {sorted(vars(proxy_obj))}"
    )
    _PROXY_CACHE[model_cls] = proxy_obj
    return proxy_obj


class GenericFieldsProxy:
    """
    Creates Field instances dynamically for any attribute access. With a
    model class, declared fields resolve to their stored (alias) names.
    """

    __slots__ = ("_model_cls",)

    def __init__(self, model_cls: Optional[Type] = None):
        object.__setattr__(self, "_model_cls", model_cls)

    def __getattr__(self, name: str) -> Field[Any]:
        if name.startswith("_"):
            raise AttributeError(f"No attribute '{name}'")
        part, model = _child_field(self._model_cls, name)
        return Field(part, model)

    def __dir__(self) -> List[str]:
        return []


FieldRef = Union[str, Field, Callable[[Any], Field]]


def resolve_field_path(ref: FieldRef, model_cls: Optional[Type] = None) -> str:
    """
    Resolve a field reference to its dot-joined path.

    Accepts a raw path string (returned verbatim), a ``Field`` taken from a
    fields proxy, or an accessor callable such as ``lambda u: u.address.city``
    which is evaluated against a recording proxy for ``model_cls``. All three
    forms yield the same stored path for the same field.
    """
    if isinstance(ref, str):
        if not ref:
            raise ValueError("Field path must be a non-empty string.")
        return ref
    if isinstance(ref, Field):
        return ref.path
    if callable(ref):
        resolved = ref(GenericFieldsProxy(model_cls))
        if not isinstance(resolved, Field):
            raise TypeError(
                "Field accessor must return an attribute path of its argument, "
                f"got {type(resolved).__name__}"
            )
        return resolved.path
    raise TypeError(
        f"Field reference must be a string, Field or accessor, got {type(ref).__name__}"
    )


# --- Query Builder ---
class QueryBuilder(Generic[M]):
    """
    Accumulates filters, ordering and pagination for one query expression
    using a fluent API. Every chain method returns the builder itself.

    ``build()`` returns the immutable ``QueryOptions``; the terminal calls
    ``find``, ``find_one`` and ``count`` hand it to the bound executor.
    Limit, offset, each cursor pair and the custom query may be set once
    per expression.
    """

    def __init__(
        self,
        executor: Optional["QueryExecutor[M]"] = None,
        model_cls: Optional[Type[M]] = None,
    ):
        self._executor = executor
        if model_cls is None and executor is not None:
            model_cls = getattr(executor, "entity_type", None)
        self.model_cls = model_cls

        self._filters: List[FilterClause] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._order: Optional[OrderSpec] = None
        self._ordered_paths: Set[str] = set()
        self._start_at: Optional[Tuple[Any, ...]] = None
        self._start_after: Optional[Tuple[Any, ...]] = None
        self._end_at: Optional[Tuple[Any, ...]] = None
        self._end_before: Optional[Tuple[Any, ...]] = None
        self._custom_query: Optional[CustomQuery] = None

        if model_cls is not None:
            self.fields = _generate_fields_proxy(model_cls)
        else:
            self.fields = GenericFieldsProxy()

    # --- Filters ---

    def _add_filter(
        self, ref: FieldRef, operator: QueryOperator, value: Any
    ) -> "QueryBuilder[M]":
        clause = FilterClause(
            field_path=resolve_field_path(ref, self.model_cls),
            operator=operator,
            value=prepare_for_storage(value),
        )
        self._filters.append(clause)
        log.debug(f"Added filter clause: {clause!r}")
        return self

    def _add_membership_filter(
        self, ref: FieldRef, operator: QueryOperator, values: Any
    ) -> "QueryBuilder[M]":
        if not isinstance(values, (list, set, tuple)):
            raise TypeError(
                f"Operator '{operator.value}' requires a list/set/tuple, "
                f"got {type(values).__name__}"
            )
        if len(values) > MAX_MEMBERSHIP_VALUES:
            raise ValueLimitError(
                f"This query supports up to {MAX_MEMBERSHIP_VALUES} values. "
                f"You provided {len(values)}."
            )
        return self._add_filter(ref, operator, list(values))

    def where_equal_to(self, ref: FieldRef, value: FilterValue) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.EQUAL, value)

    def where_not_equal_to(self, ref: FieldRef, value: FilterValue) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.NOT_EQUAL, value)

    def where_greater_than(self, ref: FieldRef, value: FilterValue) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.GREATER_THAN, value)

    def where_greater_or_equal_than(
        self, ref: FieldRef, value: FilterValue
    ) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.GREATER_THAN_EQUAL, value)

    def where_less_than(self, ref: FieldRef, value: FilterValue) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.LESS_THAN, value)

    def where_less_or_equal_than(
        self, ref: FieldRef, value: FilterValue
    ) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.LESS_THAN_EQUAL, value)

    def where_array_contains(self, ref: FieldRef, value: FilterValue) -> "QueryBuilder[M]":
        return self._add_filter(ref, QueryOperator.ARRAY_CONTAINS, value)

    def where_array_contains_any(self, ref: FieldRef, values: Any) -> "QueryBuilder[M]":
        return self._add_membership_filter(ref, QueryOperator.ARRAY_CONTAINS_ANY, values)

    def where_in(self, ref: FieldRef, values: Any) -> "QueryBuilder[M]":
        return self._add_membership_filter(ref, QueryOperator.IN, values)

    def where_not_in(self, ref: FieldRef, values: Any) -> "QueryBuilder[M]":
        return self._add_membership_filter(ref, QueryOperator.NOT_IN, values)

    # --- Bounds ---

    def limit(self, num: int) -> "QueryBuilder[M]":
        """Sets the maximum number of results."""
        if self._limit is not None:
            raise QueryStateError(
                "A limit function cannot be called more than once in the same query expression"
            )
        if isinstance(num, bool) or not isinstance(num, int) or num < 1:
            raise ValueError("Limit must be a positive integer.")
        self._limit = num
        log.debug(f"Query limit set to: {num}")
        return self

    def offset(self, num: int) -> "QueryBuilder[M]":
        """Sets the number of results to skip."""
        if self._offset is not None:
            raise QueryStateError(
                "An offset function cannot be called more than once in the same query expression"
            )
        if isinstance(num, bool) or not isinstance(num, int) or num < 0:
            raise ValueError("Offset must be a non-negative integer.")
        self._offset = num
        log.debug(f"Query offset set to: {num}")
        return self

    # --- Cursors ---

    def _check_start_free(self) -> None:
        if self._start_at is not None or self._start_after is not None:
            raise QueryStateError(
                "A startAt function cannot be called more than once in the same query expression"
            )

    def _check_end_free(self) -> None:
        if self._end_at is not None or self._end_before is not None:
            raise QueryStateError(
                "A endAt function cannot be called more than once in the same query expression"
            )

    def start_at(self, *values: Any) -> "QueryBuilder[M]":
        self._check_start_free()
        self._start_at = values
        return self

    def start_after(self, *values: Any) -> "QueryBuilder[M]":
        self._check_start_free()
        self._start_after = values
        return self

    def end_at(self, *values: Any) -> "QueryBuilder[M]":
        self._check_end_free()
        self._end_at = values
        return self

    def end_before(self, *values: Any) -> "QueryBuilder[M]":
        self._check_end_free()
        self._end_before = values
        return self

    # --- Ordering ---

    def _order_by(self, ref: FieldRef, direction: SortDirection) -> "QueryBuilder[M]":
        path = resolve_field_path(ref, self.model_cls)
        # Only a repeated path is rejected; a new path replaces the active order.
        if path in self._ordered_paths:
            raise QueryStateError(
                "An orderBy function cannot be called more than once in the same query expression"
            )
        self._ordered_paths.add(path)
        self._order = OrderSpec(field_path=path, direction=direction)
        log.debug(f"Query order set: {self._order!r}")
        return self

    def order_by_ascending(self, ref: FieldRef) -> "QueryBuilder[M]":
        return self._order_by(ref, SortDirection.ASCENDING)

    def order_by_descending(self, ref: FieldRef) -> "QueryBuilder[M]":
        return self._order_by(ref, SortDirection.DESCENDING)

    # --- Custom Query ---

    def custom_query(self, func: CustomQuery) -> "QueryBuilder[M]":
        """
        Registers a transform applied to the compiled backend query right
        before execution. It receives the compiled query and the base
        collection and returns the query to run. It runs after every other
        clause, so it cannot change the order in which they were applied.
        """
        if self._custom_query is not None:
            raise QueryStateError("Only one custom query can be used per query expression")
        self._custom_query = func
        return self

    # --- Build & Terminal Calls ---

    def build(self) -> QueryOptions:
        """Builds the immutable QueryOptions for the current expression."""
        options = QueryOptions(
            filters=tuple(self._filters),
            order=self._order,
            limit=self._limit,
            offset=self._offset,
            cursor=QueryCursor(
                start_at=self._start_at,
                start_after=self._start_after,
                end_at=self._end_at,
                end_before=self._end_before,
            ),
            custom_query=self._custom_query,
        )
        log.debug(f"Built {options!r}")
        return options

    def _require_executor(self) -> "QueryExecutor[M]":
        if self._executor is None:
            raise RuntimeError(
                "QueryBuilder is not bound to an executor; use build() or "
                "create the builder from a repository."
            )
        return self._executor

    async def find(self) -> List[M]:
        """Runs the query and returns every matching entity in order."""
        return await self._require_executor().execute(self.build())

    async def find_one(self) -> Optional[M]:
        """
        Runs the query limited to one result; None when nothing matches.
        Offset and cursors are not part of a single-result query.
        """
        options = dataclasses.replace(self.build(), offset=None, cursor=QueryCursor())
        results = await self._require_executor().execute(options, single=True)
        return results[0] if results else None

    async def count(self) -> int:
        """Counts matching documents. Only filters and the custom query apply."""
        return await self._require_executor().execute_count(self.build())
