import copy
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from async_odm.base.exceptions import (KeyAlreadyExistsException,
                                       ObjectNotFoundException)
from async_odm.base.interfaces import Repository
from async_odm.base.query import (FilterClause, OrderSpec, QueryOperator,
                                  SortDirection)
from async_odm.base.utils import (ID_FIELD, cursor_field_value,
                                  entity_to_document, stamp_created,
                                  stamp_modified)

T = TypeVar("T")

log = logging.getLogger(__name__)

_MISSING = object()

# Cross-type ordering of stored values, lowest first.
_TYPE_RANK = (
    (type(None), 0),
    (bool, 1),
    (int, 2),
    (float, 2),
    (str, 4),
    (bytes, 5),
    (list, 7),
    (dict, 8),
)


def _get_nested_value(document: Dict[str, Any], field_path: str) -> Any:
    """
    Get a value from a nested field using dot notation. Numeric parts index
    into lists. Returns _MISSING when any part of the path is absent.
    """
    current: Any = document
    for part in field_path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _sort_key(value: Any) -> Tuple[int, Any]:
    for type_, rank in _TYPE_RANK:
        if isinstance(value, type_):
            if type_ is dict:
                return rank, sorted((k, repr(v)) for k, v in value.items())
            if type_ is list:
                return rank, [_sort_key(item) for item in value]
            return rank, value
    # datetimes and other comparable scalars
    return 3, value


def _same_value(left: Any, right: Any) -> bool:
    """Equality that keeps value kinds apart, so True never equals 1."""
    try:
        return _sort_key(left) == _sort_key(right)
    except TypeError:
        return False


def _contains(values: Any, value: Any) -> bool:
    return any(_same_value(item, value) for item in values)


def _check_operator(operator: QueryOperator, field_value: Any, value: Any) -> bool:
    """Firestore filter semantics: a missing field never matches."""
    if field_value is _MISSING:
        return False

    if operator is QueryOperator.EQUAL:
        return _same_value(field_value, value)
    if operator is QueryOperator.NOT_EQUAL:
        return field_value is not None and not _same_value(field_value, value)
    if operator is QueryOperator.ARRAY_CONTAINS:
        return isinstance(field_value, list) and _contains(field_value, value)
    if operator is QueryOperator.ARRAY_CONTAINS_ANY:
        return isinstance(field_value, list) and any(_contains(field_value, v) for v in value)
    if operator is QueryOperator.IN:
        return _contains(value, field_value)
    if operator is QueryOperator.NOT_IN:
        return field_value is not None and not _contains(value, field_value)

    # Range comparisons only match values of the same kind.
    field_key, value_key = _sort_key(field_value), _sort_key(value)
    if field_key[0] != value_key[0]:
        return False
    try:
        if operator is QueryOperator.GREATER_THAN:
            return field_value > value
        if operator is QueryOperator.GREATER_THAN_EQUAL:
            return field_value >= value
        if operator is QueryOperator.LESS_THAN:
            return field_value < value
        if operator is QueryOperator.LESS_THAN_EQUAL:
            return field_value <= value
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator for memory store: {operator!r}")


class MemoryCollection:
    """A named set of documents, keyed by id."""

    def __init__(self, path: str):
        self.path = path
        self.documents: Dict[str, Dict[str, Any]] = {}

    def __repr__(self) -> str:
        return f"MemoryCollection({self.path!r}, documents={len(self.documents)})"


class MemoryDatabase:
    """Holds collections so several repositories can share one store."""

    def __init__(self):
        self._collections: Dict[str, MemoryCollection] = {}

    def collection(self, path: str) -> MemoryCollection:
        if path not in self._collections:
            self._collections[path] = MemoryCollection(path)
        return self._collections[path]


@dataclass(frozen=True)
class MemoryQuery:
    """
    Immutable query over a MemoryCollection with the same chainable
    vocabulary as the Firestore client. Each call returns a new query.
    """

    collection: MemoryCollection
    filters: Tuple[FilterClause, ...] = ()
    order: Optional[OrderSpec] = None
    cursors: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    offset_value: Optional[int] = None
    limit_value: Optional[int] = None

    def where(self, field_path: str, operator: QueryOperator, value: Any) -> "MemoryQuery":
        clause = FilterClause(field_path, QueryOperator(operator), value)
        return dataclasses.replace(self, filters=self.filters + (clause,))

    def order_by(
        self, field_path: str, direction: SortDirection = SortDirection.ASCENDING
    ) -> "MemoryQuery":
        return dataclasses.replace(self, order=OrderSpec(field_path, direction))

    def _with_cursor(self, kind: str, values: Tuple[Any, ...]) -> "MemoryQuery":
        return dataclasses.replace(self, cursors=self.cursors + ((kind, tuple(values)),))

    def start_at(self, *values: Any) -> "MemoryQuery":
        return self._with_cursor("start_at", values)

    def start_after(self, *values: Any) -> "MemoryQuery":
        return self._with_cursor("start_after", values)

    def end_at(self, *values: Any) -> "MemoryQuery":
        return self._with_cursor("end_at", values)

    def end_before(self, *values: Any) -> "MemoryQuery":
        return self._with_cursor("end_before", values)

    def offset(self, num: int) -> "MemoryQuery":
        return dataclasses.replace(self, offset_value=num)

    def limit(self, num: int) -> "MemoryQuery":
        return dataclasses.replace(self, limit_value=num)

    # --- Evaluation ---

    def _matching(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (doc_id, doc)
            for doc_id, doc in self.collection.documents.items()
            if all(
                _check_operator(c.operator, _get_nested_value(doc, c.field_path), c.value)
                for c in self.filters
            )
        ]

    def _order_key(self, doc_id: str, doc: Dict[str, Any]) -> Any:
        if self.order is None:
            return _sort_key(doc_id)
        return _sort_key(_get_nested_value(doc, self.order.field_path))

    def _cursor_key(self, values: Tuple[Any, ...]) -> Any:
        value = values[0] if values else None
        field_path = self.order.field_path if self.order else ID_FIELD
        # A document-like cursor contributes the value of the ordered field.
        value = cursor_field_value(value, field_path)
        if self.order is None:
            value = str(value)
        return _sort_key(value)

    def _passes_cursor(self, key: Any, kind: str, cursor_key: Any) -> bool:
        cmp = (key > cursor_key) - (key < cursor_key)
        if self.order is not None and self.order.direction is SortDirection.DESCENDING:
            cmp = -cmp
        if kind == "start_at":
            return cmp >= 0
        if kind == "start_after":
            return cmp > 0
        if kind == "end_at":
            return cmp <= 0
        return cmp < 0

    async def get(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Return matching (id, document) pairs, deep-copied, in query order."""
        rows = self._matching()
        if self.order is not None:
            # Ordering by a field excludes documents that do not have it.
            rows = [
                (doc_id, doc)
                for doc_id, doc in rows
                if _get_nested_value(doc, self.order.field_path) is not _MISSING
            ]
        descending = (
            self.order is not None and self.order.direction is SortDirection.DESCENDING
        )
        rows.sort(key=lambda row: (self._order_key(*row), row[0]), reverse=descending)

        for kind, values in self.cursors:
            cursor_key = self._cursor_key(values)
            rows = [
                row for row in rows
                if self._passes_cursor(self._order_key(*row), kind, cursor_key)
            ]

        if self.offset_value:
            rows = rows[self.offset_value:]
        if self.limit_value is not None:
            rows = rows[: self.limit_value]
        return [(doc_id, copy.deepcopy(doc)) for doc_id, doc in rows]

    async def count(self) -> int:
        return len(self._matching())


class MemoryRepository(Repository[T], Generic[T]):
    """
    In-process repository with document store query semantics. Documents are
    deep-copied on the way in and out, so entities never alias stored data.
    """

    def __init__(
        self,
        entity_type: Type[T],
        collection_path: Optional[str] = None,
        database: Optional[MemoryDatabase] = None,
        validate_models: bool = False,
    ):
        self._entity_type = entity_type
        self._collection_path = collection_path or f"{entity_type.__name__.lower()}s"
        self._database = database or MemoryDatabase()
        self._collection = self._database.collection(self._collection_path)
        super().__init__(validate_models=validate_models)

    @property
    def entity_type(self) -> Type[T]:
        return self._entity_type

    @property
    def collection_path(self) -> str:
        return self._collection_path

    @property
    def database(self) -> MemoryDatabase:
        return self._database

    # --- Document Hooks ---

    async def _get_document(self, entity_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection.documents.get(entity_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def _insert_document(
        self, entity_id: Optional[str], document: Dict[str, Any]
    ) -> str:
        new_id = entity_id or self.id_generator()
        if new_id in self._collection.documents:
            raise KeyAlreadyExistsException(
                f"A document with id {new_id} already exists."
            )
        self._collection.documents[new_id] = copy.deepcopy(document)
        return new_id

    async def _update_document(self, entity_id: str, document: Dict[str, Any]) -> None:
        existing = self._collection.documents.get(entity_id)
        if existing is None:
            raise ObjectNotFoundException(
                f"{self.entity_type.__name__} with ID '{entity_id}' not found."
            )
        existing.update(copy.deepcopy(document))

    async def _delete_document(self, entity_id: str) -> None:
        self._collection.documents.pop(entity_id, None)

    # --- Executor Hooks ---

    def _base_query(self) -> MemoryQuery:
        return MemoryQuery(self._collection)

    def _apply_filter(self, query: MemoryQuery, clause: FilterClause) -> MemoryQuery:
        return query.where(clause.field_path, clause.operator, clause.value)

    def _apply_order(self, query: MemoryQuery, order: OrderSpec) -> MemoryQuery:
        return query.order_by(order.field_path, order.direction)

    def _apply_cursor(
        self, query: MemoryQuery, kind: str, values: Tuple[Any, ...]
    ) -> MemoryQuery:
        return getattr(query, kind)(*values)

    def _apply_offset(self, query: MemoryQuery, offset: int) -> MemoryQuery:
        return query.offset(offset)

    def _apply_limit(self, query: MemoryQuery, limit: int) -> MemoryQuery:
        return query.limit(limit)

    async def _run(self, query: MemoryQuery) -> List[T]:
        return [self._to_entity(doc_id, doc) for doc_id, doc in await query.get()]

    async def _run_count(self, query: MemoryQuery) -> Optional[int]:
        return await query.count()

    # --- Batches ---

    def create_batch(self) -> "MemoryBatch[T]":
        return MemoryBatch(self)


class MemoryBatch(Generic[T]):
    """
    Queues writes for one memory repository and applies them on commit.
    Preconditions of every queued write are checked before any is applied.
    """

    def __init__(self, repository: MemoryRepository[T]):
        self._repository = repository
        self._operations: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    def create(self, entity: T, user_ref: Any = None) -> T:
        self._repository.validate_entity(entity)
        entity_id = getattr(entity, ID_FIELD, None)
        if entity_id is None:
            entity_id = self._repository.id_generator()
            setattr(entity, ID_FIELD, entity_id)
        document = entity_to_document(entity)
        if user_ref is not None:
            stamp_created(entity, document, user_ref)
        self._operations.append(("create", entity_id, document))
        return entity

    def update(self, entity: T, user_ref: Any = None) -> T:
        self._repository.validate_entity(entity)
        entity_id = getattr(entity, ID_FIELD, None)
        if entity_id is None:
            raise ValueError(f"Entity must have '{ID_FIELD}' set to be updated.")
        document = entity_to_document(entity)
        stamp_modified(entity, document, user_ref)
        self._operations.append(("update", entity_id, document))
        return entity

    def delete(self, entity_id: str) -> None:
        self._operations.append(("delete", entity_id, None))

    async def commit(self) -> None:
        documents = self._repository._collection.documents
        pending = set(documents)
        for kind, entity_id, _ in self._operations:
            if kind == "create" and entity_id in pending:
                raise KeyAlreadyExistsException(
                    f"A document with id {entity_id} already exists."
                )
            if kind == "update" and entity_id not in pending:
                raise ObjectNotFoundException(
                    f"Document with ID '{entity_id}' not found for update."
                )
            if kind == "create":
                pending.add(entity_id)
            elif kind == "delete":
                pending.discard(entity_id)

        for kind, entity_id, document in self._operations:
            if kind == "create":
                documents[entity_id] = copy.deepcopy(document)
            elif kind == "update":
                documents[entity_id].update(copy.deepcopy(document))
            else:
                documents.pop(entity_id, None)
        log.debug(
            f"Committed {len(self._operations)} write(s) to "
            f"'{self._repository.collection_path}'."
        )
        self._operations = []
