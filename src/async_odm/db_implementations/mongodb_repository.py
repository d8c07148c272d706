# src/async_odm/db_implementations/mongodb_repository.py

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

# --- Motor Driver Import ---
from motor.motor_asyncio import (AsyncIOMotorClient, AsyncIOMotorCollection,
                                 AsyncIOMotorDatabase)
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

# --- Framework Imports ---
from async_odm.base.exceptions import (KeyAlreadyExistsException,
                                       ObjectNotFoundException)
from async_odm.base.interfaces import Repository
from async_odm.base.query import (FilterClause, OrderSpec, QueryOperator,
                                  SortDirection)
from async_odm.base.utils import ID_FIELD, cursor_field_value

# --- Type Variables ---
T = TypeVar("T")
DB_RECORD_TYPE = Dict[str, Any]

DB_ID_FIELD = "_id"

_MONGO_OPS = {
    QueryOperator.EQUAL: "$eq",
    QueryOperator.NOT_EQUAL: "$ne",
    QueryOperator.GREATER_THAN: "$gt",
    QueryOperator.GREATER_THAN_EQUAL: "$gte",
    QueryOperator.LESS_THAN: "$lt",
    QueryOperator.LESS_THAN_EQUAL: "$lte",
    QueryOperator.ARRAY_CONTAINS_ANY: "$in",
    QueryOperator.IN: "$in",
    QueryOperator.NOT_IN: "$nin",
}

# (ascending, descending) range operator per cursor kind
_CURSOR_OPS = {
    "start_at": ("$gte", "$lte"),
    "start_after": ("$gt", "$lt"),
    "end_at": ("$lte", "$gte"),
    "end_before": ("$lt", "$gt"),
}


def _db_path(field_path: str) -> str:
    return DB_ID_FIELD if field_path == ID_FIELD else field_path


def _translate_filter(clause: FilterClause) -> Dict[str, Any]:
    field = _db_path(clause.field_path)
    op = clause.operator
    if op is QueryOperator.ARRAY_CONTAINS:
        # Matching a scalar against an array field matches any element.
        return {field: {"$elemMatch": {"$eq": clause.value}}}
    mongo_op = _MONGO_OPS.get(op)
    if mongo_op is None:
        raise ValueError(f"Unsupported query operator for MongoDB: {op!r}")
    # Negative matches never select documents where the field is missing or null.
    if op is QueryOperator.NOT_EQUAL:
        return {field: {"$nin": [clause.value, None]}}
    if op is QueryOperator.NOT_IN:
        return {field: {"$nin": list(clause.value) + [None]}}
    return {field: {mongo_op: clause.value}}


@dataclass(frozen=True)
class MongoQuery:
    """
    Immutable MongoDB query description with the same chainable vocabulary
    as the Firestore client. ``build()`` yields the find() arguments.
    """

    collection: Optional[AsyncIOMotorCollection] = None
    filters: Tuple[FilterClause, ...] = ()
    order: Optional[OrderSpec] = None
    cursors: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    skip: Optional[int] = None
    limit_value: Optional[int] = None

    def where(self, field_path: str, operator: QueryOperator, value: Any) -> "MongoQuery":
        clause = FilterClause(field_path, QueryOperator(operator), value)
        return dataclasses.replace(self, filters=self.filters + (clause,))

    def order_by(
        self, field_path: str, direction: SortDirection = SortDirection.ASCENDING
    ) -> "MongoQuery":
        return dataclasses.replace(self, order=OrderSpec(field_path, direction))

    def _with_cursor(self, kind: str, values: Tuple[Any, ...]) -> "MongoQuery":
        return dataclasses.replace(self, cursors=self.cursors + ((kind, tuple(values)),))

    def start_at(self, *values: Any) -> "MongoQuery":
        return self._with_cursor("start_at", values)

    def start_after(self, *values: Any) -> "MongoQuery":
        return self._with_cursor("start_after", values)

    def end_at(self, *values: Any) -> "MongoQuery":
        return self._with_cursor("end_at", values)

    def end_before(self, *values: Any) -> "MongoQuery":
        return self._with_cursor("end_before", values)

    def offset(self, num: int) -> "MongoQuery":
        return dataclasses.replace(self, skip=num)

    def limit(self, num: int) -> "MongoQuery":
        return dataclasses.replace(self, limit_value=num)

    # --- Translation ---

    def _cursor_condition(self, kind: str, values: Tuple[Any, ...]) -> Dict[str, Any]:
        field_path = self.order.field_path if self.order else ID_FIELD
        value = values[0] if values else None
        value = cursor_field_value(value, field_path)
        ascending_op, descending_op = _CURSOR_OPS[kind]
        descending = (
            self.order is not None and self.order.direction is SortDirection.DESCENDING
        )
        return {_db_path(field_path): {descending_op if descending else ascending_op: value}}

    def build_filter(self) -> Dict[str, Any]:
        conditions = [_translate_filter(clause) for clause in self.filters]
        conditions += [self._cursor_condition(kind, values) for kind, values in self.cursors]
        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    def build(self) -> Dict[str, Any]:
        """Translate to {'filter', 'sort', 'skip', 'limit'} find() arguments."""
        if self.order is not None:
            direction = (
                DESCENDING if self.order.direction is SortDirection.DESCENDING else ASCENDING
            )
            sort = [(_db_path(self.order.field_path), direction)]
            if sort[0][0] != DB_ID_FIELD:
                sort.append((DB_ID_FIELD, direction))
        else:
            sort = [(DB_ID_FIELD, ASCENDING)]
        return {
            "filter": self.build_filter(),
            "sort": sort,
            "skip": self.skip or 0,
            "limit": self.limit_value or 0,
        }


class MongoDBRepository(Repository[T], Generic[T]):
    """
    MongoDB repository implementation using Motor.

    The entity id is stored as the document ``_id``. Queries translate the
    clause model into one find() call; cursors become range conditions on
    the ordered field (``_id`` when unordered).
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        database_name: str,
        collection_name: str,
        entity_type: Type[T],
        validate_models: bool = False,
    ):
        """
        Initialize the MongoDB repository.

        Args:
            client: An instance of AsyncIOMotorClient.
            database_name: The name of the MongoDB database.
            collection_name: The name of the MongoDB collection.
            entity_type: The Python class representing the entity.
            validate_models: Re-validate pydantic entities before writes.
        """
        if not isinstance(client, AsyncIOMotorClient):
            raise TypeError("client must be an instance of AsyncIOMotorClient")

        self._client = client
        self._database_name = database_name
        self._db: AsyncIOMotorDatabase = client[database_name]
        self._collection_name = collection_name
        self._collection: AsyncIOMotorCollection = self._db[collection_name]
        self._entity_type = entity_type
        super().__init__(validate_models=validate_models)

        self._logger.info(
            f"Repository instance created for {entity_type.__name__} "
            f"(db: '{database_name}', collection: '{collection_name}')."
        )

    @property
    def entity_type(self) -> Type[T]:
        return self._entity_type

    @property
    def collection_path(self) -> str:
        return self._collection_name

    def _record_to_entity(self, record: DB_RECORD_TYPE) -> T:
        data = dict(record)
        doc_id = data.pop(DB_ID_FIELD, None)
        return self._to_entity(doc_id, data)

    # --- Document Hooks ---

    async def _get_document(self, entity_id: str) -> Optional[Dict[str, Any]]:
        record = await self._collection.find_one({DB_ID_FIELD: entity_id})
        if record is None:
            return None
        record.pop(DB_ID_FIELD, None)
        return record

    async def _insert_document(
        self, entity_id: Optional[str], document: Dict[str, Any]
    ) -> str:
        new_id = entity_id or self.id_generator()
        try:
            await self._collection.insert_one({DB_ID_FIELD: new_id, **document})
        except DuplicateKeyError as e:
            self._handle_db_error(e, f"storing entity id {new_id}")
        return new_id

    async def _update_document(self, entity_id: str, document: Dict[str, Any]) -> None:
        result = await self._collection.update_one(
            {DB_ID_FIELD: entity_id}, {"$set": document}
        )
        if result.matched_count == 0:
            raise ObjectNotFoundException(
                f"{self.entity_type.__name__} with ID '{entity_id}' not found."
            )

    async def _delete_document(self, entity_id: str) -> None:
        await self._collection.delete_one({DB_ID_FIELD: entity_id})

    # --- Executor Hooks ---

    def _base_query(self) -> MongoQuery:
        return MongoQuery(collection=self._collection)

    def _apply_filter(self, query: MongoQuery, clause: FilterClause) -> MongoQuery:
        return query.where(clause.field_path, clause.operator, clause.value)

    def _apply_order(self, query: MongoQuery, order: OrderSpec) -> MongoQuery:
        return query.order_by(order.field_path, order.direction)

    def _apply_cursor(
        self, query: MongoQuery, kind: str, values: Tuple[Any, ...]
    ) -> MongoQuery:
        return getattr(query, kind)(*values)

    def _apply_offset(self, query: MongoQuery, offset: int) -> MongoQuery:
        return query.offset(offset)

    def _apply_limit(self, query: MongoQuery, limit: int) -> MongoQuery:
        return query.limit(limit)

    async def _run(self, query: MongoQuery) -> List[T]:
        parts = query.build()
        self._logger.debug(f"MongoDB find parts: {parts}")
        cursor = self._collection.find(parts["filter"]).sort(parts["sort"])
        if parts["skip"] > 0:
            cursor = cursor.skip(parts["skip"])
        if parts["limit"] > 0:
            cursor = cursor.limit(parts["limit"])
        return [self._record_to_entity(record) async for record in cursor]

    async def _run_count(self, query: MongoQuery) -> Optional[int]:
        query_filter = query.build_filter()
        self._logger.debug(f"MongoDB count filter: {query_filter}")
        return await self._collection.count_documents(query_filter)

    # --- Error Handling ---

    def _handle_db_error(self, error: Exception, context: str = "operation") -> None:
        self._logger.error(f"MongoDB error during {context}: {error}", exc_info=True)
        if isinstance(error, DuplicateKeyError):
            match = re.search(r"index: (\S+).* dup key: ({.*?})", str(error))
            index = match.group(1) if match else "unknown"
            key = match.group(2) if match else "unknown"
            raise KeyAlreadyExistsException(
                f"Duplicate key error on index '{index}'. Key: {key}"
            ) from error
        raise error
