# src/async_odm/db_implementations/firestore_repository.py

import logging
from typing import (Any, Awaitable, Callable, Dict, Generic, List, Optional,
                    Tuple, Type, TypeVar)

# --- Firestore Driver Import ---
from google.api_core.exceptions import Conflict, NotFound
from google.cloud.firestore import AsyncClient
from google.cloud.firestore_v1.async_collection import AsyncCollectionReference
from google.cloud.firestore_v1.async_transaction import (AsyncTransaction,
                                                         async_transactional)
from google.cloud.firestore_v1.base_document import DocumentSnapshot
from google.cloud.firestore_v1.base_query import BaseQuery, FieldFilter

# --- Framework Imports ---
from async_odm.base.exceptions import (KeyAlreadyExistsException,
                                       ObjectNotFoundException)
from async_odm.base.interfaces import Repository
from async_odm.base.query import FilterClause, OrderSpec, SortDirection
from async_odm.base.utils import (ID_FIELD, cursor_document, entity_to_document,
                                  is_entity_like, stamp_created, stamp_modified)

# --- Type Variables ---
T = TypeVar("T")
R = TypeVar("R")

COUNT_ALIAS = "count"

base_logger = logging.getLogger("async_odm.db_implementations.firestore_repository")

_DIRECTIONS = {
    SortDirection.ASCENDING: BaseQuery.ASCENDING,
    SortDirection.DESCENDING: BaseQuery.DESCENDING,
}


def _cursor_argument(values: Tuple[Any, ...]) -> Any:
    """
    The client takes one argument per cursor call: a snapshot, a dict of
    field values, or a list of values matching the order-by fields.
    """
    if len(values) == 1 and isinstance(values[0], (DocumentSnapshot, dict)):
        return values[0]
    # Entities are sent in stored form so aliases and nested paths resolve.
    if len(values) == 1 and is_entity_like(values[0]):
        return cursor_document(values[0])
    return list(values)


class FirestoreRepository(Repository[T], Generic[T]):
    """
    Firestore repository implementation using the async client.

    Queries compile to chained ``where``/``order_by``/cursor/``offset``/
    ``limit`` calls on the collection reference. The entity id is the
    document id and is not stored in the document body.
    """

    def __init__(
        self,
        client: AsyncClient,
        collection_path: str,
        entity_type: Type[T],
        validate_models: bool = False,
    ):
        """
        Initialize the Firestore repository.

        Args:
            client: An instance of google.cloud.firestore.AsyncClient.
            collection_path: Slash-separated path of the collection.
            entity_type: The Python class representing the entity.
            validate_models: Re-validate pydantic entities before writes.
        """
        if not isinstance(client, AsyncClient):
            raise TypeError("client must be an instance of google.cloud.firestore.AsyncClient")

        self._client = client
        self._collection_path = collection_path
        self._collection: AsyncCollectionReference = client.collection(collection_path)
        self._entity_type = entity_type
        self._transaction: Optional[AsyncTransaction] = None
        super().__init__(validate_models=validate_models)

        self._logger.info(
            f"Repository instance created for {entity_type.__name__} "
            f"(collection: '{collection_path}')."
        )

    @property
    def entity_type(self) -> Type[T]:
        return self._entity_type

    @property
    def collection_path(self) -> str:
        return self._collection_path

    @property
    def collection(self) -> AsyncCollectionReference:
        return self._collection

    # --- Document Hooks ---

    def _document(self, entity_id: Optional[str]):
        if entity_id is None:
            return self._collection.document()
        return self._collection.document(entity_id)

    async def _get_document(self, entity_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._document(entity_id).get(transaction=self._transaction)
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    async def _insert_document(
        self, entity_id: Optional[str], document: Dict[str, Any]
    ) -> str:
        doc_ref = self._document(entity_id)
        try:
            await doc_ref.create(document)
        except Conflict as e:
            self._handle_db_error(e, f"creating document {doc_ref.id}")
        return doc_ref.id

    async def _update_document(self, entity_id: str, document: Dict[str, Any]) -> None:
        try:
            await self._document(entity_id).update(document)
        except NotFound as e:
            self._handle_db_error(e, f"updating document {entity_id}")

    async def _delete_document(self, entity_id: str) -> None:
        await self._document(entity_id).delete()

    # --- Executor Hooks ---

    def _base_query(self) -> AsyncCollectionReference:
        return self._collection

    def _apply_filter(self, query: Any, clause: FilterClause) -> Any:
        return query.where(
            filter=FieldFilter(clause.field_path, clause.operator.value, clause.value)
        )

    def _apply_order(self, query: Any, order: OrderSpec) -> Any:
        return query.order_by(order.field_path, direction=_DIRECTIONS[order.direction])

    def _apply_cursor(self, query: Any, kind: str, values: Tuple[Any, ...]) -> Any:
        return getattr(query, kind)(_cursor_argument(values))

    def _apply_offset(self, query: Any, offset: int) -> Any:
        return query.offset(offset)

    def _apply_limit(self, query: Any, limit: int) -> Any:
        return query.limit(limit)

    async def _run(self, query: Any) -> List[T]:
        snapshots = await query.get(transaction=self._transaction)
        return [
            self._to_entity(snapshot.id, snapshot.to_dict())
            for snapshot in snapshots
            if snapshot.exists
        ]

    async def _run_count(self, query: Any) -> Optional[int]:
        aggregation = query.count(alias=COUNT_ALIAS)
        results = await aggregation.get(transaction=self._transaction)
        for row in results:
            for result in row:
                if result.alias == COUNT_ALIAS:
                    return result.value
        return None

    # --- Transactions & Batches ---

    async def run_transaction(
        self, func: Callable[["FirestoreTransactionRepository[T]"], Awaitable[R]]
    ) -> R:
        """
        Run ``func`` inside a Firestore transaction. It receives a repository
        whose reads and writes are bound to the transaction; the client
        retries ``func`` on contention, so it must be safe to re-run.
        """
        transaction = self._client.transaction()

        @async_transactional
        async def _in_transaction(tx: AsyncTransaction) -> R:
            return await func(FirestoreTransactionRepository(self, tx))

        return await _in_transaction(transaction)

    def create_batch(self) -> "FirestoreBatch[T]":
        return FirestoreBatch(self)

    # --- Error Handling ---

    def _handle_db_error(self, error: Exception, context: str = "operation") -> None:
        self._logger.error(f"Firestore error during {context}: {error}", exc_info=True)
        if isinstance(error, NotFound):
            raise ObjectNotFoundException(
                f"{self.entity_type.__name__} not found while {context}."
            ) from error
        if isinstance(error, Conflict):
            raise KeyAlreadyExistsException(
                f"A document already exists while {context}."
            ) from error
        raise error


class FirestoreTransactionRepository(FirestoreRepository[T], Generic[T]):
    """
    Repository view bound to one transaction. Reads (including queries and
    counts) run through the transaction; writes are queued on it and
    applied when the transaction commits.
    """

    def __init__(self, parent: FirestoreRepository[T], transaction: AsyncTransaction):
        self._client = parent._client
        self._collection_path = parent.collection_path
        self._collection = parent.collection
        self._entity_type = parent.entity_type
        self._transaction = transaction
        Repository.__init__(self, validate_models=parent._validate_models)

    async def _insert_document(
        self, entity_id: Optional[str], document: Dict[str, Any]
    ) -> str:
        doc_ref = self._document(entity_id)
        self._transaction.create(doc_ref, document)
        return doc_ref.id

    async def _update_document(self, entity_id: str, document: Dict[str, Any]) -> None:
        self._transaction.update(self._document(entity_id), document)

    async def _delete_document(self, entity_id: str) -> None:
        self._transaction.delete(self._document(entity_id))


class FirestoreBatch(Generic[T]):
    """Groups writes for one collection into a single atomic Firestore batch."""

    def __init__(self, repository: FirestoreRepository[T]):
        self._repository = repository
        self._batch = repository._client.batch()
        self._size = 0

    def create(self, entity: T, user_ref: Any = None) -> T:
        self._repository.validate_entity(entity)
        doc_ref = self._repository._document(getattr(entity, ID_FIELD, None))
        setattr(entity, ID_FIELD, doc_ref.id)
        document = entity_to_document(entity)
        if user_ref is not None:
            stamp_created(entity, document, user_ref)
        self._batch.create(doc_ref, document)
        self._size += 1
        return entity

    def update(self, entity: T, user_ref: Any = None) -> T:
        self._repository.validate_entity(entity)
        entity_id = getattr(entity, ID_FIELD, None)
        if entity_id is None:
            raise ValueError(f"Entity must have '{ID_FIELD}' set to be updated.")
        document = entity_to_document(entity)
        stamp_modified(entity, document, user_ref)
        self._batch.update(self._repository._document(entity_id), document)
        self._size += 1
        return entity

    def delete(self, entity_id: str) -> None:
        self._batch.delete(self._repository._document(entity_id))
        self._size += 1

    async def commit(self) -> None:
        await self._batch.commit()
        base_logger.debug(
            f"Committed batch of {self._size} write(s) to "
            f"'{self._repository.collection_path}'."
        )
        self._size = 0
