# src/async_odm/base/interfaces.py

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from async_odm.base.exceptions import KeyAlreadyExistsException
from async_odm.base.executor import QueryExecutor
from async_odm.base.query import (CustomQuery, FieldRef, FilterValue,
                                  QueryBuilder, QueryOptions,
                                  _generate_fields_proxy)
from async_odm.base.utils import (ID_FIELD, build_entity, entity_to_document,
                                  generate_id, stamp_created, stamp_modified,
                                  validate_entity_model)

# Type variable for any entity
T = TypeVar("T")


class Repository(QueryExecutor[T], Generic[T], ABC):
    """
    Base repository for one document collection.

    Provides CRUD (``find_by_id``, ``create``, ``update``, ``delete``), whole
    collection ``count``, and query entry points: ``query()`` returns a new
    ``QueryBuilder`` bound to this repository, and every builder chain method
    is available directly on the repository as a shortcut that starts a
    fresh builder.

    Concrete backends implement the document hooks and the executor hooks.
    """

    def __init__(self, validate_models: bool = False):
        """
        Initialize repository with validation settings.

        Args:
            validate_models: If True, pydantic entities are re-validated
                             before they are written by create/update.
        """
        self._validate_models = validate_models
        self._logger = logging.getLogger(
            f"{type(self).__module__}.{type(self).__name__}"
            f"[{self.entity_type.__name__}]"
        )

    @property
    @abstractmethod
    def entity_type(self) -> Type[T]:
        """The entity type this repository manages."""
        pass

    @property
    @abstractmethod
    def collection_path(self) -> str:
        """Path (or name) of the collection this repository reads and writes."""
        pass

    @property
    def id_generator(self) -> Callable[[], str]:
        """Function to generate new entity IDs. Can be overridden."""
        return generate_id

    @property
    def fields(self) -> Any:
        """Typed field proxy for the entity, e.g. ``repo.fields.address.city``."""
        return _generate_fields_proxy(self.entity_type)

    # --- Document Hooks ---

    @abstractmethod
    async def _get_document(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored document body, or None if it does not exist."""

    @abstractmethod
    async def _insert_document(
        self, entity_id: Optional[str], document: Dict[str, Any]
    ) -> str:
        """
        Insert a new document and return its id. When ``entity_id`` is None
        the backend assigns one.

        Raises:
            KeyAlreadyExistsException: If the id is already taken.
        """

    @abstractmethod
    async def _update_document(self, entity_id: str, document: Dict[str, Any]) -> None:
        """
        Merge ``document`` into an existing document.

        Raises:
            ObjectNotFoundException: If no document has this id.
        """

    @abstractmethod
    async def _delete_document(self, entity_id: str) -> None:
        pass

    # --- Core CRUD Methods ---

    def _to_entity(self, doc_id: Any, data: Optional[Dict[str, Any]]) -> T:
        return build_entity(self.entity_type, doc_id, data)

    def validate_entity(self, entity: T) -> None:
        """
        Basic validation that an entity instance is of the expected type,
        followed by model validation when the repository enables it.

        Raises:
            ValueError: If the entity is not an instance of `self.entity_type`.
            ObjectValidationException: If model validation fails.
        """
        if not isinstance(entity, self.entity_type):
            raise ValueError(
                f"Entity must be of type {self.entity_type.__name__}, "
                f"but received {type(entity).__name__}"
            )
        if self._validate_models:
            validate_entity_model(entity)

    async def find_by_id(self, entity_id: str) -> Optional[T]:
        """
        Retrieve an entity by its id.

        Returns:
            The entity, or None when no document has this id.
        """
        data = await self._get_document(entity_id)
        if data is None:
            self._logger.debug(
                f"{self.entity_type.__name__} with id '{entity_id}' not found."
            )
            return None
        return self._to_entity(entity_id, data)

    async def create(self, entity: T, user_ref: Any = None) -> T:
        """
        Store a new entity.

        Args:
            entity: The entity instance to store. When its ``id`` is unset,
                    the backend assigns one and it is written back onto the
                    entity.
            user_ref: Optional reference to the acting user. When given,
                      ``created_by`` and ``created_at`` are stamped.

        Returns:
            The stored entity.

        Raises:
            ObjectValidationException: If model validation is enabled and fails.
            KeyAlreadyExistsException: If an entity with the same id exists.
        """
        self.validate_entity(entity)
        entity_id = getattr(entity, ID_FIELD, None)

        if entity_id is not None and await self._get_document(entity_id) is not None:
            raise KeyAlreadyExistsException(
                f"A document with id {entity_id} already exists."
            )

        document = entity_to_document(entity)
        if user_ref is not None:
            stamp_created(entity, document, user_ref)

        new_id = await self._insert_document(entity_id, document)
        if entity_id is None:
            setattr(entity, ID_FIELD, new_id)
        self._logger.info(f"Created {self.entity_type.__name__} with id '{new_id}'.")
        return entity

    async def update(self, entity: T, user_ref: Any = None) -> T:
        """
        Update an existing entity. Audit fields are never taken from the
        entity; ``modified_by``/``modified_at`` are stamped when ``user_ref``
        is given.

        Raises:
            ValueError: If the entity has no id.
            ObjectNotFoundException: If the entity does not exist.
        """
        self.validate_entity(entity)
        entity_id = getattr(entity, ID_FIELD, None)
        if entity_id is None:
            raise ValueError(
                f"{self.entity_type.__name__} must have '{ID_FIELD}' set to be updated."
            )

        document = entity_to_document(entity)
        stamp_modified(entity, document, user_ref)
        await self._update_document(entity_id, document)
        self._logger.info(f"Updated {self.entity_type.__name__} with id '{entity_id}'.")
        return entity

    async def delete(self, entity_id: str) -> None:
        await self._delete_document(entity_id)
        self._logger.info(f"Deleted {self.entity_type.__name__} with id '{entity_id}'.")

    async def count(self) -> int:
        """Count every document in the collection."""
        return await self.execute_count(QueryOptions())

    # --- Query Entry Points ---

    def query(self) -> QueryBuilder[T]:
        """Start a new query expression against this repository."""
        return QueryBuilder(self, self.entity_type)

    def where_equal_to(self, ref: FieldRef, value: FilterValue) -> QueryBuilder[T]:
        return self.query().where_equal_to(ref, value)

    def where_not_equal_to(self, ref: FieldRef, value: FilterValue) -> QueryBuilder[T]:
        return self.query().where_not_equal_to(ref, value)

    def where_greater_than(self, ref: FieldRef, value: FilterValue) -> QueryBuilder[T]:
        return self.query().where_greater_than(ref, value)

    def where_greater_or_equal_than(
        self, ref: FieldRef, value: FilterValue
    ) -> QueryBuilder[T]:
        return self.query().where_greater_or_equal_than(ref, value)

    def where_less_than(self, ref: FieldRef, value: FilterValue) -> QueryBuilder[T]:
        return self.query().where_less_than(ref, value)

    def where_less_or_equal_than(
        self, ref: FieldRef, value: FilterValue
    ) -> QueryBuilder[T]:
        return self.query().where_less_or_equal_than(ref, value)

    def where_array_contains(self, ref: FieldRef, value: FilterValue) -> QueryBuilder[T]:
        return self.query().where_array_contains(ref, value)

    def where_array_contains_any(self, ref: FieldRef, values: Any) -> QueryBuilder[T]:
        return self.query().where_array_contains_any(ref, values)

    def where_in(self, ref: FieldRef, values: Any) -> QueryBuilder[T]:
        return self.query().where_in(ref, values)

    def where_not_in(self, ref: FieldRef, values: Any) -> QueryBuilder[T]:
        return self.query().where_not_in(ref, values)

    def limit(self, num: int) -> QueryBuilder[T]:
        return self.query().limit(num)

    def offset(self, num: int) -> QueryBuilder[T]:
        return self.query().offset(num)

    def start_at(self, *values: Any) -> QueryBuilder[T]:
        return self.query().start_at(*values)

    def start_after(self, *values: Any) -> QueryBuilder[T]:
        return self.query().start_after(*values)

    def end_at(self, *values: Any) -> QueryBuilder[T]:
        return self.query().end_at(*values)

    def end_before(self, *values: Any) -> QueryBuilder[T]:
        return self.query().end_before(*values)

    def order_by_ascending(self, ref: FieldRef) -> QueryBuilder[T]:
        return self.query().order_by_ascending(ref)

    def order_by_descending(self, ref: FieldRef) -> QueryBuilder[T]:
        return self.query().order_by_descending(ref)

    def custom_query(self, func: CustomQuery) -> QueryBuilder[T]:
        return self.query().custom_query(func)

    async def find(self) -> List[T]:
        """Every entity in the collection."""
        return await self.query().find()

    async def find_one(self) -> Optional[T]:
        return await self.query().find_one()
