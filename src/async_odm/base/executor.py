# src/async_odm/base/executor.py
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, Tuple, TypeVar

from async_odm.base.query import FilterClause, OrderSpec, QueryOptions

log = logging.getLogger(__name__)

T = TypeVar("T")


class QueryExecutor(Generic[T], ABC):
    """
    Compiles QueryOptions into a backend query and runs it.

    The compile order is fixed here, once for every backend:

    1. filters, in the order they were recorded
    2. ordering
    3. cursors: start_at, start_after, end_at, end_before
    4. offset
    5. limit (forced to 1 for single-result execution)
    6. the custom query transform, given the compiled query and the base
       collection

    Backends only provide the primitive hooks. Nothing is retried and no
    backend or transform error is wrapped.
    """

    # --- Backend Hooks ---

    @abstractmethod
    def _base_query(self) -> Any:
        """The untouched collection reference queries start from."""

    @abstractmethod
    def _apply_filter(self, query: Any, clause: FilterClause) -> Any:
        pass

    @abstractmethod
    def _apply_order(self, query: Any, order: OrderSpec) -> Any:
        pass

    @abstractmethod
    def _apply_cursor(self, query: Any, kind: str, values: Tuple[Any, ...]) -> Any:
        """Apply one cursor member; ``kind`` is start_at/start_after/end_at/end_before."""

    @abstractmethod
    def _apply_offset(self, query: Any, offset: int) -> Any:
        pass

    @abstractmethod
    def _apply_limit(self, query: Any, limit: int) -> Any:
        pass

    @abstractmethod
    async def _run(self, query: Any) -> List[T]:
        """Execute the compiled query and hydrate results in order."""

    @abstractmethod
    async def _run_count(self, query: Any) -> Optional[int]:
        """Issue a count-only request; may return None when the store reports no count."""

    # --- Compilation ---

    def _compile_filters(self, base: Any, options: QueryOptions) -> Any:
        query = base
        for clause in options.filters:
            query = self._apply_filter(query, clause)
        return query

    async def _apply_custom_query(
        self, query: Any, base: Any, options: QueryOptions
    ) -> Any:
        if options.custom_query is None:
            return query
        result = options.custom_query(query, base)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def compile(self, options: QueryOptions, single: bool = False) -> Any:
        """Build the backend-native query for ``options`` without running it."""
        base = self._base_query()
        query = self._compile_filters(base, options)

        if options.order is not None:
            query = self._apply_order(query, options.order)

        for kind, values in options.cursor.members():
            query = self._apply_cursor(query, kind, values)

        if options.offset is not None:
            query = self._apply_offset(query, options.offset)

        if single:
            query = self._apply_limit(query, 1)
        elif options.limit is not None:
            query = self._apply_limit(query, options.limit)

        return await self._apply_custom_query(query, base, options)

    # --- Execution ---

    async def execute(self, options: QueryOptions, single: bool = False) -> List[T]:
        """Compile and run ``options``; ``single`` forces a limit of one."""
        log.debug(f"Executing query (single={single}): {options!r}")
        try:
            query = await self.compile(options, single=single)
            results = await self._run(query)
        except Exception as e:
            log.error(f"Query execution failed: {e}", exc_info=True)
            raise
        log.debug(f"Query returned {len(results)} result(s).")
        return results

    async def execute_count(self, options: QueryOptions) -> int:
        """Count documents matching the filters and custom query of ``options``."""
        log.debug(f"Executing count: {options!r}")
        try:
            base = self._base_query()
            query = self._compile_filters(base, options)
            query = await self._apply_custom_query(query, base, options)
            count = await self._run_count(query)
        except Exception as e:
            log.error(f"Count execution failed: {e}", exc_info=True)
            raise
        return count if count is not None else 0
