from typing import Any, List, Optional, Tuple

import pytest

from async_odm.base.executor import QueryExecutor
from async_odm.base.query import FilterClause, OrderSpec

from tests.conftest import Entity


class RecordingExecutor(QueryExecutor[Entity]):
    """
    Executor whose compiled query is the tuple of hook calls made, so tests
    can assert on the exact compile sequence.
    """

    entity_type = Entity

    def __init__(self, results: Optional[List[Any]] = None, count: Optional[int] = 0):
        self.results = list(results or [])
        self.count_value = count
        self.compiled: Optional[Tuple] = None
        self.counted: Optional[Tuple] = None
        self.run_error: Optional[Exception] = None

    def _base_query(self) -> Tuple:
        return ()

    def _apply_filter(self, query: Tuple, clause: FilterClause) -> Tuple:
        return query + (("where", clause.field_path, clause.operator.value, clause.value),)

    def _apply_order(self, query: Tuple, order: OrderSpec) -> Tuple:
        return query + (("order_by", order.field_path, order.direction.value),)

    def _apply_cursor(self, query: Tuple, kind: str, values: Tuple[Any, ...]) -> Tuple:
        return query + ((kind, values),)

    def _apply_offset(self, query: Tuple, offset: int) -> Tuple:
        return query + (("offset", offset),)

    def _apply_limit(self, query: Tuple, limit: int) -> Tuple:
        return query + (("limit", limit),)

    async def _run(self, query: Tuple) -> List[Any]:
        self.compiled = query
        if self.run_error is not None:
            raise self.run_error
        return list(self.results)

    async def _run_count(self, query: Tuple) -> Optional[int]:
        self.counted = query
        return self.count_value


def call_names(query: Tuple) -> List[str]:
    return [call[0] for call in query]


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()
