# tests/base/query/test_query_builder.py

import pytest

from async_odm.base.exceptions import QueryStateError, UsageError, ValueLimitError
from async_odm.base.query import (
    FilterClause,
    OrderSpec,
    QueryBuilder,
    QueryOperator,
    QueryOptions,
    SortDirection,
)

from tests.conftest import Address, Entity


@pytest.fixture
def qb() -> QueryBuilder[Entity]:
    return QueryBuilder(model_cls=Entity)


# --- Filters ---

FILTER_METHODS = [
    ("where_equal_to", QueryOperator.EQUAL, "=="),
    ("where_not_equal_to", QueryOperator.NOT_EQUAL, "!="),
    ("where_greater_than", QueryOperator.GREATER_THAN, ">"),
    ("where_greater_or_equal_than", QueryOperator.GREATER_THAN_EQUAL, ">="),
    ("where_less_than", QueryOperator.LESS_THAN, "<"),
    ("where_less_or_equal_than", QueryOperator.LESS_THAN_EQUAL, "<="),
    ("where_array_contains", QueryOperator.ARRAY_CONTAINS, "array-contains"),
]


@pytest.mark.parametrize("method, operator, token", FILTER_METHODS)
def test_scalar_filter_records_clause(qb, method, operator, token):
    result = getattr(qb, method)("value", 5)
    assert result is qb
    options = qb.build()
    assert options.filters == (FilterClause("value", operator, 5),)
    assert options.filters[0].operator.value == token


@pytest.mark.parametrize(
    "method, operator",
    [
        ("where_array_contains_any", QueryOperator.ARRAY_CONTAINS_ANY),
        ("where_in", QueryOperator.IN),
        ("where_not_in", QueryOperator.NOT_IN),
    ],
)
def test_membership_filter_records_clause(qb, method, operator):
    getattr(qb, method)("tags", ("a", "b"))
    assert qb.build().filters == (FilterClause("tags", operator, ["a", "b"]),)


@pytest.mark.parametrize("method", ["where_array_contains_any", "where_in", "where_not_in"])
def test_membership_filter_accepts_ten_values(qb, method):
    getattr(qb, method)("value", list(range(10)))
    assert len(qb.build().filters[0].value) == 10


@pytest.mark.parametrize("method", ["where_array_contains_any", "where_in", "where_not_in"])
def test_membership_filter_rejects_eleven_values(qb, method):
    with pytest.raises(ValueLimitError) as exc_info:
        getattr(qb, method)("value", list(range(11)))
    assert str(exc_info.value) == "This query supports up to 10 values. You provided 11."
    assert qb.build().filters == ()


def test_value_limit_error_is_value_error():
    assert issubclass(ValueLimitError, ValueError)
    assert issubclass(ValueLimitError, UsageError)
    assert issubclass(QueryStateError, RuntimeError)


def test_membership_filter_rejects_scalar(qb):
    with pytest.raises(TypeError):
        qb.where_in("value", 5)


def test_filters_keep_recording_order(qb):
    qb.where_equal_to("name", "a").where_greater_than("value", 1).where_in("owner", ["x"])
    assert [c.field_path for c in qb.build().filters] == ["name", "value", "owner"]


def test_filter_values_are_prepared_for_storage(qb):
    qb.where_equal_to("address", Address(city="Oslo", zipcode=1))
    assert qb.build().filters[0].value == {"street": "", "city": "Oslo", "zipcode": 1}


# --- Limit / Offset ---


def test_limit_once(qb):
    qb.limit(5)
    with pytest.raises(QueryStateError) as exc_info:
        qb.limit(6)
    assert str(exc_info.value) == (
        "A limit function cannot be called more than once in the same query expression"
    )
    assert qb.build().limit == 5


def test_limit_state_checked_before_value(qb):
    qb.limit(5)
    with pytest.raises(QueryStateError):
        qb.limit(0)


@pytest.mark.parametrize("bad", [0, -1, 1.5, True, "3"])
def test_limit_requires_positive_int(qb, bad):
    with pytest.raises(ValueError):
        qb.limit(bad)


def test_offset_once(qb):
    qb.offset(0)
    with pytest.raises(QueryStateError, match="An offset function cannot be called more than once"):
        qb.offset(2)
    assert qb.build().offset == 0


def test_offset_rejects_negative(qb):
    with pytest.raises(ValueError):
        qb.offset(-1)


# --- Cursors ---


@pytest.mark.parametrize("first, second", [
    ("start_at", "start_at"),
    ("start_at", "start_after"),
    ("start_after", "start_at"),
    ("start_after", "start_after"),
])
def test_start_cursor_once(qb, first, second):
    getattr(qb, first)(1)
    with pytest.raises(QueryStateError, match="A startAt function cannot be called more than once"):
        getattr(qb, second)(2)


@pytest.mark.parametrize("first, second", [
    ("end_at", "end_at"),
    ("end_at", "end_before"),
    ("end_before", "end_at"),
    ("end_before", "end_before"),
])
def test_end_cursor_once(qb, first, second):
    getattr(qb, first)(1)
    with pytest.raises(QueryStateError, match="A endAt function cannot be called more than once"):
        getattr(qb, second)(2)


def test_start_and_end_cursors_combine(qb):
    cursor = qb.start_after(10).end_at(40, "x").build().cursor
    assert cursor.start_after == (10,)
    assert cursor.end_at == (40, "x")
    assert cursor.start_at is None and cursor.end_before is None
    assert [name for name, _ in cursor.members()] == ["start_after", "end_at"]


# --- Ordering ---


def test_order_by_same_path_twice(qb):
    qb.order_by_ascending("value")
    with pytest.raises(QueryStateError) as exc_info:
        qb.order_by_descending("value")
    assert str(exc_info.value) == (
        "An orderBy function cannot be called more than once in the same query expression"
    )


def test_order_by_new_path_replaces(qb):
    qb.order_by_ascending("value").order_by_descending("name")
    assert qb.build().order == OrderSpec("name", SortDirection.DESCENDING)


def test_order_by_accessor_and_string_share_tracking(qb):
    qb.order_by_ascending(lambda e: e.address.city)
    with pytest.raises(QueryStateError):
        qb.order_by_ascending("address.city")


def test_order_by_proxy_field(qb):
    qb.order_by_descending(qb.fields.value)
    assert qb.build().order == OrderSpec("value", SortDirection.DESCENDING)


# --- Custom Query ---


def test_custom_query_once(qb):
    qb.custom_query(lambda query, base: query)
    with pytest.raises(QueryStateError) as exc_info:
        qb.custom_query(lambda query, base: query)
    assert str(exc_info.value) == "Only one custom query can be used per query expression"


# --- Build & Terminal Calls ---


def test_build_empty(qb):
    options = qb.build()
    assert options == QueryOptions()
    assert options.cursor.members() == []


def test_build_is_immutable(qb):
    options = qb.where_equal_to("name", "a").build()
    qb.where_equal_to("value", 1)
    assert len(options.filters) == 1
    with pytest.raises(AttributeError):
        options.limit = 3


def test_options_repr_mentions_set_parts(qb):
    text = repr(qb.where_equal_to("name", "a").limit(2).custom_query(lambda q, b: q).build())
    assert "limit=2" in text
    assert "custom_query=<set>" in text
    assert "offset" not in text


async def test_unbound_builder_cannot_execute(qb):
    with pytest.raises(RuntimeError):
        await qb.find()
    with pytest.raises(RuntimeError):
        await qb.count()
