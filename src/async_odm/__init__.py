# src/async_odm/__init__.py

"""
Async ODM Library Initialization.

This package provides a fluent query builder and repository layer over
document stores, with Firestore, MongoDB and in-memory backends.

It initializes a logger with a NullHandler and makes the repository
interface, the query builder, exceptions, and backend implementations
available at the top level.
"""

import logging

# --------------------------------------------------------------------------
# Logging Setup
# --------------------------------------------------------------------------
# Library logs are discarded unless the consuming application attaches a
# handler to the "async_odm" logger.
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())
logger.propagate = False

# --------------------------------------------------------------------------
# Core Interface and Exception Exports
# --------------------------------------------------------------------------
from .base.interfaces import Repository
from .base.executor import QueryExecutor
from .base.exceptions import (
    ObjectNotFoundException,
    KeyAlreadyExistsException,
    ObjectValidationException,
    UsageError,
    ValueLimitError,
    QueryStateError,
)

# --------------------------------------------------------------------------
# Query Building Exports
# --------------------------------------------------------------------------
from .base.query import (
    Field,
    QueryBuilder,
    QueryOptions,
    QueryOperator,
    SortDirection,
    MAX_MEMBERSHIP_VALUES,
)

# --------------------------------------------------------------------------
# Repository Implementation Exports
# --------------------------------------------------------------------------
from .memory.base import MemoryDatabase, MemoryRepository
from .db_implementations.firestore_repository import FirestoreRepository
from .db_implementations.mongodb_repository import MongoDBRepository

__all__ = [
    # Core
    "Repository",
    "QueryExecutor",
    # Exceptions
    "ObjectNotFoundException",
    "KeyAlreadyExistsException",
    "ObjectValidationException",
    "UsageError",
    "ValueLimitError",
    "QueryStateError",
    # Query
    "Field",
    "QueryBuilder",
    "QueryOptions",
    "QueryOperator",
    "SortDirection",
    "MAX_MEMBERSHIP_VALUES",
    # Implementations
    "MemoryDatabase",
    "MemoryRepository",
    "FirestoreRepository",
    "MongoDBRepository",
    # Logging
    "logger",
]

__version__ = "0.1.0"
