# tests/conftest.py
import logging
import os
import uuid
from datetime import datetime
from typing import List, Optional

import pytest
import pytest_asyncio
from pydantic import BaseModel, ConfigDict, Field

from async_odm.base.query import _PROXY_CACHE
from async_odm.memory.base import MemoryDatabase, MemoryRepository

# Silence verbose loggers
logging.getLogger("pymongo").setLevel(logging.ERROR)
logging.getLogger("motor").setLevel(logging.ERROR)
logging.getLogger("google").setLevel(logging.WARNING)


# --- Constants ---
TEST_MONGO_DB_NAME = "pytest_async_odm_db"
MONGO_URI = os.getenv("TEST_MONGO_URI")
FIRESTORE_EMULATOR_HOST = os.getenv("FIRESTORE_EMULATOR_HOST")
FIRESTORE_PROJECT = os.getenv("TEST_FIRESTORE_PROJECT", "pytest-async-odm")

# --- List of available implementation keys ---
REPOSITORY_IMPLEMENTATIONS = ["memory", "mongodb", "firestore"]


# --- Logger Fixture ---


@pytest.fixture(scope="session")
def logger():
    """Create a test logger."""
    _logger = logging.getLogger("test_odm_logger")
    if not _logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        handler.setLevel(logging.DEBUG)
        _logger.addHandler(handler)
        _logger.setLevel(logging.DEBUG)
        _logger.propagate = False
    return logging.LoggerAdapter(_logger, {})


@pytest.fixture(autouse=True)
def clear_proxy_cache():
    _PROXY_CACHE.clear()
    yield
    _PROXY_CACHE.clear()


# --- Test Entities ---


class Address(BaseModel):
    street: str = ""
    city: str = ""
    zipcode: int = 0


class Entity(BaseModel):
    """A simple entity class for repository testing."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str = Field(default_factory=lambda: f"Test Entity {uuid.uuid4().hex[:8]}")
    value: int = 100
    tags: List[str] = Field(default_factory=list)
    active: bool = True
    owner: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    address: Address = Field(default_factory=Address)
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    modified_at: Optional[datetime] = None
    modified_by: Optional[str] = None


class Note:
    """Plain class entity, hydrated through its type hints."""

    id: Optional[str]
    text: str
    priority: int

    def __init__(self, id: Optional[str] = None, text: str = "", priority: int = 0):
        self.id = id
        self.text = text
        self.priority = priority


@pytest.fixture
def test_entity() -> Entity:
    """Creates a test entity instance with default values."""
    return Entity()


# --- Memory Backend ---


@pytest.fixture
def memory_database() -> MemoryDatabase:
    return MemoryDatabase()


@pytest.fixture
def memory_repository_factory(memory_database):
    """Factory for memory repositories sharing one database per test."""

    def _create(entity_cls, collection_path=None, validate_models=False):
        return MemoryRepository(
            entity_cls,
            collection_path=collection_path,
            database=memory_database,
            validate_models=validate_models,
        )

    return _create


@pytest.fixture
def memory_repository(memory_repository_factory) -> MemoryRepository[Entity]:
    return memory_repository_factory(Entity)


SEED_ENTITIES = [
    Entity(id="e1", name="alpha", value=10, tags=["red", "blue"], owner="ann",
           address=Address(city="Oslo", zipcode=1000)),
    Entity(id="e2", name="bravo", value=20, tags=["green"], owner="bob",
           address=Address(city="Bergen", zipcode=5000)),
    Entity(id="e3", name="charlie", value=30, tags=["red"], owner=None,
           address=Address(city="Oslo", zipcode=1001)),
    Entity(id="e4", name="delta", value=40, tags=[], owner="ann",
           active=False, address=Address(city="Tromso", zipcode=9000)),
    Entity(id="e5", name="echo", value=50, tags=["blue", "green"], owner="cid",
           address=Address(city="Bergen", zipcode=5001)),
]


async def seed(repo, entities=None) -> List[Entity]:
    stored = []
    for entity in entities or SEED_ENTITIES:
        stored.append(await repo.create(entity.model_copy(deep=True)))
    return stored


@pytest_asyncio.fixture
async def seeded_repository(memory_repository):
    await seed(memory_repository)
    return memory_repository


# --- Real Backends (opt-in through environment) ---


@pytest_asyncio.fixture(scope="function")
async def motor_client():
    """Provides a Motor client when TEST_MONGO_URI points at a server."""
    if not MONGO_URI:
        pytest.skip("TEST_MONGO_URI not set.")
    import motor.motor_asyncio

    client = motor.motor_asyncio.AsyncIOMotorClient(
        MONGO_URI, serverSelectionTimeoutMS=2000
    )
    await client.drop_database(TEST_MONGO_DB_NAME)
    yield client
    await client.drop_database(TEST_MONGO_DB_NAME)
    client.close()


@pytest.fixture(scope="function")
def firestore_client():
    """Provides a Firestore client bound to the emulator."""
    if not FIRESTORE_EMULATOR_HOST:
        pytest.skip("FIRESTORE_EMULATOR_HOST not set.")
    from google.cloud.firestore import AsyncClient

    return AsyncClient(project=FIRESTORE_PROJECT)


@pytest.fixture(params=REPOSITORY_IMPLEMENTATIONS)
def repository_factory(request, memory_repository_factory):
    """Parametrized fixture to get a repository factory per implementation key."""
    impl_key = request.param
    collection = f"entities_{uuid.uuid4().hex[:8]}"
    if impl_key == "memory":
        return lambda entity_cls: memory_repository_factory(entity_cls, collection)
    if impl_key == "mongodb":
        from async_odm.db_implementations.mongodb_repository import MongoDBRepository

        client = request.getfixturevalue("motor_client")
        return lambda entity_cls: MongoDBRepository(
            client, TEST_MONGO_DB_NAME, collection, entity_cls
        )
    if impl_key == "firestore":
        from async_odm.db_implementations.firestore_repository import (
            FirestoreRepository,
        )

        client = request.getfixturevalue("firestore_client")
        return lambda entity_cls: FirestoreRepository(client, collection, entity_cls)
    raise ValueError(f"Unknown repository implementation key: {impl_key}")
