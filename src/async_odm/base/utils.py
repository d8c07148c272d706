import logging
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar, get_type_hints

from pydantic import BaseModel, ValidationError

from .exceptions import ObjectValidationException

log = logging.getLogger(__name__)

T = TypeVar("T")

ID_FIELD = "id"
CREATED_AT = "created_at"
CREATED_BY = "created_by"
MODIFIED_AT = "modified_at"
MODIFIED_BY = "modified_by"
AUDIT_FIELDS = (CREATED_AT, CREATED_BY, MODIFIED_AT, MODIFIED_BY)


def generate_id() -> str:
    """Generate a new unique ID for entities."""
    return str(uuid.uuid4())


def prepare_for_storage(data: Any) -> Any:
    """
    Recursively convert Pydantic models, dataclasses and collections into
    plain structures a document store accepts.

    Native document values (datetimes, bytes, backend references) are kept
    as they are so the store can persist them with their own types. Sets and
    tuples become lists, which is the only sequence type documents hold.

    Args:
        data: The data to convert

    Returns:
        The converted data, ready for storage
    """
    if data is None:
        return None

    if is_dataclass(data) and not isinstance(data, type):
        return prepare_for_storage(asdict(data))

    if isinstance(data, BaseModel):
        return prepare_for_storage(data.model_dump(by_alias=True))

    if isinstance(data, dict):
        return {k: prepare_for_storage(v) for k, v in data.items()}

    if isinstance(data, (list, tuple, set)):
        return [prepare_for_storage(item) for item in data]

    # Pydantic URL types
    if data.__class__.__module__ == "pydantic.networks":
        return str(data)

    return data


def entity_to_document(entity: Any) -> Dict[str, Any]:
    """Serialize an entity to a document body. The id is not part of the body."""
    if isinstance(entity, BaseModel):
        data = entity.model_dump(by_alias=True)
    elif is_dataclass(entity) and not isinstance(entity, type):
        data = asdict(entity)
    elif hasattr(entity, "__dict__"):
        data = dict(vars(entity))
    else:
        raise TypeError(f"Cannot automatically serialize entity: {type(entity).__name__}")

    prepared = prepare_for_storage(data)
    prepared.pop(ID_FIELD, None)
    return {k: v for k, v in prepared.items() if not k.startswith("_")}


def is_entity_like(value: Any) -> bool:
    """True for model, dataclass and plain-object instances a cursor may be taken from."""
    if isinstance(value, (BaseModel, Enum, datetime)) or isinstance(value, type):
        return isinstance(value, BaseModel)
    return is_dataclass(value) or hasattr(value, "__dict__")


def cursor_document(value: Any) -> Optional[Dict[str, Any]]:
    """
    The stored form of a document-like cursor, including its id, or None
    when the cursor is a plain value.
    """
    if isinstance(value, dict):
        return value
    if not is_entity_like(value):
        return None
    document = entity_to_document(value)
    entity_id = getattr(value, ID_FIELD, None)
    if entity_id is not None:
        document[ID_FIELD] = entity_id
    return document


def get_path_value(document: Any, field_path: str) -> Any:
    """Read a dot path from a document; numeric parts index lists. None when absent."""
    current = document
    for part in field_path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def cursor_field_value(value: Any, field_path: str) -> Any:
    """Value a cursor contributes for ``field_path``; plain values pass through."""
    document = cursor_document(value)
    if document is None:
        return value
    return get_path_value(document, field_path)


def _entity_fields(entity_type: Type) -> Optional[set]:
    if issubclass(entity_type, BaseModel):
        return None  # pydantic decides what to accept
    try:
        return set(get_type_hints(entity_type).keys())
    except Exception:
        return set(getattr(entity_type, "__annotations__", {}).keys())


def build_entity(entity_type: Type[T], doc_id: Any, data: Optional[Dict[str, Any]]) -> T:
    """
    Hydrate a stored document into an instance of ``entity_type``.

    Naive datetimes coming back from the store are made UTC-aware, and the
    document id is injected as the entity ``id``.
    """
    raw = dict(data or {})
    kwargs: Dict[str, Any] = {}
    for name, value in raw.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        kwargs[name] = value
    kwargs[ID_FIELD] = str(doc_id) if doc_id is not None else None

    fields = _entity_fields(entity_type)
    if fields is not None:
        kwargs = {k: v for k, v in kwargs.items() if k in fields}

    try:
        if issubclass(entity_type, BaseModel):
            return entity_type.model_validate(kwargs)
        return entity_type(**kwargs)
    except (ValidationError, TypeError) as e:
        log.error(
            f"Failed to hydrate {entity_type.__name__} from document '{doc_id}': {e}",
            exc_info=True,
        )
        raise ValueError(
            f"Failed to deserialize document '{doc_id}' into {entity_type.__name__}"
        ) from e


def validate_entity_model(entity: Any) -> None:
    """Re-run pydantic validation over the entity's current state."""
    if not isinstance(entity, BaseModel):
        return
    try:
        type(entity).model_validate(entity.model_dump())
    except ValidationError as e:
        raise ObjectValidationException(
            f"Validation failed for {type(entity).__name__}: {e.error_count()} error(s)",
            errors=e.errors(),
        ) from e


def _declares(entity: Any, name: str) -> bool:
    if isinstance(entity, BaseModel):
        return name in type(entity).model_fields
    return hasattr(entity, name)


def set_entity_attr(entity: Any, name: str, value: Any) -> None:
    """Set ``name`` on the entity only when the entity declares that field."""
    if _declares(entity, name):
        setattr(entity, name, value)


def stamp_created(entity: Any, document: Dict[str, Any], user_ref: Any) -> None:
    now = datetime.now(timezone.utc)
    document[CREATED_BY] = user_ref
    document[CREATED_AT] = now
    set_entity_attr(entity, CREATED_BY, user_ref)
    set_entity_attr(entity, CREATED_AT, now)


def stamp_modified(entity: Any, document: Dict[str, Any], user_ref: Optional[Any]) -> None:
    """Drop caller-supplied audit fields and stamp the modification when a user is known."""
    for name in AUDIT_FIELDS:
        document.pop(name, None)
    if user_ref is None:
        return
    now = datetime.now(timezone.utc)
    document[MODIFIED_BY] = user_ref
    document[MODIFIED_AT] = now
    set_entity_attr(entity, MODIFIED_BY, user_ref)
    set_entity_attr(entity, MODIFIED_AT, now)
