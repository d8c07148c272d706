class ObjectNotFoundException(Exception):
    """Exception raised when a document with the specified identifier does not exist."""

    def __init__(self, message: str = "The requested object was not found."):
        super().__init__(message)


class KeyAlreadyExistsException(Exception):
    """Exception raised when creating an entity whose id is already taken."""

    def __init__(self, message: str = "An object with the same key already exists."):
        super().__init__(message)


class ObjectValidationException(Exception):
    def __init__(self, message: str = "Object validation failed", errors=None):
        super().__init__(message)
        self.errors = errors or []


# --- Query Usage Errors ---
class UsageError(Exception):
    """Base class for misuse of the query builder. Never retried."""


class ValueLimitError(UsageError, ValueError):
    """Raised when a membership filter receives more values than the backend allows."""


class QueryStateError(UsageError, RuntimeError):
    """Raised when a once-per-expression builder method is called again."""
