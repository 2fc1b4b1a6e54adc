class NotFoundError(ValueError):
    """Raised when a template or session id is absent from the store."""


class ValidationError(ValueError):
    """Raised when an input field is empty or outside its accepted range."""


class StorageUnavailable(RuntimeError):
    """Raised when the SQLite store cannot be opened, read or written."""


class InvalidStateError(RuntimeError):
    """Raised when a workout command is issued from a state that forbids it."""
