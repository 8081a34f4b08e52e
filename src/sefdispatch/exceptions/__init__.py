from sefdispatch.exceptions.handlers import (
    DispatchException,
    NotFoundError,
    StateConflictError,
    ValidationError,
)

__all__ = [
    "DispatchException",
    "ValidationError",
    "NotFoundError",
    "StateConflictError",
]
