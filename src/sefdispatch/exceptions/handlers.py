from __future__ import annotations

from typing import Any, Dict, Optional


class DispatchException(Exception):
    """Service error that ``create_app`` turns into a JSON response."""

    code = "DISPATCH_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(DispatchException):
    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, field=field)


class NotFoundError(DispatchException):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any) -> None:
        super().__init__(f"{resource} not found: {resource_id}", resource=resource, id=resource_id)


class StateConflictError(DispatchException):
    code = "STATE_CONFLICT"
    status_code = 409

    def __init__(self, state: str, resource: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(
            f"Operation not allowed in state: {state}", state=state, resource=resource, reason=reason
        )
