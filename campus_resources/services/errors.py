from __future__ import annotations


class DomainError(Exception):
    """Business-rule failure detected before any row was changed."""

    code = "DomainError"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(DomainError):
    code = "ValidationError"


class InvalidOperation(DomainError):
    code = "InvalidOperation"


class InsufficientStock(InvalidOperation):
    code = "InsufficientStock"

    def __init__(self, tool_id: int, requested: int, available: int):
        super().__init__(f"Only {available} unit(s) available for tool {tool_id}; requested {requested}.")
        self.tool_id = tool_id
        self.requested = requested
        self.available = available


class ReservationConflict(DomainError):
    code = "Conflict"

    def __init__(self, room_id: int, start_time: str, end_time: str):
        super().__init__(f"Room {room_id} is not available between {start_time} and {end_time}.")
        self.room_id = room_id
        self.start_time = start_time
        self.end_time = end_time


class InvalidState(DomainError):
    code = "InvalidState"

    def __init__(self, entity: str, current: str, action: str, message: str | None = None):
        super().__init__(message or f"Cannot {action} a {entity} in state '{current}'.")
        self.entity = entity
        self.current = current
        self.action = action


class Forbidden(DomainError):
    code = "Forbidden"
    status_code = 403


class NotFound(DomainError):
    code = "NotFound"
    status_code = 404

    def __init__(self, entity: str, entity_id: int):
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class ConcurrentUpdate(DomainError):
    code = "ConcurrentUpdate"
    status_code = 409
