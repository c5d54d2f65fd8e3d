"""
Error Taxonomy
==============

Exceptions raised by the memory engine.

Permission failures are normally reported as boolean results by the
PermissionEngine; ``PermissionDenied`` exists for callers that want to turn
a refused check into control flow.
"""

from typing import Optional


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""


class NotInitialized(MemoryEngineError):
    """An operation was invoked before ``initialize()`` completed."""

    def __init__(self, message: str = "Memory store not initialized. Call initialize() first."):
        super().__init__(message)


class StorageFailure(MemoryEngineError):
    """I/O or constraint failure at the persistence layer."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Storage failure during {operation}{detail}")


class NotFound(MemoryEngineError):
    """A referenced memory, member, rule or request does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PermissionDenied(MemoryEngineError):
    """The caller lacks the required capability."""

    def __init__(self, user_id: str, action: str, resource_type: str, resource_id: Optional[str] = None):
        self.user_id = user_id
        self.action = action
        self.resource_type = resource_type
        self.resource_id = resource_id
        target = f"{resource_type}:{resource_id}" if resource_id else resource_type
        super().__init__(f"User {user_id} may not {action} {target}")


class InvalidTransition(MemoryEngineError):
    """An access request was approved or denied outside the ``pending`` state."""

    def __init__(self, request_id: str, current_status: str, target_status: str):
        self.request_id = request_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Access request {request_id} cannot move from {current_status} to {target_status}"
        )
