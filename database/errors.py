"""Exceptions raised by the document store."""
from __future__ import annotations


class StoreError(Exception):
    """Base class for every document-store failure."""

    def __init__(self, message: str, path: str = "", operation: str = ""):
        super().__init__(message)
        self.path = path
        self.operation = operation

    def to_dict(self) -> dict:
        return {
            "kind": type(self).__name__,
            "message": str(self),
            "path": self.path,
            "operation": self.operation,
        }


class PermissionDeniedError(StoreError):
    def __init__(self, path: str, operation: str):
        super().__init__(
            f"Missing or insufficient permissions: {operation} on {path}",
            path=path, operation=operation,
        )


class NotFoundError(StoreError):
    def __init__(self, path: str, operation: str = "get"):
        super().__init__(f"No document to {operation}: {path}",
                         path=path, operation=operation)


class StoreUnavailableError(StoreError):
    """The backing database rejected or dropped the request."""
