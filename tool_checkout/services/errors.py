from __future__ import annotations


class InventoryError(Exception):
    """Base class for failures raised by the checkout core."""

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(InventoryError):
    """Caller-fixable problem; never retried."""

    kind = "Validation"


class NotFoundError(InventoryError):
    kind = "NotFound"

    def __init__(self, entity: str, identifier: object | None = None):
        message = f"{entity} not found." if identifier is None else f"{entity} {identifier} not found."
        super().__init__(message)
        self.entity = entity
        self.identifier = identifier


class TagNamespaceExhausted(ValidationError):
    kind = "Exhausted"

    def __init__(self, namespace: str):
        super().__init__(f"No more available tag ids in the {namespace} namespace.")
        self.namespace = namespace


class ConflictError(ValidationError):
    """A concurrent writer won the race; the operation may be re-run.

    Callers that only distinguish validation failures see a conflict as one;
    the HTTP layer maps the narrower kind to 409.
    """

    kind = "Conflict"


class StorageError(InventoryError):
    kind = "Storage"
