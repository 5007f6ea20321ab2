"""rbac-engine exception hierarchy."""

from typing import Iterable, Optional


class RBACError(Exception):
    """Base exception for all RBAC errors.

    ``rule`` names the integrity rule that failed (when one applies) and
    ``entity_ids`` lists the offending entities.
    """

    def __init__(
        self,
        message: str = "",
        code: str = "RBAC_ERROR",
        rule: Optional[str] = None,
        entity_ids: Iterable[str] = (),
    ):
        self.message = message
        self.code = code
        self.rule = rule
        self.entity_ids = tuple(entity_ids)
        super().__init__(message)


class ValidationError(RBACError):
    """Raised for malformed input or a missing required field."""

    def __init__(self, message: str = "Invalid input", rule=None, entity_ids=()):
        super().__init__(message, code="VALIDATION_ERROR", rule=rule, entity_ids=entity_ids)


class NotFoundError(RBACError):
    """Raised when a referenced id does not exist."""

    def __init__(self, message: str = "Entity not found", rule=None, entity_ids=()):
        super().__init__(message, code="NOT_FOUND", rule=rule, entity_ids=entity_ids)


class IntegrityError(RBACError):
    """Raised when a referential-integrity rule would be violated."""

    def __init__(self, message: str = "Integrity rule violated", rule=None, entity_ids=()):
        super().__init__(message, code="INTEGRITY_ERROR", rule=rule, entity_ids=entity_ids)


class ImmutableFieldError(RBACError):
    """Raised when a protected field (or a system role) would be changed."""

    def __init__(self, message: str = "Field is immutable", rule=None, entity_ids=()):
        super().__init__(message, code="IMMUTABLE_FIELD", rule=rule, entity_ids=entity_ids)


class DuplicateError(RBACError):
    """Raised on a uniqueness violation."""

    def __init__(self, message: str = "Duplicate entity", rule=None, entity_ids=()):
        super().__init__(message, code="DUPLICATE", rule=rule, entity_ids=entity_ids)


class PersistenceError(RBACError):
    """Raised when flushing a collection to durable storage fails."""

    def __init__(self, message: str = "Persistence failure", collection: str = ""):
        self.collection = collection
        super().__init__(message, code="PERSISTENCE_ERROR")


class AuditWriteError(PersistenceError):
    """Raised when the audit trail cannot be written."""

    def __init__(self, message: str = "Audit log write failed", collection: str = "audit_log"):
        super().__init__(message, collection=collection)
        self.code = "AUDIT_WRITE_ERROR"
