"""Exception hierarchy for the data wallet pipeline.

Every failure a task can end with is one of these classes; the class
name and message are what ends up in the task's processing log.
"""

from __future__ import annotations

from enum import Enum


class DataWalletError(Exception):
    """Base class for all pipeline errors."""

    def describe(self) -> str:
        return f"{type(self).__name__}: {self}"


class ValidationError(DataWalletError):
    """The message was rejected; ``errors`` lists every violated rule."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors))


class AuthorizationFailure(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    IDENTITY_MISMATCH = "identity_mismatch"
    INVALID_SIGNATURE = "invalid_signature"


class AuthorizationError(DataWalletError):
    """An authorization attempt was refused.  The task is left untouched."""

    reason: AuthorizationFailure

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(message)


class AuthorizationNotFound(AuthorizationError):
    reason = AuthorizationFailure.NOT_FOUND


class AuthorizationExpired(AuthorizationError):
    reason = AuthorizationFailure.EXPIRED


class IdentityMismatch(AuthorizationError):
    reason = AuthorizationFailure.IDENTITY_MISMATCH


class InvalidSignature(AuthorizationError):
    reason = AuthorizationFailure.INVALID_SIGNATURE


class PublishError(DataWalletError):
    """Uploading an artifact to the content store failed."""


class RetrievalError(DataWalletError):
    """Every retrieval endpoint failed for a locator."""

    def __init__(self, message: str, *, locator: str = "", attempts: list[str] | None = None) -> None:
        self.locator = locator
        self.attempts = list(attempts or [])
        super().__init__(message)


class ContentIntegrityError(DataWalletError):
    """Recomputed content hash (or derived identity) differs from the recorded one."""

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{message} (expected {expected}, got {actual})")


class AttestationError(DataWalletError):
    """A ledger call failed or a transaction did not confirm."""


class NotFoundError(DataWalletError):
    """No task exists with the given identity."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task {task_id} not found")


class DuplicateTaskError(DataWalletError):
    """A task with the same identity is already stored."""


class InvalidTransitionError(DataWalletError):
    """A state change that the task graph does not allow."""


class LedgerSchemaError(DataWalletError):
    """The contract schema is malformed or lacks a required function."""


class MailSourceError(DataWalletError):
    """Listing or acknowledging messages at the mail source failed."""


class FinalizeCancelled(DataWalletError):
    """Finalization of a task was cancelled before it completed."""
