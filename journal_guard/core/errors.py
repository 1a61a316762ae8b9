"""
Error taxonomy for the journal vault.

Cryptographic and migration failures are fatal for the record or the startup
that hit them and are never retried automatically. Budget exhaustion is an
expected outcome callers handle locally.
"""

from datetime import datetime
from typing import Optional


class JournalGuardError(Exception):
    """Base class for all journal_guard errors."""


class KeyDerivationError(JournalGuardError):
    """Raised when a key cannot be derived from the supplied parameters."""


class VaultNotInitializedError(JournalGuardError):
    """Raised when unlocking a vault that has no passphrase configured yet."""


class VaultLockedError(JournalGuardError):
    """Raised when key material is required but the vault is locked."""


class InvalidPassphraseError(JournalGuardError):
    """Raised when a passphrase does not match the stored verification tag."""


class IntegrityError(JournalGuardError):
    """Raised when a stored record fails authentication or has an unknown shape.

    The record is treated as unreadable. No plaintext is ever returned
    alongside this error.
    """

    def __init__(self, message: str, store_id: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.store_id = store_id
        self.key = key


class MigrationError(JournalGuardError):
    """Raised when a schema migration step cannot complete.

    ``last_completed`` is the schema version left on disk, which is the
    starting point for a manual recovery or export.
    """

    def __init__(
        self,
        message: str,
        from_version: Optional[int] = None,
        to_version: Optional[int] = None,
        last_completed: Optional[int] = None,
    ):
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version
        self.last_completed = last_completed


class BudgetExhaustedError(JournalGuardError):
    """Raised when a release would push a ledger past its epsilon limit.

    Nothing is consumed when this is raised. Callers treat it as
    "no release this time".
    """

    def __init__(
        self,
        message: str,
        user_id: str,
        requested_epsilon: float,
        remaining_epsilon: float,
        window_end: datetime,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.requested_epsilon = requested_epsilon
        self.remaining_epsilon = remaining_epsilon
        self.window_end = window_end


class ConfigSignatureError(ValueError):
    """Raised when a signed configuration file is unsigned or has been altered."""


class LedgerConflictError(JournalGuardError):
    """Raised when a budget ledger row changed between read and commit."""
