"""Exception taxonomy for the membership sync engine.

Failures that cross the remote CRM boundary are SyncFailure subclasses and
carry the HTTP status (0 when the request never produced a response).
Transient failures are retried by SyncClient; permanent ones surface
immediately. Valid non-error outcomes (empty search result, an order that
was already recorded) are returned as values and never raised.
"""

from __future__ import annotations

from dataclasses import dataclass


class MembershipSyncError(Exception):
    """Base class for all engine errors."""


class SyncFailure(MembershipSyncError):
    """A remote CRM call failed.

    Args:
        message: Human-readable description.
        status_code: HTTP status code, or 0 for transport-level failures.
    """

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientSyncFailure(SyncFailure):
    """Timeout, transport error, 5xx, 429 or exhausted rate budget -- retryable.

    Args:
        message: Human-readable description.
        status_code: HTTP status code, or 0 for transport-level failures.
        retry_after: Seconds the remote asked us to wait, if supplied.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentSyncFailure(SyncFailure):
    """4xx other than 429, or a malformed response -- never retried."""


class SlotExhausted(MembershipSyncError):
    """A family owner has no available dependent slots."""

    def __init__(self, owner_id: str, total: int, used: int) -> None:
        super().__init__(
            f"Family account {owner_id} has no available slots ({used}/{total} used)"
        )
        self.owner_id = owner_id
        self.total = total
        self.used = used


class SlotLedgerViolation(MembershipSyncError):
    """A ledger mutation would break 0 <= used <= total."""


class ConfigurationMissing(MembershipSyncError):
    """A required mapping (fund, campaign, level) is absent from configuration."""

    def __init__(self, key: str, detail: str = "") -> None:
        message = f"Missing configuration: {key}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.key = key


class AccountNotFound(MembershipSyncError):
    """The local directory has no account with the given id."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


@dataclass(frozen=True)
class StepError:
    """One failed pipeline step, collected instead of aborting the event."""

    step: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, step: str, exc: Exception) -> StepError:
        return cls(step=step, error_type=type(exc).__name__, message=str(exc))
