"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base exception raised for sync engine failures."""


class CodecError(SyncError):
    """Raised when a frame cannot be decoded into a message."""


class SignatureInvalidError(SyncError):
    """Raised when a message or delegation proof fails verification."""


class UnauthorizedActionError(SyncError):
    """Raised when an actor attempts an action it has no authority for.

    Remote messages that fail authorization are recorded in the reducer's
    audit log instead; this exception only reaches callers of local actions.
    """


class PermissionDeniedError(SyncError):
    """Raised when a local action is not allowed for the caller's identity."""

    def __init__(self, action: str, reason: str) -> None:
        super().__init__(f"{action} not permitted: {reason}")
        self.action = action
        self.reason = reason


class NoValidDelegationError(SyncError):
    """Raised when signing is attempted without an active delegation grant."""


class WalletError(SyncError):
    """Base exception for wallet signing failures."""


class WalletUnavailableError(WalletError):
    """Raised when no wallet adapter or account is connected."""


class WalletSigningRejectedError(WalletError):
    """Raised when the wallet declines to sign."""


class WalletSigningTimeoutError(WalletError):
    """Raised when the wallet does not answer within the signing window."""


class TransportError(SyncError):
    """Raised when a publish or subscribe call fails."""


class PublishTimeoutError(TransportError):
    """Raised when a publish is not acknowledged in time.

    The outcome is unknown: the message may or may not have propagated.
    """


class CircuitOpenError(TransportError):
    """Raised when a publish is refused locally because the circuit breaker is open.

    Nothing was sent, so callers should not count it as a delivery attempt.
    """
