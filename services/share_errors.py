"""Error taxonomy for share link access and management."""

from __future__ import annotations

from typing import Optional


class ShareServiceError(RuntimeError):
    """Base class for share link failures."""

    retryable = False


class NotFoundError(ShareServiceError):
    """Raised when a token, share link or decision cannot be resolved."""


class InvalidTokenError(ShareServiceError):
    """Raised when a token exists but is revoked or expired.

    ``reason`` is meant for internal logs only; clients receive a generic message.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PasscodeMismatchError(ShareServiceError):
    """Raised when a passcode-protected link is opened with the wrong passcode."""


class UnauthorizedActionError(ShareServiceError):
    """Raised when a client action is denied for a share token."""

    def __init__(self, reason: str, *, action: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.action = action


class InvalidArgumentError(ShareServiceError):
    """Raised when caller input is rejected (bad expiry, unknown action, ...)."""


class StoreUnavailableError(ShareServiceError):
    """Raised when the token or access log store cannot be reached."""

    retryable = True


class TokenGenerationError(ShareServiceError):
    """Raised when a unique share token could not be persisted."""

    retryable = True


class ShareLimitError(ShareServiceError):
    """Raised when a decision already has the maximum number of usable links."""


class ActionRejectedError(ShareServiceError):
    """Raised when an authorized client action cannot be applied to the decision."""


class DecisionAlreadyConfirmedError(ActionRejectedError):
    """Raised when a client tries to confirm a decision that is already decided."""


__all__ = [
    "ActionRejectedError",
    "DecisionAlreadyConfirmedError",
    "InvalidArgumentError",
    "InvalidTokenError",
    "NotFoundError",
    "PasscodeMismatchError",
    "ShareLimitError",
    "ShareServiceError",
    "StoreUnavailableError",
    "TokenGenerationError",
    "UnauthorizedActionError",
]
