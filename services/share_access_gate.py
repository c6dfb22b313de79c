"""Access gate for anonymous clients arriving through a decision share link.

Every call refetches the token record, so revocation or expiry that happens
between page load and a later action is always observed. Each call against an
existing token appends exactly one access log entry describing the outcome;
the decision never depends on whether that append succeeded.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from core.logging import get_logger, mask_token
from services.share_config import CLIENT_ACTIONS, ShareSettings
from services.share_errors import (
    ActionRejectedError,
    InvalidArgumentError,
    InvalidTokenError,
    NotFoundError,
    PasscodeMismatchError,
    TokenGenerationError,
    UnauthorizedActionError,
)
from services.share_metrics import observe_access_outcome
from services.share_store import (
    AccessLogStore,
    ClientContext,
    ShareTokenRecord,
    ShareTokenStore,
    as_utc,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ACTION_LOG_NAMES = {
    "confirm_choice": "confirmed",
    "ask_question": "asked_question",
    "request_change": "requested_change",
}

STATUS_VALID = "valid"
STATUS_REQUIRES_PASSCODE = "requires_passcode"
STATUS_INVALID = "invalid"

_TOKEN_BYTES = 32
_TOKEN_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_password_hasher(settings: ShareSettings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.argon_time_cost,
        memory_cost=settings.argon_memory_cost,
        parallelism=settings.argon_parallelism,
        hash_len=32,
        salt_len=16,
    )


def normalize_actions(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Validate and de-duplicate client actions, keeping their canonical order."""
    if values is None:
        return ()
    requested = set()
    for raw in values:
        action = (raw or "").strip()
        if not action:
            continue
        if action not in CLIENT_ACTIONS:
            raise InvalidArgumentError(f"Unsupported client action: {action}")
        requested.add(action)
    return tuple(action for action in CLIENT_ACTIONS if action in requested)


@dataclass(frozen=True)
class ValidationResult:
    status: str
    share_token_id: Optional[uuid.UUID] = None
    decision_id: Optional[uuid.UUID] = None
    allowed_actions: Tuple[str, ...] = ()
    reason: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status == STATUS_VALID

    @property
    def requires_passcode(self) -> bool:
        return self.status == STATUS_REQUIRES_PASSCODE

    @property
    def invalid(self) -> bool:
        return self.status == STATUS_INVALID

    def raise_for_status(self) -> None:
        if self.invalid:
            raise InvalidTokenError(self.reason or "invalid")


@dataclass(frozen=True)
class PasscodeResult:
    valid: bool
    share_token_id: Optional[uuid.UUID] = None
    decision_id: Optional[uuid.UUID] = None
    allowed_actions: Tuple[str, ...] = ()
    reason: Optional[str] = None

    def raise_for_status(self) -> None:
        if self.valid:
            return
        if self.reason in {"revoked", "expired"}:
            raise InvalidTokenError(self.reason)
        raise PasscodeMismatchError("Passcode did not match.")


@dataclass(frozen=True)
class ShareTokenOptions:
    """Settings for a new token; ``None`` (or blank passcode) fields inherit or use defaults."""

    passcode: Optional[str] = None
    clear_passcode: bool = False
    expires_at: Optional[datetime] = None
    clear_expiry: bool = False
    allowed_actions: Optional[Iterable[str]] = None


class ShareAccessGate:
    """Validates share tokens, gates passcodes and authorizes client actions."""

    def __init__(
        self,
        tokens: ShareTokenStore,
        access_logs: AccessLogStore,
        *,
        settings: Optional[ShareSettings] = None,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
    ):
        self._tokens = tokens
        self._access_logs = access_logs
        self._settings = settings or ShareSettings.load()
        self._clock = clock or _utcnow
        self._hasher = hasher or build_password_hasher(self._settings)

    @property
    def settings(self) -> ShareSettings:
        return self._settings

    def now(self) -> datetime:
        return as_utc(self._clock())

    # Client-facing checks ---------------------------------------------------

    def validate_token(self, token: str, *, client: Optional[ClientContext] = None) -> ValidationResult:
        record = self._fetch(token, operation="validate")
        rejection = self._reject_unusable(record, client, operation="validate")
        if rejection is not None:
            return ValidationResult(status=STATUS_INVALID, share_token_id=record.id, reason=rejection)

        if record.passcode_protected:
            self._append(record, "viewed", client, {"passcode_required": True})
            observe_access_outcome("validate", STATUS_REQUIRES_PASSCODE)
            return ValidationResult(status=STATUS_REQUIRES_PASSCODE, share_token_id=record.id)

        self._append(record, "viewed", client)
        observe_access_outcome("validate", STATUS_VALID)
        return ValidationResult(
            status=STATUS_VALID,
            share_token_id=record.id,
            decision_id=record.decision_id,
            allowed_actions=record.allowed_actions,
        )

    def verify_passcode(
        self,
        token: str,
        passcode: Optional[str],
        *,
        client: Optional[ClientContext] = None,
    ) -> PasscodeResult:
        record = self._fetch(token, operation="passcode")
        rejection = self._reject_unusable(record, client, operation="passcode")
        if rejection is not None:
            return PasscodeResult(valid=False, share_token_id=record.id, reason=rejection)

        if not record.passcode_protected:
            self._append(record, "viewed", client)
            observe_access_outcome("passcode", "not_required")
            return self._granted_passcode(record)

        if not self._passcode_matches(record, passcode):
            self._append(record, "passcode_failed", client)
            observe_access_outcome("passcode", "mismatch")
            return PasscodeResult(valid=False, share_token_id=record.id, reason="passcode_invalid")

        self._append(record, "passcode_succeeded", client)
        observe_access_outcome("passcode", "ok")
        return self._granted_passcode(record)

    def authorize_action(
        self,
        token: str,
        action: str,
        *,
        passcode: Optional[str] = None,
        client: Optional[ClientContext] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        try:
            self.require_action(token, action, passcode=passcode, client=client, metadata=metadata)
        except UnauthorizedActionError:
            return False
        return True

    def require_action(
        self,
        token: str,
        action: str,
        *,
        passcode: Optional[str] = None,
        client: Optional[ClientContext] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        perform: Optional[Callable[[ShareTokenRecord], None]] = None,
    ) -> ShareTokenRecord:
        """Authorize ``action`` or raise :class:`UnauthorizedActionError`.

        When ``perform`` is given it runs after authorization and before the
        action is logged, so the action name is only recorded once the change
        it describes has been applied. A rejection raised by ``perform`` is
        logged as ``unauthorized_attempt`` and re-raised.

        Returns the freshly loaded token so callers can act on its decision.
        """
        normalized = (action or "").strip()
        try:
            record = self._fetch(token, operation="authorize")
        except NotFoundError as exc:
            raise UnauthorizedActionError("not_found", action=normalized) from exc

        rejection = self._reject_unusable(record, client, operation="authorize", metadata={"action": normalized})
        if rejection is not None:
            raise UnauthorizedActionError(rejection, action=normalized)

        if record.passcode_protected and not self._passcode_matches(record, passcode):
            self._append(record, "passcode_failed", client, {"action": normalized})
            observe_access_outcome("authorize", "passcode_invalid")
            raise UnauthorizedActionError("passcode_invalid", action=normalized)

        if normalized not in ACTION_LOG_NAMES or normalized not in record.allowed_actions:
            self._append(record, "unauthorized_attempt", client, {"action": normalized})
            observe_access_outcome("authorize", "action_not_allowed")
            raise UnauthorizedActionError("action_not_allowed", action=normalized)

        if perform is not None:
            try:
                perform(record)
            except (ActionRejectedError, InvalidArgumentError, NotFoundError) as exc:
                rejected = dict(metadata or {})
                rejected.update({"action": normalized, "rejected": type(exc).__name__})
                self._append(record, "unauthorized_attempt", client, rejected)
                observe_access_outcome("authorize", "rejected")
                raise

        self._append(record, ACTION_LOG_NAMES[normalized], client, metadata)
        observe_access_outcome("authorize", "granted")
        return record

    # Token lifecycle ---------------------------------------------------------

    def issue_token(
        self,
        *,
        decision_id: uuid.UUID,
        created_by: uuid.UUID,
        options: Optional[ShareTokenOptions] = None,
    ) -> ShareTokenRecord:
        """Create a brand-new share token for ``decision_id``."""
        options = options or ShareTokenOptions()
        now = self.now()
        allowed = (
            normalize_actions(options.allowed_actions)
            if options.allowed_actions is not None
            else self._settings.default_allowed_actions
        )
        expires_at = self._resolve_expiry(options.expires_at, now) if options.expires_at else self._default_expiry(now)
        if options.clear_expiry:
            expires_at = None
        passcode_hash = None if options.clear_passcode else self._hash_passcode(options.passcode)
        return self._tokens.insert(
            decision_id=decision_id,
            token=self._new_token_string(),
            created_by=created_by,
            allowed_actions=allowed,
            expires_at=expires_at,
            passcode_hash=passcode_hash,
            created_at=now,
        )

    def regenerate_token(
        self,
        old_token_id: uuid.UUID,
        options: Optional[ShareTokenOptions] = None,
        *,
        created_by: Optional[uuid.UUID] = None,
    ) -> ShareTokenRecord:
        """Revoke ``old_token_id`` and issue its replacement in one commit."""
        old = self._tokens.find_by_id(old_token_id)
        if old is None:
            raise NotFoundError("Share link not found.")
        options = options or ShareTokenOptions()
        now = self.now()

        allowed = (
            normalize_actions(options.allowed_actions)
            if options.allowed_actions is not None
            else old.allowed_actions
        )
        if options.clear_passcode:
            passcode_hash = None
        elif options.passcode and options.passcode.strip():
            passcode_hash = self._hash_passcode(options.passcode)
        else:
            passcode_hash = old.passcode_hash

        if options.clear_expiry:
            expires_at = None
        elif options.expires_at is not None:
            expires_at = self._resolve_expiry(options.expires_at, now)
        elif old.expires_at is not None and old.expires_at > now:
            expires_at = old.expires_at
        else:
            expires_at = self._default_expiry(now) if old.expires_at is not None else None

        token = self._new_token_string()
        with self._tokens.atomic():
            if not old.revoked:
                self._tokens.update(old.id, revoked=True, revoked_at=now)
            replacement = self._tokens.insert(
                decision_id=old.decision_id,
                token=token,
                created_by=created_by or old.created_by,
                allowed_actions=allowed,
                expires_at=expires_at,
                passcode_hash=passcode_hash,
                created_at=now,
            )
        logger.info(
            "Regenerated share token old=%s new=%s decision=%s",
            old.id,
            replacement.id,
            replacement.decision_id,
        )
        return replacement

    def revoke_token(self, token_id: uuid.UUID) -> ShareTokenRecord:
        record = self._tokens.find_by_id(token_id)
        if record is None:
            raise NotFoundError("Share link not found.")
        if record.revoked:
            return record
        return self._tokens.update(record.id, revoked=True, revoked_at=self.now())

    def extend_expiration(self, token_id: uuid.UUID, new_expires_at: datetime) -> ShareTokenRecord:
        record = self._tokens.find_by_id(token_id)
        if record is None:
            raise NotFoundError("Share link not found.")
        now = self.now()
        if record.revoked:
            raise InvalidArgumentError("Revoked share links cannot be extended.")
        if record.is_expired(now):
            raise InvalidArgumentError("Share link has already expired; regenerate it instead.")
        target = self._resolve_expiry(new_expires_at, now)
        if record.expires_at is not None and target <= record.expires_at:
            raise InvalidArgumentError("New expiry must be later than the current expiry.")
        return self._tokens.update(record.id, expires_at=target)

    # Internals ---------------------------------------------------------------

    def _fetch(self, token: str, *, operation: str) -> ShareTokenRecord:
        candidate = (token or "").strip()
        record = self._tokens.find_by_token(candidate) if candidate else None
        if record is None:
            logger.info("Share token lookup miss operation=%s token=%s", operation, mask_token(candidate))
            observe_access_outcome(operation, "not_found")
            raise NotFoundError("Share link not found.")
        return record

    def _reject_unusable(
        self,
        record: ShareTokenRecord,
        client: Optional[ClientContext],
        *,
        operation: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        if record.revoked:
            self._append(record, "revoked_attempt", client, metadata)
            observe_access_outcome(operation, "revoked")
            return "revoked"
        if record.is_expired(self.now()):
            self._append(record, "expired_attempt", client, metadata)
            observe_access_outcome(operation, "expired")
            return "expired"
        return None

    def _append(
        self,
        record: ShareTokenRecord,
        action_taken: str,
        client: Optional[ClientContext],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._access_logs.append(
            share_token_id=record.id,
            decision_id=record.decision_id,
            action_taken=action_taken,
            client=client,
            metadata=metadata,
        )

    @staticmethod
    def _granted_passcode(record: ShareTokenRecord) -> PasscodeResult:
        return PasscodeResult(
            valid=True,
            share_token_id=record.id,
            decision_id=record.decision_id,
            allowed_actions=record.allowed_actions,
        )

    def _passcode_matches(self, record: ShareTokenRecord, passcode: Optional[str]) -> bool:
        provided = (passcode or "").strip()
        if not provided or not record.passcode_hash:
            return False
        try:
            return self._hasher.verify(record.passcode_hash, provided)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("Stored passcode hash for share=%s could not be verified.", record.id)
            return False

    def _hash_passcode(self, passcode: Optional[str]) -> Optional[str]:
        if passcode is None:
            return None
        cleaned = passcode.strip()
        if not cleaned:
            return None
        if len(cleaned) < self._settings.passcode_min_length:
            raise InvalidArgumentError(
                f"Passcode must be at least {self._settings.passcode_min_length} characters."
            )
        if len(cleaned) > self._settings.passcode_max_length:
            raise InvalidArgumentError(
                f"Passcode must be at most {self._settings.passcode_max_length} characters."
            )
        return self._hasher.hash(cleaned)

    def _default_expiry(self, now: datetime) -> Optional[datetime]:
        if not self._settings.default_ttl_days:
            return None
        return now + timedelta(days=self._settings.default_ttl_days)

    def _resolve_expiry(self, value: datetime, now: datetime) -> datetime:
        target = as_utc(value)
        if target <= now:
            raise InvalidArgumentError("Expiry must be in the future.")
        if target - now > timedelta(days=self._settings.max_ttl_days):
            raise InvalidArgumentError(f"Expiry cannot be more than {self._settings.max_ttl_days} days away.")
        return target

    def _new_token_string(self) -> str:
        for _ in range(_TOKEN_ATTEMPTS):
            candidate = secrets.token_urlsafe(_TOKEN_BYTES)
            if self._tokens.find_by_token(candidate) is None:
                return candidate
        raise TokenGenerationError("Failed to create a unique share link. Please retry.")


__all__ = [
    "ACTION_LOG_NAMES",
    "PasscodeResult",
    "ShareAccessGate",
    "ShareTokenOptions",
    "ValidationResult",
    "build_password_hasher",
    "normalize_actions",
]
