"""SQLAlchemy-backed stores for share tokens, access logs and activities."""

from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from models.access_log import ACCESS_ACTIONS, AccessLog
from models.activity import Activity
from models.share_token import ShareToken
from services.share_errors import NotFoundError, StoreUnavailableError, TokenGenerationError
from services.share_metrics import observe_access_log_failure

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)
_MAX_CLIENT_FIELD = 255
_MAX_USER_AGENT = 512
_UPDATABLE_FIELDS = {"revoked", "revoked_at", "expires_at"}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _trim(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:limit]


@dataclass(frozen=True)
class ClientContext:
    """Self-reported client details attached to access log entries.

    None of these values identify the client; they are stored for the owner's
    convenience only.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def as_actor_meta(self) -> Dict[str, Any]:
        return {
            "name": _trim(self.name, _MAX_CLIENT_FIELD),
            "email": _trim(self.email, _MAX_CLIENT_FIELD),
        }


@dataclass(frozen=True)
class ShareTokenRecord:
    id: uuid.UUID
    decision_id: uuid.UUID
    token: str
    expires_at: Optional[datetime]
    allowed_actions: Tuple[str, ...]
    revoked: bool
    revoked_at: Optional[datetime]
    created_by: uuid.UUID
    created_at: Optional[datetime]
    passcode_hash: Optional[str] = field(default=None, repr=False)

    @property
    def passcode_protected(self) -> bool:
        return bool(self.passcode_hash)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass(frozen=True)
class AccessLogRecord:
    id: uuid.UUID
    share_token_id: uuid.UUID
    decision_id: uuid.UUID
    action_taken: str
    client_name: Optional[str]
    client_email: Optional[str]
    ip_hash: Optional[str]
    user_agent: Optional[str]
    metadata: Mapping[str, Any]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class AccessStatistics:
    total_views: int
    locked_views: int
    total_questions: int
    total_change_requests: int
    total_confirmations: int
    passcode_failures: int
    denied_attempts: int
    unique_clients: int
    last_access_at: Optional[datetime]


def _row_to_token(row: ShareToken) -> ShareTokenRecord:
    return ShareTokenRecord(
        id=row.id,
        decision_id=row.decision_id,
        token=row.token,
        expires_at=as_utc(row.expires_at),
        allowed_actions=tuple(row.allowed_actions or ()),
        revoked=bool(row.revoked),
        revoked_at=as_utc(row.revoked_at),
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
        passcode_hash=row.passcode_hash,
    )


def _row_to_log(row: AccessLog) -> AccessLogRecord:
    return AccessLogRecord(
        id=row.id,
        share_token_id=row.share_token_id,
        decision_id=row.decision_id,
        action_taken=row.action_taken,
        client_name=row.client_name,
        client_email=row.client_email,
        ip_hash=row.ip_hash,
        user_agent=row.user_agent,
        metadata=row.metadata_ or {},
        created_at=as_utc(row.created_at),
    )


@contextmanager
def _store_call(session: Session, operation: str) -> Iterator[None]:
    """Translate connectivity failures into :class:`StoreUnavailableError`."""
    try:
        yield
    except _TRANSIENT_ERRORS as exc:
        session.rollback()
        logger.warning("Share store unavailable during %s: %s", operation, exc.__class__.__name__)
        raise StoreUnavailableError(f"Store unavailable during {operation}.") from exc


class ShareTokenStore:
    """Lookup and single-record mutation of share tokens.

    Writes commit immediately unless they run inside :meth:`atomic`, in which
    case they are flushed and committed together when the block exits.
    """

    def __init__(self, session: Session):
        self._session = session
        self._atomic_depth = 0

    @property
    def session(self) -> Session:
        return self._session

    def _finish_write(self) -> None:
        if self._atomic_depth:
            self._session.flush()
        else:
            self._session.commit()

    @contextmanager
    def atomic(self) -> Iterator["ShareTokenStore"]:
        self._atomic_depth += 1
        try:
            with _store_call(self._session, "atomic"):
                yield self
                if self._atomic_depth == 1:
                    self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            raise TokenGenerationError("Failed to persist share token changes.") from exc
        except Exception:
            self._session.rollback()
            raise
        finally:
            self._atomic_depth -= 1

    def find_by_token(self, token: str) -> Optional[ShareTokenRecord]:
        stmt = select(ShareToken).where(ShareToken.token == token).execution_options(populate_existing=True)
        with _store_call(self._session, "find_by_token"):
            row = self._session.execute(stmt).scalars().first()
        return _row_to_token(row) if row else None

    def find_by_id(self, token_id: uuid.UUID) -> Optional[ShareTokenRecord]:
        stmt = select(ShareToken).where(ShareToken.id == token_id).execution_options(populate_existing=True)
        with _store_call(self._session, "find_by_id"):
            row = self._session.execute(stmt).scalars().first()
        return _row_to_token(row) if row else None

    def insert(
        self,
        *,
        decision_id: uuid.UUID,
        token: str,
        created_by: uuid.UUID,
        allowed_actions: Sequence[str],
        expires_at: Optional[datetime] = None,
        passcode_hash: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ShareTokenRecord:
        row = ShareToken(
            id=uuid.uuid4(),
            decision_id=decision_id,
            token=token,
            created_by=created_by,
            allowed_actions=list(allowed_actions),
            expires_at=expires_at,
            passcode_hash=passcode_hash,
            revoked=False,
            created_at=created_at or datetime.now(timezone.utc),
        )
        with _store_call(self._session, "insert"):
            self._session.add(row)
            try:
                self._finish_write()
            except IntegrityError as exc:
                if self._atomic_depth:
                    raise
                self._session.rollback()
                raise TokenGenerationError("Failed to create a unique share link. Please retry.") from exc
        return _row_to_token(row)

    def update(self, token_id: uuid.UUID, **fields: Any) -> ShareTokenRecord:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported share token fields: {sorted(unknown)}")
        with _store_call(self._session, "update"):
            row = self._session.get(ShareToken, token_id, populate_existing=True)
            if row is None:
                raise NotFoundError("Share link not found.")
            for key, value in fields.items():
                setattr(row, key, value)
            self._finish_write()
        return _row_to_token(row)

    def list_for_decision(self, decision_id: uuid.UUID) -> List[ShareTokenRecord]:
        stmt = (
            select(ShareToken)
            .where(ShareToken.decision_id == decision_id)
            .order_by(ShareToken.created_at.desc())
        )
        with _store_call(self._session, "list_for_decision"):
            rows = self._session.execute(stmt).scalars().all()
        return [_row_to_token(row) for row in rows]

    def count_active(self, decision_id: uuid.UUID, now: datetime) -> int:
        stmt = select(func.count(ShareToken.id)).where(
            ShareToken.decision_id == decision_id,
            ShareToken.revoked.is_(False),
            (ShareToken.expires_at.is_(None)) | (ShareToken.expires_at > now),
        )
        with _store_call(self._session, "count_active"):
            return int(self._session.execute(stmt).scalar_one() or 0)


class AccessLogStore:
    """Append-only access log. Appends are best effort."""

    def __init__(self, session: Session, *, ip_hash_salt: str = ""):
        self._session = session
        self._ip_hash_salt = ip_hash_salt

    def _hash_ip(self, ip: Optional[str]) -> Optional[str]:
        if not ip:
            return None
        payload = f"{ip}|{self._ip_hash_salt}".encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def append(
        self,
        *,
        share_token_id: uuid.UUID,
        decision_id: uuid.UUID,
        action_taken: str,
        client: Optional[ClientContext] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[AccessLogRecord]:
        """Persist one access log entry; failures are logged and swallowed."""
        if action_taken not in ACCESS_ACTIONS:
            raise ValueError(f"Unknown access action: {action_taken}")
        client = client or ClientContext()
        row = AccessLog(
            id=uuid.uuid4(),
            share_token_id=share_token_id,
            decision_id=decision_id,
            action_taken=action_taken,
            client_name=_trim(client.name, _MAX_CLIENT_FIELD),
            client_email=_trim(client.email, _MAX_CLIENT_FIELD),
            ip_hash=self._hash_ip(client.ip),
            user_agent=_trim(client.user_agent, _MAX_USER_AGENT),
            metadata_=dict(metadata or {}),
            created_at=datetime.now(timezone.utc),
        )
        try:
            self._session.add(row)
            self._session.commit()
            return _row_to_log(row)
        except SQLAlchemyError:
            self._session.rollback()
            observe_access_log_failure()
            logger.exception("Failed to append access log action=%s share=%s.", action_taken, share_token_id)
            return None

    def list_by_token(self, share_token_id: uuid.UUID, *, limit: int = 50, offset: int = 0) -> List[AccessLogRecord]:
        stmt = (
            select(AccessLog)
            .where(AccessLog.share_token_id == share_token_id)
            .order_by(AccessLog.created_at.desc(), AccessLog.id)
            .limit(max(1, limit))
            .offset(max(0, offset))
        )
        with _store_call(self._session, "list_by_token"):
            rows = self._session.execute(stmt).scalars().all()
        return [_row_to_log(row) for row in rows]

    def count_by_token(self, share_token_id: uuid.UUID) -> int:
        stmt = select(func.count(AccessLog.id)).where(AccessLog.share_token_id == share_token_id)
        with _store_call(self._session, "count_by_token"):
            return int(self._session.execute(stmt).scalar_one() or 0)

    def aggregate_stats(self, share_token_id: uuid.UUID) -> AccessStatistics:
        counts_stmt = (
            select(AccessLog.action_taken, func.count(AccessLog.id))
            .where(AccessLog.share_token_id == share_token_id)
            .group_by(AccessLog.action_taken)
        )
        locked_stmt = select(func.count(AccessLog.id)).where(
            AccessLog.share_token_id == share_token_id,
            AccessLog.action_taken == "viewed",
            AccessLog.metadata_["passcode_required"].as_boolean().is_(True),
        )
        summary_stmt = select(
            func.count(func.distinct(AccessLog.ip_hash)),
            func.max(AccessLog.created_at),
        ).where(AccessLog.share_token_id == share_token_id)
        with _store_call(self._session, "aggregate_stats"):
            counts = {action: int(total) for action, total in self._session.execute(counts_stmt).all()}
            unique_clients, last_access = self._session.execute(summary_stmt).one()
            locked = int(self._session.execute(locked_stmt).scalar_one() or 0)
        return AccessStatistics(
            total_views=counts.get("viewed", 0) - locked,
            locked_views=locked,
            total_questions=counts.get("asked_question", 0),
            total_change_requests=counts.get("requested_change", 0),
            total_confirmations=counts.get("confirmed", 0),
            passcode_failures=counts.get("passcode_failed", 0),
            denied_attempts=sum(
                counts.get(action, 0) for action in ("expired_attempt", "revoked_attempt", "unauthorized_attempt")
            ),
            unique_clients=int(unique_clients or 0),
            last_access_at=as_utc(last_access),
        )


class ActivityStore:
    """Owner-facing activity feed entries."""

    def __init__(self, session: Session):
        self._session = session

    def add(
        self,
        *,
        decision_id: uuid.UUID,
        action_type: str,
        actor_id: Optional[uuid.UUID] = None,
        actor_meta: Optional[Mapping[str, Any]] = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Activity:
        """Stage an activity in the caller's transaction."""
        row = Activity(
            id=uuid.uuid4(),
            decision_id=decision_id,
            actor_id=actor_id,
            actor_meta=dict(actor_meta or {}),
            action_type=action_type,
            payload=dict(payload or {}),
            created_at=datetime.now(timezone.utc),
        )
        self._session.add(row)
        return row

    def record(self, **kwargs: Any) -> None:
        """Add and commit an activity, logging instead of raising on failure."""
        try:
            self.add(**kwargs)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.exception("Failed to record activity action=%s.", kwargs.get("action_type"))


__all__ = [
    "AccessLogRecord",
    "AccessLogStore",
    "AccessStatistics",
    "ActivityStore",
    "ClientContext",
    "ShareTokenRecord",
    "ShareTokenStore",
    "as_utc",
]
