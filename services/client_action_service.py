"""Guest actions performed on a decision through a share link."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from models.activity import DecisionComment
from models.decision import Decision, DecisionOption
from services.share_access_gate import STATUS_REQUIRES_PASSCODE, STATUS_VALID, ShareAccessGate
from services.share_errors import (
    DecisionAlreadyConfirmedError,
    InvalidArgumentError,
    NotFoundError,
    ShareServiceError,
)
from services.share_store import ActivityStore, ClientContext, ShareTokenRecord

logger = get_logger(__name__)

MAX_QUESTION_LENGTH = 4000
MAX_REASON_LENGTH = 1000


@dataclass(frozen=True)
class SharedDecisionView:
    decision_id: uuid.UUID
    title: str
    description: Optional[str]
    status: str
    final_choice_option_id: Optional[uuid.UUID]
    options: List[Dict[str, Any]]
    allowed_actions: List[str]


@dataclass(frozen=True)
class SharedDecisionAccess:
    status: str
    decision: Optional[SharedDecisionView] = None


def _clean_text(value: Optional[str], *, field: str, limit: int) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidArgumentError(f"{field} is required.")
    if len(cleaned) > limit:
        raise InvalidArgumentError(f"{field} is too long.")
    return cleaned


def _guest_meta(record: ShareTokenRecord, client: Optional[ClientContext]) -> Dict[str, Any]:
    meta = (client or ClientContext()).as_actor_meta()
    meta["linkTokenId"] = str(record.id)
    return meta


def _load_decision(db: Session, decision_id: uuid.UUID) -> Decision:
    decision = db.get(Decision, decision_id, populate_existing=True)
    if decision is None:
        raise NotFoundError("Decision not found.")
    return decision


def _commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to persist client action operation=%s.", operation)
        raise ShareServiceError(f"Failed to save {operation}.") from exc


def open_shared_decision(
    db: Session,
    gate: ShareAccessGate,
    *,
    token: str,
    passcode: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> SharedDecisionAccess:
    """Resolve a share link into decision content.

    Without a passcode the token is validated; protected links then come back
    as ``requires_passcode`` with no content. With a passcode the link is
    opened through ``verify_passcode``.
    """
    if passcode is None:
        result = gate.validate_token(token, client=client)
        result.raise_for_status()
        if result.requires_passcode:
            return SharedDecisionAccess(status=STATUS_REQUIRES_PASSCODE)
        decision_id, allowed = result.decision_id, result.allowed_actions
    else:
        passcode_result = gate.verify_passcode(token, passcode, client=client)
        passcode_result.raise_for_status()
        decision_id, allowed = passcode_result.decision_id, passcode_result.allowed_actions
    return SharedDecisionAccess(status=STATUS_VALID, decision=_decision_view(db, decision_id, allowed))


def _decision_view(db: Session, decision_id: uuid.UUID, allowed: Tuple[str, ...]) -> SharedDecisionView:
    decision = _load_decision(db, decision_id)
    options = (
        db.execute(
            select(DecisionOption)
            .where(DecisionOption.decision_id == decision.id)
            .order_by(DecisionOption.created_at.asc())
        )
        .scalars()
        .all()
    )
    return SharedDecisionView(
        decision_id=decision.id,
        title=decision.title,
        description=decision.description,
        status=decision.status,
        final_choice_option_id=decision.final_choice_option_id,
        options=[
            {"id": str(option.id), "title": option.title, "description": option.description}
            for option in options
        ],
        allowed_actions=list(allowed),
    )


def _mark_decided(db: Session, decision_id: uuid.UUID, option_id: uuid.UUID) -> None:
    """Flip the decision to ``decided`` unless another confirmation already did."""
    result = db.execute(
        update(Decision)
        .where(Decision.id == decision_id, Decision.status != "decided")
        .values(status="decided", final_choice_option_id=option_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise DecisionAlreadyConfirmedError("This decision has already been confirmed.")


def confirm_choice(
    db: Session,
    gate: ShareAccessGate,
    *,
    token: str,
    option_id: uuid.UUID,
    passcode: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> Decision:
    """Record the client's final choice.

    The status change is a single conditional UPDATE, so two concurrent
    confirmations cannot both succeed. The ``confirmed`` access log entry is
    only written after the change has been committed.
    """
    option = db.get(DecisionOption, option_id)
    if option is None:
        raise InvalidArgumentError("Option does not belong to this decision.")

    def _apply(record: ShareTokenRecord) -> None:
        if option.decision_id != record.decision_id:
            raise InvalidArgumentError("Option does not belong to this decision.")
        _mark_decided(db, record.decision_id, option.id)
        ActivityStore(db).add(
            decision_id=record.decision_id,
            actor_meta=_guest_meta(record, client),
            action_type="client_confirmed",
            payload={"option_id": str(option.id), "confirmed_at": datetime.now(timezone.utc).isoformat()},
        )
        _commit(db, "confirmation")

    record = gate.require_action(
        token,
        "confirm_choice",
        passcode=passcode,
        client=client,
        metadata={"option_id": str(option_id)},
        perform=_apply,
    )
    logger.info("Client confirmed decision=%s option=%s share=%s", record.decision_id, option.id, record.id)
    return _load_decision(db, record.decision_id)


def _add_comment(
    db: Session,
    record: ShareTokenRecord,
    *,
    kind: str,
    body: str,
    author_meta: Dict[str, Any],
    activity_type: str,
    activity_payload: Dict[str, Any],
) -> DecisionComment:
    comment = DecisionComment(
        id=uuid.uuid4(),
        decision_id=record.decision_id,
        author_meta=author_meta,
        kind=kind,
        body=body,
        created_at=datetime.now(timezone.utc),
    )
    db.add(comment)
    payload = {"comment_id": str(comment.id)}
    payload.update(activity_payload)
    ActivityStore(db).add(
        decision_id=record.decision_id,
        actor_meta={key: value for key, value in author_meta.items() if key in {"name", "email", "linkTokenId"}},
        action_type=activity_type,
        payload=payload,
    )
    _commit(db, kind.replace("_", " "))
    return comment


def ask_question(
    db: Session,
    gate: ShareAccessGate,
    *,
    token: str,
    question: str,
    passcode: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> DecisionComment:
    body = _clean_text(question, field="Question", limit=MAX_QUESTION_LENGTH)
    created: List[DecisionComment] = []

    def _apply(record: ShareTokenRecord) -> None:
        created.append(
            _add_comment(
                db,
                record,
                kind="question",
                body=body,
                author_meta=_guest_meta(record, client),
                activity_type="client_question",
                activity_payload={},
            )
        )

    gate.require_action(token, "ask_question", passcode=passcode, client=client, perform=_apply)
    return created[0]


def request_change(
    db: Session,
    gate: ShareAccessGate,
    *,
    token: str,
    change_request: str,
    reason: Optional[str] = None,
    passcode: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> DecisionComment:
    body = _clean_text(change_request, field="Change request", limit=MAX_QUESTION_LENGTH)
    safe_reason = (reason or "").strip()[:MAX_REASON_LENGTH] or None
    created: List[DecisionComment] = []

    def _apply(record: ShareTokenRecord) -> None:
        meta = _guest_meta(record, client)
        meta.update({"changeRequest": True, "reason": safe_reason})
        created.append(
            _add_comment(
                db,
                record,
                kind="change_request",
                body=body,
                author_meta=meta,
                activity_type="client_change_request",
                activity_payload={"reason": safe_reason},
            )
        )

    gate.require_action(
        token,
        "request_change",
        passcode=passcode,
        client=client,
        metadata={"has_reason": bool(safe_reason)},
        perform=_apply,
    )
    return created[0]


__all__ = [
    "SharedDecisionAccess",
    "SharedDecisionView",
    "ask_question",
    "confirm_choice",
    "open_shared_decision",
    "request_change",
]
