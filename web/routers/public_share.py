"""Public endpoints used by clients opening a decision share link.

Revoked, expired and unknown tokens all produce the same response so a
client cannot tell a lapsed link from one that never existed.
"""

from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import get_db
from schemas.api.share import (
    AskQuestionRequest,
    ClientActionResponse,
    ClientIdentity,
    ConfirmChoiceRequest,
    PasscodeRequest,
    RequestChangeRequest,
    SharedDecision,
    SharedDecisionResponse,
    SharedOption,
)
from services import client_action_service
from services.client_action_service import SharedDecisionAccess
from services.share_access_gate import ShareAccessGate
from services.share_errors import (
    DecisionAlreadyConfirmedError,
    InvalidArgumentError,
    InvalidTokenError,
    NotFoundError,
    PasscodeMismatchError,
    ShareServiceError,
    StoreUnavailableError,
    UnauthorizedActionError,
)
from services.share_store import ClientContext
from services.web_utils import parse_uuid
from web.deps import get_client_context, get_share_gate

logger = get_logger(__name__)

router = APIRouter(prefix="/public/share", tags=["Public Share"])

UNAVAILABLE_DETAIL = {"code": "share.unavailable", "message": "This link is no longer available."}
RETRY_DETAIL = {"code": "share.retry", "message": "Please try again later."}
PASSCODE_DETAIL = {"code": "share.passcode_invalid", "message": "The passcode is incorrect."}


def _raise_client_error(exc: ShareServiceError) -> NoReturn:
    """Map gate failures onto the small set of client-safe responses."""
    if isinstance(exc, StoreUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_DETAIL) from exc
    if isinstance(exc, PasscodeMismatchError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=PASSCODE_DETAIL) from exc
    if isinstance(exc, UnauthorizedActionError):
        logger.info("Client action denied action=%s reason=%s", exc.action, exc.reason)
        if exc.reason == "passcode_invalid":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=PASSCODE_DETAIL) from exc
        if exc.reason == "action_not_allowed":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "share.action_not_allowed", "message": "This action is not available for this link."},
            ) from exc
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=UNAVAILABLE_DETAIL) from exc
    if isinstance(exc, (NotFoundError, InvalidTokenError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=UNAVAILABLE_DETAIL) from exc
    if isinstance(exc, DecisionAlreadyConfirmedError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "share.already_confirmed", "message": "This decision has already been confirmed."},
        ) from exc
    if isinstance(exc, InvalidArgumentError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "share.invalid_request", "message": str(exc)},
        ) from exc
    logger.warning("Unexpected share failure: %s", exc.__class__.__name__)
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_DETAIL) from exc


def _with_identity(client: ClientContext, payload: ClientIdentity) -> ClientContext:
    return ClientContext(name=payload.name, email=payload.email, ip=client.ip, user_agent=client.user_agent)


def _serialize_access(access: SharedDecisionAccess) -> SharedDecisionResponse:
    if access.decision is None:
        return SharedDecisionResponse(state="passcode_required")
    view = access.decision
    return SharedDecisionResponse(
        state="valid",
        decision=SharedDecision(
            id=str(view.decision_id),
            title=view.title,
            description=view.description,
            status=view.status,
            finalChoiceOptionId=str(view.final_choice_option_id) if view.final_choice_option_id else None,
            options=[SharedOption(**option) for option in view.options],
            allowedActions=view.allowed_actions,
        ),
    )


@router.get("/{token}", response_model=SharedDecisionResponse, summary="Open a shared decision")
def open_shared_decision(
    token: str,
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    client: ClientContext = Depends(get_client_context),
) -> SharedDecisionResponse:
    try:
        access = client_action_service.open_shared_decision(db, gate, token=token, client=client)
    except ShareServiceError as exc:
        _raise_client_error(exc)
    return _serialize_access(access)


@router.post("/{token}/passcode", response_model=SharedDecisionResponse, summary="Unlock a passcode-protected link")
def unlock_shared_decision(
    token: str,
    payload: PasscodeRequest,
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    client: ClientContext = Depends(get_client_context),
) -> SharedDecisionResponse:
    try:
        access = client_action_service.open_shared_decision(
            db, gate, token=token, passcode=payload.passcode, client=client
        )
    except ShareServiceError as exc:
        _raise_client_error(exc)
    return _serialize_access(access)


@router.post("/{token}/confirm", response_model=ClientActionResponse, summary="Confirm a choice")
def confirm_choice(
    token: str,
    payload: ConfirmChoiceRequest,
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    client: ClientContext = Depends(get_client_context),
) -> ClientActionResponse:
    option_id = parse_uuid(payload.optionId, detail="optionId must be a UUID.")
    try:
        decision = client_action_service.confirm_choice(
            db,
            gate,
            token=token,
            option_id=option_id,
            passcode=payload.passcode,
            client=_with_identity(client, payload),
        )
    except ShareServiceError as exc:
        _raise_client_error(exc)
    return ClientActionResponse(id=str(decision.id))


@router.post("/{token}/questions", response_model=ClientActionResponse, status_code=status.HTTP_201_CREATED)
def ask_question(
    token: str,
    payload: AskQuestionRequest,
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    client: ClientContext = Depends(get_client_context),
) -> ClientActionResponse:
    try:
        comment = client_action_service.ask_question(
            db,
            gate,
            token=token,
            question=payload.question,
            passcode=payload.passcode,
            client=_with_identity(client, payload),
        )
    except ShareServiceError as exc:
        _raise_client_error(exc)
    return ClientActionResponse(id=str(comment.id))


@router.post("/{token}/change-requests", response_model=ClientActionResponse, status_code=status.HTTP_201_CREATED)
def request_change(
    token: str,
    payload: RequestChangeRequest,
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    client: ClientContext = Depends(get_client_context),
) -> ClientActionResponse:
    try:
        comment = client_action_service.request_change(
            db,
            gate,
            token=token,
            change_request=payload.changeRequest,
            reason=payload.reason,
            passcode=payload.passcode,
            client=_with_identity(client, payload),
        )
    except ShareServiceError as exc:
        _raise_client_error(exc)
    return ClientActionResponse(id=str(comment.id))


__all__ = ["router"]
