"""API endpoints for managing decision share links."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from database import get_db
from schemas.api.share import (
    AccessLogListResponse,
    AccessLogResponse,
    AccessStatisticsResponse,
    ShareLinkCreateRequest,
    ShareLinkDetailResponse,
    ShareLinkExtendRequest,
    ShareLinkListResponse,
    ShareLinkRegenerateRequest,
    ShareLinkResponse,
)
from services import share_link_service
from services.share_access_gate import ShareAccessGate, ShareTokenOptions
from services.share_config import ShareSettings
from services.share_errors import (
    InvalidArgumentError,
    NotFoundError,
    ShareLimitError,
    ShareServiceError,
)
from services.share_store import AccessLogRecord, ShareTokenRecord
from services.web_utils import isoformat
from web.deps import get_actor_id, get_share_gate, get_share_settings

router = APIRouter(tags=["Share"])


def _serialize_share(record: ShareTokenRecord, settings: ShareSettings) -> ShareLinkResponse:
    return ShareLinkResponse(
        id=str(record.id),
        decisionId=str(record.decision_id),
        token=record.token,
        url=settings.share_url(record.token),
        allowedActions=list(record.allowed_actions),
        passcodeProtected=record.passcode_protected,
        revoked=record.revoked,
        revokedAt=isoformat(record.revoked_at),
        expiresAt=isoformat(record.expires_at),
        createdBy=str(record.created_by),
        createdAt=isoformat(record.created_at),
    )


def _serialize_log(record: AccessLogRecord) -> AccessLogResponse:
    return AccessLogResponse(
        id=str(record.id),
        shareTokenId=str(record.share_token_id),
        decisionId=str(record.decision_id),
        actionTaken=record.action_taken,
        clientName=record.client_name,
        clientEmail=record.client_email,
        userAgent=record.user_agent,
        metadata=dict(record.metadata or {}),
        createdAt=isoformat(record.created_at),
    )


def _service_error(exc: ShareServiceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"code": "share.not_found", "message": str(exc)})
    if isinstance(exc, InvalidArgumentError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "share.invalid_argument", "message": str(exc)},
        )
    if isinstance(exc, ShareLimitError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": "share.limit_reached", "message": str(exc)})
    if exc.retryable:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "share.retry", "message": "Please try again later."},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "share.error", "message": "Share link request failed."},
    )


@router.post(
    "/decisions/{decision_id}/shares",
    response_model=ShareLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a share link",
)
def create_share_link(
    decision_id: uuid.UUID,
    payload: ShareLinkCreateRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkResponse:
    try:
        record = share_link_service.create_share_link(
            db,
            decision_id=decision_id,
            actor_id=actor_id,
            passcode=payload.passcode,
            expires_at=payload.expiresAt,
            expires_in_days=payload.expiresInDays,
            allowed_actions=payload.allowedActions,
            gate=gate,
        )
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return _serialize_share(record, settings)


@router.get("/decisions/{decision_id}/shares", response_model=ShareLinkListResponse, summary="List share links")
def list_share_links(
    decision_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkListResponse:
    try:
        records = share_link_service.list_share_links(db, decision_id=decision_id, actor_id=actor_id)
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return ShareLinkListResponse(shares=[_serialize_share(record, settings) for record in records])


@router.get("/shares/{share_id}", response_model=ShareLinkDetailResponse, summary="Share link with recent access")
def get_share_link(
    share_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=200),
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkDetailResponse:
    try:
        detail = share_link_service.get_share_link_with_logs(db, token_id=share_id, actor_id=actor_id, limit=limit)
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return ShareLinkDetailResponse(
        share=_serialize_share(detail.share, settings),
        accessLogs=[_serialize_log(log) for log in detail.access_logs],
        accessCount=detail.access_count,
    )


@router.delete("/shares/{share_id}", response_model=ShareLinkResponse, summary="Revoke a share link")
def revoke_share_link(
    share_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkResponse:
    try:
        record = share_link_service.revoke_share_link(db, token_id=share_id, actor_id=actor_id, gate=gate)
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return _serialize_share(record, settings)


@router.post(
    "/shares/{share_id}/regenerate",
    response_model=ShareLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Revoke a share link and issue its replacement",
)
def regenerate_share_link(
    share_id: uuid.UUID,
    payload: ShareLinkRegenerateRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkResponse:
    options = ShareTokenOptions(
        passcode=payload.passcode,
        clear_passcode=payload.clearPasscode,
        expires_at=payload.expiresAt,
        clear_expiry=payload.clearExpiry,
        allowed_actions=payload.allowedActions,
    )
    try:
        record = share_link_service.regenerate_share_link(
            db, token_id=share_id, actor_id=actor_id, options=options, gate=gate
        )
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return _serialize_share(record, settings)


@router.post("/shares/{share_id}/extend", response_model=ShareLinkResponse, summary="Push a share link's expiry forward")
def extend_share_link(
    share_id: uuid.UUID,
    payload: ShareLinkExtendRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
    gate: ShareAccessGate = Depends(get_share_gate),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareLinkResponse:
    try:
        record = share_link_service.extend_share_link(
            db, token_id=share_id, actor_id=actor_id, new_expires_at=payload.expiresAt, gate=gate
        )
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return _serialize_share(record, settings)


@router.get("/shares/{share_id}/access-logs", response_model=AccessLogListResponse, summary="Access log page")
def list_access_logs(
    share_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> AccessLogListResponse:
    try:
        logs = share_link_service.list_access_logs(db, token_id=share_id, actor_id=actor_id, limit=limit, offset=offset)
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return AccessLogListResponse(logs=[_serialize_log(log) for log in logs])


@router.get("/shares/{share_id}/stats", response_model=AccessStatisticsResponse, summary="Access statistics")
def access_statistics(
    share_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> AccessStatisticsResponse:
    try:
        stats = share_link_service.access_statistics(db, token_id=share_id, actor_id=actor_id)
    except ShareServiceError as exc:
        raise _service_error(exc) from exc
    return AccessStatisticsResponse(
        totalViews=stats.total_views,
        lockedViews=stats.locked_views,
        totalQuestions=stats.total_questions,
        totalChangeRequests=stats.total_change_requests,
        totalConfirmations=stats.total_confirmations,
        passcodeFailures=stats.passcode_failures,
        deniedAttempts=stats.denied_attempts,
        uniqueClients=stats.unique_clients,
        lastAccessAt=isoformat(stats.last_access_at),
    )


__all__ = ["router"]
