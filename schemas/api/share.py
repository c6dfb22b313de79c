"""Schemas for the decision share link API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _normalize_actions(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    normalized: List[str] = []
    for raw in values:
        if not isinstance(raw, str):
            continue
        trimmed = raw.strip()
        if trimmed and trimmed not in normalized:
            normalized.append(trimmed)
    return normalized


class ShareLinkCreateRequest(BaseModel):
    passcode: Optional[str] = Field(default=None, description="Optional passcode required to open the link.")
    expiresAt: Optional[datetime] = Field(default=None, description="Absolute expiry (UTC when no offset is given).")
    expiresInDays: Optional[int] = Field(default=None, ge=1, le=365, description="Days until expiration.")
    allowedActions: Optional[List[str]] = Field(
        default=None,
        description="Subset of confirm_choice, ask_question, request_change. Empty means read-only.",
    )

    @field_validator("allowedActions")
    @classmethod
    def _clean_actions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_actions(value)


class ShareLinkRegenerateRequest(BaseModel):
    passcode: Optional[str] = Field(default=None, description="New passcode; omit to keep the current one.")
    clearPasscode: bool = Field(default=False, description="Drop passcode protection on the new link.")
    expiresAt: Optional[datetime] = Field(default=None, description="New expiry; omit to carry the current one.")
    clearExpiry: bool = Field(default=False, description="Issue the new link without an expiry.")
    allowedActions: Optional[List[str]] = None

    @field_validator("allowedActions")
    @classmethod
    def _clean_actions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _normalize_actions(value)


class ShareLinkExtendRequest(BaseModel):
    expiresAt: datetime = Field(..., description="New expiry; must be later than the current one.")


class ShareLinkResponse(BaseModel):
    id: str
    decisionId: str
    token: str
    url: str
    allowedActions: List[str] = Field(default_factory=list)
    passcodeProtected: bool = False
    revoked: bool = False
    revokedAt: Optional[str] = None
    expiresAt: Optional[str] = None
    createdBy: str
    createdAt: Optional[str] = None


class ShareLinkListResponse(BaseModel):
    shares: List[ShareLinkResponse] = Field(default_factory=list)


class AccessLogResponse(BaseModel):
    id: str
    shareTokenId: str
    decisionId: str
    actionTaken: str
    clientName: Optional[str] = None
    clientEmail: Optional[str] = None
    userAgent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[str] = None


class AccessLogListResponse(BaseModel):
    logs: List[AccessLogResponse] = Field(default_factory=list)


class ShareLinkDetailResponse(BaseModel):
    share: ShareLinkResponse
    accessLogs: List[AccessLogResponse] = Field(default_factory=list)
    accessCount: int = 0


class AccessStatisticsResponse(BaseModel):
    totalViews: int
    lockedViews: int = Field(default=0, description="Visits that stopped at the passcode prompt.")
    totalQuestions: int
    totalChangeRequests: int
    totalConfirmations: int
    passcodeFailures: int
    deniedAttempts: int
    uniqueClients: int
    lastAccessAt: Optional[str] = None


# Public (anonymous client) schemas -------------------------------------------


class ClientIdentity(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    passcode: Optional[str] = Field(default=None, description="Passcode when the link is protected.")


class PasscodeRequest(BaseModel):
    passcode: str = Field(..., min_length=1, max_length=256)


class ConfirmChoiceRequest(ClientIdentity):
    optionId: str = Field(..., description="Option chosen by the client.")


class AskQuestionRequest(ClientIdentity):
    question: str = Field(..., min_length=1, max_length=4000)


class RequestChangeRequest(ClientIdentity):
    changeRequest: str = Field(..., min_length=1, max_length=4000)
    reason: Optional[str] = Field(default=None, max_length=1000)


class SharedOption(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class SharedDecision(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    finalChoiceOptionId: Optional[str] = None
    options: List[SharedOption] = Field(default_factory=list)
    allowedActions: List[str] = Field(default_factory=list)


class SharedDecisionResponse(BaseModel):
    state: str = Field(..., description="`valid` or `passcode_required`.")
    decision: Optional[SharedDecision] = None


class ClientActionResponse(BaseModel):
    status: str = "ok"
    id: Optional[str] = None
