"""Append-only access log for share token activity."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.sql import func

from database import Base

ACCESS_ACTIONS = (
    "viewed",
    "confirmed",
    "asked_question",
    "requested_change",
    "passcode_failed",
    "passcode_succeeded",
    "expired_attempt",
    "revoked_attempt",
    "unauthorized_attempt",
)


class AccessLog(Base):
    __tablename__ = "access_logs"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    share_token_id = Column(
        UUID(as_uuid=True),
        ForeignKey("share_tokens.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    decision_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    action_taken = Column(String(32), nullable=False)
    client_name = Column(String(255), nullable=True)
    client_email = Column(String(320), nullable=True)
    ip_hash = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)


__all__ = ["ACCESS_ACTIONS", "AccessLog"]
