import dataclasses
import uuid
from datetime import timedelta
from typing import List

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.activity import Activity
from services import share_link_service
from services.share_access_gate import ShareAccessGate, ShareTokenOptions
from services.share_errors import InvalidArgumentError, NotFoundError, ShareServiceError
from services.share_store import AccessLogStore, ShareTokenStore


def _activity_types(db_session: Session, decision_id: uuid.UUID) -> List[str]:
    rows = db_session.execute(select(Activity.action_type).where(Activity.decision_id == decision_id)).all()
    return sorted(row[0] for row in rows)


def test_create_share_link_records_activity(gate: ShareAccessGate, decision, owner_id, db_session: Session) -> None:
    record = share_link_service.create_share_link(
        db_session,
        decision_id=decision.id,
        actor_id=owner_id,
        passcode="2468",
        expires_in_days=7,
        allowed_actions=["ask_question"],
        gate=gate,
    )

    assert record.passcode_protected
    assert record.allowed_actions == ("ask_question",)
    assert record.expires_at == gate.now() + timedelta(days=7)
    assert _activity_types(db_session, decision.id) == ["shared"]


def test_create_share_link_requires_ownership(gate: ShareAccessGate, decision, db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        share_link_service.create_share_link(db_session, decision_id=decision.id, actor_id=uuid.uuid4(), gate=gate)


def test_assignee_can_manage_links(gate: ShareAccessGate, decision, db_session: Session) -> None:
    assignee = uuid.uuid4()
    decision.assignee_id = assignee
    db_session.commit()

    record = share_link_service.create_share_link(db_session, decision_id=decision.id, actor_id=assignee, gate=gate)

    assert record.created_by == assignee
    assert [item.id for item in share_link_service.list_share_links(db_session, decision_id=decision.id, actor_id=assignee)] == [
        record.id
    ]


def test_create_share_link_rejects_conflicting_expiry(gate: ShareAccessGate, decision, owner_id, db_session) -> None:
    with pytest.raises(InvalidArgumentError):
        share_link_service.create_share_link(
            db_session,
            decision_id=decision.id,
            actor_id=owner_id,
            expires_at=gate.now() + timedelta(days=1),
            expires_in_days=2,
            gate=gate,
        )


def test_active_link_limit(decision, owner_id, db_session: Session, share_settings, clock) -> None:
    limited = share_link_service.build_gate(
        db_session, dataclasses.replace(share_settings, max_active_links=1), clock=clock
    )
    first = share_link_service.create_share_link(db_session, decision_id=decision.id, actor_id=owner_id, gate=limited)

    with pytest.raises(ShareServiceError):
        share_link_service.create_share_link(db_session, decision_id=decision.id, actor_id=owner_id, gate=limited)

    share_link_service.revoke_share_link(db_session, token_id=first.id, actor_id=owner_id, gate=limited)
    share_link_service.create_share_link(db_session, decision_id=decision.id, actor_id=owner_id, gate=limited)


def test_revoke_share_link_records_activity_once(gate: ShareAccessGate, make_token, decision, owner_id, db_session) -> None:
    record = make_token()

    first = share_link_service.revoke_share_link(db_session, token_id=record.id, actor_id=owner_id, gate=gate)
    second = share_link_service.revoke_share_link(db_session, token_id=record.id, actor_id=owner_id, gate=gate)

    assert first.revoked and second.revoked
    assert _activity_types(db_session, decision.id) == ["link_revoked"]


def test_revoke_share_link_hides_foreign_links(gate: ShareAccessGate, make_token, db_session) -> None:
    record = make_token()
    with pytest.raises(NotFoundError):
        share_link_service.revoke_share_link(db_session, token_id=record.id, actor_id=uuid.uuid4(), gate=gate)
    assert ShareTokenStore(db_session).find_by_id(record.id).revoked is False


def test_regenerate_and_extend_share_link(gate: ShareAccessGate, make_token, decision, owner_id, clock, db_session) -> None:
    record = make_token(expires_at=clock.current + timedelta(days=1))

    replacement = share_link_service.regenerate_share_link(
        db_session,
        token_id=record.id,
        actor_id=owner_id,
        options=ShareTokenOptions(passcode="9876"),
        gate=gate,
    )
    assert replacement.passcode_protected
    assert replacement.expires_at == record.expires_at

    extended = share_link_service.extend_share_link(
        db_session,
        token_id=replacement.id,
        actor_id=owner_id,
        new_expires_at=clock.current + timedelta(days=30),
        gate=gate,
    )
    assert extended.expires_at == clock.current + timedelta(days=30)
    assert _activity_types(db_session, decision.id) == ["link_extended", "link_regenerated"]


def test_share_detail_includes_recent_access(gate: ShareAccessGate, make_token, owner_id, db_session) -> None:
    record = make_token()
    for _ in range(3):
        gate.validate_token(record.token)

    detail = share_link_service.get_share_link_with_logs(db_session, token_id=record.id, actor_id=owner_id, limit=2)

    assert detail.share.id == record.id
    assert len(detail.access_logs) == 2
    assert detail.access_count == 3


def test_access_log_pagination_and_stats(gate: ShareAccessGate, make_token, owner_id, db_session) -> None:
    record = make_token(allowed_actions=["ask_question"])
    for _ in range(4):
        gate.validate_token(record.token)
    gate.authorize_action(record.token, "ask_question")

    first_page = share_link_service.list_access_logs(db_session, token_id=record.id, actor_id=owner_id, limit=3)
    second_page = share_link_service.list_access_logs(
        db_session, token_id=record.id, actor_id=owner_id, limit=3, offset=3
    )
    assert len(first_page) == 3
    assert len(second_page) == 2
    assert {log.id for log in first_page}.isdisjoint({log.id for log in second_page})

    stats = share_link_service.access_statistics(db_session, token_id=record.id, actor_id=owner_id)
    assert stats.total_views == 4
    assert stats.total_questions == 1
    assert AccessLogStore(db_session).count_by_token(record.id) == 5
