import uuid

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.access_log import AccessLog
from models.activity import Activity, DecisionComment
from models.decision import Decision, DecisionOption
from services import client_action_service
from services.share_access_gate import ShareAccessGate
from services.share_errors import (
    DecisionAlreadyConfirmedError,
    InvalidArgumentError,
    InvalidTokenError,
    PasscodeMismatchError,
    UnauthorizedActionError,
)
from services.share_store import AccessLogStore, ClientContext


def _options(db_session: Session, decision: Decision):
    return db_session.execute(select(DecisionOption).where(DecisionOption.decision_id == decision.id)).scalars().all()


def test_open_shared_decision_returns_options(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token(allowed_actions=["confirm_choice"])

    access = client_action_service.open_shared_decision(db_session, gate, token=record.token)

    assert access.status == "valid"
    assert access.decision.title == "Kitchen countertop"
    assert {option["title"] for option in access.decision.options} == {"Quartz", "Granite"}
    assert access.decision.allowed_actions == ["confirm_choice"]


def test_open_protected_decision_needs_passcode(gate: ShareAccessGate, make_token, db_session) -> None:
    record = make_token(passcode="1357")

    locked = client_action_service.open_shared_decision(db_session, gate, token=record.token)
    assert locked.status == "requires_passcode"
    assert locked.decision is None

    with pytest.raises(PasscodeMismatchError):
        client_action_service.open_shared_decision(db_session, gate, token=record.token, passcode="0000")

    unlocked = client_action_service.open_shared_decision(db_session, gate, token=record.token, passcode="1357")
    assert unlocked.status == "valid"
    assert unlocked.decision is not None


def test_open_revoked_decision_raises_invalid_token(gate: ShareAccessGate, make_token, db_session) -> None:
    record = make_token()
    gate.revoke_token(record.id)

    with pytest.raises(InvalidTokenError):
        client_action_service.open_shared_decision(db_session, gate, token=record.token)


def test_confirm_choice_marks_decision_decided(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token()
    option = _options(db_session, decision)[0]
    client = ClientContext(name="Dana", email="dana@example.com")

    updated = client_action_service.confirm_choice(
        db_session, gate, token=record.token, option_id=option.id, client=client
    )

    assert updated.status == "decided"
    assert updated.final_choice_option_id == option.id
    activity = db_session.execute(select(Activity).where(Activity.decision_id == decision.id)).scalars().one()
    assert activity.action_type == "client_confirmed"
    assert activity.actor_meta["name"] == "Dana"
    actions = db_session.execute(select(AccessLog.action_taken).where(AccessLog.share_token_id == record.id)).all()
    assert [row[0] for row in actions] == ["confirmed"]

    with pytest.raises(DecisionAlreadyConfirmedError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=option.id)


def test_confirm_choice_rejects_foreign_option(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token()
    with pytest.raises(InvalidArgumentError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=uuid.uuid4())
    assert db_session.get(Decision, decision.id).status == "pending"


def test_confirm_choice_requires_permission(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token(allowed_actions=["ask_question"])
    option = _options(db_session, decision)[0]

    with pytest.raises(UnauthorizedActionError) as excinfo:
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=option.id)
    assert excinfo.value.reason == "action_not_allowed"


def test_ask_question_creates_comment(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token(passcode="2468")

    comment = client_action_service.ask_question(
        db_session,
        gate,
        token=record.token,
        question="  Is the quartz heat resistant?  ",
        passcode="2468",
        client=ClientContext(name="Dana"),
    )

    stored = db_session.get(DecisionComment, comment.id)
    assert stored.kind == "question"
    assert stored.body == "Is the quartz heat resistant?"
    assert stored.author_meta["linkTokenId"] == str(record.id)


def test_ask_question_rejects_blank_text_before_logging(gate: ShareAccessGate, make_token, db_session) -> None:
    record = make_token()
    with pytest.raises(InvalidArgumentError):
        client_action_service.ask_question(db_session, gate, token=record.token, question="   ")
    assert db_session.execute(select(AccessLog.id)).all() == []


def test_request_change_keeps_reason(gate: ShareAccessGate, make_token, decision, db_session) -> None:
    record = make_token()

    comment = client_action_service.request_change(
        db_session,
        gate,
        token=record.token,
        change_request="Please price a walnut option.",
        reason="Budget",
    )

    stored = db_session.get(DecisionComment, comment.id)
    assert stored.kind == "change_request"
    assert stored.author_meta["reason"] == "Budget"
    activity = db_session.execute(select(Activity).where(Activity.decision_id == decision.id)).scalars().one()
    assert activity.action_type == "client_change_request"


def _logged_actions(db_session: Session, record) -> list:
    rows = db_session.execute(
        select(AccessLog.action_taken, AccessLog.metadata_).where(AccessLog.share_token_id == record.id)
    ).all()
    return [(row[0], row[1]) for row in rows]


def test_confirm_choice_with_unknown_option_writes_no_log(gate: ShareAccessGate, make_token, db_session) -> None:
    record = make_token()

    with pytest.raises(InvalidArgumentError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=uuid.uuid4())

    assert _logged_actions(db_session, record) == []


def test_confirm_choice_with_other_decisions_option_is_logged_as_rejected(
    gate: ShareAccessGate, make_token, decision, owner_id, db_session
) -> None:
    other = Decision(id=uuid.uuid4(), title="Backsplash", status="pending", created_by=owner_id)
    db_session.add(other)
    db_session.flush()
    stray = DecisionOption(id=uuid.uuid4(), decision_id=other.id, title="Subway tile")
    db_session.add(stray)
    db_session.commit()
    record = make_token()

    with pytest.raises(InvalidArgumentError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=stray.id)

    logged = _logged_actions(db_session, record)
    assert [action for action, _ in logged] == ["unauthorized_attempt"]
    assert logged[0][1]["rejected"] == "InvalidArgumentError"
    assert logged[0][1]["action"] == "confirm_choice"
    assert db_session.get(Decision, decision.id, populate_existing=True).status == "pending"


def test_second_confirmation_keeps_first_choice_and_counts_once(
    gate: ShareAccessGate, make_token, decision, db_session
) -> None:
    record = make_token()
    first, second = _options(db_session, decision)[:2]

    client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=first.id)
    with pytest.raises(DecisionAlreadyConfirmedError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=second.id)

    stored = db_session.get(Decision, decision.id, populate_existing=True)
    assert stored.final_choice_option_id == first.id
    activities = db_session.execute(
        select(Activity.action_type).where(Activity.decision_id == decision.id)
    ).all()
    assert [row[0] for row in activities] == ["client_confirmed"]
    logged = _logged_actions(db_session, record)
    assert sorted(action for action, _ in logged) == ["confirmed", "unauthorized_attempt"]
    assert AccessLogStore(db_session).aggregate_stats(record.id).total_confirmations == 1


def test_confirmation_loses_to_a_concurrent_decided_update(
    gate: ShareAccessGate, make_token, decision, db_session
) -> None:
    record = make_token()
    option = _options(db_session, decision)[0]
    # Another request decides in between; the loaded ORM object is left stale.
    db_session.execute(
        update(Decision)
        .where(Decision.id == decision.id)
        .values(status="decided")
        .execution_options(synchronize_session=False)
    )
    db_session.commit()

    with pytest.raises(DecisionAlreadyConfirmedError):
        client_action_service.confirm_choice(db_session, gate, token=record.token, option_id=option.id)

    assert "confirmed" not in [action for action, _ in _logged_actions(db_session, record)]
    assert db_session.get(Decision, decision.id, populate_existing=True).final_choice_option_id is None
