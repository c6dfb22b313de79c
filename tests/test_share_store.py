import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from services.share_access_gate import ShareAccessGate
from services.share_errors import NotFoundError, StoreUnavailableError
from services.share_store import AccessLogStore, ClientContext, ShareTokenStore, as_utc


def test_as_utc_normalizes_naive_and_offset_values() -> None:
    naive = datetime(2026, 1, 1, 9, 0)
    offset = datetime(2026, 1, 1, 18, 0, tzinfo=timezone(timedelta(hours=9)))

    assert as_utc(naive) == datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert as_utc(offset) == datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_access_log_append_hashes_ip_and_trims_fields(make_token, db_session: Session) -> None:
    record = make_token()
    store = AccessLogStore(db_session, ip_hash_salt="pepper")
    client = ClientContext(name="  Dana  ", email="dana@example.com", ip="198.51.100.7", user_agent="x" * 600)

    first = store.append(share_token_id=record.id, decision_id=record.decision_id, action_taken="viewed", client=client)
    second = store.append(share_token_id=record.id, decision_id=record.decision_id, action_taken="viewed", client=client)

    assert first is not None and second is not None
    assert first.client_name == "Dana"
    assert first.ip_hash and first.ip_hash != "198.51.100.7"
    assert first.ip_hash == second.ip_hash
    assert len(first.user_agent) == 512


def test_access_log_append_rejects_unknown_action(make_token, db_session: Session) -> None:
    record = make_token()
    with pytest.raises(ValueError):
        AccessLogStore(db_session).append(
            share_token_id=record.id, decision_id=record.decision_id, action_taken="deleted"
        )


def test_access_log_failure_does_not_change_gate_decision(
    gate: ShareAccessGate, make_token, db_session: Session, monkeypatch
) -> None:
    record = make_token()

    def _broken_commit() -> None:
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db_session, "commit", _broken_commit)

    result = gate.validate_token(record.token)
    assert result.valid
    assert result.decision_id == record.decision_id
    assert gate.authorize_action(record.token, "ask_question") is True

    monkeypatch.undo()
    assert AccessLogStore(db_session).count_by_token(record.id) == 0


def test_store_outage_is_reported_as_retryable(gate: ShareAccessGate, make_token, db_session: Session, monkeypatch) -> None:
    record = make_token()

    def _offline(*_args, **_kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(db_session, "execute", _offline)

    with pytest.raises(StoreUnavailableError) as excinfo:
        gate.validate_token(record.token)
    assert excinfo.value.retryable is True


def test_token_update_only_touches_mutable_fields(make_token, db_session: Session) -> None:
    record = make_token()
    store = ShareTokenStore(db_session)

    with pytest.raises(ValueError):
        store.update(record.id, token="forged")
    with pytest.raises(NotFoundError):
        store.update(uuid.uuid4(), revoked=True)

    updated = store.update(record.id, revoked=True, revoked_at=datetime.now(timezone.utc))
    assert updated.revoked
    assert store.find_by_token(record.token).revoked


def test_count_active_ignores_revoked_and_expired(gate: ShareAccessGate, make_token, clock, db_session: Session) -> None:
    open_link = make_token()
    short_link = make_token(expires_at=clock.current + timedelta(hours=1))
    revoked_link = make_token()
    gate.revoke_token(revoked_link.id)

    store = ShareTokenStore(db_session)
    assert store.count_active(open_link.decision_id, clock.current) == 2
    assert store.count_active(short_link.decision_id, clock.current + timedelta(hours=2)) == 1


def test_aggregate_stats_groups_actions(gate: ShareAccessGate, make_token, db_session: Session) -> None:
    record = make_token(allowed_actions=["ask_question"])
    visitor = ClientContext(ip="192.0.2.1")
    other = ClientContext(ip="192.0.2.2")

    gate.validate_token(record.token, client=visitor)
    gate.validate_token(record.token, client=other)
    gate.authorize_action(record.token, "ask_question", client=visitor)
    gate.authorize_action(record.token, "confirm_choice", client=other)

    stats = AccessLogStore(db_session).aggregate_stats(record.id)
    assert stats.total_views == 2
    assert stats.total_questions == 1
    assert stats.total_confirmations == 0
    assert stats.denied_attempts == 1
    assert stats.unique_clients == 2
    assert stats.last_access_at is not None


def test_aggregate_stats_counts_passcode_prompts_separately(
    gate: ShareAccessGate, make_token, db_session: Session
) -> None:
    record = make_token(passcode="1234")

    gate.validate_token(record.token)
    gate.validate_token(record.token)
    gate.verify_passcode(record.token, "1234")

    stats = AccessLogStore(db_session).aggregate_stats(record.id)
    assert stats.locked_views == 2
    assert stats.total_views == 0
    assert stats.passcode_failures == 0
