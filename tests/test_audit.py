# This project was developed with assistance from AI tools.
"""Tests for the audit hash chain and audit sinks."""

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from xpress_db.enums import DataClass, Permission

from xpress_authz.schemas.access import AccessContext, AccessDecision
from xpress_authz.schemas.approval import CreateApprovalRequestBody
from xpress_authz.services.audit import (
    DatabaseAuditLogger,
    LoggingAuditLogger,
    _compute_hash,
    build_audit_logger,
    decision_event_data,
    verify_audit_chain,
    write_audit_event,
)

from .factories import NOW, make_orchestrator, make_user

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_audit_session(prev_event=None):
    """Build a mock session that supports advisory lock + latest-event query."""
    mock_session = AsyncMock()
    # execute is called twice: advisory lock, then latest-event query
    lock_result = MagicMock()
    query_result = MagicMock()
    query_result.scalar_one_or_none.return_value = prev_event
    mock_session.execute = AsyncMock(side_effect=[lock_result, query_result])
    mock_session.add = MagicMock()
    return mock_session


def _event(event_id, prev_hash, data=None):
    event = MagicMock()
    event.id = event_id
    event.timestamp = f"2025-06-01T12:00:0{event_id}+00:00"
    event.event_data = data or {"n": event_id}
    event.prev_hash = prev_hash
    return event


def _chain_session(events):
    result = MagicMock()
    result.scalars.return_value.all.return_value = events
    session = AsyncMock()
    session.execute = AsyncMock(return_value=result)
    return session


def _alerts_body() -> CreateApprovalRequestBody:
    return CreateApprovalRequestBody(
        action="configure_alerts",
        justification="Raise surge alert thresholds for the holiday weekend",
        requested_action={"action": "configure_alerts"},
    )


def _decision(**overrides) -> AccessDecision:
    values = {
        "allowed": True,
        "reason": "access_granted",
        "user_id": "user-1",
        "permission": Permission.VIEW_VEHICLES_BASIC,
        "decision_id": "dec_abc",
        "evaluated_at": NOW,
    }
    values.update(overrides)
    return AccessDecision(**values)


# ---------------------------------------------------------------------------
# Hash chain
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_event_links_to_genesis():
    mock_session = _mock_audit_session(prev_event=None)

    await write_audit_event(
        mock_session,
        event_type="access_decision",
        user_id="user-1",
        decision_id="dec_abc",
        event_data={"allowed": True},
    )

    mock_session.add.assert_called_once()
    mock_session.flush.assert_awaited_once()
    added = mock_session.add.call_args[0][0]
    assert added.event_type == "access_decision"
    assert added.decision_id == "dec_abc"
    assert added.prev_hash == "genesis"


@pytest.mark.asyncio
async def test_event_chains_from_previous():
    prev = _event(42, "whatever", {"allowed": False})
    mock_session = _mock_audit_session(prev_event=prev)

    await write_audit_event(mock_session, event_type="approval_created", approval_request_id="apr_1")

    added = mock_session.add.call_args[0][0]
    assert added.prev_hash == _compute_hash(42, prev.timestamp, {"allowed": False})
    assert added.approval_request_id == "apr_1"


@pytest.mark.asyncio
async def test_advisory_lock_taken_first():
    mock_session = _mock_audit_session()
    await write_audit_event(mock_session, event_type="access_decision")
    lock_sql = str(mock_session.execute.await_args_list[0][0][0])
    assert "pg_advisory_xact_lock" in lock_sql


@pytest.mark.asyncio
async def test_verify_intact_chain():
    first = _event(1, "genesis")
    second = _event(2, _compute_hash(1, first.timestamp, first.event_data))
    result = await verify_audit_chain(_chain_session([first, second]))
    assert result == {"status": "OK", "events_checked": 2}


@pytest.mark.asyncio
async def test_verify_detects_tampering():
    first = _event(1, "genesis")
    second = _event(2, _compute_hash(1, first.timestamp, first.event_data))
    first.event_data = {"n": "edited"}
    result = await verify_audit_chain(_chain_session([first, second]))
    assert result["status"] == "TAMPERED"
    assert result["first_break_id"] == 2


@pytest.mark.asyncio
async def test_verify_empty_chain():
    assert await verify_audit_chain(_chain_session([])) == {"status": "OK", "events_checked": 0}


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def test_decision_payload_omits_context_by_default():
    data = decision_event_data(_decision(), AccessContext(region_id="cebu"))
    assert data["reason"] == "access_granted"
    assert "context" not in data


def test_enhanced_audit_payload_includes_context():
    decision = _decision(applied_policies=["role_validity", "enhanced_audit"])
    context = AccessContext(region_id="cebu", data_class=DataClass.CONFIDENTIAL)
    data = decision_event_data(decision, context)
    assert data["context"]["region_id"] == "cebu"
    assert data["context"]["data_class"] == "confidential"


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_logging_sink_writes_decision(caplog):
    with caplog.at_level(logging.INFO, logger="xpress_authz.audit"):
        await LoggingAuditLogger().log_decision(_decision())

    record = caplog.records[-1]
    assert record.name == "xpress_authz.audit"
    assert "dec_abc" in record.getMessage()
    payload = record.getMessage().split("data=", 1)[1]
    assert json.loads(payload)["permission"] == "view_vehicles_basic"


@pytest.mark.asyncio
async def test_logging_sink_writes_approval(caplog):
    orchestrator = make_orchestrator(audit_logger=LoggingAuditLogger())
    with caplog.at_level(logging.INFO, logger="xpress_authz.audit"):
        request = await orchestrator.create_approval_request(
            _alerts_body(), make_user(user_id="requester")
        )

    messages = [r.getMessage() for r in caplog.records if r.name == "xpress_authz.audit"]
    assert any(m.startswith("approval_created") and request.request_id in m for m in messages)


def _db_service(session):
    db = MagicMock()
    db.session_factory.return_value.__aenter__.return_value = session
    return db


@pytest.mark.asyncio
async def test_database_sink_writes_decision_event():
    session = MagicMock()
    sink = DatabaseAuditLogger(_db_service(session))

    with patch("xpress_authz.services.audit.write_audit_event", new_callable=AsyncMock) as mock_write:
        await sink.log_decision(_decision())

    mock_write.assert_awaited_once()
    args, kwargs = mock_write.await_args
    assert args[0] is session
    assert kwargs["event_type"] == "access_decision"
    assert kwargs["decision_id"] == "dec_abc"
    session.begin.assert_called_once()


@pytest.mark.asyncio
async def test_database_sink_propagates_write_failure():
    sink = DatabaseAuditLogger(_db_service(MagicMock()))
    with patch(
        "xpress_authz.services.audit.write_audit_event",
        new_callable=AsyncMock,
        side_effect=RuntimeError("connection refused"),
    ):
        with pytest.raises(RuntimeError):
            await sink.log_decision(_decision())


def test_build_audit_logger_defaults_to_logging():
    with patch("xpress_authz.services.audit.settings") as mock_settings:
        mock_settings.AUDIT_BACKEND = "log"
        assert isinstance(build_audit_logger(), LoggingAuditLogger)


def test_build_audit_logger_database_backend():
    with (
        patch("xpress_authz.services.audit.settings") as mock_settings,
        patch("xpress_authz.services.audit.get_db_service") as mock_db,
    ):
        mock_settings.AUDIT_BACKEND = "database"
        sink = build_audit_logger()
    assert isinstance(sink, DatabaseAuditLogger)
    mock_db.assert_called_once()
