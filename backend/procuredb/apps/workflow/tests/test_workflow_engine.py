from __future__ import annotations

import pytest
from sqlalchemy import update

from procuredb.errors import ConcurrencyError, NotFoundError, StateTransitionError, ValidationError
from procuredb.apps.audit import services as audit_services
from procuredb.apps.transfers import models as transfer_models
from procuredb.apps.workflow import engine, registry
from procuredb.apps.workflow.engine import TransitionContext

TransferStatus = transfer_models.TransferStatus


def _transfer(db, seed, **overrides):
    values = dict(
        id="transfer-1",
        tenant_id=seed.tenant_id,
        product_id=seed.product_id,
        source_location_id="loc-a",
        destination_location_id="loc-b",
        quantity_requested=10,
        status=TransferStatus.REQUESTED,
        requested_by=seed.users.staff_a.id,
    )
    values.update(overrides)
    transfer = transfer_models.Transfer(**values)
    db.add(transfer)
    db.flush()
    return transfer


@pytest.mark.parametrize("entity_type", [registry.PURCHASE_ORDER, registry.ALLOCATION, registry.TRANSFER])
def test_can_transition_matches_table_for_every_pair(entity_type):
    workflow = registry.WORKFLOWS[entity_type]
    for from_state in workflow["states"]:
        allowed = set(workflow["transitions"][from_state])
        for to_state in workflow["states"]:
            assert engine.can_transition(entity_type, from_state, to_state) == (to_state in allowed)


def test_terminal_states_have_no_transitions():
    assert engine.is_terminal(registry.TRANSFER, TransferStatus.RECEIVED)
    assert engine.is_terminal(registry.TRANSFER, TransferStatus.CANCELLED)
    assert not engine.is_terminal(registry.TRANSFER, TransferStatus.SHIPPED)
    assert engine.allowed_transitions(registry.TRANSFER, "NOT_A_STATE") == []


def test_unknown_workflow_is_rejected():
    with pytest.raises(ValueError):
        engine.get_workflow("invoice")


def test_invalid_transition_lists_allowed_targets(db_session, seed):
    transfer = _transfer(db_session, seed)
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=seed.users.admin.id)

    result = engine.check_transition(
        db_session, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.RECEIVED, ctx=ctx
    )

    assert not result.valid
    assert result.code == engine.INVALID_TRANSITION
    assert result.allowed == ["APPROVED", "CANCELLED"]
    assert "Valid transitions: APPROVED, CANCELLED" in result.messages[0]

    with pytest.raises(StateTransitionError) as excinfo:
        engine.raise_for_result(result, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.RECEIVED)
    assert excinfo.value.allowed == ["APPROVED", "CANCELLED"]


def test_terminal_state_message_says_so(db_session, seed):
    transfer = _transfer(db_session, seed, status=TransferStatus.CANCELLED)
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=seed.users.admin.id)
    result = engine.check_transition(
        db_session, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.APPROVED, ctx=ctx
    )
    assert "none (terminal state)" in result.messages[0]


def test_tenant_mismatch_reads_as_not_found(db_session, seed):
    transfer = _transfer(db_session, seed, status=TransferStatus.RECEIVED)
    ctx = TransitionContext(tenant_id=seed.other_tenant_id, user_id=seed.users.other_admin.id)

    result = engine.check_transition(
        db_session, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.APPROVED, ctx=ctx
    )

    assert result.code == engine.NOT_FOUND
    assert result.allowed == []
    with pytest.raises(NotFoundError):
        engine.raise_for_result(result, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.APPROVED)


def test_guards_collect_every_failure(db_session, seed):
    transfer = _transfer(db_session, seed, status=TransferStatus.APPROVED)
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=None, reason="   ")

    result = engine.check_transition(
        db_session, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.CANCELLED, ctx=ctx
    )

    assert result.code == engine.MISSING_REQUIREMENTS
    assert {error["field"] for error in result.errors} == {"user_id", "reason"}
    with pytest.raises(ValidationError):
        engine.raise_for_result(result, entity_type=registry.TRANSFER, entity=transfer, to_state=TransferStatus.CANCELLED)


def test_apply_transition_bumps_version_and_audits(db_session, seed, clock, ids):
    transfer = _transfer(db_session, seed)
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=seed.users.admin.id)

    entry = engine.apply_transition(
        db_session,
        entity_type=registry.TRANSFER,
        entity=transfer,
        to_state=TransferStatus.APPROVED,
        ctx=ctx,
        values={"approved_by": seed.users.admin.id, "approved_at": clock.now()},
        performed_at=clock.now(),
        ids=ids,
    )

    assert transfer.status == TransferStatus.APPROVED
    assert transfer.version == 2
    assert entry.action == "APPROVED"
    assert entry.old_values["status"] == "REQUESTED"
    assert entry.new_values["status"] == "APPROVED"
    assert entry.new_values["version"] == 2


def test_stale_version_raises_concurrency_error(db_session, seed):
    transfer = _transfer(db_session, seed)
    # Another writer commits first.
    db_session.execute(
        update(transfer_models.Transfer)
        .where(transfer_models.Transfer.id == transfer.id)
        .values(version=transfer_models.Transfer.version + 1)
        .execution_options(synchronize_session=False)
    )
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=seed.users.admin.id)

    with pytest.raises(ConcurrencyError):
        engine.apply_transition(
            db_session,
            entity_type=registry.TRANSFER,
            entity=transfer,
            to_state=TransferStatus.APPROVED,
            ctx=ctx,
        )


def test_failed_audit_write_fails_the_transition(db_session, seed, monkeypatch):
    transfer = _transfer(db_session, seed)
    db_session.commit()

    def boom(*_args, **_kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(audit_services, "create_audit_entry", boom)
    ctx = TransitionContext(tenant_id=seed.tenant_id, user_id=seed.users.admin.id)

    with pytest.raises(RuntimeError):
        engine.apply_transition(
            db_session,
            entity_type=registry.TRANSFER,
            entity=transfer,
            to_state=TransferStatus.APPROVED,
            ctx=ctx,
        )
    db_session.rollback()

    reloaded = db_session.get(transfer_models.Transfer, transfer.id)
    db_session.refresh(reloaded)
    assert reloaded.status == TransferStatus.REQUESTED
    assert reloaded.version == 1
