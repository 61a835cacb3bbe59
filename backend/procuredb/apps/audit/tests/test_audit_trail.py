from __future__ import annotations

import pytest

from procuredb.apps.accounts import models as account_models
from procuredb.apps.audit import models as audit_models
from procuredb.apps.audit import services as audit_services
from procuredb.apps.transfers import models as transfer_models


def test_log_event_writes_record(db_session, seed, clock, ids):
    entry = audit_services.log_event(
        db_session,
        tenant_id=seed.tenant_id,
        entity_type=audit_models.AuditEntityType.TRANSFER,
        subject_id="transfer-1",
        action="APPROVED",
        performed_by=seed.users.admin.id,
        old_status="REQUESTED",
        new_status="APPROVED",
        old_values={"status": "REQUESTED"},
        new_values={"status": "APPROVED"},
        performed_at=clock.now(),
        ids=ids,
    )
    db_session.commit()

    assert entry is not None
    assert entry.id == "id-000001"
    assert entry.entity_type == audit_models.AuditEntityType.TRANSFER
    assert entry.old_values == {"status": "REQUESTED"}
    assert entry.new_status == "APPROVED"


def test_list_audit_entries_newest_first_and_filtered(db_session, seed, clock, ids):
    for action in ("CREATED", "APPROVED", "SHIPPED"):
        audit_services.log_event(
            db_session,
            tenant_id=seed.tenant_id,
            entity_type=audit_models.AuditEntityType.TRANSFER,
            subject_id="transfer-1",
            action=action,
            performed_by=seed.users.admin.id,
            performed_at=clock.advance(minutes=1),
            ids=ids,
        )
    audit_services.log_event(
        db_session,
        tenant_id=seed.other_tenant_id,
        entity_type=audit_models.AuditEntityType.TRANSFER,
        subject_id="transfer-1",
        action="CREATED",
        performed_by=seed.users.other_admin.id,
        performed_at=clock.now(),
        ids=ids,
    )
    db_session.flush()

    entries = audit_services.list_audit_entries(db_session, tenant_id=seed.tenant_id, subject_id="transfer-1")
    assert [e.action for e in entries] == ["SHIPPED", "APPROVED", "CREATED"]

    approved = audit_services.list_audit_entries(db_session, tenant_id=seed.tenant_id, action="APPROVED")
    assert len(approved) == 1


def test_critical_audit_failure_propagates(db_session, seed, monkeypatch):
    def boom(*_args, **_kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(audit_services, "create_audit_entry", boom)

    with pytest.raises(RuntimeError):
        audit_services.log_event(
            db_session,
            tenant_id=seed.tenant_id,
            entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
            subject_id="po-1",
            action="APPROVED",
            performed_by=seed.users.admin.id,
            critical=True,
        )

    result = audit_services.log_event(
        db_session,
        tenant_id=seed.tenant_id,
        entity_type=audit_models.AuditEntityType.PURCHASE_ORDER,
        subject_id="po-1",
        action="VIEWED",
        performed_by=seed.users.admin.id,
    )
    assert result is None


def test_snapshot_is_json_safe(clock):
    transfer = transfer_models.Transfer(
        id="transfer-1",
        tenant_id="tenant-1",
        product_id="product-1",
        source_location_id="loc-a",
        destination_location_id="loc-b",
        quantity_requested=5,
        status=transfer_models.TransferStatus.REQUESTED,
        requested_by="staff-a",
        created_at=clock.now(),
    )
    snap = audit_services.snapshot(transfer)
    assert snap["status"] == "REQUESTED"
    assert snap["created_at"] == clock.now().isoformat()
    assert snap["approved_at"] is None
    assert audit_services.snapshot(None) == {}


def test_performed_at_defaults_when_not_given(db_session, seed):
    entry = audit_services.log_event(
        db_session,
        tenant_id=seed.tenant_id,
        entity_type=audit_models.AuditEntityType.ALLOCATION,
        subject_id="alloc-1",
        action="CREATED",
        performed_by=None,
    )
    db_session.flush()
    assert entry.performed_at is not None
    assert entry.performed_by is None


def test_failed_optional_entry_keeps_surrounding_work(db_session, seed):
    result = audit_services.log_event(
        db_session,
        tenant_id=None,
        entity_type=audit_models.AuditEntityType.TRANSFER,
        subject_id="transfer-1",
        action="VIEWED",
        performed_by=seed.users.admin.id,
    )
    db_session.commit()

    assert result is None
    assert db_session.query(account_models.User).filter_by(tenant_id=seed.tenant_id).count() == 4
    assert audit_services.list_audit_entries(db_session, tenant_id=seed.tenant_id) == []
