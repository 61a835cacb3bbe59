from __future__ import annotations

import pytest

from procuredb.errors import ConstraintViolationError, NotFoundError, ValidationError, ViolationType
from procuredb.apps.notifications import service as notification_service
from procuredb.apps.transfers import models, schemas
from procuredb.apps.transfers import services as transfer_services

Status = models.TransferStatus


def _data(seed, quantity=10, source="loc-a", destination="loc-b"):
    return schemas.TransferCreate(
        product_id=seed.product_id,
        source_location_id=source,
        destination_location_id=destination,
        quantity_requested=quantity,
    )


def _request(db, seed, clock, ids, provider, user=None, **kwargs):
    return transfer_services.create_transfer_request(
        db,
        tenant_id=seed.tenant_id,
        requested_by=(user or seed.users.staff_b).id,
        data=_data(seed, **kwargs),
        clock=clock,
        ids=ids,
        provider=provider,
    )


def _common(seed, clock, ids, provider, transfer, user):
    return dict(
        tenant_id=seed.tenant_id,
        transfer_id=transfer.id,
        user_id=user.id,
        clock=clock,
        ids=ids,
        provider=provider,
    )


def test_request_notifies_source_location(db_session, stocked, clock, ids, provider):
    seed = stocked
    transfer = _request(db_session, seed, clock, ids, provider)

    assert transfer.status == Status.REQUESTED
    assert transfer.requested_by == seed.users.staff_b.id
    assert provider.sent == [
        {
            "recipient": seed.users.staff_a.id,
            "event_type": "transfer.requested",
            "payload": {
                "transfer_id": transfer.id,
                "product_id": seed.product_id,
                "status": "REQUESTED",
                "quantity_requested": 10,
            },
        }
    ]
    logs = notification_service.list_notifications(db_session, tenant_id=seed.tenant_id)
    assert [log.event_type for log in logs] == ["transfer.requested"]


def test_same_source_and_destination_is_invalid(db_session, stocked, clock, ids, provider):
    with pytest.raises(ValidationError):
        _request(db_session, stocked, clock, ids, provider, destination="loc-a")


def test_staff_must_belong_to_either_end(db_session, stocked, clock, ids, provider):
    seed = stocked
    with pytest.raises(ConstraintViolationError) as excinfo:
        _request(db_session, seed, clock, ids, provider, user=seed.users.staff_a, source="loc-b", destination="loc-c")
    assert excinfo.value.types == [ViolationType.LOCATION_ACCESS]


def test_request_needs_positive_quantity(db_session, stocked, clock, ids, provider):
    with pytest.raises(ConstraintViolationError) as excinfo:
        _request(db_session, stocked, clock, ids, provider, quantity=0)
    assert excinfo.value.types == [ViolationType.BUSINESS_RULE]


def test_request_beyond_availability_is_rejected(db_session, stocked, clock, ids, provider):
    with pytest.raises(ConstraintViolationError) as excinfo:
        _request(db_session, stocked, clock, ids, provider, quantity=101)
    assert excinfo.value.violations[0].amount == 1
    assert transfer_services.list_transfers(db_session, tenant_id=stocked.tenant_id) == []


def test_service_lifecycle_with_location_roles(db_session, stocked, clock, ids, provider):
    seed = stocked
    transfer = _request(db_session, seed, clock, ids, provider, quantity=40)
    provider.sent.clear()

    with pytest.raises(ConstraintViolationError):
        transfer_services.approve_transfer(
            db_session, **_common(seed, clock, ids, provider, transfer, seed.users.staff_b)
        )

    transfer_services.approve_transfer(db_session, **_common(seed, clock, ids, provider, transfer, seed.users.staff_a))
    assert [(n["recipient"], n["event_type"]) for n in provider.sent] == [(seed.users.staff_b.id, "transfer.approved")]

    with pytest.raises(ConstraintViolationError):
        transfer_services.ship_transfer(
            db_session, **_common(seed, clock, ids, provider, transfer, seed.users.staff_b)
        )
    shipped = transfer_services.ship_transfer(
        db_session, quantity_shipped=35, **_common(seed, clock, ids, provider, transfer, seed.users.staff_a)
    )
    assert shipped.reservation.quantity_reserved == 35

    with pytest.raises(ConstraintViolationError):
        transfer_services.receive_transfer(
            db_session,
            receiving=schemas.ReceivingData(quantity_received=35),
            **_common(seed, clock, ids, provider, transfer, seed.users.staff_a),
        )
    received = transfer_services.receive_transfer(
        db_session,
        receiving=schemas.ReceivingData(quantity_received=35),
        **_common(seed, clock, ids, provider, transfer, seed.users.staff_b),
    )
    assert received.transfer.status == Status.RECEIVED
    assert provider.sent[-1] == {
        "recipient": seed.users.staff_a.id,
        "event_type": "transfer.received",
        "payload": {
            "transfer_id": transfer.id,
            "product_id": seed.product_id,
            "status": "RECEIVED",
            "quantity_requested": 40,
        },
    }


def test_requester_may_withdraw_request(db_session, stocked, clock, ids, provider):
    seed = stocked
    transfer = _request(db_session, seed, clock, ids, provider)

    result = transfer_services.cancel_transfer(
        db_session, reason="Ordered by mistake", **_common(seed, clock, ids, provider, transfer, seed.users.staff_b)
    )
    assert result.audit_entry.action == "REJECTED"


def test_failing_notifications_do_not_block_transitions(db_session, stocked, clock, ids):
    seed = stocked

    class BrokenProvider:
        def send(self, *, recipient, event_type, payload):
            raise RuntimeError("smtp down")

    transfer = _request(db_session, seed, clock, ids, BrokenProvider())
    result = transfer_services.approve_transfer(
        db_session, **_common(seed, clock, ids, BrokenProvider(), transfer, seed.users.admin)
    )
    assert result.transfer.status == Status.APPROVED
    logs = notification_service.list_notifications(db_session, tenant_id=seed.tenant_id)
    assert {log.status.value for log in logs} == {"FAILED"}


def test_list_and_lookup_are_tenant_scoped(db_session, stocked, clock, ids, provider):
    seed = stocked
    first = _request(db_session, seed, clock, ids, provider, quantity=5)
    clock.advance(minutes=1)
    second = _request(
        db_session, seed, clock, ids, provider, quantity=5, destination="loc-c", user=seed.users.manager
    )

    everything = transfer_services.list_transfers(db_session, tenant_id=seed.tenant_id)
    assert [t.id for t in everything] == [second.id, first.id]
    at_c = transfer_services.list_transfers(db_session, tenant_id=seed.tenant_id, location_id="loc-c")
    assert [t.id for t in at_c] == [second.id]
    assert transfer_services.list_transfers(db_session, tenant_id=seed.tenant_id, status=Status.APPROVED) == []
    assert transfer_services.list_transfers(db_session, tenant_id=seed.other_tenant_id) == []

    with pytest.raises(NotFoundError):
        transfer_services.get_transfer(db_session, tenant_id=seed.other_tenant_id, transfer_id=first.id)
    with pytest.raises(NotFoundError):
        transfer_services.approve_transfer(
            db_session,
            tenant_id=seed.other_tenant_id,
            transfer_id=first.id,
            user_id=seed.users.other_admin.id,
        )
