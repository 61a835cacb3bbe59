from __future__ import annotations

import pytest

from procuredb.errors import (
    ConstraintViolationError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
    ViolationType,
)
from procuredb.apps.allocations import models, schemas
from procuredb.apps.allocations import services as allocation_services
from procuredb.apps.allocations.engine import AllocationEngine

Status = models.AllocationStatus


def _create(db, seed, clock, ids, item, *entries, user=None):
    return allocation_services.create_allocations(
        db,
        tenant_id=seed.tenant_id,
        user_id=(user or seed.users.manager).id,
        allocations=[
            schemas.AllocationCreate(po_item_id=item.id, target_location_id=loc, quantity_allocated=qty)
            for loc, qty in entries
        ],
        clock=clock,
        ids=ids,
    )


def _kwargs(seed, clock, ids, allocation, user=None):
    return dict(
        tenant_id=seed.tenant_id,
        allocation_id=allocation.id,
        user_id=(user or seed.users.manager).id,
        clock=clock,
        ids=ids,
    )


def test_create_allocations_pending_and_audited(db_session, seed, clock, ids, make_po):
    item = make_po((100,)).items[0]

    created = _create(db_session, seed, clock, ids, item, ("loc-a", 40), ("loc-b", 35), ("loc-c", 25))

    assert [a.status for a in created] == [Status.PENDING] * 3
    assert AllocationEngine(db_session).calculate_unallocated_quantity(item.id, seed.tenant_id) == 0
    history = allocation_services.get_allocation_history(
        db_session, tenant_id=seed.tenant_id, allocation_id=created[0].id
    )
    assert [entry.action for entry in history] == ["CREATED"]


def test_rejected_batch_creates_nothing(db_session, seed, clock, ids, make_po):
    item = make_po((100,)).items[0]

    with pytest.raises(ConstraintViolationError) as excinfo:
        _create(db_session, seed, clock, ids, item, ("loc-a", 60), ("loc-b", 50))

    assert excinfo.value.types == [ViolationType.QUANTITY_EXCEEDED]
    assert "1 rule violation" in excinfo.value.message
    assert allocation_services.list_allocations(db_session, tenant_id=seed.tenant_id, po_item_id=item.id) == []


def test_empty_batch_is_invalid(db_session, seed, clock, ids):
    with pytest.raises(ValidationError):
        allocation_services.create_allocations(
            db_session, tenant_id=seed.tenant_id, user_id=seed.users.manager.id, allocations=[]
        )


def test_allocations_on_draft_orders_are_rejected(db_session, seed, clock, ids, make_po):
    item = make_po((10,), approve=False).items[0]
    with pytest.raises(ConstraintViolationError) as excinfo:
        _create(db_session, seed, clock, ids, item, ("loc-a", 5))
    assert ViolationType.STATUS_INVALID in excinfo.value.types


def test_staff_cannot_allocate_to_other_locations(db_session, seed, clock, ids, make_po):
    item = make_po((10,)).items[0]
    with pytest.raises(ConstraintViolationError) as excinfo:
        _create(db_session, seed, clock, ids, item, ("loc-b", 5), user=seed.users.staff_a)
    assert excinfo.value.types == [ViolationType.LOCATION_ACCESS]

    created = _create(db_session, seed, clock, ids, item, ("loc-a", 5), user=seed.users.staff_a)
    assert created[0].created_by == seed.users.staff_a.id


def test_full_receiving_lifecycle(db_session, seed, clock, ids, make_po):
    item = make_po((20,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 20))

    allocation_services.confirm_allocation(db_session, **_kwargs(seed, clock, ids, allocation))
    assert allocation.status == Status.ALLOCATED

    allocation_services.receive_allocation(db_session, quantity=8, **_kwargs(seed, clock, ids, allocation))
    assert allocation.status == Status.PARTIALLY_RECEIVED
    assert allocation.quantity_received == 8

    allocation_services.receive_allocation(db_session, quantity=5, **_kwargs(seed, clock, ids, allocation))
    assert allocation.status == Status.PARTIALLY_RECEIVED

    with pytest.raises(ConstraintViolationError) as excinfo:
        allocation_services.receive_allocation(db_session, quantity=8, **_kwargs(seed, clock, ids, allocation))
    assert excinfo.value.violations[0].amount == 1

    allocation_services.receive_allocation(db_session, quantity=7, **_kwargs(seed, clock, ids, allocation))
    assert allocation.status == Status.RECEIVED
    assert allocation.quantity_received == 20
    assert allocation.version == 5

    history = allocation_services.get_allocation_history(
        db_session, tenant_id=seed.tenant_id, allocation_id=allocation.id
    )
    assert len(history) == 5


def test_receiving_needs_positive_quantity(db_session, seed, clock, ids, make_po):
    item = make_po((20,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 20))
    allocation_services.confirm_allocation(db_session, **_kwargs(seed, clock, ids, allocation))
    with pytest.raises(ValidationError):
        allocation_services.receive_allocation(db_session, quantity=0, **_kwargs(seed, clock, ids, allocation))


def test_pending_allocation_cannot_be_received(db_session, seed, clock, ids, make_po):
    item = make_po((20,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 20))
    with pytest.raises(StateTransitionError):
        allocation_services.receive_allocation(db_session, quantity=5, **_kwargs(seed, clock, ids, allocation))


def test_cancel_needs_reason_and_frees_quantity(db_session, seed, clock, ids, make_po):
    item = make_po((50,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 50))

    with pytest.raises(ValidationError):
        allocation_services.cancel_allocation(db_session, reason=" ", **_kwargs(seed, clock, ids, allocation))

    allocation_services.cancel_allocation(
        db_session, reason="Store closed", **_kwargs(seed, clock, ids, allocation)
    )
    assert allocation.status == Status.CANCELLED
    assert AllocationEngine(db_session).calculate_unallocated_quantity(item.id, seed.tenant_id) == 50

    # Cancelled rows no longer block the same location.
    replacement = _create(db_session, seed, clock, ids, item, ("loc-a", 50))
    assert replacement[0].status == Status.PENDING


def test_update_quantity_checks_remaining_capacity(db_session, seed, clock, ids, make_po):
    item = make_po((100,)).items[0]
    first, second = _create(db_session, seed, clock, ids, item, ("loc-a", 40), ("loc-b", 40))

    allocation_services.update_allocation_quantity(db_session, quantity=60, **_kwargs(seed, clock, ids, first))
    assert first.quantity_allocated == 60
    assert first.version == 2

    with pytest.raises(ConstraintViolationError) as excinfo:
        allocation_services.update_allocation_quantity(db_session, quantity=61, **_kwargs(seed, clock, ids, first))
    assert excinfo.value.violations[0].amount == 1

    history = allocation_services.get_allocation_history(db_session, tenant_id=seed.tenant_id, allocation_id=first.id)
    assert history[0].action == "QUANTITY_UPDATED"
    assert history[0].old_values["quantity_allocated"] == 40
    assert history[0].new_values["quantity_allocated"] == 60


def test_update_blocked_once_receiving_started(db_session, seed, clock, ids, make_po):
    item = make_po((10,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 10))
    allocation_services.confirm_allocation(db_session, **_kwargs(seed, clock, ids, allocation))
    allocation_services.receive_allocation(db_session, quantity=3, **_kwargs(seed, clock, ids, allocation))

    with pytest.raises(ConstraintViolationError) as excinfo:
        allocation_services.update_allocation_quantity(db_session, quantity=5, **_kwargs(seed, clock, ids, allocation))
    assert excinfo.value.types == [ViolationType.STATUS_INVALID]


def test_delete_only_while_pending(db_session, seed, clock, ids, make_po):
    item = make_po((10,)).items[0]
    pending, confirmed = _create(db_session, seed, clock, ids, item, ("loc-a", 5), ("loc-b", 5))
    allocation_services.confirm_allocation(db_session, **_kwargs(seed, clock, ids, confirmed))

    with pytest.raises(ConstraintViolationError):
        allocation_services.delete_allocation(db_session, **_kwargs(seed, clock, ids, confirmed))

    pending_id = pending.id
    allocation_services.delete_allocation(db_session, **_kwargs(seed, clock, ids, pending))

    with pytest.raises(NotFoundError):
        allocation_services.get_allocation(db_session, tenant_id=seed.tenant_id, allocation_id=pending_id)
    remaining = allocation_services.list_allocations(db_session, tenant_id=seed.tenant_id, po_item_id=item.id)
    assert [a.id for a in remaining] == [confirmed.id]


def test_staff_cannot_change_other_locations(db_session, seed, clock, ids, make_po):
    item = make_po((10,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-b", 10))
    with pytest.raises(ConstraintViolationError) as excinfo:
        allocation_services.confirm_allocation(
            db_session, **_kwargs(seed, clock, ids, allocation, user=seed.users.staff_a)
        )
    assert excinfo.value.types == [ViolationType.LOCATION_ACCESS]


def test_other_tenant_cannot_see_allocations(db_session, seed, clock, ids, make_po):
    item = make_po((10,)).items[0]
    (allocation,) = _create(db_session, seed, clock, ids, item, ("loc-a", 10))
    with pytest.raises(NotFoundError):
        allocation_services.get_allocation(db_session, tenant_id=seed.other_tenant_id, allocation_id=allocation.id)


def test_live_allocations_never_exceed_ordered(db_session, seed, clock, ids, make_po):
    item = make_po((30,)).items[0]
    attempts = [("loc-a", 10), ("loc-b", 15), ("loc-c", 10), ("loc-c", 5)]
    for location_id, quantity in attempts:
        try:
            _create(db_session, seed, clock, ids, item, (location_id, quantity))
        except ConstraintViolationError:
            pass
        live = allocation_services.list_allocations(db_session, tenant_id=seed.tenant_id, po_item_id=item.id)
        assert sum(a.quantity_allocated for a in live if a.status != Status.CANCELLED) <= 30

    locations = [
        a.target_location_id
        for a in allocation_services.list_allocations(db_session, tenant_id=seed.tenant_id, po_item_id=item.id)
    ]
    assert locations == ["loc-a", "loc-b", "loc-c"]
