from __future__ import annotations

from types import SimpleNamespace

import pytest

from procuredb.errors import ConstraintViolationError, ViolationType
from procuredb.apps.accounts import services as account_services
from procuredb.apps.allocations import models
from procuredb.apps.allocations.constraints import (
    AllocationInput,
    AllocationOperation,
    ConstraintSolver,
    TransferAction,
    check_location_access,
    get_allowed_operations,
)
from procuredb.apps.transfers import models as transfer_models

Status = models.AllocationStatus
Op = AllocationOperation


def _user(db, seed, user):
    return account_services.get_user_context(db, user_id=user.id, tenant_id=seed.tenant_id)


@pytest.mark.parametrize(
    "status, expected",
    [
        (Status.PENDING, {Op.UPDATE, Op.DELETE, Op.STATUS_CHANGE}),
        (Status.ALLOCATED, {Op.UPDATE, Op.STATUS_CHANGE}),
        (Status.PARTIALLY_RECEIVED, {Op.STATUS_CHANGE}),
        (Status.RECEIVED, set()),
        (Status.CANCELLED, set()),
    ],
)
def test_allowed_operations_per_status(status, expected):
    assert get_allowed_operations(status) == expected
    assert get_allowed_operations(status.value) == expected


def test_enforce_status_constraints_raises_status_invalid():
    allocation = models.Allocation(id="alloc-1", status=Status.RECEIVED)
    with pytest.raises(ConstraintViolationError) as excinfo:
        ConstraintSolver().enforce_status_constraints(allocation, Op.UPDATE)
    assert excinfo.value.types == [ViolationType.STATUS_INVALID]
    assert "RECEIVED" in excinfo.value.message


def test_quantity_rules():
    solver = ConstraintSolver(large_quantity_threshold=50)

    bad = solver.check_quantity_rules(0)
    assert not bad.valid
    assert bad.violations[0].type == ViolationType.BUSINESS_RULE

    large = solver.check_quantity_rules(51)
    assert large.valid
    assert large.warnings[0].type == "PERFORMANCE"

    assert not solver.check_quantity_rules(None).valid


def test_location_access_rules(db_session, seed):
    admin = _user(db_session, seed, seed.users.admin)
    manager = _user(db_session, seed, seed.users.manager)
    staff_a = _user(db_session, seed, seed.users.staff_a)

    assert check_location_access(admin, "loc-c")
    assert check_location_access(manager, "loc-c")
    assert check_location_access(staff_a, "loc-a")
    assert not check_location_access(staff_a, "loc-b")
    assert not check_location_access(staff_a, None)


def test_batch_over_allocation_reports_amount(db_session, seed, make_po):
    item = make_po((100,)).items[0]
    result = ConstraintSolver(db_session).check_quantity_constraints(
        [
            AllocationInput(po_item_id=item.id, target_location_id="loc-a", quantity_allocated=60),
            AllocationInput(po_item_id=item.id, target_location_id="loc-b", quantity_allocated=50),
        ],
        tenant_id=seed.tenant_id,
    )
    assert [v.type for v in result.violations] == [ViolationType.QUANTITY_EXCEEDED]
    assert result.violations[0].amount == 10


def test_duplicate_and_unknown_items(db_session, seed, make_po):
    item = make_po((100,)).items[0]
    result = ConstraintSolver(db_session).check_quantity_constraints(
        [
            AllocationInput(po_item_id=item.id, target_location_id="loc-a", quantity_allocated=10),
            AllocationInput(po_item_id=item.id, target_location_id="loc-a", quantity_allocated=10),
            AllocationInput(po_item_id="missing", target_location_id="loc-b", quantity_allocated=10),
        ],
        tenant_id=seed.tenant_id,
    )
    messages = [v.message for v in result.violations]
    assert any("Duplicate allocation" in message for message in messages)
    assert any("missing not found" in message for message in messages)


def test_validate_constraints_collects_every_violation(db_session, seed, make_po):
    draft_item = make_po((10,), approve=False).items[0]
    staff_a = _user(db_session, seed, seed.users.staff_a)

    result = ConstraintSolver(db_session).validate_constraints(
        [
            AllocationInput(po_item_id=draft_item.id, target_location_id="loc-b", quantity_allocated=0),
            AllocationInput(po_item_id=draft_item.id, target_location_id="loc-a", quantity_allocated=20),
        ],
        tenant_id=seed.tenant_id,
        user=staff_a,
    )

    assert set(v.type for v in result.violations) == {
        ViolationType.BUSINESS_RULE,
        ViolationType.QUANTITY_EXCEEDED,
        ViolationType.STATUS_INVALID,
        ViolationType.LOCATION_ACCESS,
    }
    access = [v for v in result.violations if v.type == ViolationType.LOCATION_ACCESS]
    assert len(access) == 1
    assert "loc-b" in access[0].message


def test_other_tenants_items_are_invisible(db_session, seed, make_po):
    item = make_po((10,)).items[0]
    result = ConstraintSolver(db_session).check_quantity_constraints(
        [AllocationInput(po_item_id=item.id, target_location_id="loc-x", quantity_allocated=1)],
        tenant_id=seed.other_tenant_id,
    )
    assert not result.valid


def _transfer(status=transfer_models.TransferStatus.REQUESTED):
    return SimpleNamespace(
        source_location_id="loc-a",
        destination_location_id="loc-b",
        status=status,
        requested_by="staff-b",
    )


@pytest.mark.parametrize(
    "user_key, action, status, allowed",
    [
        ("staff_a", TransferAction.REQUEST, "REQUESTED", True),
        ("staff_b", TransferAction.REQUEST, "REQUESTED", True),
        ("staff_a", TransferAction.APPROVE, "REQUESTED", True),
        ("staff_b", TransferAction.APPROVE, "REQUESTED", False),
        ("staff_a", TransferAction.SHIP, "APPROVED", True),
        ("staff_b", TransferAction.SHIP, "APPROVED", False),
        ("staff_b", TransferAction.RECEIVE, "SHIPPED", True),
        ("staff_a", TransferAction.RECEIVE, "SHIPPED", False),
        ("staff_b", TransferAction.CANCEL, "REQUESTED", True),
        ("staff_a", TransferAction.CANCEL, "REQUESTED", False),
        ("staff_a", TransferAction.CANCEL, "APPROVED", True),
        ("manager", TransferAction.RECEIVE, "SHIPPED", True),
    ],
)
def test_transfer_access(db_session, seed, user_key, action, status, allowed):
    user = _user(db_session, seed, getattr(seed.users, user_key))
    violations = ConstraintSolver(db_session).check_transfer_access(
        user, _transfer(transfer_models.TransferStatus(status)), action
    )
    assert (violations == []) is allowed
    if not allowed:
        assert violations[0].type == ViolationType.LOCATION_ACCESS
