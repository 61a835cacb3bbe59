"""Soft claims on on-hand stock, one per shipped transfer.

A reservation is active while it has not been released and ``now`` is
before ``expires_at``. Expiry is a pure function of the clock, so readers
never need the sweeper to have run; the sweeper only stamps
``released_at`` on rows that have lapsed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from procuredb.errors import ValidationError
from procuredb.utils.clock import Clock, ensure_utc, resolve_clock
from procuredb.utils.identifiers import IdSource, resolve_id_source
from procuredb.apps.transfers import models, stock

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=int(os.getenv("RESERVATION_TTL_MINUTES", "1440")))
MAX_TTL = timedelta(minutes=int(os.getenv("RESERVATION_MAX_TTL_MINUTES", "10080")))


@dataclass
class Availability:
    product_id: str
    location_id: str
    on_hand: int
    reserved: int
    in_transit: int

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved - self.in_transit

    def covers(self, quantity: int) -> bool:
        return self.available >= quantity


def is_active(reservation: models.InventoryReservation, now: datetime) -> bool:
    if reservation.released_at is not None:
        return False
    return ensure_utc(now) < ensure_utc(reservation.expires_at)


class InventoryReservationManager:
    def __init__(
        self,
        db: Session,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdSource] = None,
        default_ttl: Optional[timedelta] = None,
        max_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = resolve_clock(clock)
        self.ids = resolve_id_source(ids)
        self.default_ttl = default_ttl or DEFAULT_TTL
        self.max_ttl = max_ttl or MAX_TTL

    is_active = staticmethod(is_active)

    def _validate(self, quantity: int, ttl: timedelta) -> None:
        failures = []
        if quantity is None or quantity <= 0:
            failures.append({"field": "quantity", "reason": "Reserved quantity must be greater than 0"})
        if ttl <= timedelta(0):
            failures.append({"field": "ttl", "reason": "Reservation TTL must be positive"})
        elif ttl > self.max_ttl:
            failures.append({"field": "ttl", "reason": f"Reservation TTL cannot exceed {self.max_ttl}"})
        if failures:
            raise ValidationError("Invalid reservation", detail=failures)

    def get(self, reservation_id: str, *, tenant_id: str) -> Optional[models.InventoryReservation]:
        return (
            self.db.query(models.InventoryReservation)
            .filter(
                models.InventoryReservation.id == reservation_id,
                models.InventoryReservation.tenant_id == tenant_id,
            )
            .first()
        )

    def reserve(
        self,
        *,
        tenant_id: str,
        transfer_id: str,
        product_id: str,
        location_id: str,
        quantity: int,
        reserved_by: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> models.InventoryReservation:
        """Claim stock for a transfer.

        At most one row exists per (product, location, transfer): an active
        claim is returned as is, a lapsed or released one is re-armed.
        """
        ttl = ttl if ttl is not None else self.default_ttl
        self._validate(quantity, ttl)
        now = self.clock.now()

        existing = (
            self.db.query(models.InventoryReservation)
            .filter(
                models.InventoryReservation.tenant_id == tenant_id,
                models.InventoryReservation.transfer_id == transfer_id,
                models.InventoryReservation.product_id == product_id,
                models.InventoryReservation.location_id == location_id,
            )
            .first()
        )
        if existing is not None and is_active(existing, now):
            return existing

        if existing is None:
            existing = models.InventoryReservation(
                id=self.ids.new_id(),
                tenant_id=tenant_id,
                transfer_id=transfer_id,
                product_id=product_id,
                location_id=location_id,
            )
            self.db.add(existing)
        existing.quantity_reserved = quantity
        existing.reserved_by = reserved_by
        existing.reserved_at = now
        existing.expires_at = now + ttl
        existing.released_at = None
        self.db.flush()
        return existing

    def release(self, reservation_id: str, *, tenant_id: str) -> Optional[models.InventoryReservation]:
        """Stamp ``released_at``. Releasing twice, or a missing id, does nothing."""
        reservation = self.get(reservation_id, tenant_id=tenant_id)
        if reservation is None or reservation.released_at is not None:
            return reservation
        reservation.released_at = self.clock.now()
        self.db.flush()
        return reservation

    def release_for_transfer(self, transfer_id: str, *, tenant_id: str) -> int:
        rows = (
            self.db.query(models.InventoryReservation)
            .filter(
                models.InventoryReservation.tenant_id == tenant_id,
                models.InventoryReservation.transfer_id == transfer_id,
                models.InventoryReservation.released_at.is_(None),
            )
            .all()
        )
        now = self.clock.now()
        for reservation in rows:
            reservation.released_at = now
        if rows:
            self.db.flush()
        return len(rows)

    def _active_query(self, *, tenant_id: str, product_id: str, location_id: str, now: datetime):
        return self.db.query(models.InventoryReservation).filter(
            models.InventoryReservation.tenant_id == tenant_id,
            models.InventoryReservation.product_id == product_id,
            models.InventoryReservation.location_id == location_id,
            models.InventoryReservation.released_at.is_(None),
            models.InventoryReservation.expires_at > now,
        )

    def active_reservations(
        self,
        *,
        tenant_id: str,
        product_id: str,
        location_id: str,
    ) -> List[models.InventoryReservation]:
        now = self.clock.now()
        return self._active_query(
            tenant_id=tenant_id, product_id=product_id, location_id=location_id, now=now
        ).all()

    def reserved_quantity(
        self,
        *,
        tenant_id: str,
        product_id: str,
        location_id: str,
        exclude_transfer_id: Optional[str] = None,
    ) -> int:
        query = self._active_query(
            tenant_id=tenant_id, product_id=product_id, location_id=location_id, now=self.clock.now()
        )
        if exclude_transfer_id:
            query = query.filter(models.InventoryReservation.transfer_id != exclude_transfer_id)
        total = query.with_entities(func.coalesce(func.sum(models.InventoryReservation.quantity_reserved), 0)).scalar()
        return int(total or 0)

    def in_transit_quantity(
        self,
        *,
        tenant_id: str,
        product_id: str,
        location_id: str,
        exclude_transfer_id: Optional[str] = None,
    ) -> int:
        """Shipped-but-not-received stock leaving ``location_id``.

        Transfers still covered by an active reservation are already counted
        as reserved and are skipped here.
        """
        now = self.clock.now()
        covered = {
            row.transfer_id
            for row in self._active_query(
                tenant_id=tenant_id, product_id=product_id, location_id=location_id, now=now
            ).with_entities(models.InventoryReservation.transfer_id)
        }
        shipped = (
            self.db.query(models.Transfer)
            .filter(
                models.Transfer.tenant_id == tenant_id,
                models.Transfer.product_id == product_id,
                models.Transfer.source_location_id == location_id,
                models.Transfer.status == models.TransferStatus.SHIPPED,
            )
            .all()
        )
        return sum(
            transfer.quantity_shipped or 0
            for transfer in shipped
            if transfer.id not in covered and transfer.id != exclude_transfer_id
        )

    def check_availability(
        self,
        *,
        tenant_id: str,
        product_id: str,
        location_id: str,
        exclude_transfer_id: Optional[str] = None,
    ) -> Availability:
        """on-hand minus active reservations minus uncovered in-transit stock."""
        return Availability(
            product_id=product_id,
            location_id=location_id,
            on_hand=stock.get_on_hand(db=self.db, tenant_id=tenant_id, product_id=product_id, location_id=location_id),
            reserved=self.reserved_quantity(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                exclude_transfer_id=exclude_transfer_id,
            ),
            in_transit=self.in_transit_quantity(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                exclude_transfer_id=exclude_transfer_id,
            ),
        )

    def sweep_expired(self, *, tenant_id: Optional[str] = None) -> int:
        """Release every lapsed reservation; returns how many were stamped."""
        now = self.clock.now()
        query = self.db.query(models.InventoryReservation).filter(
            models.InventoryReservation.released_at.is_(None),
            models.InventoryReservation.expires_at <= now,
        )
        if tenant_id:
            query = query.filter(models.InventoryReservation.tenant_id == tenant_id)
        expired = query.all()
        for reservation in expired:
            reservation.released_at = now
        if expired:
            self.db.flush()
            logger.info("Released expired reservations", extra={"count": len(expired), "tenant_id": tenant_id})
        return len(expired)
