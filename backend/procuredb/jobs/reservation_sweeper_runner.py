"""Expired reservation sweeper.

Safe to run from cron: reservations that already lapsed are released once,
anything still active is left alone.
"""

from __future__ import annotations

from typing import Optional

from procuredb.apps.transfers.reservations import InventoryReservationManager
from procuredb.database import WriteSessionLocal, session_scope
from procuredb.utils.clock import Clock


def run(clock: Optional[Clock] = None, session_factory=WriteSessionLocal) -> int:
    with session_scope(session_factory) as db:
        return InventoryReservationManager(db, clock=clock).sweep_expired()


if __name__ == "__main__":
    count = run()
    print(f"Reservation sweeper released {count} reservations")
