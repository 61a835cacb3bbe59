"""Per-tenant PO number sequences.

Numbers are assigned when a purchase order is approved. The next number is
one past the highest numeric suffix already used under the same base
pattern for the tenant, so gaps left by cancelled orders are never reused.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from procuredb.errors import ConcurrencyError, ValidationError
from procuredb.utils.clock import Clock, resolve_clock
from procuredb.apps.purchasing import models

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class PONumberFormat(str, enum.Enum):
    SEQUENTIAL = "SEQUENTIAL"
    YEARLY_SEQUENTIAL = "YEARLY_SEQUENTIAL"
    MONTHLY_SEQUENTIAL = "MONTHLY_SEQUENTIAL"
    CUSTOM_PREFIX = "CUSTOM_PREFIX"


@dataclass(frozen=True)
class PONumberConfig:
    format: PONumberFormat
    prefix: str = "PO"
    year_format: str = "YYYY"
    sequence_length: int = 4
    separator: str = "-"


DEFAULT_CONFIGS = {
    PONumberFormat.SEQUENTIAL: PONumberConfig(format=PONumberFormat.SEQUENTIAL),
    PONumberFormat.YEARLY_SEQUENTIAL: PONumberConfig(format=PONumberFormat.YEARLY_SEQUENTIAL),
    PONumberFormat.MONTHLY_SEQUENTIAL: PONumberConfig(
        format=PONumberFormat.MONTHLY_SEQUENTIAL, sequence_length=3
    ),
    PONumberFormat.CUSTOM_PREFIX: PONumberConfig(format=PONumberFormat.CUSTOM_PREFIX, prefix="CUSTOM"),
}


def default_config(fmt: Optional[PONumberFormat] = None) -> PONumberConfig:
    if fmt is None:
        fmt = PONumberFormat(os.getenv("PO_NUMBER_FORMAT", PONumberFormat.YEARLY_SEQUENTIAL.value))
    return DEFAULT_CONFIGS[PONumberFormat(fmt)]


def validate_config(config: PONumberConfig) -> None:
    failures = []
    if not isinstance(config.format, PONumberFormat):
        failures.append({"field": "format", "reason": f"Invalid PO number format: {config.format}"})
    if not 1 <= config.sequence_length <= 10:
        failures.append({"field": "sequence_length", "reason": "Sequence length must be between 1 and 10"})
    if not config.prefix or len(config.prefix) > 20:
        failures.append({"field": "prefix", "reason": "Prefix must be between 1 and 20 characters"})
    if len(config.separator or "") != 1:
        failures.append({"field": "separator", "reason": "Separator must be exactly 1 character"})
    if config.year_format not in ("YYYY", "YY"):
        failures.append({"field": "year_format", "reason": "Year format must be either YYYY or YY"})
    if failures:
        raise ValidationError("Invalid PO number configuration", detail=failures)


def base_pattern(config: PONumberConfig, now: datetime) -> str:
    year = str(now.year)
    if config.year_format == "YY":
        year = year[-2:]
    sep = config.separator
    if config.format == PONumberFormat.YEARLY_SEQUENTIAL:
        return f"{config.prefix}{sep}{year}"
    if config.format == PONumberFormat.MONTHLY_SEQUENTIAL:
        return f"{config.prefix}{sep}{year}{sep}{now.month:02d}"
    return config.prefix


def format_number(config: PONumberConfig, base: str, sequence: int) -> str:
    return f"{base}{config.separator}{sequence:0{config.sequence_length}d}"


class PONumberGenerator:
    def __init__(
        self,
        db: Session,
        *,
        config: Optional[PONumberConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or default_config()
        validate_config(self.config)
        self.db = db
        self.clock = resolve_clock(clock)

    def is_unique(self, po_number: str, tenant_id: str) -> bool:
        if not po_number or not tenant_id:
            return False
        existing = (
            self.db.query(models.PurchaseOrder.id)
            .filter(
                models.PurchaseOrder.tenant_id == tenant_id,
                models.PurchaseOrder.po_number == po_number,
            )
            .first()
        )
        return existing is None

    def next_sequence(self, tenant_id: str) -> int:
        base = base_pattern(self.config, self.clock.now())
        head = f"{base}{self.config.separator}"
        rows = (
            self.db.query(models.PurchaseOrder.po_number)
            .filter(
                models.PurchaseOrder.tenant_id == tenant_id,
                models.PurchaseOrder.po_number.like(f"{head}%"),
            )
            .all()
        )
        # Only suffixes that are purely numeric belong to this base pattern.
        suffixes = [int(row.po_number[len(head):]) for row in rows if row.po_number[len(head):].isdigit()]
        return max(suffixes, default=0) + 1

    def generate(self, tenant_id: str) -> str:
        if not tenant_id:
            raise ValidationError(
                "Tenant ID is required for PO number generation",
                detail=[{"field": "tenant_id", "reason": "Tenant ID is required"}],
            )
        base = base_pattern(self.config, self.clock.now())
        sequence = self.next_sequence(tenant_id)
        for attempt in range(1, MAX_ATTEMPTS + 1):
            candidate = format_number(self.config, base, sequence)
            if self.is_unique(candidate, tenant_id):
                return candidate
            logger.warning(
                "PO number already taken, retrying",
                extra={"tenant_id": tenant_id, "po_number": candidate, "attempt": attempt},
            )
            sequence += 1
        raise ConcurrencyError(
            f"Failed to generate a unique PO number after {MAX_ATTEMPTS} attempts",
            detail=[{"field": "po_number", "reason": "Sequence contention, retry the approval"}],
        )
