from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from procuredb.errors import NotFoundError
from procuredb.apps.accounts import models


@dataclass(frozen=True)
class UserContext:
    """What access checks need to know about the acting user."""

    user_id: str
    tenant_id: str
    role: models.UserRole
    location_id: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in (models.UserRole.ADMIN, models.UserRole.MANAGER)


def get_user(db: Session, *, user_id: str, tenant_id: str) -> models.User:
    user = (
        db.query(models.User)
        .filter(
            models.User.id == user_id,
            models.User.tenant_id == tenant_id,
            models.User.is_active.is_(True),
        )
        .first()
    )
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def get_user_context(db: Session, *, user_id: str, tenant_id: str) -> UserContext:
    """Role/location lookup: ``(user_id, tenant_id) -> {role, location_id}``."""
    user = get_user(db, user_id=user_id, tenant_id=tenant_id)
    return UserContext(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        location_id=user.location_id,
    )


def list_location_users(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    include_privileged: bool = False,
) -> List[models.User]:
    query = db.query(models.User).filter(
        models.User.tenant_id == tenant_id,
        models.User.is_active.is_(True),
    )
    if include_privileged:
        query = query.filter(
            (models.User.location_id == location_id)
            | models.User.role.in_([models.UserRole.ADMIN, models.UserRole.MANAGER])
        )
    else:
        query = query.filter(models.User.location_id == location_id)
    return query.order_by(models.User.email.asc()).all()
