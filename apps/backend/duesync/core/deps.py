from __future__ import annotations

from enum import IntFlag

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .clock import Clock, SystemClock
from .database import SessionLocal, get_db
from .. import models
from ..services.calendar_adapter import revoke_google_token
from ..services.scheduler_runner import whatsapp_dispatcher


class Capability(IntFlag):
    NONE = 0
    VIEW_OTHERS = 1
    EDIT_OTHERS = 2
    MANAGE_CALENDAR = 4
    RUN_SCHEDULER = 8


ROLE_CAPABILITIES: dict[str, Capability] = {
    "owner": Capability.VIEW_OTHERS | Capability.EDIT_OTHERS | Capability.MANAGE_CALENDAR | Capability.RUN_SCHEDULER,
    "admin": Capability.VIEW_OTHERS | Capability.EDIT_OTHERS | Capability.RUN_SCHEDULER,
    "member": Capability.NONE,
}


def resolve_capabilities(user: models.User) -> Capability:
    """Capabilities granted by the user's organization role (none without an organization)."""
    if user.organization_id is None or not user.org_role:
        return Capability.NONE
    return ROLE_CAPABILITIES.get(user.org_role, Capability.NONE)


def get_current_user(
    db: Session = Depends(get_db),
    x_user_id: int | None = Header(default=None),
) -> models.User:
    """Very lightweight current user resolver.

    Authentication is handled upstream; the gateway forwards the user id in
    ``X-User-Id``. Without it the first user is used (creating a demo user if
    the database is empty). Tests may override this dependency.
    """
    if x_user_id is not None:
        user = db.get(models.User, x_user_id)
        if user is not None:
            return user
    user = db.query(models.User).order_by(models.User.id).first()
    if not user:
        user = models.User(email="demo@example.com", is_active=True)
        db.add(user)
        db.flush()
        db.add(models.UserProfile(user_id=user.id, display_name="Demo"))
        db.commit()
        db.refresh(user)
    return user


def get_capabilities(user: models.User = Depends(get_current_user)) -> Capability:
    return resolve_capabilities(user)


def visible_user_ids(db: Session, user: models.User, caps: Capability) -> list[int]:
    """Owners whose records the current user may list."""
    if caps & Capability.VIEW_OTHERS and user.organization_id is not None:
        rows = db.query(models.User.id).filter(models.User.organization_id == user.organization_id).all()
        return [row[0] for row in rows]
    return [user.id]


def can_edit(user: models.User, caps: Capability, owner: models.User | None, owner_id: int) -> bool:
    if owner_id == user.id:
        return True
    if not caps & Capability.EDIT_OTHERS:
        return False
    return owner is not None and owner.organization_id == user.organization_id


def get_clock() -> Clock:
    return SystemClock()


def get_session_factory():
    return SessionLocal


def get_adapter_factory():
    """Calendar adapter factory; None selects the Google adapter."""
    return None


def get_dispatcher_factory():
    return whatsapp_dispatcher


def get_token_revoker():
    return revoke_google_token
