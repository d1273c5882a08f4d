from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header, HTTPException

from chantier.app.core.clock import Clock, SystemClock
from chantier.app.core.config import Settings, get_settings
from chantier.app.db.models.core_types import MANAGER_ROLES, Role
from chantier.app.db.session import SessionLocal

_system_clock = SystemClock()


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return _system_clock


def get_app_settings() -> Settings:
    return get_settings()


def get_role(x_role: str = Header(default=Role.field.value, alias="X-Role")) -> Role:
    # L'auth est externe : le gateway pose X-Role / X-User-Id
    try:
        return Role(x_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role {x_role!r}") from None


def get_user_id(x_user_id: int | None = Header(default=None, alias="X-User-Id")) -> int | None:
    return x_user_id


def require_manager(role: Role = Depends(get_role)) -> Role:
    if role not in MANAGER_ROLES:
        raise HTTPException(status_code=403, detail="Manager or admin role required")
    return role
