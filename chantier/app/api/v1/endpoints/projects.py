from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.api.deps import get_db
from chantier.app.db.models.models_v1 import Project

router = APIRouter(prefix="/projects")


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    active: bool = True


@router.get("")
def list_projects(
    active: bool | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(Project).order_by(Project.id)
    if active is not None:
        stmt = stmt.where(Project.active == active)

    rows = db.execute(stmt).scalars().all()
    return [{"id": p.id, "name": p.name, "active": p.active} for p in rows]


@router.post("", status_code=201)
def create_project(payload: ProjectCreate, db: Session = Depends(get_db)):
    exists = db.execute(select(Project).where(Project.name == payload.name)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Project name already exists")

    p = Project(name=payload.name, active=payload.active)
    db.add(p)
    db.commit()
    db.refresh(p)
    return {"id": p.id, "name": p.name, "active": p.active}
