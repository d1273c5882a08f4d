from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.api.deps import get_db
from chantier.app.db.models.core_types import MaterialStatus
from chantier.app.db.models.models_v1 import Material

router = APIRouter(prefix="/materials")


class MaterialCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="unit", min_length=1, max_length=32)
    dimension: str | None = Field(default=None, max_length=64)
    category: str | None = Field(default=None, max_length=64)
    manufacturer: str | None = Field(default=None, max_length=128)
    cost_per_unit: Decimal | None = Field(default=None, ge=0)
    min_stock_level: Decimal | None = Field(default=None, ge=0)
    max_stock_level: Decimal | None = Field(default=None, ge=0)
    expires_on: date | None = None
    barcode: str | None = Field(default=None, max_length=64)


class MaterialUpdate(BaseModel):
    expires_on: date | None = None
    status: MaterialStatus | None = None


def _material_out(mat: Material) -> dict:
    return {
        "id": mat.id,
        "name": mat.name,
        "unit": mat.unit,
        "dimension": mat.dimension,
        "category": mat.category,
        "manufacturer": mat.manufacturer,
        "cost_per_unit": None if mat.cost_per_unit is None else float(mat.cost_per_unit),
        "min_stock_level": None if mat.min_stock_level is None else float(mat.min_stock_level),
        "max_stock_level": None if mat.max_stock_level is None else float(mat.max_stock_level),
        "expires_on": mat.expires_on,
        "barcode": mat.barcode,
        "status": MaterialStatus(mat.status).value,
    }


@router.get("")
def list_materials(
    category: str | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(Material).order_by(Material.name)
    if category is not None:
        stmt = stmt.where(Material.category == category)
    rows = db.execute(stmt).scalars().all()
    return [_material_out(mat) for mat in rows]


@router.get("/{material_id}")
def get_material(material_id: int, db: Session = Depends(get_db)):
    mat = db.get(Material, material_id)
    if not mat:
        raise HTTPException(status_code=404, detail="Material not found")
    return _material_out(mat)


@router.post("", status_code=201)
def create_material(payload: MaterialCreate, db: Session = Depends(get_db)):
    if payload.barcode:
        exists = db.execute(select(Material).where(Material.barcode == payload.barcode)).scalar_one_or_none()
        if exists:
            raise HTTPException(status_code=409, detail="Barcode already exists")

    if (
        payload.min_stock_level is not None
        and payload.max_stock_level is not None
        and payload.min_stock_level > payload.max_stock_level
    ):
        raise HTTPException(status_code=400, detail="min_stock_level must be <= max_stock_level")

    mat = Material(**payload.model_dump())
    db.add(mat)
    db.commit()
    db.refresh(mat)

    return _material_out(mat)


@router.patch("/{material_id}")
def update_material(material_id: int, payload: MaterialUpdate, db: Session = Depends(get_db)):
    mat = db.get(Material, material_id)
    if not mat:
        raise HTTPException(status_code=404, detail="Material not found")

    # expires_on peut être remis à null explicitement
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(mat, key, value)
    db.commit()
    db.refresh(mat)
    return _material_out(mat)
