from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from chantier.app.core.clock import Clock, SystemClock
from chantier.app.db.session import SessionLocal
from chantier.app.db.models.models_v1 import Material, Project, StockAlertRule
from chantier.app.db.models.core_types import AlertType


def run_seed(db: Session | None = None, *, clock: Clock | None = None):
    today = (clock or SystemClock()).now().date()
    owned = db is None
    if owned:
        db = SessionLocal()
    try:
        # 1) Projet de démo
        project = db.scalar(select(Project).where(Project.name == "Chantier Démo"))
        if not project:
            project = Project(name="Chantier Démo", active=True)
            db.add(project)
            db.commit()

        # 2) Matériau entrepôt avec péremption (ciment)
        cement = db.scalar(select(Material).where(Material.name == "Ciment CEM II 32.5"))
        if not cement:
            cement = Material(
                name="Ciment CEM II 32.5",
                unit="sac",
                category="liants",
                cost_per_unit=Decimal("7.90"),
                min_stock_level=Decimal("20"),
                expires_on=today + timedelta(days=90),
            )
            db.add(cement)
            db.commit()

        # 3) Règles d'alerte par défaut (entrepôt)
        has_rules = db.scalar(select(StockAlertRule).where(StockAlertRule.material_id == cement.id))
        if not has_rules:
            db.add_all(
                [
                    StockAlertRule(material_id=cement.id, alert_type=AlertType.low_stock, threshold=Decimal("20")),
                    StockAlertRule(material_id=cement.id, alert_type=AlertType.out_of_stock, threshold=None),
                    StockAlertRule(material_id=cement.id, alert_type=AlertType.expiring, threshold=Decimal("14")),
                ]
            )
            db.commit()

        print(f"SEED OK: project={project.name}, material={cement.name}")
    finally:
        if owned:
            db.close()


if __name__ == "__main__":
    run_seed()
