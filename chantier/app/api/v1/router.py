from fastapi import APIRouter

from chantier.app.api.v1.endpoints.health import router as health_router
from chantier.app.api.v1.endpoints.materials import router as materials_router
from chantier.app.api.v1.endpoints.projects import router as projects_router
from chantier.app.api.v1.endpoints.material_operations import router as material_operations_router
from chantier.app.api.v1.endpoints.stock import router as stock_router
from chantier.app.api.v1.endpoints.stock_alerts import router as stock_alerts_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(materials_router, tags=["materials"])
router.include_router(projects_router, tags=["projects"])
router.include_router(material_operations_router, tags=["material_operations"])
router.include_router(stock_router, tags=["stock"])
router.include_router(stock_alerts_router, tags=["stock_alerts"])
