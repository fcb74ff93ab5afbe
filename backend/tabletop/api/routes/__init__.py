from fastapi import APIRouter

from tabletop.api.routes.assets import router as assets_router
from tabletop.api.routes.boards import router as boards_router
from tabletop.api.routes.health import router as health_router
from tabletop.api.routes.rooms import router as rooms_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(boards_router, prefix="/boards", tags=["boards"])
router.include_router(rooms_router, prefix="/rooms", tags=["rooms"])
router.include_router(assets_router, prefix="/assets", tags=["assets"])
