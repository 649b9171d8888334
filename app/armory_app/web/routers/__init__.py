from fastapi import APIRouter

from armory_app.web.routers.admin.permissions import router as permissions_router
from armory_app.web.routers.api import router as api_router
from armory_app.web.routers.system import router as system_router


router = APIRouter()
router.include_router(system_router)
router.include_router(api_router)
router.include_router(permissions_router)
