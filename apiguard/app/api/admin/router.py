from fastapi import APIRouter, Depends
from apiguard.app.middleware.auth import require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

from . import cache, rate_limits

router.include_router(rate_limits.router, prefix="/rate-limits", tags=["admin-rate-limits"])
router.include_router(cache.router, prefix="/cache", tags=["admin-cache"])
