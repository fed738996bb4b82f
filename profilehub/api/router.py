from __future__ import annotations

from fastapi import APIRouter

from profilehub.api.routers import collectors, runs

router = APIRouter(prefix="/api/v1")
router.include_router(collectors.router)
router.include_router(runs.router)
