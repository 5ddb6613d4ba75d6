"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.applications import router as applications_router
from app.api.routes.auto_topup import router as auto_topup_router
from app.api.routes.credits import router as credits_router
from app.api.routes.jobs import router as jobs_router

router = APIRouter()

router.include_router(credits_router, prefix="/credits", tags=["Credits"])
router.include_router(auto_topup_router, prefix="/auto-topup", tags=["Auto-Topup"])
router.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])
router.include_router(applications_router, prefix="/applications", tags=["Applications"])
