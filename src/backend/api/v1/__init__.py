"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from api.v1.admin_privacy import router as admin_privacy_router
from api.v1.evaluations import router as evaluations_router

router = APIRouter()

router.include_router(evaluations_router, prefix="/evaluations", tags=["Evaluations"])
router.include_router(admin_privacy_router, prefix="/admin/privacy", tags=["Admin Privacy Diagnostics"])
