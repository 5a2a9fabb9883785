from fastapi import APIRouter

from appforge.api.builds import router as builds_router
from appforge.api.callbacks import router as callbacks_router
from appforge.api.jobs import router as jobs_router
from appforge.api.publish import router as publish_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(builds_router, prefix="/api", tags=["builds"])
api_router.include_router(publish_router, prefix="/api", tags=["publish"])
api_router.include_router(jobs_router, prefix="/api", tags=["jobs"])
api_router.include_router(callbacks_router, prefix="/api", tags=["callbacks"])
