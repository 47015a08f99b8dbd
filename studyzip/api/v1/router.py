"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from studyzip.api.v1.health import router as health_router
from studyzip.api.v1.jobs import router as jobs_router
from studyzip.api.v1.archives import router as archives_router
from studyzip.api.v1.storage import router as storage_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(archives_router, tags=["archives"])
v1_router.include_router(storage_router, tags=["storage"])
