"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from studyzip.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and configuration summary."""
    return {
        "status": "healthy",
        "archive_strategy": settings.archive_strategy,
        "archive_concurrency": settings.archive_concurrency,
        "dataset_store_backend": settings.dataset_store_backend,
        "storage_bucket": settings.storage_bucket,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
