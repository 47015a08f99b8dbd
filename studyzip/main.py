"""Study archive service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studyzip.config import settings
from studyzip.api.v1.router import v1_router
from studyzip.api.v1.health import router as health_root_router
from studyzip.api.v1 import archives as archives_api
from studyzip.api.v1 import jobs as jobs_api
from studyzip.api.v1 import storage as storage_api
from studyzip.archive.assembler import (
    ArchiveAssembler,
    DelegatedExportAssembler,
    LocalAssemblyAssembler,
)
from studyzip.archive.conversion import ImageConverter
from studyzip.archive.errors import StorageProviderError
from studyzip.archive.gateway import RetrievalGateway
from studyzip.archive.pipeline import ArchivePipeline
from studyzip.archive.sweeper import ExpirationSweeper
from studyzip.archive.tracker import StatusTracker
from studyzip.db.dataset_store import DatasetStore, InMemoryDatasetStore, SupabaseDatasetStore
from studyzip.jobs.in_process_queue import InProcessQueue
from studyzip.source.client import DatasetSource
from studyzip.storage.object_store import ObjectStorageUploader

LOG_FORMAT = "%(asctime)s [%(threadName)-12.12s] [%(levelname)-5.5s]  %(message)s"

logger = logging.getLogger("studyzip")


def configure_logging() -> None:
    """Console logging, plus a rotating file when LOG_FILE is set."""
    logger.setLevel(settings.log_level.upper())
    logger.propagate = False
    if logger.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


@dataclass
class Services:
    store: DatasetStore
    source: DatasetSource
    storage: ObjectStorageUploader
    queue: InProcessQueue
    sweeper: ExpirationSweeper
    gateway: RetrievalGateway


def build_store() -> DatasetStore:
    if settings.dataset_store_backend == "memory":
        return InMemoryDatasetStore()
    if settings.dataset_store_backend == "supabase":
        return SupabaseDatasetStore.from_settings()
    raise ValueError(f"Unknown dataset store backend '{settings.dataset_store_backend}'")


def build_assembler(source: DatasetSource) -> ArchiveAssembler:
    if settings.archive_strategy == "delegated":
        return DelegatedExportAssembler(source)
    if settings.archive_strategy == "local":
        converter = ImageConverter(settings.archive_image_format, settings.archive_image_quality)
        return LocalAssemblyAssembler(source, converter)
    raise ValueError(f"Unknown archive strategy '{settings.archive_strategy}'")


def build_services(
    store: DatasetStore,
    source: DatasetSource,
    storage: ObjectStorageUploader,
    assembler: ArchiveAssembler,
) -> Services:
    """Wire the pipeline, queue, sweeper and gateway around the collaborators."""
    tracker = StatusTracker(store, retention_days=settings.archive_retention_days)
    pipeline = ArchivePipeline(assembler, storage, tracker)
    queue = InProcessQueue(worker_fn=pipeline, concurrency=settings.archive_concurrency)
    sweeper = ExpirationSweeper(
        store,
        storage,
        tracker,
        interval_seconds=settings.sweep_interval_seconds,
        max_attempts=settings.sweep_max_attempts,
    )
    gateway = RetrievalGateway(
        store,
        queue,
        tracker,
        storage,
        presign=settings.presign_downloads,
        presign_expires=settings.presign_expires_seconds,
    )
    return Services(store, source, storage, queue, sweeper, gateway)


def wire_api(services: Services) -> None:
    jobs_api.set_dispatcher(services.queue)
    archives_api.set_gateway(services.gateway)
    storage_api.set_storage(services.storage)
    storage_api.set_sweeper(services.sweeper)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging()
    logger.info("Starting study archive service on port %d", settings.service_port)
    logger.info(
        "Archive strategy: %s, concurrency: %d, store: %s",
        settings.archive_strategy, settings.archive_concurrency, settings.dataset_store_backend,
    )

    source = DatasetSource.from_settings()
    storage = ObjectStorageUploader.from_settings()
    try:
        storage.ensure_bucket()
    except StorageProviderError as e:
        logger.error("Archive bucket check failed, uploads will fail until fixed: %s", e)

    services = build_services(build_store(), source, storage, build_assembler(source))
    wire_api(services)

    await services.queue.start()
    if settings.sweep_enabled:
        await services.sweeper.start()

    yield

    logger.info("Shutting down study archive service")
    await services.sweeper.stop()
    await services.queue.stop()
    await source.close()


app = FastAPI(
    title="Study Archive Service",
    description="Builds, stores and serves downloadable archives of imaging studies",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("studyzip.main:app", host="0.0.0.0", port=settings.service_port)
