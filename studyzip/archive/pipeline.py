"""Worker function: assemble, upload and record one study archive."""

import logging
import time
from typing import Any, Dict

from studyzip.archive.assembler import ArchiveAssembler
from studyzip.archive.tracker import StatusTracker
from studyzip.jobs.models import Job
from studyzip.storage.object_store import ObjectStorageUploader, object_key

logger = logging.getLogger(__name__)


class ArchivePipeline:
    """Runs a job end to end and mirrors its outcome onto the archive record.

    Failures are written to the record and then re-raised so the queue marks
    the job failed as well.
    """

    def __init__(
        self,
        assembler: ArchiveAssembler,
        uploader: ObjectStorageUploader,
        tracker: StatusTracker,
    ):
        self._assembler = assembler
        self._uploader = uploader
        self._tracker = tracker

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        start = time.perf_counter()
        try:
            await self._tracker.mark_processing(payload.dataset_record_ref, job.id)
            archive = await self._assembler.assemble(payload, progress_cb=job.set_progress)
            try:
                info = archive.source_metadata
                tags = {
                    "dataset-id": payload.dataset_id,
                    "study-instance-uid": payload.study_instance_uid or info.get("study_instance_uid", ""),
                    "patient-id": info.get("patient_id", ""),
                    "patient-name": info.get("patient_name", ""),
                }

                def on_upload(sent: int, total: int) -> None:
                    if total:
                        job.set_progress(50 + int(50 * sent / total) - 1, "Uploading archive")

                upload = await self._uploader.upload(
                    archive.fileobj,
                    object_key(archive.file_name),
                    archive.size_bytes,
                    tags,
                    progress_cb=on_upload,
                )
            finally:
                archive.close()

            processing_time_ms = int((time.perf_counter() - start) * 1000)
            await self._tracker.mark_completed(
                payload.dataset_record_ref,
                job.id,
                upload,
                archive,
                instance_count=payload.instance_count,
                series_count=payload.series_count or info.get("series_count", 0),
                processing_time_ms=processing_time_ms,
            )
        except Exception as e:
            await self._tracker.mark_failed(payload.dataset_record_ref, job.id, str(e) or type(e).__name__)
            raise

        logger.info(
            "Archive for dataset=%s ready: %s (%s MB) in %dms",
            payload.dataset_id, archive.file_name, upload.size_mb, processing_time_ms,
        )
        return {
            "url": upload.url,
            "file_name": archive.file_name,
            "size_mb": upload.size_mb,
            "key": upload.key,
            "etag": upload.etag,
            "processing_time_ms": processing_time_ms,
            "total_original_files": archive.total_original_files,
            "successful_conversions": archive.successful_conversions,
            "failed_files": archive.failed_files,
        }
