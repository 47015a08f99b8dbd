"""Archive assembly strategies.

delegated -- ask the source for its pre-built study archive and keep the
             stream verbatim.
local     -- fetch every instance, convert it individually and pack the
             converted files plus a metadata.json descriptor into a ZIP.
"""

import asyncio
import json
import logging
import re
import tempfile
import uuid
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from studyzip.archive.conversion import Converter
from studyzip.archive.errors import (
    ArchiveError,
    PartialConversionError,
    TotalConversionFailure,
)
from studyzip.archive.models import AssembledArchive
from studyzip.jobs.models import ArchiveJobPayload
from studyzip.source.client import DatasetSource

logger = logging.getLogger(__name__)

# Type alias for progress callbacks: fn(percent, message)
ProgressCallback = Callable[[int, str], None]

METADATA_ENTRY = "metadata.json"
GENERATOR = "studyzip"

# Archives up to this size stay in memory while they are built.
_SPOOL_MAX_BYTES = 32 * 1024 * 1024

_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


def _clean(value: Any, default: str = "Unknown") -> str:
    return _UNSAFE.sub("_", str(value or default))


def build_file_name(
    study: Dict[str, Any],
    dataset_id: str,
    now: Optional[datetime] = None,
    suffix: Optional[str] = None,
) -> str:
    """Readable, collision-free archive name for a study.

    The prefix is derived from patient and study tags for operators; the
    random suffix is what makes two runs on the same day distinct.
    """
    now = now or datetime.now(timezone.utc)
    patient = study.get("PatientMainDicomTags") or {}
    main = study.get("MainDicomTags") or {}
    parts = [
        "Study",
        _clean(patient.get("PatientName")),
        _clean(patient.get("PatientID")),
        _clean(main.get("StudyDate"), default=""),
        _clean(dataset_id),
        now.strftime("%Y%m%d"),
        suffix or uuid.uuid4().hex[:8],
    ]
    return "_".join(parts) + ".zip"


def describe_study(study: Dict[str, Any]) -> Dict[str, Any]:
    """Identifiers carried into object tags and the metadata descriptor."""
    patient = study.get("PatientMainDicomTags") or {}
    main = study.get("MainDicomTags") or {}
    return {
        "patient_name": _clean(patient.get("PatientName")),
        "patient_id": _clean(patient.get("PatientID")),
        "study_date": main.get("StudyDate", ""),
        "study_instance_uid": main.get("StudyInstanceUID", ""),
        "series_count": len(study.get("Series") or []),
    }


def _spool() -> tempfile.SpooledTemporaryFile:
    return tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES, suffix=".zip")


def _noop_progress(percent: int, message: str) -> None:
    pass


class ArchiveAssembler(ABC):
    """Builds exactly one archive for one job payload."""

    def __init__(self, source: DatasetSource):
        self._source = source

    @abstractmethod
    async def assemble(
        self,
        payload: ArchiveJobPayload,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> AssembledArchive:
        ...


class DelegatedExportAssembler(ArchiveAssembler):
    """Uses the source's own study export as the archive payload."""

    async def assemble(
        self,
        payload: ArchiveJobPayload,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> AssembledArchive:
        progress_cb = progress_cb or _noop_progress
        study = await self._source.get_study(payload.dataset_id)
        file_name = build_file_name(study, payload.dataset_id)
        logger.info("Requesting export of %s as %s", payload.dataset_id, file_name)
        progress_cb(10, "Exporting study from source")

        spool = _spool()
        try:
            size = await self._source.export_archive(payload.dataset_id, spool)
            if size == 0:
                raise ArchiveError(f"Source returned an empty archive for {payload.dataset_id}")
        except BaseException:
            spool.close()
            raise
        spool.seek(0)
        progress_cb(50, "Export received")

        return AssembledArchive(
            file_name=file_name,
            fileobj=spool,
            size_bytes=size,
            total_original_files=payload.instance_count,
            successful_conversions=payload.instance_count,
            source_metadata=describe_study(study),
        )


class LocalAssemblyAssembler(ArchiveAssembler):
    """Converts each instance and zips the results with a descriptor."""

    def __init__(self, source: DatasetSource, converter: Converter):
        super().__init__(source)
        self._converter = converter

    async def assemble(
        self,
        payload: ArchiveJobPayload,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> AssembledArchive:
        progress_cb = progress_cb or _noop_progress
        study = await self._source.get_study(payload.dataset_id)
        instance_ids = await self._source.list_instances(payload.dataset_id)
        file_name = build_file_name(study, payload.dataset_id)
        total = len(instance_ids)
        logger.info(
            "Assembling %s locally from %d instance(s) as %s",
            payload.dataset_id, total, file_name,
        )

        loop = asyncio.get_running_loop()
        spool = _spool()
        failed: List[str] = []
        converted = 0
        try:
            with zipfile.ZipFile(spool, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for index, instance_id in enumerate(instance_ids):
                    try:
                        data = await self._source.get_instance_image(instance_id)
                        # Pillow work is CPU bound; keep it off the event loop
                        entry_name, body = await loop.run_in_executor(
                            None, self._converter, instance_id, data
                        )
                    except PartialConversionError as e:
                        failed.append(instance_id)
                        logger.warning("Skipping instance %s: %s", instance_id, e.reason)
                        continue
                    except ArchiveError as e:
                        failed.append(instance_id)
                        logger.warning("Skipping instance %s: %s", instance_id, e)
                        continue
                    zf.writestr(entry_name, body)
                    converted += 1
                    progress_cb(
                        int(50 * (index + 1) / total),
                        f"Converted {converted}/{total} instances",
                    )

                if converted == 0:
                    raise TotalConversionFailure(
                        f"No instances of {payload.dataset_id} could be converted "
                        f"({total} attempted)"
                    )

                descriptor = self._descriptor(payload, study, total, converted, failed)
                zf.writestr(METADATA_ENTRY, json.dumps(descriptor, indent=2))
        except BaseException:
            spool.close()
            raise

        size = spool.tell()
        spool.seek(0)
        if failed:
            logger.warning(
                "Archive for %s is partial: %d of %d instance(s) converted",
                payload.dataset_id, converted, total,
            )

        return AssembledArchive(
            file_name=file_name,
            fileobj=spool,
            size_bytes=size,
            entry_count=converted + 1,
            total_original_files=total,
            successful_conversions=converted,
            failed_files=failed,
            source_metadata=describe_study(study),
        )

    @staticmethod
    def _descriptor(
        payload: ArchiveJobPayload,
        study: Dict[str, Any],
        total: int,
        converted: int,
        failed: List[str],
    ) -> Dict[str, Any]:
        info = describe_study(study)
        return {
            "datasetId": payload.dataset_id,
            "studyInstanceUID": payload.study_instance_uid or info["study_instance_uid"],
            "patientId": info["patient_id"],
            "patientName": info["patient_name"],
            "studyDate": info["study_date"],
            "instanceCount": payload.instance_count,
            "seriesCount": payload.series_count,
            "totalOriginalFiles": total,
            "successfulConversions": converted,
            "failedFiles": failed,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "generator": GENERATOR,
        }
