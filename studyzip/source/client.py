"""HTTP client for the Dataset Source (the PACS that exports studies).

All requests use basic auth. Metadata calls are short; the full-study export
streams for minutes on large studies; each read and the export as a whole
are bounded by `export_timeout`.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import IO, Any, AsyncIterator, Dict, List, Optional

import httpx

from studyzip.archive.errors import ArchiveError, TransientNetworkError
from studyzip.config import settings

logger = logging.getLogger(__name__)

_EXPORT_CHUNK_BYTES = 1024 * 1024


class DatasetSource:
    """Async wrapper around the source's REST API."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        export_timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout = timeout
        self._export_timeout = export_timeout
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(username, password),
            timeout=httpx.Timeout(timeout),
        )

    @classmethod
    def from_settings(cls) -> "DatasetSource":
        return cls(
            base_url=settings.source_url,
            username=settings.source_username,
            password=settings.source_password,
            timeout=settings.source_timeout_seconds,
            export_timeout=settings.source_export_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_study(self, dataset_id: str) -> Dict[str, Any]:
        """Study-level tags (patient name/id, study date, series list)."""
        async with self._translate_errors(f"fetching study {dataset_id}"):
            response = await self._client.get(f"/studies/{dataset_id}")
            response.raise_for_status()
            return response.json()

    async def list_instances(self, dataset_id: str) -> List[str]:
        """Instance ids of the study, in the order the source reports them."""
        async with self._translate_errors(f"listing instances of {dataset_id}"):
            response = await self._client.get(f"/studies/{dataset_id}/instances")
            response.raise_for_status()
            return [item["ID"] if isinstance(item, dict) else str(item) for item in response.json()]

    async def get_instance_image(self, instance_id: str) -> bytes:
        """Rendered image of one instance."""
        async with self._translate_errors(f"fetching instance {instance_id}"):
            response = await self._client.get(f"/instances/{instance_id}/preview")
            response.raise_for_status()
            return response.content

    async def export_archive(self, dataset_id: str, dst: IO[bytes]) -> int:
        """Stream the source's pre-built study archive into `dst`.

        Returns the number of bytes written. A source that keeps trickling
        bytes past `export_timeout` is cut off like one that stalls.
        """
        try:
            written = await asyncio.wait_for(
                self._stream_export(dataset_id, dst), timeout=self._export_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"Timed out exporting study {dataset_id} after {self._export_timeout:g}s"
            ) from e
        logger.info("Exported study %s from source (%d bytes)", dataset_id, written)
        return written

    async def _stream_export(self, dataset_id: str, dst: IO[bytes]) -> int:
        written = 0
        timeout = httpx.Timeout(self._timeout, read=self._export_timeout)
        async with self._translate_errors(f"exporting study {dataset_id}"):
            async with self._client.stream(
                "GET", f"/studies/{dataset_id}/archive", timeout=timeout
            ) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes(_EXPORT_CHUNK_BYTES):
                    dst.write(chunk)
                    written += len(chunk)
        return written

    @asynccontextmanager
    async def _translate_errors(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timed out {action}: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ArchiveError(
                f"Source returned {e.response.status_code} while {action}"
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error {action}: {e}") from e
