"""Archive retrieval API.

GET  /archive/{dataset_id}         302 to the archive, or 202/404/410/500 with
                                   a JSON body telling the caller what to do
POST /archive/{dataset_id}         queue creation (idempotent while in flight)
GET  /archive/{dataset_id}/info    archive state and counters
GET  /archive/{dataset_id}/direct  signed download URL as JSON
"""

from fastapi import APIRouter, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse

from studyzip.archive.errors import ArchiveError, RecordNotFound
from studyzip.archive.gateway import Retrieval, RetrievalState

router = APIRouter()

# Set by main.py during lifespan
_gateway = None


def set_gateway(gateway):
    global _gateway
    _gateway = gateway


def _require_gateway():
    if _gateway is None:
        raise HTTPException(status_code=503, detail="Retrieval gateway not initialized")
    return _gateway


_STATUS_CODES = {
    RetrievalState.PROCESSING: 202,
    RetrievalState.NOT_AVAILABLE: 404,
    RetrievalState.EXPIRED: 410,
    RetrievalState.FAILED: 500,
}

_MESSAGES = {
    RetrievalState.PROCESSING: "Archive is being prepared. Poll the status link and retry.",
    RetrievalState.NOT_AVAILABLE: "Archive not available. POST to the create link to build it.",
    RetrievalState.EXPIRED: "Archive has expired. POST to the create link to rebuild it.",
    RetrievalState.FAILED: "Archive creation failed. POST to the create link to retry.",
}


def _not_ready_response(result: Retrieval) -> JSONResponse:
    body = {
        "success": False,
        "status": result.state.value,
        "message": _MESSAGES[result.state],
        "links": result.links,
    }
    if result.job_id is not None:
        body["job_id"] = result.job_id
    if result.error:
        body["error"] = result.error
    if result.expired_at:
        body["expired_at"] = result.expired_at
    return JSONResponse(status_code=_STATUS_CODES[result.state], content=jsonable_encoder(body))


@router.get("/archive/{dataset_id}")
async def download_archive(dataset_id: str):
    """Redirect to the stored archive, or report why it cannot be served."""
    gateway = _require_gateway()
    try:
        result = await gateway.get(dataset_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ArchiveError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if result.state != RetrievalState.READY:
        return _not_ready_response(result)

    return RedirectResponse(
        url=result.url,
        status_code=302,
        headers={
            "X-Download-Method": "object-storage",
            "X-Archive-File-Name": result.file_name or "",
            "X-Archive-Size-MB": str(result.size_mb or 0),
        },
    )


@router.post("/archive/{dataset_id}")
async def create_archive(dataset_id: str):
    """Queue archive creation; returns the in-flight job when there is one."""
    gateway = _require_gateway()
    try:
        outcome = await gateway.create(dataset_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    if outcome.created:
        message = "Archive creation queued"
    elif outcome.status == "completed":
        message = "Archive already exists"
    else:
        message = "Archive creation already in progress"

    body = {
        "success": True,
        "message": message,
        "dataset_id": outcome.dataset_id,
        "job_id": outcome.job_id,
        "status": outcome.status,
        "created": outcome.created,
    }
    if outcome.job_id is not None:
        body["check_status_url"] = f"/api/v1/jobs/{outcome.job_id}"
    if outcome.url:
        body["url"] = outcome.url
        body["size_mb"] = outcome.size_mb
    return body


@router.get("/archive/{dataset_id}/info")
async def archive_info(dataset_id: str):
    gateway = _require_gateway()
    try:
        return {"success": True, "data": await gateway.info(dataset_id)}
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/archive/{dataset_id}/direct")
async def direct_download(dataset_id: str):
    """Signed, time-limited download URL for clients that fetch it themselves."""
    gateway = _require_gateway()
    try:
        result = await gateway.direct_url(dataset_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ArchiveError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if result.state != RetrievalState.READY:
        return _not_ready_response(result)

    return {
        "success": True,
        "data": {
            "download_url": result.url,
            "file_name": result.file_name,
            "file_size_mb": result.size_mb,
            "download_method": "signed-url",
        },
    }
