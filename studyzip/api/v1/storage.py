"""Archive storage maintenance: bucket statistics and manual sweeps."""

from fastapi import APIRouter, HTTPException

from studyzip.archive.errors import StorageProviderError

router = APIRouter()

# Set by main.py during lifespan
_storage = None
_sweeper = None


def set_storage(storage):
    global _storage
    _storage = storage


def set_sweeper(sweeper):
    global _sweeper
    _sweeper = sweeper


@router.get("/storage/stats")
def storage_stats():
    """Object count and size of stored archives, newest period first."""
    if _storage is None:
        raise HTTPException(status_code=503, detail="Object storage not initialized")
    try:
        return {"success": True, **_storage.storage_stats()}
    except StorageProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/archive-sweeps")
async def run_sweep():
    """Run one expiration pass now instead of waiting for the schedule."""
    if _sweeper is None:
        raise HTTPException(status_code=503, detail="Expiration sweeper not initialized")
    report = await _sweeper.sweep_once()
    return {"success": True, **report.as_dict()}
