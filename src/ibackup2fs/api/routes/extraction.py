"""Extraction control endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from ibackup2fs.normalizer import RunInProgressError

router = APIRouter()
logger = logging.getLogger(__name__)


class StartExtractionRequest(BaseModel):
    """Body of POST /api/extraction."""

    model_config = ConfigDict(extra='forbid')

    backup_dir: str = Field(description="Backup directory containing Manifest.db")
    output_dir: str = Field(description="Output root for the reconstructed tree")
    digest_algorithms: Optional[List[str]] = Field(
        default=None,
        description="Digests to compute; omit for the configured default, [] for none"
    )


def _manager(request: Request):
    return request.app.state.manager


def _current(request: Request):
    coordinator = _manager(request).coordinator
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No extraction has been started")
    return coordinator


@router.post("/extraction", status_code=status.HTTP_202_ACCEPTED)
def start_extraction(body: StartExtractionRequest, request: Request):
    """Start an extraction run. Precondition failures return 400 with the reason."""
    manager = _manager(request)
    try:
        result = manager.start(body.backup_dir, body.output_dir, body.digest_algorithms)
    except RunInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    summary = result.get("summary")
    if result["state"] == "failed" and summary is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=summary["reason"])
    return result


@router.get("/extraction")
def get_extraction(request: Request):
    """State, counters and progress of the current or last run."""
    _current(request)
    return _manager(request).status()


def _control(request: Request, action: str):
    coordinator = _current(request)
    changed = getattr(coordinator, action)()
    if not changed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot {action} while {coordinator.state.value}",
        )
    logger.info(f"Extraction {action} requested via API")
    return _manager(request).status()


@router.post("/extraction/pause")
def pause_extraction(request: Request):
    return _control(request, "pause")


@router.post("/extraction/resume")
def resume_extraction(request: Request):
    return _control(request, "resume")


@router.post("/extraction/cancel")
def cancel_extraction(request: Request):
    return _control(request, "cancel")


@router.get("/extraction/log")
def get_extraction_log(request: Request, since: int = Query(default=0, ge=0)):
    """Log messages with a sequence number greater than since."""
    return _manager(request).messages(since)
