"""
Sync Router
Version: 1.0

Start, poll and cancel ingestion runs.
"""
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from config import get_settings
from schemas import CancelResponse, SyncProgressResponse, SyncRequest, SyncStarted
from services.sync_orchestrator import SyncOptions, SyncOrchestrator, SyncProgress

router = APIRouter()
logger = structlog.get_logger("sync")


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def to_response(progress: SyncProgress) -> SyncProgressResponse:
    return SyncProgressResponse(
        session_id=progress.session_id,
        session_token=progress.session_token,
        status=progress.status,
        sync_mode=progress.sync_mode,
        current_operation=progress.current_operation,
        progress_percent=progress.progress_percent,
        estimated_seconds_remaining=progress.estimated_seconds_remaining,
        started_at=progress.started_at,
        ended_at=progress.ended_at,
        errors=progress.errors,
        **progress.counters.as_dict(),
    )


@router.post("", response_model=SyncStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    payload: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Start a background sync. Returns immediately with the session id.

    One running session per account: a second start gets 409.
    """
    running = await orchestrator.store.find_running_session(payload.account_token)
    if running is not None:
        logger.warning("Sync already running", session_id=str(running.id))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync {running.id} is already running for this account"
        )

    settings = get_settings()
    data = {
        "page_size": settings.SYNC_PAGE_SIZE,
        "max_pages": settings.SYNC_MAX_PAGES,
        "batch_size": settings.SYNC_BATCH_SIZE,
        "batch_delay_ms": settings.SYNC_BATCH_DELAY_MS,
        "parallel_batches": settings.SYNC_PARALLEL_BATCHES,
        **payload.model_dump(exclude_unset=True),
    }
    data["sync_mode"] = payload.sync_mode.value
    data["platform"] = settings.MESSAGE_SOURCE_PLATFORM
    handle = await orchestrator.start_sync(SyncOptions(**data))

    logger.info("Sync accepted", session_id=str(handle.session_id), mode=payload.sync_mode.value)
    return SyncStarted(session_id=handle.session_id, session_token=handle.session_token)


@router.get("/{session_id}", response_model=SyncProgressResponse)
async def get_sync_progress(
    session_id: UUID,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    progress = await orchestrator.get_sync_progress(session_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync session not found")
    return to_response(progress)


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_sync(
    session_id: UUID,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    progress = await orchestrator.get_sync_progress(session_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync session not found")

    cancelled = await orchestrator.cancel_sync(session_id)
    return CancelResponse(session_id=session_id, cancelled=cancelled)
