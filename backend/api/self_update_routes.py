"""
Self-update API

check    - is a newer image available for this instance
POST     - prepare the replacement and launch the helper, streaming progress
           as Server-Sent Events (connected, step, log, error, launched)
progress - poll the helper after the handoff

The handoff runs as its own task: a client that disconnects mid-stream stops
receiving events, not the update.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from selfupdate.checker import SelfUpdateChecker
from selfupdate.handoff import PreconditionError, SelfUpdateOrchestrator, get_self_update_orchestrator
from selfupdate.progress import get_helper_progress
from utils.progress_stream import ProgressStream

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/self-update", tags=["self-update"])

# Strong references so running handoffs aren't garbage collected
_handoff_tasks = set()


class SelfUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_image: str = Field(..., alias="newImage", min_length=1, max_length=512)


def get_orchestrator() -> SelfUpdateOrchestrator:
    return get_self_update_orchestrator()


def get_checker() -> SelfUpdateChecker:
    from updates.digest_checker import DigestChecker
    from updates.engine import get_engine
    from updates.registry_adapter import get_registry_adapter
    from utils.registry_credentials import get_registry_credentials

    return SelfUpdateChecker(
        get_engine(None),
        DigestChecker(get_registry_adapter(), credentials_lookup=get_registry_credentials),
    )


def get_local_engine():
    from updates.engine import get_engine
    return get_engine(None)


@router.get("/check")
async def check_self_update(checker: SelfUpdateChecker = Depends(get_checker)):
    return await checker.check()


@router.post("")
async def start_self_update(
    request: SelfUpdateRequest,
    orchestrator: SelfUpdateOrchestrator = Depends(get_orchestrator)
):
    # Fail fast with a plain error before opening the stream
    if orchestrator.in_progress:
        raise HTTPException(status_code=409, detail="Self-update already in progress")
    try:
        context = await orchestrator.validate()
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    stream = ProgressStream()
    await stream.send('connected', {'containerName': context.container_name, 'newImage': request.new_image})

    task = asyncio.create_task(orchestrator.run(request.new_image, emit=stream.send, context=context))
    _handoff_tasks.add(task)

    def _done(finished: asyncio.Task):
        _handoff_tasks.discard(finished)
        stream.close()
        if not finished.cancelled() and finished.exception() is not None:
            logger.error(f"Self-update task crashed: {finished.exception()}")

    task.add_done_callback(_done)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(stream.events(), media_type="text/event-stream", headers=headers)


@router.get("/progress")
async def self_update_progress(
    id: str = Query(..., min_length=1),
    engine=Depends(get_local_engine)
):
    try:
        return await get_helper_progress(engine, id)
    except Exception as e:
        logger.error(f"Failed to fetch helper progress: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch progress: {e}")
