"""
Update API

Entry point for the scheduler and the UI: run one container update now and
read back execution records.
"""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from config.settings import AppConfig
from updates.update_task import ContainerUpdateTask, get_update_task
from updates.vulnerability_gate import VulnerabilityCriterion

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/updates", tags=["updates"])


class RunUpdateRequest(BaseModel):
    container: str = Field(..., min_length=1, max_length=255)
    environment_id: Optional[str] = None
    triggered_by: str = Field(default="user", max_length=64)
    vulnerability_criteria: Optional[VulnerabilityCriterion] = None


def get_task_factory() -> Callable[[Optional[str]], ContainerUpdateTask]:
    return get_update_task


def get_ledger():
    from database import get_database_manager
    from updates.ledger import DatabaseExecutionLedger
    return DatabaseExecutionLedger(get_database_manager())


@router.post("/run")
async def run_update(
    request: RunUpdateRequest,
    task_factory: Callable[[Optional[str]], ContainerUpdateTask] = Depends(get_task_factory)
):
    """
    Update one container and wait for the terminal status.

    Returns the execution record summary: executionId, status
    (success/failed/skipped), details and error.
    """
    try:
        task = task_factory(request.environment_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown environment: {request.environment_id}")

    criterion = request.vulnerability_criteria or AppConfig.DEFAULT_VULNERABILITY_CRITERIA
    logger.info(f"Update of {request.container} requested by {request.triggered_by}")
    outcome = await task.run(
        request.container,
        environment_id=request.environment_id,
        triggered_by=request.triggered_by,
        criterion=criterion,
    )
    return outcome.to_dict()


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: int, ledger=Depends(get_ledger)):
    record = ledger.get(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return record
