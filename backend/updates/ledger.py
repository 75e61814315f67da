"""
Update execution ledger.

Every update run gets one UpdateExecution row: created when the run starts,
appended to while it runs, and closed exactly once with a terminal status.
A closed record is never touched again; late writes are logged and dropped.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from database import DatabaseManager, UpdateExecution

logger = logging.getLogger(__name__)

STATUS_RUNNING = 'running'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'
STATUS_SKIPPED = 'skipped'
STATUS_LAUNCHED = 'launched'  # self-update handed to the helper

TERMINAL_STATUSES = {STATUS_SUCCESS, STATUS_FAILED, STATUS_SKIPPED, STATUS_LAUNCHED}


class ExecutionLedger(ABC):
    """Where update runs are recorded. Handles are opaque to callers."""

    @abstractmethod
    def begin(
        self,
        target_name: str,
        environment_id: Optional[str],
        triggered_by: str,
        kind: str = 'container'
    ) -> int:
        ...

    @abstractmethod
    def append_log(self, handle: int, line: str) -> bool:
        ...

    @abstractmethod
    def complete(
        self,
        handle: int,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> bool:
        ...


class DatabaseExecutionLedger(ExecutionLedger):
    """ExecutionLedger backed by the update_executions table."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def begin(self, target_name, environment_id, triggered_by, kind='container') -> int:
        with self.db.get_session() as session:
            record = UpdateExecution(
                kind=kind,
                target_name=target_name,
                environment_id=str(environment_id) if environment_id is not None else None,
                triggered_by=triggered_by,
                status=STATUS_RUNNING,
                log_lines=[],
            )
            session.add(record)
            session.commit()
            return record.id

    def append_log(self, handle: int, line: str) -> bool:
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
        with self.db.get_session() as session:
            record = session.get(UpdateExecution, handle)
            if record is None:
                logger.warning(f"Ledger record {handle} not found, dropping log line")
                return False
            if record.status in TERMINAL_STATUSES:
                logger.warning(f"Ledger record {handle} already {record.status}, dropping log line")
                return False
            # Reassign so SQLAlchemy sees the JSON change
            record.log_lines = [*(record.log_lines or []), f"[{timestamp}] {line}"]
            session.commit()
            return True

    def complete(self, handle, status, details=None, error=None) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        with self.db.get_session() as session:
            record = session.get(UpdateExecution, handle)
            if record is None:
                logger.error(f"Ledger record {handle} not found, cannot complete")
                return False
            if record.status in TERMINAL_STATUSES:
                logger.error(
                    f"Ledger record {handle} already completed as {record.status}, "
                    f"refusing to overwrite with {status}"
                )
                return False
            record.status = status
            record.result_details = details
            record.error_message = error
            record.completed_at = datetime.now(timezone.utc)
            session.commit()
            return True

    def get(self, handle: int) -> Optional[Dict[str, Any]]:
        with self.db.get_session() as session:
            record = session.get(UpdateExecution, handle)
            return execution_to_dict(record) if record else None


def execution_to_dict(record: UpdateExecution) -> Dict[str, Any]:
    return {
        'id': record.id,
        'kind': record.kind,
        'targetName': record.target_name,
        'environmentId': record.environment_id,
        'triggeredBy': record.triggered_by,
        'status': record.status,
        'startedAt': record.started_at.isoformat() if record.started_at else None,
        'completedAt': record.completed_at.isoformat() if record.completed_at else None,
        'logLines': list(record.log_lines or []),
        'resultDetails': record.result_details,
        'error': record.error_message,
    }
