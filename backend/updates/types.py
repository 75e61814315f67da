"""
Shared types for the update pipeline.

Result objects returned by each stage (safe pull, recreation, routing) so
the top-level task can turn them into a ledger status without catching
engine exceptions itself.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

# Signature: async def log(line: str) -> None
LogCallback = Callable[[str], Awaitable[None]]


class RecreateState(str, Enum):
    """Steps of container recreation, in order."""
    INSPECTING = "inspecting"
    STOPPING = "stopping"
    REMOVING = "removing"
    CREATING = "creating"
    NETWORK_RECONNECTING = "network_reconnecting"
    STARTING = "starting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RecreateResult:
    success: bool
    new_container_id: Optional[str] = None
    failed_step: Optional[str] = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)

    # True once the original container is gone; failure after this point
    # leaves the target without a running container
    old_container_removed: bool = False

    @classmethod
    def success_result(cls, new_container_id: str, warnings=None, states=None) -> 'RecreateResult':
        return cls(
            success=True,
            new_container_id=new_container_id,
            warnings=list(warnings or []),
            states=list(states or []),
            old_container_removed=True,
        )

    @classmethod
    def failure_result(
        cls,
        failed_step: str,
        error_message: str,
        old_container_removed: bool = False,
        new_container_id: Optional[str] = None,
        warnings=None,
        states=None
    ) -> 'RecreateResult':
        return cls(
            success=False,
            failed_step=failed_step,
            error_message=error_message,
            old_container_removed=old_container_removed,
            new_container_id=new_container_id,
            warnings=list(warnings or []),
            states=list(states or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'newContainerId': self.new_container_id,
            'failedStep': self.failed_step,
            'error': self.error_message,
            'warnings': self.warnings,
            'states': self.states,
            'oldContainerRemoved': self.old_container_removed,
        }


class SafePullStatus(str, Enum):
    PROMOTED = "promoted"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class SafePullResult:
    status: SafePullStatus
    new_image_id: Optional[str] = None
    block_reason: Optional[str] = None
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    scan: Optional[Dict[str, Any]] = None

    # False only when restoring the production tag itself failed
    production_tag_intact: bool = True

    @property
    def promoted(self) -> bool:
        return self.status == SafePullStatus.PROMOTED


class RoutePath(str, Enum):
    STACK = "stack"
    RECREATE = "recreate"
    REFUSED = "refused"


@dataclass
class RouteResult:
    path: RoutePath
    success: bool
    degraded: bool = False
    recreated_services: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    recreate: Optional[RecreateResult] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def old_container_removed(self) -> bool:
        return bool(self.recreate and self.recreate.old_container_removed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path.value,
            'success': self.success,
            'degraded': self.degraded,
            'recreatedServices': self.recreated_services,
            'error': self.error_message,
            'warnings': self.warnings,
            'recreate': self.recreate.to_dict() if self.recreate else None,
        }
