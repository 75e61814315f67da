"""
Updates Module

Container update pipeline: registry digest check, guarded pull, vulnerability
gate, and compose-aware replacement of the running container.

Architecture:
- ContainerUpdateTask: One update run for one target, always ledgered
- SafePullGuard: Keeps the production tag on the known-good image until promotion
- UpdateRouter: Stack re-convergence or single-container recreation
- ContainerRecreator: Snapshot-driven recreation state machine
"""

from updates.update_task import ContainerUpdateTask, UpdateOutcome, get_update_task
from updates.safe_pull import SafePullGuard
from updates.update_router import UpdateRouter
from updates.recreator import ContainerRecreator
from updates.types import RecreateResult, RouteResult, SafePullResult

__all__ = [
    'ContainerUpdateTask',
    'UpdateOutcome',
    'get_update_task',
    'SafePullGuard',
    'UpdateRouter',
    'ContainerRecreator',
    'RecreateResult',
    'RouteResult',
    'SafePullResult',
]
