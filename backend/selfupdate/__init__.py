"""
Self-update Module

Replaces the container this process runs in by preparing the replacement
and handing the stop/remove/rename/start sequence to a helper container.
"""

from selfupdate.handoff import (
    HandoffResult,
    HandoffState,
    PreconditionError,
    SelfUpdateOrchestrator,
    get_self_update_orchestrator,
)
from selfupdate.helper_contract import HelperContract

__all__ = [
    'HandoffResult',
    'HandoffState',
    'PreconditionError',
    'SelfUpdateOrchestrator',
    'get_self_update_orchestrator',
    'HelperContract',
]
