"""
Event emitter for container updates.

Wraps event creation so the update task reports each outcome with one call.
Emission errors are logged and swallowed: a broken notification channel must
never change the outcome of an update.
"""

import logging
from typing import Any, Dict, Optional

from event_bus import Event, EventBus, EventType, get_event_bus

logger = logging.getLogger(__name__)


class UpdateEventEmitter:

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or get_event_bus()

    async def _emit(
        self,
        event_type: EventType,
        target_name: str,
        environment_id: Optional[str],
        data: Dict[str, Any],
        scope_type: str = 'container'
    ):
        try:
            await self.event_bus.emit(Event(
                event_type=event_type,
                scope_type=scope_type,
                scope_id=f"{environment_id or 'local'}:{target_name}",
                scope_name=target_name,
                environment_id=environment_id,
                data=data,
            ))
        except Exception as e:
            logger.error(f"Error emitting {event_type.value} event: {e}")

    async def emit_started(self, target_name: str, environment_id: Optional[str], image: str, triggered_by: str):
        await self._emit(EventType.UPDATE_STARTED, target_name, environment_id, {
            'image': image,
            'triggered_by': triggered_by,
        })

    async def emit_completed(
        self,
        target_name: str,
        environment_id: Optional[str],
        image: str,
        previous_digest: Optional[str] = None,
        new_digest: Optional[str] = None
    ):
        await self._emit(EventType.UPDATE_COMPLETED, target_name, environment_id, {
            'image': image,
            'previous_digest': previous_digest,
            'new_digest': new_digest,
        })

    async def emit_failed(self, target_name: str, environment_id: Optional[str], error_message: str, critical: bool = False):
        await self._emit(EventType.UPDATE_FAILED, target_name, environment_id, {
            'error_message': error_message,
            # Old container removed with no working replacement
            'critical': critical,
        })

    async def emit_skipped(self, target_name: str, environment_id: Optional[str], reason: str):
        await self._emit(EventType.UPDATE_SKIPPED, target_name, environment_id, {'reason': reason})

    async def emit_blocked(
        self,
        target_name: str,
        environment_id: Optional[str],
        block_reason: str,
        scan: Optional[Dict[str, Any]] = None
    ):
        await self._emit(EventType.UPDATE_BLOCKED, target_name, environment_id, {
            'block_reason': block_reason,
            'scan': scan,
        })

    async def emit_self_update_launched(self, container_name: str, new_image: str, helper_id: str):
        await self._emit(EventType.SELF_UPDATE_LAUNCHED, container_name, None, {
            'new_image': new_image,
            'helper_id': helper_id,
        }, scope_type='system')
