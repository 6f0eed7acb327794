"""Dispatch due backup schedules."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from backend.core.context import AppContext


logger = logging.getLogger(__name__)


async def run_backup_execution(ctx: "AppContext") -> Dict[str, Any]:
    """Hand every due schedule to the engine as a detached task.

    The tick returns as soon as the schedules are dispatched; a slow backup
    never delays the next tick.
    """

    schedule_ids = await ctx.engine.get_schedules_to_execute()
    for schedule_id in schedule_ids:
        ctx.engine.dispatch(schedule_id)

    if schedule_ids:
        logger.info("Dispatched %d due backup schedule(s): %s", len(schedule_ids), schedule_ids)
    return {"dispatched": schedule_ids}
