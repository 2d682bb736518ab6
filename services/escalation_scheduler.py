"""
Escalation Scheduler
Version: 1.0

Delayed escalation steps as asyncio tasks keyed by incident id.
Resolving an incident cancels whatever has not fired yet.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Set

from services.responder_ranker import EscalationStep

logger = logging.getLogger(__name__)

EscalationCallback = Callable[[str, EscalationStep], Awaitable[None]]


class EscalationScheduler:
    """
    Cancellable timers for automated escalation steps.

    Usage:
        scheduler = EscalationScheduler(on_fire=notifier.publish_escalation)
        scheduler.schedule("inc-1", decision.escalation_plan)
        scheduler.cancel("inc-1")      # incident resolved
    """

    def __init__(self, on_fire: EscalationCallback, seconds_per_minute: float = 60.0):
        """
        Args:
            on_fire: Awaited with (incident_id, step) when a timer expires
            seconds_per_minute: Wall seconds per plan minute (tests shrink it)
        """
        self.on_fire = on_fire
        self.seconds_per_minute = seconds_per_minute
        self._timers: Dict[str, Set[asyncio.Task]] = {}

    def schedule(self, incident_id: str, steps: Iterable[EscalationStep]) -> int:
        """
        Start a timer for every automated step.

        Returns:
            Number of timers started
        """
        started = 0
        for step in steps:
            if not step.automated:
                continue

            task = asyncio.create_task(
                self._fire_later(incident_id, step),
                name=f"escalation:{incident_id}:{step.step}",
            )
            self._timers.setdefault(incident_id, set()).add(task)
            task.add_done_callback(lambda t, iid=incident_id: self._discard(iid, t))
            started += 1

        if started:
            logger.info(f"⏱️ Scheduled {started} escalation steps for incident {incident_id}")
        return started

    def cancel(self, incident_id: str) -> int:
        """
        Cancel pending timers of an incident.

        Returns:
            Number of timers cancelled
        """
        tasks = self._timers.pop(incident_id, set())
        cancelled = 0
        for task in tasks:
            if not task.done():
                task.cancel()
                cancelled += 1

        if cancelled:
            logger.info(f"Cancelled {cancelled} escalation steps for incident {incident_id}")
        return cancelled

    def pending(self, incident_id: str) -> int:
        return sum(1 for t in self._timers.get(incident_id, ()) if not t.done())

    async def shutdown(self) -> None:
        """Cancel everything (application shutdown)."""
        tasks = [t for group in self._timers.values() for t in group]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _fire_later(self, incident_id: str, step: EscalationStep) -> None:
        delay = max(0.0, step.delay_minutes * self.seconds_per_minute)
        await asyncio.sleep(delay)

        logger.warning(f"🔺 Escalation fired: incident={incident_id} step={step.step} action={step.action}")
        try:
            await self.on_fire(incident_id, step)
        except Exception as e:
            logger.error(f"Escalation callback failed for {incident_id}: {e}")

    def _discard(self, incident_id: str, task: asyncio.Task) -> None:
        group = self._timers.get(incident_id)
        if group is None:
            return
        group.discard(task)
        if not group:
            self._timers.pop(incident_id, None)
