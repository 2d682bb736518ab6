"""
Notifier
Version: 1.0

Redis fan-out of pipeline events to real-time consumers
(dashboard, dispatch, escalation handlers).

Fire-and-forget: publish failures are logged, never raised, so a Redis
outage cannot stall a sync or a routing request.
NO DEPENDENCIES on other services.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Queue names
QUEUE_DASHBOARD = "notifications:dashboard"
QUEUE_ROUTING = "notifications:routing"
QUEUE_ESCALATION = "notifications:escalation"


@dataclass
class DashboardUpdate:
    """Real-time event for the operator dashboard."""
    event_type: str  # sync_progress / new_message / emergency_detected / sync_finished
    payload: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


class Notifier:
    """Redis list publisher."""

    def __init__(self, redis_client=None):
        """
        Args:
            redis_client: Redis async client; None disables publishing
        """
        self.redis = redis_client

    async def publish_dashboard_update(self, update: DashboardUpdate) -> bool:
        return await self._publish(QUEUE_DASHBOARD, asdict(update))

    async def publish_routing(self, decision) -> bool:
        """
        Publish a RoutingDecision (notification plan included).

        Args:
            decision: RoutingDecision
        """
        return await self._publish(QUEUE_ROUTING, decision.to_dict())

    async def publish_escalation(self, incident_id: str, step: Any, reason: Optional[str] = None) -> bool:
        """
        Publish a fired escalation step or an unroutable incident.

        Args:
            incident_id: Incident key
            step: EscalationStep, dict or None
            reason: Free text (e.g. "no_available_technician")
        """
        entry = {
            "incident_id": incident_id,
            "step": asdict(step) if is_dataclass(step) else step,
            "reason": reason,
            "timestamp": datetime.utcnow(),
        }
        return await self._publish(QUEUE_ESCALATION, entry)

    async def _publish(self, queue: str, payload: Dict[str, Any]) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.rpush(queue, json.dumps(payload, default=str))
            logger.debug(f"Published to {queue}")
            return True
        except Exception as e:
            logger.error(f"Publish to {queue} failed: {e}")
            return False
