"""
Emergency Routing Service
Version: 1.0

Route an emergency: load the candidate pool, rank it, start escalation
timers and publish the notification plan. Resolving the incident cancels
the timers that have not fired yet.

DEPENDS ON: responder_ranker.py, escalation_scheduler.py, notifier.py, store.py
"""

import logging
import uuid
from typing import Dict, Optional

from services.emergency_classifier import EmergencyClassification
from services.escalation_scheduler import EscalationScheduler
from services.metrics import ROUTING_DECISIONS_TOTAL
from services.notifier import Notifier
from services.responder_ranker import NoAvailableTechnicianError, ResponderRanker, RoutingDecision

logger = logging.getLogger(__name__)


class EmergencyRouter:
    """Turns a classification into a dispatched, escalation-guarded incident."""

    def __init__(
        self,
        store,
        ranker: ResponderRanker,
        scheduler: EscalationScheduler,
        notifier: Notifier
    ):
        self.store = store
        self.ranker = ranker
        self.scheduler = scheduler
        self.notifier = notifier

    async def route_emergency(
        self,
        classification: EmergencyClassification,
        incident_id: Optional[str] = None,
        incident_location: Optional[Dict[str, float]] = None
    ) -> RoutingDecision:
        """
        Assign responders to an incident.

        Args:
            classification: Classifier verdict
            incident_id: Timer key (generated when omitted)
            incident_location: Optional {"latitude", "longitude"}

        Returns:
            RoutingDecision

        Raises:
            NoAvailableTechnicianError: If nobody is available
        """
        incident_id = incident_id or f"inc_{uuid.uuid4().hex[:12]}"
        emergency_only = classification.severity == "critical"
        candidates = await self.store.available_responders(emergency_only=emergency_only)

        try:
            decision = self.ranker.rank(
                classification,
                candidates,
                incident_location=incident_location,
                incident_id=incident_id,
            )
        except NoAvailableTechnicianError:
            ROUTING_DECISIONS_TOTAL.labels(status="no_technician").inc()
            logger.error(f"🚨 No available technician for incident {incident_id} ({classification.severity})")
            await self.notifier.publish_escalation(incident_id, None, reason="no_available_technician")
            raise

        ROUTING_DECISIONS_TOTAL.labels(status="routed").inc()
        self.scheduler.schedule(incident_id, decision.escalation_plan)
        await self.notifier.publish_routing(decision)
        return decision

    async def resolve_incident(self, incident_id: str) -> int:
        """
        Mark an incident resolved.

        Returns:
            Number of escalation timers cancelled
        """
        cancelled = self.scheduler.cancel(incident_id)
        logger.info(f"Incident {incident_id} resolved ({cancelled} escalations cancelled)")
        return cancelled
