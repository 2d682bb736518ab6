"""
Responder Ranker
Version: 1.0

Scores available technicians against a classified incident and builds the
routing decision: primary, backups, escalation plan, notification plan and
resource requirements.

Scoring: 0.4 * skill_match + 0.3 * workload_inverse + 0.3 * proximity_inverse
Missing workload or location data degrades to a neutral 0.5 and lowers
decision confidence. Only an empty pool is an error.

NO I/O - candidates are handed in by the routing service.
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

from services.emergency_classifier import EmergencyClassification

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
DEFAULT_ETA_MINUTES = 35
INCOMPLETE_DATA_PENALTY = 0.8

# Specialty tags that fully qualify a technician for an emergency type
REQUIRED_SKILLS = {
    "gas_leak": ("gas_line", "gas"),
    "major_flood": ("water_extraction", "flood", "pipe_repair"),
    "burst_main_line": ("pipe_repair", "main_line"),
    "sewage_backup": ("sewer_line", "drain_cleaning"),
    "no_water_service": ("pipe_repair", "main_line"),
    "frozen_pipes": ("pipe_repair",),
    "water_heater_emergency": ("water_heater",),
}


class NoAvailableTechnicianError(Exception):
    """Raised when the candidate pool is empty."""
    pass


@dataclass
class Responder:
    id: str
    name: str
    phone: Optional[str] = None
    specialties: List[str] = field(default_factory=list)
    active_jobs: Optional[int] = None
    max_concurrent_jobs: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    emergency_technician: bool = False

    @property
    def first_name(self) -> str:
        return self.name.split()[0] if self.name else "Your technician"

    @classmethod
    def from_staff(cls, staff) -> "Responder":
        return cls(
            id=str(staff.id),
            name=f"{staff.first_name} {staff.last_name}".strip(),
            phone=staff.phone,
            specialties=list(staff.specialties or []),
            active_jobs=staff.active_jobs,
            max_concurrent_jobs=staff.max_concurrent_jobs,
            latitude=staff.latitude,
            longitude=staff.longitude,
            emergency_technician=bool(staff.emergency_technician),
        )


@dataclass
class ResponderScore:
    responder: Responder
    score: float
    skill_match: float
    workload_inverse: float
    proximity_inverse: float
    estimated_arrival: int
    data_complete: bool
    pros: List[str] = field(default_factory=list)
    cons: List[str] = field(default_factory=list)


@dataclass
class EscalationStep:
    step: int
    trigger: str
    delay_minutes: int
    action: str
    automated: bool = True


@dataclass
class NotificationStep:
    channel: str  # sms / call
    timing: str   # immediate / eta_update / arrival
    priority: int
    message: str


@dataclass
class ResourceRequirement:
    resource: str
    required: bool = True
    estimated_cost: float = 0.0


@dataclass
class RoutingDecision:
    incident_id: Optional[str]
    primary: ResponderScore
    backups: List[ResponderScore]
    alternatives: List[ResponderScore]
    estimated_arrival: int
    confidence: float
    routing_reason: str
    resource_requirements: List[ResourceRequirement]
    escalation_plan: List[EscalationStep]
    notification_plan: List[NotificationStep]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers."""
    radius = 6371.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * radius * math.asin(math.sqrt(a))


class ResponderRanker:
    """Multi-factor ranking of technicians for one incident."""

    def rank(
        self,
        classification: EmergencyClassification,
        candidates: Sequence[Responder],
        incident_location: Optional[Dict[str, float]] = None,
        incident_id: Optional[str] = None
    ) -> RoutingDecision:
        """
        Rank candidates and build the routing decision.

        Args:
            classification: Classifier verdict for the incident
            candidates: Pre-filtered available responders
            incident_location: Optional {"latitude": .., "longitude": ..}
            incident_id: Key for escalation timers

        Raises:
            NoAvailableTechnicianError: If candidates is empty
        """
        if not candidates:
            raise NoAvailableTechnicianError(
                f"No available technician for {classification.severity} "
                f"{classification.emergency_type} incident"
            )

        scored = [
            self.score_candidate(c, classification.emergency_type, incident_location)
            for c in candidates
        ]
        scored.sort(key=lambda s: s.score, reverse=True)

        primary = scored[0]
        confidence = primary.score
        if not primary.data_complete:
            confidence *= INCOMPLETE_DATA_PENALTY

        decision = RoutingDecision(
            incident_id=incident_id,
            primary=primary,
            backups=scored[1:3],
            alternatives=scored[1:4],
            estimated_arrival=primary.estimated_arrival,
            confidence=round(confidence, 3),
            routing_reason=(
                f"Selected {primary.responder.name}: skills {primary.skill_match:.0%}, "
                f"availability {primary.workload_inverse:.0%}, "
                f"proximity {primary.proximity_inverse:.0%}"
            ),
            resource_requirements=self.resource_requirements(classification.emergency_type),
            escalation_plan=self.escalation_plan(classification, primary.estimated_arrival),
            notification_plan=self.notification_plan(classification, primary),
        )

        logger.info(
            f"Routed {classification.severity} incident {incident_id or '-'} to "
            f"{primary.responder.name} (score {primary.score:.2f}, {len(decision.backups)} backups)"
        )
        return decision

    def score_candidate(
        self,
        responder: Responder,
        emergency_type: str,
        incident_location: Optional[Dict[str, float]] = None
    ) -> ResponderScore:
        data_complete = True

        skill = self._skill_match(responder, emergency_type)
        if not responder.specialties:
            data_complete = False

        if responder.active_jobs is None or not responder.max_concurrent_jobs:
            workload = NEUTRAL_SCORE
            data_complete = False
        else:
            workload = max(0.0, 1.0 - responder.active_jobs / responder.max_concurrent_jobs)

        distance = self._distance(responder, incident_location)
        if distance is None:
            proximity = NEUTRAL_SCORE
            eta = DEFAULT_ETA_MINUTES
            data_complete = False
        else:
            proximity = 1.0 / (1.0 + distance / 10.0)
            eta = round(15 + 2 * distance)

        score = 0.4 * skill + 0.3 * workload + 0.3 * proximity

        result = ResponderScore(
            responder=responder,
            score=round(score, 4),
            skill_match=skill,
            workload_inverse=round(workload, 4),
            proximity_inverse=round(proximity, 4),
            estimated_arrival=eta,
            data_complete=data_complete,
        )
        self._annotate(result)
        return result

    @staticmethod
    def _skill_match(responder: Responder, emergency_type: str) -> float:
        required = REQUIRED_SKILLS.get(emergency_type, ())
        specialties = {s.lower() for s in responder.specialties}

        if not specialties:
            return NEUTRAL_SCORE
        if not required:
            return 0.8
        if specialties.intersection(required):
            return 1.0
        if "general" in specialties:
            return 0.6
        return 0.3

    @staticmethod
    def _distance(responder: Responder, location: Optional[Dict[str, float]]) -> Optional[float]:
        if not location or responder.latitude is None or responder.longitude is None:
            return None
        lat = location.get("latitude")
        lon = location.get("longitude")
        if lat is None or lon is None:
            return None
        return haversine_km(responder.latitude, responder.longitude, lat, lon)

    @staticmethod
    def _annotate(result: ResponderScore) -> None:
        factors = (
            (result.skill_match, "strong skill match", "weak skill match"),
            (result.workload_inverse, "light current workload", "heavy current workload"),
            (result.proximity_inverse, "close to incident", "far from incident"),
        )
        for value, pro, con in factors:
            if value > 0.8:
                result.pros.append(pro)
            elif value < 0.5:
                result.cons.append(con)

    # ─────────────────────────────────────────────
    # PLANS
    # ─────────────────────────────────────────────

    @staticmethod
    def escalation_plan(classification: EmergencyClassification, eta_minutes: int) -> List[EscalationStep]:
        steps: List[EscalationStep] = []

        if classification.severity == "critical":
            steps.append(EscalationStep(
                step=len(steps) + 1, trigger="immediate", delay_minutes=0, action="notify_backup",
            ))
            steps.append(EscalationStep(
                step=len(steps) + 1, trigger="no_response_from_primary", delay_minutes=5,
                action="dispatch_additional",
            ))

        steps.append(EscalationStep(
            step=len(steps) + 1,
            trigger="no_arrival_confirmation",
            delay_minutes=math.ceil(eta_minutes * 1.2),
            action="call_manager",
        ))

        if classification.emergency_type == "gas_leak":
            steps.append(EscalationStep(
                step=len(steps) + 1, trigger="gas_emergency_protocol", delay_minutes=0,
                action="contact_emergency_services", automated=False,
            ))

        return steps

    @staticmethod
    def notification_plan(
        classification: EmergencyClassification,
        primary: ResponderScore
    ) -> List[NotificationStep]:
        first = primary.responder.first_name
        eta = primary.estimated_arrival

        plan = [
            NotificationStep(
                channel="sms", timing="immediate", priority=1,
                message=f"Emergency received. {first} is being dispatched. ETA: {eta} minutes.",
            ),
            NotificationStep(
                channel="sms", timing="eta_update", priority=2,
                message=f"Update: {first} is on the way. Current ETA: {eta} minutes.",
            ),
            NotificationStep(
                channel="sms", timing="arrival", priority=1,
                message=f"{first} has arrived at your location.",
            ),
        ]

        if classification.severity == "critical":
            plan.insert(0, NotificationStep(
                channel="call", timing="immediate", priority=0,
                message="Emergency acknowledged. A technician is being dispatched right now.",
            ))

        return plan

    @staticmethod
    def resource_requirements(emergency_type: str) -> List[ResourceRequirement]:
        resources = [ResourceRequirement(resource="service_vehicle")]

        if emergency_type == "major_flood":
            resources.append(ResourceRequirement(resource="water_extraction_equipment", estimated_cost=200.0))
        elif emergency_type == "gas_leak":
            resources.append(ResourceRequirement(resource="gas_line_certified_expertise"))

        return resources
