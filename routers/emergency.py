"""
Emergency Router
Version: 1.0

Classify messages, route emergencies, resolve incidents.
"""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from schemas import ClassificationResponse, ClassifyRequest, ResolveResponse, RouteRequest, RouteResponse
from services.context_analyzers import EmergencyContext, as_naive_utc
from services.emergency_classifier import EmergencyClassifier
from services.emergency_router import EmergencyRouter
from services.logging_config import LogTimer
from services.phone import normalize_phone
from services.responder_ranker import NoAvailableTechnicianError

router = APIRouter()
logger = structlog.get_logger("emergency")


def get_classifier(request: Request) -> EmergencyClassifier:
    return request.app.state.classifier


def get_emergency_router(request: Request) -> EmergencyRouter:
    return request.app.state.emergency_router


def build_context(payload: ClassifyRequest) -> EmergencyContext:
    return EmergencyContext(
        message_text=payload.message_text,
        customer_phone=normalize_phone(payload.customer_phone) if payload.customer_phone else None,
        customer_id=payload.customer_id,
        timestamp=as_naive_utc(payload.timestamp) if payload.timestamp else datetime.now(),
        location=payload.location.model_dump() if payload.location else None,
        weather=payload.weather,
    )


@router.post("/classify", response_model=ClassificationResponse)
async def classify(
    payload: ClassifyRequest,
    classifier: EmergencyClassifier = Depends(get_classifier)
):
    result = await classifier.classify(build_context(payload))
    return ClassificationResponse(**result.to_dict())


@router.post("/route", response_model=RouteResponse)
async def route(
    payload: RouteRequest,
    classifier: EmergencyClassifier = Depends(get_classifier),
    emergency_router: EmergencyRouter = Depends(get_emergency_router)
):
    """Classify, then dispatch. 503 when nobody is available."""
    context = build_context(payload)
    classification = await classifier.classify(context)

    try:
        with LogTimer(logger, "Emergency routing", severity=classification.severity):
            decision = await emergency_router.route_emergency(
                classification,
                incident_id=payload.incident_id,
                incident_location=context.location,
            )
    except NoAvailableTechnicianError as e:
        logger.error("Routing failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return RouteResponse(
        incident_id=decision.incident_id,
        classification=ClassificationResponse(**classification.to_dict()),
        decision=decision.to_dict(),
    )


@router.post("/{incident_id}/resolve", response_model=ResolveResponse)
async def resolve(
    incident_id: str,
    emergency_router: EmergencyRouter = Depends(get_emergency_router)
):
    cancelled = await emergency_router.resolve_incident(incident_id)
    return ResolveResponse(incident_id=incident_id, escalations_cancelled=cancelled)
