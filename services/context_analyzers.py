"""
Context Analyzers
Version: 1.0

Situational signals around an emergency message (time, season, location,
customer, weather). A closed set of analyzer kinds, each a plain function
with the same shape:

    (EmergencyContext) -> (factors, urgency_modifier, confidence)

The classifier runs them in DEFAULT_ANALYZERS order, averages confidences
and sums modifiers. Adding a kind means adding an enum member and one
entry in ANALYZERS.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID


AnalyzerOutput = Tuple[List[str], float, float]


def as_naive_utc(value: datetime) -> datetime:
    """Aware datetimes become naive UTC; naive ones are taken as UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class EmergencyContext:
    """Everything known about a message at classification time."""
    message_text: str
    customer_phone: Optional[str] = None
    customer_id: Optional[UUID] = None
    timestamp: datetime = field(default_factory=datetime.now)
    location: Optional[Dict[str, Any]] = None  # latitude/longitude/address
    weather: Optional[Dict[str, Any]] = None   # temperature_c/condition


class AnalyzerKind(str, Enum):
    TIME_OF_DAY = "time_of_day"
    LOCATION = "location"
    CUSTOMER_HISTORY = "customer_history"
    SEASONAL = "seasonal"
    WEATHER = "weather"


@dataclass
class ContextAnalysis:
    factors: List[str]
    urgency_modifier: float
    confidence: float


def analyze_time_of_day(context: EmergencyContext) -> AnalyzerOutput:
    hour = context.timestamp.hour
    if hour < 6 or hour > 22:
        return ["after_hours_emergency"], 0.2, 0.9
    return [], 0.0, 0.9


def analyze_location(context: EmergencyContext) -> AnalyzerOutput:
    if not context.location:
        return [], 0.0, 0.5
    return ["location_provided"], 0.0, 0.7


def analyze_customer_history(context: EmergencyContext) -> AnalyzerOutput:
    if context.customer_id is None:
        return [], 0.0, 0.6
    return ["existing_customer"], 0.0, 0.6


def analyze_seasonal(context: EmergencyContext) -> AnalyzerOutput:
    # Freeze season: December through March
    if context.timestamp.month in (12, 1, 2, 3):
        return ["winter_season"], 0.1, 0.8
    return [], 0.0, 0.8


def analyze_weather(context: EmergencyContext) -> AnalyzerOutput:
    if not context.weather:
        return [], 0.0, 0.4

    factors = []
    modifier = 0.0

    temperature = context.weather.get("temperature_c")
    if temperature is not None and temperature <= 0:
        factors.append("freezing_temperatures")
        modifier += 0.1

    condition = str(context.weather.get("condition", "")).lower()
    if condition in ("storm", "heavy_rain", "hurricane", "flood_warning"):
        factors.append("severe_weather")
        modifier += 0.1

    return factors, modifier, 0.7


ANALYZERS: Dict[AnalyzerKind, Callable[[EmergencyContext], AnalyzerOutput]] = {
    AnalyzerKind.TIME_OF_DAY: analyze_time_of_day,
    AnalyzerKind.LOCATION: analyze_location,
    AnalyzerKind.CUSTOMER_HISTORY: analyze_customer_history,
    AnalyzerKind.SEASONAL: analyze_seasonal,
    AnalyzerKind.WEATHER: analyze_weather,
}

DEFAULT_ANALYZERS: Tuple[AnalyzerKind, ...] = (
    AnalyzerKind.TIME_OF_DAY,
    AnalyzerKind.LOCATION,
    AnalyzerKind.CUSTOMER_HISTORY,
    AnalyzerKind.SEASONAL,
    AnalyzerKind.WEATHER,
)


def run_context_analysis(
    context: EmergencyContext,
    kinds: Tuple[AnalyzerKind, ...] = DEFAULT_ANALYZERS
) -> ContextAnalysis:
    """
    Run the analyzers in order and fold their outputs.

    Args:
        context: Message context
        kinds: Analyzer kinds to run, in order

    Returns:
        ContextAnalysis with concatenated factors, summed modifier and
        mean confidence (0.0 when no analyzer ran)
    """
    factors: List[str] = []
    modifier = 0.0
    confidences: List[float] = []

    for kind in kinds:
        kind_factors, kind_modifier, kind_confidence = ANALYZERS[kind](context)
        factors.extend(kind_factors)
        modifier += kind_modifier
        confidences.append(kind_confidence)

    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return ContextAnalysis(factors=factors, urgency_modifier=modifier, confidence=confidence)
