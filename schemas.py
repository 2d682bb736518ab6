"""
Pydantic Schemas
Version: 1.2

Request/response models for the sync and emergency endpoints.
NO DEPENDENCIES on services.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


# === ENUMS ===

class SyncMode(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    MANUAL = "manual"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# === SYNC SCHEMAS ===

class SyncRequest(BaseModel):
    """Start a sync for one provider account."""
    account_token: str = Field(..., min_length=1)
    sync_mode: SyncMode = SyncMode.INCREMENTAL
    page_size: int = Field(100, ge=1, le=1000)
    max_pages: int = Field(50, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    phone_filter: Optional[str] = None
    unread_only: bool = False
    enable_duplicate_detection: bool = True
    enable_message_parsing: bool = True
    enable_customer_matching: bool = True
    enable_threading: bool = True
    batch_size: int = Field(50, ge=1, le=500)
    batch_delay_ms: int = Field(100, ge=0)
    parallel_batches: int = Field(1, ge=1, le=16)

    @model_validator(mode="after")
    def check_date_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class SyncStarted(BaseModel):
    session_id: UUID
    session_token: str
    status: SyncStatus = SyncStatus.RUNNING


class SyncErrorEntry(BaseModel):
    timestamp: str
    error: str
    context: Dict[str, Any] = Field(default_factory=dict)
    severity: str


class SyncProgressResponse(BaseModel):
    session_id: UUID
    session_token: str
    status: SyncStatus
    sync_mode: SyncMode
    current_operation: str
    total_messages: int = 0
    processed_messages: int = 0
    imported_messages: int = 0
    duplicates_skipped: int = 0
    errors_encountered: int = 0
    conversations_created: int = 0
    conversations_updated: int = 0
    customers_created: int = 0
    customers_matched: int = 0
    progress_percent: float = 0.0
    estimated_seconds_remaining: Optional[float] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    errors: List[SyncErrorEntry] = Field(default_factory=list)


class CancelResponse(BaseModel):
    session_id: UUID
    cancelled: bool


# === EMERGENCY SCHEMAS ===

class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ClassifyRequest(BaseModel):
    message_text: str = Field(..., min_length=1)
    customer_phone: Optional[str] = None
    customer_id: Optional[UUID] = None
    timestamp: Optional[datetime] = None
    location: Optional[Location] = None
    weather: Optional[Dict[str, Any]] = None


class ClassificationResponse(BaseModel):
    is_emergency: bool
    severity: Severity
    urgency_score: float = Field(..., ge=0, le=100)
    emergency_type: str
    key_indicators: List[str]
    estimated_response_time: int
    suggested_actions: List[str]
    escalation_required: bool
    reasoning: str
    confidence: float = Field(..., ge=0, le=1)
    context_factors: List[str] = Field(default_factory=list)
    is_fallback: bool = False


class RouteRequest(ClassifyRequest):
    """Classify and route in one call."""
    incident_id: Optional[str] = None


class RouteResponse(BaseModel):
    incident_id: str
    classification: ClassificationResponse
    decision: Dict[str, Any]


class ResolveResponse(BaseModel):
    incident_id: str
    escalations_cancelled: int
