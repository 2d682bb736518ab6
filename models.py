"""
Database Models
Version: 1.2

SQLAlchemy ORM models.
DEPENDS ON: database.py
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Text,
    Integer,
    Float,
    ForeignKey,
    Index,
    UniqueConstraint,
    JSON
)
from sqlalchemy.dialects.postgresql import UUID

from database import Base


class Customer(Base):
    """Customer identity, keyed by canonical phone number."""

    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name = Column(String(100), nullable=False, default="Unknown")
    last_name = Column(String(100), nullable=False, default="Customer")
    phone = Column(String(20), nullable=True, index=True)
    alternate_phone = Column(String(20), nullable=True, index=True)
    email = Column(String(200), nullable=True)
    is_active = Column(Boolean, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Staff(Base):
    """Technicians and dispatch staff that can receive emergencies."""

    __tablename__ = "staff"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    status = Column(String(20), default="active")
    on_call_available = Column(Boolean, default=False)
    emergency_technician = Column(Boolean, default=False)
    specialties = Column(JSON, default=list)
    active_jobs = Column(Integer, default=0)
    max_concurrent_jobs = Column(Integer, default=3)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_staff_availability", "status", "on_call_available"),
    )


class SyncSession(Base):
    """One ingestion run against the message source."""

    __tablename__ = "sync_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_token = Column(String(64), unique=True, nullable=False)
    account_token = Column(String(100), nullable=False, index=True)
    sync_mode = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="running")
    started_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)
    total_messages = Column(Integer, default=0)
    processed_messages = Column(Integer, default=0)
    imported_messages = Column(Integer, default=0)
    duplicates_skipped = Column(Integer, default=0)
    errors_encountered = Column(Integer, default=0)
    conversations_created = Column(Integer, default=0)
    conversations_updated = Column(Integer, default=0)
    customers_created = Column(Integer, default=0)
    customers_matched = Column(Integer, default=0)
    current_operation = Column(String(100), default="initializing")
    errors = Column(JSON, default=list)
    options = Column(JSON, default=dict)

    __table_args__ = (
        Index("ix_sync_account_status", "account_token", "status"),
    )


class Conversation(Base):
    """Customer-and-channel scoped message thread."""

    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    phone_number = Column(String(20), nullable=False)
    original_phone_number = Column(String(40), nullable=True)
    external_thread_id = Column(String(200), nullable=True, index=True)
    platform = Column(String(40), nullable=False)
    channel = Column(String(20), default="sms")
    status = Column(String(20), default="active")
    priority = Column(String(20), default="medium")
    is_emergency = Column(Boolean, default=False)
    last_message_at = Column(DateTime, nullable=True)
    follow_up_required = Column(Boolean, default=False)
    follow_up_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_conv_customer_phone", "customer_id", "phone_number", "platform", "status"),
    )


class Message(Base):
    """Individual inbound/outbound messages."""

    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    direction = Column(String(20), nullable=False)
    original_content = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(20), default="text")
    platform = Column(String(40), nullable=False)
    status = Column(String(20), default="delivered")
    attachments = Column(JSON, default=list)
    contains_emergency_keywords = Column(Boolean, default=False)
    extracted_info_id = Column(UUID(as_uuid=True), nullable=True)
    sentiment_score = Column(Float, nullable=True)
    requires_human_review = Column(Boolean, default=False)
    processing_duration = Column(Float, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_msg_conv_time", "conversation_id", "sent_at"),
    )


class ExternalMessageMapping(Base):
    """Ties a provider message id to the imported message (dedup key)."""

    __tablename__ = "external_message_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id = Column(UUID(as_uuid=True), ForeignKey("messages.id"), nullable=False)
    external_message_id = Column(String(200), nullable=False)
    external_thread_id = Column(String(200), nullable=True)
    account_token = Column(String(100), nullable=False)
    external_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("external_message_id", "account_token", name="uq_external_message_account"),
    )


class PhoneMapping(Base):
    """Contact history of a normalized phone number per account."""

    __tablename__ = "phone_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_token = Column(String(100), nullable=False)
    phone_number = Column(String(40), nullable=False)
    normalized_phone_number = Column(String(20), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True)
    is_active = Column(Boolean, default=True)
    first_contact_at = Column(DateTime, nullable=True)
    last_contact_at = Column(DateTime, nullable=True)
    message_count = Column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("normalized_phone_number", "account_token", name="uq_phone_account"),
    )


class ExtractedInformation(Base):
    """Parser output for one message. Re-parsing inserts a new version."""

    __tablename__ = "extracted_information"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id = Column(UUID(as_uuid=True), ForeignKey("messages.id"), nullable=False, index=True)
    parser_version = Column(String(20), nullable=False)
    parsed_at = Column(DateTime, default=datetime.utcnow)
    urgency_level = Column(String(20), nullable=False)
    requires_human_review = Column(Boolean, default=False)
    confidence_score = Column(Float, default=0.0)
    payload = Column(JSON, nullable=False)
    parsing_errors = Column(JSON, default=list)
    processing_time_ms = Column(Integer, default=0)


class ConversationSyncMetadata(Base):
    """Per-import record linking a conversation to the sync that touched it."""

    __tablename__ = "conversation_sync_metadata"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    sync_mode = Column(String(20), nullable=False)
    session_token = Column(String(64), nullable=False, index=True)
    last_synced_message_id = Column(String(200), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    sync_source = Column(String(40), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class EmergencyClassificationLog(Base):
    """Audit trail of classifier verdicts (training/reporting input)."""

    __tablename__ = "emergency_classification_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_text = Column(Text, nullable=False)
    customer_phone = Column(String(40), nullable=True)
    customer_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    is_emergency = Column(Boolean, default=False)
    severity = Column(String(20), nullable=False)
    classification = Column(JSON, nullable=False)
    processing_time_ms = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ecl_created", "created_at"),
    )
