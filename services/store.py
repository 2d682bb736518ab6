"""
Store
Version: 1.0

Async SQLAlchemy persistence for the ingestion pipeline.

- SqlStore: short-lived sessions for sync-session bookkeeping, responder
  lookup, emergency history and the classification audit log
- StoreTransaction: one unit of work (a batch) with per-message savepoints

DEPENDS ON: models.py, database.py
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    Conversation,
    ConversationSyncMetadata,
    Customer,
    EmergencyClassificationLog,
    ExternalMessageMapping,
    ExtractedInformation,
    Message,
    PhoneMapping,
    Staff,
    SyncSession,
)
from services.responder_ranker import Responder

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Persistence failure translated from SQLAlchemy."""
    pass


class StoreTransaction:
    """
    One atomic unit of work.

    Everything added through the transaction commits together when the
    surrounding SqlStore.transaction() block exits cleanly.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator["StoreTransaction"]:
        """Nested transaction; an exception rolls back only its own work."""
        async with self.session.begin_nested():
            yield self

    async def flush(self) -> None:
        await self.session.flush()

    # ─────────────────────────────────────────────
    # DEDUP
    # ─────────────────────────────────────────────

    async def mapping_exists(self, external_id: str, account_token: str) -> bool:
        stmt = select(ExternalMessageMapping.id).where(
            ExternalMessageMapping.external_message_id == external_id,
            ExternalMessageMapping.account_token == account_token
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def add_external_mapping(
        self,
        message_id: UUID,
        external_id: str,
        thread_id: Optional[str],
        account_token: str,
        external_timestamp: Optional[datetime]
    ) -> ExternalMessageMapping:
        mapping = ExternalMessageMapping(
            message_id=message_id,
            external_message_id=external_id,
            external_thread_id=thread_id,
            account_token=account_token,
            external_timestamp=external_timestamp,
        )
        self.session.add(mapping)
        await self.session.flush()
        return mapping

    # ─────────────────────────────────────────────
    # CUSTOMERS
    # ─────────────────────────────────────────────

    async def find_customer_by_phone(self, numbers: Sequence[str]) -> Optional[Customer]:
        stmt = select(Customer).where(
            Customer.phone.in_(list(numbers)),
            Customer.is_active == True  # noqa: E712
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_customer_by_alternate_phone(self, numbers: Sequence[str]) -> Optional[Customer]:
        stmt = select(Customer).where(
            Customer.alternate_phone.in_(list(numbers)),
            Customer.is_active == True  # noqa: E712
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_customer_by_any_phone(self, numbers: Sequence[str]) -> Optional[Customer]:
        numbers = list(numbers)
        stmt = select(Customer).where(
            or_(Customer.phone.in_(numbers), Customer.alternate_phone.in_(numbers)),
            Customer.is_active == True  # noqa: E712
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create_customer(self, **fields: Any) -> Customer:
        customer = Customer(**fields)
        self.session.add(customer)
        await self.session.flush()
        return customer

    # ─────────────────────────────────────────────
    # CONVERSATIONS
    # ─────────────────────────────────────────────

    async def find_conversation_by_thread(self, thread_id: str, platform: str) -> Optional[Conversation]:
        stmt = select(Conversation).where(
            Conversation.external_thread_id == thread_id,
            Conversation.platform == platform
        ).order_by(Conversation.last_message_at.desc().nulls_last()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_active_conversation(
        self,
        customer_id: Optional[UUID],
        phone: str,
        platform: str
    ) -> Optional[Conversation]:
        """Most recently active conversation for (customer, phone, platform)."""
        customer_clause = (
            Conversation.customer_id.is_(None) if customer_id is None
            else Conversation.customer_id == customer_id
        )
        stmt = select(Conversation).where(
            customer_clause,
            Conversation.phone_number == phone,
            Conversation.platform == platform,
            Conversation.status == "active"
        ).order_by(
            Conversation.last_message_at.desc().nulls_last(),
            Conversation.created_at.desc()
        ).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create_conversation(self, **fields: Any) -> Conversation:
        conversation = Conversation(**fields)
        self.session.add(conversation)
        await self.session.flush()
        return conversation

    async def upsert_phone_mapping(
        self,
        account_token: str,
        phone_number: str,
        normalized_phone: str,
        customer_id: Optional[UUID],
        contact_at: datetime
    ) -> None:
        """Insert or bump the contact history of a normalized number."""
        stmt = pg_insert(PhoneMapping).values(
            account_token=account_token,
            phone_number=phone_number,
            normalized_phone_number=normalized_phone,
            customer_id=customer_id,
            is_active=True,
            first_contact_at=contact_at,
            last_contact_at=contact_at,
            message_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_phone_account",
            set_={
                "message_count": PhoneMapping.message_count + 1,
                "last_contact_at": stmt.excluded.last_contact_at,
                # Backfill the customer link once a match shows up
                "customer_id": func.coalesce(PhoneMapping.customer_id, stmt.excluded.customer_id),
            }
        )
        await self.session.execute(stmt)

    # ─────────────────────────────────────────────
    # MESSAGES
    # ─────────────────────────────────────────────

    async def add_message(self, **fields: Any) -> Message:
        message = Message(**fields)
        self.session.add(message)
        await self.session.flush()
        return message

    async def add_sync_metadata(self, **fields: Any) -> ConversationSyncMetadata:
        metadata = ConversationSyncMetadata(**fields)
        self.session.add(metadata)
        await self.session.flush()
        return metadata

    async def add_extracted_information(self, **fields: Any) -> ExtractedInformation:
        info = ExtractedInformation(**fields)
        self.session.add(info)
        await self.session.flush()
        return info


class SqlStore:
    """Entry point for all persistence used by the pipeline."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """
        Open one unit of work; commits on clean exit, rolls back otherwise.

        Raises:
            StoreError: If the database rejects the unit of work
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield StoreTransaction(session)
        except SQLAlchemyError as e:
            raise StoreError(f"Transaction failed: {e}") from e

    # ─────────────────────────────────────────────
    # SYNC SESSIONS
    # ─────────────────────────────────────────────

    async def create_sync_session(
        self,
        session_token: str,
        account_token: str,
        sync_mode: str,
        options: Dict[str, Any]
    ) -> SyncSession:
        async with self.transaction() as tx:
            row = SyncSession(
                session_token=session_token,
                account_token=account_token,
                sync_mode=sync_mode,
                status="running",
                started_at=datetime.utcnow(),
                current_operation="initializing",
                errors=[],
                options=options,
            )
            tx.session.add(row)
            await tx.flush()
            return row

    async def get_sync_session(self, session_id: UUID) -> Optional[SyncSession]:
        async with self.session_factory() as session:
            return await session.get(SyncSession, session_id)

    async def find_running_session(self, account_token: str) -> Optional[SyncSession]:
        async with self.session_factory() as session:
            stmt = select(SyncSession).where(
                SyncSession.account_token == account_token,
                SyncSession.status == "running"
            ).limit(1)
            result = await session.execute(stmt)
            return result.scalars().first()

    async def save_sync_progress(self, session_id: UUID, **fields: Any) -> None:
        """Persist counters/current operation/errors (any status)."""
        async with self.transaction() as tx:
            await tx.session.execute(
                update(SyncSession).where(SyncSession.id == session_id).values(**fields)
            )

    async def finish_sync_session(self, session_id: UUID, status: str, **fields: Any) -> bool:
        """
        Move a running session to a terminal status.

        Returns:
            False if the session was no longer running (e.g. cancelled)
        """
        async with self.transaction() as tx:
            result = await tx.session.execute(
                update(SyncSession)
                .where(SyncSession.id == session_id, SyncSession.status == "running")
                .values(status=status, ended_at=datetime.utcnow(), **fields)
            )
            return result.rowcount == 1

    async def cancel_sync_session(self, session_id: UUID) -> bool:
        return await self.finish_sync_session(session_id, "cancelled", current_operation="cancelled")

    # ─────────────────────────────────────────────
    # EMERGENCIES
    # ─────────────────────────────────────────────

    async def available_responders(self, emergency_only: bool = False) -> List[Responder]:
        """Active on-call staff, optionally only emergency-certified."""
        async with self.session_factory() as session:
            stmt = select(Staff).where(
                Staff.status == "active",
                Staff.on_call_available == True  # noqa: E712
            )
            if emergency_only:
                stmt = stmt.where(Staff.emergency_technician == True)  # noqa: E712
            result = await session.execute(stmt)
            return [Responder.from_staff(s) for s in result.scalars().all()]

    async def emergency_history(self, customer_id: UUID, since: datetime) -> List[datetime]:
        """Timestamps of the customer's logged emergencies since a date."""
        async with self.session_factory() as session:
            stmt = select(EmergencyClassificationLog.created_at).where(
                EmergencyClassificationLog.customer_id == customer_id,
                EmergencyClassificationLog.is_emergency == True,  # noqa: E712
                EmergencyClassificationLog.created_at >= since
            ).order_by(EmergencyClassificationLog.created_at.desc()).limit(10)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def log_classification(self, context, classification, processing_ms: int) -> None:
        """Audit sink for the emergency classifier."""
        async with self.transaction() as tx:
            tx.session.add(EmergencyClassificationLog(
                message_text=context.message_text,
                customer_phone=context.customer_phone,
                customer_id=context.customer_id,
                is_emergency=classification.is_emergency,
                severity=classification.severity,
                classification=classification.to_dict(),
                processing_time_ms=processing_ms,
            ))
