"""
Test Configuration and Fixtures
Version: 12.0
"""

import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from models import (
    Conversation,
    ConversationSyncMetadata,
    Customer,
    ExternalMessageMapping,
    ExtractedInformation,
    Message,
    SyncSession,
)
from services.customer_matcher import CustomerMatcher
from services.duplicate_guard import DuplicateGuard
from services.emergency_classifier import EmergencyClassifier
from services.extraction_engine import ExtractionEngine
from services.message_source import MessagePage, MessageSource, MessageSourceError
from services.notifier import Notifier
from services.rules import load_rules
from services.sync_orchestrator import SyncOrchestrator
from services.thread_resolver import ThreadResolver


# ============================================================================
# MOCK FIXTURES
# ============================================================================

@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    redis = MagicMock()
    redis.ping = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.rpush = AsyncMock(return_value=1)
    redis.aclose = AsyncMock()
    return redis


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class FakeTransaction:
    """Buffers writes until the owning FakeStore.transaction() commits."""

    def __init__(self, store: "FakeStore"):
        self.store = store
        self.pending: List[tuple] = []

    @asynccontextmanager
    async def savepoint(self):
        mark = len(self.pending)
        try:
            yield self
        except BaseException:
            del self.pending[mark:]
            raise

    async def flush(self) -> None:
        return None

    def _rows(self, kind: str) -> List[Any]:
        return list(self.store.tables[kind]) + [obj for k, obj in self.pending if k == kind]

    def _add(self, kind: str, obj: Any) -> Any:
        if getattr(obj, "id", None) is None:
            obj.id = uuid.uuid4()
        self.pending.append((kind, obj))
        return obj

    async def mapping_exists(self, external_id: str, account_token: str) -> bool:
        return any(
            m.external_message_id == external_id and m.account_token == account_token
            for m in self._rows("mappings")
        )

    async def add_external_mapping(self, message_id, external_id, thread_id, account_token, external_timestamp):
        return self._add("mappings", ExternalMessageMapping(
            message_id=message_id,
            external_message_id=external_id,
            external_thread_id=thread_id,
            account_token=account_token,
            external_timestamp=external_timestamp,
        ))

    async def find_customer_by_phone(self, numbers):
        return next((c for c in self._rows("customers") if c.phone in numbers and c.is_active), None)

    async def find_customer_by_alternate_phone(self, numbers):
        return next((c for c in self._rows("customers") if c.alternate_phone in numbers and c.is_active), None)

    async def find_customer_by_any_phone(self, numbers):
        return next(
            (c for c in self._rows("customers")
             if (c.phone in numbers or c.alternate_phone in numbers) and c.is_active),
            None
        )

    async def create_customer(self, **fields):
        return self._add("customers", Customer(**fields))

    async def find_conversation_by_thread(self, thread_id, platform):
        matches = [
            c for c in self._rows("conversations")
            if c.external_thread_id == thread_id and c.platform == platform
        ]
        matches.sort(key=lambda c: c.last_message_at or datetime.min, reverse=True)
        return matches[0] if matches else None

    async def find_active_conversation(self, customer_id, phone, platform):
        matches = [
            c for c in self._rows("conversations")
            if c.customer_id == customer_id and c.phone_number == phone
            and c.platform == platform and c.status == "active"
        ]
        matches.sort(key=lambda c: c.last_message_at or datetime.min, reverse=True)
        return matches[0] if matches else None

    async def create_conversation(self, **fields):
        return self._add("conversations", Conversation(**fields))

    async def upsert_phone_mapping(self, account_token, phone_number, normalized_phone, customer_id, contact_at):
        self.pending.append(("phone", {
            "account_token": account_token,
            "phone_number": phone_number,
            "normalized": normalized_phone,
            "customer_id": customer_id,
            "contact_at": contact_at,
        }))

    async def add_message(self, **fields):
        return self._add("messages", Message(**fields))

    async def add_sync_metadata(self, **fields):
        return self._add("sync_metadata", ConversationSyncMetadata(**fields))

    async def add_extracted_information(self, **fields):
        return self._add("extracted", ExtractedInformation(**fields))


class FakeStore:
    """In-memory stand-in for SqlStore with the same coroutine surface."""

    def __init__(self):
        self.tables: Dict[str, List[Any]] = defaultdict(list)
        self.phone_mappings: Dict[tuple, Dict[str, Any]] = {}
        self.sessions: Dict[uuid.UUID, SyncSession] = {}
        self.responders: List[Any] = []
        self.history: Dict[uuid.UUID, List[datetime]] = {}
        self.classification_logs: List[Dict[str, Any]] = []
        self.fail_next_commits = 0

    @asynccontextmanager
    async def transaction(self):
        tx = FakeTransaction(self)
        yield tx
        if self.fail_next_commits:
            self.fail_next_commits -= 1
            raise RuntimeError("commit failed")
        self._commit(tx.pending)

    def _commit(self, pending: List[tuple]) -> None:
        for kind, obj in pending:
            if kind == "mappings":
                key = (obj.external_message_id, obj.account_token)
                if any((m.external_message_id, m.account_token) == key for m in self.tables["mappings"]):
                    raise RuntimeError(f"unique violation on {key}")

        for kind, obj in pending:
            if kind == "phone":
                key = (obj["normalized"], obj["account_token"])
                row = self.phone_mappings.get(key)
                if row is None:
                    self.phone_mappings[key] = {
                        "phone_number": obj["phone_number"],
                        "customer_id": obj["customer_id"],
                        "first_contact_at": obj["contact_at"],
                        "last_contact_at": obj["contact_at"],
                        "message_count": 1,
                    }
                else:
                    row["message_count"] += 1
                    row["last_contact_at"] = obj["contact_at"]
                    row["customer_id"] = row["customer_id"] or obj["customer_id"]
            else:
                self.tables[kind].append(obj)

    def seed_customer(self, **fields) -> Customer:
        fields.setdefault("id", uuid.uuid4())
        fields.setdefault("is_active", True)
        customer = Customer(**fields)
        self.tables["customers"].append(customer)
        return customer

    # --- sync sessions ---

    async def create_sync_session(self, session_token, account_token, sync_mode, options):
        row = SyncSession(
            id=uuid.uuid4(),
            session_token=session_token,
            account_token=account_token,
            sync_mode=sync_mode,
            status="running",
            started_at=datetime.utcnow(),
            current_operation="initializing",
            errors=[],
            options=options,
        )
        self.sessions[row.id] = row
        return row

    async def get_sync_session(self, session_id):
        return self.sessions.get(session_id)

    async def find_running_session(self, account_token):
        return next(
            (s for s in self.sessions.values() if s.account_token == account_token and s.status == "running"),
            None
        )

    async def save_sync_progress(self, session_id, **fields):
        row = self.sessions[session_id]
        for key, value in fields.items():
            setattr(row, key, value)

    async def finish_sync_session(self, session_id, status, **fields):
        row = self.sessions.get(session_id)
        if row is None or row.status != "running":
            return False
        row.status = status
        row.ended_at = datetime.utcnow()
        for key, value in fields.items():
            setattr(row, key, value)
        return True

    async def cancel_sync_session(self, session_id):
        return await self.finish_sync_session(session_id, "cancelled", current_operation="cancelled")

    # --- emergencies ---

    async def available_responders(self, emergency_only=False):
        return [r for r in self.responders if r.emergency_technician or not emergency_only]

    async def emergency_history(self, customer_id, since):
        return [ts for ts in self.history.get(customer_id, []) if ts >= since]

    async def log_classification(self, context, classification, processing_ms):
        self.classification_logs.append({
            "text": context.message_text,
            "customer_id": context.customer_id,
            "is_emergency": classification.is_emergency,
            "severity": classification.severity,
        })


# ============================================================================
# MESSAGE SOURCE
# ============================================================================

class FakeMessageSource(MessageSource):
    """Serves pre-built pages; page tokens are page indexes."""

    def __init__(self, pages: List[List[Dict[str, Any]]], fail_on_call: Optional[int] = None):
        self.pages = pages
        self.fail_on_call = fail_on_call
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def fetch_messages(self, page_size, page_token=None, start_date=None, end_date=None,
                             phone_filter=None, unread_only=False):
        self.calls.append({"page_size": page_size, "page_token": page_token})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise MessageSourceError("upstream unavailable", status_code=503)

        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return MessagePage(messages=list(self.pages[index]), next_page_token=next_token)

    async def close(self):
        self.closed = True


def make_message(index: int, **overrides) -> Dict[str, Any]:
    """Raw provider payload."""
    payload = {
        "id": f"ext-{index}",
        "thread_id": None,
        "phone": f"(555) 010-{index % 10000:04d}",
        "direction": "inbound",
        "text": "My kitchen sink is clogged and draining slowly, can someone help this week?",
        "timestamp": (datetime(2024, 6, 12, 12, 0) + timedelta(minutes=index)).isoformat(),
        "type": "sms",
        "attachments": [],
    }
    payload.update(overrides)
    return payload


def make_messages(count: int, start: int = 0, **overrides) -> List[Dict[str, Any]]:
    return [make_message(i, **overrides) for i in range(start, start + count)]


# ============================================================================
# SERVICE FIXTURES
# ============================================================================

@pytest.fixture
def rules():
    return load_rules()


@pytest.fixture
def extraction_engine(rules):
    return ExtractionEngine(rules.extraction)


@pytest.fixture
def classifier(rules):
    return EmergencyClassifier(rules.classifier)


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def build_orchestrator(fake_store, rules):
    """Factory: orchestrator over the fake store and a given source."""

    def _build(source: MessageSource, redis_client=None) -> SyncOrchestrator:
        classifier = EmergencyClassifier(
            rules.classifier,
            history_provider=fake_store.emergency_history,
            audit_sink=fake_store.log_classification,
        )
        return SyncOrchestrator(
            store=fake_store,
            source_factory=lambda account_token: source,
            duplicate_guard=DuplicateGuard(redis_client),
            resolver=ThreadResolver(CustomerMatcher(), rules.classifier),
            extraction_engine=ExtractionEngine(rules.extraction),
            classifier=classifier,
            notifier=Notifier(redis_client),
        )

    return _build
