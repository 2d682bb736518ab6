"""
Sync Orchestrator
Version: 1.0

Top-level ingestion controller.

    start_sync(options) -> SyncHandle       (returns immediately)
    get_sync_progress(session_id)           (re-reads persisted state)
    cancel_sync(session_id)                 (cooperative, batch granularity)

Run shape:
1. Fetch pages sequentially until no next token or max_pages (warning)
2. Split into batches; each batch is one store transaction with a
   savepoint per message so a bad message rolls back alone
3. Batch workers return BatchResult deltas; only the owning task touches
   the counters and persists them after every batch
4. Finalize -> completed. Fetch/finalize failure -> failed (critical)

DEPENDS ON: store.py, message_source.py, duplicate_guard.py,
thread_resolver.py, extraction_engine.py, emergency_classifier.py, notifier.py
"""

import asyncio
import logging
import re
import time
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from services.context_analyzers import EmergencyContext
from services.duplicate_guard import DuplicateGuard
from services.emergency_classifier import EmergencyClassifier, contains_emergency_keywords
from services.extraction_engine import ExtractionEngine
from services.logging_config import bind_sync_session
from services.message_source import MessageSource, MessageValidationError, SourceMessage
from services.metrics import ACTIVE_SYNCS, record_batch, record_sync_finished
from services.notifier import DashboardUpdate, Notifier
from services.phone import normalize_phone
from services.store import SqlStore
from services.thread_resolver import ThreadResolver

logger = logging.getLogger(__name__)

SYNC_MODES = ("initial", "incremental", "manual")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

_WHITESPACE = re.compile(r"\s+")


# ═══════════════════════════════════════════════════════════════
# OPTIONS & STATE
# ═══════════════════════════════════════════════════════════════

@dataclass
class SyncOptions:
    account_token: str
    sync_mode: str = "incremental"
    page_size: int = 100
    max_pages: int = 50
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    phone_filter: Optional[str] = None
    unread_only: bool = False
    enable_duplicate_detection: bool = True
    enable_message_parsing: bool = True
    enable_customer_matching: bool = True
    enable_threading: bool = True
    batch_size: int = 50
    batch_delay_ms: int = 100
    parallel_batches: int = 1
    platform: str = "google_voice"

    def validate(self) -> None:
        if not self.account_token:
            raise ValueError("account_token is required")
        if self.sync_mode not in SYNC_MODES:
            raise ValueError(f"sync_mode must be one of {SYNC_MODES}")
        for name in ("page_size", "max_pages", "batch_size", "parallel_batches"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")
        if self.batch_delay_ms < 0:
            raise ValueError("batch_delay_ms must not be negative")

    def sanitized(self) -> Dict[str, Any]:
        """Options as persisted on the session: no account token."""
        data = asdict(self)
        data.pop("account_token")
        for key in ("start_date", "end_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class SyncCounters:
    total_messages: int = 0
    processed_messages: int = 0
    imported_messages: int = 0
    duplicates_skipped: int = 0
    errors_encountered: int = 0
    conversations_created: int = 0
    conversations_updated: int = 0
    customers_created: int = 0
    customers_matched: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> "SyncCounters":
        return cls(**{f.name: getattr(row, f.name) or 0 for f in fields(cls)})


@dataclass
class BatchResult:
    """Counter deltas produced by one batch worker."""
    index: int
    processed: int = 0
    imported: int = 0
    duplicates: int = 0
    errors: int = 0
    conversations_created: int = 0
    conversations_updated: int = 0
    customers_created: int = 0
    customers_matched: int = 0
    emergencies: int = 0
    error_entries: List[Dict[str, Any]] = field(default_factory=list)
    events: List[DashboardUpdate] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class SyncProgress:
    session_id: UUID
    session_token: str
    status: str
    sync_mode: str
    current_operation: str
    counters: SyncCounters
    errors: List[Dict[str, Any]]
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    progress_percent: float = 0.0
    estimated_seconds_remaining: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "SyncProgress":
        counters = SyncCounters.from_row(row)
        progress = cls(
            session_id=row.id,
            session_token=row.session_token,
            status=row.status,
            sync_mode=row.sync_mode,
            current_operation=row.current_operation or "",
            counters=counters,
            errors=list(row.errors or []),
            started_at=row.started_at,
            ended_at=row.ended_at,
        )
        progress._derive_estimates(datetime.utcnow())
        return progress

    def _derive_estimates(self, now: datetime) -> None:
        total = self.counters.total_messages
        processed = self.counters.processed_messages

        if total:
            self.progress_percent = round(min(100.0, processed * 100.0 / total), 1)
        elif self.status == "completed":
            self.progress_percent = 100.0

        if self.status == "running" and processed and self.started_at:
            elapsed = (now - self.started_at).total_seconds()
            remaining = max(0, total - processed)
            self.estimated_seconds_remaining = round(elapsed / processed * remaining, 1)


@dataclass
class SyncSummary:
    session_id: UUID
    status: str
    counters: SyncCounters
    processing_ms: int
    average_ms_per_message: float


@dataclass(frozen=True)
class PerformanceThresholds:
    max_error_rate_percent: float = 5.0
    min_messages_per_second: float = 1.0
    max_ms_per_message: float = 5000.0


def performance_issues(summary: SyncSummary, thresholds: PerformanceThresholds) -> List[str]:
    """Threshold breaches for a finished run, worded for the session error log."""
    processed = summary.counters.processed_messages
    if not processed:
        return []

    issues = []
    if summary.average_ms_per_message > thresholds.max_ms_per_message:
        issues.append(f"Slow processing: {summary.average_ms_per_message:.0f}ms average per message")

    error_rate = summary.counters.errors_encountered * 100.0 / processed
    if error_rate > thresholds.max_error_rate_percent:
        issues.append(f"High error rate: {error_rate:.2f}%")

    seconds = summary.processing_ms / 1000
    if seconds > 0 and processed / seconds < thresholds.min_messages_per_second:
        issues.append(f"Low throughput: {processed / seconds:.2f} messages/second")

    return issues


class PhoneLocks:
    """
    Per-number locks for one run.

    A batch holds the locks of every number it touches until its
    transaction commits, so two parallel batches never both create the
    customer or conversation for the same number. Locks are taken in
    sorted order.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, phones: Iterable[str]):
        async with AsyncExitStack() as stack:
            for phone in sorted(set(phones)):
                lock = self._locks.setdefault(phone, asyncio.Lock())
                await stack.enter_async_context(lock)
            yield


class _SyncRun:
    """In-memory state of one running sync; mutated by its owning task only."""

    def __init__(self, session_id: UUID, session_token: str, options: SyncOptions, started_at: datetime):
        self.session_id = session_id
        self.session_token = session_token
        self.options = options
        self.started_at = started_at
        self.started_clock = time.perf_counter()
        self.status = "running"
        self.current_operation = "initializing"
        self.counters = SyncCounters()
        self.errors: List[Dict[str, Any]] = []
        self.cancelled = False
        self.phone_locks = PhoneLocks()

    def record_error(self, error: str, context: Dict[str, Any], severity: str = "error") -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "error": error,
            "context": context,
            "severity": severity,
        }
        self.errors.append(entry)
        return entry

    def apply(self, result: BatchResult) -> None:
        c = self.counters
        c.processed_messages += result.processed
        c.imported_messages += result.imported
        c.duplicates_skipped += result.duplicates
        c.errors_encountered += result.errors
        c.conversations_created += result.conversations_created
        c.conversations_updated += result.conversations_updated
        c.customers_created += result.customers_created
        c.customers_matched += result.customers_matched
        self.errors.extend(result.error_entries)

    def snapshot(self) -> SyncProgress:
        progress = SyncProgress(
            session_id=self.session_id,
            session_token=self.session_token,
            status=self.status,
            sync_mode=self.options.sync_mode,
            current_operation=self.current_operation,
            counters=SyncCounters(**self.counters.as_dict()),
            errors=list(self.errors),
            started_at=self.started_at,
            ended_at=None,
        )
        progress._derive_estimates(datetime.utcnow())
        return progress

    def persisted_fields(self) -> Dict[str, Any]:
        return dict(
            self.counters.as_dict(),
            current_operation=self.current_operation,
            errors=list(self.errors),
        )


class SyncHandle:
    """Caller-side view of a background sync task."""

    def __init__(self, orchestrator: "SyncOrchestrator", run: _SyncRun, task: asyncio.Task):
        self._orchestrator = orchestrator
        self._run = run
        self._task = task

    @property
    def session_id(self) -> UUID:
        return self._run.session_id

    @property
    def session_token(self) -> str:
        return self._run.session_token

    @property
    def progress(self) -> SyncProgress:
        """In-memory counters; eventually consistent with the persisted row."""
        return self._run.snapshot()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Optional[SyncProgress]:
        """Wait for the run to finish and return the persisted final state."""
        await asyncio.shield(self._task)
        return await self._orchestrator.get_sync_progress(self.session_id)

    async def cancel(self) -> bool:
        return await self._orchestrator.cancel_sync(self.session_id)


def generate_session_token() -> str:
    return f"sync_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def normalize_content(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


# ═══════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════

class SyncOrchestrator:
    """
    Drives ingestion runs.

    Usage:
        handle = await orchestrator.start_sync(SyncOptions(account_token="acct-1"))
        progress = await orchestrator.get_sync_progress(handle.session_id)
    """

    def __init__(
        self,
        store: SqlStore,
        source_factory: Callable[[str], MessageSource],
        duplicate_guard: DuplicateGuard,
        resolver: ThreadResolver,
        extraction_engine: ExtractionEngine,
        classifier: EmergencyClassifier,
        notifier: Optional[Notifier] = None,
        thresholds: Optional[PerformanceThresholds] = None
    ):
        """
        Args:
            store: Persistence
            source_factory: account_token -> MessageSource
            duplicate_guard: At-most-once import guard
            resolver: Identity & thread resolver
            extraction_engine: Text extraction
            classifier: Emergency classifier
            notifier: Dashboard fan-out (optional)
            thresholds: Per-run performance warning limits
        """
        self.store = store
        self.source_factory = source_factory
        self.guard = duplicate_guard
        self.resolver = resolver
        self.engine = extraction_engine
        self.classifier = classifier
        self.notifier = notifier or Notifier()
        self.thresholds = thresholds or PerformanceThresholds()
        self._handles: Dict[UUID, SyncHandle] = {}

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    async def start_sync(self, options: SyncOptions) -> SyncHandle:
        """
        Create a running session and schedule its processing.

        Raises:
            ValueError: If options are invalid
        """
        options.validate()
        token = generate_session_token()

        row = await self.store.create_sync_session(
            session_token=token,
            account_token=options.account_token,
            sync_mode=options.sync_mode,
            options=options.sanitized(),
        )

        run = _SyncRun(row.id, token, options, row.started_at or datetime.utcnow())
        task = asyncio.create_task(self._run(run), name=f"sync:{token}")
        handle = SyncHandle(self, run, task)

        self._handles[row.id] = handle
        task.add_done_callback(lambda _t, sid=row.id: self._handles.pop(sid, None))

        logger.info(f"🚀 Sync started: {token} mode={options.sync_mode} session={row.id}")
        return handle

    async def get_sync_progress(self, session_id: UUID) -> Optional[SyncProgress]:
        """Current persisted state, or None for an unknown session."""
        row = await self.store.get_sync_session(session_id)
        if row is None:
            return None
        return SyncProgress.from_row(row)

    async def cancel_sync(self, session_id: UUID) -> bool:
        """
        Flip a running session to cancelled.

        Returns:
            True if this call cancelled it, False if it was not running
        """
        cancelled = await self.store.cancel_sync_session(session_id)

        handle = self._handles.get(session_id)
        if cancelled and handle is not None:
            handle._run.cancelled = True

        if cancelled:
            logger.info(f"Sync cancel requested: {session_id}")
        return cancelled

    def get_handle(self, session_id: UUID) -> Optional[SyncHandle]:
        return self._handles.get(session_id)

    async def shutdown(self) -> None:
        """Stop in-process runs (application shutdown)."""
        tasks = [h._task for h in self._handles.values() if not h.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─────────────────────────────────────────────
    # RUN
    # ─────────────────────────────────────────────

    async def _run(self, run: _SyncRun) -> None:
        bind_sync_session(run.session_token)
        ACTIVE_SYNCS.inc()
        source: Optional[MessageSource] = None

        try:
            try:
                source = self.source_factory(run.options.account_token)
                raw_messages = await self._fetch_all(run, source)
            except Exception as e:
                logger.error(f"❌ Sync {run.session_token} fetch failed: {e}")
                await self._fail(run, e, "fetch")
                return

            run.counters.total_messages = len(raw_messages)
            run.current_operation = "processing"
            await self._persist_progress(run)

            try:
                await self._process_batches(run, raw_messages)
            except Exception as e:
                logger.error(f"❌ Sync {run.session_token} processing failed: {e}")
                await self._fail(run, e, "process")
                return

            try:
                await self._finalize(run)
            except Exception as e:
                logger.error(f"❌ Sync {run.session_token} finalize failed: {e}")
                await self._fail(run, e, "finalize")

        except asyncio.CancelledError:
            logger.warning(f"Sync {run.session_token} task cancelled")
            run.status = "cancelled"
            try:
                await self.store.finish_sync_session(run.session_id, "cancelled", **run.persisted_fields())
            except Exception as e:
                logger.error(f"Could not mark interrupted sync {run.session_token}: {e}")
            raise

        finally:
            ACTIVE_SYNCS.dec()
            if source is not None:
                await self._close_source(source)

    async def _fetch_all(self, run: _SyncRun, source: MessageSource) -> List[Dict[str, Any]]:
        options = run.options
        messages: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        pages = 0

        while True:
            if pages >= options.max_pages:
                entry = run.record_error(
                    f"Reached max pages limit ({options.max_pages}); remaining pages skipped",
                    {"pages_fetched": pages, "next_page_token": page_token},
                    severity="warning",
                )
                logger.warning(f"⚠️ Sync {run.session_token}: {entry['error']}")
                break

            run.current_operation = f"fetching page {pages + 1}"
            page = await source.fetch_messages(
                page_size=options.page_size,
                page_token=page_token,
                start_date=options.start_date,
                end_date=options.end_date,
                phone_filter=options.phone_filter,
                unread_only=options.unread_only,
            )
            pages += 1
            messages.extend(page.messages)
            page_token = page.next_page_token

            logger.debug(f"Fetched page {pages}: {len(page.messages)} messages")
            if not page_token:
                break

        logger.info(f"Sync {run.session_token} fetched {len(messages)} messages in {pages} pages")
        return messages

    async def _process_batches(self, run: _SyncRun, raw_messages: List[Dict[str, Any]]) -> None:
        size = run.options.batch_size
        batches = [raw_messages[i:i + size] for i in range(0, len(raw_messages), size)]
        if not batches:
            return

        semaphore = asyncio.Semaphore(run.options.parallel_batches)
        delay = run.options.batch_delay_ms / 1000

        async def worker(index: int, batch: List[Dict[str, Any]]) -> Optional[BatchResult]:
            async with semaphore:
                if run.cancelled:
                    return None
                if index and delay:
                    await asyncio.sleep(delay)
                if run.cancelled:
                    return None
                return await self._process_batch(run, index, batch)

        tasks = [asyncio.create_task(worker(i, b)) for i, b in enumerate(batches)]
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                if result is None:
                    continue

                run.apply(result)
                run.current_operation = f"processed batch {result.index + 1}/{len(batches)}"
                record_batch(result.duration_ms / 1000, result.imported, result.duplicates, result.errors)
                await self._persist_progress(run)
                await self._publish_batch(run, result)

                if not run.cancelled and await self._cancel_requested(run):
                    run.cancelled = True
                    logger.info(f"Sync {run.session_token} cancelled; no further batches")
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _process_batch(self, run: _SyncRun, index: int, batch: List[Dict[str, Any]]) -> BatchResult:
        result = BatchResult(index=index)
        claims: List[str] = []
        imported_ids: List[str] = []
        started = time.perf_counter()
        phones = self._batch_phones(batch) if run.options.parallel_batches > 1 else []

        async with run.phone_locks.hold(phones):
            try:
                async with self.store.transaction() as tx:
                    for position, raw in enumerate(batch):
                        await self._process_message(tx, run, raw, result, claims, imported_ids, position)
            except Exception as e:
                # Commit failed: nothing from this batch persisted
                logger.error(f"Batch {index} transaction failed: {e}")
                result = BatchResult(
                    index=index,
                    processed=len(batch),
                    errors=len(batch),
                    error_entries=[{
                        "timestamp": datetime.utcnow().isoformat(),
                        "error": f"Batch transaction failed: {e}",
                        "context": {"batch": index, "messages": len(batch)},
                        "severity": "error",
                    }],
                )
                imported_ids = []

        for external_id in claims:
            await self.guard.release(external_id, run.options.account_token, imported=external_id in imported_ids)

        result.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Batch {index} done: imported={result.imported} duplicates={result.duplicates} "
            f"errors={result.errors} ({result.duration_ms:.0f}ms)"
        )
        return result

    @staticmethod
    def _batch_phones(batch: List[Dict[str, Any]]) -> List[str]:
        phones = []
        for raw in batch:
            try:
                phones.append(normalize_phone(SourceMessage.from_payload(raw).phone))
            except MessageValidationError:
                continue
        return phones

    async def _process_message(
        self,
        tx,
        run: _SyncRun,
        raw: Dict[str, Any],
        result: BatchResult,
        claims: List[str],
        imported_ids: List[str],
        position: int
    ) -> None:
        options = run.options
        started = time.perf_counter()
        result.processed += 1
        external_id = raw.get("id") if isinstance(raw, dict) else None
        claimed = False

        try:
            message = SourceMessage.from_payload(raw)
            external_id = message.external_id

            if options.enable_duplicate_detection:
                if not await self.guard.claim(tx, message.external_id, options.account_token):
                    result.duplicates += 1
                    return
                claims.append(message.external_id)
                claimed = True

            async with tx.savepoint():
                outcome = await self._import_message(tx, run, message, started)

            imported_ids.append(message.external_id)
            result.imported += 1
            if outcome["conversation_created"]:
                result.conversations_created += 1
            else:
                result.conversations_updated += 1
            if outcome["customer_match_type"] == "created":
                result.customers_created += 1
            elif outcome["customer_match_type"] == "matched":
                result.customers_matched += 1
            if outcome["is_emergency"]:
                result.emergencies += 1
            result.events.extend(outcome["events"])

        except Exception as e:
            logger.warning(f"Message {external_id or position} failed: {e}")
            if claimed:
                # Rolled back, so a later copy in this batch may import it
                claims.remove(external_id)
                await self.guard.release(external_id, options.account_token, imported=False)
            result.errors += 1
            result.error_entries.append({
                "timestamp": datetime.utcnow().isoformat(),
                "error": str(e),
                "context": {"external_id": external_id, "batch": result.index, "position": position},
                "severity": "error",
            })

    async def _import_message(self, tx, run: _SyncRun, message: SourceMessage, started: float) -> Dict[str, Any]:
        """Everything that must commit or roll back together for one message."""
        options = run.options

        resolution = await self.resolver.resolve(
            tx,
            message,
            account_token=options.account_token,
            platform=options.platform,
            match_customers=options.enable_customer_matching,
            use_threading=options.enable_threading,
        )
        conversation = resolution.conversation

        db_message = await tx.add_message(
            conversation_id=conversation.id,
            direction=message.direction,
            original_content=message.text,
            content=normalize_content(message.text),
            message_type="text" if message.message_type == "sms" else message.message_type,
            platform=options.platform,
            status="delivered",
            attachments=message.attachments,
            contains_emergency_keywords=contains_emergency_keywords(self.classifier.rules, message.text),
            sent_at=message.timestamp,
        )
        await tx.add_external_mapping(
            message_id=db_message.id,
            external_id=message.external_id,
            thread_id=message.thread_id,
            account_token=options.account_token,
            external_timestamp=message.timestamp,
        )
        await tx.add_sync_metadata(
            conversation_id=conversation.id,
            sync_mode=options.sync_mode,
            session_token=run.session_token,
            last_synced_message_id=message.external_id,
            last_synced_at=datetime.utcnow(),
            sync_source=options.platform,
        )

        events = [DashboardUpdate(
            event_type="new_message",
            session_id=str(run.session_id),
            conversation_id=str(conversation.id),
            payload={"direction": message.direction, "phone": resolution.normalized_phone},
        )]
        is_emergency = False

        if message.direction == "inbound":
            if options.enable_message_parsing:
                parsed = self.engine.parse(message.text)
                info_row = await tx.add_extracted_information(
                    message_id=db_message.id,
                    parser_version=parsed.parser_version,
                    urgency_level=parsed.info.urgency_level,
                    requires_human_review=parsed.info.requires_human_review,
                    confidence_score=parsed.info.confidence_score,
                    payload=parsed.info.to_dict(),
                    parsing_errors=parsed.errors,
                    processing_time_ms=parsed.processing_ms,
                )
                db_message.extracted_info_id = info_row.id
                db_message.sentiment_score = parsed.info.sentiment_score
                db_message.requires_human_review = parsed.info.requires_human_review
                if parsed.info.follow_up.is_follow_up:
                    conversation.follow_up_required = True

            classification = await self.classifier.classify(EmergencyContext(
                message_text=message.text,
                customer_phone=resolution.normalized_phone,
                customer_id=conversation.customer_id,
                timestamp=message.timestamp,
            ))
            if classification.is_emergency:
                is_emergency = True
                conversation.is_emergency = True
                conversation.priority = "emergency"
                events.append(DashboardUpdate(
                    event_type="emergency_detected",
                    session_id=str(run.session_id),
                    conversation_id=str(conversation.id),
                    payload={
                        "severity": classification.severity,
                        "urgency_score": classification.urgency_score,
                        "emergency_type": classification.emergency_type,
                    },
                ))

        db_message.processing_duration = round((time.perf_counter() - started) * 1000, 2)
        await tx.flush()

        return {
            "conversation_created": resolution.conversation_created,
            "customer_match_type": resolution.customer_match_type,
            "is_emergency": is_emergency,
            "events": events,
        }

    # ─────────────────────────────────────────────
    # BOOKKEEPING
    # ─────────────────────────────────────────────

    async def _finalize(self, run: _SyncRun) -> None:
        run.current_operation = "completed" if not run.cancelled else "cancelled"
        summary = self._summary(run)

        for issue in performance_issues(summary, self.thresholds):
            logger.warning(f"⚠️ Sync {run.session_token} performance: {issue}")
            run.record_error(issue, {"stage": "performance", "processing_ms": summary.processing_ms}, severity="warning")

        if run.cancelled:
            run.status = "cancelled"
            await self.store.save_sync_progress(run.session_id, **run.persisted_fields())
        else:
            finished = await self.store.finish_sync_session(run.session_id, "completed", **run.persisted_fields())
            run.status = "completed" if finished else "cancelled"
            if not finished:
                # Cancelled between the last batch and finalize; keep counters
                await self.store.save_sync_progress(run.session_id, **run.persisted_fields())

        record_sync_finished(run.status, summary.processing_ms / 1000)
        await self.notifier.publish_dashboard_update(DashboardUpdate(
            event_type="sync_finished",
            session_id=str(run.session_id),
            payload={"status": run.status, **run.counters.as_dict()},
        ))
        logger.info(
            f"✅ Sync {run.session_token} {run.status}: imported={run.counters.imported_messages} "
            f"duplicates={run.counters.duplicates_skipped} errors={run.counters.errors_encountered} "
            f"in {summary.processing_ms}ms (avg {summary.average_ms_per_message:.1f}ms/message)"
        )

    async def _fail(self, run: _SyncRun, exc: Exception, stage: str) -> None:
        run.status = "failed"
        run.current_operation = "failed"
        run.record_error(str(exc), {"stage": stage, "type": type(exc).__name__}, severity="critical")

        try:
            finished = await self.store.finish_sync_session(run.session_id, "failed", **run.persisted_fields())
            if not finished:
                await self.store.save_sync_progress(run.session_id, **run.persisted_fields())
        except Exception as e:
            logger.error(f"Could not persist failure of sync {run.session_token}: {e}")

        record_sync_finished("failed", (time.perf_counter() - run.started_clock))
        await self.notifier.publish_dashboard_update(DashboardUpdate(
            event_type="sync_finished",
            session_id=str(run.session_id),
            payload={"status": "failed", "error": str(exc)},
        ))

    async def _persist_progress(self, run: _SyncRun) -> None:
        try:
            await self.store.save_sync_progress(run.session_id, **run.persisted_fields())
        except Exception as e:
            # Progress is advisory; the next batch persists again
            logger.warning(f"Progress save failed for {run.session_token}: {e}")

    async def _cancel_requested(self, run: _SyncRun) -> bool:
        try:
            row = await self.store.get_sync_session(run.session_id)
        except Exception as e:
            logger.warning(f"Cancel check failed for {run.session_token}: {e}")
            return False
        return row is not None and row.status == "cancelled"

    async def _publish_batch(self, run: _SyncRun, result: BatchResult) -> None:
        for event in result.events:
            await self.notifier.publish_dashboard_update(event)

        snapshot = run.snapshot()
        await self.notifier.publish_dashboard_update(DashboardUpdate(
            event_type="sync_progress",
            session_id=str(run.session_id),
            payload={
                **snapshot.counters.as_dict(),
                "progress_percent": snapshot.progress_percent,
                "estimated_seconds_remaining": snapshot.estimated_seconds_remaining,
                "current_operation": run.current_operation,
            },
        ))

    @staticmethod
    def _summary(run: _SyncRun) -> SyncSummary:
        processing_ms = int((time.perf_counter() - run.started_clock) * 1000)
        processed = run.counters.processed_messages
        return SyncSummary(
            session_id=run.session_id,
            status=run.status,
            counters=run.counters,
            processing_ms=processing_ms,
            average_ms_per_message=processing_ms / processed if processed else 0.0,
        )

    @staticmethod
    async def _close_source(source: MessageSource) -> None:
        try:
            await source.close()
        except Exception as e:
            logger.warning(f"Message source close failed: {e}")
