"""
Tests for SyncOrchestrator
Version: 1.0

Full ingestion runs over FakeStore and FakeMessageSource.
"""

import asyncio
import json
import uuid

import pytest
from unittest.mock import AsyncMock, MagicMock

from services.notifier import QUEUE_DASHBOARD
from services.sync_orchestrator import (
    PerformanceThresholds,
    SyncCounters,
    SyncOptions,
    SyncSummary,
    generate_session_token,
    normalize_content,
    performance_issues,
)
from tests.conftest import FakeMessageSource, FakeTransaction, make_message, make_messages

ACCOUNT = "acct-1"


def options(**overrides) -> SyncOptions:
    overrides.setdefault("batch_delay_ms", 0)
    return SyncOptions(account_token=ACCOUNT, **overrides)


async def run_sync(orchestrator, **overrides):
    handle = await orchestrator.start_sync(options(**overrides))
    return await handle.wait()


def dashboard_events(mock_redis):
    return [
        json.loads(call.args[1])
        for call in mock_redis.rpush.await_args_list
        if call.args[0] == QUEUE_DASHBOARD
    ]


class BlockingSource(FakeMessageSource):
    """Never returns a page."""

    async def fetch_messages(self, page_size, page_token=None, **kwargs):
        await asyncio.Event().wait()


# ============================================================================
# HAPPY PATH
# ============================================================================

class TestSyncRun:

    @pytest.mark.asyncio
    async def test_imports_all_messages(self, build_orchestrator, fake_store):
        source = FakeMessageSource([make_messages(3)])
        orchestrator = build_orchestrator(source)

        progress = await run_sync(orchestrator)

        assert progress.status == "completed"
        assert progress.current_operation == "completed"
        assert progress.progress_percent == 100.0
        assert progress.ended_at is not None
        counters = progress.counters
        assert counters.total_messages == 3
        assert counters.processed_messages == 3
        assert counters.imported_messages == 3
        assert counters.duplicates_skipped == 0
        assert counters.conversations_created == 3
        assert counters.customers_created == 3
        assert len(fake_store.tables["messages"]) == 3
        assert len(fake_store.tables["mappings"]) == 3
        assert len(fake_store.tables["extracted"]) == 3
        assert len(fake_store.tables["sync_metadata"]) == 3
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_message_fields(self, build_orchestrator, fake_store):
        payload = make_message(0, text="  My   sink is\nbroken  ")
        orchestrator = build_orchestrator(FakeMessageSource([[payload]]))

        await run_sync(orchestrator)

        stored = fake_store.tables["messages"][0]
        assert stored.original_content == "  My   sink is\nbroken  "
        assert stored.content == "My sink is broken"
        assert stored.message_type == "text"
        assert stored.status == "delivered"
        assert stored.extracted_info_id == fake_store.tables["extracted"][0].id
        assert stored.processing_duration >= 0

        mapping = fake_store.tables["mappings"][0]
        assert mapping.external_message_id == "ext-0"
        assert mapping.message_id == stored.id

    @pytest.mark.asyncio
    async def test_reimport_is_idempotent(self, build_orchestrator, fake_store):
        source = FakeMessageSource([make_messages(3)])
        orchestrator = build_orchestrator(source)

        first = await run_sync(orchestrator)
        second = await run_sync(orchestrator)

        assert first.counters.imported_messages == 3
        assert second.counters.imported_messages == 0
        assert second.counters.duplicates_skipped == 3
        assert second.status == "completed"
        assert len(fake_store.tables["messages"]) == 3

    @pytest.mark.asyncio
    async def test_duplicate_detection_disabled_still_unique(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(2)]))
        await run_sync(orchestrator)

        progress = await run_sync(orchestrator, enable_duplicate_detection=False)

        # The mapping uniqueness rejects the batch at commit
        assert progress.counters.imported_messages == 0
        assert progress.counters.errors_encountered == 2
        assert len(fake_store.tables["messages"]) == 2

    @pytest.mark.asyncio
    async def test_same_phone_threads_together(self, build_orchestrator):
        messages = [
            make_message(0, phone="(555) 222-3333"),
            make_message(1, phone="555.222.3333"),
        ]
        orchestrator = build_orchestrator(FakeMessageSource([messages]))

        progress = await run_sync(orchestrator)

        assert progress.counters.conversations_created == 1
        assert progress.counters.conversations_updated == 1
        assert progress.counters.customers_created == 1
        assert progress.counters.customers_matched == 1

    @pytest.mark.asyncio
    async def test_existing_customer_matched(self, build_orchestrator, fake_store):
        customer = fake_store.seed_customer(first_name="Ann", last_name="Lee", phone="555-010-0000")
        orchestrator = build_orchestrator(FakeMessageSource([[make_message(0)]]))

        progress = await run_sync(orchestrator)

        assert progress.counters.customers_matched == 1
        assert progress.counters.customers_created == 0
        assert fake_store.tables["conversations"][0].customer_id == customer.id

    @pytest.mark.asyncio
    async def test_outbound_not_analyzed(self, build_orchestrator, fake_store):
        payload = make_message(0, direction="outbound", text="gas leak crew is on the way")
        orchestrator = build_orchestrator(FakeMessageSource([[payload]]))

        progress = await run_sync(orchestrator)

        assert progress.counters.imported_messages == 1
        assert fake_store.tables["extracted"] == []
        assert fake_store.classification_logs == []

    @pytest.mark.asyncio
    async def test_parsing_disabled(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(2)]))

        await run_sync(orchestrator, enable_message_parsing=False)

        assert fake_store.tables["extracted"] == []
        assert len(fake_store.classification_logs) == 2

    @pytest.mark.asyncio
    async def test_emergency_flags_conversation(self, build_orchestrator, fake_store, mock_redis):
        payload = make_message(0, text="GAS LEAK at my house, please send someone NOW")
        orchestrator = build_orchestrator(FakeMessageSource([[payload]]), redis_client=mock_redis)

        await run_sync(orchestrator)

        conversation = fake_store.tables["conversations"][0]
        assert conversation.is_emergency is True
        assert conversation.priority == "emergency"
        assert fake_store.tables["messages"][0].contains_emergency_keywords is True
        assert fake_store.tables["extracted"][0].urgency_level == "emergency"
        assert fake_store.classification_logs[0]["severity"] == "critical"

        events = [e["event_type"] for e in dashboard_events(mock_redis)]
        assert "new_message" in events
        assert "emergency_detected" in events
        assert "sync_progress" in events
        assert events[-1] == "sync_finished"

    @pytest.mark.asyncio
    async def test_follow_up_flag(self, build_orchestrator, fake_store):
        payload = make_message(0, text="Any update on job #4411? Still waiting on the plumber.")
        orchestrator = build_orchestrator(FakeMessageSource([[payload]]))

        await run_sync(orchestrator)

        assert fake_store.tables["conversations"][0].follow_up_required is True

    @pytest.mark.asyncio
    async def test_parallel_batches_import_once(self, build_orchestrator, fake_store):
        messages = make_messages(4) + [make_message(0)]
        orchestrator = build_orchestrator(FakeMessageSource([messages]))

        progress = await run_sync(orchestrator, batch_size=2, parallel_batches=3)

        assert progress.counters.processed_messages == 5
        assert progress.counters.imported_messages == 4
        assert progress.counters.duplicates_skipped == 1
        assert len(fake_store.tables["mappings"]) == 4

    @pytest.mark.asyncio
    async def test_parallel_batches_share_conversation_per_phone(self, build_orchestrator, fake_store, monkeypatch):
        # Suspend inside lookups the way a real database round trip does
        for name in ("find_customer_by_phone", "find_customer_by_any_phone", "find_active_conversation"):
            original = getattr(FakeTransaction, name)

            async def yielding(self, *args, _original=original, **kwargs):
                await asyncio.sleep(0)
                return await _original(self, *args, **kwargs)

            monkeypatch.setattr(FakeTransaction, name, yielding)

        messages = [make_message(i, phone="(555) 444-0000") for i in range(4)]
        orchestrator = build_orchestrator(FakeMessageSource([messages]))

        progress = await run_sync(orchestrator, batch_size=2, parallel_batches=2)

        active = [c for c in fake_store.tables["conversations"] if c.status == "active"]
        assert progress.counters.imported_messages == 4
        assert len(active) == 1
        assert len(fake_store.tables["customers"]) == 1
        assert progress.counters.conversations_created == 1
        assert progress.counters.customers_created == 1

    @pytest.mark.asyncio
    async def test_sanitized_options_persisted(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([[]]))

        progress = await run_sync(orchestrator, page_size=10)

        row = fake_store.sessions[progress.session_id]
        assert "account_token" not in row.options
        assert row.options["page_size"] == 10
        assert progress.counters.total_messages == 0
        assert progress.status == "completed"

    @pytest.mark.asyncio
    async def test_invalid_options(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([[]]))

        with pytest.raises(ValueError):
            await orchestrator.start_sync(options(batch_size=0))
        with pytest.raises(ValueError):
            await orchestrator.start_sync(options(sync_mode="everything"))

        assert fake_store.sessions == {}


# ============================================================================
# PAGINATION & ERRORS
# ============================================================================

class TestSyncErrors:

    @pytest.mark.asyncio
    async def test_max_pages_warning(self, build_orchestrator):
        source = FakeMessageSource([make_messages(2, start=0), make_messages(2, start=2), make_messages(2, start=4)])
        orchestrator = build_orchestrator(source)

        progress = await run_sync(orchestrator, max_pages=1)

        assert len(source.calls) == 1
        assert progress.status == "completed"
        assert progress.counters.total_messages == 2
        assert progress.counters.processed_messages == 2
        assert progress.counters.errors_encountered == 0
        assert [e["severity"] for e in progress.errors] == ["warning"]
        assert progress.errors[0]["context"]["next_page_token"] == "1"

    @pytest.mark.asyncio
    async def test_follows_page_tokens(self, build_orchestrator):
        source = FakeMessageSource([make_messages(2, start=0), make_messages(2, start=2)])
        orchestrator = build_orchestrator(source)

        progress = await run_sync(orchestrator, page_size=2)

        assert [c["page_token"] for c in source.calls] == [None, "1"]
        assert all(c["page_size"] == 2 for c in source.calls)
        assert progress.counters.imported_messages == 4
        assert progress.errors == []

    @pytest.mark.asyncio
    async def test_malformed_message_fails_alone(self, build_orchestrator, fake_store):
        messages = make_messages(49) + [make_message(49, phone=None)]
        orchestrator = build_orchestrator(FakeMessageSource([messages]))

        progress = await run_sync(orchestrator, batch_size=50)

        assert progress.status == "completed"
        assert progress.counters.processed_messages == 50
        assert progress.counters.imported_messages == 49
        assert progress.counters.errors_encountered == 1
        errors = [e for e in progress.errors if e["severity"] == "error"]
        assert len(errors) == 1
        assert errors[0]["context"]["external_id"] == "ext-49"
        assert len(fake_store.tables["messages"]) == 49

    @pytest.mark.asyncio
    async def test_import_failure_rolls_back_one_message(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(3)]))
        resolve = orchestrator.resolver.resolve
        failing = {"ext-1"}

        async def flaky(tx, message, **kwargs):
            resolution = await resolve(tx, message, **kwargs)
            if message.external_id in failing:
                raise RuntimeError("resolver exploded")
            return resolution

        orchestrator.resolver.resolve = flaky

        first = await run_sync(orchestrator)

        assert first.counters.imported_messages == 2
        assert first.counters.errors_encountered == 1
        assert len(fake_store.tables["conversations"]) == 2
        assert {m.external_message_id for m in fake_store.tables["mappings"]} == {"ext-0", "ext-2"}

        # The failed message was released and imports on the next run
        failing.clear()
        second = await run_sync(orchestrator)

        assert second.counters.imported_messages == 1
        assert second.counters.duplicates_skipped == 2

    @pytest.mark.asyncio
    async def test_commit_failure_counts_whole_batch(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(4)]))
        fake_store.fail_next_commits = 1

        progress = await run_sync(orchestrator, batch_size=2)

        assert progress.status == "completed"
        assert progress.counters.processed_messages == 4
        assert progress.counters.imported_messages == 2
        assert progress.counters.errors_encountered == 2
        assert len(fake_store.tables["messages"]) == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_fails_session(self, build_orchestrator, mock_redis):
        source = FakeMessageSource([make_messages(2), make_messages(2, start=2)], fail_on_call=2)
        orchestrator = build_orchestrator(source, redis_client=mock_redis)

        progress = await run_sync(orchestrator)

        assert progress.status == "failed"
        assert progress.counters.imported_messages == 0
        assert progress.errors[-1]["severity"] == "critical"
        assert progress.errors[-1]["context"]["stage"] == "fetch"
        assert source.closed is True

        finished = [e for e in dashboard_events(mock_redis) if e["event_type"] == "sync_finished"]
        assert finished[0]["payload"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_failed_message_releases_claim_for_later_copy(self, build_orchestrator, fake_store):
        messages = make_messages(2) + [make_message(1)]
        orchestrator = build_orchestrator(FakeMessageSource([messages]))
        resolve = orchestrator.resolver.resolve
        attempts = []

        async def fails_first_attempt(tx, message, **kwargs):
            resolution = await resolve(tx, message, **kwargs)
            attempts.append(message.external_id)
            if attempts.count("ext-1") == 1 and message.external_id == "ext-1":
                raise RuntimeError("transient resolver error")
            return resolution

        orchestrator.resolver.resolve = fails_first_attempt

        progress = await run_sync(orchestrator)

        assert progress.counters.processed_messages == 3
        assert progress.counters.imported_messages == 2
        assert progress.counters.errors_encountered == 1
        assert progress.counters.duplicates_skipped == 0
        assert {m.external_message_id for m in fake_store.tables["mappings"]} == {"ext-0", "ext-1"}

    @pytest.mark.asyncio
    async def test_source_factory_failure_fails_session(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([[]]))
        orchestrator.source_factory = MagicMock(side_effect=ValueError("no credentials for account"))

        progress = await run_sync(orchestrator)

        assert progress.status == "failed"
        assert progress.errors[-1]["context"]["stage"] == "fetch"
        assert await fake_store.find_running_session(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_unexpected_batch_failure_fails_session(self, build_orchestrator, fake_store):
        source = FakeMessageSource([make_messages(4)])
        orchestrator = build_orchestrator(source)
        orchestrator._process_batch = AsyncMock(side_effect=RuntimeError("worker crashed"))

        progress = await run_sync(orchestrator, batch_size=2)

        assert progress.status == "failed"
        assert progress.errors[-1]["severity"] == "critical"
        assert progress.errors[-1]["context"]["stage"] == "process"
        assert await fake_store.find_running_session(ACCOUNT) is None
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_high_error_rate_adds_performance_warning(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(4)]))
        fake_store.fail_next_commits = 1

        progress = await run_sync(orchestrator, batch_size=2)

        warnings = [e for e in progress.errors if e["context"].get("stage") == "performance"]
        assert progress.status == "completed"
        assert [w["error"] for w in warnings] == ["High error rate: 50.00%"]
        assert warnings[0]["severity"] == "warning"


# ============================================================================
# PROGRESS & CANCELLATION
# ============================================================================

class TestSyncControl:

    @pytest.mark.asyncio
    async def test_progress_survives_orchestrator_restart(self, build_orchestrator):
        first = build_orchestrator(FakeMessageSource([make_messages(3)]))
        done = await run_sync(first)

        restarted = build_orchestrator(FakeMessageSource([[]]))
        progress = await restarted.get_sync_progress(done.session_id)

        assert progress.status == "completed"
        assert progress.counters == done.counters
        assert restarted.get_handle(done.session_id) is None

    @pytest.mark.asyncio
    async def test_unknown_session(self, build_orchestrator):
        orchestrator = build_orchestrator(FakeMessageSource([[]]))

        assert await orchestrator.get_sync_progress(uuid.uuid4()) is None
        assert await orchestrator.cancel_sync(uuid.uuid4()) is False

    @pytest.mark.asyncio
    async def test_cancel_before_processing(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(4)]))

        handle = await orchestrator.start_sync(options())
        assert await orchestrator.cancel_sync(handle.session_id) is True

        progress = await handle.wait()

        assert handle.done() is True
        assert progress.status == "cancelled"
        assert progress.counters.imported_messages == 0
        assert fake_store.tables["messages"] == []
        assert await orchestrator.cancel_sync(handle.session_id) is False

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self, build_orchestrator, fake_store):
        orchestrator = build_orchestrator(FakeMessageSource([make_messages(4)]))
        resolve = orchestrator.resolver.resolve
        session = {}

        async def cancel_from_elsewhere(tx, message, **kwargs):
            if message.external_id == "ext-0":
                await fake_store.cancel_sync_session(session["id"])
            return await resolve(tx, message, **kwargs)

        orchestrator.resolver.resolve = cancel_from_elsewhere

        handle = await orchestrator.start_sync(options(batch_size=2, batch_delay_ms=50))
        session["id"] = handle.session_id
        progress = await handle.wait()

        assert progress.status == "cancelled"
        assert progress.counters.total_messages == 4
        assert progress.counters.processed_messages == 2
        assert progress.counters.imported_messages == 2

    @pytest.mark.asyncio
    async def test_running_handle_progress(self, build_orchestrator):
        orchestrator = build_orchestrator(BlockingSource([[]]))

        handle = await orchestrator.start_sync(options())
        await asyncio.sleep(0)

        assert handle.done() is False
        assert handle.progress.status == "running"
        assert orchestrator.get_handle(handle.session_id) is handle

        assert await handle.cancel() is True
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_marks_cancelled(self, build_orchestrator, fake_store):
        source = BlockingSource([[]])
        orchestrator = build_orchestrator(source)

        handle = await orchestrator.start_sync(options())
        await asyncio.sleep(0)
        await orchestrator.shutdown()

        assert fake_store.sessions[handle.session_id].status == "cancelled"
        assert source.closed is True


class TestHelpers:

    def test_session_token_format(self):
        token = generate_session_token()
        prefix, millis, suffix = token.split("_")

        assert prefix == "sync"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert generate_session_token() != token

    def test_normalize_content(self):
        assert normalize_content("  a \n\t b  ") == "a b"
        assert normalize_content(None) == ""

    def test_performance_issues(self):
        thresholds = PerformanceThresholds()
        slow = SyncSummary(
            session_id=uuid.uuid4(),
            status="completed",
            counters=SyncCounters(processed_messages=10, errors_encountered=1),
            processing_ms=60000,
            average_ms_per_message=6000.0,
        )
        healthy = SyncSummary(
            session_id=uuid.uuid4(),
            status="completed",
            counters=SyncCounters(processed_messages=10),
            processing_ms=500,
            average_ms_per_message=50.0,
        )

        assert performance_issues(slow, thresholds) == [
            "Slow processing: 6000ms average per message",
            "High error rate: 10.00%",
            "Low throughput: 0.17 messages/second",
        ]
        assert performance_issues(healthy, thresholds) == []
        empty = SyncSummary(uuid.uuid4(), "completed", SyncCounters(), processing_ms=10, average_ms_per_message=0.0)
        assert performance_issues(empty, thresholds) == []
