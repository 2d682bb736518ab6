"""
Tests for DuplicateGuard, CustomerMatcher and ThreadResolver
Version: 1.0

All run against the in-memory FakeStore transaction.
"""

from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock

from services.customer_matcher import CustomerMatcher
from services.duplicate_guard import DuplicateGuard
from services.message_source import SourceMessage
from services.thread_resolver import ThreadResolver

ACCOUNT = "acct-1"
AT = datetime(2024, 6, 12, 12, 0)


def message(external_id="m1", phone="(555) 123-4567", thread_id=None, text="sink is clogged", **kwargs):
    return SourceMessage(
        external_id=external_id,
        thread_id=thread_id,
        phone=phone,
        direction=kwargs.pop("direction", "inbound"),
        text=text,
        timestamp=kwargs.pop("timestamp", AT),
        **kwargs
    )


# ============================================================================
# DUPLICATE GUARD
# ============================================================================

class TestDuplicateGuard:

    @pytest.mark.asyncio
    async def test_claim_and_release(self, fake_store):
        guard = DuplicateGuard()

        async with fake_store.transaction() as tx:
            assert await guard.claim(tx, "m1", ACCOUNT) is True
            assert guard.is_claimed("m1", ACCOUNT)
            assert await guard.claim(tx, "m1", ACCOUNT) is False

            await guard.release("m1", ACCOUNT, imported=False)
            assert not guard.is_claimed("m1", ACCOUNT)
            assert await guard.claim(tx, "m1", ACCOUNT) is True

    @pytest.mark.asyncio
    async def test_existing_mapping_is_duplicate(self, fake_store):
        guard = DuplicateGuard()

        async with fake_store.transaction() as tx:
            await tx.add_external_mapping(None, "m1", None, ACCOUNT, AT)

        async with fake_store.transaction() as tx:
            assert await guard.claim(tx, "m1", ACCOUNT) is False
            assert await guard.claim(tx, "m1", "other-account") is True

        assert not guard.is_claimed("m1", ACCOUNT)

    @pytest.mark.asyncio
    async def test_redis_claim_rejected(self, fake_store, mock_redis):
        mock_redis.set = AsyncMock(return_value=None)
        guard = DuplicateGuard(mock_redis, claim_ttl=120)

        async with fake_store.transaction() as tx:
            assert await guard.claim(tx, "m1", ACCOUNT) is False

        mock_redis.set.assert_awaited_once_with(f"dedup:{ACCOUNT}:m1", "1", nx=True, ex=120)
        assert not guard.is_claimed("m1", ACCOUNT)

    @pytest.mark.asyncio
    async def test_redis_error_fails_open(self, fake_store, mock_redis):
        mock_redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        guard = DuplicateGuard(mock_redis)

        async with fake_store.transaction() as tx:
            assert await guard.claim(tx, "m1", ACCOUNT) is True

    @pytest.mark.asyncio
    async def test_release_unimported_drops_redis_key(self, fake_store, mock_redis):
        guard = DuplicateGuard(mock_redis)

        async with fake_store.transaction() as tx:
            await guard.claim(tx, "m1", ACCOUNT)
            await guard.claim(tx, "m2", ACCOUNT)

        await guard.release("m1", ACCOUNT, imported=True)
        await guard.release("m2", ACCOUNT, imported=False)

        mock_redis.delete.assert_awaited_once_with(f"dedup:{ACCOUNT}:m2")


# ============================================================================
# CUSTOMER MATCHER
# ============================================================================

class TestCustomerMatcher:

    @pytest.mark.asyncio
    async def test_exact_match(self, fake_store):
        customer = fake_store.seed_customer(first_name="Ann", last_name="Lee", phone="+15551234567")

        async with fake_store.transaction() as tx:
            result = await CustomerMatcher().match(tx, "(555) 123-4567")

        assert result.customer is customer
        assert result.match_type == "matched"
        assert result.matched_on == "phone"

    @pytest.mark.asyncio
    async def test_alternate_phone(self, fake_store):
        customer = fake_store.seed_customer(first_name="Ann", last_name="Lee", phone="+15550000000",
                                            alternate_phone="+15551234567")

        async with fake_store.transaction() as tx:
            result = await CustomerMatcher().match(tx, "555-123-4567")

        assert result.customer is customer
        assert result.matched_on == "alternate_phone"

    @pytest.mark.asyncio
    async def test_fuzzy_legacy_format(self, fake_store):
        customer = fake_store.seed_customer(first_name="Ann", last_name="Lee", phone="555-123-4567")

        async with fake_store.transaction() as tx:
            strict = await CustomerMatcher().match(tx, "+15551234567", fuzzy=False)
            fuzzy = await CustomerMatcher().match(tx, "+15551234567")

        assert strict.customer is None
        assert strict.match_type == "none"
        assert fuzzy.customer is customer
        assert fuzzy.matched_on == "variation"

    @pytest.mark.asyncio
    async def test_inactive_customer_ignored(self, fake_store):
        fake_store.seed_customer(first_name="Old", last_name="Row", phone="+15551234567", is_active=False)

        async with fake_store.transaction() as tx:
            result = await CustomerMatcher().match(tx, "+15551234567")

        assert result.customer is None

    @pytest.mark.asyncio
    async def test_creates_placeholder(self, fake_store):
        async with fake_store.transaction() as tx:
            result = await CustomerMatcher().match(tx, "(555) 999-0000", create_if_missing=True)

        assert result.match_type == "created"
        assert result.customer.first_name == "Unknown"
        assert result.customer.last_name == "Customer"
        assert result.customer.phone == "+15559990000"
        assert fake_store.tables["customers"] == [result.customer]


# ============================================================================
# THREAD RESOLVER
# ============================================================================

class TestThreadResolver:

    @pytest.fixture
    def resolver(self, rules):
        return ThreadResolver(CustomerMatcher(), rules.classifier)

    @pytest.mark.asyncio
    async def test_new_conversation(self, resolver, fake_store):
        async with fake_store.transaction() as tx:
            resolution = await resolver.resolve(tx, message(thread_id="t-1"), ACCOUNT, "google_voice")

        conversation = resolution.conversation
        assert resolution.conversation_created is True
        assert resolution.customer_match_type == "created"
        assert resolution.normalized_phone == "+15551234567"
        assert conversation.phone_number == "+15551234567"
        assert conversation.original_phone_number == "(555) 123-4567"
        assert conversation.external_thread_id == "t-1"
        assert conversation.customer_id == resolution.customer.id
        assert conversation.priority == "medium"
        assert conversation.is_emergency is False
        assert conversation.channel == "sms"

    @pytest.mark.asyncio
    async def test_priority_from_keywords(self, resolver, fake_store):
        async with fake_store.transaction() as tx:
            urgent = await resolver.resolve(tx, message(text="I smell gas!"), ACCOUNT, "google_voice")
            voice = await resolver.resolve(
                tx, message(phone="5550001111", text="no water since 6am", message_type="voicemail"),
                ACCOUNT, "google_voice",
            )

        assert urgent.conversation.priority == "emergency"
        assert urgent.conversation.is_emergency is True
        assert voice.conversation.priority == "high"
        assert voice.conversation.channel == "voice"

    @pytest.mark.asyncio
    async def test_thread_lookup_wins(self, resolver, fake_store):
        async with fake_store.transaction() as tx:
            first = await resolver.resolve(tx, message(thread_id="t-1"), ACCOUNT, "google_voice")

        async with fake_store.transaction() as tx:
            again = await resolver.resolve(
                tx, message(external_id="m2", thread_id="t-1", timestamp=AT + timedelta(hours=1)),
                ACCOUNT, "google_voice",
            )

        assert again.conversation is first.conversation
        assert again.conversation_created is False
        assert again.customer_match_type == "none"
        assert again.conversation.last_message_at == AT + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_reuses_most_recent_active_conversation(self, resolver, fake_store):
        customer = fake_store.seed_customer(first_name="Ann", last_name="Lee", phone="+15551234567")

        async with fake_store.transaction() as tx:
            older = await tx.create_conversation(
                customer_id=customer.id, phone_number="+15551234567", platform="google_voice",
                status="active", last_message_at=AT - timedelta(days=3),
            )
            newer = await tx.create_conversation(
                customer_id=customer.id, phone_number="+15551234567", platform="google_voice",
                status="active", last_message_at=AT - timedelta(days=1),
            )

        async with fake_store.transaction() as tx:
            resolution = await resolver.resolve(tx, message(), ACCOUNT, "google_voice")

        assert resolution.conversation is newer
        assert resolution.conversation is not older
        assert resolution.customer_match_type == "matched"
        assert resolution.conversation_created is False

    @pytest.mark.asyncio
    async def test_threading_disabled(self, resolver, fake_store):
        async with fake_store.transaction() as tx:
            resolution = await resolver.resolve(
                tx, message(thread_id="t-1"), ACCOUNT, "google_voice", use_threading=False,
            )

        assert resolution.conversation.external_thread_id is None

    @pytest.mark.asyncio
    async def test_matching_disabled(self, resolver, fake_store):
        async with fake_store.transaction() as tx:
            resolution = await resolver.resolve(
                tx, message(), ACCOUNT, "google_voice", match_customers=False,
            )

        assert resolution.customer is None
        assert resolution.conversation.customer_id is None
        assert fake_store.tables["customers"] == []

    @pytest.mark.asyncio
    async def test_phone_mapping_upserted(self, resolver, fake_store):
        for external_id in ("m1", "m2"):
            async with fake_store.transaction() as tx:
                await resolver.resolve(tx, message(external_id=external_id), ACCOUNT, "google_voice")

        row = fake_store.phone_mappings[("+15551234567", ACCOUNT)]
        assert row["message_count"] == 2
        assert row["customer_id"] is not None
