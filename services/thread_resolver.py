"""
Identity & Thread Resolver
Version: 1.0

Maps one external message to a customer and a conversation.

Lookup order:
1. Conversation already bound to the external thread id
2. Customer match on the normalized phone (fuzzy, creates a placeholder)
3. Most recently active conversation for (customer, phone, platform)
4. New conversation, priority taken from the classifier keyword table

Every resolution also upserts the PhoneMapping row.
DEPENDS ON: phone.py, customer_matcher.py, emergency_classifier.py
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import Conversation, Customer
from services.customer_matcher import CustomerMatcher
from services.emergency_classifier import message_priority
from services.message_source import SourceMessage
from services.phone import normalize_phone
from services.rules import ClassifierRules

logger = logging.getLogger(__name__)

VOICE_TYPES = ("voice", "call", "voicemail")


@dataclass
class Resolution:
    conversation: Conversation
    normalized_phone: str
    customer: Optional[Customer] = None
    customer_match_type: str = "none"  # none / matched / created
    conversation_created: bool = False


class ThreadResolver:
    """Identity and thread resolution inside an open transaction."""

    def __init__(self, matcher: CustomerMatcher, classifier_rules: ClassifierRules):
        self.matcher = matcher
        self.classifier_rules = classifier_rules

    async def resolve(
        self,
        tx,
        message: SourceMessage,
        account_token: str,
        platform: str,
        match_customers: bool = True,
        use_threading: bool = True
    ) -> Resolution:
        """
        Resolve a message to its conversation.

        Args:
            tx: Open StoreTransaction
            message: Validated source message
            account_token: Account scope for the phone mapping
            platform: Provider platform name
            match_customers: Run the customer matcher
            use_threading: Honour external thread ids

        Returns:
            Resolution
        """
        normalized = normalize_phone(message.phone)
        customer: Optional[Customer] = None
        match_type = "none"
        conversation: Optional[Conversation] = None

        if use_threading and message.thread_id:
            conversation = await tx.find_conversation_by_thread(message.thread_id, platform)

        if conversation is None or conversation.customer_id is None:
            if match_customers:
                result = await self.matcher.match(tx, message.phone, fuzzy=True, create_if_missing=True)
                customer = result.customer
                match_type = result.match_type

        if conversation is not None and conversation.customer_id is None and customer is not None:
            conversation.customer_id = customer.id

        created = False
        if conversation is None:
            customer_id = customer.id if customer is not None else None
            conversation = await tx.find_active_conversation(customer_id, normalized, platform)

        if conversation is None:
            priority = message_priority(self.classifier_rules, message.text)
            conversation = await tx.create_conversation(
                customer_id=customer.id if customer is not None else None,
                phone_number=normalized,
                original_phone_number=message.phone,
                external_thread_id=message.thread_id if use_threading else None,
                platform=platform,
                channel="voice" if message.message_type in VOICE_TYPES else "sms",
                status="active",
                priority=priority,
                is_emergency=priority == "emergency",
                last_message_at=message.timestamp,
            )
            created = True
            logger.info(f"Created conversation {conversation.id} for {normalized} (priority={priority})")
        else:
            if conversation.last_message_at is None or message.timestamp > conversation.last_message_at:
                conversation.last_message_at = message.timestamp
            if use_threading and message.thread_id and not conversation.external_thread_id:
                conversation.external_thread_id = message.thread_id

        await tx.upsert_phone_mapping(
            account_token=account_token,
            phone_number=message.phone,
            normalized_phone=normalized,
            customer_id=conversation.customer_id,
            contact_at=message.timestamp,
        )

        return Resolution(
            conversation=conversation,
            normalized_phone=normalized,
            customer=customer,
            customer_match_type=match_type,
            conversation_created=created,
        )
