"""
Customer Matcher
Version: 1.0

Customer identity lookup by phone number.
Order: exact phone -> alternate phone -> fuzzy format variations -> create.
DEPENDS ON: phone.py, store.py (via the open transaction)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import Customer
from services.phone import normalize_phone, phone_variations

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    customer: Optional[Customer]
    match_type: str  # none / matched / created
    matched_on: Optional[str] = None  # phone / alternate_phone / variation


class CustomerMatcher:
    """
    Customer identity management.

    Handles:
    - Lookup by canonical phone, then alternate phone
    - Fuzzy lookup across legacy storage formats
    - Creation of an "Unknown Customer" placeholder
    """

    async def match(
        self,
        tx,
        phone: str,
        fuzzy: bool = True,
        create_if_missing: bool = False
    ) -> MatchResult:
        """
        Find (or create) the customer behind a phone number.

        Args:
            tx: Open StoreTransaction
            phone: Raw or canonical phone
            fuzzy: Also try formatting variations
            create_if_missing: Create a placeholder customer when nothing matches

        Returns:
            MatchResult
        """
        canonical = normalize_phone(phone)

        customer = await tx.find_customer_by_phone([canonical])
        if customer:
            return MatchResult(customer=customer, match_type="matched", matched_on="phone")

        customer = await tx.find_customer_by_alternate_phone([canonical])
        if customer:
            return MatchResult(customer=customer, match_type="matched", matched_on="alternate_phone")

        if fuzzy:
            variations = phone_variations(phone)
            logger.debug(f"Attempting customer lookup with phone variations: {variations}")
            customer = await tx.find_customer_by_any_phone(variations)
            if customer:
                logger.info(f"Matched customer {customer.id} for {canonical} via stored format '{customer.phone}'")
                return MatchResult(customer=customer, match_type="matched", matched_on="variation")

        if not create_if_missing:
            return MatchResult(customer=None, match_type="none")

        customer = await tx.create_customer(
            first_name="Unknown",
            last_name="Customer",
            phone=canonical,
            is_active=True,
            notes=f"Auto-created from inbound message on {canonical}",
        )
        logger.info(f"Created placeholder customer {customer.id} for {canonical}")
        return MatchResult(customer=customer, match_type="created")
