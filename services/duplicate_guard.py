"""
Duplicate Guard
Version: 1.0

At-most-once import per (external message id, account token).

Two layers:
- in-process claim set guarded by an asyncio.Lock, so two messages with the
  same key in concurrently running batches cannot both pass
- optional Redis SET NX EX claim for several workers/processes

The ExternalMessageMapping unique constraint is the final authority; the
claims only stop two writers racing towards it.
"""

import asyncio
import logging
from typing import Optional, Set, Tuple

logger = logging.getLogger(__name__)

CLAIM_PREFIX = "dedup"


class DuplicateGuard:
    """Claims external message ids for the duration of their import."""

    def __init__(self, redis_client=None, claim_ttl: int = 300):
        """
        Args:
            redis_client: Redis async client (optional)
            claim_ttl: Seconds before an unreleased Redis claim expires
        """
        self.redis = redis_client
        self.claim_ttl = claim_ttl
        self._claims: Set[Tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    async def claim(self, tx, external_id: str, account_token: str) -> bool:
        """
        Try to claim a message for import.

        Args:
            tx: Open StoreTransaction used for the mapping lookup
            external_id: Provider message id
            account_token: Account scope

        Returns:
            True if the caller may import the message, False if it was
            already imported or is being imported by someone else
        """
        key = (account_token, external_id)

        async with self._lock:
            if key in self._claims:
                logger.debug(f"In-flight duplicate: {external_id}")
                return False
            self._claims.add(key)

        try:
            if await tx.mapping_exists(external_id, account_token):
                await self._forget(key)
                return False

            if not await self._acquire_remote(key):
                await self._forget(key)
                return False

            return True

        except Exception:
            await self._forget(key)
            raise

    async def release(self, external_id: str, account_token: str, imported: bool = True) -> None:
        """
        Drop a claim once its batch has finished.

        A message that was not imported also loses its Redis claim so a
        later sync can retry it.
        """
        key = (account_token, external_id)
        await self._forget(key)

        if not imported and self.redis is not None:
            try:
                await self.redis.delete(self._remote_key(key))
            except Exception as e:
                logger.warning(f"Claim release error: {e}")

    def is_claimed(self, external_id: str, account_token: str) -> bool:
        return (account_token, external_id) in self._claims

    async def _acquire_remote(self, key: Tuple[str, str]) -> bool:
        if self.redis is None:
            return True

        remote_key = self._remote_key(key)
        try:
            acquired = await self.redis.set(remote_key, "1", nx=True, ex=self.claim_ttl)
            if not acquired:
                logger.warning(f"⚠️ DUPLICATE DETECTED: {remote_key}")
                return False
            return True
        except Exception as e:
            # Fail open: the unique mapping constraint still holds
            logger.error(f"Claim acquisition error: {e}")
            return True

    async def _forget(self, key: Tuple[str, str]) -> None:
        async with self._lock:
            self._claims.discard(key)

    @staticmethod
    def _remote_key(key: Tuple[str, str]) -> str:
        account_token, external_id = key
        return f"{CLAIM_PREFIX}:{account_token}:{external_id}"
