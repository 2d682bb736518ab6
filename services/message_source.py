"""
Message Source
Version: 1.0

Paginated access to an external messaging provider.

- MessageSource: the interface the sync orchestrator consumes
- HttpMessageSource: generic JSON endpoint over httpx with retry/backoff
- ProtectedMessageSource: any source behind the circuit breaker

Pages carry raw payloads; SourceMessage.from_payload() validates one
message at a time so a malformed entry fails alone.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from services.circuit_breaker import CircuitBreaker
from services.context_analyzers import as_naive_utc
from services.metrics import SOURCE_PAGES_TOTAL

logger = logging.getLogger(__name__)

DIRECTIONS = ("inbound", "outbound")


class MessageSourceError(Exception):
    """Fetching a page failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MessageValidationError(ValueError):
    """A source message is missing required fields or has bad values."""
    pass


@dataclass
class SourceMessage:
    external_id: str
    thread_id: Optional[str]
    phone: str
    direction: str
    text: str
    timestamp: datetime
    message_type: str = "sms"
    attachments: List[Any] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SourceMessage":
        """
        Validate one raw provider message.

        Raises:
            MessageValidationError: If required fields are missing or invalid
        """
        if not isinstance(payload, dict):
            raise MessageValidationError(f"Message payload must be an object, got {type(payload).__name__}")

        external_id = payload.get("id") or payload.get("external_id")
        if not external_id:
            raise MessageValidationError("Message has no external id")

        phone = payload.get("phone") or payload.get("phone_number")
        if not phone:
            raise MessageValidationError(f"Message {external_id} has no phone number")

        direction = str(payload.get("direction") or "inbound").lower()
        if direction not in DIRECTIONS:
            raise MessageValidationError(f"Message {external_id} has invalid direction '{direction}'")

        text = payload.get("text")
        if text is None:
            text = payload.get("body", "")
        if not isinstance(text, str):
            raise MessageValidationError(f"Message {external_id} text is not a string")

        attachments = payload.get("attachments") or []
        if not isinstance(attachments, list):
            raise MessageValidationError(f"Message {external_id} attachments must be a list")

        return cls(
            external_id=str(external_id),
            thread_id=payload.get("thread_id") or payload.get("threadId"),
            phone=str(phone),
            direction=direction,
            text=text,
            timestamp=_parse_timestamp(payload.get("timestamp"), external_id),
            message_type=str(payload.get("type") or "sms").lower(),
            attachments=attachments,
        )


def _parse_timestamp(value: Any, external_id: Any) -> datetime:
    """ISO string or epoch seconds -> naive UTC datetime (now when absent)."""
    if value is None or value == "":
        return datetime.utcnow()

    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError) as e:
        raise MessageValidationError(f"Message {external_id} has invalid timestamp {value!r}: {e}")

    return as_naive_utc(parsed)


@dataclass
class MessagePage:
    messages: List[Dict[str, Any]]
    next_page_token: Optional[str] = None


class MessageSource(ABC):
    """Paginated provider client."""

    @abstractmethod
    async def fetch_messages(
        self,
        page_size: int,
        page_token: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        phone_filter: Optional[str] = None,
        unread_only: bool = False
    ) -> MessagePage:
        """Fetch one page of raw messages."""

    async def close(self) -> None:
        return None


class HttpMessageSource(MessageSource):
    """
    Generic JSON message endpoint.

    GET {base_url}/messages?account=..&page_size=..&page_token=..
    -> {"messages": [...], "next_page_token": "..."}

    Features:
    - Bearer API key
    - Retry with exponential backoff on 408/429/5xx and network errors
    - Connection pooling
    """

    DEFAULT_MAX_RETRIES = 2
    DEFAULT_TIMEOUT = 30.0
    RETRY_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        account_token: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Args:
            base_url: Provider base URL
            account_token: Account the pages belong to
            api_key: Bearer token (optional)
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt
            client: Pre-built httpx client (tests inject a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.account_token = account_token
        self.api_key = api_key
        self.max_retries = max_retries
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            follow_redirects=True
        )

    async def fetch_messages(
        self,
        page_size: int,
        page_token: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        phone_filter: Optional[str] = None,
        unread_only: bool = False
    ) -> MessagePage:
        params: Dict[str, Any] = {"account": self.account_token, "page_size": page_size}
        if page_token:
            params["page_token"] = page_token
        if start_date:
            params["start_date"] = start_date.isoformat()
        if end_date:
            params["end_date"] = end_date.isoformat()
        if phone_filter:
            params["phone"] = phone_filter
        if unread_only:
            params["unread_only"] = "true"

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.get(f"{self.base_url}/messages", params=params, headers=headers)

                if response.status_code in self.RETRY_STATUS_CODES and attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"Retryable error {response.status_code}, delay={delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

                if response.status_code >= 400:
                    SOURCE_PAGES_TOTAL.labels(status="error").inc()
                    raise MessageSourceError(
                        f"Message source returned HTTP {response.status_code}",
                        status_code=response.status_code
                    )

                data = response.json()
                SOURCE_PAGES_TOTAL.labels(status="ok").inc()
                return MessagePage(
                    messages=list(data.get("messages") or []),
                    next_page_token=data.get("next_page_token") or data.get("nextPageToken"),
                )

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
            except httpx.RequestError as e:
                last_error = f"Network error: {e}"
            except ValueError as e:
                last_error = f"Invalid JSON: {e}"

            if attempt < self.max_retries:
                await asyncio.sleep(self._calculate_backoff(attempt))

        SOURCE_PAGES_TOTAL.labels(status="error").inc()
        logger.error(f"All retries exhausted: {last_error}")
        raise MessageSourceError(last_error or "Request failed")

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff."""
        base = 2 ** attempt
        jitter = random.uniform(0, 0.5)
        return min(base + jitter, 30)

    async def close(self) -> None:
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            logger.info("HttpMessageSource closed")


class ProtectedMessageSource(MessageSource):
    """Routes every fetch through a circuit breaker."""

    def __init__(self, inner: MessageSource, breaker: CircuitBreaker, circuit_key: str = "message_source"):
        self.inner = inner
        self.breaker = breaker
        self.circuit_key = circuit_key

    async def fetch_messages(self, page_size: int, page_token: Optional[str] = None, **kwargs) -> MessagePage:
        return await self.breaker.call(
            self.circuit_key,
            self.inner.fetch_messages,
            page_size,
            page_token,
            **kwargs
        )

    async def close(self) -> None:
        await self.inner.close()
