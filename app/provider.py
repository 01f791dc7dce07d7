"""
Provider Client for the WhatsApp Cloud API.

Performs authenticated calls and classifies failures:
- retryable: network errors, timeouts, HTTP 5xx, HTTP 429
- fatal: any other HTTP 4xx, or a response without the expected fields

Retryable failures are retried up to ``max_retries`` times with a delay of
``base_delay * multiplier ** attempt`` (attempt starting at 0). The client
holds no message state and performs no deduplication.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from app.config import Settings
from app.exceptions import ProviderError
from app.metrics import record_provider_attempt
from app.status import MessageKind
from app.utils import normalize_address

logger = logging.getLogger(__name__)

MESSAGING_PRODUCT = "whatsapp"
PHONE_NUMBER_FIELDS = "verified_name,display_phone_number,quality_rating"


@dataclass
class ProviderReceipt:
    """Provider acknowledgment of an accepted outbound message."""
    provider_message_id: str
    recipient: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusSnapshot:
    provider_message_id: str
    status: Optional[str]
    timestamp: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PhoneNumberInfo:
    verified_name: Optional[str]
    display_phone_number: Optional[str]
    quality_rating: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Ack:
    success: bool
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryAttempt:
    """One provider call, used for retry decisions and logging only."""
    endpoint: str
    attempt: int
    outcome: str
    latency_ms: float
    status_code: Optional[int] = None


def is_retryable_status(status_code: int) -> bool:
    """Server errors and rate limiting are transient."""
    return status_code >= 500 or status_code == 429


def _provider_error_text(response: httpx.Response) -> str:
    """Extract the provider's ``error.message`` text, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return f"HTTP {response.status_code}"


class ProviderClient:
    """
    Async client for the provider's message API.

    Args:
        api_url: Provider base URL, e.g. https://graph.facebook.com/v18.0
        phone_number_id: Business phone number id used in the messages endpoint
        access_token: Bearer token
        default_country_code: Prefix applied to addresses that lack it
        max_retries: Retries after the first attempt for retryable failures
        base_delay: Backoff base delay in seconds
        multiplier: Backoff multiplier
        timeout: Per-call timeout in seconds
        http_client: Optional preconfigured httpx.AsyncClient
        sleep: Coroutine used for backoff delays
    """

    def __init__(
        self,
        api_url: str,
        phone_number_id: Optional[str],
        access_token: Optional[str],
        default_country_code: str = "91",
        max_retries: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.default_country_code = default_country_code
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.timeout = timeout
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._sleep = sleep

        missing = [
            name
            for name, value in (("phone_number_id", phone_number_id), ("access_token", access_token))
            if not value
        ]
        if missing:
            logger.warning(f"Missing provider config: {', '.join(missing)}")

    @classmethod
    def from_settings(cls, config: Settings, **kwargs) -> "ProviderClient":
        return cls(
            api_url=config.PROVIDER_API_URL,
            phone_number_id=config.PROVIDER_PHONE_NUMBER_ID,
            access_token=config.PROVIDER_ACCESS_TOKEN,
            default_country_code=config.DEFAULT_COUNTRY_CODE,
            max_retries=config.PROVIDER_MAX_RETRIES,
            base_delay=config.PROVIDER_RETRY_BASE_DELAY,
            multiplier=config.PROVIDER_RETRY_MULTIPLIER,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    @property
    def messages_endpoint(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (self.multiplier ** attempt)

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- Operations ---

    async def send(
        self,
        target_address: str,
        payload: str,
        kind: str = MessageKind.TEXT.value,
    ) -> ProviderReceipt:
        """
        Dispatch a message.

        The payload is opaque to this client and always travels as a text
        body; ``kind`` only labels the attempt in logs.

        Raises:
            ProviderError: on a fatal failure or when retries are exhausted
        """
        logger.info(f"Dispatching {kind} message to provider")
        return await self._send_message("send", target_address, {
            "type": MessageKind.TEXT.value,
            "text": {"body": payload, "preview_url": False},
        })

    async def send_template(
        self,
        target_address: str,
        template_name: str,
        language_code: str = "en",
        parameters: Optional[List[Dict[str, Any]]] = None,
    ) -> ProviderReceipt:
        """Send a pre-approved template; ``parameters`` fill its body component."""
        template: Dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if parameters:
            template["components"] = [{"type": "body", "parameters": list(parameters)}]
        return await self._send_message("send_template", target_address, {
            "type": "template",
            "template": template,
        })

    async def send_interactive(self, target_address: str, interactive: Dict[str, Any]) -> ProviderReceipt:
        return await self._send_message("send_interactive", target_address, {
            "type": "interactive",
            "interactive": interactive,
        })

    async def _send_message(self, operation: str, target_address: str, content: Dict[str, Any]) -> ProviderReceipt:
        try:
            recipient = normalize_address(target_address, self.default_country_code)
        except ValueError as e:
            raise ProviderError(f"Invalid recipient address: {e}") from e

        body = {"messaging_product": MESSAGING_PRODUCT, "to": recipient, **content}
        data = await self._request(operation, "POST", self.messages_endpoint, json=body)

        messages = data.get("messages") or []
        provider_message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not provider_message_id:
            raise ProviderError("Provider API error: response did not include a message id")
        return ProviderReceipt(provider_message_id=provider_message_id, recipient=recipient, raw=data)

    async def get_status(self, provider_message_id: str) -> StatusSnapshot:
        data = await self._request(
            "get_status",
            "GET",
            f"{self.api_url}/{provider_message_id}",
            params={"fields": "status,timestamp"},
        )
        return StatusSnapshot(
            provider_message_id=provider_message_id,
            status=data.get("status"),
            timestamp=data.get("timestamp"),
            raw=data,
        )

    async def get_phone_number_info(self) -> PhoneNumberInfo:
        """Details of the business phone number; a cheap check that the credentials work."""
        data = await self._request(
            "get_phone_number_info",
            "GET",
            f"{self.api_url}/{self.phone_number_id}",
            params={"fields": PHONE_NUMBER_FIELDS},
        )
        return PhoneNumberInfo(
            verified_name=data.get("verified_name"),
            display_phone_number=data.get("display_phone_number"),
            quality_rating=data.get("quality_rating"),
            raw=data,
        )

    async def mark_read(self, provider_message_id: str) -> Ack:
        body = {
            "messaging_product": MESSAGING_PRODUCT,
            "status": "read",
            "message_id": provider_message_id,
        }
        data = await self._request("mark_read", "POST", self.messages_endpoint, json=body)
        return Ack(success=bool(data.get("success", True)), raw=data)

    # --- Transport ---

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one logical call, retrying transient failures.

        Returns:
            Decoded JSON body of the successful response
        """
        if not self.configured:
            raise ProviderError("Provider API error: provider credentials are not configured")

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        for attempt in range(self.max_retries + 1):
            started = time.monotonic()
            try:
                response = await self._http.request(
                    method, url, headers=headers, json=json, params=params, timeout=self.timeout
                )
            except httpx.RequestError as e:
                # Network failures and timeouts
                error = ProviderError(f"Provider API error: {e.__class__.__name__}: {e}", retryable=True)
                status_code = None
            else:
                status_code = response.status_code
                if response.is_success:
                    self._record(operation, url, attempt, "success", started, status_code)
                    try:
                        data = response.json()
                    except ValueError:
                        data = {}
                    return data if isinstance(data, dict) else {}
                error = ProviderError(
                    f"Provider API error: {_provider_error_text(response)}",
                    status_code=status_code,
                    retryable=is_retryable_status(status_code),
                )

            if not error.retryable:
                self._record(operation, url, attempt, "fatal", started, status_code)
                raise error

            self._record(operation, url, attempt, "retryable", started, status_code)
            if attempt >= self.max_retries:
                logger.error(f"Provider {operation} failed after {attempt + 1} attempts: {error}")
                raise ProviderError(str(error), status_code=status_code, retryable=False)

            delay = self.backoff_delay(attempt)
            logger.warning(
                f"Provider {operation} attempt {attempt + 1} failed, retrying in {delay:.2f}s: {error}"
            )
            await self._sleep(delay)

        # max_retries < 0 leaves the loop without a single attempt
        raise ProviderError(f"Provider API error: no attempts allowed for {operation}")

    def _record(
        self,
        operation: str,
        url: str,
        attempt: int,
        outcome: str,
        started: float,
        status_code: Optional[int],
    ) -> DeliveryAttempt:
        latency = time.monotonic() - started
        delivery_attempt = DeliveryAttempt(
            endpoint=url.replace(self.api_url, "", 1),
            attempt=attempt,
            outcome=outcome,
            latency_ms=round(latency * 1000, 2),
            status_code=status_code,
        )
        record_provider_attempt(operation, outcome, latency)
        logger.debug(f"Provider attempt: {delivery_attempt}")
        return delivery_attempt
