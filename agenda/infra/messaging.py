"""
Messaging Provider Adapters

Outbound WhatsApp delivery through the Twilio REST API and inbound webhook
signature verification. Both sit behind small protocols so the ingress can
run against any provider (or a test double).
"""

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

import httpx
from twilio.request_validator import RequestValidator

from agenda.config import settings
from agenda.core.errors import ProviderError
from agenda.utils.phone import mask_address, normalize_address

logger = logging.getLogger(__name__)

# Twilio rejects WhatsApp bodies longer than this
MAX_BODY_LENGTH = 1600


class MessagingAdapter(Protocol):
    async def send_message(self, from_address: str, to_address: str, body: str) -> None: ...


@dataclass
class SignedRequest:
    """What a verifier needs from an inbound HTTP request."""

    url: str
    headers: Mapping[str, str]
    body: bytes = b""
    params: dict[str, str] = field(default_factory=dict)


class SignatureVerifier(Protocol):
    def verify(self, request: SignedRequest) -> bool: ...


class AllowAllVerifier:
    """Accepts everything. Local development only."""

    def verify(self, request: SignedRequest) -> bool:
        return True


class TwilioSignatureVerifier:
    """
    Validates ``X-Twilio-Signature`` with the Twilio SDK request validator.

    Twilio signs the public URL it posted to, so behind a proxy pass
    ``public_url`` instead of relying on the URL the app sees.
    """

    HEADER = "x-twilio-signature"

    def __init__(self, auth_token: str, public_url: Optional[str] = None):
        self.auth_token = auth_token
        self.public_url = public_url
        self._validator = RequestValidator(auth_token)

    def verify(self, request: SignedRequest) -> bool:
        signature = _header(request.headers, self.HEADER)
        if not signature or not self.auth_token:
            return False
        url = self.public_url or request.url
        return self._validator.validate(url, request.params, signature)


class HmacSha256Verifier:
    """
    Validates ``X-Signature: sha256=<hex>`` over the raw body.

    Used for providers posting the generic JSON payload.
    """

    HEADER = "x-signature"

    def __init__(self, secret: str):
        self.secret = secret

    def verify(self, request: SignedRequest) -> bool:
        signature = _header(request.headers, self.HEADER)
        if not signature or not self.secret:
            return False
        expected = hmac.new(self.secret.encode(), request.body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.removeprefix("sha256="), expected)


class HeaderRoutingVerifier:
    """Picks the verifier whose signature header is present on the request."""

    def __init__(self, *verifiers):
        self.verifiers = verifiers

    def verify(self, request: SignedRequest) -> bool:
        for verifier in self.verifiers:
            if _header(request.headers, verifier.HEADER) is not None:
                return verifier.verify(request)
        return False


class TwilioMessagingAdapter:
    """
    Sends WhatsApp messages via Twilio's Messages API.

    Retries transport errors, 429 and 5xx responses with exponential backoff;
    other 4xx responses fail immediately.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.api_base = (api_base or settings.twilio_api_base).rstrip("/")
        self.timeout = timeout or settings.outbound_timeout
        self.max_retries = max_retries or settings.outbound_max_retries
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                auth=(self.account_sid, self.auth_token),
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_message(self, from_address: str, to_address: str, body: str) -> None:
        """
        Send a text reply, split into several messages when too long.

        Raises:
            ProviderError: Delivery failed after retries
        """
        for chunk in split_body(body):
            await self._send_chunk(from_address, to_address, chunk)

    async def _send_chunk(self, from_address: str, to_address: str, body: str) -> None:
        client = await self._get_client()
        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        data = {
            "From": f"whatsapp:+{normalize_address(from_address)}",
            "To": f"whatsapp:+{normalize_address(to_address)}",
            "Body": body,
        }

        last_error: Optional[str] = None
        for attempt in range(self.max_retries):
            try:
                response = await client.post(url, data=data)
            except httpx.TransportError as e:
                last_error = repr(e)
            else:
                if response.status_code < 300:
                    logger.info(f"Message sent to {mask_address(to_address)}")
                    return
                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                if response.status_code != 429 and response.status_code < 500:
                    break

            if attempt + 1 == self.max_retries:
                break
            wait_time = 0.5 * (2 ** attempt)
            logger.warning(
                f"Send to {mask_address(to_address)} failed ({last_error}), "
                f"retrying in {wait_time}s (attempt {attempt + 1})"
            )
            await asyncio.sleep(wait_time)

        raise ProviderError(
            f"Failed to send message to {mask_address(to_address)}: {last_error}"
        )


def split_body(body: str, limit: int = MAX_BODY_LENGTH) -> list[str]:
    """Split on paragraph, then line, then hard boundaries to stay under ``limit``."""
    text = body.strip()
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    while len(text) > limit:
        cut = text.rfind("\n\n", 0, limit)
        if cut <= 0:
            cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = text.rfind(" ", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut].rstrip())
        text = text[cut:].lstrip()
    if text:
        chunks.append(text)
    return chunks


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
