"""
M-Pesa Client - Daraja OAuth token handling and STK push requests.

One client instance is owned by the application lifespan and injected
into the services that need it. The access token is cached on that
instance, never at module level.
"""

import re
import time
import base64
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings
from app.errors import AuthError, ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Refresh this many seconds before the provider says the token expires
TOKEN_EXPIRY_MARGIN = 60

SUBSCRIBER_NUMBER_PATTERN = re.compile(r"^254[71][0-9]{8}$")


def format_phone_number(phone: str) -> str:
    """Convert a Kenyan phone number to the 254XXXXXXXXX form M-Pesa expects."""
    digits = re.sub(r"\D", "", phone or "")

    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif digits.startswith("7") or digits.startswith("1"):
        digits = "254" + digits
    elif not digits.startswith("254"):
        digits = "254" + digits

    return digits


def validate_phone_number(phone: str) -> bool:
    """Check a phone number against the accepted subscriber-number format."""
    return bool(SUBSCRIBER_NUMBER_PATTERN.match(format_phone_number(phone)))


@dataclass
class PushAcceptance:
    """Provider response to an accepted STK push."""

    correlation_id: str
    merchant_request_id: Optional[str]
    response_code: str
    response_description: Optional[str] = None
    customer_message: Optional[str] = None


class _TokenTransportError(Exception):
    """Retryable failure while fetching a token."""


class MpesaClient:
    """Async client for the Daraja API."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.base_url = settings.mpesa_api_url
        self.consumer_key = settings.mpesa_consumer_key
        self.consumer_secret = settings.mpesa_consumer_secret
        self.short_code = settings.mpesa_business_short_code
        self.passkey = settings.mpesa_passkey
        self.callback_url = settings.mpesa_callback_url
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.mpesa_timeout_seconds,
        )
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._http.aclose()

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def get_access_token(self) -> str:
        """
        Return a cached bearer token, refreshing it when expired.

        Concurrent callers share one refresh. Raises AuthError when the
        credentials are rejected or the provider stays unreachable.
        """
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.settings.mpesa_token_retry_attempts),
                    wait=wait_exponential(multiplier=0.5, max=5),
                    retry=retry_if_exception_type(_TokenTransportError),
                    reraise=False,
                ):
                    with attempt:
                        token, expires_in = await self._fetch_token()
            except RetryError as e:
                logger.error(f"M-Pesa token fetch failed after retries: {e.last_attempt.exception()}")
                raise AuthError("Failed to authenticate with M-Pesa") from e

            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            logger.info("M-Pesa access token refreshed")
            return token

    async def _fetch_token(self) -> tuple:
        credentials = f"{self.consumer_key}:{self.consumer_secret}".encode()
        headers = {"Authorization": f"Basic {base64.b64encode(credentials).decode()}"}

        try:
            response = await self._http.get(
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise _TokenTransportError(str(e)) from e

        if response.status_code in (400, 401, 403):
            logger.error(f"M-Pesa rejected credentials: {response.status_code} {response.text}")
            raise AuthError("M-Pesa rejected the client credentials")
        if response.status_code >= 500:
            raise _TokenTransportError(f"HTTP {response.status_code}")
        if response.status_code != 200:
            raise AuthError(f"Unexpected token response: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise AuthError("Token response is not JSON")

        token = data.get("access_token")
        if not token:
            raise AuthError("Token response has no access_token")

        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        return token, expires_in

    def _timestamp(self) -> str:
        return datetime.now(ZoneInfo(self.settings.default_timezone)).strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.short_code}{self.passkey}{timestamp}".encode()
        return base64.b64encode(raw).decode()

    async def push_payment_request(
        self,
        payer_reference: str,
        amount: Decimal,
        reference: str,
        description: str,
    ) -> PushAcceptance:
        """
        Ask the provider to prompt the payer's phone.

        Never retried here: a blind retry can put a second prompt on the
        payer's phone.
        """
        token = await self.get_access_token()
        timestamp = self._timestamp()

        payload = {
            "BusinessShortCode": self.short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": payer_reference,
            "PartyB": self.short_code,
            "PhoneNumber": payer_reference,
            "CallBackURL": self.callback_url,
            "AccountReference": reference[:12],
            "TransactionDesc": description[:13],
        }
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._http.post(STK_PUSH_PATH, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"M-Pesa STK push timeout for {reference}")
            raise ProviderUnavailable("M-Pesa request timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa STK push transport error for {reference}: {e}")
            raise ProviderUnavailable("M-Pesa is unreachable") from e

        if response.status_code == 401:
            self.invalidate_token()
            raise ProviderUnavailable("M-Pesa refused the access token")
        if response.status_code >= 500:
            raise ProviderUnavailable(f"M-Pesa HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"M-Pesa returned a non-JSON response (HTTP {response.status_code})") from e

        if "errorCode" in data:
            message = data.get("errorMessage") or "STK push rejected"
            logger.warning(f"M-Pesa rejected STK push for {reference}: {data.get('errorCode')} {message}")
            raise ProviderRejected(message, code=str(data.get("errorCode")))

        response_code = str(data.get("ResponseCode", ""))
        correlation_id = data.get("CheckoutRequestID")
        if response_code != "0" or not correlation_id:
            message = data.get("ResponseDescription") or "STK push rejected"
            logger.warning(f"M-Pesa rejected STK push for {reference}: {response_code} {message}")
            raise ProviderRejected(message, code=response_code or None)

        logger.info(f"STK push accepted for {reference}: {correlation_id}")
        return PushAcceptance(
            correlation_id=correlation_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=response_code,
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )
