"""
M-PESA Daraja API client for STK push deposits.

This module provides MPesaGateway for OAuth token generation, STK push
password derivation and the push request itself. Every failure is mapped to
UpstreamAuthError (token step) or GatewayRejected (push step); the client
never retries, so the caller decides what a failed attempt means.
"""

import base64
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import pybreaker

from ..config import Settings
from ..exceptions import GatewayRejected, UpstreamAuthError
from ..utils.logging import get_logger, log_api_call, mask_msisdn

logger = get_logger(__name__)

# M-PESA API base URLs
SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

# Query parameter carrying the correlation record id on CallBackURL
CALLBACK_REF_PARAM = "ref"

# Seconds shaved off the advertised token lifetime before it is refreshed
TOKEN_EXPIRY_BUFFER = 60


class MPesaCircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Log M-PESA circuit breaker state changes."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"M-PESA circuit breaker state changed from {old_state.name} to {new_state.name}",
            extra={
                "old_state": old_state.name,
                "new_state": new_state.name,
                "fail_counter": cb.fail_counter,
            },
        )


def build_circuit_breaker(settings: Settings) -> pybreaker.CircuitBreaker:
    """
    Create the breaker guarding gateway transport calls.

    Opens after `mpesa_breaker_fail_max` consecutive transport failures and
    stays open for `mpesa_breaker_reset_timeout` seconds.
    """
    return pybreaker.CircuitBreaker(
        fail_max=settings.mpesa_breaker_fail_max,
        reset_timeout=settings.mpesa_breaker_reset_timeout,
        listeners=[MPesaCircuitBreakerListener()],
    )


@dataclass(frozen=True)
class StkPushAccepted:
    """Identifiers returned by the gateway for an accepted STK push."""

    merchant_request_id: str
    checkout_request_id: str
    response_description: str
    customer_message: str


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """
    Generate the STK push timestamp.

    Returns:
        Timestamp in YYYYMMDDHHmmss format (e.g. "20250112153045")
    """
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """
    Generate the STK push password.

    Password is the base64 encoding of shortcode + passkey + timestamp.

    Args:
        shortcode: Business shortcode
        passkey: Lipa na M-PESA Online passkey
        timestamp: Timestamp in YYYYMMDDHHmmss format

    Returns:
        Base64 encoded password
    """
    raw_password = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw_password.encode()).decode()


def _gateway_message(response: httpx.Response) -> tuple[Optional[str], str]:
    """Pull (code, message) out of a Daraja error body, falling back to the status."""
    try:
        data = response.json()
    except ValueError:
        return None, f"Gateway returned HTTP {response.status_code}"

    if not isinstance(data, dict):
        return None, f"Gateway returned HTTP {response.status_code}"

    code = data.get("errorCode") or data.get("ResponseCode")
    message = (
        data.get("errorMessage")
        or data.get("ResponseDescription")
        or f"Gateway returned HTTP {response.status_code}"
    )
    return (str(code) if code is not None else None), message


class MPesaGateway:
    """
    Client for the M-PESA Daraja API.

    Handles OAuth token generation with optional caching, password
    generation, and STK push initiation. Transport calls run inside a
    pybreaker circuit so a dead gateway is reported immediately instead of
    waiting out the timeout on every deposit.

    Args:
        settings: Relay settings carrying credentials and endpoints
        transport: Optional httpx transport (used by tests to stub Daraja)
        breaker: Optional circuit breaker; one is built from settings if omitted
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ) -> None:
        self.environment = settings.mpesa_environment.lower()
        self.base_url = (settings.mpesa_base_url or (
            PRODUCTION_BASE_URL if self.environment == "production" else SANDBOX_BASE_URL
        )).rstrip("/")
        self.consumer_key = settings.mpesa_consumer_key
        self.consumer_secret = settings.mpesa_consumer_secret
        self.shortcode = settings.mpesa_shortcode
        self.passkey = settings.mpesa_passkey
        self.callback_url = settings.mpesa_callback_url
        self.transaction_type = settings.mpesa_transaction_type
        self.account_reference = settings.mpesa_account_reference
        self.transaction_desc = settings.mpesa_transaction_desc
        self.timeout = settings.mpesa_timeout_seconds
        self.token_cache_enabled = settings.mpesa_token_cache_enabled

        self.breaker = breaker or build_circuit_breaker(settings)
        self._transport = transport
        self._token_cache: Dict[str, Any] = {}

        logger.info(
            f"MPesaGateway initialized for {self.environment} environment",
            extra={"environment": self.environment, "base_url": self.base_url},
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    async def get_access_token(self) -> str:
        """
        Get an OAuth access token, from cache when still valid.

        Returns:
            Bearer token for Daraja requests

        Raises:
            UpstreamAuthError: If the exchange is rejected, times out, returns
                               no token, or the circuit is open
        """
        current_time = time.time()
        if self.token_cache_enabled:
            cached_token = self._token_cache.get("access_token")
            if cached_token and current_time < self._token_cache.get("expires_at", 0):
                logger.debug("Using cached M-PESA access token")
                return cached_token

        credentials = f"{self.consumer_key}:{self.consumer_secret}"
        headers = {
            "Authorization": f"Basic {base64.b64encode(credentials.encode()).decode()}"
        }

        start = time.perf_counter()
        try:
            with self.breaker.calling():
                async with self._client() as client:
                    response = await client.get(
                        OAUTH_PATH,
                        params={"grant_type": "client_credentials"},
                        headers=headers,
                    )
                if response.status_code >= 500:
                    response.raise_for_status()
        except pybreaker.CircuitBreakerError as e:
            logger.error("Circuit breaker is OPEN - skipping M-PESA token request")
            raise UpstreamAuthError("Payment gateway temporarily unavailable") from e
        except httpx.HTTPError as e:
            status_code = (
                e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            )
            log_api_call(
                "mpesa", OAUTH_PATH, "GET", status_code,
                (time.perf_counter() - start) * 1000, error_type=type(e).__name__,
            )
            raise UpstreamAuthError(
                f"Token request failed: {type(e).__name__}", status_code=status_code
            ) from e

        log_api_call(
            "mpesa", OAUTH_PATH, "GET", response.status_code,
            (time.perf_counter() - start) * 1000,
        )

        if response.status_code != 200:
            _, message = _gateway_message(response)
            raise UpstreamAuthError(message, status_code=response.status_code)

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(
                "Invalid response from M-PESA OAuth API",
                extra={"error": str(e)},
            )
            raise UpstreamAuthError(
                "Invalid OAuth response", status_code=response.status_code
            ) from e

        if not access_token:
            raise UpstreamAuthError("Empty access token", status_code=response.status_code)

        if self.token_cache_enabled:
            self._token_cache["access_token"] = access_token
            self._token_cache["expires_at"] = current_time + expires_in - TOKEN_EXPIRY_BUFFER

        logger.info(
            "M-PESA access token generated successfully",
            extra={"expires_in": expires_in},
        )
        return access_token

    def callback_url_for(self, callback_ref: Optional[str] = None) -> str:
        """
        Return CallBackURL, tagged with the correlation record id when given.

        The tag lets a callback find its record even if it arrives before
        the gateway ids have been stored.
        """
        if not callback_ref:
            return self.callback_url
        url = httpx.URL(self.callback_url).copy_merge_params({CALLBACK_REF_PARAM: callback_ref})
        return str(url)

    def build_stk_payload(
        self,
        phone_number: str,
        amount: int,
        timestamp: str,
        callback_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Construct the STK push request body.

        Daraja expects the numeric fields as integers, not strings.
        """
        return {
            "BusinessShortCode": int(self.shortcode),
            "Password": generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": amount,
            "PartyA": int(phone_number),
            "PartyB": int(self.shortcode),
            "PhoneNumber": int(phone_number),
            "CallBackURL": self.callback_url_for(callback_ref),
            "AccountReference": self.account_reference[:12],
            "TransactionDesc": self.transaction_desc[:13],
        }

    async def initiate_stk_push(
        self,
        access_token: str,
        phone_number: str,
        amount: int,
        callback_ref: Optional[str] = None,
    ) -> StkPushAccepted:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            access_token: Bearer token from get_access_token()
            phone_number: Canonical MSISDN (e.g. 254712345678)
            amount: Amount in whole currency units
            callback_ref: Correlation record id appended to CallBackURL

        Returns:
            StkPushAccepted carrying the gateway identifiers

        Raises:
            GatewayRejected: On non-2xx status, non-zero ResponseCode, a
                             response without identifiers, timeout, transport
                             error or an open circuit
        """
        timestamp = generate_timestamp()
        payload = self.build_stk_payload(phone_number, amount, timestamp, callback_ref)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        logger.info(
            "Initiating STK Push",
            extra={
                "phone_number": mask_msisdn(phone_number),
                "amount": amount,
                "transaction_type": self.transaction_type,
            },
        )

        start = time.perf_counter()
        try:
            with self.breaker.calling():
                async with self._client() as client:
                    response = await client.post(STK_PUSH_PATH, json=payload, headers=headers)
                if response.status_code >= 500:
                    response.raise_for_status()
        except pybreaker.CircuitBreakerError as e:
            logger.error("Circuit breaker is OPEN - M-PESA API is unavailable")
            raise GatewayRejected("Payment gateway temporarily unavailable") from e
        except httpx.TimeoutException as e:
            log_api_call(
                "mpesa", STK_PUSH_PATH, "POST", None,
                (time.perf_counter() - start) * 1000, error_type=type(e).__name__,
            )
            logger.error("STK Push request timed out", extra={"timeout": self.timeout})
            raise GatewayRejected("Payment gateway timed out") from e
        except httpx.HTTPStatusError as e:
            log_api_call(
                "mpesa", STK_PUSH_PATH, "POST", e.response.status_code,
                (time.perf_counter() - start) * 1000, error_type=type(e).__name__,
            )
            code, message = _gateway_message(e.response)
            raise GatewayRejected(message, response_code=code) from e
        except httpx.HTTPError as e:
            log_api_call(
                "mpesa", STK_PUSH_PATH, "POST", None,
                (time.perf_counter() - start) * 1000, error_type=type(e).__name__,
            )
            raise GatewayRejected(f"Payment gateway unreachable: {type(e).__name__}") from e

        log_api_call(
            "mpesa", STK_PUSH_PATH, "POST", response.status_code,
            (time.perf_counter() - start) * 1000,
        )

        code, message = _gateway_message(response)
        if response.status_code != 200 or code != "0":
            logger.warning(
                "STK Push rejected by M-PESA",
                extra={
                    "status_code": response.status_code,
                    "response_code": code,
                    "response_description": message,
                },
            )
            raise GatewayRejected(message, response_code=code)

        data = response.json()
        merchant_request_id = data.get("MerchantRequestID")
        checkout_request_id = data.get("CheckoutRequestID")
        if not merchant_request_id or not checkout_request_id:
            raise GatewayRejected(
                "Gateway accepted the request without identifiers", response_code=code
            )

        logger.info(
            "STK Push accepted by M-PESA",
            extra={
                "merchant_request_id": merchant_request_id,
                "checkout_request_id": checkout_request_id,
            },
        )
        return StkPushAccepted(
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
        )
