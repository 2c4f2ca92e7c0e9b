"""
Shared fixtures for relay tests.

The ledger store runs on a temporary SQLite file through aiosqlite, and the
Daraja API is replaced by an httpx.MockTransport handler so tests exercise
the real client code without network access.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import pybreaker
import pytest
import pytest_asyncio

from mpesa_relay.config import Settings
from mpesa_relay.db import create_engine, create_session_factory, init_models
from mpesa_relay.services.initiator import DepositInitiator
from mpesa_relay.services.ledger import LedgerStore
from mpesa_relay.services.mpesa import OAUTH_PATH, STK_PUSH_PATH, MPesaGateway
from mpesa_relay.services.reconciler import CallbackReconciler

DARAJA_TEST_URL = "https://daraja.test"


class DarajaStub:
    """
    Scriptable stand-in for the Daraja API.

    Records every request and answers the OAuth and STK push endpoints with
    the configured status/body, or raises `push_exception` for the push.
    `on_push` runs before the push is answered, which lets a test inspect
    the ledger at the exact moment the gateway is contacted.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.oauth_status = 200
        self.oauth_body: Dict[str, Any] = {
            "access_token": "test_access_token",
            "expires_in": "3599",
        }
        self.push_status = 200
        self.push_body: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self.push_exception: Optional[Exception] = None
        self.on_push: Optional[Callable[[httpx.Request], Awaitable[None]]] = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path == OAUTH_PATH:
            return httpx.Response(self.oauth_status, json=self.oauth_body)

        if request.url.path == STK_PUSH_PATH:
            if self.on_push is not None:
                await self.on_push(request)
            if self.push_exception is not None:
                raise self.push_exception
            return httpx.Response(self.push_status, json=self.push_body)

        return httpx.Response(404, json={"errorMessage": "Not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def oauth_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == OAUTH_PATH]

    @property
    def push_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == STK_PUSH_PATH]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for tests; nothing is read from the environment or .env."""
    return Settings(
        _env_file=None,
        mpesa_consumer_key="test_consumer_key",
        mpesa_consumer_secret="test_consumer_secret",
        mpesa_shortcode="174379",
        mpesa_passkey="bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
        mpesa_callback_url="https://relay.example.com/callback",
        mpesa_base_url=DARAJA_TEST_URL,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        rate_limit_enabled=False,
        environment="test",
    )


@pytest.fixture
def daraja() -> DarajaStub:
    return DarajaStub()


@pytest.fixture
def breaker() -> pybreaker.CircuitBreaker:
    """A fresh breaker per test so failures never leak between tests."""
    return pybreaker.CircuitBreaker(fail_max=3, reset_timeout=60)


@pytest.fixture
def gateway(settings: Settings, daraja: DarajaStub, breaker) -> MPesaGateway:
    return MPesaGateway(settings, transport=daraja.transport(), breaker=breaker)


@pytest_asyncio.fixture
async def engine(settings: Settings):
    """Ledger engine on a temporary SQLite file with all tables created."""
    engine = create_engine(settings.database_url)
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def store(engine) -> LedgerStore:
    return LedgerStore(create_session_factory(engine))


@pytest.fixture
def initiator(gateway: MPesaGateway, store: LedgerStore) -> DepositInitiator:
    return DepositInitiator(gateway, store)


@pytest.fixture
def reconciler(store: LedgerStore) -> CallbackReconciler:
    return CallbackReconciler(store)


@pytest.fixture
def callback_payload() -> Callable[..., Dict[str, Any]]:
    """
    Build an STK callback envelope.

    Success callbacks (result_code 0) carry CallbackMetadata; `items`
    replaces the default item list when given.
    """

    def _build(
        checkout_request_id: str = "ws_CO_1",
        result_code: Any = 0,
        result_desc: Optional[str] = None,
        receipt: str = "R123",
        amount: Any = 500,
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or (
                "The service request is processed successfully."
                if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": items
                if items is not None
                else [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate", "Value": 20251019102115},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build
