"""
Payment API router for M-PESA STK push deposits.

Thin transport over DepositInitiator and CallbackReconciler: decode the
body, call the component, translate the result into the wire format.
create_router() binds the handlers to an app's own slowapi Limiter, so
two apps built with different settings never share a rate limit.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter

from ..exceptions import (
    GatewayRejected,
    PersistenceError,
    UpstreamAuthError,
    ValidationError,
)
from ..schemas import ErrorResponse, StkPushRequest, StkPushResponse
from ..services.initiator import DepositInitiator
from ..services.mpesa import CALLBACK_REF_PARAM
from ..services.reconciler import CallbackReconciler
from ..utils.logging import get_logger

logger = get_logger(__name__)


def get_initiator(request: Request) -> DepositInitiator:
    """Dependency returning the initiator built by the app factory."""
    return request.app.state.initiator


def get_reconciler(request: Request) -> CallbackReconciler:
    """Dependency returning the reconciler built by the app factory."""
    return request.app.state.reconciler


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


async def stk_push(
    request: Request,
    initiator: DepositInitiator = Depends(get_initiator),
) -> JSONResponse:
    """
    Initiate an M-PESA STK push deposit.

    Body: `{phone, amount, ownerId}`. A 200 response means the gateway
    accepted the attempt, not that the payment completed; completion is
    only known once the callback arrives.

    Returns:
        200 `{success: true, checkoutReference, merchantReference}`
        400 `{success: false, error}` for invalid input or a declined push
        500 `{success: false, error}` for gateway auth or store failures
    """
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    payload = StkPushRequest.model_validate(body)

    try:
        result = await initiator.initiate(payload.owner_id, payload.phone, payload.amount)
    except ValidationError as e:
        logger.info("STK push request rejected", extra={"field": e.field, "reason": e.message})
        return _error(400, e.message)
    except GatewayRejected as e:
        return _error(400, e.message)
    except UpstreamAuthError as e:
        logger.error("M-PESA authentication failed", extra={"reason": e.message})
        return _error(500, "Payment gateway authentication failed")
    except PersistenceError as e:
        logger.error("Ledger store failure during STK push", extra={"operation": e.operation})
        return _error(500, "Could not record the transaction")

    response = StkPushResponse(
        checkout_reference=result.checkout_reference,
        merchant_reference=result.merchant_reference,
        message=result.customer_message or None,
    )
    return JSONResponse(status_code=200, content=response.model_dump(by_alias=True))


async def stk_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> JSONResponse:
    """
    Handle the M-PESA STK push callback.

    Always answers 200 with `{resultCode, resultDesc}` unless the ledger
    store is down, in which case 500 asks M-PESA to redeliver.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    ack = await reconciler.reconcile(
        payload, callback_ref=request.query_params.get(CALLBACK_REF_PARAM)
    )
    status_code = 500 if ack.retry_later else 200
    return JSONResponse(status_code=status_code, content=ack.model_dump(by_alias=True))


def create_router(limiter: Limiter, stkpush_rate_limit: str) -> APIRouter:
    """
    Build the payments router with /stkpush limited by `limiter`.

    Args:
        limiter: The app's slowapi Limiter (also set as app.state.limiter)
        stkpush_rate_limit: slowapi limit string, e.g. "30/minute"

    Returns:
        APIRouter exposing POST /stkpush and POST /callback
    """
    router = APIRouter()
    router.add_api_route(
        "/stkpush", limiter.limit(stkpush_rate_limit)(stk_push), methods=["POST"]
    )
    router.add_api_route("/callback", stk_callback, methods=["POST"])
    return router
