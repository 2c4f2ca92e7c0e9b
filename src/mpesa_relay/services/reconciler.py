"""
Callback reconciliation for STK push results.

M-PESA delivers the payment result to CallBackURL at least once, possibly
out of order and possibly concurrently. CallbackReconciler matches each
delivery to its correlation record and applies the terminal transition at
most once. Every condition short of a store outage is acknowledged as
accepted so the gateway does not burn its retry budget on this endpoint.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import AlreadyTerminal, MalformedCallback, NotFound, PersistenceError
from ..models import CorrelationRecord
from ..schemas import CallbackAck, CallbackEnvelope, StkCallback
from ..utils.logging import get_logger
from .ledger import LedgerStore

logger = get_logger(__name__)

# Outcomes reported on CallbackAck.outcome
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_MALFORMED = "malformed"
OUTCOME_RETRY_LATER = "retry_later"

RESULT_SUCCESS = 0

# CallbackMetadata item names
ITEM_RECEIPT = "MpesaReceiptNumber"
ITEM_TRANSACTION_DATE = "TransactionDate"
ITEM_AMOUNT = "Amount"

TRANSACTION_DATE_FORMAT = "%Y%m%d%H%M%S"

# TransactionDate is Nairobi local time (EAT)
GATEWAY_TIMEZONE = ZoneInfo("Africa/Nairobi")


def parse_callback(payload: Any) -> StkCallback:
    """
    Validate the callback envelope and return its stkCallback object.

    Raises:
        MalformedCallback: If required nested fields are missing or mistyped
    """
    if not isinstance(payload, dict):
        raise MalformedCallback("Callback payload must be a JSON object")
    try:
        return CallbackEnvelope.model_validate(payload).body.stk_callback
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise MalformedCallback(f"Invalid callback envelope: {', '.join(fields)}") from e


def parse_transaction_date(value: Any) -> Optional[datetime]:
    """
    Parse a TransactionDate item (YYYYMMDDHHmmss, number or string).

    Returns:
        The timestamp in Nairobi time, or None if the value is absent or
        unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = datetime.strptime(str(value), TRANSACTION_DATE_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=GATEWAY_TIMEZONE)


def _confirmed_amount_cents(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int(amount * 100)


class CallbackReconciler:
    """
    Applies M-PESA callbacks to correlation records.

    Args:
        store: Ledger store holding correlation records and balances
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def reconcile(
        self, payload: Any, callback_ref: Optional[str] = None
    ) -> CallbackAck:
        """
        Process one callback delivery.

        Args:
            payload: Decoded JSON body posted by M-PESA
            callback_ref: Correlation record id from the CallBackURL query,
                          used when no record carries the CheckoutRequestID yet

        Returns:
            CallbackAck; result_code 0 for every accepted delivery, 1 for a
            malformed envelope or (with retry_later set) a store outage
        """
        try:
            callback = parse_callback(payload)
        except MalformedCallback as e:
            logger.warning("Malformed STK callback ignored", extra={"reason": e.message})
            return CallbackAck(
                result_code=1, result_desc="Rejected: malformed callback",
                outcome=OUTCOME_MALFORMED,
            )

        checkout_request_id = callback.checkout_request_id
        logger.info(
            "Received STK callback",
            extra={
                "checkout_request_id": checkout_request_id,
                "merchant_request_id": callback.merchant_request_id,
                "result_code": callback.result_code,
            },
        )

        try:
            record = await self._load_pending(callback, callback_ref)
            gateway_ids = self._gateway_ids_to_link(record, callback)
            if callback.result_code == RESULT_SUCCESS:
                await self._complete(record, callback, payload, gateway_ids)
                return CallbackAck(
                    result_code=0, result_desc="Accepted", outcome=OUTCOME_COMPLETED
                )
            await self.store.mark_failed(
                record,
                result_code=callback.result_code,
                result_desc=callback.result_desc,
                raw_callback=payload,
                gateway_ids=gateway_ids,
            )
            return CallbackAck(result_code=0, result_desc="Accepted", outcome=OUTCOME_FAILED)

        except NotFound:
            logger.warning(
                "Callback for unknown CheckoutRequestID",
                extra={"checkout_request_id": checkout_request_id},
            )
            return CallbackAck(
                result_code=0, result_desc="Accepted: transaction not found",
                outcome=OUTCOME_NOT_FOUND,
            )
        except AlreadyTerminal as e:
            logger.info(
                "Duplicate callback ignored - transaction already final",
                extra={
                    "checkout_request_id": checkout_request_id,
                    "record_id": e.record_id,
                },
            )
            return CallbackAck(
                result_code=0, result_desc="Accepted: already processed",
                outcome=OUTCOME_DUPLICATE,
            )
        except PersistenceError as e:
            logger.error(
                "Callback could not be persisted - requesting redelivery",
                extra={
                    "checkout_request_id": checkout_request_id,
                    "operation": e.operation,
                },
            )
            return CallbackAck(
                result_code=1, result_desc="Temporary failure, retry later",
                outcome=OUTCOME_RETRY_LATER, retry_later=True,
            )

    async def _load_pending(
        self, callback: StkCallback, callback_ref: Optional[str]
    ) -> CorrelationRecord:
        record = await self.store.find_by_checkout_id(callback.checkout_request_id)
        if record is None and callback_ref:
            record = await self._find_unlinked(callback_ref)
        if record is None:
            raise NotFound(callback.checkout_request_id)
        if record.is_terminal:
            raise AlreadyTerminal(record.id, record.status)
        return record

    async def _find_unlinked(self, callback_ref: str) -> Optional[CorrelationRecord]:
        """
        Match a callback that beat the initiator to storing the gateway ids.

        Only a record still carrying its provisional checkout id qualifies;
        a record already linked to other gateway ids is never taken over.
        """
        record = await self.store.get_record(callback_ref)
        if record is None or not self.store.is_provisional(record):
            return None
        logger.info(
            "Callback matched by reference before gateway ids were stored",
            extra={"record_id": record.id},
        )
        return record

    @staticmethod
    def _gateway_ids_to_link(
        record: CorrelationRecord, callback: StkCallback
    ) -> Optional[Dict[str, str]]:
        if record.checkout_request_id == callback.checkout_request_id:
            return None
        gateway_ids = {"checkout_request_id": callback.checkout_request_id}
        if callback.merchant_request_id:
            gateway_ids["merchant_request_id"] = callback.merchant_request_id
        return gateway_ids

    async def _complete(
        self,
        record: CorrelationRecord,
        callback: StkCallback,
        payload: Dict[str, Any],
        gateway_ids: Optional[Dict[str, str]],
    ) -> None:
        metadata = callback.metadata()
        receipt = metadata.get(ITEM_RECEIPT)
        completed_at = (
            parse_transaction_date(metadata.get(ITEM_TRANSACTION_DATE))
            or datetime.now(timezone.utc)
        )

        confirmed_cents = _confirmed_amount_cents(metadata.get(ITEM_AMOUNT))
        if confirmed_cents is not None and confirmed_cents != record.amount_cents:
            logger.warning(
                "Confirmed amount differs from requested amount",
                extra={
                    "record_id": record.id,
                    "requested_cents": record.amount_cents,
                    "confirmed_cents": confirmed_cents,
                },
            )

        await self.store.complete_and_credit(
            record,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            receipt_reference=str(receipt) if receipt is not None else None,
            completed_at=completed_at.astimezone(timezone.utc),
            raw_callback=payload,
            gateway_ids=gateway_ids,
        )
