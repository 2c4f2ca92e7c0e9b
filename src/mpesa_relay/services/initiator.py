"""
Deposit initiation: validate, record, push.

DepositInitiator turns a client's deposit intent into a pending correlation
record and an STK push. The record is written before the push is sent, and its id rides on CallBackURL,
so a callback that races ahead of our own response still finds a row. A push
the gateway refuses leaves no pending row behind.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from ..exceptions import GatewayRejected, PersistenceError, ValidationError
from ..utils.logging import get_logger, mask_msisdn
from ..utils.phone import DEFAULT_REGION, normalize_phone, strip_non_digits
from .ledger import LedgerStore
from .mpesa import MPesaGateway

logger = get_logger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class InitiationResult:
    """Synchronous outcome of an accepted deposit attempt."""

    record_id: str
    checkout_reference: str
    merchant_reference: str
    customer_message: str = ""


def parse_amount(raw: Any) -> Decimal:
    """
    Parse a deposit amount into a positive Decimal with at most two places.

    Accepts int, float, Decimal or a numeric string. Booleans, NaN,
    infinities and non-numeric values are rejected rather than coerced.

    Raises:
        ValidationError: If the amount is not a positive finite number
    """
    if isinstance(raw, bool) or raw is None:
        raise ValidationError("amount", "Amount must be a number")

    try:
        if isinstance(raw, float):
            amount = Decimal(repr(raw))
        elif isinstance(raw, (int, Decimal)):
            amount = Decimal(raw)
        elif isinstance(raw, str):
            amount = Decimal(raw.strip())
        else:
            raise ValidationError("amount", "Amount must be a number")
    except InvalidOperation:
        raise ValidationError("amount", "Amount must be a number")

    if not amount.is_finite():
        raise ValidationError("amount", "Amount must be finite")
    if amount <= 0:
        raise ValidationError("amount", "Amount must be greater than zero")
    if amount != amount.quantize(CENTS):
        raise ValidationError("amount", "Amount must have at most two decimal places")
    return amount


class DepositInitiator:
    """
    Runs the initiate flow against the gateway and the ledger store.

    Args:
        gateway: Daraja client
        store: Ledger store for correlation records
        phone_region: Region whose calling code is canonical for MSISDNs
    """

    def __init__(
        self,
        gateway: MPesaGateway,
        store: LedgerStore,
        phone_region: str = DEFAULT_REGION,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.phone_region = phone_region

    def validate(self, owner_id: Any, phone_raw: Any, amount: Any) -> tuple[str, str, int]:
        """
        Validate and normalize caller input.

        Returns:
            Tuple of (owner_id, canonical phone number, amount in whole units)

        Raises:
            ValidationError: On any invalid field; nothing has been sent or
                             stored at that point
        """
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationError("ownerId", "ownerId is required")
        if not isinstance(phone_raw, str) or not phone_raw.strip():
            raise ValidationError("phone", "phone is required")
        if not strip_non_digits(phone_raw):
            raise ValidationError("phone", "phone must contain digits")

        parsed_amount = parse_amount(amount)
        # STK push charges whole currency units only
        if parsed_amount != parsed_amount.to_integral_value():
            raise ValidationError("amount", "Amount must be a whole number")

        phone_number = normalize_phone(phone_raw, self.phone_region)
        return owner_id.strip(), phone_number, int(parsed_amount)

    async def initiate(self, owner_id: Any, phone_raw: Any, amount: Any) -> InitiationResult:
        """
        Start a deposit: validate, authenticate, record, push.

        Args:
            owner_id: Account owner to credit once the payment confirms
            phone_raw: Payer phone number as typed by the user
            amount: Deposit amount

        Returns:
            InitiationResult with the gateway references

        Raises:
            ValidationError: Bad input (no side effects)
            UpstreamAuthError: Token exchange rejected (nothing stored)
            PersistenceError: Record could not be created or updated
            GatewayRejected: Push refused; the pending record was removed
        """
        owner_id, phone_number, whole_amount = self.validate(owner_id, phone_raw, amount)

        logger.info(
            "Deposit initiation requested",
            extra={
                "owner_id": owner_id,
                "phone_number": mask_msisdn(phone_number),
                "amount": whole_amount,
            },
        )

        access_token = await self.gateway.get_access_token()

        record = await self.store.create_pending(
            owner_id=owner_id,
            phone_number=phone_number,
            amount_cents=whole_amount * 100,
        )

        try:
            accepted = await self.gateway.initiate_stk_push(
                access_token=access_token,
                phone_number=phone_number,
                amount=whole_amount,
                callback_ref=record.id,
            )
        except GatewayRejected as e:
            # Nothing will ever confirm this attempt
            await self.store.discard_orphan(record.id)
            logger.warning(
                "Deposit rejected by gateway",
                extra={
                    "record_id": record.id,
                    "response_code": e.response_code,
                    "reason": e.message,
                },
            )
            raise

        try:
            await self.store.attach_gateway_ids(
                record.id,
                merchant_request_id=accepted.merchant_request_id,
                checkout_request_id=accepted.checkout_request_id,
            )
        except PersistenceError:
            # The push is live upstream but its callback will not match
            logger.critical(
                "Accepted STK push could not be linked to its transaction",
                extra={
                    "record_id": record.id,
                    "checkout_request_id": accepted.checkout_request_id,
                    "merchant_request_id": accepted.merchant_request_id,
                },
            )
            raise

        logger.info(
            "Deposit initiated",
            extra={
                "record_id": record.id,
                "checkout_request_id": accepted.checkout_request_id,
                "merchant_request_id": accepted.merchant_request_id,
            },
        )
        return InitiationResult(
            record_id=record.id,
            checkout_reference=accepted.checkout_request_id,
            merchant_reference=accepted.merchant_request_id,
            customer_message=accepted.customer_message,
        )
