"""
Pydantic schemas for the relay's HTTP surface and the Daraja callback.

The callback models follow the envelope M-PESA posts to CallBackURL:

    {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 1.00},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254708374149}
                    ]
                }
            }
        }
    }

Failed payments carry no CallbackMetadata.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StkPushRequest(BaseModel):
    """
    Request body for POST /stkpush.

    Fields are kept loose here; the initiator owns validation so that bad
    input always produces the same `{success: false, error}` response.
    """

    model_config = ConfigDict(populate_by_name=True)

    phone: Any = None
    amount: Any = None
    owner_id: Any = Field(None, alias="ownerId")


class StkPushResponse(BaseModel):
    """Successful response for POST /stkpush."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    checkout_reference: str = Field(..., serialization_alias="checkoutReference")
    merchant_reference: str = Field(..., serialization_alias="merchantReference")
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Failure response for POST /stkpush."""

    success: bool = False
    error: str


class CallbackItem(BaseModel):
    """One name/value pair of CallbackMetadata.Item."""

    name: Optional[str] = Field(None, alias="Name")
    value: Any = Field(None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    """The stkCallback object inside the envelope."""

    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    @field_validator("result_code", mode="before")
    @classmethod
    def parse_result_code(cls, v: Any) -> int:
        """
        Accept an integer or an all-digit string; reject anything else.

        Floats and booleans are not silently truncated or coerced.
        """
        if isinstance(v, bool):
            raise ValueError("ResultCode must be an integer")
        if isinstance(v, int):
            return v
        if isinstance(v, str) and v.strip().isdigit():
            return int(v.strip())
        raise ValueError("ResultCode must be an integer")

    def metadata(self) -> dict[str, Any]:
        """Metadata items keyed by name; order and extra items are irrelevant."""
        if not self.callback_metadata:
            return {}
        return {
            item.name: item.value
            for item in self.callback_metadata.items
            if item.name
        }


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class CallbackEnvelope(BaseModel):
    """Top-level callback payload."""

    body: CallbackBody = Field(..., alias="Body")


class CallbackAck(BaseModel):
    """
    Acknowledgment returned to M-PESA.

    `result_code` 0 tells the gateway the delivery was accepted, whatever the
    payment outcome. `outcome` and `retry_later` are internal and never
    serialized.
    """

    result_code: int = Field(..., serialization_alias="resultCode")
    result_desc: str = Field(..., serialization_alias="resultDesc")
    outcome: str = Field(..., exclude=True)
    retry_later: bool = Field(False, exclude=True)
