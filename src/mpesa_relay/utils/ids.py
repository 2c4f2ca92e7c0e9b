"""
Correlation id generation.

A correlation record is written before the gateway has assigned its own
MerchantRequestID and CheckoutRequestID, so it starts with provisional values
derived from the record id. They are unique per record and are overwritten
once the gateway accepts the push.
"""

import uuid
from typing import Tuple


def generate_record_id() -> str:
    """
    Generate a UUID-based correlation record id.

    Returns:
        A unique UUID4 string
    """
    return str(uuid.uuid4())


def provisional_request_ids(record_id: str, prefix: str = "pending") -> Tuple[str, str]:
    """
    Build placeholder gateway ids for a record that has not been pushed yet.

    Args:
        record_id: The correlation record id
        prefix: Marker distinguishing placeholders from gateway-issued ids

    Returns:
        Tuple of (merchant_request_id, checkout_request_id)
    """
    return f"{prefix}-merchant-{record_id}", f"{prefix}-checkout-{record_id}"
