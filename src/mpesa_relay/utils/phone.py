"""
Phone number normalization for STK push requests.

Daraja expects the payer MSISDN as the country calling code followed by the
national number, digits only (e.g. 254712345678). Deposit clients send
whatever the user typed. The normalization is total (every input maps to a
canonical string) and idempotent (normalizing twice equals normalizing once).
Whether the resulting number is reachable is left to the gateway.
"""

import re
from functools import lru_cache

import phonenumbers

# Default region for the country calling code
DEFAULT_REGION = "KE"  # Kenya

_NON_DIGITS = re.compile(r"\D")

# National trunk prefix dialled before local numbers
TRUNK_PREFIX = "0"


@lru_cache(maxsize=None)
def country_code_for_region(region: str = DEFAULT_REGION) -> str:
    """
    Resolve the country calling code for an ISO 3166-1 region.

    Args:
        region: Region code such as "KE", "TZ" or "UG"

    Returns:
        The calling code as a digit string (e.g. "254")

    Raises:
        ValueError: If the region is unknown to libphonenumber
    """
    code = phonenumbers.country_code_for_region(region.upper())
    if code == 0:
        raise ValueError(f"Unknown phone region: {region}")
    return str(code)


def strip_non_digits(phone: str) -> str:
    """Remove every character that is not an ASCII digit."""
    return _NON_DIGITS.sub("", phone)


def normalize_phone(phone: str, region: str = DEFAULT_REGION) -> str:
    """
    Normalize a raw phone number to canonical international digits.

    Rules, applied to the digits of the input:
    - leading trunk prefix "0" is replaced by the country code
    - a number already starting with the country code is kept as is
      (a "+" has already been stripped with the other non-digits)
    - anything else gets the country code prepended

    Args:
        phone: Raw phone number, any punctuation allowed
        region: Region whose calling code is canonical (default "KE")

    Returns:
        Canonical MSISDN digits, e.g. "254712345678"

    Examples:
        >>> normalize_phone("0712345678")
        '254712345678'
        >>> normalize_phone("+254 712 345 678")
        '254712345678'
        >>> normalize_phone("712345678")
        '254712345678'
    """
    country_code = country_code_for_region(region)
    digits = strip_non_digits(phone)

    if digits.startswith(TRUNK_PREFIX):
        return country_code + digits[len(TRUNK_PREFIX):]
    if digits.startswith(country_code):
        return digits
    return country_code + digits


def is_canonical(phone: str, region: str = DEFAULT_REGION) -> bool:
    """
    Check that a phone number is already in canonical form.

    Args:
        phone: Phone number to check
        region: Region whose calling code is canonical

    Returns:
        True if the number is the country code followed only by digits
    """
    country_code = country_code_for_region(region)
    return re.fullmatch(rf"{country_code}\d*", phone) is not None
