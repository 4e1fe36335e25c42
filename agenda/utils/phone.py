"""Phone/address helpers shared by ingress, stores and tools."""

import re

_NON_DIGITS = re.compile(r"\D+")


def normalize_address(address: str) -> str:
    """
    Normalize a channel address to bare digits.

    >>> normalize_address("whatsapp:+55 (11) 98765-4321")
    '5511987654321'
    """
    if not address:
        return ""
    value = address.strip()
    if ":" in value:
        value = value.split(":", 1)[1]
    return _NON_DIGITS.sub("", value)


def mask_address(address: str) -> str:
    """Mask all but the last four digits for log lines."""
    digits = normalize_address(address)
    if len(digits) <= 4:
        return "****"
    return f"***{digits[-4:]}"
