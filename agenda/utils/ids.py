"""Identifier helpers."""

import uuid
from typing import Union

from agenda.core.errors import ValidationError


def parse_uuid(value: Union[str, uuid.UUID], field: str = "id") -> uuid.UUID:
    """Coerce a string or UUID, raising ValidationError on garbage input."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field}) from None
