from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import BeforeValidator, Field, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_stripped_str(v):
    if v is None:
        return v
    return str(v).strip()


# Payment methods are configured server-side per company.
# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]

EntityRef = Annotated[str, BeforeValidator(_to_stripped_str), StringConstraints(min_length=1, max_length=64)]

Money = Annotated[Decimal, Field(ge=0)]
Percent = Annotated[Decimal, Field(ge=0, le=100)]
TaxRate = Annotated[Decimal, Field(ge=0)]
