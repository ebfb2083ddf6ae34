"""Pydantic models for billing codes, selected line items and notes."""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import ClaimValidationError

_CENT = Decimal("0.01")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


class Money(BaseModel):
    """Fixed-point currency amount."""

    model_config = ConfigDict(frozen=True)

    value: Decimal = Field(..., description="Amount, quantized to cents")
    currency: str = Field(..., pattern=r"^[A-Z]{3}$", description="ISO 4217 code")

    @field_validator("value")
    @classmethod
    def _to_cents(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("amount must be finite")
        return _quantize(value)

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(value=Decimal("0"), currency=currency)

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        if other.currency != self.currency:
            raise ClaimValidationError(
                f"Cannot add {other.currency} to {self.currency}: mixed currencies"
            )
        return Money(value=self.value + other.value, currency=self.currency)

    def times(self, quantity: int) -> "Money":
        return Money(value=self.value * quantity, currency=self.currency)

    def scaled(self, factor: Decimal) -> "Money":
        return Money(value=self.value * factor, currency=self.currency)

    def __str__(self) -> str:
        return f"{self.value} {self.currency}"


class BillingCode(BaseModel):
    """A billing code resolved to its canonical metadata."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1)
    description: str = Field(default="")
    unit_price: Money
    category: str = Field(default="")
    source: Literal["primary", "static"] = Field(
        default="static", description="Which tier of the resolver produced it"
    )


class ModifierRule(BaseModel):
    """A documented price adjustment carried by a modifier."""

    model_config = ConfigDict(frozen=True)

    modifier: str
    factor: Decimal = Field(..., gt=0)
    description: str = ""


class SelectedItem(BaseModel):
    """A user-selected billing code with its modifiers and quantity."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1)
    modifiers: frozenset[str] = Field(default_factory=frozenset)
    quantity: int = Field(default=1, ge=1)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("code must not be blank")
        return value


class ClinicalNote(BaseModel):
    """Free-text note attached to a claim."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1)
    kind: Literal["clinical", "administrative"] = "clinical"
    authored: datetime | None = None
