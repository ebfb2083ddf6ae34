"""Intermediate resource records produced by the reference graph builder.

These are typed, frozen records with internal identifiers. The assembler
turns them into FHIR R4 JSON and decides how references are written.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..billing.models import BillingCode, ClinicalNote, Money
from ..errors import ClaimValidationError

PartyType = Literal["Patient", "Practitioner", "Encounter", "Coverage"]

_PERSISTED_PREFIX = "persisted:"
_URN_UUID_RE = re.compile(r"^urn:(uuid:)?[0-9a-fA-F-]{8,}$")
_FHIR_ID_RE = re.compile(r"^[A-Za-z0-9\-.]{1,64}$")

ENCOUNTER_LOCAL_ID = "encounter"
CLAIM_LOCAL_ID = "claim"


class Identifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    system: str | None = None
    value: str = Field(..., min_length=1)


class PartyReference(BaseModel):
    """Reference to a patient, practitioner, encounter or coverage.

    Exactly one of two shapes:
      - persisted: ``id`` is the server's logical id of an existing resource;
      - to be created: ``id`` is None and the resource is created by the
        same transaction. ``name``/``identifier``/``birth_date``/``gender``
        describe the resource to create.
    """

    model_config = ConfigDict(frozen=True)

    resource_type: PartyType
    id: str | None = Field(default=None, description="Persisted logical id")
    name: str | None = None
    identifier: Identifier | None = None
    birth_date: date | None = None
    gender: Literal["male", "female", "other", "unknown"] | None = None

    @model_validator(mode="after")
    def _check_id(self) -> "PartyReference":
        if self.id is not None and not _FHIR_ID_RE.match(self.id):
            raise ValueError(f"{self.id!r} is not a valid FHIR logical id")
        return self

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def reference(self) -> str:
        """Return the ``Type/id`` reference of a persisted resource."""
        if self.id is None:
            raise ClaimValidationError(
                f"{self.resource_type} has no persisted identifier to reference"
            )
        return f"{self.resource_type}/{self.id}"

    @classmethod
    def persisted(cls, resource_type: PartyType, resource_id: str) -> "PartyReference":
        return cls(resource_type=resource_type, id=resource_id)

    @classmethod
    def parse(cls, resource_type: PartyType, raw: str, **details: object) -> "PartyReference":
        """Parse ``persisted:{id}``, ``urn:uuid:{uuid}`` / ``urn:{uuid}`` or ``new``.

        Raises:
            ClaimValidationError: for any other shape.
        """
        text = (raw or "").strip()
        if text.startswith(_PERSISTED_PREFIX):
            resource_id = text[len(_PERSISTED_PREFIX):]
            if not _FHIR_ID_RE.match(resource_id):
                raise ClaimValidationError(
                    f"{resource_type} reference {raw!r} has an invalid persisted id"
                )
            return cls(resource_type=resource_type, id=resource_id, **details)
        if text == "new" or _URN_UUID_RE.match(text):
            return cls(resource_type=resource_type, **details)
        raise ClaimValidationError(
            f"{resource_type} reference {raw!r} must be 'persisted:<id>', 'urn:uuid:<uuid>' or 'new'"
        )


class EncounterContext(BaseModel):
    """Visit metadata supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    status: Literal["planned", "in-progress", "finished"] = "finished"
    class_code: str = Field(default="AMB", description="v3 ActCode encounter class")
    type_text: str = "General practice consultation"
    service_category: str | None = None
    period_start: datetime
    period_end: datetime | None = None
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_period(self) -> "EncounterContext":
        if self.period_end is None:
            return self
        end, start = (v if v.tzinfo else v.replace(tzinfo=timezone.utc) for v in (self.period_end, self.period_start))
        if end < start:
            raise ValueError("period_end must not precede period_start")
        return self


class EncounterResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    local_id: str = ENCOUNTER_LOCAL_ID
    context: EncounterContext
    subject: PartyReference
    participant: PartyReference


class ClaimLineItem(BaseModel):
    """A priced claim line. ``gross`` is before modifier adjustments, ``net`` after."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1)
    billing_code: BillingCode
    modifiers: tuple[str, ...] = ()
    quantity: int = Field(..., ge=1)
    unit_price: Money
    gross: Money
    factor: Decimal = Decimal("1")
    net: Money
    adjustments: tuple[str, ...] = ()


class ClaimResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    local_id: str = CLAIM_LOCAL_ID
    encounter: str = ENCOUNTER_LOCAL_ID
    patient: PartyReference
    provider: PartyReference
    coverage: PartyReference | None = None
    items: tuple[ClaimLineItem, ...]
    notes: tuple[ClinicalNote, ...] = ()
    status: Literal["draft", "active", "cancelled"] = "active"
    priority: Literal["stat", "normal", "deferred"] = "normal"
    total: Money
    created: datetime
