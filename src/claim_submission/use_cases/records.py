"""Local claim records, written only after the server accepted a claim."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import Money
from ..fhir.resources import ClaimLineItem


class RecordLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    code: str
    description: str = ""
    modifiers: tuple[str, ...] = ()
    quantity: int
    unit_price: Money
    net: Money

    @classmethod
    def from_line(cls, line: ClaimLineItem) -> "RecordLine":
        return cls(
            sequence=line.sequence,
            code=line.billing_code.code,
            description=line.billing_code.description,
            modifiers=line.modifiers,
            quantity=line.quantity,
            unit_price=line.unit_price,
            net=line.net,
        )


class ClaimRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    claim_id: str = Field(..., description="Local record id")
    mode: Literal["single", "bundle"]
    server_ids: dict[str, str] = Field(default_factory=dict, description="resourceType -> server id")
    patient_id: str | None = None
    encounter_id: str | None = None
    items: tuple[RecordLine, ...] = ()
    total: Money
    status: str = "active"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ClaimStats(BaseModel):
    count: int = 0
    line_items: int = 0
    patients: int = 0
    totals: dict[str, Decimal] = Field(default_factory=dict, description="currency -> sum")
    by_mode: dict[str, int] = Field(default_factory=dict)


class ClaimRecordStore(Protocol):
    def save(self, record: ClaimRecord) -> ClaimRecord:
        """Persist a record.

        Raises:
            PersistenceError: if the write fails.
        """
        ...

    def list(self) -> list[ClaimRecord]: ...

    def for_patient(self, patient_id: str) -> list[ClaimRecord]: ...

    def stats(self) -> ClaimStats: ...


class InMemoryClaimStore:
    """Thread-safe in-process record store."""

    def __init__(self) -> None:
        self._records: dict[str, ClaimRecord] = {}
        self._lock = threading.Lock()

    def save(self, record: ClaimRecord) -> ClaimRecord:
        with self._lock:
            self._records[record.claim_id] = record
        return record

    def list(self) -> list[ClaimRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def for_patient(self, patient_id: str) -> list[ClaimRecord]:
        return [r for r in self.list() if r.patient_id == patient_id]

    def stats(self) -> ClaimStats:
        records = self.list()
        totals: dict[str, Decimal] = {}
        by_mode: dict[str, int] = {}
        for record in records:
            totals[record.total.currency] = totals.get(record.total.currency, Decimal("0")) + record.total.value
            by_mode[record.mode] = by_mode.get(record.mode, 0) + 1
        return ClaimStats(
            count=len(records),
            line_items=sum(len(r.items) for r in records),
            patients=len({r.patient_id for r in records if r.patient_id}),
            totals=totals,
            by_mode=by_mode,
        )
