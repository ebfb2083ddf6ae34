"""Claim workflow: resolve → build → assemble → submit → persist.

Three modes share the same front half:

  preview       : resolve, build and assemble a draft; nothing leaves the process.
  submit_single : POST one Claim against an encounter that already exists.
  submit_bundle : POST a transaction that also creates the encounter and any
                  patient/practitioner not yet on the server.

A local record is written only after the server accepted the submission.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..billing.models import ClinicalNote, SelectedItem
from ..billing.resolver import HTTPMetadataStore, MetadataResolver
from ..config import Settings
from ..errors import (
    ClaimError,
    ClaimValidationError,
    MetadataNotFound,
    ReferenceIntegrityError,
)
from ..fhir.assembler import DocumentAssembler
from ..fhir.fhir_client import FHIRClient, FHIRClientConfig
from ..fhir.graph_builder import Parties, ReferenceGraphBuilder
from ..fhir.outcomes import Accepted, SubmissionOutcome
from ..fhir.resources import ClaimResource, EncounterContext, Identifier, PartyReference
from .records import ClaimRecord, ClaimRecordStore, InMemoryClaimStore, RecordLine

logger = logging.getLogger(__name__)

_RequestT = TypeVar("_RequestT", bound=BaseModel)


class WorkflowState(str, Enum):
    RESOLVING  = "resolving"
    BUILDING   = "building"
    ASSEMBLING = "assembling"
    SUBMITTING = "submitting"
    PERSISTING = "persisting"
    DONE       = "done"
    ABORTED    = "aborted"


# ------------------------------------------------------------------
# Request models (loosely-typed input from the UI)
# ------------------------------------------------------------------

class PartyInput(BaseModel):
    """A party as sent by the UI: a bare reference string or an object."""

    ref: str = Field(default="new", description="'persisted:<id>', 'urn:uuid:<uuid>' or 'new'")
    name: str | None = None
    identifier: Identifier | None = None
    birth_date: date | None = None
    gender: Literal["male", "female", "other", "unknown"] | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"ref": data}
        return data

    def to_reference(self, resource_type: Literal["Patient", "Practitioner"]) -> PartyReference:
        return PartyReference.parse(
            resource_type,
            self.ref,
            name=self.name,
            identifier=self.identifier,
            birth_date=self.birth_date,
            gender=self.gender,
        )


class EncounterInput(BaseModel):
    status: Literal["planned", "in-progress", "finished"] = "finished"
    class_code: str = "AMB"
    type_text: str = "General practice consultation"
    service_category: str | None = None
    period_start: datetime
    period_end: datetime | None = None
    created: datetime | None = None

    @model_validator(mode="after")
    def _period_in_order(self) -> "EncounterInput":
        if self.period_end is not None and _as_utc(self.period_end) < _as_utc(self.period_start):
            raise ValueError("encounter period_end must not precede period_start")
        return self


class ClaimRequest(BaseModel):
    items: list[SelectedItem] = Field(..., min_length=1)
    notes: list[ClinicalNote] = Field(default_factory=list)
    patient: PartyInput
    practitioner: PartyInput
    coverage_id: str | None = None
    encounter_id: str | None = Field(default=None, description="Existing encounter, persisted id")
    encounter: EncounterInput | None = None
    priority: Literal["stat", "normal", "deferred"] = "normal"

    def parties(self) -> Parties:
        coverage = None
        if self.coverage_id:
            coverage = PartyReference.parse("Coverage", _as_persisted(self.coverage_id))
        return Parties(
            patient=self.patient.to_reference("Patient"),
            practitioner=self.practitioner.to_reference("Practitioner"),
            coverage=coverage,
        )

    def encounter_ref(self) -> PartyReference | None:
        if not self.encounter_id:
            return None
        return PartyReference.parse("Encounter", _as_persisted(self.encounter_id))


class SingleSubmitRequest(ClaimRequest):
    encounter_id: str = Field(..., min_length=1)


class BundleSubmitRequest(ClaimRequest):
    encounter: EncounterInput

    @model_validator(mode="after")
    def _no_existing_encounter(self) -> "BundleSubmitRequest":
        if self.encounter_id:
            raise ValueError("bundle submission creates its encounter; omit encounter_id")
        return self


# ------------------------------------------------------------------
# Result
# ------------------------------------------------------------------

@dataclass
class WorkflowResult:
    mode: Literal["preview", "single", "bundle"]
    state: WorkflowState
    trace: list[WorkflowState] = field(default_factory=list)
    resource: dict | None = None
    outcome: SubmissionOutcome | None = None
    record: ClaimRecord | None = None
    error: ClaimError | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is WorkflowState.DONE

    @property
    def failure_kind(self) -> str | None:
        """One of validation_error, metadata_not_found, reference_integrity,
        rejected, partially_applied, transport_failure; None on success."""
        if self.error is not None:
            if isinstance(self.error, MetadataNotFound):
                return "metadata_not_found"
            if isinstance(self.error, ReferenceIntegrityError):
                return "reference_integrity"
            return "validation_error"
        if self.outcome is not None and not isinstance(self.outcome, Accepted):
            return self.outcome.kind
        return None


class _Run:
    def __init__(self, mode: Literal["preview", "single", "bundle"]) -> None:
        self.mode = mode
        self.trace: list[WorkflowState] = []
        self.resource: dict | None = None
        self.outcome: SubmissionOutcome | None = None

    def enter(self, state: WorkflowState) -> None:
        self.trace.append(state)
        logger.debug("%s claim workflow -> %s", self.mode, state.value)

    def abort(self, error: ClaimError | None = None) -> WorkflowResult:
        self.trace.append(WorkflowState.ABORTED)
        reason = error if error is not None else getattr(self.outcome, "kind", "unknown")
        logger.info("%s claim workflow aborted: %s", self.mode, reason)
        return WorkflowResult(
            mode=self.mode,
            state=WorkflowState.ABORTED,
            trace=self.trace,
            resource=self.resource,
            outcome=self.outcome,
            error=error,
        )

    def done(self, record: ClaimRecord | None = None, warnings: list[str] | None = None) -> WorkflowResult:
        self.trace.append(WorkflowState.DONE)
        return WorkflowResult(
            mode=self.mode,
            state=WorkflowState.DONE,
            trace=self.trace,
            resource=self.resource,
            outcome=self.outcome,
            record=record,
            warnings=warnings or [],
        )


# ------------------------------------------------------------------
# Workflow
# ------------------------------------------------------------------

class ClaimWorkflow:
    """Compose resolver, builder, assembler and client into the three modes."""

    def __init__(
        self,
        resolver: MetadataResolver,
        client: FHIRClient,
        store: ClaimRecordStore | None = None,
        builder: ReferenceGraphBuilder | None = None,
        assembler: DocumentAssembler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._resolver = resolver
        self._client = client
        self.store = store if store is not None else InMemoryClaimStore()
        self._builder = builder or ReferenceGraphBuilder()
        self._assembler = assembler or DocumentAssembler()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ClaimRecordStore | None = None,
    ) -> "ClaimWorkflow":
        primary = None
        if settings.catalog_base_url:
            primary = HTTPMetadataStore(settings.catalog_base_url, timeout=settings.catalog_timeout_seconds)
        client = FHIRClient(FHIRClientConfig(
            base_url=settings.fhir_base_url,
            timeout=settings.fhir_timeout_seconds,
            max_redirects=settings.fhir_max_redirects,
        ))
        return cls(
            resolver=MetadataResolver(primary=primary, cache=settings.catalog_cache),
            client=client,
            store=store,
        )

    def preview(self, payload: Mapping[str, Any] | ClaimRequest) -> WorkflowResult:
        """Assemble a draft claim without submitting or persisting anything.

        With ``encounter_id`` the draft is a single Claim; otherwise it is
        the transaction Bundle a bundle submission would send.
        """
        run = _Run("preview")
        try:
            request = _parse(ClaimRequest, payload)
            parties = request.parties()
            encounter_ref = request.encounter_ref()
            encounter, claim = self._resolve_and_build(run, request, parties, status="draft")
            run.enter(WorkflowState.ASSEMBLING)
            if encounter_ref is not None:
                run.resource = self._assembler.assemble_single(claim, encounter_ref)
            else:
                transaction = self._assembler.assemble_transaction(
                    parties.patient, parties.practitioner, encounter, claim
                )
                run.resource = transaction.to_bundle()
        except ClaimError as exc:
            return run.abort(exc)
        return run.done()

    def submit_single(self, payload: Mapping[str, Any] | SingleSubmitRequest) -> WorkflowResult:
        """Submit one Claim against an existing encounter, patient and practitioner."""
        run = _Run("single")
        try:
            request = _parse(SingleSubmitRequest, payload)
            parties = request.parties()
            encounter_ref = request.encounter_ref()
            not_persisted = [
                label for label, party in (("patient", parties.patient), ("practitioner", parties.practitioner))
                if not party.is_persisted
            ]
            if not_persisted:
                raise ClaimValidationError(
                    "Single submission needs existing parties; use bundle submission to create them",
                    [f"{label} must be 'persisted:<id>'" for label in not_persisted],
                )
            _, claim = self._resolve_and_build(run, request, parties, status="active")
            run.enter(WorkflowState.ASSEMBLING)
            resource = self._assembler.assemble_single(claim, encounter_ref)
            run.resource = resource
        except ClaimError as exc:
            return run.abort(exc)

        run.enter(WorkflowState.SUBMITTING)
        run.outcome = self._client.submit(resource)
        if not isinstance(run.outcome, Accepted):
            return run.abort()

        warnings: list[str] = []
        server_ids = {
            "Patient": parties.patient.id,
            "Practitioner": parties.practitioner.id,
            "Encounter": encounter_ref.id,
        }
        claim_id = run.outcome.id_for("Claim")
        if claim_id is None:
            warnings.append("Server accepted the claim but returned no Claim id")
        else:
            server_ids["Claim"] = claim_id
        return self._persist(run, claim, server_ids, warnings)

    def submit_bundle(self, payload: Mapping[str, Any] | BundleSubmitRequest) -> WorkflowResult:
        """Submit a transaction creating the encounter, claim and any missing parties."""
        run = _Run("bundle")
        try:
            request = _parse(BundleSubmitRequest, payload)
            parties = request.parties()
            encounter, claim = self._resolve_and_build(run, request, parties, status="active")
            run.enter(WorkflowState.ASSEMBLING)
            transaction = self._assembler.assemble_transaction(
                parties.patient, parties.practitioner, encounter, claim
            )
            run.resource = transaction.to_bundle()
        except ClaimError as exc:
            return run.abort(exc)

        run.enter(WorkflowState.SUBMITTING)
        run.outcome = self._client.submit(transaction)
        if not isinstance(run.outcome, Accepted):
            return run.abort()

        warnings: list[str] = []
        server_ids = {
            party.resource_type: party.id
            for party in (parties.patient, parties.practitioner)
            if party.is_persisted
        }
        server_ids.update(run.outcome.server_ids)
        for entry in transaction.entries:
            if entry.resource_type not in server_ids:
                warnings.append(f"Server accepted the transaction but returned no {entry.resource_type} id")
        return self._persist(run, claim, server_ids, warnings)

    # ------------------------------------------------------------------

    def _resolve_and_build(
        self,
        run: _Run,
        request: ClaimRequest,
        parties: Parties,
        status: Literal["draft", "active"],
    ):
        run.enter(WorkflowState.RESOLVING)
        catalog = self._resolver.resolve({item.code for item in request.items})
        run.enter(WorkflowState.BUILDING)
        return self._builder.build(
            request.items,
            request.notes,
            self._encounter_context(request.encounter),
            parties,
            catalog,
            status=status,
            priority=request.priority,
        )

    def _encounter_context(self, encounter: EncounterInput | None) -> EncounterContext:
        now = self._clock()
        if encounter is None:
            return EncounterContext(period_start=now, created=now)
        try:
            return EncounterContext(
                status=encounter.status,
                class_code=encounter.class_code,
                type_text=encounter.type_text,
                service_category=encounter.service_category,
                period_start=encounter.period_start,
                period_end=encounter.period_end,
                created=encounter.created or now,
            )
        except PydanticValidationError as exc:
            raise ClaimValidationError(
                "Invalid encounter",
                [f"encounter: {err['msg']}" for err in exc.errors()],
            ) from exc

    def _persist(
        self,
        run: _Run,
        claim: ClaimResource,
        server_ids: dict[str, str | None],
        warnings: list[str],
    ) -> WorkflowResult:
        run.enter(WorkflowState.PERSISTING)
        now = self._clock()
        ids = {k: v for k, v in server_ids.items() if v}
        record = ClaimRecord(
            claim_id=str(uuid.uuid4()),
            mode=run.mode,
            server_ids=ids,
            patient_id=ids.get("Patient"),
            encounter_id=ids.get("Encounter"),
            items=tuple(RecordLine.from_line(line) for line in claim.items),
            total=claim.total,
            status=claim.status,
            created_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.save(record)
        except Exception as exc:
            message = (
                f"Reconciliation needed: server accepted claim {ids.get('Claim', '<unknown>')} "
                f"but the local record was not saved: {exc}"
            )
            logger.exception(message)
            return run.done(record=None, warnings=[*warnings, message])

        for warning in warnings:
            logger.warning(warning)
        logger.info(
            "%s claim accepted: server ids %s, total %s",
            run.mode, ids, claim.total,
        )
        return run.done(record=saved, warnings=warnings)


def _parse(model: type[_RequestT], payload: Any) -> _RequestT:
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, Mapping):
        raise ClaimValidationError(f"Claim request must be an object, got {type(payload).__name__}")
    try:
        return model.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise ClaimValidationError(
            "Invalid claim request",
            [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()],
        ) from exc


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _as_persisted(raw: str) -> str:
    raw = raw.strip()
    return raw if raw.startswith("persisted:") else f"persisted:{raw}"
