"""FHIR R4 document assembly for claims.

Serializes the builder's records into FHIR R4 JSON dicts and wires the
references between them. Two shapes are produced:

  - assemble_single()      : one Claim referencing resources that already
                             exist on the server.
  - assemble_transaction() : a transaction Bundle that creates the missing
                             Patient/Practitioner, the Encounter and the
                             Claim, in dependency order, cross-referenced by
                             ``urn:uuid:`` synthetic identifiers.
"""

from __future__ import annotations

import copy
import re
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..billing.catalog import MBS_MODIFIER_SYSTEM, MBS_SYSTEM
from ..billing.models import ClinicalNote, Money
from ..errors import ClaimValidationError, ReferenceIntegrityError
from .resources import ClaimLineItem, ClaimResource, EncounterResource, PartyReference

_CLAIM_TYPE_SYSTEM     = "http://terminology.hl7.org/CodeSystem/claim-type"
_PRIORITY_SYSTEM       = "http://terminology.hl7.org/CodeSystem/processpriority"
_INFO_CATEGORY_SYSTEM  = "http://terminology.hl7.org/CodeSystem/claiminformationcategory"
_ACT_CODE_SYSTEM       = "http://terminology.hl7.org/CodeSystem/v3-ActCode"

_PERSISTED_REFERENCE_RE = re.compile(r"^[A-Z][A-Za-z]+/[A-Za-z0-9\-.]{1,64}$")
_SYNTHETIC_REFERENCE_RE = re.compile(r"^urn:uuid:[0-9a-f-]{36}$")

# Dependency order of entries in a transaction.
ENTRY_ORDER = ("Patient", "Practitioner", "Encounter", "Claim")


class BundleEntry(BaseModel):
    """One entry of a transaction payload."""

    model_config = ConfigDict(frozen=True)

    full_url: str | None = Field(default=None, description="Synthetic id for created resources")
    resource: dict[str, Any]
    method: Literal["POST", "PUT"] = "POST"
    url: str

    @property
    def resource_type(self) -> str:
        return self.resource["resourceType"]

    def to_fhir(self) -> dict[str, Any]:
        entry: dict[str, Any] = {}
        if self.full_url:
            entry["fullUrl"] = self.full_url
        entry["resource"] = copy.deepcopy(self.resource)
        entry["request"] = {"method": self.method, "url": self.url}
        return entry


class TransactionPayload(BaseModel):
    """Ordered entries applied atomically by the server."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[BundleEntry, ...]

    def to_bundle(self) -> dict[str, Any]:
        return {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [entry.to_fhir() for entry in self.entries],
        }

    def entry_for(self, resource_type: str) -> BundleEntry | None:
        return next((e for e in self.entries if e.resource_type == resource_type), None)

    @property
    def synthetic_ids(self) -> list[str]:
        return [e.full_url for e in self.entries if e.full_url]


class DocumentAssembler:
    """Assemble claim documents with fully resolved references."""

    def __init__(self, id_factory: Callable[[], uuid.UUID] = uuid.uuid4) -> None:
        self._id_factory = id_factory

    def assemble_single(self, claim: ClaimResource, encounter_ref: PartyReference) -> dict:
        """Serialize a Claim whose encounter, patient and provider already exist.

        Raises:
            ClaimValidationError: if any referenced party is not persisted.
            ReferenceIntegrityError: if the output holds a non-persisted reference.
        """
        errors = []
        if encounter_ref.resource_type != "Encounter":
            errors.append(f"encounter_ref must be an Encounter, got {encounter_ref.resource_type}")
        for label, party in (("encounter", encounter_ref), ("patient", claim.patient),
                             ("provider", claim.provider)):
            if not party.is_persisted:
                errors.append(f"{label} must reference an existing resource")
        if errors:
            raise ClaimValidationError("Single claim submission needs persisted references", errors)

        resource = _claim_resource(
            claim,
            patient_ref=claim.patient.reference(),
            provider_ref=claim.provider.reference(),
            encounter_ref=encounter_ref.reference(),
        )
        check_references(resource)
        return resource

    def assemble_transaction(
        self,
        patient_ref: PartyReference,
        practitioner_ref: PartyReference,
        encounter: EncounterResource,
        claim: ClaimResource,
    ) -> TransactionPayload:
        """Build a transaction creating everything the claim needs that does not exist yet.

        Raises:
            ClaimValidationError: if the parties disagree with the records.
            ReferenceIntegrityError: if the payload fails reference checks.
        """
        if encounter.subject != patient_ref or claim.patient != patient_ref:
            raise ClaimValidationError("patient_ref does not match the encounter and claim subject")
        if encounter.participant != practitioner_ref or claim.provider != practitioner_ref:
            raise ClaimValidationError("practitioner_ref does not match the encounter and claim provider")
        if claim.encounter != encounter.local_id:
            raise ClaimValidationError(
                f"claim refers to encounter {claim.encounter!r}, got {encounter.local_id!r}"
            )

        entries: list[BundleEntry] = []

        def wire(party: PartyReference, resource: dict) -> str:
            if party.is_persisted:
                return party.reference()
            full_url = self._synthetic_id()
            entries.append(BundleEntry(full_url=full_url, resource=resource, url=party.resource_type))
            return full_url

        patient_wire = wire(patient_ref, _patient_resource(patient_ref))
        practitioner_wire = wire(practitioner_ref, _practitioner_resource(practitioner_ref))

        encounter_url = self._synthetic_id()
        entries.append(BundleEntry(
            full_url=encounter_url,
            resource=_encounter_resource(encounter, patient_wire, practitioner_wire),
            url="Encounter",
        ))
        entries.append(BundleEntry(
            full_url=self._synthetic_id(),
            resource=_claim_resource(claim, patient_wire, practitioner_wire, encounter_url),
            url="Claim",
        ))

        payload = TransactionPayload(entries=tuple(entries))
        check_references(payload)
        return payload

    def _synthetic_id(self) -> str:
        return f"urn:uuid:{self._id_factory()}"


# ------------------------------------------------------------------
# Reference checks
# ------------------------------------------------------------------

def check_references(target: TransactionPayload | dict) -> None:
    """Verify every reference resolves.

    For a single resource every reference must be a persisted ``Type/id``.
    For a payload a reference may also name the ``fullUrl`` of an earlier
    entry; synthetic ids must be unique.

    Raises:
        ReferenceIntegrityError: listing every offending reference.
    """
    errors: list[str] = []
    if isinstance(target, TransactionPayload):
        seen: set[str] = set()
        for index, entry in enumerate(target.entries):
            for ref in iter_references(entry.resource):
                if _PERSISTED_REFERENCE_RE.match(ref):
                    continue
                if ref in seen:
                    continue
                errors.append(
                    f"entry[{index}] {entry.resource_type} references {ref!r} "
                    "which is neither persisted nor created by an earlier entry"
                )
            if entry.full_url:
                if not _SYNTHETIC_REFERENCE_RE.match(entry.full_url):
                    errors.append(f"entry[{index}] fullUrl {entry.full_url!r} is not a urn:uuid")
                if entry.full_url in seen:
                    errors.append(f"entry[{index}] reuses synthetic id {entry.full_url!r}")
                seen.add(entry.full_url)
    else:
        for ref in iter_references(target):
            if not _PERSISTED_REFERENCE_RE.match(ref):
                errors.append(f"reference {ref!r} does not name a persisted resource")

    if errors:
        bullet_list = "\n  - ".join(errors)
        raise ReferenceIntegrityError(
            f"Dangling reference(s) ({len(errors)} error(s)):\n  - {bullet_list}"
        )


def iter_references(node: Any) -> Iterator[str]:
    """Yield every ``reference`` string inside a FHIR JSON structure."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str):
                yield value
            else:
                yield from iter_references(value)
    elif isinstance(node, list):
        for value in node:
            yield from iter_references(value)


# ------------------------------------------------------------------
# Private serializers
# ------------------------------------------------------------------

def _fhir_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _money(money: Money) -> dict[str, Any]:
    return {"value": money.value, "currency": money.currency}


def _party_fields(party: PartyReference) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if party.identifier is not None:
        identifier = {"value": party.identifier.value}
        if party.identifier.system:
            identifier = {"system": party.identifier.system, **identifier}
        fields["identifier"] = [identifier]
    if party.name:
        fields["name"] = [{"text": party.name}]
    return fields


def _patient_resource(party: PartyReference) -> dict[str, Any]:
    resource: dict[str, Any] = {"resourceType": "Patient", **_party_fields(party)}
    if party.gender:
        resource["gender"] = party.gender
    if party.birth_date:
        resource["birthDate"] = party.birth_date.isoformat()
    return resource


def _practitioner_resource(party: PartyReference) -> dict[str, Any]:
    return {"resourceType": "Practitioner", **_party_fields(party)}


def _encounter_resource(
    encounter: EncounterResource,
    patient_ref: str,
    practitioner_ref: str,
) -> dict[str, Any]:
    context = encounter.context
    period = {"start": _fhir_datetime(context.period_start)}
    if context.period_end is not None:
        period["end"] = _fhir_datetime(context.period_end)

    resource: dict[str, Any] = {
        "resourceType": "Encounter",
        "status": context.status,
        "class": {"system": _ACT_CODE_SYSTEM, "code": context.class_code},
        "type": [{"text": context.type_text}],
        "subject": {"reference": patient_ref},
        "participant": [{"individual": {"reference": practitioner_ref}}],
        "period": period,
    }
    if context.service_category:
        resource["serviceType"] = {"text": context.service_category}
    return resource


def _claim_resource(
    claim: ClaimResource,
    patient_ref: str,
    provider_ref: str,
    encounter_ref: str,
) -> dict[str, Any]:
    resource: dict[str, Any] = {
        "resourceType": "Claim",
        "status": claim.status,
        "type": {"coding": [{"system": _CLAIM_TYPE_SYSTEM, "code": "professional"}]},
        "use": "claim",
        "patient": {"reference": patient_ref},
        "created": _fhir_datetime(claim.created),
        "provider": {"reference": provider_ref},
        "priority": {"coding": [{"system": _PRIORITY_SYSTEM, "code": claim.priority}]},
    }
    if claim.coverage is not None:
        resource["insurance"] = [{
            "sequence": 1,
            "focal": True,
            "coverage": {"reference": claim.coverage.reference()},
        }]
    if claim.notes:
        resource["supportingInfo"] = [
            _supporting_info(sequence, note)
            for sequence, note in enumerate(claim.notes, start=1)
        ]
    resource["item"] = [_claim_item(line, encounter_ref) for line in claim.items]
    resource["total"] = _money(claim.total)
    return resource


def _supporting_info(sequence: int, note: ClinicalNote) -> dict[str, Any]:
    info: dict[str, Any] = {
        "sequence": sequence,
        "category": {
            "coding": [{"system": _INFO_CATEGORY_SYSTEM, "code": "info"}],
            "text": note.kind,
        },
        "valueString": note.text,
    }
    if note.authored is not None:
        info["timingDate"] = _fhir_datetime(note.authored)[:10]
    return info


def _claim_item(line: ClaimLineItem, encounter_ref: str) -> dict[str, Any]:
    coding = {"system": MBS_SYSTEM, "code": line.billing_code.code}
    if line.billing_code.description:
        coding["display"] = line.billing_code.description
    item: dict[str, Any] = {
        "sequence": line.sequence,
        "productOrService": {"coding": [coding]},
    }
    if line.modifiers:
        item["modifier"] = [
            {"coding": [{"system": MBS_MODIFIER_SYSTEM, "code": modifier}]}
            for modifier in line.modifiers
        ]
    item["quantity"] = {"value": line.quantity}
    item["unitPrice"] = _money(line.unit_price)
    if line.adjustments:
        item["factor"] = line.factor
    item["net"] = _money(line.net)
    item["encounter"] = [{"reference": encounter_ref}]
    return item
