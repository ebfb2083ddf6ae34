"""Unit tests for the claim workflow state machine."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
import requests
import requests_mock as req_mock

from claim_submission.billing.models import Money
from claim_submission.errors import ClaimValidationError, PersistenceError
from claim_submission.fhir.outcomes import Accepted
from claim_submission.use_cases.claim_workflow import (
    ClaimWorkflow,
    EncounterInput,
    PartyInput,
    WorkflowState,
)
from claim_submission.use_cases.records import InMemoryClaimStore
from tests.conftest import (
    FHIR_BASE_URL,
    FHIR_JSON_HEADERS,
    FIXED_NOW,
    operation_outcome,
    transaction_response,
)

CLAIM_URL = f"{FHIR_BASE_URL}/Claim"

FULL_TRACE = [
    WorkflowState.RESOLVING,
    WorkflowState.BUILDING,
    WorkflowState.ASSEMBLING,
    WorkflowState.SUBMITTING,
    WorkflowState.PERSISTING,
    WorkflowState.DONE,
]


class FailingStore(InMemoryClaimStore):
    def __init__(self, error: Exception | None = None) -> None:
        super().__init__()
        self.error = error or PersistenceError("disk full")

    def save(self, record):
        raise self.error


def _created(resource_id: str) -> dict:
    return {"resourceType": "Claim", "id": resource_id, "meta": {"versionId": "1"}}


class TestPreview:
    def test_single_preview_returns_claim_without_http(self, workflow, single_request) -> None:
        with req_mock.Mocker() as m:
            result = workflow.preview(single_request)
            assert m.call_count == 0
        assert result.ok
        assert result.mode == "preview"
        assert result.resource["resourceType"] == "Claim"
        assert result.resource["status"] == "draft"
        assert result.record is None
        assert workflow.store.list() == []

    def test_preview_without_encounter_id_returns_bundle(self, workflow, bundle_request) -> None:
        result = workflow.preview(bundle_request)
        assert result.ok
        assert result.resource["resourceType"] == "Bundle"
        types = [e["resource"]["resourceType"] for e in result.resource["entry"]]
        assert types == ["Patient", "Encounter", "Claim"]

    def test_preview_trace_stops_after_assembling(self, workflow, single_request) -> None:
        result = workflow.preview(single_request)
        assert result.trace == [
            WorkflowState.RESOLVING,
            WorkflowState.BUILDING,
            WorkflowState.ASSEMBLING,
            WorkflowState.DONE,
        ]

    def test_preview_unknown_code(self, workflow, single_request) -> None:
        single_request["items"].append({"code": "99999"})
        result = workflow.preview(single_request)
        assert result.state is WorkflowState.ABORTED
        assert result.failure_kind == "metadata_not_found"
        assert result.error.missing_codes == frozenset({"99999"})


class TestSubmitSingle:
    def test_accepted_claim_is_recorded(self, workflow, single_request) -> None:
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, status_code=201, json=_created("claim-501"), headers=FHIR_JSON_HEADERS)
            result = workflow.submit_single(single_request)
        assert result.ok
        assert result.trace == FULL_TRACE
        record = result.record
        assert record.total == Money(value=Decimal("39.10"), currency="AUD")
        assert record.server_ids == {
            "Patient": "pat-001",
            "Practitioner": "prac-001",
            "Encounter": "enc-001",
            "Claim": "claim-501",
        }
        assert record.mode == "single"
        assert record.created_at == FIXED_NOW
        assert workflow.store.list() == [record]

    def test_submitted_claim_is_active(self, workflow, single_request) -> None:
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, status_code=201, json=_created("claim-501"), headers=FHIR_JSON_HEADERS)
            workflow.submit_single(single_request)
            sent = m.last_request.json()
        assert sent["status"] == "active"
        assert sent["item"][0]["encounter"][0]["reference"] == "Encounter/enc-001"

    def test_bare_party_id_rejected(self, workflow, single_request) -> None:
        single_request["patient"] = "pat-001"
        single_request["practitioner"] = {"ref": "prac-001"}
        result = workflow.submit_single(single_request)
        assert result.failure_kind == "validation_error"

    def test_new_patient_rejected_locally(self, workflow, single_request) -> None:
        single_request["patient"] = {"ref": "new", "name": "Jordan Lee"}
        with req_mock.Mocker() as m:
            result = workflow.submit_single(single_request)
            assert m.call_count == 0
        assert result.failure_kind == "validation_error"
        assert "patient" in str(result.error)

    def test_missing_encounter_id_rejected(self, workflow, single_request) -> None:
        del single_request["encounter_id"]
        result = workflow.submit_single(single_request)
        assert result.failure_kind == "validation_error"
        assert any("encounter_id" in e for e in result.error.errors)

    def test_unknown_code_never_reaches_server(self, workflow, single_request) -> None:
        single_request["items"] = [{"code": "99999"}]
        with req_mock.Mocker() as m:
            result = workflow.submit_single(single_request)
            assert m.call_count == 0
        assert result.failure_kind == "metadata_not_found"
        assert result.trace == [WorkflowState.RESOLVING, WorkflowState.ABORTED]
        assert workflow.store.list() == []

    def test_rejected_claim_is_not_recorded(self, workflow, single_request) -> None:
        body = operation_outcome(("error", "required", "Claim.insurance: minimum required = 1"))
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, status_code=400, json=body, headers=FHIR_JSON_HEADERS)
            result = workflow.submit_single(single_request)
        assert result.state is WorkflowState.ABORTED
        assert result.failure_kind == "rejected"
        assert result.outcome.issues[0].raw == body["issue"][0]
        assert result.record is None
        assert workflow.store.list() == []

    def test_timeout_is_transport_failure(self, workflow, single_request) -> None:
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, exc=requests.exceptions.ReadTimeout)
            result = workflow.submit_single(single_request)
            assert m.call_count == 1
        assert result.failure_kind == "transport_failure"
        assert workflow.store.list() == []

    def test_accepted_without_id_warns(self, workflow, single_request) -> None:
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, status_code=201)
            result = workflow.submit_single(single_request)
        assert result.ok
        assert "Claim" not in result.record.server_ids
        assert any("no Claim id" in w for w in result.warnings)

    @pytest.mark.parametrize("error", [PersistenceError("disk full"), OSError("disk full"), RuntimeError("driver gone")])
    def test_store_failure_after_acceptance_warns(self, resolver, fhir_client, single_request, error) -> None:
        workflow = ClaimWorkflow(resolver=resolver, client=fhir_client, store=FailingStore(error))
        with req_mock.Mocker() as m:
            m.post(CLAIM_URL, status_code=201, json=_created("claim-501"), headers=FHIR_JSON_HEADERS)
            result = workflow.submit_single(single_request)
        assert result.ok
        assert result.record is None
        assert any("Reconciliation" in w and "claim-501" in w for w in result.warnings)
        assert isinstance(result.outcome, Accepted)
        assert result.trace[-2:] == [WorkflowState.PERSISTING, WorkflowState.DONE]

    def test_non_object_payload(self, workflow) -> None:
        result = workflow.submit_single(["not", "an", "object"])
        assert result.failure_kind == "validation_error"


class TestSubmitBundle:
    def _respond(self, m) -> None:
        m.post(FHIR_BASE_URL, headers=FHIR_JSON_HEADERS, json=transaction_response(
            ("201 Created", "Patient/pat-900/_history/1"),
            ("201 Created", "Encounter/enc-900/_history/1"),
            ("201 Created", "Claim/claim-900/_history/1"),
        ))

    def test_accepted_bundle_is_recorded(self, workflow, bundle_request) -> None:
        with req_mock.Mocker() as m:
            self._respond(m)
            result = workflow.submit_bundle(bundle_request)
        assert result.ok
        assert result.trace == FULL_TRACE
        assert result.record.server_ids == {
            "Patient": "pat-900",
            "Practitioner": "prac-001",
            "Encounter": "enc-900",
            "Claim": "claim-900",
        }
        assert result.record.patient_id == "pat-900"
        assert result.record.total == Money(value=Decimal("100.20"), currency="AUD")

    def test_transaction_entries_in_dependency_order(self, workflow, bundle_request) -> None:
        with req_mock.Mocker() as m:
            self._respond(m)
            workflow.submit_bundle(bundle_request)
            sent = m.last_request.json()
        assert sent["type"] == "transaction"
        assert [e["request"]["url"] for e in sent["entry"]] == ["Patient", "Encounter", "Claim"]
        claim = sent["entry"][-1]["resource"]
        assert claim["patient"]["reference"] == sent["entry"][0]["fullUrl"]
        assert claim["provider"]["reference"] == "Practitioner/prac-001"

    def test_partially_applied_is_not_recorded(self, workflow, bundle_request) -> None:
        with req_mock.Mocker() as m:
            m.post(FHIR_BASE_URL, headers=FHIR_JSON_HEADERS, json=transaction_response(
                ("201 Created", "Patient/pat-900/_history/1"),
                ("201 Created", "Encounter/enc-900/_history/1"),
                ("422 Unprocessable Entity", None),
            ))
            result = workflow.submit_bundle(bundle_request)
        assert result.failure_kind == "partially_applied"
        assert [e.request_url for e in result.outcome.failed] == ["Claim"]
        assert workflow.store.list() == []

    def test_missing_entry_id_warns(self, workflow, bundle_request) -> None:
        with req_mock.Mocker() as m:
            m.post(FHIR_BASE_URL, headers=FHIR_JSON_HEADERS, json=transaction_response(
                ("201 Created", "Patient/pat-900"),
                ("201 Created", None),
                ("201 Created", "Claim/claim-900"),
            ))
            result = workflow.submit_bundle(bundle_request)
        assert result.ok
        assert any("no Encounter id" in w for w in result.warnings)

    def test_existing_encounter_id_rejected(self, workflow, bundle_request) -> None:
        bundle_request["encounter_id"] = "enc-001"
        result = workflow.submit_bundle(bundle_request)
        assert result.failure_kind == "validation_error"

    def test_encounter_period_required(self, workflow, bundle_request) -> None:
        del bundle_request["encounter"]
        result = workflow.submit_bundle(bundle_request)
        assert result.failure_kind == "validation_error"

    @pytest.mark.parametrize("period_end", ["2026-03-02T08:59:59Z", "2026-03-02T19:00:00+11:00", "2026-03-02T08:00:00"])
    def test_inverted_encounter_period_rejected_before_resolving(self, workflow, bundle_request, period_end) -> None:
        bundle_request["encounter"]["period_end"] = period_end
        with req_mock.Mocker() as m:
            result = workflow.submit_bundle(bundle_request)
            assert m.call_count == 0
        assert result.failure_kind == "validation_error"
        assert result.trace == [WorkflowState.ABORTED]
        assert any("period_end" in e for e in result.error.errors)

    def test_encounter_context_errors_become_validation_errors(self, workflow) -> None:
        encounter = EncounterInput.model_construct(
            status="finished", class_code="AMB", type_text="Consult", service_category=None,
            period_start=FIXED_NOW, period_end=FIXED_NOW - timedelta(minutes=5), created=None,
        )
        with pytest.raises(ClaimValidationError) as excinfo:
            workflow._encounter_context(encounter)
        assert excinfo.value.errors[0].startswith("encounter:")

    @pytest.mark.parametrize("identifier", [{"system": "http://ns.electronichealth.net.au/id/hi/ihi/1.0"}, "8003608166690503", 42])
    def test_malformed_party_identifier_rejected(self, workflow, bundle_request, identifier) -> None:
        bundle_request["patient"]["identifier"] = identifier
        with req_mock.Mocker() as m:
            result = workflow.submit_bundle(bundle_request)
            assert m.call_count == 0
        assert result.failure_kind == "validation_error"
        assert any(e.startswith("patient.identifier") for e in result.error.errors)


class TestPartyInput:
    def test_bare_string_becomes_ref(self) -> None:
        party = PartyInput.model_validate("persisted:pat-001")
        assert party.to_reference("Patient").reference() == "Patient/pat-001"

    def test_new_party_keeps_details(self) -> None:
        party = PartyInput.model_validate({"name": "Jordan Lee", "gender": "unknown"})
        ref = party.to_reference("Patient")
        assert not ref.is_persisted
        assert ref.name == "Jordan Lee"


@pytest.mark.parametrize("raw", ["enc-001", "persisted:enc-001", " enc-001 "])
def test_encounter_id_forms(workflow, single_request, raw) -> None:
    single_request["encounter_id"] = raw
    result = workflow.preview(single_request)
    assert result.resource["item"][0]["encounter"][0]["reference"] == "Encounter/enc-001"
