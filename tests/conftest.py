"""Shared pytest fixtures, response factories, and test markers.

Test tiers
----------
  unit        Fast, fully offline, zero external dependencies.

  integration Mock the FHIR server with requests-mock. Validates end-to-end
              workflow and HTTP-surface behaviour without real network calls.

  quality     Reference integrity, FHIR shape checks and property-based
              tests (Hypothesis). Always run offline.

  live        Real FHIR server calls. Skipped unless CLAIMS_LIVE_FHIR_BASE_URL
              is set. See tests/live/conftest.py.

Run specific tiers:
  pytest tests/unit tests/integration tests/quality   # offline only
  pytest tests/live -m live                           # live only
  pytest tests/ -v                                    # everything
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from claim_submission.billing.resolver import MetadataResolver
from claim_submission.fhir.assembler import DocumentAssembler
from claim_submission.fhir.fhir_client import FHIRClient, FHIRClientConfig
from claim_submission.fhir.graph_builder import Parties
from claim_submission.fhir.resources import EncounterContext, Identifier, PartyReference
from claim_submission.use_cases.claim_workflow import ClaimWorkflow
from claim_submission.use_cases.records import InMemoryClaimStore

FHIR_BASE_URL = "https://fhir.example.com/r4"
FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Pytest markers
# ---------------------------------------------------------------------------

def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast offline unit tests")
    config.addinivalue_line("markers", "integration: mock-based integration tests")
    config.addinivalue_line("markers", "quality: reference integrity, shape, property-based")
    config.addinivalue_line("markers", "live: requires a reachable FHIR server (skipped by default)")


# ---------------------------------------------------------------------------
# Deterministic identifiers and clock
# ---------------------------------------------------------------------------

def sequential_ids(start: int = 1) -> Callable[[], uuid.UUID]:
    """Return an id factory yielding UUID(int=start), UUID(int=start+1), ..."""
    counter = iter(range(start, start + 1_000_000))
    return lambda: uuid.UUID(int=next(counter))


@pytest.fixture
def id_factory() -> Callable[[], uuid.UUID]:
    return sequential_ids()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


# ---------------------------------------------------------------------------
# Claim context fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def encounter_context() -> EncounterContext:
    return EncounterContext(
        period_start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        period_end=datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc),
        service_category="General practice",
        created=FIXED_NOW,
    )


@pytest.fixture
def persisted_parties() -> Parties:
    return Parties(
        patient=PartyReference.persisted("Patient", "pat-001"),
        practitioner=PartyReference.persisted("Practitioner", "prac-001"),
    )


@pytest.fixture
def new_parties() -> Parties:
    return Parties(
        patient=PartyReference(
            resource_type="Patient",
            name="Jordan Lee",
            identifier=Identifier(system="http://ns.electronichealth.net.au/id/medicare-number", value="2953123451"),
            gender="unknown",
        ),
        practitioner=PartyReference(
            resource_type="Practitioner",
            name="Dr Sam Patel",
            identifier=Identifier(system="http://ns.electronichealth.net.au/id/medicare-provider-number", value="2426621B"),
        ),
    )


@pytest.fixture
def resolver() -> MetadataResolver:
    """Static-catalog-only resolver (no primary store)."""
    return MetadataResolver()


# ---------------------------------------------------------------------------
# FHIR server response factories
# ---------------------------------------------------------------------------

FHIR_JSON_HEADERS = {"Content-Type": "application/fhir+json;charset=utf-8"}


def operation_outcome(*issues: tuple[str, str, str]) -> dict:
    """Build an OperationOutcome from (severity, code, diagnostics) tuples."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {"severity": severity, "code": code, "diagnostics": diagnostics}
            for severity, code, diagnostics in issues
        ],
    }


def transaction_response(*entries: tuple[str, str | None]) -> dict:
    """Build a transaction-response Bundle from (status, location) tuples."""
    return {
        "resourceType": "Bundle",
        "type": "transaction-response",
        "entry": [
            {"response": {"status": status, **({"location": location} if location else {})}}
            for status, location in entries
        ],
    }


# ---------------------------------------------------------------------------
# Workflow wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def fhir_client() -> FHIRClient:
    return FHIRClient(FHIRClientConfig(base_url=FHIR_BASE_URL))


@pytest.fixture
def claim_store() -> InMemoryClaimStore:
    return InMemoryClaimStore()


@pytest.fixture
def workflow(
    resolver: MetadataResolver,
    fhir_client: FHIRClient,
    claim_store: InMemoryClaimStore,
    id_factory,
    fixed_clock,
) -> ClaimWorkflow:
    return ClaimWorkflow(
        resolver=resolver,
        client=fhir_client,
        store=claim_store,
        assembler=DocumentAssembler(id_factory=id_factory),
        clock=fixed_clock,
    )


@pytest.fixture
def single_request() -> dict:
    """The canonical single-submit request: item 23, one note, existing encounter."""
    return {
        "items": [{"code": "23", "quantity": 1}],
        "notes": [{"text": "Reviewed blood pressure; continue current medication.", "kind": "clinical"}],
        "patient": "persisted:pat-001",
        "practitioner": "persisted:prac-001",
        "encounter_id": "enc-001",
    }


@pytest.fixture
def bundle_request() -> dict:
    return {
        "items": [
            {"code": "36", "quantity": 1},
            {"code": "30071", "quantity": 1, "modifiers": ["MOR50"]},
        ],
        "notes": [{"text": "Excised lesion left forearm sent for histology.", "kind": "clinical"}],
        "patient": {"ref": "new", "name": "Jordan Lee", "gender": "unknown"},
        "practitioner": "persisted:prac-001",
        "encounter": {
            "period_start": "2026-03-02T09:00:00Z",
            "period_end": "2026-03-02T09:25:00Z",
            "service_category": "General practice",
        },
    }
