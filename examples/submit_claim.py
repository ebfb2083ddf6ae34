"""Example: preview a claim, then (mock-)submit it as a transaction Bundle.

Usage:
    python examples/submit_claim.py
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from claim_submission.billing.resolver import MetadataResolver
from claim_submission.config import configure_logging
from claim_submission.fhir.fhir_client import FHIRClient, FHIRClientConfig
from claim_submission.use_cases.claim_workflow import ClaimWorkflow


CLAIM_REQUEST = {
    "items": [
        {"code": "36"},
        {"code": "30071", "modifiers": ["MOR50"]},
    ],
    "notes": [{"text": "Excised lesion left forearm, sent for histology.", "kind": "clinical"}],
    "patient": {"ref": "new", "name": "Jordan Lee", "gender": "unknown"},
    "practitioner": "persisted:prac-001",
    "encounter": {
        "period_start": "2026-03-02T09:00:00Z",
        "period_end": "2026-03-02T09:25:00Z",
        "service_category": "General practice",
    },
}


def main() -> None:
    configure_logging("INFO")
    print("=== FHIR Claim Submission Demo ===\n")

    # 1. Mock the FHIR server: accept every transaction entry
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.is_redirect = False
    mock_response.headers = {"Content-Type": "application/fhir+json"}
    mock_response.content = b"{...}"
    mock_response.json.return_value = {
        "resourceType": "Bundle",
        "type": "transaction-response",
        "entry": [
            {"response": {"status": "201 Created", "location": "Patient/pat-901/_history/1"}},
            {"response": {"status": "201 Created", "location": "Encounter/enc-901/_history/1"}},
            {"response": {"status": "201 Created", "location": "Claim/claim-901/_history/1"}},
        ],
    }
    mock_session = MagicMock()
    mock_session.post.return_value = mock_response

    client = FHIRClient(FHIRClientConfig(base_url="http://localhost:8080/fhir"), session=mock_session)
    workflow = ClaimWorkflow(resolver=MetadataResolver(), client=client)

    # 2. Preview: nothing leaves the process
    preview = workflow.preview(CLAIM_REQUEST)
    print("Draft transaction Bundle:")
    print(json.dumps(preview.resource, indent=2, default=str))
    print()

    # 3. Submit
    result = workflow.submit_bundle(CLAIM_REQUEST)
    print(f"Workflow state: {result.state.value}")
    print(f"Trace: {' -> '.join(state.value for state in result.trace)}")
    if result.record is not None:
        print(f"Server ids: {result.record.server_ids}")
        print(f"Claim total: {result.record.total}")
    for warning in result.warnings:
        print(f"Warning: {warning}")
    print("\nSubmission demo complete.")


if __name__ == "__main__":
    main()
