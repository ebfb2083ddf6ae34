"""HTTP surface for the claim workflow.

Thin layer: hand the raw JSON body to the workflow, map its typed result
onto a status code. Tests inject a prepared workflow via
``app.state.workflow``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.responses import Response

from ..config import Settings, configure_logging
from ..errors import MetadataNotFound
from ..fhir.fhir_client import fhir_json
from ..use_cases.claim_workflow import ClaimWorkflow, WorkflowResult

logger = logging.getLogger(__name__)

app = FastAPI(title="Claim submission API", version="0.1.0")

_FAILURE_STATUS = {
    "validation_error": 400,
    "metadata_not_found": 422,
    "rejected": 422,
    "partially_applied": 409,
    "transport_failure": 502,
    "reference_integrity": 500,
}


def get_workflow(request: Request) -> ClaimWorkflow:
    workflow = getattr(request.app.state, "workflow", None)
    if workflow is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        workflow = ClaimWorkflow.from_settings(settings)
        request.app.state.workflow = workflow
        logger.info("Claim workflow configured for %s", settings.fhir_base_url)
    return workflow


@app.post("/claim/build")
def build_claim(request: Request, payload: Any = Body(...)) -> Response:
    return _respond(get_workflow(request).preview(payload), success_status=200)


@app.post("/claim/submit")
def submit_claim(request: Request, payload: Any = Body(...)) -> Response:
    return _respond(get_workflow(request).submit_single(payload), success_status=201)


@app.post("/claim/bundle/submit")
def submit_claim_bundle(request: Request, payload: Any = Body(...)) -> Response:
    return _respond(get_workflow(request).submit_bundle(payload), success_status=201)


@app.get("/claim/stats")
def claim_stats(request: Request) -> dict:
    return get_workflow(request).store.stats().model_dump(mode="json")


@app.get("/claim")
def list_claims(request: Request) -> list[dict]:
    return [r.model_dump(mode="json") for r in get_workflow(request).store.list()]


@app.get("/claim/patient/{patient_id}")
def list_patient_claims(patient_id: str, request: Request) -> list[dict]:
    return [r.model_dump(mode="json") for r in get_workflow(request).store.for_patient(patient_id)]


def _respond(result: WorkflowResult, success_status: int) -> Response:
    body: dict[str, Any] = {
        "mode": result.mode,
        "state": result.state.value,
        "trace": [state.value for state in result.trace],
        "warnings": result.warnings,
    }
    if result.resource is not None:
        body["resource"] = result.resource
    if result.outcome is not None:
        body["outcome"] = result.outcome.model_dump(mode="json")
    if result.record is not None:
        body["record"] = result.record.model_dump(mode="json")

    if result.ok:
        return _json(body, success_status)

    kind = result.failure_kind or "validation_error"
    error: dict[str, Any] = {"type": kind}
    if result.error is not None:
        error["message"] = str(result.error)
        error["errors"] = list(getattr(result.error, "errors", []))
        if isinstance(result.error, MetadataNotFound):
            error["missing_codes"] = sorted(result.error.missing_codes)
            error["primary_unreachable"] = result.error.primary_unreachable
    body["error"] = error
    return _json(body, _FAILURE_STATUS.get(kind, 500))


def _json(body: dict[str, Any], status_code: int) -> Response:
    # Claim resources carry Decimal money values
    return Response(content=fhir_json(body), status_code=status_code, media_type="application/json")
