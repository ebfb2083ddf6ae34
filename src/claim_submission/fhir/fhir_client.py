"""FHIR R4 HTTP submission client.

Sends one resource or one transaction Bundle and decodes the server's
answer into a SubmissionOutcome. Exactly one attempt is made per call:
retrying a transaction that may have partially applied risks duplicate
resources, so retry policy belongs to the caller.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import urljoin

import requests

from ..config import DEFAULT_MAX_REDIRECTS, DEFAULT_TIMEOUT_SECONDS
from ..errors import ClaimValidationError
from .assembler import TransactionPayload
from .outcomes import (
    Accepted,
    EntryResult,
    Issue,
    PartiallyApplied,
    Rejected,
    ServerId,
    SubmissionOutcome,
    TransportFailure,
)

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
_ACCEPTED_MEDIA_TYPES = {FHIR_JSON, "application/json"}
# Only these redirects keep the POST method and body.
_BODY_PRESERVING_REDIRECTS = {307, 308}
_LOCATION_RE = re.compile(
    r"(?:^|/)([A-Z][A-Za-z]+)/([A-Za-z0-9\-.]{1,64})(?:/_history/([A-Za-z0-9\-.]{1,64}))?/?$"
)


@dataclass(frozen=True)
class FHIRClientConfig:
    base_url: str
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))


class FHIRClient:
    """FHIR R4 REST client for submitting claims."""

    def __init__(
        self,
        config: FHIRClientConfig,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self.config.base_url

    def submit(self, payload: dict | TransactionPayload) -> SubmissionOutcome:
        """POST a resource or a transaction and return the typed outcome.

        Single resources go to ``{base_url}/{resourceType}``; transactions go
        to ``{base_url}``.

        Raises:
            ClaimValidationError: if ``payload`` is neither a FHIR resource
                dict nor a TransactionPayload.
        """
        request_entries: list[dict[str, Any]] | None = None
        if isinstance(payload, TransactionPayload):
            body = payload.to_bundle()
            request_entries = body["entry"]
            url = self.base_url
        elif isinstance(payload, dict) and payload.get("resourceType"):
            body = payload
            url = f"{self.base_url}/{payload['resourceType']}"
        else:
            raise ClaimValidationError("payload must be a FHIR resource dict or a TransactionPayload")

        headers = {
            "Content-Type": FHIR_JSON,
            "Accept": FHIR_JSON,
            "Prefer": "return=representation",
        }
        try:
            response = self._post(url, fhir_json(body).encode("utf-8"), headers)
        except requests.Timeout as exc:
            logger.warning("POST %s timed out after %ss", url, self.config.timeout)
            return TransportFailure(cause=f"timeout after {self.config.timeout}s: {exc}")
        except requests.RequestException as exc:
            logger.warning("POST %s failed: %s", url, exc)
            return TransportFailure(cause=f"connection failure: {exc}")
        if isinstance(response, TransportFailure):
            return response

        logger.info("POST %s -> HTTP %d", url, response.status_code)
        return _decode_response(response, request_entries)

    def _post(self, url: str, data: bytes, headers: dict[str, str]) -> requests.Response | TransportFailure:
        """POST ``data``, re-sending it on 307/308 up to ``max_redirects`` times.

        Any other redirect would replay the request as a GET without the
        body, so it is reported as a TransportFailure instead of followed.
        """
        for _ in range(self.config.max_redirects + 1):
            response = self._session.post(
                url, data=data, headers=headers, timeout=self.config.timeout, allow_redirects=False
            )
            if not response.is_redirect:
                return response
            status = response.status_code
            if status not in _BODY_PRESERVING_REDIRECTS:
                logger.warning("POST %s answered HTTP %d redirect; not following", url, status)
                return TransportFailure(
                    cause=f"HTTP {status} redirect to {response.headers['Location']} would drop the request body",
                    status_code=status,
                )
            url = urljoin(response.url or url, response.headers["Location"])
            logger.info("POST redirected (HTTP %d) to %s", status, url)
        logger.warning("POST %s exceeded %d redirects", url, self.config.max_redirects)
        return TransportFailure(
            cause=f"more than {self.config.max_redirects} redirects",
            status_code=response.status_code,
        )


def fhir_json(node: Any) -> str:
    """Serialize a FHIR JSON tree, writing Decimal values digit for digit.

    ``Decimal("39.10")`` goes out as ``39.10``; FHIR decimals keep their
    precision, which a float round-trip would lose.
    """
    if isinstance(node, dict):
        return "{" + ",".join(f"{json.dumps(str(key))}:{fhir_json(value)}" for key, value in node.items()) + "}"
    if isinstance(node, (list, tuple)):
        return "[" + ",".join(fhir_json(value) for value in node) + "]"
    if isinstance(node, Decimal):
        return str(node)
    return json.dumps(node)


# ------------------------------------------------------------------
# Response decoding
# ------------------------------------------------------------------

def _decode_response(
    response: requests.Response,
    request_entries: list[dict[str, Any]] | None,
) -> SubmissionOutcome:
    status = response.status_code
    body: Any = None
    if response.content:
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        if media_type not in _ACCEPTED_MEDIA_TYPES:
            return TransportFailure(
                cause=f"unexpected content type {media_type or 'none'!r} (HTTP {status})",
                status_code=status,
            )
        try:
            body = response.json()
        except ValueError:
            return TransportFailure(cause=f"undecodable {media_type} body (HTTP {status})", status_code=status)

    if 200 <= status < 300:
        if request_entries is not None:
            return _decode_transaction(status, body, request_entries)
        return _decode_single(status, body, response.headers)
    if 400 <= status < 500:
        return Rejected(status_code=status, issues=tuple(_issues(body, status, response.reason)))
    return TransportFailure(cause=f"HTTP {status} {response.reason or ''}".strip(), status_code=status)


def _decode_single(status: int, body: Any, headers: Any) -> SubmissionOutcome:
    resource_type = None
    resource_id = None
    version_id = None
    if isinstance(body, dict) and body.get("resourceType") not in (None, "OperationOutcome"):
        resource_type = body.get("resourceType")
        resource_id = body.get("id")
        version_id = (body.get("meta") or {}).get("versionId")

    if resource_id is None:
        parsed = _parse_location(headers.get("Location") or headers.get("Content-Location"))
        if parsed is not None:
            resource_type, resource_id, version_id = parsed

    if resource_type is None or resource_id is None:
        logger.warning("HTTP %d response carried no resource id", status)
        return Accepted(status_code=status)
    return Accepted(
        status_code=status,
        resources=(ServerId(resource_type=resource_type, id=str(resource_id), version_id=version_id),),
    )


def _decode_transaction(
    status: int,
    body: Any,
    request_entries: list[dict[str, Any]],
) -> SubmissionOutcome:
    if not isinstance(body, dict) or body.get("resourceType") != "Bundle":
        return TransportFailure(
            cause=f"HTTP {status} transaction answer is not a Bundle",
            status_code=status,
        )

    response_entries = body.get("entry") or []
    if not isinstance(response_entries, list):
        return TransportFailure(
            cause=f"HTTP {status} transaction answer entry is not a list",
            status_code=status,
        )
    results: list[EntryResult] = []
    for index, request_entry in enumerate(request_entries):
        sent_url = request_entry.get("request", {}).get("url")
        full_url = request_entry.get("fullUrl")
        if index >= len(response_entries):
            results.append(EntryResult(index=index, request_url=sent_url, full_url=full_url, status="unknown"))
            continue
        entry = response_entries[index]
        if not isinstance(entry, dict) or not isinstance(entry.get("response") or {}, dict):
            return TransportFailure(
                cause=f"HTTP {status} transaction answer entry {index} is not a Bundle entry",
                status_code=status,
            )
        answer = entry.get("response") or {}
        outcome = answer.get("outcome")
        results.append(EntryResult(
            index=index,
            request_url=sent_url,
            full_url=full_url,
            status=str(answer.get("status", "unknown")),
            location=answer.get("location"),
            issues=tuple(_issues(outcome, status, "")) if outcome else (),
        ))

    succeeded = [r for r in results if r.succeeded]
    if len(succeeded) == len(results):
        resources = []
        for result, entry in zip(results, response_entries):
            server_id = _entry_server_id(result, entry)
            if server_id is None:
                logger.warning("Transaction entry %d carried no server id", result.index)
                continue
            resources.append(server_id)
        return Accepted(status_code=status, resources=tuple(resources))
    if not succeeded:
        issues = [issue for r in results for issue in r.issues]
        if not issues:
            issues = [Issue(
                severity="error",
                code="processing",
                diagnostics=f"All {len(results)} transaction entries failed",
            )]
        return Rejected(status_code=status, issues=tuple(issues))
    logger.error(
        "Transaction partially applied: %d of %d entries succeeded",
        len(succeeded), len(results),
    )
    return PartiallyApplied(status_code=status, entries=tuple(results))


def _entry_server_id(result: EntryResult, entry: dict[str, Any]) -> ServerId | None:
    parsed = _parse_location(result.location)
    if parsed is None:
        resource = entry.get("resource") or {}
        if not resource.get("resourceType") or not resource.get("id"):
            return None
        parsed = (resource["resourceType"], str(resource["id"]), (resource.get("meta") or {}).get("versionId"))
    resource_type, resource_id, version_id = parsed
    return ServerId(
        resource_type=resource_type,
        id=resource_id,
        version_id=version_id,
        full_url=result.full_url,
    )


def _parse_location(location: str | None) -> tuple[str, str, str | None] | None:
    if not location:
        return None
    match = _LOCATION_RE.search(location.strip())
    if match is None:
        return None
    return match.group(1), match.group(2), match.group(3)


def _issues(body: Any, status: int, reason: str | None) -> list[Issue]:
    if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome":
        issues = [Issue.from_fhir(i) for i in body.get("issue") or [] if isinstance(i, dict)]
        if issues:
            return issues
    return [Issue(
        severity="error",
        code="processing",
        diagnostics=f"HTTP {status} {reason or ''} without an OperationOutcome".replace("  ", " "),
    )]
