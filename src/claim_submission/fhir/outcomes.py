"""Typed results of a submission to the FHIR server."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Issue(BaseModel):
    """One OperationOutcome issue, kept verbatim."""

    model_config = ConfigDict(frozen=True)

    severity: str = "error"
    code: str = "unknown"
    diagnostics: str | None = None
    expression: tuple[str, ...] = ()
    raw: dict[str, Any] = Field(default_factory=dict, description="Issue as sent by the server")

    @classmethod
    def from_fhir(cls, issue: dict[str, Any]) -> "Issue":
        return cls(
            severity=str(issue.get("severity", "error")),
            code=str(issue.get("code", "unknown")),
            diagnostics=issue.get("diagnostics")
            or (issue.get("details") or {}).get("text"),
            expression=_expression(issue.get("expression")),
            raw=issue,
        )


def _expression(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


class ServerId(BaseModel):
    """Identifier the server assigned to a created or updated resource."""

    model_config = ConfigDict(frozen=True)

    resource_type: str
    id: str
    version_id: str | None = None
    full_url: str | None = Field(default=None, description="Synthetic id the entry was sent with")

    @property
    def reference(self) -> str:
        return f"{self.resource_type}/{self.id}"


class EntryResult(BaseModel):
    """Per-entry result from a transaction-response Bundle."""

    model_config = ConfigDict(frozen=True)

    index: int
    request_url: str | None = None
    full_url: str | None = None
    status: str
    location: str | None = None
    issues: tuple[Issue, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status.strip()[:1] == "2"


class Accepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["accepted"] = "accepted"
    status_code: int = 201
    resources: tuple[ServerId, ...] = ()

    def id_for(self, resource_type: str) -> str | None:
        return next((r.id for r in self.resources if r.resource_type == resource_type), None)

    @property
    def server_ids(self) -> dict[str, str]:
        return {r.resource_type: r.id for r in self.resources}


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["rejected"] = "rejected"
    status_code: int
    issues: tuple[Issue, ...] = ()


class PartiallyApplied(BaseModel):
    """Some transaction entries took effect and some did not.

    Needs manual reconciliation; never retried automatically.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["partially_applied"] = "partially_applied"
    status_code: int
    entries: tuple[EntryResult, ...] = ()

    @property
    def applied(self) -> list[EntryResult]:
        return [e for e in self.entries if e.succeeded]

    @property
    def failed(self) -> list[EntryResult]:
        return [e for e in self.entries if not e.succeeded]


class TransportFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["transport_failure"] = "transport_failure"
    cause: str
    status_code: int | None = None


SubmissionOutcome = Annotated[
    Union[Accepted, Rejected, PartiallyApplied, TransportFailure],
    Field(discriminator="kind"),
]
