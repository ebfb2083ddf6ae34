from .assembler import BundleEntry, DocumentAssembler, TransactionPayload, check_references
from .fhir_client import FHIRClient, FHIRClientConfig
from .graph_builder import Parties, ReferenceGraphBuilder
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
from .resources import (
    ClaimLineItem,
    ClaimResource,
    EncounterContext,
    EncounterResource,
    Identifier,
    PartyReference,
)

__all__ = [
    "Accepted",
    "BundleEntry",
    "ClaimLineItem",
    "ClaimResource",
    "DocumentAssembler",
    "EncounterContext",
    "EncounterResource",
    "EntryResult",
    "FHIRClient",
    "FHIRClientConfig",
    "Identifier",
    "Issue",
    "PartiallyApplied",
    "Parties",
    "PartyReference",
    "ReferenceGraphBuilder",
    "Rejected",
    "ServerId",
    "SubmissionOutcome",
    "TransactionPayload",
    "TransportFailure",
    "check_references",
]
