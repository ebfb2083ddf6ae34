from .claim_workflow import (
    BundleSubmitRequest,
    ClaimRequest,
    ClaimWorkflow,
    SingleSubmitRequest,
    WorkflowResult,
    WorkflowState,
)
from .records import ClaimRecord, ClaimRecordStore, ClaimStats, InMemoryClaimStore

__all__ = [
    "BundleSubmitRequest",
    "ClaimRecord",
    "ClaimRecordStore",
    "ClaimRequest",
    "ClaimStats",
    "ClaimWorkflow",
    "InMemoryClaimStore",
    "SingleSubmitRequest",
    "WorkflowResult",
    "WorkflowState",
]
