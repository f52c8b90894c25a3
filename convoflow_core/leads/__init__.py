"""Sales funnel collaborator."""

from .funnel import (
    LeadStageClient,
    NullLeadStageClient,
    HttpLeadStageClient,
    StageLedger,
    LeadStageDispatcher,
    lead_id_for,
)

__all__ = [
    "LeadStageClient",
    "NullLeadStageClient",
    "HttpLeadStageClient",
    "StageLedger",
    "LeadStageDispatcher",
    "lead_id_for",
]
