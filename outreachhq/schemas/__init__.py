from .campaign import (
    RecipientSelection,
    CampaignName,
    TemplateSelection,
    InstructionRequest,
    DraftEdit,
    ApprovalRequest,
    ExclusionRequest,
)
from .recipient import RecipientCreate, RecipientUpdate, RecipientResponse

__all__ = [
    "RecipientSelection", "CampaignName", "TemplateSelection", "InstructionRequest",
    "DraftEdit", "ApprovalRequest", "ExclusionRequest",
    "RecipientCreate", "RecipientUpdate", "RecipientResponse",
]
