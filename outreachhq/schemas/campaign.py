from pydantic import BaseModel, Field
from typing import List, Optional


class RecipientSelection(BaseModel):
    recipient_ids: List[int] = Field(default_factory=list)


class CampaignName(BaseModel):
    name: str


class TemplateSelection(BaseModel):
    template_id: Optional[int] = None  # null means "no template"


class InstructionRequest(BaseModel):
    text: str


class DraftEdit(BaseModel):
    subject: str
    body: str


class ApprovalRequest(BaseModel):
    approved: bool = True


class ExclusionRequest(BaseModel):
    excluded: bool = True
