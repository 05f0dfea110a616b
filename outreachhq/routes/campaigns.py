"""
Campaign routes: the wizard, generation runs, draft review and sending.

Every operation addresses its campaign by explicit id. Generation endpoints
return 202 as soon as the run is scheduled; callers poll ``/progress`` or
subscribe to ``campaign:<id>`` on the event stream.
"""
import asyncio

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ..config import get_settings
from ..database import get_db
from ..engine.registry import CampaignRegistry
from ..engine.state_machine import CampaignStatus
from ..limiter import limiter
from ..models.template import Template
from ..responses import not_found, paginated
from ..schemas.campaign import (
    ApprovalRequest,
    CampaignName,
    DraftEdit,
    ExclusionRequest,
    InstructionRequest,
    RecipientSelection,
    TemplateSelection,
)

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])
logger = logging.getLogger(__name__)
settings = get_settings()


def get_registry(request: Request) -> CampaignRegistry:
    """The registry built at startup; tests swap it through dependency_overrides."""
    return request.app.state.registry


def get_selected_template(selection: TemplateSelection, db: Session = Depends(get_db)) -> Optional[Template]:
    """Resolve the chosen template row; sync so the lookup runs in the threadpool."""
    if selection.template_id is None:
        return None
    template = db.query(Template).filter(Template.id == selection.template_id).first()
    if not template:
        not_found("Template", selection.template_id)
    return template


def _record_template_use(db: Session, template: Template):
    template.use_count = (template.use_count or 0) + 1
    db.commit()


# ============================================================
# CREATE / READ
# ============================================================

@router.post("", status_code=201)
async def create_campaign(registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.create()
    logger.info(f"Created campaign {machine.id}")
    return machine.snapshot()


@router.get("")
async def list_campaigns(
    status: Optional[CampaignStatus] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    registry: CampaignRegistry = Depends(get_registry),
):
    """List campaigns newest first with their draft counts."""
    machines = registry.list(status)
    start = (page - 1) * per_page
    items = [m.snapshot() for m in machines[start:start + per_page]]
    return paginated(items, len(machines), page, per_page)


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    return registry.get(campaign_id).snapshot()


@router.get("/{campaign_id}/progress")
async def get_progress(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    return {
        "campaign_id": machine.id,
        "status": machine.status.value,
        **machine.progress(),
    }


@router.get("/{campaign_id}/history")
async def get_history(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    return {
        "campaign_id": machine.id,
        "turns": [turn.to_dict() for turn in machine.history.read()],
    }


@router.get("/{campaign_id}/drafts")
async def get_drafts(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    return {
        "campaign_id": machine.id,
        "drafts": machine.draft_list(),
        "counts": machine.drafts.counts(),
    }


# ============================================================
# WIZARD
# ============================================================

@router.post("/{campaign_id}/recipients")
async def select_recipients(
    campaign_id: str,
    selection: RecipientSelection,
    registry: CampaignRegistry = Depends(get_registry),
):
    machine = registry.get(campaign_id)
    await machine.select_recipients(selection.recipient_ids)
    return machine.snapshot()


@router.put("/{campaign_id}/recipients")
async def change_recipients(
    campaign_id: str,
    selection: RecipientSelection,
    registry: CampaignRegistry = Depends(get_registry),
):
    machine = registry.get(campaign_id)
    await machine.change_recipients(selection.recipient_ids)
    return machine.snapshot()


@router.post("/{campaign_id}/name")
async def set_name(
    campaign_id: str,
    payload: CampaignName,
    registry: CampaignRegistry = Depends(get_registry),
):
    machine = registry.get(campaign_id)
    await machine.set_name(payload.name)
    return machine.snapshot()


@router.post("/{campaign_id}/template")
async def select_template(
    campaign_id: str,
    template: Optional[Template] = Depends(get_selected_template),
    registry: CampaignRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """Pick a stored template, or none, and move on to the instruction step."""
    machine = registry.get(campaign_id)
    await machine.select_template(template.to_reference() if template else None)

    if template is not None:
        await asyncio.to_thread(_record_template_use, db, template)

    return machine.snapshot()


# ============================================================
# GENERATION
# ============================================================

@router.post("/{campaign_id}/instruction", status_code=202)
@limiter.limit(settings.generation_rate_limit)
async def submit_instruction(
    request: Request,
    campaign_id: str,
    payload: InstructionRequest,
    registry: CampaignRegistry = Depends(get_registry),
):
    machine = registry.get(campaign_id)
    await machine.submit_instruction(payload.text)
    return machine.snapshot()


@router.post("/{campaign_id}/regenerate", status_code=202)
@limiter.limit(settings.generation_rate_limit)
async def regenerate(
    request: Request,
    campaign_id: str,
    payload: InstructionRequest,
    registry: CampaignRegistry = Depends(get_registry),
):
    """Append a refinement and regenerate every recipient's draft."""
    machine = registry.get(campaign_id)
    await machine.regenerate(payload.text)
    return machine.snapshot()


@router.post("/{campaign_id}/retry", status_code=202)
@limiter.limit(settings.generation_rate_limit)
async def retry_failed(
    request: Request,
    campaign_id: str,
    registry: CampaignRegistry = Depends(get_registry),
):
    machine = registry.get(campaign_id)
    await machine.retry_failed()
    return machine.snapshot()


@router.post("/{campaign_id}/cancel-generation")
async def cancel_generation(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    await machine.cancel_generation()
    return machine.snapshot()


# ============================================================
# REVIEW
# ============================================================

@router.put("/{campaign_id}/drafts/{recipient_id}")
async def edit_draft(
    campaign_id: str,
    recipient_id: int,
    payload: DraftEdit,
    registry: CampaignRegistry = Depends(get_registry),
):
    draft = await registry.get(campaign_id).edit_draft(recipient_id, payload.subject, payload.body)
    return draft.to_dict()


@router.delete("/{campaign_id}/drafts/{recipient_id}/override")
async def revert_draft(
    campaign_id: str,
    recipient_id: int,
    registry: CampaignRegistry = Depends(get_registry),
):
    draft = await registry.get(campaign_id).revert_draft(recipient_id)
    return draft.to_dict()


@router.post("/{campaign_id}/drafts/{recipient_id}/approve")
async def approve_draft(
    campaign_id: str,
    recipient_id: int,
    payload: ApprovalRequest = ApprovalRequest(),
    registry: CampaignRegistry = Depends(get_registry),
):
    draft = await registry.get(campaign_id).approve_draft(recipient_id, payload.approved)
    return draft.to_dict()


@router.post("/{campaign_id}/drafts/{recipient_id}/exclude")
async def exclude_draft(
    campaign_id: str,
    recipient_id: int,
    payload: ExclusionRequest = ExclusionRequest(),
    registry: CampaignRegistry = Depends(get_registry),
):
    draft = await registry.get(campaign_id).exclude_draft(recipient_id, payload.excluded)
    return draft.to_dict()


# ============================================================
# SEND / LIFECYCLE
# ============================================================

@router.post("/{campaign_id}/send")
async def send_campaign(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    queued = await machine.send()
    logger.info(f"Campaign {machine.id} queued {queued} messages")
    return {**machine.snapshot(), "queued": queued}


@router.post("/{campaign_id}/abandon")
async def abandon_campaign(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    machine = registry.get(campaign_id)
    await machine.abandon()
    return machine.snapshot()


@router.post("/{campaign_id}/reopen")
async def reopen_campaign(campaign_id: str, registry: CampaignRegistry = Depends(get_registry)):
    """Back to the instruction step with the conversation kept."""
    machine = registry.get(campaign_id)
    await machine.reopen()
    return machine.snapshot()
