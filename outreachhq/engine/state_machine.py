"""
Campaign State Machine

Drives one campaign through its lifecycle:

    selecting_recipients -> naming -> selecting_template -> writing_instruction
        -> generating -> reviewing -> sending -> sent

``abandoned`` is reachable from every state except ``sent`` and
``abandoned``. Status changes go through ``next_status``, a pure function of
(current status, event); the CampaignStateMachine methods add validation and
side effects around it and serialize on the campaign lock.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import ConflictError, PublishFailure, ValidationError
from ..logging_config import engine_logger as logger
from ..services.delivery import DeliveryQueuePublisher
from .chat_history import ChatHistory
from .drafts import Draft, DraftStatus, DraftStore
from .locks import CampaignLocks
from .orchestrator import GenerationOrchestrator, GenerationRun

CampaignNotifier = Callable[[str, Dict[str, Any]], Awaitable[None]]

GENERATION_FAILED_MESSAGE = "Failed to generate emails. Please try again."


class CampaignStatus(str, Enum):
    """Lifecycle states of a campaign"""
    SELECTING_RECIPIENTS = "selecting_recipients"
    NAMING = "naming"
    SELECTING_TEMPLATE = "selecting_template"
    WRITING_INSTRUCTION = "writing_instruction"
    GENERATING = "generating"
    REVIEWING = "reviewing"
    SENDING = "sending"
    SENT = "sent"
    ABANDONED = "abandoned"


class CampaignEvent(str, Enum):
    """Inputs that move a campaign between states"""
    SELECT_RECIPIENTS = "select_recipients"
    SET_NAME = "set_name"
    SELECT_TEMPLATE = "select_template"
    SUBMIT_INSTRUCTION = "submit_instruction"
    REGENERATE = "regenerate"
    RETRY_FAILED = "retry_failed"
    CANCEL_GENERATION = "cancel_generation"
    CHANGE_RECIPIENTS = "change_recipients"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    EDIT_DRAFT = "edit_draft"
    SEND = "send"
    PUBLISH_ACKNOWLEDGED = "publish_acknowledged"
    PUBLISH_FAILED = "publish_failed"
    REOPEN = "reopen"
    ABANDON = "abandon"


S = CampaignStatus
E = CampaignEvent

TRANSITIONS: Dict[Tuple[CampaignStatus, CampaignEvent], CampaignStatus] = {
    (S.SELECTING_RECIPIENTS, E.SELECT_RECIPIENTS): S.NAMING,
    (S.NAMING, E.SET_NAME): S.SELECTING_TEMPLATE,
    (S.SELECTING_TEMPLATE, E.SELECT_TEMPLATE): S.WRITING_INSTRUCTION,
    (S.WRITING_INSTRUCTION, E.SUBMIT_INSTRUCTION): S.GENERATING,
    (S.WRITING_INSTRUCTION, E.REGENERATE): S.GENERATING,
    (S.WRITING_INSTRUCTION, E.RETRY_FAILED): S.GENERATING,
    (S.WRITING_INSTRUCTION, E.CHANGE_RECIPIENTS): S.WRITING_INSTRUCTION,
    (S.GENERATING, E.RUN_SUCCEEDED): S.REVIEWING,
    (S.GENERATING, E.RUN_FAILED): S.WRITING_INSTRUCTION,
    (S.GENERATING, E.CANCEL_GENERATION): S.WRITING_INSTRUCTION,
    (S.REVIEWING, E.REGENERATE): S.GENERATING,
    (S.REVIEWING, E.RETRY_FAILED): S.GENERATING,
    (S.REVIEWING, E.EDIT_DRAFT): S.REVIEWING,
    (S.REVIEWING, E.SEND): S.SENDING,
    (S.REVIEWING, E.REOPEN): S.WRITING_INSTRUCTION,
    (S.SENDING, E.PUBLISH_ACKNOWLEDGED): S.SENT,
    (S.SENDING, E.PUBLISH_FAILED): S.REVIEWING,
    (S.SENT, E.REOPEN): S.WRITING_INSTRUCTION,
}

CLOSED_STATUSES = frozenset({S.SENT, S.ABANDONED})


def next_status(current: CampaignStatus, event: CampaignEvent) -> CampaignStatus:
    """Status after ``event`` in ``current``; raises ConflictError if illegal."""
    if event == E.ABANDON:
        if current in CLOSED_STATUSES:
            raise ConflictError(f"Cannot abandon a campaign that is {current.value}", {"status": current.value})
        return S.ABANDONED
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise ConflictError(
            f"Cannot {event.value.replace('_', ' ')} while campaign is {current.value}",
            {"status": current.value, "event": event.value},
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Campaign:
    """One communication effort"""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    status: CampaignStatus = CampaignStatus.SELECTING_RECIPIENTS
    recipient_ids: Tuple[int, ...] = ()
    template: Optional[Dict[str, Any]] = None
    edit_mode: bool = False
    last_error: Optional[str] = None
    last_run_failed: bool = False
    created_at: datetime = field(default_factory=_now)
    transitioned_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "recipient_ids": list(self.recipient_ids),
            "template": self.template,
            "edit_mode": self.edit_mode,
            "last_error": self.last_error,
            "can_retry": self.last_run_failed,
            "created_at": self.created_at.isoformat(),
            "transitioned_at": self.transitioned_at.isoformat(),
        }


def _normalize_recipients(recipient_ids: Iterable[int]) -> Tuple[int, ...]:
    """Deduplicate while keeping selection order."""
    selected = tuple(dict.fromkeys(recipient_ids or ()))
    if not selected:
        raise ValidationError("Select at least one recipient", {"field": "recipient_ids"})
    return selected


class CampaignStateMachine:
    """
    Owns one campaign together with its chat history, drafts and current run.

    Every public method takes the campaign lock for the whole of its state
    change. ``send`` releases it while the publisher is working.
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        publisher: DeliveryQueuePublisher,
        locks: CampaignLocks,
        campaign: Optional[Campaign] = None,
        notifier: Optional[CampaignNotifier] = None,
    ):
        self.campaign = campaign or Campaign()
        self.history = ChatHistory()
        self.drafts = DraftStore()
        self.current_run: Optional[GenerationRun] = None
        self._orchestrator = orchestrator
        self._publisher = publisher
        self._lock = locks.get(self.campaign.id)
        self._notifier = notifier

    @property
    def id(self) -> str:
        return self.campaign.id

    @property
    def status(self) -> CampaignStatus:
        return self.campaign.status

    def _transition(self, event: CampaignEvent) -> CampaignStatus:
        previous = self.campaign.status
        self.campaign.status = next_status(previous, event)
        self.campaign.transitioned_at = _now()
        logger.info(
            "Campaign transition",
            campaign_id=self.id,
            event=event.value,
            from_status=previous.value,
            to_status=self.campaign.status.value,
        )
        return self.campaign.status

    def _require(self, event: CampaignEvent):
        """Raise ConflictError unless ``event`` is legal right now."""
        next_status(self.campaign.status, event)

    # ============================================================
    # WIZARD STEPS
    # ============================================================

    async def select_recipients(self, recipient_ids: Iterable[int]) -> Campaign:
        async with self._lock:
            self._require(E.SELECT_RECIPIENTS)
            self.campaign.recipient_ids = _normalize_recipients(recipient_ids)
            self._transition(E.SELECT_RECIPIENTS)
        return self.campaign

    async def set_name(self, name: str) -> Campaign:
        async with self._lock:
            self._require(E.SET_NAME)
            if name is None or not name.strip():
                raise ValidationError("Campaign name must not be empty", {"field": "name"})
            self.campaign.name = name.strip()
            self._transition(E.SET_NAME)
        return self.campaign

    async def select_template(self, template: Optional[Dict[str, Any]] = None) -> Campaign:
        async with self._lock:
            self._require(E.SELECT_TEMPLATE)
            self.campaign.template = template
            self._transition(E.SELECT_TEMPLATE)
        return self.campaign

    async def change_recipients(self, recipient_ids: Iterable[int]) -> Campaign:
        """Replace the recipient set between runs (edit mode)."""
        async with self._lock:
            self._require(E.CHANGE_RECIPIENTS)
            self.campaign.recipient_ids = _normalize_recipients(recipient_ids)
            self._transition(E.CHANGE_RECIPIENTS)
        return self.campaign

    # ============================================================
    # GENERATION
    # ============================================================

    async def submit_instruction(self, text: str) -> GenerationRun:
        async with self._lock:
            self._require(E.SUBMIT_INSTRUCTION)
            return self._start_with_new_turn(text, E.SUBMIT_INSTRUCTION)

    async def regenerate(self, refinement_text: str) -> GenerationRun:
        """
        Append a refinement turn and regenerate every recipient.

        Legal in ``reviewing``, or in ``writing_instruction`` after a run in
        which every recipient failed. Existing drafts stay visible until the
        new results replace them.
        """
        async with self._lock:
            self._require(E.REGENERATE)
            if self.campaign.status == S.WRITING_INSTRUCTION and not self.campaign.last_run_failed:
                raise ConflictError(
                    "Nothing to regenerate; submit an instruction instead",
                    {"status": self.campaign.status.value},
                )
            return self._start_with_new_turn(refinement_text, E.REGENERATE)

    async def retry_failed(self) -> GenerationRun:
        """
        Re-run generation for failed recipients only, without a new turn.

        Recipients added since the last run have no draft yet and are
        generated too; drafts for dropped recipients are discarded first.
        """
        async with self._lock:
            self._require(E.RETRY_FAILED)
            self._ensure_no_active_run()
            failed = set(self.drafts.failed_recipient_ids())
            known = {d.recipient_id for d in self.drafts.all()}
            targets = [
                rid for rid in self.campaign.recipient_ids
                if rid in failed or rid not in known
            ]
            if not targets:
                raise ConflictError("No failed drafts to retry", {"status": self.campaign.status.value})
            self.drafts.reconcile(self.campaign.recipient_ids)
            return self._start_run(E.RETRY_FAILED, targets, partial=True)

    async def cancel_generation(self) -> Campaign:
        async with self._lock:
            self._transition(E.CANCEL_GENERATION)
            self._orchestrator.cancel(self.id)
            self.campaign.last_error = None
        return self.campaign

    def _ensure_no_active_run(self):
        active = self._orchestrator.active_run(self.id)
        if active is not None:
            raise ConflictError(
                "A generation run is already in progress for this campaign",
                {"campaign_id": self.id, "run_id": active.run_id},
            )

    def _start_with_new_turn(self, text: str, event: CampaignEvent) -> GenerationRun:
        if text is None or not text.strip():
            raise ValidationError("Instruction text must not be empty", {"field": "text"})
        self._ensure_no_active_run()
        self.history.append(text)
        return self._start_run(event, self.campaign.recipient_ids, partial=False)

    def _start_run(self, event: CampaignEvent, recipient_ids, partial: bool) -> GenerationRun:
        run = self._orchestrator.start_run(
            self.id,
            self.history,
            self.drafts,
            recipient_ids,
            template=self.campaign.template,
            on_complete=self.on_generation_run_complete,
            partial=partial,
        )
        self.current_run = run
        self.campaign.last_error = None
        self.campaign.last_run_failed = False
        self._transition(event)
        return run

    async def on_generation_run_complete(self, run: GenerationRun):
        """Move out of ``generating`` once the orchestrator has aggregated a run."""
        async with self._lock:
            if self.current_run is None or run.run_id != self.current_run.run_id:
                logger.info("Ignoring completion of superseded run", campaign_id=self.id, run_id=run.run_id)
                return
            if self.campaign.status != S.GENERATING:
                logger.info(
                    "Ignoring run completion outside generating",
                    campaign_id=self.id,
                    run_id=run.run_id,
                    status=self.campaign.status.value,
                )
                return

            if self.drafts.counts()[DraftStatus.SUCCEEDED.value] > 0:
                self._transition(E.RUN_SUCCEEDED)
                failed = run.progress()["failed"]
                self.campaign.last_error = (
                    f"{failed} of {len(run.recipient_ids)} emails failed to generate" if failed else None
                )
            else:
                self._transition(E.RUN_FAILED)
                self.campaign.last_error = run.error or GENERATION_FAILED_MESSAGE
                self.campaign.last_run_failed = True
            snapshot = self.snapshot()

        await self._notify(snapshot)

    # ============================================================
    # REVIEW
    # ============================================================

    async def edit_draft(self, recipient_id: int, subject: str, body: str) -> Draft:
        async with self._lock:
            self._require(E.EDIT_DRAFT)
            return self.drafts.set_override(recipient_id, subject, body)

    async def revert_draft(self, recipient_id: int) -> Draft:
        async with self._lock:
            self._require(E.EDIT_DRAFT)
            return self.drafts.clear_override(recipient_id)

    async def approve_draft(self, recipient_id: int, approved: bool = True) -> Draft:
        async with self._lock:
            self._require(E.EDIT_DRAFT)
            return self.drafts.set_approval(recipient_id, approved)

    async def exclude_draft(self, recipient_id: int, excluded: bool = True) -> Draft:
        async with self._lock:
            self._require(E.EDIT_DRAFT)
            return self.drafts.set_excluded(recipient_id, excluded)

    async def send(self) -> int:
        """
        Hand the effective drafts to the delivery queue.

        Returns the number of queued messages. If the publisher fails the campaign
        goes back to ``reviewing`` with its drafts untouched and PublishFailure
        is raised, wrapping any other publisher error.
        """
        async with self._lock:
            self._require(E.SEND)
            missing = self.drafts.missing_content()
            if missing:
                raise ValidationError(
                    "Some drafts have no content; regenerate, edit or exclude them before sending",
                    {"recipient_ids": missing},
                )
            messages = self.drafts.snapshot()
            if not messages:
                raise ValidationError("There are no drafts to send")
            self._transition(E.SEND)

        try:
            await self._publisher.publish(self.id, messages)
        except Exception as e:
            failure = e if isinstance(e, PublishFailure) else PublishFailure(
                f"Delivery queue rejected the batch: {e}", {"campaign_id": self.id}
            )
            if failure is not e:
                logger.error("Publisher raised an unexpected error", error=e, campaign_id=self.id)
            async with self._lock:
                if self.campaign.status == S.SENDING:
                    self._transition(E.PUBLISH_FAILED)
                    self.campaign.last_error = failure.message
            if failure is e:
                raise
            raise failure from e

        async with self._lock:
            if self.campaign.status != S.SENDING:
                logger.warning(
                    "Batch queued after campaign left sending",
                    campaign_id=self.id,
                    status=self.campaign.status.value,
                    count=len(messages),
                )
                raise ConflictError(
                    f"Campaign became {self.campaign.status.value} while sending; messages were already queued",
                    {"status": self.campaign.status.value, "queued": len(messages)},
                )
            self._transition(E.PUBLISH_ACKNOWLEDGED)
            self.campaign.last_error = None
            self.campaign.edit_mode = False
            self.drafts.retire()
            snapshot = self.snapshot()

        await self._notify(snapshot)
        return len(messages)

    # ============================================================
    # EDIT MODE / ABANDON
    # ============================================================

    async def reopen(self) -> Campaign:
        """Re-enter ``writing_instruction`` keeping the chat history."""
        async with self._lock:
            self._transition(E.REOPEN)
            self.campaign.edit_mode = True
            self.campaign.last_error = None
        return self.campaign

    async def abandon(self) -> Campaign:
        async with self._lock:
            self._transition(E.ABANDON)
            self._orchestrator.cancel(self.id)
            self.drafts.retire()
        return self.campaign

    # ============================================================
    # READ SIDE
    # ============================================================

    def progress(self) -> Dict[str, Any]:
        """Counts for progress bars; an idle campaign reports its draft counts."""
        if self.current_run is not None:
            return self.current_run.progress()
        counts = self.drafts.counts()
        return {
            "run_id": None,
            "status": None,
            "total": counts["total"],
            "pending": counts[DraftStatus.PENDING.value],
            "succeeded": counts[DraftStatus.SUCCEEDED.value],
            "failed": counts[DraftStatus.FAILED.value],
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            **self.campaign.to_dict(),
            "progress": self.progress(),
            "draft_counts": self.drafts.counts(),
            "turns": len(self.history),
        }

    def draft_list(self) -> List[Dict[str, Any]]:
        return [draft.to_dict() for draft in self.drafts.all()]

    async def _notify(self, snapshot: Dict[str, Any]):
        if self._notifier is None:
            return
        try:
            await self._notifier(self.id, snapshot)
        except Exception as e:
            logger.error("Campaign notifier failed", error=e, campaign_id=self.id)

