"""
Per-recipient draft table with a manual-edit overlay.

Generated fields are owned by generation runs; override fields are owned by
the operator. Neither side ever writes the other's fields.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..errors import InvariantViolation, NotFoundError, ValidationError
from ..logging_config import engine_logger as logger


class DraftStatus(str, Enum):
    """Generation status of a draft"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class GenerationOutcome:
    """Terminal result of one recipient's generation task"""
    succeeded: bool
    subject: Optional[str] = None
    body: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_kind: Optional[str] = None
    attempts: int = 1

    @classmethod
    def success(cls, subject: str, body: str, attempts: int = 1) -> "GenerationOutcome":
        return cls(succeeded=True, subject=subject, body=body, attempts=attempts)

    @classmethod
    def failure(cls, reason: str, kind: str = "unknown", attempts: int = 1) -> "GenerationOutcome":
        return cls(succeeded=False, failure_reason=reason, failure_kind=kind, attempts=attempts)


@dataclass
class OutboundMessage:
    """Effective content of one draft, as handed to the delivery queue"""
    recipient_id: int
    subject: str
    body: str

    def to_dict(self) -> dict:
        return {"recipient_id": self.recipient_id, "subject": self.subject, "body": self.body}


@dataclass
class Draft:
    """Generated-or-edited email for one recipient"""
    recipient_id: int
    status: DraftStatus = DraftStatus.PENDING
    subject: Optional[str] = None
    body: Optional[str] = None
    source_sequence: Optional[int] = None
    run_id: Optional[str] = None
    failure_reason: Optional[str] = None
    manual_override: bool = False
    edited_subject: Optional[str] = None
    edited_body: Optional[str] = None
    approved: bool = False
    excluded: bool = False
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def effective_subject(self) -> Optional[str]:
        return self.edited_subject if self.manual_override else self.subject

    @property
    def effective_body(self) -> Optional[str]:
        return self.edited_body if self.manual_override else self.body

    @property
    def has_effective_content(self) -> bool:
        return bool(self.effective_subject) and bool(self.effective_body)

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "subject": self.subject,
            "body": self.body,
            "source_sequence": self.source_sequence,
            "run_id": self.run_id,
            "failure_reason": self.failure_reason,
            "manual_override": self.manual_override,
            "edited_subject": self.edited_subject,
            "edited_body": self.edited_body,
            "effective_subject": self.effective_subject,
            "effective_body": self.effective_body,
            "approved": self.approved,
            "excluded": self.excluded,
            "updated_at": self.updated_at.isoformat(),
        }


class DraftStore:
    """
    Drafts for one campaign, keyed by recipient id in selection order.

    Results are accepted only for the current run id, and each
    (recipient_id, run_id) pair is applied at most once.
    """

    def __init__(self):
        self._drafts: Dict[int, Draft] = {}
        self._run_id: Optional[str] = None
        self._applied: Set[Tuple[int, str]] = set()

    @property
    def current_run_id(self) -> Optional[str]:
        return self._run_id

    def initialize_for_run(
        self,
        run_id: str,
        recipient_ids: Iterable[int],
        source_sequence: int,
        partial: bool = False,
    ) -> List[Draft]:
        """
        Mark drafts pending for a new run.

        Prior generated content stays visible until the new result for that
        recipient arrives. Override fields are never touched. Unless
        ``partial`` is set, drafts for recipients outside ``recipient_ids``
        are discarded as stale.
        """
        recipient_ids = list(recipient_ids)
        if not recipient_ids:
            raise InvariantViolation("A generation run needs at least one recipient")

        if partial:
            unknown = [rid for rid in recipient_ids if rid not in self._drafts]
            if unknown:
                raise InvariantViolation("Partial run names recipients without drafts", {"recipient_ids": unknown})
            drafts = dict(self._drafts)
        else:
            selected = set(recipient_ids)
            stale = [rid for rid in self._drafts if rid not in selected]
            if stale:
                logger.info("Discarding drafts for dropped recipients", run_id=run_id, recipient_ids=stale)
            drafts = {rid: self._drafts.get(rid) or Draft(recipient_id=rid) for rid in recipient_ids}

        now = datetime.now(timezone.utc)
        for rid in recipient_ids:
            draft = drafts[rid]
            draft.status = DraftStatus.PENDING
            draft.run_id = run_id
            draft.source_sequence = source_sequence
            draft.failure_reason = None
            draft.approved = False
            draft.updated_at = now

        self._drafts = drafts
        self._run_id = run_id
        return [drafts[rid] for rid in recipient_ids]

    def reconcile(self, recipient_ids: Iterable[int]) -> List[int]:
        """
        Match the store to a changed recipient selection without starting a run.

        Drafts for dropped recipients are discarded; recipients without a
        draft get an empty one. Returns the added recipient ids.
        """
        recipient_ids = list(recipient_ids)
        selected = set(recipient_ids)
        stale = [rid for rid in self._drafts if rid not in selected]
        if stale:
            logger.info("Discarding drafts for dropped recipients", recipient_ids=stale)
        added = [rid for rid in recipient_ids if rid not in self._drafts]
        self._drafts = {rid: self._drafts.get(rid) or Draft(recipient_id=rid) for rid in recipient_ids}
        return added

    def record_result(self, recipient_id: int, run_id: str, outcome: GenerationOutcome) -> bool:
        """
        Apply one recipient's outcome.

        Returns False without changing anything for a duplicate
        (recipient_id, run_id) pair or for a run that is no longer current.
        """
        key = (recipient_id, run_id)
        if key in self._applied:
            logger.debug("Ignoring duplicate result", run_id=run_id, recipient_id=recipient_id)
            return False
        if run_id != self._run_id:
            logger.info("Discarding result from superseded run", run_id=run_id, recipient_id=recipient_id)
            return False

        draft = self._drafts.get(recipient_id)
        if draft is None or draft.run_id != run_id:
            raise InvariantViolation(
                "Result recorded for a recipient that is not part of the run",
                {"recipient_id": recipient_id, "run_id": run_id},
            )

        if outcome.succeeded:
            draft.status = DraftStatus.SUCCEEDED
            draft.subject = outcome.subject
            draft.body = outcome.body
            draft.failure_reason = None
        else:
            draft.status = DraftStatus.FAILED
            draft.subject = None
            draft.body = None
            draft.failure_reason = outcome.failure_reason
        draft.updated_at = datetime.now(timezone.utc)

        self._applied.add(key)
        return True

    def set_override(self, recipient_id: int, subject: str, body: str) -> Draft:
        if not subject or not subject.strip():
            raise ValidationError("Subject must not be empty", {"field": "subject"})
        if not body or not body.strip():
            raise ValidationError("Body must not be empty", {"field": "body"})
        draft = self.get(recipient_id)
        draft.manual_override = True
        draft.edited_subject = subject
        draft.edited_body = body
        draft.updated_at = datetime.now(timezone.utc)
        return draft

    def clear_override(self, recipient_id: int) -> Draft:
        draft = self.get(recipient_id)
        draft.manual_override = False
        draft.edited_subject = None
        draft.edited_body = None
        draft.updated_at = datetime.now(timezone.utc)
        return draft

    def set_approval(self, recipient_id: int, approved: bool) -> Draft:
        draft = self.get(recipient_id)
        if approved and not draft.has_effective_content:
            raise ValidationError("Cannot approve a draft without content", {"recipient_id": recipient_id})
        draft.approved = approved
        return draft

    def set_excluded(self, recipient_id: int, excluded: bool) -> Draft:
        draft = self.get(recipient_id)
        draft.excluded = excluded
        return draft

    def get(self, recipient_id: int) -> Draft:
        try:
            return self._drafts[recipient_id]
        except KeyError:
            raise NotFoundError(f"No draft for recipient {recipient_id}", {"recipient_id": recipient_id})

    def all(self) -> List[Draft]:
        return list(self._drafts.values())

    def failed_recipient_ids(self) -> List[int]:
        return [d.recipient_id for d in self._drafts.values() if d.status == DraftStatus.FAILED]

    def missing_content(self) -> List[int]:
        """Recipients in the send batch whose draft has nothing to send."""
        return [
            d.recipient_id for d in self._drafts.values()
            if not d.excluded and not d.has_effective_content
        ]

    def snapshot(self) -> List[OutboundMessage]:
        """Effective content of every non-excluded draft, in selection order."""
        return [
            OutboundMessage(d.recipient_id, d.effective_subject, d.effective_body)
            for d in self._drafts.values()
            if not d.excluded and d.has_effective_content
        ]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DraftStatus}
        for draft in self._drafts.values():
            counts[draft.status.value] += 1
        counts["overridden"] = sum(1 for d in self._drafts.values() if d.manual_override)
        counts["total"] = len(self._drafts)
        return counts

    def retire(self):
        """Drop every draft once the campaign is sent or abandoned."""
        self._drafts = {}
        self._run_id = None
        self._applied.clear()

    def __len__(self) -> int:
        return len(self._drafts)
