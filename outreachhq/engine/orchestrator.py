"""
Generation Orchestrator

Fans one instruction out to one generation task per recipient:
- Tasks run concurrently, bounded by a shared semaphore
- Each task retries transient failures with exponential backoff
- A failed recipient never aborts the others
- Results are recorded under the campaign lock, one at a time, and only
  while the run is still the current one

The caller starts a run while holding the campaign lock; everything after
initialization happens in a background task and is reported through
``on_complete`` and the progress listeners.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..config import Settings
from ..errors import ConflictError, InvariantViolation, PermanentGenerationFailure, TransientGenerationFailure
from ..logging_config import engine_logger as logger
from ..services.generation import GenerationService, PriorDraft
from ..services.recipients import RecipientProfileSource
from .chat_history import ChatHistory, ChatTurn
from .drafts import DraftStore, GenerationOutcome
from .locks import CampaignLocks

ProgressListener = Callable[[str, Dict[str, Any]], Awaitable[None]]
CompletionCallback = Callable[["GenerationRun"], Awaitable[None]]


class RunStatus(str, Enum):
    """Overall status of a generation run"""
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GenerationRun:
    """One execution of the orchestrator for one chat turn"""
    campaign_id: str
    sequence: int
    recipient_ids: Tuple[int, ...]
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.RUNNING
    outcomes: Dict[int, GenerationOutcome] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    @property
    def cancelled(self) -> bool:
        return self.status == RunStatus.CANCELLED

    def progress(self) -> Dict[str, Any]:
        succeeded = sum(1 for o in self.outcomes.values() if o.succeeded)
        failed = len(self.outcomes) - succeeded
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "total": len(self.recipient_ids),
            "pending": len(self.recipient_ids) - len(self.outcomes),
            "succeeded": succeeded,
            "failed": failed,
        }

    def finalize(self):
        progress = self.progress()
        if progress["failed"] == 0 and progress["pending"] == 0:
            self.status = RunStatus.COMPLETED
        elif progress["succeeded"] == 0:
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.COMPLETED_WITH_FAILURES
        self.finished_at = _now()

    def fail(self, error: str):
        self.status = RunStatus.FAILED
        self.error = error
        self.finished_at = _now()

    def cancel(self):
        self.status = RunStatus.CANCELLED
        self.finished_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.progress(),
            "sequence": self.sequence,
            "recipient_ids": list(self.recipient_ids),
            "failures": {
                rid: o.failure_reason for rid, o in self.outcomes.items() if not o.succeeded
            },
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RetryPolicy:
    """Per-recipient retry policy for transient generation failures"""
    max_retries: int = 2
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    call_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.generation_max_retries,
            backoff_base=settings.generation_backoff_base,
            backoff_factor=settings.generation_backoff_factor,
            backoff_max=settings.generation_backoff_max,
            call_timeout=settings.generation_timeout_seconds,
        )

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        return min(self.backoff_base * self.backoff_factor ** (retry_number - 1), self.backoff_max)


class GenerationOrchestrator:
    """
    Runs generation for many campaigns at once.

    At most one run per campaign is active; the semaphore bounds concurrent
    calls to the generation service across all campaigns.
    """

    def __init__(
        self,
        generation_service: GenerationService,
        recipient_source: RecipientProfileSource,
        locks: CampaignLocks,
        policy: Optional[RetryPolicy] = None,
        concurrency: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._service = generation_service
        self._recipients = recipient_source
        self._locks = locks
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(concurrency)
        self._active: Dict[str, GenerationRun] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[ProgressListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        generation_service: GenerationService,
        recipient_source: RecipientProfileSource,
        locks: CampaignLocks,
    ) -> "GenerationOrchestrator":
        return cls(
            generation_service,
            recipient_source,
            locks,
            policy=RetryPolicy.from_settings(settings),
            concurrency=settings.generation_concurrency,
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def add_listener(self, listener: ProgressListener):
        self._listeners.append(listener)

    def active_run(self, campaign_id: str) -> Optional[GenerationRun]:
        run = self._active.get(campaign_id)
        return run if run is not None and run.is_running else None

    # ============================================================
    # RUN LIFECYCLE (caller holds the campaign lock)
    # ============================================================

    def start_run(
        self,
        campaign_id: str,
        history: ChatHistory,
        drafts: DraftStore,
        recipient_ids: Iterable[int],
        template: Optional[Dict[str, Any]] = None,
        on_complete: Optional[CompletionCallback] = None,
        partial: bool = False,
    ) -> GenerationRun:
        """
        Record a new run, mark its drafts pending and schedule the work.

        Returns as soon as initialization is done. Raises ConflictError if
        the campaign already has a running run.
        """
        if not self._locks.get(campaign_id).locked():
            raise InvariantViolation("start_run requires the campaign lock", {"campaign_id": campaign_id})

        active = self.active_run(campaign_id)
        if active is not None:
            raise ConflictError(
                "A generation run is already in progress for this campaign",
                {"campaign_id": campaign_id, "run_id": active.run_id},
            )

        turn = history.latest
        if turn is None:
            raise InvariantViolation("Cannot generate without an instruction", {"campaign_id": campaign_id})

        run = GenerationRun(campaign_id=campaign_id, sequence=turn.sequence, recipient_ids=tuple(recipient_ids))
        prior = self._prior_drafts(drafts, run.recipient_ids)
        drafts.initialize_for_run(run.run_id, run.recipient_ids, turn.sequence, partial=partial)
        self._active[campaign_id] = run

        task = asyncio.create_task(
            self._execute(run, history.read(), prior, drafts, template, on_complete)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Generation run started",
            campaign_id=campaign_id,
            run_id=run.run_id,
            sequence=turn.sequence,
            recipients=len(run.recipient_ids),
            partial=partial,
        )
        return run

    def cancel(self, campaign_id: str) -> Optional[GenerationRun]:
        """
        Mark the campaign's running run cancelled and release it.

        In-flight generation calls are left to finish; their results are
        discarded when they try to record.
        """
        run = self._active.pop(campaign_id, None)
        if run is None or not run.is_running:
            return None
        run.cancel()
        logger.info("Generation run cancelled", campaign_id=campaign_id, run_id=run.run_id)
        return run

    async def drain(self):
        """Wait for every scheduled run to finish (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ============================================================
    # EXECUTION
    # ============================================================

    @staticmethod
    def _prior_drafts(drafts: DraftStore, recipient_ids: Sequence[int]) -> Dict[int, PriorDraft]:
        existing = {d.recipient_id: d for d in drafts.all()}
        prior = {}
        for rid in recipient_ids:
            draft = existing.get(rid)
            if draft is not None and draft.has_effective_content:
                prior[rid] = PriorDraft(subject=draft.effective_subject, body=draft.effective_body)
        return prior

    def _release(self, run: GenerationRun):
        if self._active.get(run.campaign_id) is run:
            del self._active[run.campaign_id]

    async def _execute(
        self,
        run: GenerationRun,
        history: Sequence[ChatTurn],
        prior: Dict[int, PriorDraft],
        drafts: DraftStore,
        template: Optional[Dict[str, Any]],
        on_complete: Optional[CompletionCallback],
    ):
        lock = self._locks.get(run.campaign_id)
        try:
            await asyncio.gather(*(
                self._generate_for(run, rid, history, prior.get(rid), drafts, template)
                for rid in run.recipient_ids
            ))
        except InvariantViolation as e:
            logger.critical(
                "Generation run aborted by invariant violation",
                error=e,
                campaign_id=run.campaign_id,
                run_id=run.run_id,
            )
            async with lock:
                if run.is_running:
                    run.fail(e.message)
                    self._release(run)
        else:
            async with lock:
                if run.is_running:
                    run.finalize()
                    self._release(run)

        if run.cancelled:
            logger.info(
                "Cancelled run finished; results discarded",
                campaign_id=run.campaign_id,
                run_id=run.run_id,
            )
            return

        logger.info("Generation run finished", campaign_id=run.campaign_id, **run.progress())
        await self._notify(run)
        if on_complete is not None:
            await on_complete(run)

    async def _generate_for(
        self,
        run: GenerationRun,
        recipient_id: int,
        history: Sequence[ChatTurn],
        prior: Optional[PriorDraft],
        drafts: DraftStore,
        template: Optional[Dict[str, Any]],
    ):
        async with self._semaphore:
            if not run.is_running:
                return
            outcome = await self._attempt(run, recipient_id, history, prior, template)

        async with self._locks.get(run.campaign_id):
            if not run.is_running:
                logger.info(
                    "Discarding result for inactive run",
                    campaign_id=run.campaign_id,
                    run_id=run.run_id,
                    recipient_id=recipient_id,
                )
                return
            run.outcomes[recipient_id] = outcome
            drafts.record_result(recipient_id, run.run_id, outcome)

        await self._notify(run)

    async def _attempt(
        self,
        run: GenerationRun,
        recipient_id: int,
        history: Sequence[ChatTurn],
        prior: Optional[PriorDraft],
        template: Optional[Dict[str, Any]],
    ) -> GenerationOutcome:
        context = {"campaign_id": run.campaign_id, "run_id": run.run_id, "recipient_id": recipient_id}

        try:
            profile = await self._recipients.get_profile(recipient_id)
        except PermanentGenerationFailure as e:
            logger.warning("Recipient profile unavailable", reason=e.message, **context)
            return GenerationOutcome.failure(e.message, e.kind)
        except Exception as e:
            logger.error("Recipient profile lookup failed", error=e, **context)
            return GenerationOutcome.failure(f"Recipient profile unavailable: {e}", "profile_unavailable")

        attempt = 0
        while True:
            attempt += 1
            try:
                email = await asyncio.wait_for(
                    self._service.generate(history, profile, prior, template),
                    timeout=self._policy.call_timeout,
                )
                return GenerationOutcome.success(email.subject, email.body, attempts=attempt)
            except asyncio.TimeoutError:
                failure = TransientGenerationFailure(
                    f"Generation timed out after {self._policy.call_timeout}s", kind="timeout"
                )
            except TransientGenerationFailure as e:
                failure = e
            except PermanentGenerationFailure as e:
                logger.warning("Generation rejected", reason=e.message, kind=e.kind, attempt=attempt, **context)
                return GenerationOutcome.failure(e.message, e.kind, attempts=attempt)
            except Exception as e:
                logger.error("Unexpected generation error", error=e, attempt=attempt, **context)
                return GenerationOutcome.failure(f"Unexpected generation error: {e}", "unexpected", attempts=attempt)

            if attempt > self._policy.max_retries:
                logger.warning(
                    "Generation failed after retries",
                    reason=failure.message,
                    kind=failure.kind,
                    attempts=attempt,
                    **context,
                )
                return GenerationOutcome.failure(failure.message, failure.kind, attempts=attempt)

            delay = self._policy.delay(attempt)
            logger.info(
                "Transient generation failure, retrying",
                kind=failure.kind,
                attempt=attempt,
                delay_seconds=delay,
                **context,
            )
            await self._sleep(delay)

    async def _notify(self, run: GenerationRun):
        progress = run.progress()
        for listener in list(self._listeners):
            try:
                await listener(run.campaign_id, progress)
            except Exception as e:
                logger.error("Progress listener failed", error=e, campaign_id=run.campaign_id, run_id=run.run_id)
