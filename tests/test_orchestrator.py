"""
Tests for the generation orchestrator: fan-out, retries, partial failure
and run isolation.
"""
import asyncio

import pytest

from conftest import FakeGenerationService, FakeRecipientSource, no_sleep
from outreachhq.engine.chat_history import ChatHistory
from outreachhq.engine.drafts import DraftStatus, DraftStore
from outreachhq.engine.locks import CampaignLocks
from outreachhq.engine.orchestrator import GenerationOrchestrator, RetryPolicy, RunStatus
from outreachhq.errors import (
    ConflictError,
    InvariantViolation,
    PermanentGenerationFailure,
    TransientGenerationFailure,
)
from outreachhq.services.generation import GeneratedEmail


def make_orchestrator(service, sleep=no_sleep, concurrency=5, max_retries=2, call_timeout=5.0, recipients=None):
    locks = CampaignLocks()
    orchestrator = GenerationOrchestrator(
        service,
        recipients or FakeRecipientSource(),
        locks,
        policy=RetryPolicy(max_retries=max_retries, call_timeout=call_timeout),
        concurrency=concurrency,
        sleep=sleep,
    )
    return orchestrator, locks


def new_history(text="Thank everyone for the spring drive"):
    history = ChatHistory()
    history.append(text)
    return history


async def start(orchestrator, locks, campaign_id, history, drafts, recipient_ids, **kwargs):
    async with locks.get(campaign_id):
        return orchestrator.start_run(campaign_id, history, drafts, recipient_ids, **kwargs)


class TestRetryPolicy:
    """Test backoff delays."""

    def test_exponential_with_cap(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_factor=2.0, backoff_max=5.0)
        assert [policy.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


class TestGenerationRun:
    """Test a single run end to end."""

    def test_partial_failure_does_not_abort_the_run(self):
        """A succeeds, B succeeds after one transient failure, C is rejected."""
        service = FakeGenerationService({
            2: [TransientGenerationFailure("503", kind="unavailable")],
            3: [PermanentGenerationFailure("Content policy", kind="content_policy")],
        })
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        async def scenario():
            orchestrator, locks = make_orchestrator(service, sleep=record_sleep)
            drafts = DraftStore()
            run = await start(orchestrator, locks, "c1", new_history(), drafts, [1, 2, 3])
            await orchestrator.drain()
            return run, drafts

        run, drafts = asyncio.run(scenario())

        assert run.status == RunStatus.COMPLETED_WITH_FAILURES
        assert run.progress() == {
            "run_id": run.run_id,
            "status": "completed_with_failures",
            "total": 3,
            "pending": 0,
            "succeeded": 2,
            "failed": 1,
        }
        assert run.outcomes[2].attempts == 2
        assert run.outcomes[3].attempts == 1
        assert run.outcomes[3].failure_kind == "content_policy"
        assert delays == [1.0]
        assert drafts.get(1).status == DraftStatus.SUCCEEDED
        assert drafts.get(2).status == DraftStatus.SUCCEEDED
        assert drafts.get(3).status == DraftStatus.FAILED
        assert drafts.get(3).failure_reason == "Content policy"
        assert len(service.calls_for(3)) == 1

    def test_transient_failures_exhaust_retries(self):
        service = FakeGenerationService({
            1: [TransientGenerationFailure("429", kind="rate_limit")] * 5,
        })
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        async def scenario():
            orchestrator, locks = make_orchestrator(service, sleep=record_sleep, max_retries=2)
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1])
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())

        assert run.status == RunStatus.FAILED
        assert run.outcomes[1].attempts == 3
        assert run.outcomes[1].failure_kind == "rate_limit"
        assert delays == [1.0, 2.0]

    def test_every_recipient_failing_fails_the_run(self):
        service = FakeGenerationService({
            1: [PermanentGenerationFailure("bad", kind="validation")],
            2: [PermanentGenerationFailure("bad", kind="validation")],
        })

        async def scenario():
            orchestrator, locks = make_orchestrator(service)
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1, 2])
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())
        assert run.status == RunStatus.FAILED
        assert run.progress()["failed"] == 2

    def test_timeout_is_retried(self):
        class SlowOnce(FakeGenerationService):
            async def generate(self, history, recipient, prior_draft=None, template=None):
                first = not self.calls
                result = await super().generate(history, recipient, prior_draft, template)
                if first:
                    await asyncio.sleep(1)
                return result

        service = SlowOnce()

        async def scenario():
            orchestrator, locks = make_orchestrator(service, call_timeout=0.05)
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1])
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())
        assert run.status == RunStatus.COMPLETED
        assert run.outcomes[1].attempts == 2

    def test_unexpected_exception_is_a_permanent_failure(self):
        service = FakeGenerationService({1: [RuntimeError("boom")]})

        async def scenario():
            orchestrator, locks = make_orchestrator(service)
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1, 2])
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())
        assert run.status == RunStatus.COMPLETED_WITH_FAILURES
        assert run.outcomes[1].failure_kind == "unexpected"
        assert len(service.calls_for(1)) == 1

    def test_missing_profile_fails_only_that_recipient(self):
        service = FakeGenerationService()

        async def scenario():
            orchestrator, locks = make_orchestrator(service, recipients=FakeRecipientSource(missing={2}))
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1, 2])
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())
        assert run.outcomes[2].failure_kind == "profile_missing"
        assert run.outcomes[1].succeeded
        assert service.calls_for(2) == []

    def test_full_history_and_prior_draft_are_sent(self):
        service = FakeGenerationService()

        async def scenario():
            orchestrator, locks = make_orchestrator(service)
            history = new_history("Thank them")
            drafts = DraftStore()
            await start(orchestrator, locks, "c1", history, drafts, [1])
            await orchestrator.drain()
            history.append("Mention the gala")
            await start(orchestrator, locks, "c1", history, drafts, [1], template={"id": 7, "name": "t", "content": "c"})
            await orchestrator.drain()

        asyncio.run(scenario())

        first, second = service.calls
        assert first["history"] == ["Thank them"]
        assert first["prior_draft"] is None
        assert second["history"] == ["Thank them", "Mention the gala"]
        assert second["prior_draft"].subject == "A note for Donor1"
        assert second["template"]["id"] == 7

    def test_listeners_see_progress_and_completion_callback_runs(self):
        service = FakeGenerationService()
        progress_events = []
        completed = []

        async def listener(campaign_id, progress):
            progress_events.append((campaign_id, progress["succeeded"]))

        async def on_complete(run):
            completed.append(run.status)

        async def scenario():
            orchestrator, locks = make_orchestrator(service)
            orchestrator.add_listener(listener)
            await start(orchestrator, locks, "c1", new_history(), DraftStore(), [1, 2], on_complete=on_complete)
            await orchestrator.drain()

        asyncio.run(scenario())

        assert ("c1", 2) in progress_events
        assert completed == [RunStatus.COMPLETED]


class TestRunIsolation:
    """Test one-run-per-campaign, cancellation and the concurrency bound."""

    def test_start_requires_campaign_lock(self):
        async def scenario():
            orchestrator, _ = make_orchestrator(FakeGenerationService())
            orchestrator.start_run("c1", new_history(), DraftStore(), [1])

        with pytest.raises(InvariantViolation):
            asyncio.run(scenario())

    def test_second_run_for_same_campaign_conflicts(self):
        service = FakeGenerationService()

        async def scenario():
            service.gate = asyncio.Event()
            orchestrator, locks = make_orchestrator(service)
            history = new_history()
            drafts = DraftStore()
            await start(orchestrator, locks, "c1", history, drafts, [1])

            with pytest.raises(ConflictError):
                await start(orchestrator, locks, "c1", history, drafts, [1])

            # A different campaign is not blocked
            other = await start(orchestrator, locks, "c2", new_history(), DraftStore(), [1])
            assert orchestrator.active_run("c2") is other

            service.gate.set()
            await orchestrator.drain()
            assert orchestrator.active_run("c1") is None

        asyncio.run(scenario())

    def test_cancelled_run_discards_late_results(self):
        service = FakeGenerationService()
        completed = []

        async def on_complete(run):
            completed.append(run)

        async def scenario():
            service.gate = asyncio.Event()
            orchestrator, locks = make_orchestrator(service)
            drafts = DraftStore()
            run = await start(orchestrator, locks, "c1", new_history(), drafts, [1, 2], on_complete=on_complete)
            await asyncio.sleep(0)

            async with locks.get("c1"):
                assert orchestrator.cancel("c1") is run

            service.gate.set()
            await orchestrator.drain()
            return run, drafts

        run, drafts = asyncio.run(scenario())

        assert run.status == RunStatus.CANCELLED
        assert run.outcomes == {}
        assert completed == []
        assert all(d.status == DraftStatus.PENDING for d in drafts.all())

    def test_concurrency_is_bounded(self):
        in_flight = {"now": 0, "max": 0}

        class Tracking(FakeGenerationService):
            async def generate(self, history, recipient, prior_draft=None, template=None):
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
                await asyncio.sleep(0.01)
                in_flight["now"] -= 1
                return GeneratedEmail(subject="s", body="b")

        async def scenario():
            orchestrator, locks = make_orchestrator(Tracking(), concurrency=2)
            run = await start(orchestrator, locks, "c1", new_history(), DraftStore(), list(range(1, 9)))
            await orchestrator.drain()
            return run

        run = asyncio.run(scenario())
        assert run.status == RunStatus.COMPLETED
        assert in_flight["max"] == 2
