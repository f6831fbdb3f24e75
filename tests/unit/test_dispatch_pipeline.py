"""
Tests for the priority dispatch pipeline.
"""

import asyncio
from unittest.mock import Mock

import pytest

from app.jobs.dispatch_pipeline import CancelOutcome, DispatchPipeline, RetryPolicy
from app.models.domain.blood_domain import Urgency
from app.models.domain.job_domain import ChannelType, JobPriority, JobStatus
from app.services.dead_letter_store import DeadLetterStore
from app.services.errors import ExhaustionError, ValidationError
from tests.fakes import FakeChannel

FAST_RETRY = RetryPolicy(base_seconds=0.01, cap_seconds=0.05)


def make_pipeline(channel: FakeChannel, queues=None, send_timeout=0.5) -> DispatchPipeline:
    return DispatchPipeline(
        {ChannelType.EMAIL: channel},
        queues=queues,
        retry_policy=FAST_RETRY,
        send_timeout=send_timeout,
    )


def email_job(pipeline, urgency=Urgency.MEDIUM, recipient="donor@example.com", **kwargs):
    kwargs.setdefault("template_id", "urgent-donor-alert")
    kwargs.setdefault("data", {})
    return pipeline.job_for_urgency(
        urgency, channel=ChannelType.EMAIL, recipient=recipient, **kwargs
    )


async def run_until_idle(pipeline: DispatchPipeline, timeout: float = 5.0) -> None:
    await asyncio.wait_for(pipeline.join(), timeout=timeout)


def test_retry_policy_doubles_and_caps():
    policy = RetryPolicy(base_seconds=1.0, cap_seconds=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_job_for_urgency_sets_priority_attempts_and_queue():
    pipeline = make_pipeline(FakeChannel())

    emergency = email_job(pipeline, Urgency.EMERGENCY)
    low = email_job(pipeline, Urgency.LOW)

    assert emergency.priority is JobPriority.EMERGENCY
    assert emergency.max_attempts == 5
    assert emergency.queue == "urgent"
    assert low.best_effort is True
    assert low.max_attempts == 2
    assert low.queue == "notification"


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_queue():
    pipeline = make_pipeline(FakeChannel())
    job = email_job(pipeline, queue="nope")

    with pytest.raises(ValidationError):
        await pipeline.enqueue(job)


@pytest.mark.asyncio
async def test_enqueue_rejects_zero_attempts():
    pipeline = make_pipeline(FakeChannel())
    job = email_job(pipeline)
    job.max_attempts = 0

    with pytest.raises(ValidationError):
        await pipeline.enqueue(job)


@pytest.mark.asyncio
async def test_successful_delivery_calls_channel_once():
    channel = FakeChannel()
    pipeline = make_pipeline(channel)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, data={"requestId": "req-1"}))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert channel.calls == [("donor@example.com", "urgent-donor-alert", {"requestId": "req-1"})]
    job = pipeline.get_job(handle)
    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 1
    assert pipeline.counters["completed"] == 1


@pytest.mark.asyncio
async def test_failed_attempts_are_retried_until_success():
    channel = FakeChannel(failures=2)
    pipeline = make_pipeline(channel)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, Urgency.MEDIUM))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 3
    assert len(channel.calls) == 3
    assert pipeline.counters["retried"] == 2


@pytest.mark.asyncio
async def test_exhausted_job_is_surfaced_to_sinks():
    channel = FakeChannel(failures=100)
    pipeline = make_pipeline(channel)
    dead_letters = DeadLetterStore()
    pipeline.add_exhaustion_sink(dead_letters.record)

    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, Urgency.HIGH))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.EXHAUSTED
    assert len(channel.calls) == 3
    assert isinstance(job.exhaustion, ExhaustionError)
    assert job.exhaustion.attempts == 3
    assert list(pipeline.exhausted) == [job]
    assert await dead_letters.count() == 1
    entries = await dead_letters.list_entries()
    assert entries[0]["job"]["id"] == job.id
    assert "TransientChannelError" in entries[0]["error"]


@pytest.mark.asyncio
async def test_best_effort_exhaustion_is_not_escalated():
    channel = FakeChannel(failures=100)
    pipeline = make_pipeline(channel)
    sink_calls = []

    async def sink(job):
        sink_calls.append(job)

    pipeline.add_exhaustion_sink(sink)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, Urgency.LOW))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.EXHAUSTED
    assert len(channel.calls) == 2
    assert not pipeline.exhausted
    assert sink_calls == []


@pytest.mark.asyncio
async def test_failing_sink_does_not_stop_the_worker():
    channel = FakeChannel(failures=1)
    pipeline = make_pipeline(channel, queues={"notification": 1})

    async def broken_sink(job):
        raise RuntimeError("sink down")

    pipeline.add_exhaustion_sink(broken_sink)
    await pipeline.start()
    try:
        first = email_job(pipeline)
        first.max_attempts = 1
        first_handle = await pipeline.enqueue(first)
        second_handle = await pipeline.enqueue(email_job(pipeline))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert pipeline.get_job(first_handle).status is JobStatus.EXHAUSTED
    assert pipeline.get_job(second_handle).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_exhausted_history_is_bounded_by_archive_size():
    pipeline = DispatchPipeline(
        {ChannelType.EMAIL: FakeChannel(failures=100)},
        queues={"notification": 1},
        retry_policy=FAST_RETRY,
        archive_size=5,
    )

    await pipeline.start()
    try:
        handles = []
        for n in range(20):
            job = email_job(pipeline, recipient=f"donor{n}@example.com")
            job.max_attempts = 1
            handles.append(await pipeline.enqueue(job))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert pipeline.counters["exhausted"] == 20
    assert len(pipeline.exhausted) == 5
    assert [job.id for job in pipeline.exhausted] == [h.job_id for h in handles[-5:]]
    assert pipeline.get_job(handles[0]) is None


@pytest.mark.asyncio
async def test_unexpected_worker_error_exhausts_through_sinks():
    channel = FakeChannel(failures=1)
    pipeline = make_pipeline(channel, queues={"notification": 1})
    pipeline.retry_policy = Mock(delay_for=Mock(side_effect=RuntimeError("bad policy")))
    sink_calls = []

    async def sink(job):
        sink_calls.append(job)

    pipeline.add_exhaustion_sink(sink)
    await pipeline.start()
    try:
        first_handle = await pipeline.enqueue(email_job(pipeline))
        second_handle = await pipeline.enqueue(email_job(pipeline))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    first = pipeline.get_job(first_handle)
    assert first.status is JobStatus.EXHAUSTED
    assert "RuntimeError: bad policy" in first.last_error
    assert first.exhaustion.attempts == 1
    assert sink_calls == [first]
    assert list(pipeline.exhausted) == [first]
    assert pipeline.counters["exhausted"] == 1
    assert pipeline.get_job(second_handle).status is JobStatus.COMPLETED
    assert pipeline.stats()["queues"]["notification"]["in_flight"] == 0


@pytest.mark.asyncio
async def test_channel_reporting_false_counts_as_failure():
    channel = FakeChannel(result=False)
    pipeline = make_pipeline(channel)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, Urgency.LOW))
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.EXHAUSTED
    assert "delivery failure" in job.last_error


@pytest.mark.asyncio
async def test_slow_channel_times_out():
    channel = FakeChannel(delay=0.5)
    pipeline = make_pipeline(channel, send_timeout=0.05)
    await pipeline.start()
    try:
        job = email_job(pipeline)
        job.max_attempts = 1
        handle = await pipeline.enqueue(job)
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.EXHAUSTED
    assert "timed out" in job.last_error


@pytest.mark.asyncio
async def test_missing_channel_fails_the_attempt():
    pipeline = make_pipeline(FakeChannel())
    await pipeline.start()
    try:
        job = pipeline.job_for_urgency(
            Urgency.MEDIUM,
            channel=ChannelType.SMS,
            recipient="+15550100",
            template_id="offer-accepted",
            data={},
        )
        job.max_attempts = 1
        handle = await pipeline.enqueue(job)
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert pipeline.get_job(handle).status is JobStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_jobs_served_by_priority_then_insertion_order():
    channel = FakeChannel()
    pipeline = make_pipeline(channel, queues={"notification": 1})

    for recipient, urgency in [
        ("low", Urgency.LOW),
        ("medium-1", Urgency.MEDIUM),
        ("emergency", Urgency.EMERGENCY),
        ("medium-2", Urgency.MEDIUM),
    ]:
        await pipeline.enqueue(
            email_job(pipeline, urgency, recipient=recipient, queue="notification")
        )

    await pipeline.start()
    try:
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert [recipient for recipient, _, _ in channel.calls] == [
        "emergency",
        "medium-1",
        "medium-2",
        "low",
    ]


@pytest.mark.asyncio
async def test_escalated_job_jumps_queued_peers_but_not_claimed_jobs():
    pipeline = make_pipeline(FakeChannel(), queues={"urgent": 1})
    queue = pipeline.queues["urgent"]

    claimed_job = email_job(pipeline, Urgency.HIGH, request_id="req-1", queue="urgent")
    await pipeline.enqueue(claimed_job)
    assert await queue.claim() is claimed_job

    earlier_emergency = email_job(
        pipeline, Urgency.EMERGENCY, request_id="req-other", queue="urgent"
    )
    low = email_job(pipeline, Urgency.LOW, request_id="req-1", queue="urgent")
    await pipeline.enqueue(earlier_emergency)
    await pipeline.enqueue(low)

    promoted = await pipeline.escalate_request("req-1")

    assert promoted == 1
    assert low.priority is JobPriority.EMERGENCY
    assert low.escalated is True
    assert claimed_job.priority is JobPriority.HIGH
    assert await queue.claim() is low
    assert await queue.claim() is earlier_emergency


@pytest.mark.asyncio
async def test_escalation_reaches_scheduled_retries():
    pipeline = make_pipeline(FakeChannel())
    job = email_job(pipeline, Urgency.MEDIUM, request_id="req-1")
    await pipeline.enqueue(job, delay=60)

    assert job.status is JobStatus.SCHEDULED
    assert await pipeline.escalate_request("req-1") == 1
    assert job.priority is JobPriority.EMERGENCY
    assert pipeline.stats()["queues"]["notification"]["scheduled"] == 1


@pytest.mark.asyncio
async def test_delayed_job_waits_for_its_schedule():
    channel = FakeChannel()
    pipeline = make_pipeline(channel)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline), delay=0.1)
        await asyncio.sleep(0.02)
        assert channel.calls == []
        assert pipeline.get_job(handle).status is JobStatus.SCHEDULED
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert len(channel.calls) == 1


@pytest.mark.asyncio
async def test_cancel_before_start():
    channel = FakeChannel()
    pipeline = make_pipeline(channel)
    job = email_job(pipeline)
    handle = await pipeline.enqueue(job)

    assert await pipeline.cancel(handle) is CancelOutcome.CANCELLED
    assert await pipeline.cancel(handle) is CancelOutcome.NOT_FOUND
    assert job.status is JobStatus.CANCELLED

    await pipeline.start()
    try:
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert channel.calls == []
    assert pipeline.counters["cancelled"] == 1


@pytest.mark.asyncio
async def test_cancel_in_flight_clears_retries():
    channel = FakeChannel(failures=100, delay=0.1)
    pipeline = make_pipeline(channel)
    await pipeline.start()
    try:
        handle = await pipeline.enqueue(email_job(pipeline, Urgency.EMERGENCY))
        await asyncio.sleep(0.03)
        assert await pipeline.cancel(handle) is CancelOutcome.RETRIES_CLEARED
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert pipeline.get_job(handle).status is JobStatus.CANCELLED
    assert len(channel.calls) == 1


@pytest.mark.asyncio
async def test_stop_returns_interrupted_job_to_queue():
    channel = FakeChannel(delay=5.0)
    pipeline = make_pipeline(channel, send_timeout=10.0)
    await pipeline.start()
    handle = await pipeline.enqueue(email_job(pipeline))
    await asyncio.sleep(0.03)

    await pipeline.stop()

    job = pipeline.get_job(handle)
    assert job.status is JobStatus.QUEUED
    assert job.attempts == 0
    assert pipeline.running is False


@pytest.mark.asyncio
async def test_queue_concurrency_is_bounded():
    class CountingChannel(FakeChannel):
        def __init__(self):
            super().__init__(delay=0.05)
            self.active = 0
            self.peak = 0

        async def send(self, recipient, template_id, data):
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                return await super().send(recipient, template_id, data)
            finally:
                self.active -= 1

    channel = CountingChannel()
    pipeline = make_pipeline(channel, queues={"matching": 2})
    await pipeline.start()
    try:
        for number in range(6):
            await pipeline.enqueue(
                email_job(pipeline, recipient=f"donor-{number}", queue="matching")
            )
        await run_until_idle(pipeline)
    finally:
        await pipeline.stop()

    assert len(channel.calls) == 6
    assert channel.peak == 2
