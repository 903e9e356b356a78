import asyncio

import pytest

from form_relay.domain.ports import EnqueueError, QueueBrokerError
from form_relay.domain.schema import (
    BackoffPolicy,
    Job,
    JobEventType,
    JobOptions,
    JobPayload,
)
from form_relay.services.job_queue import STALLED_LIMIT_REASON

from tests.fakes import wait_until


PAYLOAD = JobPayload(name="Carlos Pérez", phone="+593987654321", timestamp="5/3/2026, 9:07:03")


def record_events(queue):
    events = []
    queue.subscribe(events.append)
    return events


def test_exponential_backoff_doubles_from_base_delay():
    policy = BackoffPolicy(type="exponential", delay_ms=2000)

    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2000, 4000, 8000]


def test_fixed_backoff_is_constant():
    policy = BackoffPolicy(type="fixed", delay_ms=500)

    assert [policy.delay_for(n) for n in (1, 2, 3)] == [500, 500, 500]


@pytest.mark.asyncio
async def test_enqueue_applies_default_options(make_queue, broker):
    queue = make_queue()

    handle = await queue.enqueue(PAYLOAD)

    entry_id, raw = broker.ready[0]
    job = Job.model_validate_json(raw)
    assert handle.entry_id == entry_id
    assert job.id == handle.job_id
    assert job.max_attempts == 3
    assert job.attempts_made == 0
    assert job.payload == PAYLOAD


@pytest.mark.asyncio
async def test_enqueue_wraps_broker_errors(make_queue, broker):
    broker.fail_push = True
    queue = make_queue()

    with pytest.raises(EnqueueError):
        await queue.enqueue(PAYLOAD)


@pytest.mark.asyncio
async def test_job_succeeds_on_third_attempt(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)
    attempts = []

    async def flaky_handler(job):
        attempts.append(job.attempt)
        if len(attempts) < 3:
            raise RuntimeError("sheet unavailable")

    await queue.enqueue(PAYLOAD)
    queue.process(flaky_handler)
    try:
        await wait_until(lambda: any(e.type == JobEventType.COMPLETED for e in events))
    finally:
        await queue.close(timeout=1)

    assert attempts == [1, 2, 3]
    assert [e.type for e in events] == [
        JobEventType.RETRY_SCHEDULED,
        JobEventType.RETRY_SCHEDULED,
        JobEventType.COMPLETED,
    ]
    assert [e.delay_ms for e in events[:2]] == [10, 20]
    assert events[-1].attempts_made == 3
    assert broker.pending == {}
    assert broker.claimable == 0
    assert broker.failed == []


@pytest.mark.asyncio
async def test_exhausted_job_is_dead_lettered(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)
    calls = []

    async def failing_handler(job):
        calls.append(job.id)
        raise RuntimeError("quota exceeded")

    handle = await queue.enqueue(PAYLOAD)
    queue.process(failing_handler)
    try:
        await wait_until(lambda: any(e.type == JobEventType.FAILED for e in events))
    finally:
        await queue.close(timeout=1)

    assert len(calls) == 3
    failed = events[-1]
    assert failed.job_id == handle.job_id
    assert failed.attempts_made == 3
    assert failed.error == "quota exceeded"
    assert failed.submitter_name == "Carlos Pérez"

    assert len(broker.failed) == 1
    assert broker.failed[0].attempts_made == 3
    assert broker.failed[0].failed_reason == "quota exceeded"
    assert broker.claimable == 0
    assert broker.pending == {}


@pytest.mark.asyncio
async def test_per_job_options_override_defaults(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)

    async def failing_handler(job):
        raise RuntimeError("boom")

    await queue.enqueue(PAYLOAD, JobOptions(attempts=1))
    queue.process(failing_handler)
    try:
        await wait_until(lambda: bool(events))
    finally:
        await queue.close(timeout=1)

    assert [e.type for e in events] == [JobEventType.FAILED]


@pytest.mark.asyncio
async def test_completed_job_is_archived_when_not_removed(make_queue, broker):
    queue = make_queue(default_options=JobOptions(remove_on_complete=False))

    async def handler(job):
        return None

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    try:
        await wait_until(lambda: bool(broker.completed))
    finally:
        await queue.close(timeout=1)

    assert broker.completed[0].payload == PAYLOAD


@pytest.mark.asyncio
async def test_stalled_job_is_recovered(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)
    handled = []

    async def handler(job):
        handled.append(job)

    job = Job(payload=PAYLOAD)
    broker.abandon(job, idle_ms=5000)

    queue.process(handler)
    try:
        await wait_until(lambda: any(e.type == JobEventType.COMPLETED for e in events))
    finally:
        await queue.close(timeout=1)

    assert handled[0].id == job.id
    assert handled[0].stalled_count == 1
    types = [e.type for e in events]
    assert types == [JobEventType.STALLED, JobEventType.COMPLETED]
    assert broker.pending == {}


@pytest.mark.asyncio
async def test_job_stalling_past_limit_is_failed(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)
    handled = []

    async def handler(job):
        handled.append(job)

    job = Job(payload=PAYLOAD)
    broker.stalls[job.id] = 1
    broker.abandon(job, idle_ms=5000)

    queue.process(handler)
    try:
        await wait_until(lambda: bool(broker.failed))
    finally:
        await queue.close(timeout=1)

    assert handled == []
    assert broker.failed[0].failed_reason == STALLED_LIMIT_REASON
    assert events[-1].type == JobEventType.FAILED
    assert events[-1].error == STALLED_LIMIT_REASON


@pytest.mark.asyncio
async def test_check_stalled_ignores_fresh_leases(make_queue, broker):
    queue = make_queue()

    async def handler(job):
        return None

    broker.abandon(Job(payload=PAYLOAD), idle_ms=10)
    queue.process(handler)
    try:
        assert await queue.check_stalled() == 0
    finally:
        await queue.close(timeout=1)


@pytest.mark.asyncio
async def test_check_stalled_requires_processor(make_queue):
    queue = make_queue()

    with pytest.raises(RuntimeError):
        await queue.check_stalled()


@pytest.mark.asyncio
async def test_lease_is_renewed_while_handler_runs(make_queue, broker):
    queue = make_queue(lock_duration_ms=40)
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_handler(job):
        started.set()
        await release.wait()

    await queue.enqueue(PAYLOAD)
    queue.process(slow_handler)
    try:
        await asyncio.wait_for(started.wait(), timeout=2)
        entry_id = next(iter(broker.pending))
        first_lease = broker.pending[entry_id][2]
        await wait_until(lambda: broker.pending[entry_id][2] > first_lease)
        release.set()
        await wait_until(lambda: not broker.pending)
    finally:
        release.set()
        await queue.close(timeout=1)


@pytest.mark.asyncio
async def test_broker_outage_in_claim_loop_is_survived(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)
    broker.fail_claims = 2
    handled = []

    async def handler(job):
        handled.append(job.id)

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    try:
        await wait_until(lambda: bool(handled))
    finally:
        await queue.close(timeout=1)

    errors = [e for e in events if e.type == JobEventType.ERROR]
    assert len(errors) == 2
    assert "connection reset" in errors[0].error


@pytest.mark.asyncio
async def test_unexpected_loop_crash_is_fatal(make_queue, broker):
    fatal = []
    queue = make_queue(on_fatal=fatal.append)

    async def broken_claim(consumer, count, block_ms):
        raise TypeError("bad broker state")

    broker.claim = broken_claim

    async def handler(job):
        return None

    queue.process(handler)
    try:
        await wait_until(lambda: bool(fatal))
    finally:
        await queue.close(timeout=1)

    assert isinstance(fatal[0], TypeError)


@pytest.mark.asyncio
async def test_listener_failures_do_not_break_processing(make_queue, broker):
    queue = make_queue()

    def broken_listener(event):
        raise ValueError("listener bug")

    seen = []

    async def async_listener(event):
        seen.append(event.type)

    queue.subscribe(broken_listener)
    queue.subscribe(async_listener)

    async def handler(job):
        return None

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    try:
        await wait_until(lambda: JobEventType.COMPLETED in seen)
    finally:
        await queue.close(timeout=1)


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(make_queue, broker):
    queue = make_queue()
    events = []
    unsubscribe = queue.subscribe(events.append)
    unsubscribe()

    async def handler(job):
        return None

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    try:
        await wait_until(lambda: not broker.ready and not broker.pending)
    finally:
        await queue.close(timeout=1)

    assert events == []


@pytest.mark.asyncio
async def test_close_waits_for_in_flight_jobs(make_queue, broker):
    queue = make_queue()
    finished = []

    async def handler(job):
        await asyncio.sleep(0.05)
        finished.append(job.id)

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    await wait_until(lambda: queue.in_flight == 1)

    await queue.close(timeout=2)

    assert len(finished) == 1
    assert broker.pending == {}


@pytest.mark.asyncio
async def test_close_timeout_leaves_job_for_redelivery(make_queue, broker):
    queue = make_queue()

    async def hung_handler(job):
        await asyncio.sleep(30)

    await queue.enqueue(PAYLOAD)
    queue.process(hung_handler)
    await wait_until(lambda: queue.in_flight == 1)

    await queue.close(timeout=0.05)

    assert queue.in_flight == 0
    assert len(broker.pending) == 1
    assert broker.failed == []


@pytest.mark.asyncio
async def test_enqueue_after_close_is_rejected(make_queue):
    queue = make_queue()
    await queue.close(timeout=0)

    with pytest.raises(EnqueueError):
        await queue.enqueue(PAYLOAD)


@pytest.mark.asyncio
async def test_failed_finalize_keeps_entry_pending(make_queue, broker):
    queue = make_queue()
    events = record_events(queue)

    async def broken_complete(delivery):
        raise QueueBrokerError("ack failed")

    broker.complete = broken_complete

    async def handler(job):
        return None

    await queue.enqueue(PAYLOAD)
    queue.process(handler)
    try:
        await wait_until(lambda: any(e.type == JobEventType.ERROR for e in events))
    finally:
        await queue.close(timeout=1)

    assert len(broker.pending) == 1
