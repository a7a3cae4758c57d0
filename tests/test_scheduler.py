"""Tests for the scheduler: validation, dispatch caps, retry settlement, lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from analysis.errors import ErrorKind, InvalidPayload, MissingHandlerError
from analysis.models import JobStatus
from analysis.results import HandlerResult
from analysis.scheduler import KIND_PRIORITIES, Scheduler, SchedulerSettings
from analysis.schemas import JobKind


async def _ok(job):
    return HandlerResult.success()


def _handlers(default=_ok, **overrides):
    handlers = {kind: default for kind in JobKind}
    handlers.update({JobKind(kind): handler for kind, handler in overrides.items()})
    return handlers


def _scheduler(job_store, clock, handlers=None, **settings):
    return Scheduler(
        job_store,
        settings=SchedulerSettings(**settings),
        handlers=handlers if handlers is not None else _handlers(),
        worker_id="test-worker",
        clock=clock,
    )


async def _tick_and_drain(scheduler):
    dispatched = await scheduler.tick()
    await scheduler.drain()
    return dispatched


class TestSchedule:
    def test_persists_job_due_after_delay(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)

        job_id = scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=30)

        job = job_store.get(job_id)
        assert job.kind == "analyze_audio"
        assert job.payload == {"recording_id": "rec-1"}
        assert job.recording_id == "rec-1"
        assert job.due_at == clock() + timedelta(seconds=30)
        assert job.priority == KIND_PRIORITIES[JobKind.ANALYZE_AUDIO]
        assert job.fail_count == 0

    def test_missing_recording_id_rejected_without_persisting(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)

        with pytest.raises(InvalidPayload):
            scheduler.schedule("analyze_audio", {}, 0)

        assert job_store.stats(clock())["total"] == 0

    def test_unexpected_field_rejected(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        with pytest.raises(InvalidPayload):
            scheduler.schedule("health_check", {"verbose": True})

    def test_unknown_kind_rejected(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        with pytest.raises(InvalidPayload):
            scheduler.schedule("transcode", {})

    def test_negative_delay_rejected(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        with pytest.raises(ValueError):
            scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=-1)

    def test_priority_override(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        job_id = scheduler.schedule("cleanup_temp", {}, priority=99)
        assert job_store.get(job_id).priority == 99


class TestHandlerRegistry:
    def test_unknown_kind_cannot_be_registered(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        with pytest.raises(ValueError):
            scheduler.register_handler("transcode", _ok)

    def test_tick_requires_every_kind(self, job_store, clock):
        scheduler = _scheduler(job_store, clock, handlers={JobKind.ANALYZE_AUDIO: _ok})

        with pytest.raises(MissingHandlerError) as exc_info:
            asyncio.run(scheduler.tick())

        assert set(exc_info.value.kinds) == {"cleanup_failed", "cleanup_temp", "health_check"}

    def test_run_requires_every_kind(self, job_store, clock):
        scheduler = _scheduler(job_store, clock, handlers={})
        with pytest.raises(MissingHandlerError):
            asyncio.run(scheduler.run())


class TestDispatch:
    def test_success_completes_job(self, job_store, clock):
        seen = []

        async def handler(job):
            seen.append(job.job_id)
            return HandlerResult.success()

        scheduler = _scheduler(job_store, clock, _handlers(analyze_audio=handler))
        job_id = scheduler.schedule("analyze_audio", {"recordingId": "rec-1"})

        dispatched = asyncio.run(_tick_and_drain(scheduler))

        assert dispatched == [job_id]
        assert seen == [job_id]
        job = job_store.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.lease_owner is None

    def test_future_jobs_not_dispatched(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=10)

        assert asyncio.run(_tick_and_drain(scheduler)) == []

    def test_leased_job_not_dispatched_twice(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        job_id = scheduler.schedule("analyze_audio", {"recordingId": "rec-1"})
        job_store.acquire_lease(job_id, "other-worker", 300, clock())

        assert asyncio.run(_tick_and_drain(scheduler)) == []

    def test_global_and_per_kind_caps(self, job_store, clock):
        started = []

        async def scenario():
            release = asyncio.Event()

            async def blocking(job):
                started.append(job.kind)
                await release.wait()
                return HandlerResult.success()

            scheduler = _scheduler(
                job_store,
                clock,
                _handlers(blocking),
                max_concurrency=3,
                kind_concurrency={"analyze_audio": 2},
                default_kind_concurrency=1,
            )
            for i in range(3):
                scheduler.schedule("analyze_audio", {"recordingId": f"rec-{i}"})
            scheduler.schedule("health_check", {})
            scheduler.schedule("health_check", {})

            first = await scheduler.tick()
            await asyncio.sleep(0)
            assert len(first) == 3
            assert scheduler.running_jobs == 3
            assert await scheduler.tick() == []

            release.set()
            await scheduler.drain()
            assert scheduler.running_jobs == 0

            second = await scheduler.tick()
            await scheduler.drain()
            return first, second

        first, second = asyncio.run(scenario())

        assert len(second) == 2
        assert started[:3].count("analyze_audio") == 2
        assert started[:3].count("health_check") == 1
        assert sorted(started) == ["analyze_audio"] * 3 + ["health_check"] * 2


    def test_backlog_of_one_kind_does_not_starve_others(self, job_store, clock):
        async def scenario():
            release = asyncio.Event()

            async def blocking(job):
                await release.wait()
                return HandlerResult.success()

            scheduler = _scheduler(
                job_store,
                clock,
                _handlers(blocking),
                max_concurrency=3,
                kind_concurrency={"analyze_audio": 2},
                default_kind_concurrency=1,
                batch_size=50,
            )
            for i in range(60):
                scheduler.schedule("analyze_audio", {"recordingId": f"rec-{i}"})
            health_id = scheduler.schedule("health_check", {})

            dispatched = await scheduler.tick()
            running = scheduler.running_jobs
            release.set()
            await scheduler.drain()
            return dispatched, running, health_id

        dispatched, running, health_id = asyncio.run(scenario())

        assert len(dispatched) == 3
        assert running == 3
        assert health_id in dispatched
        assert job_store.get(health_id).status == JobStatus.COMPLETED

    def test_unknown_kind_row_is_failed(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        job_id = job_store.insert(kind="transcode", payload={}, due_at=clock())

        assert asyncio.run(_tick_and_drain(scheduler)) == []

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "Unknown job kind: transcode"
        assert job.lease_owner is None
        assert asyncio.run(_tick_and_drain(scheduler)) == []


class TestFailureSettlement:
    def test_retryable_failure_reschedules_with_backoff(self, job_store, clock):
        async def unavailable(job):
            return HandlerResult.failure(
                ErrorKind.SERVICE_UNAVAILABLE, "ML service is not available"
            )

        scheduler = _scheduler(job_store, clock, _handlers(cleanup_temp=unavailable))
        job_id = scheduler.schedule("cleanup_temp", {})

        for expected_fail_count, delay in [(1, 30), (2, 120), (3, 480)]:
            assert asyncio.run(_tick_and_drain(scheduler)) == [job_id]
            job = job_store.get(job_id)
            assert job.status == JobStatus.SCHEDULED
            assert job.fail_count == expected_fail_count
            assert job.due_at == clock() + timedelta(seconds=delay)
            assert job.last_error == "ML service is not available"
            assert asyncio.run(_tick_and_drain(scheduler)) == []
            clock.advance(seconds=delay)

        asyncio.run(_tick_and_drain(scheduler))
        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.fail_count == 4

    def test_non_retryable_failure_is_terminal(self, job_store, clock):
        async def not_found(job):
            return HandlerResult.failure(ErrorKind.RECORDING_NOT_FOUND, "gone")

        scheduler = _scheduler(job_store, clock, _handlers(analyze_audio=not_found))
        job_id = scheduler.schedule("analyze_audio", {"recordingId": "rec-1"})

        asyncio.run(_tick_and_drain(scheduler))

        job = job_store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "gone"

    def test_retry_false_is_terminal(self, job_store, clock):
        async def handled(job):
            return HandlerResult.failure(ErrorKind.TIMEOUT, "timed out", retry=False)

        scheduler = _scheduler(job_store, clock, _handlers(analyze_audio=handled))
        job_id = scheduler.schedule("analyze_audio", {"recordingId": "rec-1"})

        asyncio.run(_tick_and_drain(scheduler))

        assert job_store.get(job_id).status == JobStatus.FAILED

    def test_handler_exception_is_internal_and_retried(self, job_store, clock):
        async def broken(job):
            raise RuntimeError("disk on fire")

        scheduler = _scheduler(job_store, clock, _handlers(cleanup_failed=broken))
        job_id = scheduler.schedule("cleanup_failed", {})

        asyncio.run(_tick_and_drain(scheduler))

        job = job_store.get(job_id)
        assert job.status == JobStatus.SCHEDULED
        assert job.fail_count == 1
        assert job.last_error == "disk on fire"
        assert scheduler.running_jobs == 0

    def test_failed_recurring_job_is_reseeded(self, job_store, clock):
        async def rejected(job):
            return HandlerResult.failure(ErrorKind.INVALID_PAYLOAD, "bad")

        scheduler = _scheduler(job_store, clock, _handlers(health_check=rejected))
        job_id = scheduler.schedule("health_check", {})

        asyncio.run(_tick_and_drain(scheduler))

        assert job_store.get(job_id).status == JobStatus.FAILED
        assert job_store.has_scheduled("health_check")
        clock.advance(seconds=299)
        assert asyncio.run(_tick_and_drain(scheduler)) == []
        clock.advance(seconds=1)
        assert len(asyncio.run(_tick_and_drain(scheduler))) == 1


class TestRecurringAndStats:
    def test_ensure_recurring_is_idempotent(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)

        assert len(scheduler.ensure_recurring()) == 3
        assert scheduler.ensure_recurring() == []
        for kind in ("cleanup_failed", "cleanup_temp", "health_check"):
            assert job_store.has_scheduled(kind)

    def test_job_stats(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=60)
        scheduler.schedule("analyze_audio", {"recordingId": "rec-2"})

        assert scheduler.job_stats() == {"total": 2, "running": 0, "failed": 0, "scheduled": 1}

    def test_cancel_pending(self, job_store, clock):
        scheduler = _scheduler(job_store, clock)
        scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=30)
        scheduler.schedule("analyze_audio", {"recordingId": "rec-1"}, delay=120)
        kept = scheduler.schedule("analyze_audio", {"recordingId": "rec-2"})

        assert scheduler.cancel_pending("rec-1") == 2
        assert scheduler.job_stats()["total"] == 1
        assert job_store.get(kept) is not None


class TestLifecycle:
    def test_stop_waits_for_in_flight_handlers(self, job_store, clock):
        finished = []

        async def slow(job):
            await asyncio.sleep(0.05)
            finished.append(job.kind)
            return HandlerResult.success()

        async def scenario():
            scheduler = _scheduler(job_store, clock, _handlers(slow), poll_interval=0.01)
            await scheduler.start()

            async def wait_for_dispatch():
                while scheduler.running_jobs < 3:
                    await asyncio.sleep(0.005)

            await asyncio.wait_for(wait_for_dispatch(), timeout=5)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(scenario())

        assert sorted(finished) == ["cleanup_failed", "cleanup_temp", "health_check"]
        assert scheduler.running_jobs == 0
        assert scheduler.stopped.is_set()
        assert scheduler.job_stats()["failed"] == 0

    def test_stop_requested_before_run(self, job_store, clock):
        scheduler = _scheduler(job_store, clock, poll_interval=10)
        scheduler.request_stop()

        asyncio.run(asyncio.wait_for(scheduler.run(), timeout=5))

        assert scheduler.stopped.is_set()
