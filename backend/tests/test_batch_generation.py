import asyncio

import pytest

from autopilot.errors import EmptySourceError, InvalidStateError, NotFoundError, RateLimitError, ValidationError
from autopilot.schemas import BatchGenerationSettings, BatchJobStatus, TaskStatus
from autopilot.services.batch_generation import BatchGenerationService, partition_sources
from autopilot.services.content_generator import StubContentGenerator
from autopilot.services.task_queue import POOL_GENERATION, TASK_GENERATE

from conftest import SOURCE_TEXTS, make_sources, seed_research


@pytest.fixture
def service(store, queue, generator, library, settings):
    return BatchGenerationService(store, queue, generator, library, settings)


async def _start(service, store, *, target_count=3, sources=3, **settings):
    await seed_research(store, sources=sources)
    return await service.generate_batch("research_1", BatchGenerationSettings(target_count=target_count, **settings))


async def _run_all(service, queue):
    return [
        await service.process_content_generation(call["payload"]["batch_job_id"], call["payload"]["task_id"])
        for call in queue.for_pool(POOL_GENERATION)
    ]


def _assert_progress_invariant(job):
    p = job.progress
    assert p.completed + p.failed <= p.total
    assert p.processing >= 0


# ── Partitioning ─────────────────────────────────────────────

def test_partition_even_split_folds_tail_into_last_group():
    sources = make_sources(10)
    groups = partition_sources(sources, 3)
    assert [len(g) for g in groups] == [3, 3, 4]
    assert [s for g in groups for s in g] == sources


def test_partition_backfills_when_fewer_sources_than_targets():
    sources = make_sources(2)
    groups = partition_sources(sources, 5)
    assert len(groups) == 5
    assert all(len(g) == 1 for g in groups)
    assert [g[0].url for g in groups] == [sources[i % 2].url for i in range(5)]


def test_partition_rejects_empty_sources():
    with pytest.raises(EmptySourceError):
        partition_sources([], 3)


# ── Job creation & dispatch ──────────────────────────────────

@pytest.mark.asyncio
async def test_generate_batch_staggers_dispatch(service, store, queue):
    job_id = await _start(service, store)

    calls = queue.for_pool(POOL_GENERATION)
    assert [c["delay_ms"] for c in calls] == [0, 1000, 2000]
    assert [c["priority"] for c in calls] == [0, 1, 2]
    assert all(c["task"] == TASK_GENERATE for c in calls)
    assert [c["id"] for c in calls] == [f"task_{job_id}_{i}" for i in (1, 2, 3)]

    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.processing
    assert job.progress.total == 3
    assert job.progress.estimated_time_remaining == "6 minutes"
    assert all(t.status == TaskStatus.pending for t in job.tasks)


@pytest.mark.asyncio
async def test_generate_batch_research_errors(service, store):
    with pytest.raises(NotFoundError):
        await service.generate_batch("missing", BatchGenerationSettings())

    await seed_research(store, "running", status="crawling")
    with pytest.raises(InvalidStateError):
        await service.generate_batch("running", BatchGenerationSettings())

    await seed_research(store, "empty", sources=0)
    with pytest.raises(EmptySourceError):
        await service.generate_batch("empty", BatchGenerationSettings())


@pytest.mark.asyncio
async def test_create_batch_job_validates_settings(service, store):
    await seed_research(store)
    with pytest.raises(ValidationError):
        await service.create_batch_job("research_1", {"target_count": 0})
    with pytest.raises(ValidationError):
        await service.create_batch_job("research_1", {"requirements": {"uniqueness_threshold": 0.2}})
    with pytest.raises(ValidationError):
        await service.create_batch_job("", {})


@pytest.mark.asyncio
async def test_dispatch_failure_marks_job_failed(service, store, queue):
    queue.fail_on_call = 1
    await seed_research(store)

    with pytest.raises(RuntimeError):
        await service.generate_batch("research_1", BatchGenerationSettings(target_count=3))

    job_id = queue.calls[0]["payload"]["batch_job_id"]
    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.failed
    assert job.completed_at is not None


# ── Worker side ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_processing_all_tasks_completes_job(service, store, queue, generator, library):
    job_id = await _start(service, store)
    outcomes = await _run_all(service, queue)

    assert [o["status"] for o in outcomes] == ["completed"] * 3
    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.completed
    assert (job.progress.completed, job.progress.failed, job.progress.processing) == (3, 0, 0)
    assert job.progress.percentage == 100
    assert job.completed_at is not None
    _assert_progress_invariant(job)

    results = await service.get_batch_job_results(job_id)
    assert len(results) == 3
    assert len(library.saved) == 3
    assert [r.id for r in results] == [f"content_task_{job_id}_{i}" for i in (1, 2, 3)]
    assert [c.id for c in library.saved] == [r.id for r in results]
    first = results[0]
    assert first.uniqueness_score == 1.0
    assert first.excerpt == generator.body[:200] + "..."
    assert first.metadata["batch_job_id"] == job_id
    assert first.metadata["ai_provider"] == "fake"
    assert first.metadata["quality_score"] == 90
    assert first.metadata["word_count"] == len(generator.body.split())
    assert first.metadata["reading_time"] == 1


@pytest.mark.asyncio
async def test_generator_receives_topic_and_context(service, store, queue, generator):
    await _start(service, store, target_count=1, target_audience="Engaged couples")
    await _run_all(service, queue)

    call = generator.calls[0]
    assert call["content_type"] == "blog_post"
    assert call["target_audience"] == "Engaged couples"
    assert "TARGET AUDIENCE: Engaged couples" in call["context_prompt"]
    assert call["topic"].startswith("wedding photography")


@pytest.mark.asyncio
async def test_uniqueness_failure_is_recorded(service, store, queue, generator):
    generator.body = " ".join(SOURCE_TEXTS)
    job_id = await _start(service, store, target_count=1)

    outcome = (await _run_all(service, queue))[0]
    assert outcome["status"] == "failed"
    assert "not unique enough" in outcome["error"]

    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.completed_with_errors
    assert job.tasks[0].status == TaskStatus.failed
    assert await service.get_batch_job_results(job_id) == []


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(service, store, queue):
    job_id = await _start(service, store, target_count=2)
    task_id = queue.calls[0]["payload"]["task_id"]

    assert (await service.process_content_generation(job_id, task_id))["status"] == "completed"
    assert (await service.process_content_generation(job_id, task_id))["status"] == "skipped"

    job = await service.get_batch_job_status(job_id)
    assert job.progress.completed == 1
    assert job.status == BatchJobStatus.processing


@pytest.mark.asyncio
async def test_transient_failure_releases_task_for_retry(service, store, queue, generator):
    job_id = await _start(service, store, target_count=1)
    task_id = queue.calls[0]["payload"]["task_id"]
    generator.errors = [RateLimitError("429 Too Many Requests")]

    with pytest.raises(RateLimitError):
        await service.process_content_generation(job_id, task_id, final_attempt=False)

    job = await service.get_batch_job_status(job_id)
    assert job.tasks[0].status == TaskStatus.pending
    assert (job.progress.completed, job.progress.failed, job.progress.processing) == (0, 0, 0)

    assert (await service.process_content_generation(job_id, task_id))["status"] == "completed"
    job = await service.get_batch_job_status(job_id)
    assert job.tasks[0].attempts == 2
    assert job.status == BatchJobStatus.completed


@pytest.mark.asyncio
async def test_transient_failure_on_final_attempt_is_recorded(service, store, queue, generator):
    job_id = await _start(service, store, target_count=1)
    generator.errors = [RateLimitError("429 Too Many Requests")]

    outcome = await service.process_content_generation(job_id, queue.calls[0]["payload"]["task_id"])
    assert outcome["status"] == "failed"
    job = await service.get_batch_job_status(job_id)
    assert job.progress.failed == 1
    assert job.status == BatchJobStatus.completed_with_errors


@pytest.mark.asyncio
async def test_expired_job_is_not_found(service, store, queue, clock):
    job_id = await _start(service, store, target_count=1)
    clock.advance(7201)

    with pytest.raises(NotFoundError):
        await service.get_batch_job_status(job_id)
    outcome = await service.process_content_generation(job_id, queue.calls[0]["payload"]["task_id"])
    assert outcome == {"status": "skipped", "reason": "job_not_found"}


@pytest.mark.asyncio
async def test_worker_level_failure_finishes_the_task(service, store, queue):
    job_id = await _start(service, store, target_count=2)
    first, second = queue.for_pool(POOL_GENERATION)
    await service.process_content_generation(job_id, first["payload"]["task_id"])

    outcome = await service.fail_task(job_id, second["payload"]["task_id"], TimeoutError("no generation slot"))
    assert outcome == {"status": "failed", "error": "no generation slot"}

    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.completed_with_errors
    assert (job.progress.completed, job.progress.failed, job.progress.processing) == (1, 1, 0)
    assert job.tasks[1].error == "no generation slot"


@pytest.mark.asyncio
async def test_concurrent_completions_keep_counters_consistent(service, store, queue, generator, library):
    async def yield_to_siblings():
        await asyncio.sleep(0)

    generator.on_generate = yield_to_siblings
    generator.errors = [ValueError("model refused the prompt")]
    job_id = await _start(service, store, target_count=6, sources=6)

    outcomes = await asyncio.gather(*(
        service.process_content_generation(job_id, call["payload"]["task_id"])
        for call in queue.for_pool(POOL_GENERATION)
    ))

    assert sorted(o["status"] for o in outcomes) == ["completed"] * 5 + ["failed"]
    job = await service.get_batch_job_status(job_id)
    assert job.progress.completed + job.progress.failed == job.progress.total == 6
    assert job.progress.processing == 0
    assert job.progress.percentage == 100
    assert job.status == BatchJobStatus.completed_with_errors
    assert len({c.id for c in library.saved}) == 5
    _assert_progress_invariant(job)


# ── Cancellation ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_keeps_completed_results_and_stops_counting(service, store, queue):
    job_id = await _start(service, store, target_count=10, sources=10)
    calls = queue.for_pool(POOL_GENERATION)
    for call in calls[:4]:
        await service.process_content_generation(job_id, call["payload"]["task_id"])

    cancelled = await service.cancel_batch_job(job_id)
    assert cancelled.status == BatchJobStatus.cancelled
    assert cancelled.cancelled_at is not None

    outcome = await service.process_content_generation(job_id, calls[4]["payload"]["task_id"])
    assert outcome["status"] == "skipped"

    job = await service.get_batch_job_status(job_id)
    assert job.progress.completed == 4
    assert job.progress.processing == 0
    assert len(await service.get_batch_job_results(job_id)) == 4
    assert sum(t.status == TaskStatus.cancelled for t in job.tasks) == 6
    _assert_progress_invariant(job)

    again = await service.cancel_batch_job(job_id)
    assert again.status == BatchJobStatus.cancelled


@pytest.mark.asyncio
async def test_result_arriving_after_cancel_is_discarded(service, store, queue, generator, library):
    job_id = await _start(service, store, target_count=2)

    async def cancel_midway():
        await service.cancel_batch_job(job_id)

    generator.on_generate = cancel_midway
    outcome = await service.process_content_generation(job_id, queue.calls[0]["payload"]["task_id"])

    assert outcome["status"] == "discarded"
    job = await service.get_batch_job_status(job_id)
    assert job.progress.completed == 0
    assert await service.get_batch_job_results(job_id) == []
    assert library.saved == []


@pytest.mark.asyncio
async def test_cancel_during_dispatch_stops_enqueueing(service, store, queue):
    await seed_research(store)

    async def cancel_after_first(call):
        await service.cancel_batch_job(call["payload"]["batch_job_id"])

    queue.on_enqueue = cancel_after_first
    job_id = await service.generate_batch("research_1", BatchGenerationSettings(target_count=3))

    assert len(queue.calls) == 1
    job = await service.get_batch_job_status(job_id)
    assert job.status == BatchJobStatus.cancelled


@pytest.mark.asyncio
async def test_cancel_finished_job_is_invalid(service, store, queue):
    job_id = await _start(service, store, target_count=1)
    await _run_all(service, queue)

    with pytest.raises(InvalidStateError):
        await service.cancel_batch_job(job_id)
    with pytest.raises(NotFoundError):
        await service.cancel_batch_job("batch_missing")


@pytest.mark.asyncio
async def test_stub_generator_clears_uniqueness_gate(store, queue, library, settings):
    service = BatchGenerationService(store, queue, StubContentGenerator(), library, settings)
    job_id = await _start(service, store, target_count=2)

    outcomes = await _run_all(service, queue)
    assert [o["status"] for o in outcomes] == ["completed", "completed"]
    results = await service.get_batch_job_results(job_id)
    assert results[0].metadata["ai_provider"] == "stub-v1"
    assert results[0].metadata["seo_title"]
