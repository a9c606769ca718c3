"""
Batch generation orchestrator.

Flow:
1. generate_batch: research job -> source groups -> BatchGenerationJob
   (pending) + one GenerationTask per group -> staggered dispatch on the
   `generation` pool -> job processing.
2. process_content_generation (worker): mark started -> context prompt ->
   ContentGenerator -> uniqueness gate -> content library -> progress.

All job mutations go through JobStore.update, so concurrent workers never
lose increments. A task that is already terminal is skipped, which makes
redelivered messages harmless. Results arriving after cancel are dropped.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from autopilot.errors import (
    EmptySourceError,
    InvalidStateError,
    JobCancelled,
    NotFoundError,
    TransientError,
    ValidationError,
)
from autopilot.schemas import (
    TERMINAL_TASK_STATUSES,
    BatchGenerationJob,
    BatchGenerationSettings,
    BatchJobStatus,
    BatchProgress,
    GeneratedContent,
    GenerationTask,
    ResearchJob,
    SourceDocument,
    TaskStatus,
    utcnow,
)
from autopilot.services import job_progress
from autopilot.services import text_analysis
from autopilot.services.content_generator import ContentGenerator
from autopilot.services.content_library import ContentSink
from autopilot.services.job_store import JobStore
from autopilot.services.task_queue import POOL_GENERATION, TASK_GENERATE, TaskQueue
from autopilot.services.uniqueness import ensure_unique
from autopilot.settings import Settings

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = {
    BatchJobStatus.completed,
    BatchJobStatus.completed_with_errors,
    BatchJobStatus.failed,
    BatchJobStatus.cancelled,
}


def batch_job_key(job_id: str) -> str:
    return f"batch_job:{job_id}"


def research_job_key(job_id: str) -> str:
    return f"research_job:{job_id}"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def partition_sources(sources: list[SourceDocument], target_count: int) -> list[list[SourceDocument]]:
    """Split sources into exactly `target_count` non-empty groups.

    Group i is sources[i*per_group:(i+1)*per_group]; an empty slice reuses
    sources[i % len]. Sources past the last full slice join the last group.
    """
    if not sources:
        raise EmptySourceError("No crawled content available for generation")
    if target_count < 1:
        raise ValidationError("target_count must be at least 1")

    per_group = max(1, len(sources) // target_count)
    groups: list[list[SourceDocument]] = []
    for i in range(target_count):
        group = sources[i * per_group:(i + 1) * per_group]
        if not group:
            group = [sources[i % len(sources)]]
        groups.append(group)

    tail = sources[target_count * per_group:]
    if tail:
        groups[-1] = groups[-1] + tail
    return groups


class BatchGenerationService:
    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        generator: ContentGenerator,
        sink: ContentSink,
        settings: Settings,
    ):
        self._store = store
        self._queue = queue
        self._generator = generator
        self._sink = sink
        self._settings = settings

    # ── Job record helpers ───────────────────────────────────

    async def _load_job(self, job_id: str) -> BatchGenerationJob:
        raw = await self._store.get(batch_job_key(job_id))
        if raw is None:
            raise NotFoundError(f"Batch job {job_id} not found")
        return BatchGenerationJob.model_validate(raw)

    async def _update_job(self, job_id: str, fn: Callable[[BatchGenerationJob], Any]) -> Any:
        def mutate(raw: dict) -> tuple[dict, Any]:
            job = BatchGenerationJob.model_validate(raw)
            result = fn(job)
            return job.model_dump(mode="json"), result

        return await self._store.update(batch_job_key(job_id), mutate, self._settings.job_ttl_sec)

    async def _load_sources(self, research_job_id: str) -> list[SourceDocument]:
        raw = await self._store.get(research_job_key(research_job_id))
        if raw is None:
            raise NotFoundError(f"Research job {research_job_id} not found")
        research = ResearchJob.model_validate(raw)
        if research.status != "completed":
            raise InvalidStateError(f"Research job {research_job_id} not completed yet (status={research.status})")
        sources = research.results.crawled_content if research.results else []
        if not sources:
            raise EmptySourceError(f"No research results found for batch generation ({research_job_id})")
        return sources

    # ── Job creation & dispatch ──────────────────────────────

    async def create_batch_job(self, research_job_id: str, raw_settings: dict[str, Any] | None) -> str:
        """Validate raw caller input, then start the batch."""
        if not research_job_id:
            raise ValidationError("research_job_id is required")
        try:
            settings = BatchGenerationSettings.model_validate(raw_settings or {})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid batch settings: {e}") from e
        return await self.generate_batch(research_job_id, settings)

    async def generate_batch(self, research_job_id: str, settings: BatchGenerationSettings) -> str:
        sources = await self._load_sources(research_job_id)
        groups = partition_sources(sources, settings.target_count)

        job_id = _new_id("batch")
        tasks = [
            GenerationTask(
                id=f"task_{job_id}_{i + 1}",
                batch_job_id=job_id,
                sources=group,
                settings=settings,
                priority=i,
            )
            for i, group in enumerate(groups)
        ]
        job = BatchGenerationJob(
            id=job_id,
            research_job_id=research_job_id,
            settings=settings,
            progress=BatchProgress(
                total=len(tasks),
                estimated_time_remaining=job_progress.time_remaining(len(tasks)),
            ),
            tasks=tasks,
        )
        await self._store.set(batch_job_key(job_id), job.model_dump(mode="json"), self._settings.job_ttl_sec)
        logger.info(
            f"[batch] Created {job_id}: {len(sources)} sources -> {len(tasks)} tasks "
            f"(research={research_job_id})"
        )

        await self._dispatch(job_id, tasks)
        return job_id

    async def _dispatch(self, job_id: str, tasks: list[GenerationTask]) -> None:
        def start(job: BatchGenerationJob) -> None:
            if job.status == BatchJobStatus.pending:
                job.status = BatchJobStatus.processing
                job.progress.current_stage = "Starting content generation"

        try:
            await self._update_job(job_id, start)
            for task in tasks:
                current = await self._load_job(job_id)
                if current.status == BatchJobStatus.cancelled:
                    logger.info(f"[batch] {job_id} cancelled, stopping dispatch at {task.id}")
                    return
                await self._queue.enqueue(
                    POOL_GENERATION,
                    TASK_GENERATE,
                    {"batch_job_id": job_id, "task_id": task.id},
                    delay_ms=task.priority * self._settings.generation_stagger_ms,
                    priority=task.priority,
                    idempotency_key=task.id,
                )
            logger.info(f"[batch] Queued {len(tasks)} generation tasks for {job_id}")
        except Exception as e:
            logger.error(f"[batch] Dispatch failed for {job_id}: {e}")

            def fail(job: BatchGenerationJob) -> None:
                if job.status in TERMINAL_JOB_STATUSES:
                    return
                job.status = BatchJobStatus.failed
                job.progress.current_stage = "Failed to initialize batch generation"
                job.completed_at = job.completed_at or utcnow()

            await self._update_job(job_id, fail)
            raise

    # ── Worker side ──────────────────────────────────────────

    async def process_content_generation(
        self,
        batch_job_id: str,
        task_id: str,
        *,
        final_attempt: bool = True,
    ) -> dict[str, Any]:
        """Run one generation task. Returns a small outcome dict for the worker.

        Raises TransientError on a non-final attempt so the queue retries.
        """
        try:
            task = await self._update_job(batch_job_id, lambda job: self._mark_started(job, task_id))
        except NotFoundError:
            logger.warning(f"[batch] {batch_job_id} missing or expired, dropping {task_id}")
            return {"status": "skipped", "reason": "job_not_found"}
        if task is None:
            return {"status": "skipped", "reason": "not_runnable"}

        try:
            content = await self._generate(task)
            await self._ensure_not_cancelled(batch_job_id)
            await self._sink.save_generated(content)
        except JobCancelled as e:
            logger.info(f"[batch] Dropped result of {task_id}: {e}")
            return {"status": "discarded", "reason": "cancelled"}
        except TransientError as e:
            if not final_attempt:
                logger.warning(f"[batch] {task_id} transient failure, will retry: {e}")
                await self._update_job(batch_job_id, lambda job: self._release_for_retry(job, task_id, str(e)))
                raise
            logger.error(f"[batch] {task_id} failed after retries: {e}")
            accepted = await self._record(batch_job_id, task_id, error=str(e))
            return {"status": "failed" if accepted else "discarded", "error": str(e)}
        except Exception as e:
            logger.error(f"[batch] {task_id} failed: {e}")
            accepted = await self._record(batch_job_id, task_id, error=str(e))
            return {"status": "failed" if accepted else "discarded", "error": str(e)}

        accepted = await self._record(batch_job_id, task_id, result=content)
        if accepted:
            logger.info(f"[batch] {task_id} completed (uniqueness={content.uniqueness_score:.3f})")
        return {"status": "completed" if accepted else "discarded", "content_id": content.id}

    async def fail_task(self, batch_job_id: str, task_id: str, error: Exception) -> dict[str, Any]:
        """Record a worker-level exception as the task's final outcome."""
        msg = str(error) or error.__class__.__name__
        logger.error(f"[batch] {task_id} failed in worker: {msg}")
        accepted = await self._record(batch_job_id, task_id, error=msg)
        return {"status": "failed" if accepted else "discarded", "error": msg}

    async def _ensure_not_cancelled(self, batch_job_id: str) -> None:
        job = await self._load_job(batch_job_id)
        if job.status == BatchJobStatus.cancelled:
            raise JobCancelled(f"Batch job {batch_job_id} was cancelled")

    @staticmethod
    def _mark_started(job: BatchGenerationJob, task_id: str) -> GenerationTask | None:
        if job.status in TERMINAL_JOB_STATUSES:
            return None
        task = job.get_task(task_id)
        if task is None or task.status in TERMINAL_TASK_STATUSES:
            return None
        if task.status != TaskStatus.processing:
            task.status = TaskStatus.processing
            task.started_at = utcnow()
            job_progress.mark_started(job.progress)
        task.attempts += 1
        done = job_progress.done_count(job.progress, "completed")
        job.progress.current_stage = f"Generating content ({done}/{job.progress.total} done)"
        return task.model_copy(deep=True)

    @staticmethod
    def _release_for_retry(job: BatchGenerationJob, task_id: str, error: str) -> None:
        task = job.get_task(task_id)
        if job.status in TERMINAL_JOB_STATUSES or task is None or task.status != TaskStatus.processing:
            return
        task.status = TaskStatus.pending
        task.error = error
        job_progress.release_processing(job.progress)

    async def _record(
        self,
        job_id: str,
        task_id: str,
        *,
        result: GeneratedContent | None = None,
        error: str | None = None,
    ) -> bool:
        def apply(job: BatchGenerationJob) -> bool:
            task = job.get_task(task_id)
            if job.status in TERMINAL_JOB_STATUSES or task is None or task.status in TERMINAL_TASK_STATUSES:
                return False
            was_processing = task.status == TaskStatus.processing
            task.completed_at = utcnow()
            if result is not None:
                task.status = TaskStatus.completed
                task.result = result
                task.error = None
            else:
                task.status = TaskStatus.failed
                task.error = error
            finished = job_progress.record_outcome(
                job.progress, success=result is not None, success_attr="completed", was_processing=was_processing,
            )
            if finished:
                failed = job.progress.failed
                job.status = BatchJobStatus.completed if failed == 0 else BatchJobStatus.completed_with_errors
                job.progress.current_stage = (
                    "All content generated successfully" if failed == 0 else f"Completed with {failed} errors"
                )
                job.completed_at = job.completed_at or utcnow()
            return True

        try:
            accepted = await self._update_job(job_id, apply)
        except NotFoundError:
            logger.warning(f"[batch] {job_id} expired before {task_id} was recorded")
            return False
        if not accepted:
            logger.info(f"[batch] Discarded outcome of {task_id} (job cancelled or task already final)")
        return accepted

    async def _generate(self, task: GenerationTask) -> GeneratedContent:
        settings = task.settings
        prompt = text_analysis.build_context_prompt(task.sources, settings.brand_voice, settings.target_audience)
        output = await self._generator.generate(
            content_type=settings.content_type,
            topic=text_analysis.extract_main_topic(task.sources),
            keywords=text_analysis.extract_keywords(task.sources),
            brand_voice=settings.brand_voice,
            target_audience=settings.target_audience,
            requirements=settings.requirements,
            context_prompt=prompt,
            preferred_provider=settings.ai_provider,
        )

        score = ensure_unique(output.body, task.sources, settings.requirements.uniqueness_threshold)

        extra = dict(output.metadata or {})
        metadata = {
            "quality_score": 0,
            "seo_title": "",
            "seo_description": "",
            "keywords": [],
            "featured_image_suggestion": "",
            "seo_score": 0,
            **extra,
            "batch_job_id": task.batch_job_id,
            "task_id": task.id,
            "uniqueness_score": score,
            "source_urls": [s.url for s in task.sources],
            "ai_provider": output.provider or settings.ai_provider,
            "word_count": text_analysis.count_words(output.body),
            "reading_time": text_analysis.reading_time_minutes(output.body),
        }
        return GeneratedContent(
            id=f"content_{task.id}",
            type=settings.content_type,
            title=output.title,
            body=output.body,
            excerpt=output.excerpt or output.body[:200] + "...",
            uniqueness_score=score,
            metadata=metadata,
        )

    # ── Queries & control ────────────────────────────────────

    async def get_batch_job_status(self, batch_job_id: str) -> BatchGenerationJob:
        return await self._load_job(batch_job_id)

    async def get_batch_job_results(self, batch_job_id: str) -> list[GeneratedContent]:
        job = await self._load_job(batch_job_id)
        return [task.result for task in job.tasks if task.result is not None]

    async def cancel_batch_job(self, batch_job_id: str) -> BatchGenerationJob:
        """Stop a running batch. Completed results stay retrievable."""

        def cancel(job: BatchGenerationJob) -> BatchGenerationJob:
            if job.status == BatchJobStatus.cancelled:
                return job.model_copy(deep=True)
            if job.status in TERMINAL_JOB_STATUSES:
                raise InvalidStateError(f"Batch job {job.id} already finished ({job.status.value})")
            for task in job.tasks:
                if task.status in (TaskStatus.pending, TaskStatus.processing):
                    task.status = TaskStatus.cancelled
            job.status = BatchJobStatus.cancelled
            job.cancelled_at = utcnow()
            job.progress.processing = 0
            job.progress.estimated_time_remaining = ""
            job.progress.current_stage = "Cancelled"
            return job.model_copy(deep=True)

        job = await self._update_job(batch_job_id, cancel)
        logger.info(f"[batch] Cancelled {batch_job_id} ({job.progress.completed} completed)")
        return job
