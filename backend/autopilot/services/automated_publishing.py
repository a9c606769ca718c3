"""
Automated publishing orchestrator.

Flow:
1. schedule_automated_publishing: connectivity pre-check (job site, or every
   active site when multi_site) -> AutomatedPublishingJob (pending) -> one
   publish task per content id on the `publishing` pool, spaced by
   delay_between_posts_ms -> job processing.
2. process_content_publishing (worker): mark started -> approved content ->
   destination (router or job credentials) -> Publisher.publish ->
   performance record + tracking checkpoints -> PublishingResult.

Terminal status once every item has an outcome: completed (no failures)
or partially_completed (any failure). `failed` is reserved for jobs whose
dispatch broke. Credentials are masked whenever a job leaves this module.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from autopilot.errors import (
    AuthError,
    InvalidStateError,
    NotFoundError,
    PipelineError,
    ProviderError,
    PublisherConnectionError,
    TransientError,
    ValidationError,
)
from autopilot.schemas import (
    MAX_CONTENT_IDS_PER_JOB,
    TERMINAL_PUBLISH_STATES,
    ApprovedContent,
    AutomatedPublishingJob,
    ContentPerformanceMetrics,
    CrossPostResult,
    CrossPostSiteResult,
    PublishingCredentials,
    PublishingJobStatus,
    PublishingProgress,
    PublishingResult,
    PublishingSettings,
    PublishTaskState,
    RoutingRequest,
    utcnow,
)
from autopilot.services import job_progress
from autopilot.services.content_library import ApprovedContentStore
from autopilot.services.job_store import JobStore
from autopilot.services.performance_tracker import TRACKING_PERIODS, PerformanceTracker
from autopilot.services.publisher_adapter import (
    ERROR_AUTH,
    ERROR_NETWORK,
    MASK,
    Publisher,
    PublishResult,
    _sanitize,
)
from autopilot.services.routing import DestinationRouter, RoutingDecision
from autopilot.services.task_queue import POOL_PUBLISHING, POOL_TRACKING, TASK_PUBLISH, TASK_TRACK, TaskQueue
from autopilot.settings import Settings

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = {
    PublishingJobStatus.completed,
    PublishingJobStatus.partially_completed,
    PublishingJobStatus.failed,
    PublishingJobStatus.cancelled,
}


def autopub_job_key(job_id: str) -> str:
    return f"autopub_job:{job_id}"


def _coerce(model: type[BaseModel], value: Any, what: str):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {what}: {_sanitize(str(e))}") from e


def mask_job(job: AutomatedPublishingJob) -> AutomatedPublishingJob:
    masked = job.model_copy(deep=True)
    masked.credentials = masked.credentials.model_copy(update={"application_password": MASK})
    return masked


def _raise_for_result(result: PublishResult) -> None:
    """Translate a failed PublishResult into the error taxonomy."""
    msg = result.error or "Publishing failed"
    if result.retryable:
        raise ProviderError(msg)
    if result.error_code == ERROR_AUTH:
        raise AuthError(msg)
    if result.error_code == ERROR_NETWORK:
        raise PublisherConnectionError(msg)
    raise PipelineError(msg)


class AutomatedPublishingService:
    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        publisher: Publisher,
        content_store: ApprovedContentStore,
        router: DestinationRouter,
        tracker: PerformanceTracker,
        settings: Settings,
    ):
        self._store = store
        self._queue = queue
        self._publisher = publisher
        self._content_store = content_store
        self._router = router
        self._tracker = tracker
        self._settings = settings

    # ── Job record helpers ───────────────────────────────────

    async def _load_job(self, job_id: str) -> AutomatedPublishingJob:
        raw = await self._store.get(autopub_job_key(job_id))
        if raw is None:
            raise NotFoundError(f"Publishing job {job_id} not found")
        return AutomatedPublishingJob.model_validate(raw)

    async def _update_job(self, job_id: str, fn: Callable[[AutomatedPublishingJob], Any]) -> Any:
        def mutate(raw: dict) -> tuple[dict, Any]:
            job = AutomatedPublishingJob.model_validate(raw)
            result = fn(job)
            return job.model_dump(mode="json"), result

        return await self._store.update(autopub_job_key(job_id), mutate, self._settings.job_ttl_sec)

    # ── Scheduling ───────────────────────────────────────────

    async def schedule_automated_publishing(
        self,
        content_ids: list[str],
        credentials: PublishingCredentials | dict[str, Any],
        settings: PublishingSettings | dict[str, Any] | None = None,
    ) -> str:
        if not content_ids or len(content_ids) > MAX_CONTENT_IDS_PER_JOB:
            raise ValidationError(f"content_ids must contain 1..{MAX_CONTENT_IDS_PER_JOB} items")
        if any(not isinstance(cid, str) or not cid for cid in content_ids):
            raise ValidationError("content_ids must be non-empty strings")
        credentials = _coerce(PublishingCredentials, credentials, "credentials")
        settings = _coerce(PublishingSettings, settings, "publishing settings")

        await self._precheck(credentials, settings)

        job_id = f"autopub_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        task_ids = [f"pub_{job_id}_{i + 1}" for i in range(len(content_ids))]
        job = AutomatedPublishingJob(
            id=job_id,
            content_ids=list(content_ids),
            credentials=credentials,
            settings=settings,
            progress=PublishingProgress(
                total=len(content_ids),
                estimated_time_remaining=job_progress.time_remaining(len(content_ids)),
            ),
            task_states={task_id: PublishTaskState.pending for task_id in task_ids},
        )
        await self._store.set(autopub_job_key(job_id), job.model_dump(mode="json"), self._settings.job_ttl_sec)
        logger.info(f"[publishing] Created {job_id} for {len(content_ids)} items (multi_site={settings.multi_site})")

        await self._dispatch(job_id, list(zip(task_ids, content_ids)), settings.delay_between_posts_ms)
        return job_id

    async def _precheck(self, credentials: PublishingCredentials, settings: PublishingSettings) -> None:
        """Fail fast before anything is persisted or queued."""
        if settings.multi_site:
            sites = self._router.registry.active_sites()
            if not sites:
                raise PublisherConnectionError("No active destination sites for multi-site publishing")
            for site in sites:
                try:
                    destination = self._router.registry.credentials_for(site.id)
                except ValidationError as e:
                    raise PublisherConnectionError(f"Site {site.id}: {e}") from e
                check = await self._publisher.test_connection(destination)
                if not check.success:
                    raise PublisherConnectionError(f"Connection pre-check failed for {site.id}: {check.message}")
            return

        check = await self._publisher.test_connection(credentials)
        if not check.success:
            raise PublisherConnectionError(
                f"Connection pre-check failed for {credentials.site_url}: {_sanitize(check.message)}"
            )

    async def _dispatch(self, job_id: str, items: list[tuple[str, str]], delay_ms: int) -> None:
        def start(job: AutomatedPublishingJob) -> None:
            if job.status == PublishingJobStatus.pending:
                job.status = PublishingJobStatus.processing
                job.progress.current_stage = "Publishing content"

        try:
            await self._update_job(job_id, start)
            for index, (task_id, content_id) in enumerate(items):
                current = await self._load_job(job_id)
                if current.status == PublishingJobStatus.cancelled:
                    logger.info(f"[publishing] {job_id} cancelled, stopping dispatch at {task_id}")
                    return
                await self._queue.enqueue(
                    POOL_PUBLISHING,
                    TASK_PUBLISH,
                    {"job_id": job_id, "task_id": task_id, "content_id": content_id},
                    delay_ms=index * delay_ms,
                    idempotency_key=task_id,
                )
            logger.info(f"[publishing] Queued {len(items)} publish tasks for {job_id}")
        except Exception as e:
            logger.error(f"[publishing] Dispatch failed for {job_id}: {e}")

            def fail(job: AutomatedPublishingJob) -> None:
                if job.status in TERMINAL_JOB_STATUSES:
                    return
                job.status = PublishingJobStatus.failed
                job.progress.current_stage = "Failed to initialize publishing"
                job.completed_at = job.completed_at or utcnow()

            await self._update_job(job_id, fail)
            raise

    # ── Worker side ──────────────────────────────────────────

    async def process_content_publishing(
        self,
        job_id: str,
        task_id: str,
        content_id: str,
        *,
        final_attempt: bool = True,
    ) -> dict[str, Any]:
        try:
            job = await self._update_job(job_id, lambda j: self._mark_started(j, task_id))
        except NotFoundError:
            logger.warning(f"[publishing] {job_id} missing or expired, dropping {task_id}")
            return {"status": "skipped", "reason": "job_not_found"}
        if job is None:
            return {"status": "skipped", "reason": "not_runnable"}

        site_id: str | None = None
        try:
            content = await self._content_store.get_by_id(content_id)
            if content is None:
                raise NotFoundError(f"Content {content_id} not found or not approved")
            site_id, destination = self._destination(job, content)
            receipt = await self._publisher.publish(content, destination, self._effective_settings(job.settings, content))
            if not receipt.success:
                _raise_for_result(receipt)
        except TransientError as e:
            if not final_attempt:
                logger.warning(f"[publishing] {task_id} transient failure, will retry: {e}")
                await self._update_job(job_id, lambda j: self._release_for_retry(j, task_id))
                raise
            return await self._record_failure(job_id, task_id, content_id, site_id, e)
        except Exception as e:
            return await self._record_failure(job_id, task_id, content_id, site_id, e)

        published_at = receipt.published_at or utcnow()
        await self._after_publish(job, task_id, content, site_id, receipt, published_at)

        result = PublishingResult(
            task_id=task_id,
            content_id=content_id,
            site_id=site_id,
            success=True,
            external_id=receipt.external_id,
            url=receipt.url,
            published_at=published_at,
            performance_tracking_enabled=job.settings.enable_performance_tracking,
        )
        accepted = await self._record(job_id, task_id, result)
        if accepted:
            logger.info(f"[publishing] {task_id} published {content_id} -> {receipt.url}")
        return {"status": "published" if accepted else "discarded", "external_id": receipt.external_id}

    def _destination(self, job: AutomatedPublishingJob, content: ApprovedContent) -> tuple[str | None, PublishingCredentials]:
        registry = self._router.registry
        if job.settings.multi_site:
            site_id = self._router.determine_target_site(self._routing_request(job.settings, content))
            return site_id, registry.credentials_for(site_id)
        matching = next((s.id for s in registry.get_sites() if s.url.rstrip("/") == job.credentials.site_url), None)
        return matching, job.credentials

    @staticmethod
    def _routing_request(settings: PublishingSettings, content: ApprovedContent) -> RoutingRequest:
        return RoutingRequest(
            title=content.title,
            body=content.body,
            excerpt=content.excerpt,
            categories=settings.categories or content.categories,
            tags=settings.tags or content.tags,
            content_type=content.content_type,
        )

    @staticmethod
    def _effective_settings(settings: PublishingSettings, content: ApprovedContent) -> PublishingSettings:
        """Fill SEO fields from the content item when the job leaves them empty."""
        updates: dict[str, Any] = {}
        if not settings.seo_title and content.metadata.get("seo_title"):
            updates["seo_title"] = str(content.metadata["seo_title"])[:60]
        if not settings.seo_description and content.metadata.get("seo_description"):
            updates["seo_description"] = str(content.metadata["seo_description"])[:160]
        return settings.model_copy(update=updates) if updates else settings

    async def _after_publish(
        self,
        job: AutomatedPublishingJob,
        task_id: str,
        content: ApprovedContent,
        site_id: str | None,
        receipt: PublishResult,
        published_at,
    ) -> None:
        try:
            await self._content_store.mark_published(
                content.id,
                external_post_id=receipt.external_id,
                url=receipt.url,
                site_id=site_id,
                published_at=published_at,
            )
        except Exception as e:
            # the post exists; a retry would publish it twice
            logger.error(f"[publishing] Could not mark {content.id} published: {e}")

        try:
            await self._tracker.record_publication(ContentPerformanceMetrics(
                content_id=content.id,
                external_post_id=receipt.external_id or "",
                published_url=receipt.url,
                published_at=published_at,
                site_id=site_id,
                quality_score=content.quality_score or float(content.metadata.get("quality_score") or 0),
                ai_provider=content.metadata.get("ai_provider") or content.ai_provider,
            ))
        except Exception as e:
            logger.error(f"[publishing] Could not store performance record for {content.id}: {e}")

        if not job.settings.enable_performance_tracking:
            return
        scheduled = []
        for period, delay_ms in TRACKING_PERIODS:
            try:
                await self._queue.enqueue(
                    POOL_TRACKING,
                    TASK_TRACK,
                    {"content_id": content.id, "external_post_id": receipt.external_id or "", "period": period},
                    delay_ms=delay_ms,
                    idempotency_key=f"{task_id}:track:{period}",
                )
            except Exception as e:
                logger.error(f"[publishing] Could not schedule {period} tracking for {content.id}: {e}")
                continue
            scheduled.append(period)
        if scheduled:
            logger.info(f"[publishing] Scheduled tracking for {content.id} at {', '.join(scheduled)}")

    @staticmethod
    def _mark_started(job: AutomatedPublishingJob, task_id: str) -> AutomatedPublishingJob | None:
        if job.status in TERMINAL_JOB_STATUSES:
            return None
        state = job.task_states.get(task_id)
        if state is None or state in TERMINAL_PUBLISH_STATES:
            return None
        if state != PublishTaskState.processing:
            job.task_states[task_id] = PublishTaskState.processing
            job_progress.mark_started(job.progress)
        done = job_progress.done_count(job.progress, "published")
        job.progress.current_stage = f"Publishing content ({done}/{job.progress.total} done)"
        return job.model_copy(deep=True)

    @staticmethod
    def _release_for_retry(job: AutomatedPublishingJob, task_id: str) -> None:
        if job.status in TERMINAL_JOB_STATUSES or job.task_states.get(task_id) != PublishTaskState.processing:
            return
        job.task_states[task_id] = PublishTaskState.pending
        job_progress.release_processing(job.progress)

    async def _record_failure(
        self,
        job_id: str,
        task_id: str,
        content_id: str,
        site_id: str | None,
        error: Exception,
    ) -> dict[str, Any]:
        msg = _sanitize(str(error)) or error.__class__.__name__
        logger.error(f"[publishing] {task_id} failed for {content_id}: {msg}")
        result = PublishingResult(task_id=task_id, content_id=content_id, site_id=site_id, success=False, error=msg)
        accepted = await self._record(job_id, task_id, result)
        return {"status": "failed" if accepted else "discarded", "error": msg}

    async def fail_task(self, job_id: str, task_id: str, content_id: str, error: Exception) -> dict[str, Any]:
        """Record a worker-level exception as the task's final outcome."""
        return await self._record_failure(job_id, task_id, content_id, None, error)

    async def _record(self, job_id: str, task_id: str, result: PublishingResult) -> bool:
        def apply(job: AutomatedPublishingJob) -> bool:
            state = job.task_states.get(task_id)
            if job.status in TERMINAL_JOB_STATUSES or state is None or state in TERMINAL_PUBLISH_STATES:
                return False
            job.task_states[task_id] = PublishTaskState.published if result.success else PublishTaskState.failed
            job.results.append(result)
            finished = job_progress.record_outcome(
                job.progress,
                success=result.success,
                success_attr="published",
                was_processing=state == PublishTaskState.processing,
            )
            if finished:
                failed = job.progress.failed
                if failed == 0:
                    job.status = PublishingJobStatus.completed
                    job.progress.current_stage = "All content published successfully"
                else:
                    job.status = PublishingJobStatus.partially_completed
                    job.progress.current_stage = f"Completed with {failed} errors"
                job.completed_at = job.completed_at or utcnow()
            return True

        try:
            accepted = await self._update_job(job_id, apply)
        except NotFoundError:
            logger.warning(f"[publishing] {job_id} expired before {task_id} was recorded")
            return False
        if not accepted:
            logger.info(f"[publishing] Discarded outcome of {task_id} (job cancelled or task already final)")
        return accepted

    # ── Queries & control ────────────────────────────────────

    async def get_publishing_job_status(self, job_id: str) -> AutomatedPublishingJob:
        return mask_job(await self._load_job(job_id))

    async def get_publishing_job_results(self, job_id: str) -> list[PublishingResult]:
        job = await self._load_job(job_id)
        return job.results

    async def cancel_publishing_job(self, job_id: str) -> AutomatedPublishingJob:
        def cancel(job: AutomatedPublishingJob) -> AutomatedPublishingJob:
            if job.status == PublishingJobStatus.cancelled:
                return job.model_copy(deep=True)
            if job.status in TERMINAL_JOB_STATUSES:
                raise InvalidStateError(f"Publishing job {job.id} already finished ({job.status.value})")
            for task_id, state in job.task_states.items():
                if state in (PublishTaskState.pending, PublishTaskState.processing):
                    job.task_states[task_id] = PublishTaskState.cancelled
            job.status = PublishingJobStatus.cancelled
            job.cancelled_at = utcnow()
            job.progress.processing = 0
            job.progress.estimated_time_remaining = ""
            job.progress.current_stage = "Cancelled"
            return job.model_copy(deep=True)

        job = await self._update_job(job_id, cancel)
        logger.info(f"[publishing] Cancelled {job_id} ({job.progress.published} published)")
        return mask_job(job)

    async def cross_post(
        self,
        content_id: str,
        site_ids: list[str],
        settings: PublishingSettings | dict[str, Any] | None = None,
    ) -> CrossPostResult:
        """Publish one approved item to each of `site_ids`, in order.

        Runs inline, without a job or the queue. A failing site never stops
        the others; the first successful site becomes `main_result`.
        """
        if not site_ids:
            raise ValidationError("site_ids must contain at least one site")
        settings = _coerce(PublishingSettings, settings, "publishing settings")
        content = await self._content_store.get_by_id(content_id)
        if content is None:
            raise NotFoundError(f"Content {content_id} not found or not approved")
        effective = self._effective_settings(settings, content)
        registry = self._router.registry
        logger.info(f"[publishing] Cross-posting {content_id} to {len(site_ids)} sites: {site_ids}")

        outcome = CrossPostResult(content_id=content_id, success=False)
        for site_id in site_ids:
            site = registry.get_site(site_id)
            if site is None or not site.is_active:
                entry = CrossPostSiteResult(
                    site_id=site_id,
                    site_name=site.name if site else site_id,
                    success=False,
                    error=f"Site not configured or inactive: {site_id}",
                )
            else:
                entry = await self._cross_post_one(content, site.id, site.name, effective)
            outcome.results.append(entry)
            if entry.success:
                outcome.main_result = outcome.main_result or entry
            else:
                outcome.errors.append(f"{entry.site_name}: {entry.error}")

        outcome.total_published = sum(1 for r in outcome.results if r.success)
        outcome.success = outcome.total_published > 0
        logger.info(
            f"[publishing] Cross-post of {content_id}: {outcome.total_published}/{len(site_ids)} sites published"
        )
        return outcome

    async def _cross_post_one(
        self,
        content: ApprovedContent,
        site_id: str,
        site_name: str,
        settings: PublishingSettings,
    ) -> CrossPostSiteResult:
        try:
            receipt = await self._publisher.publish(content, self._router.registry.credentials_for(site_id), settings)
        except Exception as e:
            msg = _sanitize(str(e)) or e.__class__.__name__
            logger.error(f"[publishing] Cross-post of {content.id} to {site_id} raised: {msg}")
            return CrossPostSiteResult(site_id=site_id, site_name=site_name, success=False, error=msg)
        if not receipt.success:
            msg = _sanitize(receipt.error) or "Publishing failed"
            logger.warning(f"[publishing] Cross-post of {content.id} to {site_id} failed: {msg}")
            return CrossPostSiteResult(site_id=site_id, site_name=site_name, success=False, error=msg)
        logger.info(f"[publishing] Cross-posted {content.id} to {site_id} -> {receipt.url}")
        return CrossPostSiteResult(
            site_id=site_id,
            site_name=site_name,
            success=True,
            external_id=receipt.external_id,
            url=receipt.url,
        )

    def preview_routing(self, request: RoutingRequest | dict[str, Any]) -> RoutingDecision:
        return self._router.preview_routing(_coerce(RoutingRequest, request, "routing request"))

    async def get_performance_metrics(self, content_id: str) -> ContentPerformanceMetrics | None:
        return await self._tracker.get_performance_metrics(content_id)
