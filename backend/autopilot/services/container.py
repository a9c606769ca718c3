"""
Service wiring.

`build_services()` assembles the orchestrators over Redis, Celery, Postgres
and the configured capabilities. Clients are bound to the running event
loop, so worker tasks build a fresh set per task and call `aclose()`.
"""
from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from autopilot.db import create_session_factory
from autopilot.services.automated_publishing import AutomatedPublishingService
from autopilot.services.batch_generation import BatchGenerationService
from autopilot.services.content_generator import ContentGenerator, StubContentGenerator
from autopilot.services.content_library import SqlContentLibrary
from autopilot.services.job_store import RedisJobStore
from autopilot.services.metrics_collector import MetricsCollector, SimulatedMetricsCollector
from autopilot.services.performance_tracker import PerformanceTracker
from autopilot.services.publisher_adapter import Publisher, WordPressPublisher
from autopilot.services.routing import DestinationRouter, SiteRegistry
from autopilot.services.task_queue import CeleryTaskQueue
from autopilot.settings import Settings, get_settings


@dataclass
class Services:
    settings: Settings
    redis: aioredis.Redis
    engine: AsyncEngine
    store: RedisJobStore
    queue: CeleryTaskQueue
    library: SqlContentLibrary
    generator: ContentGenerator
    publisher: Publisher
    collector: MetricsCollector
    registry: SiteRegistry
    router: DestinationRouter
    tracker: PerformanceTracker
    batch: BatchGenerationService
    publishing: AutomatedPublishingService

    async def aclose(self) -> None:
        await self.redis.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings | None = None,
    *,
    generator: ContentGenerator | None = None,
    publisher: Publisher | None = None,
    collector: MetricsCollector | None = None,
) -> Services:
    from autopilot.worker.celery_app import celery_app

    settings = settings or get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    engine, session_factory = create_session_factory(settings.async_database_url)

    store = RedisJobStore(client)
    queue = CeleryTaskQueue(celery_app, client)
    library = SqlContentLibrary(session_factory)
    generator = generator or StubContentGenerator()
    publisher = publisher or WordPressPublisher(timeout_sec=settings.publisher_timeout_sec)
    collector = collector or SimulatedMetricsCollector()
    registry = SiteRegistry.from_settings(settings)
    router = DestinationRouter(registry)
    tracker = PerformanceTracker(store, collector, library, settings)

    return Services(
        settings=settings,
        redis=client,
        engine=engine,
        store=store,
        queue=queue,
        library=library,
        generator=generator,
        publisher=publisher,
        collector=collector,
        registry=registry,
        router=router,
        tracker=tracker,
        batch=BatchGenerationService(store, queue, generator, library, settings),
        publishing=AutomatedPublishingService(store, queue, publisher, library, router, tracker, settings),
    )
