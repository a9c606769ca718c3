from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable

import pytest

from autopilot.schemas import (
    ApprovedContent,
    BrandVoice,
    CollectedMetrics,
    GeneratedContent,
    GenerationRequirements,
    PublishingCredentials,
    PublishingSettings,
    ResearchJob,
    ResearchResults,
    RoutingRule,
    SiteConfig,
    SourceDocument,
)
from autopilot.services.content_generator import ContentGenerator, GenerationOutput
from autopilot.services.content_library import ApprovedContentStore, ContentSink
from autopilot.services.job_store import InMemoryJobStore
from autopilot.services.metrics_collector import MetricsCollector
from autopilot.services.publisher_adapter import ConnectionCheck, Publisher, PublishResult
from autopilot.services.routing import DestinationRouter, SiteRegistry
from autopilot.services.task_queue import TaskQueue
from autopilot.settings import Settings


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTaskQueue(TaskQueue):
    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.fail_on_call: int | None = None
        self.on_enqueue: Callable[[dict[str, Any]], Awaitable[None]] | None = None

    async def enqueue(self, pool, task_name, payload, *, delay_ms=0, priority=None, idempotency_key=None) -> str:
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("broker unavailable")
        call = {
            "pool": pool,
            "task": task_name,
            "payload": payload,
            "delay_ms": delay_ms,
            "priority": priority,
            "id": idempotency_key,
        }
        self.calls.append(call)
        if self.on_enqueue is not None:
            await self.on_enqueue(call)
        return idempotency_key or f"dispatch-{len(self.calls)}"

    def for_pool(self, pool: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["pool"] == pool]


class FakeGenerator(ContentGenerator):
    """Returns `body`; raises queued errors first, one per call."""

    def __init__(self, body: str = "Zebra quilting adventures beyond distant mountains tonight"):
        self.body = body
        self.errors: list[Exception] = []
        self.calls: list[dict[str, Any]] = []
        self.on_generate: Callable[[], Awaitable[None]] | None = None

    async def generate(self, **kwargs) -> GenerationOutput:
        self.calls.append(kwargs)
        if self.on_generate is not None:
            await self.on_generate()
        if self.errors:
            raise self.errors.pop(0)
        return GenerationOutput(
            title=f"About {kwargs['topic']}",
            body=self.body,
            provider="fake",
            metadata={"quality_score": 90, "seo_title": "SEO title"},
        )


class FakeContentLibrary(ContentSink, ApprovedContentStore):
    def __init__(self):
        self.items: dict[str, ApprovedContent] = {}
        self.saved: list[GeneratedContent] = []
        self.published: dict[str, dict[str, Any]] = {}

    def add(self, content_id: str, **fields) -> ApprovedContent:
        data = {"title": f"Title {content_id}", "body": f"Body of {content_id}", **fields}
        item = ApprovedContent(id=content_id, **data)
        self.items[content_id] = item
        return item

    async def save_generated(self, content: GeneratedContent) -> None:
        self.saved.append(content)

    async def get_by_id(self, content_id: str) -> ApprovedContent | None:
        return self.items.get(content_id)

    async def mark_published(self, content_id, *, external_post_id, url, site_id, published_at: datetime) -> None:
        self.published[content_id] = {"external_post_id": external_post_id, "url": url, "site_id": site_id}


class FakePublisher(Publisher):
    platform = "fake"

    def __init__(self):
        self.failing_sites: dict[str, str] = {}
        self.results: dict[str, list[PublishResult]] = {}
        self.published: list[tuple[str, str]] = []
        self.checked: list[str] = []

    async def test_connection(self, destination: PublishingCredentials) -> ConnectionCheck:
        self.checked.append(destination.site_url)
        if destination.site_url in self.failing_sites:
            return ConnectionCheck(False, self.failing_sites[destination.site_url])
        return ConnectionCheck(True, "ok", response_time_ms=5)

    async def publish(self, content, destination, settings) -> PublishResult:
        queued = self.results.get(content.id)
        if queued:
            return queued.pop(0)
        self.published.append((content.id, destination.site_url))
        post_id = len(self.published)
        return PublishResult(
            success=True,
            external_id=str(post_id),
            url=f"{destination.site_url}/?p={post_id}",
            site_url=destination.site_url,
        )


class FakeCollector(MetricsCollector):
    def __init__(self, metrics: CollectedMetrics | None = None):
        self.metrics = metrics or CollectedMetrics(views=600, engagement_rate=0.06, comments=3, shares=4)
        self.calls: list[tuple[str, str | None]] = []

    async def fetch(self, external_post_id, *, site_id=None, period=None) -> CollectedMetrics:
        self.calls.append((external_post_id, period))
        return self.metrics


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None).model_copy(update={
        "job_ttl_sec": 7200,
        "performance_ttl_sec": 30 * 24 * 3600,
        "generation_stagger_ms": 1000,
        "default_site_id": "main",
        "sites_config_path": None,
    })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def queue() -> RecordingTaskQueue:
    return RecordingTaskQueue()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def library() -> FakeContentLibrary:
    return FakeContentLibrary()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def collector() -> FakeCollector:
    return FakeCollector()


@pytest.fixture
def sites() -> list[SiteConfig]:
    return [
        SiteConfig(id="wedding", name="Wedding", url="https://wedding.example.com", application_password="w-pass",
                   keywords=["wedding", "bridal"], categories=["Bridal"], priority=100),
        SiteConfig(id="yearbook", name="Yearbook", url="https://yearbook.example.com", application_password="y-pass",
                   keywords=["school", "graduation"], categories=["School"], priority=100),
        SiteConfig(id="main", name="Main", url="https://main.example.com", application_password="m-pass",
                   keywords=["photography"], categories=["Photography"], priority=50),
    ]


@pytest.fixture
def rules() -> list[RoutingRule]:
    return [
        RoutingRule(keywords=["wedding", "bridal"], categories=["wedding", "bridal"], site_id="wedding", priority=100),
        RoutingRule(keywords=["school", "graduation"], categories=["school", "yearbook"], site_id="yearbook", priority=100),
        RoutingRule(keywords=["photography", "portrait"], categories=["general", "photography"], site_id="main", priority=50),
    ]


@pytest.fixture
def registry(sites, rules) -> SiteRegistry:
    return SiteRegistry(sites, rules, "main")


@pytest.fixture
def router(registry) -> DestinationRouter:
    return DestinationRouter(registry)


@pytest.fixture
def credentials() -> PublishingCredentials:
    return PublishingCredentials(site_url="https://blog.example.com/", username="editor", application_password="abcd efgh ijkl")


@pytest.fixture
def publishing_settings() -> PublishingSettings:
    return PublishingSettings()


SOURCE_TEXTS = [
    "Wedding photography should capture candid moments between guests. It is important to plan the timeline carefully with the couple before the ceremony starts.",
    "Natural light portraits look best during golden hour outdoors. Photographers recommended scouting every location one week ahead of the event.",
    "Album design benefits from consistent colour grading across every spread. The key to a memorable album is telling a story from morning to night.",
]


def make_sources(count: int) -> list[SourceDocument]:
    return [
        SourceDocument(
            url=f"https://source.example.com/{i}",
            title=f"Wedding photography guide part {i}",
            content=SOURCE_TEXTS[i % len(SOURCE_TEXTS)],
        )
        for i in range(count)
    ]


async def seed_research(store, job_id: str = "research_1", *, status: str = "completed", sources: int = 3) -> str:
    job = ResearchJob(id=job_id, status=status, results=ResearchResults(crawled_content=make_sources(sources)))
    await store.set(f"research_job:{job_id}", job.model_dump(mode="json"), 7200)
    return job_id


def default_brand_voice() -> BrandVoice:
    return BrandVoice()


def default_requirements() -> GenerationRequirements:
    return GenerationRequirements()
