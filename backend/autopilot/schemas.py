from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Research input ───────────────────────────────────────────

class SourceDocument(BaseModel):
    url: str = ""
    title: str = ""
    content: str = ""


class ResearchResults(BaseModel):
    crawled_content: list[SourceDocument] = Field(default_factory=list)


class ResearchJob(BaseModel):
    """Written by the research component; read-only here."""
    id: str
    status: str
    results: ResearchResults | None = None


# ── Batch generation ─────────────────────────────────────────

class BrandVoice(BaseModel):
    tone: Literal["professional", "casual", "friendly", "authoritative"] = "professional"
    style: Literal["formal", "conversational", "technical", "creative"] = "conversational"
    vocabulary: Literal["simple", "advanced", "industry-specific"] = "advanced"
    length: Literal["concise", "detailed", "comprehensive"] = "detailed"


class GenerationRequirements(BaseModel):
    word_count: str = Field(default="1000-1500", pattern=r"^\d+(-\d+)?$")
    include_headings: bool = True
    seo_optimized: bool = True
    uniqueness_threshold: float = Field(default=0.8, ge=0.5, le=1.0)


class BatchGenerationSettings(BaseModel):
    target_count: int = Field(default=10, ge=1, le=50)
    brand_voice: BrandVoice = Field(default_factory=BrandVoice)
    target_audience: str = Field(default="General audience", min_length=3, max_length=200)
    content_type: Literal["blog_post", "social_media", "email", "ad_copy"] = "blog_post"
    requirements: GenerationRequirements = Field(default_factory=GenerationRequirements)
    ai_provider: Literal["openai", "gemini", "auto"] = "auto"


class BatchJobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    completed_with_errors = "completed_with_errors"
    failed = "failed"
    cancelled = "cancelled"


class TaskStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_TASK_STATUSES = {TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled}


class GeneratedContent(BaseModel):
    id: str
    type: str
    title: str
    body: str
    excerpt: str
    uniqueness_score: float = Field(ge=0.0, le=1.0)
    status: str = "draft"
    generated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationTask(BaseModel):
    id: str
    batch_job_id: str
    sources: list[SourceDocument]
    settings: BatchGenerationSettings
    priority: int
    status: TaskStatus = TaskStatus.pending
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: GeneratedContent | None = None
    error: str | None = None

    @field_validator("sources")
    @classmethod
    def sources_not_empty(cls, value: list[SourceDocument]) -> list[SourceDocument]:
        if not value:
            raise ValueError("generation task needs at least one source document")
        return value


class BatchProgress(BaseModel):
    total: int
    completed: int = 0
    failed: int = 0
    processing: int = 0
    percentage: int = 0
    current_stage: str = "Initializing batch generation"
    estimated_time_remaining: str = ""


class BatchGenerationJob(BaseModel):
    id: str
    research_job_id: str
    settings: BatchGenerationSettings
    status: BatchJobStatus = BatchJobStatus.pending
    progress: BatchProgress
    tasks: list[GenerationTask] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    version: int = 0

    def get_task(self, task_id: str) -> GenerationTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


# ── Publishing ───────────────────────────────────────────────

MIN_DELAY_BETWEEN_POSTS_MS = 10_000
MAX_DELAY_BETWEEN_POSTS_MS = 300_000
MAX_CONTENT_IDS_PER_JOB = 50


class PublishingCredentials(BaseModel):
    site_url: str
    username: str = Field(min_length=1, max_length=100)
    application_password: str = Field(min_length=1)

    @field_validator("site_url")
    @classmethod
    def normalize_site_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("site_url must be an http(s) URL")
        return value


class PublishingSettings(BaseModel):
    status: Literal["draft", "publish", "pending"] = "draft"
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    scheduled_date: datetime | None = None
    delay_between_posts_ms: int = Field(
        default=30_000, ge=MIN_DELAY_BETWEEN_POSTS_MS, le=MAX_DELAY_BETWEEN_POSTS_MS,
    )
    enable_performance_tracking: bool = True
    auto_optimization: bool = True
    multi_site: bool = False
    seo_title: str | None = Field(default=None, max_length=60)
    seo_description: str | None = Field(default=None, max_length=160)


class PublishingJobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    partially_completed = "partially_completed"
    failed = "failed"
    cancelled = "cancelled"


class PublishTaskState(str, Enum):
    pending = "pending"
    processing = "processing"
    published = "published"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_PUBLISH_STATES = {PublishTaskState.published, PublishTaskState.failed, PublishTaskState.cancelled}


class PublishingProgress(BaseModel):
    total: int
    published: int = 0
    failed: int = 0
    processing: int = 0
    percentage: int = 0
    current_stage: str = "Initializing automated publishing"
    estimated_time_remaining: str = ""


class PublishingResult(BaseModel):
    task_id: str
    content_id: str
    site_id: str | None = None
    success: bool
    external_id: str | None = None
    url: str | None = None
    error: str | None = None
    published_at: datetime | None = None
    performance_tracking_enabled: bool = False


class CrossPostSiteResult(BaseModel):
    site_id: str
    site_name: str
    success: bool
    external_id: str | None = None
    url: str | None = None
    error: str | None = None


class CrossPostResult(BaseModel):
    """One content item published directly to several sites."""
    content_id: str
    success: bool
    results: list[CrossPostSiteResult] = Field(default_factory=list)
    main_result: CrossPostSiteResult | None = None
    total_published: int = 0
    errors: list[str] = Field(default_factory=list)


class ApprovedContent(BaseModel):
    """Content library item eligible for publishing."""
    id: str
    type: str = "blog_post"
    title: str
    body: str
    excerpt: str | None = None
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    content_type: str | None = None
    ai_provider: str = "unknown"
    quality_score: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class AutomatedPublishingJob(BaseModel):
    id: str
    content_ids: list[str]
    credentials: PublishingCredentials
    settings: PublishingSettings
    status: PublishingJobStatus = PublishingJobStatus.pending
    progress: PublishingProgress
    results: list[PublishingResult] = Field(default_factory=list)
    task_states: dict[str, PublishTaskState] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    version: int = 0


# ── Destinations ─────────────────────────────────────────────

class SiteConfig(BaseModel):
    id: str
    name: str
    url: str
    username: str = "admin"
    application_password: str | None = None
    categories: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    is_active: bool = True
    priority: int = 50


class RoutingRule(BaseModel):
    keywords: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    site_id: str
    priority: int = 100
    description: str = ""


class RoutingRequest(BaseModel):
    title: str = ""
    body: str = ""
    excerpt: str | None = None
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    target_site_id: str | None = None
    content_type: str | None = None


# ── Performance tracking ─────────────────────────────────────

class EngagementMetrics(BaseModel):
    views: int = 0
    comments: int = 0
    shares: int = 0
    engagement_rate: float = 0.0
    avg_time_on_page: float = 0.0


class SeoMetrics(BaseModel):
    organic_traffic: int = 0
    click_through_rate: float = 0.0
    bounce_rate: float = 0.0


class CollectedMetrics(BaseModel):
    """Flat payload returned by a MetricsCollector."""
    views: int = 0
    comments: int = 0
    shares: int = 0
    engagement_rate: float = 0.0
    avg_time_on_page: float = 0.0
    organic_traffic: int = 0
    click_through_rate: float = 0.0
    bounce_rate: float = 0.0


class TrackingEntry(BaseModel):
    period: str
    tracked_at: datetime
    metrics: EngagementMetrics


class ContentPerformanceMetrics(BaseModel):
    content_id: str
    external_post_id: str
    published_url: str | None = None
    published_at: datetime
    site_id: str | None = None
    initial_metrics: EngagementMetrics = Field(default_factory=EngagementMetrics)
    current_metrics: EngagementMetrics | None = None
    seo_metrics: SeoMetrics = Field(default_factory=SeoMetrics)
    quality_score: float = 0.0
    ai_provider: str = "unknown"
    tracking_history: list[TrackingEntry] = Field(default_factory=list)
    last_tracked_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def has_period(self, period: str) -> bool:
        return any(entry.period == period for entry in self.tracking_history)


class FineTuningEntry(BaseModel):
    content_id: str
    period: str
    content: dict[str, Any]
    performance_metrics: ContentPerformanceMetrics
    quality_rating: int = Field(ge=0, le=10)
    added_at: datetime = Field(default_factory=utcnow)
