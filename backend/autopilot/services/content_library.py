"""
Content library: where generated items land and approved items come from.

- ContentSink.save_generated: called once per successful generation task
- ApprovedContentStore.get_by_id: only approved (or already published) items
- ApprovedContentStore.mark_published: records the destination post

SqlContentLibrary backs both with the `content_items` table.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.models import ContentItem, ContentItemStatus
from autopilot.schemas import ApprovedContent, GeneratedContent

logger = logging.getLogger(__name__)

PUBLISHABLE_STATUSES = {ContentItemStatus.approved.value, ContentItemStatus.published.value}


class ContentSink(ABC):
    @abstractmethod
    async def save_generated(self, content: GeneratedContent) -> None:
        ...


class ApprovedContentStore(ABC):
    @abstractmethod
    async def get_by_id(self, content_id: str) -> ApprovedContent | None:
        """Return the item, or None when missing or not approved."""
        ...

    @abstractmethod
    async def mark_published(
        self,
        content_id: str,
        *,
        external_post_id: str | None,
        url: str | None,
        site_id: str | None,
        published_at: datetime,
    ) -> None:
        ...


def _to_approved(item: ContentItem) -> ApprovedContent:
    meta: dict[str, Any] = dict(item.meta or {})
    return ApprovedContent(
        id=item.id,
        type=item.type,
        title=item.title,
        body=item.body,
        excerpt=item.excerpt,
        categories=list(item.categories or []),
        tags=list(item.tags or []),
        content_type=item.content_type,
        ai_provider=item.ai_provider or "unknown",
        quality_score=float(item.quality_score or 0),
        metadata=meta,
    )


class SqlContentLibrary(ContentSink, ApprovedContentStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save_generated(self, content: GeneratedContent) -> None:
        meta = content.model_dump(mode="json")["metadata"]
        async with self._session_factory() as session:
            item = await session.get(ContentItem, content.id)
            if item is not None:
                # redelivered task; items are immutable once stored
                logger.info(f"[content_library] {content.id} already stored, skipping")
                return
            session.add(ContentItem(
                id=content.id,
                type=content.type,
                title=content.title,
                body=content.body,
                excerpt=content.excerpt,
                status=content.status,
                tags=list(meta.get("keywords") or []),
                uniqueness_score=content.uniqueness_score,
                quality_score=float(meta.get("quality_score") or 0),
                ai_provider=meta.get("ai_provider"),
                batch_job_id=meta.get("batch_job_id"),
                meta=meta,
            ))
            await session.commit()
        logger.info(f"[content_library] Stored generated item {content.id}")

    async def get_by_id(self, content_id: str) -> ApprovedContent | None:
        async with self._session_factory() as session:
            item = await session.get(ContentItem, content_id)
            if item is None or item.status not in PUBLISHABLE_STATUSES:
                return None
            return _to_approved(item)

    async def mark_published(
        self,
        content_id: str,
        *,
        external_post_id: str | None,
        url: str | None,
        site_id: str | None,
        published_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            item = await session.get(ContentItem, content_id)
            if item is None:
                logger.warning(f"[content_library] mark_published: {content_id} not found")
                return
            item.status = ContentItemStatus.published.value
            item.external_post_id = external_post_id
            item.published_url = url
            item.published_site_id = site_id
            item.published_at = published_at
            session.add(item)
            await session.commit()
