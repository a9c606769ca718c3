from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class ContentItemStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    published = "published"
    rejected = "rejected"


class ContentItem(Base):
    """Generated content item; approved items are eligible for publishing."""

    __tablename__ = "content_items"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    title: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    body: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    excerpt: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[ContentItemStatus] = mapped_column(
        sa.String(32), nullable=False, server_default=ContentItemStatus.draft.value, index=True
    )
    content_type: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    categories: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    tags: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    uniqueness_score: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    quality_score: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    batch_job_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True, index=True)
    meta: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)

    external_post_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    published_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    published_site_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
