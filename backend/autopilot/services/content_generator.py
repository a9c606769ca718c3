"""
Content generator interface for batch generation.

Pass a concrete implementation to build_services(generator=...) to connect a
real model (OpenAI, Gemini, ...).
Implementations signal temporary trouble with ProviderError / RateLimitError /
QuotaError so the worker retries; any other exception fails the task.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from autopilot.schemas import BrandVoice, GenerationRequirements


@dataclass
class GenerationOutput:
    """Raw result returned by a ContentGenerator."""
    title: str
    body: str
    excerpt: str | None = None
    provider: str = "stub"
    metadata: dict[str, Any] = field(default_factory=dict)


class ContentGenerator(ABC):
    """Abstract generator. Implement `generate` to plug in a real model."""

    @abstractmethod
    async def generate(
        self,
        *,
        content_type: str,
        topic: str,
        keywords: list[str],
        brand_voice: BrandVoice,
        target_audience: str,
        requirements: GenerationRequirements,
        context_prompt: str,
        preferred_provider: str = "auto",
    ) -> GenerationOutput:
        ...


class StubContentGenerator(ContentGenerator):
    """Deterministic stub that returns plausible placeholder content."""

    async def generate(
        self,
        *,
        content_type: str,
        topic: str,
        keywords: list[str],
        brand_voice: BrandVoice,
        target_audience: str,
        requirements: GenerationRequirements,
        context_prompt: str,
        preferred_provider: str = "auto",
    ) -> GenerationOutput:
        # body never reuses source vocabulary
        title = topic.title()
        sections = [f"A {brand_voice.tone} {content_type.replace('_', ' ')} for {target_audience}."]
        for i in range(1, len(keywords) + 1):
            if requirements.include_headings:
                sections.append(f"## Part {i}")
            sections.append(f"Placeholder paragraph {i}, drafted in a {brand_voice.style} voice.")

        return GenerationOutput(
            title=title,
            body="\n\n".join(sections),
            provider="stub-v1" if preferred_provider == "auto" else preferred_provider,
            metadata={
                "keywords": keywords,
                "seo_title": title[:60],
                "seo_description": f"{title} for {target_audience}"[:160],
                "quality_score": 0,
            },
        )

