"""
Destination routing: pick the site an item is published to.

Precedence:
1. request.target_site_id naming a known site
2. request.content_type via CONTENT_TYPE_SITES (unlisted types -> default site)
3. rule scoring:
     keyword_in_text × |rule keywords found in lower(title body excerpt)|
   + category        × |rule categories contained in a request category|
   + keyword_in_tag  × |rule keywords contained in a request tag|
   then × rule.priority / priority_divisor.
   Strictly highest score wins, ties keep the earliest rule, and nothing
   above 0 falls back to the default site.

Scoring is pure: same rules + same request -> same site.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from autopilot.errors import NotFoundError, ValidationError
from autopilot.schemas import PublishingCredentials, RoutingRequest, RoutingRule, SiteConfig
from autopilot.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingWeights:
    keyword_in_text: float = 10.0
    category: float = 15.0
    keyword_in_tag: float = 10.0
    priority_divisor: float = 100.0


DEFAULT_WEIGHTS = RoutingWeights()

# Content types with a dedicated site; anything else goes to the default site
CONTENT_TYPE_SITES = {
    "wedding": "wedding",
    "pre-wedding": "wedding",
    "yearbook-school": "yearbook",
    "yearbook-concept": "yearbook",
}

REASON_EXPLICIT = "explicit"
REASON_CONTENT_TYPE = "content_type"
REASON_SCORED = "scored"
REASON_DEFAULT = "default"


@dataclass
class RuleScore:
    site_id: str
    score: float
    matched_keywords: list[str] = field(default_factory=list)
    matched_categories: list[str] = field(default_factory=list)
    matched_tags: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class RoutingDecision:
    site_id: str
    reason: str
    scores: list[RuleScore] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def score_rule(rule: RoutingRule, request: RoutingRequest, weights: RoutingWeights = DEFAULT_WEIGHTS) -> RuleScore:
    text = f"{request.title} {request.body} {request.excerpt or ''}".lower()
    categories = [c.lower() for c in request.categories]
    tags = [t.lower() for t in request.tags]

    matched_keywords = [kw for kw in rule.keywords if kw.lower() in text]
    matched_categories = [
        rc for rc in rule.categories if any(rc.lower() in cat for cat in categories)
    ]
    matched_tags = [kw for kw in rule.keywords if any(kw.lower() in tag for tag in tags)]

    raw = (
        weights.keyword_in_text * len(matched_keywords)
        + weights.category * len(matched_categories)
        + weights.keyword_in_tag * len(matched_tags)
    )
    return RuleScore(
        site_id=rule.site_id,
        score=raw * rule.priority / weights.priority_divisor,
        matched_keywords=matched_keywords,
        matched_categories=matched_categories,
        matched_tags=matched_tags,
        description=rule.description,
    )


# ── Site registry ────────────────────────────────────────────

def _default_sites(settings: Settings) -> list[SiteConfig]:
    return [
        SiteConfig(
            id="wedding",
            name="Wedding Guustudio",
            url=settings.wordpress_wedding_url,
            username=settings.wordpress_wedding_username,
            application_password=settings.wordpress_wedding_password,
            categories=["Đám Cưới", "Pre-Wedding", "Wedding Photography", "Bridal", "Groom", "Wedding Planning"],
            keywords=["cưới", "wedding", "đám cưới", "pre-wedding", "prewedding", "cô dâu", "chú rể", "bridal", "groom"],
            priority=100,
        ),
        SiteConfig(
            id="yearbook",
            name="Guu Kỷ Yếu",
            url=settings.wordpress_yearbook_url,
            username=settings.wordpress_yearbook_username,
            application_password=settings.wordpress_yearbook_password,
            categories=["Kỷ Yếu", "Học Sinh", "Graduation", "School Photography", "Student Life", "Education"],
            keywords=["kỷ yếu", "graduation", "học sinh", "student", "school", "trường", "lớp", "class", "giáo dục"],
            priority=100,
        ),
        SiteConfig(
            id="main",
            name="Guustudio Main",
            url=settings.wordpress_main_url,
            username=settings.wordpress_main_username,
            application_password=settings.wordpress_main_password,
            categories=["Photography", "Portrait", "Corporate", "Events", "Lifestyle", "Art", "Design", "Tips"],
            keywords=["photography", "chụp ảnh", "portrait", "corporate", "doanh nghiệp", "event", "sự kiện", "lifestyle"],
            priority=50,
        ),
    ]


def _default_rules() -> list[RoutingRule]:
    return [
        RoutingRule(
            keywords=["cưới", "wedding", "đám cưới", "pre-wedding", "prewedding", "cô dâu", "chú rể", "bridal", "groom"],
            categories=["wedding", "pre-wedding", "bridal", "matrimony"],
            site_id="wedding",
            priority=100,
            description="Wedding and pre-wedding content",
        ),
        RoutingRule(
            keywords=["kỷ yếu", "graduation", "học sinh", "student", "school", "trường", "lớp", "class", "giáo dục", "education"],
            categories=["yearbook", "graduation", "school", "student", "education"],
            site_id="yearbook",
            priority=100,
            description="Yearbook and student content",
        ),
        RoutingRule(
            keywords=["photography", "chụp ảnh", "portrait", "corporate", "doanh nghiệp", "event", "sự kiện", "lifestyle", "art"],
            categories=["corporate", "portrait", "event", "lifestyle", "photography", "general"],
            site_id="main",
            priority=50,
            description="General photography content",
        ),
    ]


class SiteRegistry:
    """Destination sites and routing rules, read-mostly."""

    def __init__(
        self,
        sites: list[SiteConfig],
        rules: list[RoutingRule],
        default_site_id: str | None = None,
        *,
        settings: Settings | None = None,
    ):
        self._settings = settings
        self._load(sites, rules, default_site_id)

    def _load(self, sites: list[SiteConfig], rules: list[RoutingRule], default_site_id: str | None) -> None:
        ids = [s.id for s in sites]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"Duplicate site ids: {ids}")
        unknown = [r.site_id for r in rules if r.site_id not in ids]
        if unknown:
            raise ValidationError(f"Routing rules reference unknown sites: {unknown}")
        self._sites: dict[str, SiteConfig] = {s.id: s for s in sites}
        self._rules = list(rules)
        self._configured_default = default_site_id
        logger.info(f"[routing] Loaded {len(self._sites)} sites, {len(self._rules)} rules")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SiteRegistry":
        sites, rules, default = cls._read_config(settings)
        return cls(sites, rules, default, settings=settings)

    @staticmethod
    def _read_config(settings: Settings) -> tuple[list[SiteConfig], list[RoutingRule], str | None]:
        if not settings.sites_config_path:
            return _default_sites(settings), _default_rules(), settings.default_site_id

        data = json.loads(Path(settings.sites_config_path).read_text(encoding="utf-8"))
        sites = [SiteConfig.model_validate(s) for s in data.get("sites", [])]
        if "rules" in data:
            rules = [RoutingRule.model_validate(r) for r in data["rules"]]
        else:
            # one rule per site from its own keywords/categories
            rules = [
                RoutingRule(
                    keywords=s.keywords,
                    categories=[c.lower() for c in s.categories],
                    site_id=s.id,
                    priority=s.priority,
                    description=s.name,
                )
                for s in sites
            ]
        return sites, rules, data.get("default_site_id", settings.default_site_id)

    def reload(self) -> None:
        """Re-read the configuration source (file or settings)."""
        if self._settings is None:
            raise ValidationError("Registry was built without settings; nothing to reload from")
        self._load(*self._read_config(self._settings))

    # ── Queries ──────────────────────────────────────────────

    @property
    def rules(self) -> list[RoutingRule]:
        return list(self._rules)

    def get_sites(self) -> list[SiteConfig]:
        return list(self._sites.values())

    def get_site(self, site_id: str) -> SiteConfig | None:
        return self._sites.get(site_id)

    def has_site(self, site_id: str) -> bool:
        return site_id in self._sites

    def active_sites(self) -> list[SiteConfig]:
        return [s for s in self._sites.values() if s.is_active]

    @property
    def default_site_id(self) -> str:
        if self._configured_default and self._configured_default in self._sites:
            return self._configured_default
        candidates = self.active_sites() or self.get_sites()
        if not candidates:
            raise NotFoundError("No destination sites configured")
        return min(candidates, key=lambda s: s.priority).id

    def credentials_for(self, site_id: str) -> PublishingCredentials:
        site = self._sites.get(site_id)
        if site is None:
            raise NotFoundError(f"Site {site_id} not found")
        if not site.application_password:
            raise ValidationError(f"Site {site_id} has no application password configured")
        return PublishingCredentials(
            site_url=site.url,
            username=site.username,
            application_password=site.application_password,
        )

    def update_site_config(self, site_id: str, updates: dict[str, Any]) -> bool:
        site = self._sites.get(site_id)
        if site is None:
            logger.warning(f"[routing] Site not found for update: {site_id}")
            return False
        updates = {k: v for k, v in updates.items() if k != "id"}
        self._sites[site_id] = SiteConfig.model_validate({**site.model_dump(), **updates})
        logger.info(f"[routing] Updated site {site_id}: {sorted(updates)}")
        return True

    def get_publishing_stats(self) -> dict[str, Any]:
        return {
            "total_sites": len(self._sites),
            "active_sites": len(self.active_sites()),
            "routing_rules": len(self._rules),
            "site_stats": [
                {
                    "site_id": s.id,
                    "site_name": s.name,
                    "is_active": s.is_active,
                    "categories": len(s.categories),
                    "keywords": len(s.keywords),
                    "priority": s.priority,
                }
                for s in self._sites.values()
            ],
        }

    async def test_all_connections(self, publisher) -> dict[str, dict[str, Any]]:
        """Probe every site with `publisher.test_connection`."""
        results: dict[str, dict[str, Any]] = {}
        for site in self._sites.values():
            entry: dict[str, Any] = {"success": False, "site_name": site.name, "url": site.url}
            if not site.is_active:
                entry["error"] = "Site is inactive"
            elif not site.application_password:
                entry["error"] = "No application password configured"
            else:
                started = time.monotonic()
                check = await publisher.test_connection(self.credentials_for(site.id))
                entry["success"] = check.success
                entry["response_time_ms"] = check.response_time_ms or int((time.monotonic() - started) * 1000)
                if not check.success:
                    entry["error"] = check.message
            results[site.id] = entry
            logger.info(f"[routing] Connection test {site.id}: {'ok' if entry['success'] else entry.get('error')}")
        return results


# ── Router ───────────────────────────────────────────────────

class DestinationRouter:
    def __init__(self, registry: SiteRegistry, weights: RoutingWeights = DEFAULT_WEIGHTS):
        self._registry = registry
        self._weights = weights

    @property
    def registry(self) -> SiteRegistry:
        return self._registry

    def preview_routing(self, request: RoutingRequest) -> RoutingDecision:
        """Full decision with per-rule scores; never publishes anything."""
        if request.target_site_id and self._registry.has_site(request.target_site_id):
            return RoutingDecision(request.target_site_id, REASON_EXPLICIT)

        if request.content_type:
            site_id = CONTENT_TYPE_SITES.get(request.content_type)
            if site_id is None or not self._registry.has_site(site_id):
                site_id = self._registry.default_site_id
            return RoutingDecision(site_id, REASON_CONTENT_TYPE)

        scores = [score_rule(rule, request, self._weights) for rule in self._registry.rules]
        best: RuleScore | None = None
        for candidate in scores:
            if candidate.score > 0 and (best is None or candidate.score > best.score):
                best = candidate

        if best is None:
            return RoutingDecision(self._registry.default_site_id, REASON_DEFAULT, scores)
        return RoutingDecision(best.site_id, REASON_SCORED, scores)

    def determine_target_site(self, request: RoutingRequest) -> str:
        decision = self.preview_routing(request)
        top = max((s.score for s in decision.scores), default=0)
        logger.info(f"[routing] -> {decision.site_id} ({decision.reason}, top score={top:g})")
        return decision.site_id
