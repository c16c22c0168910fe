from collections import Counter
from collections.abc import Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field, model_validator

from ace_playbook.utils import generate_bullet_id, utc_now


class Category(str, Enum):
    STRATEGIES_AND_RULES = "strategies_and_rules"
    CODE_SNIPPETS = "code_snippets"
    TROUBLESHOOTING = "troubleshooting"
    API_GUIDES = "api_guides"
    ERROR_HANDLING = "error_handling"
    TOOL_USAGE = "tool_usage"
    GENERAL = "general"


# Older stores and external producers use different spellings; map them onto
# the canonical values.
CATEGORY_ALIASES: dict[str, Category] = {
    "StrategiesAndRules": Category.STRATEGIES_AND_RULES,
    "strategies": Category.STRATEGIES_AND_RULES,
    "strategies_and_hard_rules": Category.STRATEGIES_AND_RULES,
    "CodeSnippetsAndTemplates": Category.CODE_SNIPPETS,
    "CodeSnippets": Category.CODE_SNIPPETS,
    "code_snippets_and_templates": Category.CODE_SNIPPETS,
    "templates": Category.CODE_SNIPPETS,
    "TroubleshootingAndPitfalls": Category.TROUBLESHOOTING,
    "Troubleshooting": Category.TROUBLESHOOTING,
    "troubleshooting_and_pitfalls": Category.TROUBLESHOOTING,
    "ApiUsageGuides": Category.API_GUIDES,
    "ApiGuides": Category.API_GUIDES,
    "api_usage_guides": Category.API_GUIDES,
    "ErrorHandlingPatterns": Category.ERROR_HANDLING,
    "ErrorHandling": Category.ERROR_HANDLING,
    "error_handling_patterns": Category.ERROR_HANDLING,
    "ToolUsageTips": Category.TOOL_USAGE,
    "ToolUsage": Category.TOOL_USAGE,
    "tool_usage_tips": Category.TOOL_USAGE,
    "General": Category.GENERAL,
    "ProjectSpecific": Category.GENERAL,
    "project_specific": Category.GENERAL,
    "facts": Category.GENERAL,
    "domain_facts_and_references": Category.GENERAL,
}


def normalize_category(value: object) -> Category:
    """Normalize a category value, accepting legacy spellings."""
    if isinstance(value, Category):
        return value
    if isinstance(value, str):
        try:
            return Category(value)
        except ValueError:
            pass
        if value in CATEGORY_ALIASES:
            return CATEGORY_ALIASES[value]
    valid = [c.value for c in Category] + list(CATEGORY_ALIASES)
    raise ValueError(f"Invalid category: {value}. Must be one of: {valid}")


def normalize_optional_category(value: object) -> Category | None:
    if value is None or value == "":
        return None
    return normalize_category(value)


def _dedupe_strings(values: list[str]) -> list[str]:
    return sorted({v.strip() for v in values if v and v.strip()})


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


NormalizedCategory = Annotated[Category, BeforeValidator(normalize_category)]
OptionalCategory = Annotated[Category | None, BeforeValidator(normalize_optional_category)]
TagSet = Annotated[list[str], AfterValidator(_dedupe_strings)]
UTCDateTime = Annotated[datetime, AfterValidator(_ensure_utc)]


class SourceType(str, Enum):
    SUCCESS_EXECUTION = "success_execution"
    ERROR_RESOLUTION = "error_resolution"
    PATTERN_RECOGNITION = "pattern_recognition"
    MANUAL_ENTRY = "manual_entry"


class Applicability(BaseModel):
    languages: TagSet = Field(default_factory=list)
    tools: TagSet = Field(default_factory=list)
    platforms: TagSet = Field(default_factory=list)
    project_types: TagSet = Field(default_factory=list)

    def union(self, other: "Applicability") -> "Applicability":
        return Applicability(
            languages=self.languages + other.languages,
            tools=self.tools + other.tools,
            platforms=self.platforms + other.platforms,
            project_types=self.project_types + other.project_types,
        )


class BulletMetadata(BaseModel):
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    source_type: SourceType = SourceType.PATTERN_RECOGNITION
    applicability: Applicability = Field(default_factory=Applicability)
    reference_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    related_tools: TagSet = Field(default_factory=list)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @property
    def outcomes(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        """Share of recorded outcomes that succeeded; 1.0 when none are recorded."""
        if self.outcomes == 0:
            return 1.0
        return self.success_count / self.outcomes

    @property
    def failure_rate(self) -> float:
        if self.outcomes == 0:
            return 0.0
        return self.failure_count / self.outcomes


class Bullet(BaseModel):
    id: str = Field(default_factory=generate_bullet_id)
    created_at: UTCDateTime = Field(default_factory=utc_now)
    updated_at: UTCDateTime = Field(default_factory=utc_now)
    source_session: str = ""
    category: NormalizedCategory
    content: str
    tags: TagSet = Field(default_factory=list)
    metadata: BulletMetadata = Field(default_factory=BulletMetadata)

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utc_now()


class StoreStats(BaseModel):
    total: int = 0
    by_category: dict[NormalizedCategory, int] = Field(
        default_factory=lambda: {c: 0 for c in Category}
    )
    total_sessions: int = 0
    tool_usage: dict[str, int] = Field(default_factory=dict)
    overall_success_rate: float = 0.0


def empty_buckets() -> dict[Category, list[Bullet]]:
    return {c: [] for c in Category}


def compute_stats(buckets: dict[Category, list[Bullet]]) -> StoreStats:
    """Derive aggregate statistics from the bucket map.

    ``overall_success_rate`` is computed over recorded outcomes only and is
    0.0 when no bullet has an outcome yet.
    """
    by_category = {c: len(buckets.get(c, [])) for c in Category}
    sessions: set[str] = set()
    tool_usage: Counter[str] = Counter()
    successes = 0
    outcomes = 0
    for bullets in buckets.values():
        for bullet in bullets:
            if bullet.source_session:
                sessions.add(bullet.source_session)
            tool_usage.update(bullet.metadata.related_tools)
            successes += bullet.metadata.success_count
            outcomes += bullet.metadata.outcomes
    return StoreStats(
        total=sum(by_category.values()),
        by_category=by_category,
        total_sessions=len(sessions),
        tool_usage=dict(sorted(tool_usage.items())),
        overall_success_rate=successes / outcomes if outcomes else 0.0,
    )


class Playbook(BaseModel):
    version: int = Field(default=0, ge=0)
    last_updated: UTCDateTime = Field(default_factory=utc_now)
    bullets: dict[NormalizedCategory, list[Bullet]] = Field(default_factory=empty_buckets)
    stats: StoreStats = Field(default_factory=StoreStats)

    @model_validator(mode="after")
    def _rebucket(self) -> "Playbook":
        # Bucket by each bullet's own category; stats are always derived.
        buckets = empty_buckets()
        seen: set[str] = set()
        for bullets in self.bullets.values():
            for bullet in bullets:
                if bullet.id in seen:
                    continue
                seen.add(bullet.id)
                buckets[bullet.category].append(bullet)
        self.bullets = buckets
        self.stats = compute_stats(buckets)
        return self

    def iter_bullets(self) -> Iterator[Bullet]:
        for category in Category:
            yield from self.bullets.get(category, [])

    @property
    def total(self) -> int:
        return sum(len(b) for b in self.bullets.values())

    def find(self, bullet_id: str) -> tuple[Category, int] | None:
        """Locate a bullet by id, returning its bucket and position."""
        for category, bullets in self.bullets.items():
            for idx, bullet in enumerate(bullets):
                if bullet.id == bullet_id:
                    return category, idx
        return None

    def get(self, bullet_id: str) -> Bullet | None:
        location = self.find(bullet_id)
        if location is None:
            return None
        category, idx = location
        return self.bullets[category][idx]

    def refresh_stats(self) -> None:
        self.stats = compute_stats(self.bullets)

    def shallow_copy(self) -> "Playbook":
        """Copy with fresh bucket lists; bullets themselves are shared."""
        return self.model_copy(
            update={"bullets": {c: list(self.bullets.get(c, [])) for c in Category}}
        )


class NewBullet(BaseModel):
    content: str
    category: OptionalCategory = None
    tags: TagSet = Field(default_factory=list)
    metadata: BulletMetadata = Field(default_factory=BulletMetadata)
    source_session: str | None = None


class BulletUpdate(BaseModel):
    id: str
    importance: float | None = Field(default=None, ge=0.0, le=1.0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    source_type: SourceType | None = None
    applicability: Applicability | None = None
    reference_delta: int = Field(default=0, ge=0)
    success_delta: int = Field(default=0, ge=0)
    failure_delta: int = Field(default=0, ge=0)
    tags: TagSet = Field(default_factory=list)
    related_tools: TagSet = Field(default_factory=list)


class DeltaRequest(BaseModel):
    session_id: str = ""
    new_bullets: list[NewBullet] = Field(default_factory=list)
    updates: list[BulletUpdate] = Field(default_factory=list)
    processing_time_ms: float = Field(default=0.0, ge=0.0)
    insights_processed: int = Field(default=0, ge=0)

    def is_empty(self) -> bool:
        return not self.new_bullets and not self.updates


class RejectedBullet(BaseModel):
    index: int
    reason: Literal["out_of_bounds", "low_quality", "validation"]
    message: str
    category: Category | None = None
    length: int | None = None
    band: tuple[int, int] | None = None


class MergeSummary(BaseModel):
    session_id: str = ""
    changed: bool = False
    version: int
    added_ids: list[str] = Field(default_factory=list)
    updated_ids: list[str] = Field(default_factory=list)
    rejected: list[RejectedBullet] = Field(default_factory=list)
    stale_updates: list[str] = Field(default_factory=list)
    compacted: int = 0
    processing_time_ms: float = 0.0

    @property
    def accepted(self) -> int:
        return len(self.added_ids)


class RefineOp(BaseModel):
    op: Literal["MERGE", "EVICT", "COMPACT"]
    category: Category
    survivor_id: str | None = None
    target_ids: list[str] = Field(default_factory=list)


class RefineResult(BaseModel):
    merged: int = 0
    evicted: int = 0
    compacted: int = 0
    weights_refreshed: int = 0
    ops: list[RefineOp] = Field(default_factory=list)
    changed: bool = False
    interrupted: bool = False
    skipped: bool = False
    version: int = 0
    duration_ms: float = 0.0


class OptimizerStats(BaseModel):
    total_bullets: int = 0
    avg_weight: float = 0.0
    avg_references: float = 0.0
    avg_success_rate: float = 0.0
    age_buckets: dict[str, int] = Field(default_factory=dict)
    reference_buckets: dict[str, int] = Field(default_factory=dict)
    calls_since_pass: int = 0
    passes: int = 0
    failures: int = 0
    last_error: str | None = None
    last_run: datetime | None = None
