# ace_playbook/curator/curator.py
import logging
import re
import time
from enum import Enum

from pydantic import BaseModel, Field

from ace_playbook.core.classifier import check_quality
from ace_playbook.core.errors import LowQualityContent
from ace_playbook.core.schema import (
    Applicability,
    BulletMetadata,
    BulletUpdate,
    Category,
    DeltaRequest,
    NewBullet,
    SourceType,
)

logger = logging.getLogger(__name__)

LANGUAGES = ("rust", "python", "javascript", "typescript", "go", "java", "c++", "ruby", "php")
_LANGUAGE_PATTERNS = {
    lang: re.compile(rf"(?<![\w+]){re.escape(lang)}(?![\w+])", re.IGNORECASE) for lang in LANGUAGES
}
ACTIVITY_TAGS = (
    ("testing", ("test",)),
    ("building", ("build", "compile")),
    ("debugging", ("fix", "debug")),
    ("setup", ("install", "setup")),
    ("deployment", ("deploy",)),
    ("git", ("git",)),
)


class InsightCategory(str, Enum):
    TOOL_USAGE = "tool_usage"
    ERROR_HANDLING = "error_handling"
    PATTERN = "pattern"
    SOLUTION = "solution"
    KNOWLEDGE = "knowledge"


class InsightContext(BaseModel):
    user_query: str = ""
    assistant_response_snippet: str = ""
    execution_success: bool = True
    tools_used: list[str] = Field(default_factory=list)
    error_message: str | None = None
    session_id: str = ""


class RawInsight(BaseModel):
    """Candidate insight produced by a reflector."""

    content: str
    category: InsightCategory = InsightCategory.KNOWLEDGE
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    context: InsightContext = Field(default_factory=InsightContext)


def _detect_languages(content: str) -> list[str]:
    return [lang for lang, pattern in _LANGUAGE_PATTERNS.items() if pattern.search(content)]


class Curator:
    """Turns raw insights into a DeltaRequest for the playbook."""

    def __init__(
        self,
        min_importance: float = 0.5,
        auto_categorize: bool = True,
        generate_tags: bool = True,
    ):
        self.min_importance = min_importance
        self.auto_categorize = auto_categorize
        self.generate_tags = generate_tags

    def process_insights(self, insights: list[RawInsight], session_id: str) -> DeltaRequest:
        """
        Filter insights and build new-bullet entries for them.

        Insights below ``min_importance`` are dropped, as are insights whose
        content is boilerplate or near-empty. Length bands are left to the
        merge engine, which reports per-bullet rejections.
        """
        start = time.perf_counter()
        new_bullets = []
        dropped = 0
        for insight in insights:
            if insight.importance < self.min_importance:
                dropped += 1
                continue
            try:
                check_quality(insight.content)
            except LowQualityContent as e:
                dropped += 1
                logger.warning(f"Dropping insight: {e}")
                continue
            new_bullets.append(self.to_new_bullet(insight, session_id))

        logger.info(f"Curated {len(new_bullets)} insight(s), dropped {dropped}")
        return DeltaRequest(
            session_id=session_id,
            new_bullets=new_bullets,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            insights_processed=len(new_bullets),
        )

    def to_new_bullet(self, insight: RawInsight, session_id: str) -> NewBullet:
        return NewBullet(
            content=insight.content,
            category=self.categorize(insight) if self.auto_categorize else None,
            tags=self.tags_for(insight) if self.generate_tags else [],
            metadata=self.metadata_for(insight),
            source_session=insight.context.session_id or session_id,
        )

    def categorize(self, insight: RawInsight) -> Category:
        content = insight.content
        match insight.category:
            case InsightCategory.TOOL_USAGE:
                if "```" in content:
                    return Category.CODE_SNIPPETS
                return Category.TOOL_USAGE
            case InsightCategory.ERROR_HANDLING:
                return Category.ERROR_HANDLING
            case InsightCategory.SOLUTION:
                return Category.TROUBLESHOOTING
            case InsightCategory.PATTERN:
                return Category.STRATEGIES_AND_RULES
            case _:
                if re.search(r"\bapi\b", content, re.IGNORECASE):
                    return Category.API_GUIDES
                return Category.GENERAL

    def source_type_for(self, insight: RawInsight) -> SourceType:
        if insight.context.execution_success:
            if insight.category == InsightCategory.ERROR_HANDLING:
                return SourceType.ERROR_RESOLUTION
            return SourceType.SUCCESS_EXECUTION
        if insight.category == InsightCategory.PATTERN:
            return SourceType.PATTERN_RECOGNITION
        return SourceType.ERROR_RESOLUTION

    def metadata_for(self, insight: RawInsight) -> BulletMetadata:
        success = insight.context.execution_success
        return BulletMetadata(
            importance=insight.importance,
            source_type=self.source_type_for(insight),
            applicability=Applicability(
                languages=_detect_languages(insight.content),
                tools=insight.context.tools_used,
            ),
            success_count=1 if success else 0,
            failure_count=0 if success else 1,
            related_tools=insight.context.tools_used,
        )

    def tags_for(self, insight: RawInsight) -> list[str]:
        tags = {insight.category.value.replace("_", "-")}
        tags.update(f"tool:{tool}" for tool in insight.context.tools_used)
        tags.add("success" if insight.context.execution_success else "failed")

        lowered = insight.content.lower()
        for tag, needles in ACTIVITY_TAGS:
            if any(needle in lowered for needle in needles):
                tags.add(tag)
        tags.update(f"lang:{lang}" for lang in _detect_languages(insight.content))
        return sorted(tags)


def curate(
    insights: list[RawInsight],
    session_id: str,
    min_importance: float = 0.5,
) -> DeltaRequest:
    """
    Convert raw insights into a DeltaRequest of new bullets.

    Args:
        insights: Candidate insights from a reflector
        session_id: Session the insights came from
        min_importance: Insights below this importance are dropped

    Returns:
        DeltaRequest: New bullets ready for PlaybookManager.merge
    """
    return Curator(min_importance=min_importance).process_insights(insights, session_id)


def outcome_updates(
    bullet_ids: list[str], success: bool, session_id: str = ""
) -> DeltaRequest:
    """Build a delta recording that the given bullets were used with this outcome."""
    return DeltaRequest(
        session_id=session_id,
        updates=[
            BulletUpdate(
                id=bullet_id,
                success_delta=1 if success else 0,
                failure_delta=0 if success else 1,
            )
            for bullet_id in bullet_ids
        ],
    )


def learning_delta(
    insights: list[RawInsight],
    session_id: str,
    used_bullet_ids: list[str] | None = None,
    success: bool = True,
    min_importance: float = 0.5,
) -> DeltaRequest:
    """Curate insights and record the outcome for the bullets that were used."""
    delta = curate(insights, session_id, min_importance=min_importance)
    if used_bullet_ids:
        delta.updates.extend(outcome_updates(used_bullet_ids, success, session_id).updates)
    return delta
