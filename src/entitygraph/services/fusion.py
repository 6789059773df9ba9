"""Fusion strategies for near-duplicate facts.

When the semantic check finds an existing fact that means the same thing
as a new value, a fusion provider decides what happens. The fact service
applies whatever it returns; swapping strategies never changes the dedup
pipeline itself.
"""

from typing import Optional

from ..interfaces import (
    EntityFact,
    FactSource,
    FusionAction,
    FusionDecision,
    IFusionDecisionProvider,
)
from ..utils import normalize_value

# Trust of each source; higher wins
SOURCE_PRIORITY: dict[FactSource, int] = {
    FactSource.MANUAL: 100,
    FactSource.EXTRACTED: 70,
    FactSource.IMPORTED: 50,
}

# Decisions below this confidence are escalated to human review
FUSION_CONFIDENCE_THRESHOLD = 0.7


class AutoSkipFusion(IFusionDecisionProvider):
    """Always keep the existing fact and drop the new value."""

    async def decide(self, existing_fact, new_value, new_source, context=None) -> FusionDecision:
        return FusionDecision(
            action=FusionAction.SKIP,
            explanation="Existing fact kept",
        )


class AutoSupersedeFusion(IFusionDecisionProvider):
    """Always replace the existing fact with the new value."""

    async def decide(self, existing_fact, new_value, new_source, context=None) -> FusionDecision:
        return FusionDecision(
            action=FusionAction.SUPERSEDE,
            explanation="Newer value replaces existing fact",
        )


class DelegateToReviewerFusion(IFusionDecisionProvider):
    """Flag every near-duplicate for a human to resolve."""

    async def decide(self, existing_fact, new_value, new_source, context=None) -> FusionDecision:
        return FusionDecision(
            action=FusionAction.REVIEW,
            explanation=f"Possible duplicate of '{existing_fact.value}' needs review",
        )


class SourcePriorityFusion(IFusionDecisionProvider):
    """Rule-based decision using source trust.

    - same normalized value: confirm the existing fact
    - new value extends the existing one (same source trust or better): update
    - more trusted source: supersede
    - less trusted source: skip
    - equally trusted, different value: review
    """

    def __init__(self, priorities: Optional[dict[FactSource, int]] = None):
        self.priorities = priorities or SOURCE_PRIORITY

    async def decide(
        self,
        existing_fact: EntityFact,
        new_value: str,
        new_source: FactSource,
        context: Optional[str] = None,
    ) -> FusionDecision:
        old_norm = normalize_value(existing_fact.value)
        new_norm = normalize_value(new_value)
        if old_norm == new_norm:
            return FusionDecision(
                action=FusionAction.CONFIRM,
                confidence=1.0,
                explanation="Same information confirmed",
            )

        old_priority = self.priorities.get(existing_fact.source, 0)
        new_priority = self.priorities.get(new_source, 0)

        if old_norm and old_norm in new_norm and new_priority >= old_priority:
            return FusionDecision(
                action=FusionAction.UPDATE,
                confidence=0.9,
                merged_value=new_value,
                explanation="New value adds detail to the existing one",
            )
        if new_priority > old_priority:
            return FusionDecision(
                action=FusionAction.SUPERSEDE,
                confidence=0.9,
                explanation=f"{new_source.value} source outranks {existing_fact.source.value}",
            )
        if new_priority < old_priority:
            return FusionDecision(
                action=FusionAction.SKIP,
                confidence=0.9,
                explanation=f"{existing_fact.source.value} source outranks {new_source.value}",
            )
        return FusionDecision(
            action=FusionAction.REVIEW,
            confidence=0.5,
            explanation="Conflicting values from equally trusted sources",
        )
