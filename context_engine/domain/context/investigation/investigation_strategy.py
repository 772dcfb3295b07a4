"""Investigation phase, suggestions and priority derived from a step's ledger.

Shared by the filtered context and the investigation context so both always
agree on what to try next.
"""

from typing import Dict, List, Optional
from datetime import datetime, timedelta

from context_engine.domain.models.context_output import InvestigationPhase
from context_engine.domain.models.investigation import (
    InvestigationPriority,
    InvestigationResult,
    InvestigationSuggestion,
    InvestigationType,
)
from context_engine.domain.models.working_memory import InvestigationPreferences

MAX_SUGGESTIONS = 5
MAX_FALLBACK_FILL = 3
RECENT_WINDOW = timedelta(minutes=5)

PHASE_DEFAULTS = {
    InvestigationPhase.INITIAL_ASSESSMENT: (
        InvestigationType.SCREENSHOT_ANALYSIS,
        "Initial page assessment",
        "Start with visual analysis to understand page layout",
    ),
    InvestigationPhase.FOCUSED_EXPLORATION: (
        InvestigationType.TEXT_EXTRACTION,
        "Extract relevant text content",
        "Focus on text extraction to find actionable elements",
    ),
    InvestigationPhase.SELECTOR_DETERMINATION: (
        InvestigationType.SUB_DOM_EXTRACTION,
        "Locate specific elements",
        "Use targeted DOM extraction to find precise selectors",
    ),
}

# (keywords, type, purpose, reasoning)
KEYWORD_RULES = [
    (
        ("click", "button"),
        InvestigationType.SCREENSHOT_ANALYSIS,
        "Locate clickable elements visually",
        "Step involves clicking, visual analysis recommended",
    ),
    (
        ("form", "input", "enter"),
        InvestigationType.SUB_DOM_EXTRACTION,
        "Extract form structure",
        "Step involves form interaction, DOM extraction recommended",
    ),
    (
        ("text", "content", "read"),
        InvestigationType.TEXT_EXTRACTION,
        "Extract relevant text content",
        "Step involves text content, text extraction recommended",
    ),
]

DEFAULT_PRIORITY = InvestigationPriority(
    primary=InvestigationType.SCREENSHOT_ANALYSIS,
    fallbacks=[
        InvestigationType.TEXT_EXTRACTION,
        InvestigationType.SUB_DOM_EXTRACTION,
        InvestigationType.FULL_DOM_RETRIEVAL,
    ],
    reasoning="Resetting to default priority after investigation failures",
)


def determine_investigation_phase(investigations: List[InvestigationResult]) -> InvestigationPhase:
    if not investigations:
        return InvestigationPhase.INITIAL_ASSESSMENT
    if not any(i.success for i in investigations):
        return InvestigationPhase.FOCUSED_EXPLORATION
    return InvestigationPhase.SELECTOR_DETERMINATION


def find_most_successful_type(investigations: List[InvestigationResult]) -> Optional[InvestigationType]:
    """Type with the most successes; ties go to the type that succeeded first"""

    counts: Dict[InvestigationType, int] = {}
    for investigation in investigations:
        if investigation.success:
            counts[investigation.investigation_type] = counts.get(investigation.investigation_type, 0) + 1

    if not counts:
        return None
    return max(counts, key=lambda t: counts[t])


def has_recent_investigation(
    investigations: List[InvestigationResult], investigation_type: InvestigationType, now: Optional[datetime] = None
) -> bool:
    cutoff = (now or datetime.utcnow()) - RECENT_WINDOW
    return any(
        i.investigation_type == investigation_type and i.timestamp >= cutoff
        for i in investigations
    )


def suggest_investigations(
    investigations: List[InvestigationResult],
    step_name: str,
    preferences: Optional[InvestigationPreferences] = None,
) -> List[InvestigationSuggestion]:
    """Ranked, deduplicated next investigations for a step"""

    preferences = preferences or InvestigationPreferences()
    phase = determine_investigation_phase(investigations)
    tried = {i.investigation_type for i in investigations}
    failed = {i.investigation_type for i in investigations if not i.success}

    default_type, purpose, reasoning = PHASE_DEFAULTS[phase]
    suggestions = [InvestigationSuggestion(type=default_type, purpose=purpose, priority=1, reasoning=reasoning)]

    if phase == InvestigationPhase.INITIAL_ASSESSMENT and preferences.preferred_order:
        suggestions.append(InvestigationSuggestion(
            type=preferences.preferred_order[0],
            purpose="Initial page assessment",
            priority=1,
            reasoning="Starting investigation with preferred method",
        ))
    elif phase == InvestigationPhase.FOCUSED_EXPLORATION:
        untried = [t for t in preferences.preferred_order if t not in tried]
        if untried:
            suggestions.append(InvestigationSuggestion(
                type=untried[0],
                purpose="Alternative investigation approach",
                priority=1,
                reasoning="Previous investigations unsuccessful, trying different approach",
            ))
    elif phase == InvestigationPhase.SELECTOR_DETERMINATION:
        best = find_most_successful_type(investigations)
        if best and not has_recent_investigation(investigations, best):
            suggestions.append(InvestigationSuggestion(
                type=best,
                purpose="Follow up on successful approach",
                priority=1,
                reasoning="Building on previously successful investigation method",
            ))

    for investigation_type in InvestigationType:
        if len(suggestions) >= MAX_FALLBACK_FILL:
            break
        if investigation_type not in tried and investigation_type not in failed:
            suggestions.append(InvestigationSuggestion(
                type=investigation_type,
                purpose="Unexplored investigation method",
                priority=2,
                reasoning=f"{investigation_type.value} hasn't been attempted yet",
            ))

    lowered = (step_name or "").lower()
    for keywords, investigation_type, rule_purpose, rule_reasoning in KEYWORD_RULES:
        if any(k in lowered for k in keywords):
            suggestions.append(InvestigationSuggestion(
                type=investigation_type,
                purpose=rule_purpose,
                priority=2,
                reasoning=rule_reasoning,
            ))

    ranked = []
    seen = set()
    for suggestion in sorted(suggestions, key=lambda s: s.priority):
        if suggestion.type in seen:
            continue
        seen.add(suggestion.type)
        ranked.append(suggestion)

    return ranked[:MAX_SUGGESTIONS]


def compute_investigation_priority(
    investigations: List[InvestigationResult],
    preferences: Optional[InvestigationPreferences] = None,
) -> InvestigationPriority:
    """Primary type plus fallback chain, avoiding types that already failed"""

    preferences = preferences or InvestigationPreferences()

    best = find_most_successful_type(investigations)
    if best:
        return InvestigationPriority(
            primary=best,
            fallbacks=[t for t in preferences.preferred_order if t != best],
            reasoning="Prioritizing based on recent successful investigations",
        )

    failed = {i.investigation_type for i in investigations if not i.success}
    remaining = [t for t in preferences.preferred_order if t not in failed]
    if not remaining:
        return DEFAULT_PRIORITY.model_copy(deep=True)

    return InvestigationPriority(
        primary=remaining[0],
        fallbacks=remaining[1:],
        reasoning="Using learned preferences while avoiding failed methods",
    )
