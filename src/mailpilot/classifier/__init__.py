"""Pattern detection and review components.

This package turns mailbox activity into automation:
- Confidence scoring and the suggestion gate
- Pattern engine with cooldown-aware upsert
- Review decisions (approve, reject, customize)
- Conversion of approved patterns into rules
"""

from mailpilot.classifier.confidence import (
    calculate_confidence,
    map_event_type_to_action_type,
    should_suggest_pattern,
)
from mailpilot.classifier.pattern_engine import (
    AnalysisRunResult,
    MailboxAnalysisResult,
    PatternEngine,
    UpsertOutcome,
)
from mailpilot.classifier.pattern_review import PatternReviewService, validate_action
from mailpilot.classifier.rule_converter import RuleConverter, build_rule_name

__all__ = [
    # Confidence
    "calculate_confidence",
    "map_event_type_to_action_type",
    "should_suggest_pattern",
    # Engine
    "AnalysisRunResult",
    "MailboxAnalysisResult",
    "PatternEngine",
    "UpsertOutcome",
    # Review
    "PatternReviewService",
    "validate_action",
    # Rules
    "RuleConverter",
    "build_rule_name",
]
