from rcep.extraction.topics import Topic, extract_topics
from rcep.extraction.decisions import Decision, extract_decisions, sanitize_choice, is_valid_choice
from rcep.extraction.insights import extract_insights
from rcep.extraction.timeline import timeline_macro, timeline_summary, phase_keywords

__all__ = [
    "Topic",
    "extract_topics",
    "Decision",
    "extract_decisions",
    "sanitize_choice",
    "is_valid_choice",
    "extract_insights",
    "timeline_macro",
    "timeline_summary",
    "phase_keywords",
]
