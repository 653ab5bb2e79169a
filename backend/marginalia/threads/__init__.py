"""Selection threads: occurrence anchors, highlight ranges, and thread lifecycle."""

from marginalia.threads.anchors import find_nth_occurrence, resolve_occurrence
from marginalia.threads.engine import ThreadAnnotationEngine
from marginalia.threads.highlights import HighlightedText, apply_ranges, build_ranges

__all__ = [
    "HighlightedText",
    "ThreadAnnotationEngine",
    "apply_ranges",
    "build_ranges",
    "find_nth_occurrence",
    "resolve_occurrence",
]
