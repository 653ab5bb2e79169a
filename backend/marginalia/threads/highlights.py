"""Highlight reconciliation: anchors -> text ranges -> wrapped markup.

build_ranges resolves every annotation against the original, unmodified
text. apply_ranges must then wrap them highest offset first: wrapping a
range splits the text it sits in, and containers resolve offsets by walking
only the text that is not already highlighted. Wrapping the lowest range
first would shift every offset after it.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from html import escape

from marginalia.interfaces import RangeContainer
from marginalia.models import HighlightRange, ThreadAnnotation
from marginalia.threads.anchors import find_nth_occurrence

logger = logging.getLogger(__name__)


def build_ranges(
    full_text: str, annotations: Iterable[ThreadAnnotation]
) -> list[HighlightRange]:
    """Resolve each annotation to [start, end). Stale anchors are skipped."""
    ranges: list[HighlightRange] = []
    for annotation in annotations:
        if not annotation.selection_text:
            continue
        start = find_nth_occurrence(full_text, annotation.selection_text, annotation.match_index)
        if start < 0:
            logger.debug(
                "stale anchor %s: occurrence %d of %r not found",
                annotation.id, annotation.match_index, annotation.selection_text,
            )
            continue
        ranges.append(HighlightRange(
            annotation=annotation,
            start_pos=start,
            end_pos=start + len(annotation.selection_text),
        ))
    return ranges


def apply_ranges(container: RangeContainer, ranges: Iterable[HighlightRange]) -> int:
    """Wrap ranges in descending start order. Returns how many were wrapped.

    A range that overlaps one already wrapped is skipped.
    """
    applied = 0
    boundary: int | None = None
    for r in sorted(ranges, key=lambda r: r.start_pos, reverse=True):
        if boundary is not None and r.end_pos > boundary:
            logger.debug("skipping overlapping highlight %s", r.annotation.id)
            continue
        if container.wrap(r.start_pos, r.end_pos, r.annotation):
            applied += 1
            boundary = r.start_pos
    return applied


@dataclass
class _Segment:
    text: str
    thread_id: str | None = None


class HighlightedText(RangeContainer):
    """Text split into plain and highlighted segments.

    Offsets passed to wrap() are counted over plain segments only, the way a
    DOM tree walker that rejects text inside existing highlights counts them.
    """

    def __init__(self, text: str) -> None:
        self._segments: list[_Segment] = [_Segment(text)] if text else []

    @property
    def text(self) -> str:
        return "".join(s.text for s in self._segments)

    def highlights(self) -> list[tuple[str, str]]:
        """(thread_id, wrapped text) pairs in document order."""
        return [(s.thread_id, s.text) for s in self._segments if s.thread_id is not None]

    def wrap(self, start: int, end: int, annotation: ThreadAnnotation) -> bool:
        if start < 0 or end <= start:
            return False
        offset = 0
        for i, segment in enumerate(self._segments):
            if segment.thread_id is not None:
                continue
            seg_end = offset + len(segment.text)
            if offset <= start and end <= seg_end:
                local_start, local_end = start - offset, end - offset
                pieces = [
                    _Segment(segment.text[:local_start]),
                    _Segment(segment.text[local_start:local_end], annotation.id),
                    _Segment(segment.text[local_end:]),
                ]
                self._segments[i:i + 1] = [p for p in pieces if p.text]
                return True
            offset = seg_end
        return False

    def unwrap(self) -> None:
        text = self.text
        self._segments = [_Segment(text)] if text else []

    def render(self) -> str:
        out: list[str] = []
        for segment in self._segments:
            if segment.thread_id is None:
                out.append(escape(segment.text))
            else:
                out.append(
                    f'<mark class="thread-highlight" data-thread-id="{escape(segment.thread_id)}">'
                    f"{escape(segment.text)}</mark>"
                )
        return "".join(out)
