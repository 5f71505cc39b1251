"""Document chunking pipeline for RagKeeper.

Splits document text into bounded, overlapping chunks and derives
department, document-type and tag metadata for each one from the keyword
vocabulary.
"""

import logging
import math
import re
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field

from config.settings import ChunkerSettings
from config.vocabulary import Vocabulary, load_vocabulary

logger = logging.getLogger(__name__)

GENERAL_DOC_TYPE = "general"
ALL_DEPARTMENTS = "all"

_PARAGRAPH_RE = re.compile(r'\n\s*\n+')
_WIDE_CHAR_RE = re.compile(r'[\u3000-\u9fff\uff00-\uffef]')
_SEGMENT_JOINER = "\n\n"
_OVERLAP_JOINER = "\n"
# Preferred force-split boundaries, searched backward from the cut point
_BREAK_MARKERS = ("\n", "。", "．", ". ")


@dataclass
class ChunkMetadata:
    """Keyword-derived chunk metadata."""
    dept_ids: List[str] = field(default_factory=lambda: [ALL_DEPARTMENTS])
    tags: List[str] = field(default_factory=list)
    doc_type: str = GENERAL_DOC_TYPE


@dataclass
class RawChunk:
    """A chunk ready to be embedded and stored."""
    chunk_index: int
    content: str
    body: str
    overlap: str
    token_estimate: int
    metadata: ChunkMetadata

    @property
    def char_count(self) -> int:
        return len(self.content)

    def to_row(self) -> Dict[str, Any]:
        """Column values for the chunks table, without document id or embedding."""
        return {
            "chunk_index": self.chunk_index,
            "content": self.content,
            "char_count": self.char_count,
            "token_estimate": self.token_estimate,
            "tags": list(self.metadata.tags),
            "dept_ids": list(self.metadata.dept_ids),
            "doc_type": self.metadata.doc_type,
        }


@dataclass
class _KeywordScan:
    departments: List[str]
    tags: List[str]
    doc_type: str


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1.5 per CJK/full-width character, 0.3 per other character."""
    wide = len(_WIDE_CHAR_RE.findall(text))
    other = len(text) - wide
    return math.ceil(wide * 1.5 + other * 0.3)


class DocumentChunker:
    """Paragraph-aware chunker with overlap and keyword metadata."""

    def __init__(self, settings: Optional[ChunkerSettings] = None, vocabulary: Optional[Vocabulary] = None):
        """Initialize chunker.

        Args:
            settings: Size limits and metadata thresholds
            vocabulary: Keyword tables; the bundled vocabulary when omitted
        """
        self.settings = settings or ChunkerSettings()
        self.vocabulary = vocabulary or load_vocabulary()

        s = self.settings
        if s.min_chars < 0 or s.overlap_chars < 0:
            raise ValueError("min_chars and overlap_chars must be non-negative")
        # Body budget leaves room for the overlap prefix and its joiner
        self.body_max = s.max_chars - (s.overlap_chars + len(_OVERLAP_JOINER) if s.overlap_chars else 0)
        if self.body_max <= 0:
            raise ValueError("max_chars must exceed overlap_chars")

        markers = [m for m in self.vocabulary.segment_markers if m]
        self._marker_re = re.compile('|'.join(markers), re.MULTILINE) if markers else None

        self._departments = {
            dept: [kw.lower() for kw in keywords]
            for dept, keywords in self.vocabulary.departments.items()
        }
        self._doc_types = [
            (pattern.type, [kw.lower() for kw in pattern.keywords])
            for pattern in self.vocabulary.doc_types
        ]
        self._tags = [(tag, tag.lower()) for tag in self.vocabulary.tags]

    def chunk(self, text: str, filename: str = "") -> List[RawChunk]:
        """Chunk ``text``; ``filename`` only feeds the metadata heuristics."""
        bodies = self._merge_segments(self._split_segments(text))
        if not bodies:
            return []

        s = self.settings
        doc_scan = self._scan_keywords(f"{filename} {text[:s.doc_scan_chars]}")

        chunks = []
        for i, body in enumerate(bodies):
            overlap = bodies[i - 1][-s.overlap_chars:] if i > 0 and s.overlap_chars else ""
            content = f"{overlap}{_OVERLAP_JOINER}{body}" if overlap else body
            chunks.append(RawChunk(
                chunk_index=i,
                content=content,
                body=body,
                overlap=overlap,
                token_estimate=estimate_tokens(content),
                metadata=self._derive_metadata(doc_scan, self._scan_keywords(f"{filename} {content}")),
            ))

        logger.debug(f"Chunked {filename or 'document'} into {len(chunks)} chunks")
        return chunks

    def _split_segments(self, text: str) -> List[str]:
        segments = []
        for paragraph in _PARAGRAPH_RE.split(text):
            pieces = self._marker_re.split(paragraph) if self._marker_re else [paragraph]
            for piece in pieces:
                piece = piece.strip()
                if piece:
                    segments.append(piece)
        return segments

    def _merge_segments(self, segments: List[str]) -> List[str]:
        """Greedy merge into bodies no longer than ``body_max``.

        A buffer too short to stand alone is folded into the previous body,
        or carried forward into the next segment when that would overflow.
        """
        limit = self.body_max
        min_chars = self.settings.min_chars
        joiner_len = len(_SEGMENT_JOINER)
        bodies: List[str] = []
        buffer = ""

        for segment in segments:
            if not buffer:
                buffer = segment
            elif len(buffer) + joiner_len + len(segment) <= limit:
                buffer = buffer + _SEGMENT_JOINER + segment
            elif len(buffer) >= min_chars:
                bodies.append(buffer)
                buffer = segment
            elif bodies and len(bodies[-1]) + joiner_len + len(buffer) <= limit:
                bodies[-1] = bodies[-1] + _SEGMENT_JOINER + buffer
                buffer = segment
            else:
                buffer = buffer + _SEGMENT_JOINER + segment

            if len(buffer) > limit:
                pieces = self._force_split(buffer, limit)
                bodies.extend(pieces[:-1])
                buffer = pieces[-1] if pieces else ""

        if buffer:
            if len(buffer) < min_chars and bodies and len(bodies[-1]) + joiner_len + len(buffer) <= limit:
                bodies[-1] = bodies[-1] + _SEGMENT_JOINER + buffer
            else:
                bodies.append(buffer)

        return bodies

    def _force_split(self, text: str, limit: int) -> List[str]:
        """Cut ``text`` into pieces of at most ``limit`` characters at the best nearby boundary."""
        window = min(self.settings.break_window, limit // 2)
        pieces = []
        rest = text
        while len(rest) > limit:
            head = rest[:limit]
            breakpoint_ = max(head.rfind(marker, limit - window) for marker in _BREAK_MARKERS)
            cut = breakpoint_ + 1 if breakpoint_ > 0 else limit
            piece = rest[:cut].strip()
            if piece:
                pieces.append(piece)
            rest = rest[cut:].strip()
        if rest:
            pieces.append(rest)
        return pieces

    def _scan_keywords(self, text: str) -> _KeywordScan:
        lowered = text.lower()

        departments = [
            dept for dept, keywords in self._departments.items()
            if any(kw in lowered for kw in keywords)
        ]
        tags = [tag for tag, needle in self._tags if needle in lowered]

        doc_type = GENERAL_DOC_TYPE
        best_hits = 0
        for type_name, keywords in self._doc_types:
            hits = sum(1 for kw in keywords if kw in lowered)
            if hits > best_hits:
                doc_type, best_hits = type_name, hits
        if best_hits < self.settings.min_type_matches:
            doc_type = GENERAL_DOC_TYPE

        return _KeywordScan(departments=departments, tags=tags, doc_type=doc_type)

    def _derive_metadata(self, doc_scan: _KeywordScan, chunk_scan: _KeywordScan) -> ChunkMetadata:
        departments = list(dict.fromkeys(doc_scan.departments + chunk_scan.departments))
        tags = list(dict.fromkeys(doc_scan.tags + chunk_scan.tags))[:self.settings.max_tags]
        doc_type = chunk_scan.doc_type if chunk_scan.doc_type != GENERAL_DOC_TYPE else doc_scan.doc_type
        return ChunkMetadata(
            dept_ids=departments or [ALL_DEPARTMENTS],
            tags=tags,
            doc_type=doc_type,
        )


def chunk_document(text: str, filename: str = "",
                   settings: Optional[ChunkerSettings] = None,
                   vocabulary: Optional[Vocabulary] = None) -> List[RawChunk]:
    """Convenience function to chunk a single document."""
    return DocumentChunker(settings, vocabulary).chunk(text, filename)


def strip_overlap(chunks: List[RawChunk]) -> List[str]:
    """Recover each chunk's own text by removing its overlap prefix."""
    stripped = []
    for chunk in chunks:
        prefix = f"{chunk.overlap}{_OVERLAP_JOINER}" if chunk.overlap else ""
        stripped.append(chunk.content[len(prefix):])
    return stripped

