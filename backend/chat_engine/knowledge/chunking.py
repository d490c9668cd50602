import re
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..memory.compression import estimate_tokens

KEYWORD_LIMIT = 10
MIN_KEYWORD_LENGTH = 4 # Words of 3 characters or fewer are discarded


@dataclass(frozen=True)
class TextSpan:
    """One chunk's slice of the source text, before encoding."""
    index: int
    start: int
    end: int
    text: str

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)


def split_into_spans(content: str, chunk_size: int = 1000, chunk_overlap: int = 200) -> List[TextSpan]:
    """
    Splits text into fixed-size character windows that overlap by chunk_overlap.

    For adjacent spans, spans[i].end - chunk_overlap == spans[i + 1].start.
    The last span always ends at len(content). Empty text yields no spans.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

    spans: List[TextSpan] = []
    start = 0
    while start < len(content):
        end = min(start + chunk_size, len(content))
        spans.append(TextSpan(index=len(spans), start=start, end=end, text=content[start:end]))
        if end == len(content):
            break
        start = end - chunk_overlap
    return spans


def chunk_id(document_id: str, index: int) -> str:
    return f"{document_id}-chunk-{index}"


def neighbour_ids(document_id: str, span: TextSpan, total: int) -> Tuple[Optional[str], Optional[str]]:
    previous_id = chunk_id(document_id, span.index - 1) if span.index > 0 else None
    next_id = chunk_id(document_id, span.index + 1) if span.index < total - 1 else None
    return previous_id, next_id


def reassemble(spans: List[TextSpan]) -> str:
    """Inverse of split_into_spans: joins spans, dropping each overlap once."""
    text = ""
    for span in spans:
        text += span.text[len(text) - span.start:]
    return text


def extract_keywords(content: str, limit: int = KEYWORD_LIMIT) -> List[str]:
    """
    Most frequent words of a text: lower-cased, punctuation stripped, words of
    three characters or fewer dropped. Ties keep first-seen order.
    """
    words = re.sub(r"[^\w\s]", "", content.lower()).split()
    counts = Counter(word for word in words if len(word) >= MIN_KEYWORD_LENGTH)
    return [word for word, _ in counts.most_common(limit)]
