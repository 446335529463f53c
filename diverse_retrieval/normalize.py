"""
Text normalisation for the lexical base retriever.

Documents and queries go through the same steps so BM25 sees the same view
of both:

* basic_clean(text) -> str
    Unicode NFKC, ASCII quotes and dashes, collapsed whitespace, length cap.

* normalize_for_lexical_index(text) -> str
    ``basic_clean`` plus lower-casing.

* lexical_tokens_for_bm25(text) -> List[str]
    Tokeniser that keeps things like 'c#', 'c++' and 'asp.net' whole and
    preserves term frequencies.
"""

from __future__ import annotations

import re
import unicodedata
from typing import List

from .config import MAX_INPUT_CHARS

_TOKEN_RE = re.compile(r"[a-z0-9_+#.]+")


def _normalise_unicode(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2013", "-").replace("\u2014", "-")
    return text


def basic_clean(text: str | None) -> str:
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    # Guard against pathological inputs
    if len(text) > MAX_INPUT_CHARS:
        text = text[:MAX_INPUT_CHARS]

    text = _normalise_unicode(text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_lexical_index(text: str | None) -> str:
    return basic_clean(text).lower()


def lexical_tokens_for_bm25(text: str | None) -> List[str]:
    norm = normalize_for_lexical_index(text)
    if not norm:
        return []
    # trailing dots are sentence punctuation, not part of 'asp.net'
    return [tok.rstrip(".") for tok in _TOKEN_RE.findall(norm) if tok.rstrip(".")]
