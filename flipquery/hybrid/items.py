"""
Item-name hints for flip queries.

Players write "whip", "bcp" or "dharoks" rather than the Grand Exchange
names; this module expands those shorthands and fuzzy-matches the rest
against the known item catalog from ``query_patterns.yml``.
"""
from __future__ import annotations

import difflib
import re

from flipquery.governance.capabilities import ItemVocabulary

_FUZZY_CUTOFF = 0.85
_MIN_FUZZY_LEN = 6

_ARTICLE_RE = re.compile(r"^(a|an|the)\s+")
_APOSTROPHE_RE = re.compile(r"['`‘’]")
_DASH_RE = re.compile(r"[-–—_]")
_BRACKET_RE = re.compile(r"[()\[\]{}]")
_AMP_RE = re.compile(r"\s*&\s*")
_SPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[?!.,;:]+")


def normalize_item_name(name: str) -> str:
    text = name.lower().strip()
    text = _ARTICLE_RE.sub("", text)
    text = _APOSTROPHE_RE.sub("", text)
    text = _DASH_RE.sub(" ", text)
    text = _BRACKET_RE.sub("", text)
    text = _AMP_RE.sub(" and ", text)
    text = _PUNCT_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def _abbreviation_pattern(vocab: ItemVocabulary) -> re.Pattern | None:
    if not vocab.abbreviations:
        return None
    keys = sorted(vocab.abbreviations, key=len, reverse=True)
    return re.compile(r"\b(" + "|".join(re.escape(k) for k in keys) + r")\b")


def expand_abbreviations(text: str, vocab: ItemVocabulary) -> str:
    """Replace whole-word shorthands in one pass; longer shorthands win ('tent whip' over 'whip')."""
    normalized = normalize_item_name(text)
    pattern = _abbreviation_pattern(vocab)
    if pattern is None:
        return normalized
    return pattern.sub(lambda m: vocab.abbreviations[m.group(1)], normalized)


def _ngrams(words: list[str], n: int) -> list[str]:
    return [" ".join(words[i:i + n]) for i in range(len(words) - n + 1)]


def extract_item_hints(query: str, vocab: ItemVocabulary) -> list[str]:
    """Return the full item names a query most likely refers to, in order found."""
    found: list[str] = []

    def add(name: str) -> None:
        if name not in found:
            found.append(name)

    normalized = normalize_item_name(query)
    words = expand_abbreviations(normalized, vocab).split()

    pattern = _abbreviation_pattern(vocab)
    if pattern is not None:
        for m in pattern.finditer(normalized):
            add(vocab.abbreviations[m.group(1)])

    for shorthand, replacement in vocab.name_patterns.items():
        if shorthand in normalized:
            add(replacement)

    for item in vocab.known_items:
        if normalize_item_name(item) in normalized:
            add(item)

    if not found:
        for n in (3, 2):
            for gram in _ngrams(words, n):
                if len(gram) < _MIN_FUZZY_LEN:
                    continue
                match = difflib.get_close_matches(gram, vocab.known_items, n=1, cutoff=_FUZZY_CUTOFF)
                if match:
                    add(match[0])

    return found


def has_specific_item_name(query: str, specific_items: tuple[str, ...] | list[str]) -> bool:
    lower = query.lower()
    return any(item in lower for item in specific_items)
