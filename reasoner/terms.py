import re
from typing import List

STOPWORDS = {
    "the",
    "and",
    "for",
    "are",
    "was",
    "were",
    "how",
    "what",
    "which",
    "who",
    "when",
    "where",
    "why",
    "with",
    "about",
    "that",
    "this",
    "these",
    "those",
    "from",
    "into",
    "their",
    "they",
    "them",
    "does",
    "did",
    "has",
    "have",
    "had",
    "can",
    "there",
    "than",
    "then",
    "its",
    "you",
    "your",
    "our",
    "not",
    "but",
    "any",
    "all",
    "tell",
    "please",
}


_SPLIT_RE = re.compile(r"[^0-9a-z]+")


def salient_terms(text: str) -> List[str]:
    """Lower-cased content words and numbers, in first-seen order."""
    terms: List[str] = []
    for token in _SPLIT_RE.split(text.lower()):
        if not token:
            continue
        has_digit = any(ch.isdigit() for ch in token)
        if not has_digit and (len(token) <= 2 or token in STOPWORDS):
            continue
        if token not in terms:
            terms.append(token)
    return terms
