"""
Text processing for playbook documents: cleaning, summaries, keyword matching.

Cleaning reduces noise and encoding inconsistencies so documents sent to the
model and used for keyword fallback ranking are consistent.
"""

import math
import re
import unicodedata

STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "can", "do", "does", "for",
    "from", "how", "i", "in", "is", "it", "my", "of", "on", "or", "our", "should",
    "that", "the", "this", "to", "we", "what", "when", "where", "which", "who",
    "why", "with", "you", "your",
})


def clean_text(text: str) -> str:
    """
    Normalize and clean raw document text.

    NFKC-normalizes, strips each line, drops consecutive duplicate lines and
    collapses runs of blank lines to a single blank line.
    """
    if not text or not text.strip():
        return ""
    text = unicodedata.normalize("NFKC", text)
    lines = [line.strip() for line in text.splitlines()]
    deduped: list[str] = []
    for line in lines:
        if deduped and deduped[-1] == line:
            continue
        deduped.append(line)
    result: list[str] = []
    for line in deduped:
        if line == "":
            if result and result[-1] != "":
                result.append("")
        else:
            result.append(line)
    return "\n".join(result).strip()


def summarize(content: str, max_chars: int = 500) -> str:
    """
    Short summary used for quick document assessment.

    Returns content unchanged when it fits; otherwise truncates at the last
    sentence end if it falls in the final 30% of the window, else appends "...".
    """
    if len(content) <= max_chars:
        return content
    truncated = content[:max_chars]
    last_sentence = truncated.rfind(".")
    if last_sentence > max_chars * 0.7:
        return truncated[: last_sentence + 1]
    return truncated + "..."


def extract_keywords(text: str, min_len: int = 3) -> list[str]:
    """Lowercase content words in first-seen order, stopwords removed."""
    seen: list[str] = []
    for word in re.findall(r"[a-z0-9][a-z0-9\-']*", (text or "").lower()):
        word = word.strip("-'")
        if len(word) < min_len or word in STOPWORDS or word in seen:
            continue
        seen.append(word)
    return seen


def _stem(word: str) -> str:
    for suffix in ("ing", "ed", "es", "s"):
        if word.endswith(suffix) and len(word) - len(suffix) >= 3:
            return word[: -len(suffix)]
    return word


def keyword_overlap(query: str, text: str) -> float:
    """Fraction (0-1) of the query's keywords that appear in text, with light suffix stemming."""
    keywords = {_stem(w) for w in extract_keywords(query)}
    if not keywords:
        return 0.0
    words = {_stem(w) for w in extract_keywords(text)}
    return len(keywords & words) / len(keywords)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text or "") / 4)
