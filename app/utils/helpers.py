"""
Common utility functions and helpers.
"""
import math
from typing import Iterable, List, Optional
from datetime import date


STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with',
    'by', 'from', 'up', 'about', 'into', 'through', 'during', 'before', 'after',
    'above', 'below', 'between', 'among', 'within', 'without', 'throughout',
})


def is_stop_word(word: str) -> bool:
    return word in STOP_WORDS


def top_terms(texts: Iterable[str], min_length: int = 4, top_n: int = 5) -> List[str]:
    """
    Most frequent non-stopword terms across *texts*.

    Args:
        texts: Strings to scan (split on whitespace, case-folded)
        min_length: Minimum term length to count
        top_n: Number of terms to return

    Returns:
        Terms ordered by descending frequency; ties keep first-seen order
    """
    counts = {}
    for text in texts:
        for word in text.lower().split():
            if len(word) >= min_length and not is_stop_word(word):
                counts[word] = counts.get(word, 0) + 1

    ranked = sorted(counts.items(), key=lambda x: x[1], reverse=True)
    return [word for word, _ in ranked[:top_n]]


def extract_keywords(text: str, top_n: int = 3) -> List[str]:
    """
    Extract top keywords from text using simple frequency analysis.

    Args:
        text: Input text
        top_n: Number of top keywords to return

    Returns:
        Words longer than four characters, most frequent first
    """
    return top_terms([text], min_length=5, top_n=top_n)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, exact halves upwards (2.5 -> 3, not 2)."""
    return int(math.floor(value + 0.5))


def clamp_score(value: float, lo: int = 0, hi: int = 100) -> int:
    """Round *value* half up and clamp it into [lo, hi]."""
    return max(lo, min(hi, round_half_up(value)))


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division fails

    Returns:
        Result of division or default
    """
    return numerator / denominator if denominator != 0 else default


def resolve_year(today: Optional[date] = None) -> int:
    """Current calendar year, or the year of *today* when one is injected."""
    return (today or date.today()).year


def truncate_text(text: str, max_length: int = 200, suffix: str = "...") -> str:
    """
    Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix
