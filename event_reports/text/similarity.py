"""
Character-bigram similarity for near-duplicate detection.
"""

from collections import Counter


def bigrams(text: str) -> Counter:
    """Multiset of overlapping two-character substrings."""
    return Counter(text[i:i + 2] for i in range(len(text) - 1))


def dice_coefficient(a: str, b: str) -> float:
    """
    Sørensen-Dice coefficient over character bigrams.

    Identical strings score 1.0. Strings shorter than two characters share no
    bigrams and score 0.0 unless identical.

    Args:
        a: First string
        b: Second string

    Returns:
        Similarity score between 0.0 and 1.0
    """
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    matches = sum((bigrams(a) & bigrams(b)).values())
    total = (len(a) - 1) + (len(b) - 1)
    return (2 * matches) / total
