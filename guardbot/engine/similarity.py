"""
Text and image fingerprint similarity.

Text similarity is cosine similarity over token-frequency vectors, reported
as a percentage (0-100). Image fingerprints are 64-bit hashes written as hex
and compared by Hamming distance.
"""
from __future__ import annotations

import math
import re
from collections import Counter
from typing import Dict, List, Optional

# Anything that is not a word character, whitespace or CJK ideograph becomes a separator
_PUNCTUATION = re.compile(r"[^\w\s\u4e00-\u9fa5]")


def normalize_text(text: str) -> str:
    return " ".join((text or "").split())


def tokenize(text: str) -> List[str]:
    return _PUNCTUATION.sub(" ", (text or "").lower()).split()


def term_frequency_vector(tokens: List[str]) -> Dict[str, int]:
    return dict(Counter(tokens))


def cosine_similarity(vector1: Dict[str, int], vector2: Dict[str, int]) -> float:
    """Cosine similarity (0-1) of two sparse frequency vectors."""
    if not vector1 or not vector2:
        return 0.0
    dot_product = sum(count * vector2.get(term, 0) for term, count in vector1.items())
    magnitude1 = math.sqrt(sum(count * count for count in vector1.values()))
    magnitude2 = math.sqrt(sum(count * count for count in vector2.values()))
    if magnitude1 == 0 or magnitude2 == 0:
        return 0.0
    return dot_product / (magnitude1 * magnitude2)


def vector_similarity(vector1: Dict[str, int], vector2: Dict[str, int]) -> float:
    return cosine_similarity(vector1, vector2) * 100


def calculate_text_similarity(text1: str, text2: str) -> float:
    """
    Similarity percentage between two strings.

    Identical normalized strings score 100 without building vectors;
    empty input or input without tokens scores 0.
    """
    normalized1 = normalize_text(text1)
    normalized2 = normalize_text(text2)

    if normalized1 == normalized2 and normalized1:
        return 100.0
    if not normalized1 or not normalized2:
        return 0.0

    tokens1 = tokenize(normalized1)
    tokens2 = tokenize(normalized2)
    if not tokens1 or not tokens2:
        return 0.0

    return vector_similarity(term_frequency_vector(tokens1), term_frequency_vector(tokens2))


def hamming_distance(fingerprint1: str, fingerprint2: str) -> Optional[int]:
    """Bit distance between two hex fingerprints, None if either is malformed."""
    try:
        a = int(fingerprint1, 16)
        b = int(fingerprint2, 16)
    except (TypeError, ValueError):
        return None
    return bin(a ^ b).count("1")
