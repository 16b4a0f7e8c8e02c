"""
Fingerprints of confirmed spam, used to reject near-duplicates without a
classifier call. A hit only ever confirms spam; a miss proves nothing.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from guardbot.engine.similarity import (
    hamming_distance,
    normalize_text,
    term_frequency_vector,
    tokenize,
    vector_similarity,
)
from guardbot.models import SpamImageEntry

logger = logging.getLogger(__name__)


@dataclass
class _TextEntry:
    normalized: str
    vector: Dict[str, int]


class SpamTextCache:
    """FIFO ring of confirmed-spam message fingerprints."""

    def __init__(self, capacity: int = 200, default_threshold: float = 95.0):
        self.capacity = capacity
        self.default_threshold = default_threshold
        self._entries: Deque[_TextEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def best_match(self, text: str) -> float:
        """Highest similarity (0-100) of text to any cached entry."""
        normalized = normalize_text(text)
        if not normalized:
            return 0.0

        vector = None
        best = 0.0
        for entry in self._entries:
            if entry.normalized == normalized:
                return 100.0
            if vector is None:
                vector = term_frequency_vector(tokenize(normalized))
            if not vector or not entry.vector:
                continue
            best = max(best, vector_similarity(vector, entry.vector))
        return best

    def is_similar_to_spam(self, text: str, threshold_percent: Optional[float] = None) -> bool:
        threshold = self.default_threshold if threshold_percent is None else threshold_percent
        if not self._entries:
            return False
        return self.best_match(text) >= threshold

    def contains(self, text: str) -> bool:
        normalized = normalize_text(text)
        return any(entry.normalized == normalized for entry in self._entries)

    def add_spam_message(self, text: str) -> bool:
        """
        Remember a confirmed-spam body. Returns False for empty text or text
        already cached verbatim (after whitespace normalization).
        """
        normalized = normalize_text(text)
        if not normalized or self.contains(normalized):
            return False
        self._entries.append(_TextEntry(normalized=normalized, vector=term_frequency_vector(tokenize(normalized))))
        logger.debug(f"Spam text cached ({len(self._entries)}/{self.capacity})")
        return True

    def clear(self) -> None:
        self._entries.clear()


class SpamImageCache:
    """FIFO ring of confirmed-spam image fingerprints with their source."""

    def __init__(self, capacity: int = 200, max_distance: int = 6):
        self.capacity = capacity
        self.max_distance = max_distance
        self._entries: Deque[SpamImageEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def find_match(self, fingerprint: Optional[str]) -> Optional[SpamImageEntry]:
        if not fingerprint:
            return None
        for entry in self._entries:
            if entry.fingerprint == fingerprint:
                return entry
            distance = hamming_distance(fingerprint, entry.fingerprint)
            if distance is not None and distance <= self.max_distance:
                return entry
        return None

    def is_spam_image(self, fingerprint: Optional[str]) -> bool:
        return self.find_match(fingerprint) is not None

    def add_spam_image(self, fingerprint: Optional[str], source_chat_id: Optional[int] = None,
                       source_message_id: Optional[int] = None) -> bool:
        if not fingerprint or self.is_spam_image(fingerprint):
            return False
        self._entries.append(SpamImageEntry(
            fingerprint=fingerprint,
            source_chat_id=source_chat_id,
            source_message_id=source_message_id,
        ))
        logger.debug(f"Spam image cached from chat {source_chat_id} message {source_message_id}")
        return True

    def entries(self) -> List[SpamImageEntry]:
        return list(self._entries)
