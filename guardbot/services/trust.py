from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

from guardbot.models import TrustRecord
from guardbot.storage import TrackerStore

logger = logging.getLogger(__name__)

SubjectKey = Tuple[int, int]


class TrustTracker:
    """
    Consecutive normal-message streaks per (group, user).

    Reaching the threshold marks the subject trusted, which skips the
    classification pipeline. Trust is absorbing: only reset_streak() undoes it.
    """

    def __init__(self, threshold: int, record_ttl: float, store: Optional[TrackerStore] = None):
        self.threshold = threshold
        self.record_ttl = record_ttl
        self.store = store
        self._records: Dict[SubjectKey, TrustRecord] = {}
        if store is not None:
            self._records.update(store.load_trust_records())

    def get_record(self, group_id: int, user_id: int) -> Optional[TrustRecord]:
        return self._records.get((group_id, user_id))

    def is_trusted(self, group_id: int, user_id: int) -> bool:
        if group_id is None or user_id is None:
            return False
        record = self._records.get((group_id, user_id))
        return bool(record and record.trusted)

    def record_normal_message(self, group_id: int, user_id: int,
                              now: Optional[float] = None) -> TrustRecord:
        now = time.time() if now is None else now
        key = (group_id, user_id)
        record = self._records.get(key)
        if record is None:
            record = TrustRecord(streak=0, trusted=False, last_updated=now)
            self._records[key] = record

        record.last_updated = now
        if not record.trusted:
            record.streak += 1
            if record.streak >= self.threshold:
                record.trusted = True
                logger.info(
                    f"User {user_id} in chat {group_id} reached normal streak {record.streak}, marked as trusted"
                )

        self._persist(key, record)
        return record

    def reset_streak(self, group_id: int, user_id: int, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        key = (group_id, user_id)
        previous = self._records.get(key)
        if previous is not None and previous.trusted:
            logger.info(f"User {user_id} in chat {group_id} lost trusted status")
        record = TrustRecord(streak=0, trusted=False, last_updated=now)
        self._records[key] = record
        self._persist(key, record)

    def sweep(self, now: float) -> int:
        """Drop records idle for longer than the TTL."""
        expired = [key for key, record in self._records.items()
                   if now - record.last_updated > self.record_ttl]
        for key in expired:
            del self._records[key]
            if self.store is not None:
                self.store.delete_trust_record(*key)
        if expired:
            logger.info(f"Cleaned up {len(expired)} idle trust record(s)")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)

    def _persist(self, key: SubjectKey, record: TrustRecord) -> None:
        if self.store is not None:
            self.store.save_trust_record(key[0], key[1], record)
