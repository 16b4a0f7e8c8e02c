from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from guardbot.models import OffenseRecord
from guardbot.storage import TrackerStore

logger = logging.getLogger(__name__)


class OffenseTracker:
    """Confirmed-spam counter per user over a rolling window, shared across groups."""

    def __init__(self, window: float, store: Optional[TrackerStore] = None):
        self.window = window
        self.store = store
        self._records: Dict[int, OffenseRecord] = {}
        if store is not None:
            self._records.update(store.load_offense_records())

    def record_offense(self, user_id: int, now: Optional[float] = None) -> OffenseRecord:
        now = time.time() if now is None else now
        record = self._records.get(user_id)

        if record is None or now - record.window_started_at > self.window:
            record = OffenseRecord(count=1, window_started_at=now)
            self._records[user_id] = record
        else:
            record.count += 1

        if self.store is not None:
            self.store.save_offense_record(user_id, record)
        return record

    def get_offense(self, user_id: int) -> Optional[OffenseRecord]:
        return self._records.get(user_id)

    def clear_offense(self, user_id: int) -> None:
        self._records.pop(user_id, None)
        if self.store is not None:
            self.store.delete_offense_record(user_id)

    def sweep(self, now: float) -> int:
        """Evict records whose window has fully elapsed."""
        expired = [user_id for user_id, record in self._records.items()
                   if now - record.window_started_at > self.window]
        for user_id in expired:
            self.clear_offense(user_id)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired offense record(s)")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
