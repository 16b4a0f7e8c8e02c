from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict


def _fresh_stats() -> Dict:
    return {
        "checked": 0,
        "spam_removed": 0,
        "last_24h": 0,
        "warned": 0,
        "kicked": 0,
        "impersonators": 0,
        "joins_rejected": 0,
        "rate_limited": 0,
        "similarity_hits": 0,
        "trusted_skips": 0,
        "groups": set(),
        "last_reset": datetime.now(),
    }


stats: Dict = _fresh_stats()


def touch_group(group_id: int) -> None:
    stats["groups"].add(group_id)


def record_spam_removed() -> None:
    roll_24h_if_needed()
    stats["spam_removed"] += 1
    stats["last_24h"] += 1


def roll_24h_if_needed() -> None:
    if datetime.now() - stats["last_reset"] > timedelta(hours=24):
        stats["last_24h"] = 0
        stats["last_reset"] = datetime.now()


def reset_stats() -> None:
    stats.clear()
    stats.update(_fresh_stats())


def stats_summary() -> Dict:
    roll_24h_if_needed()
    summary = {key: value for key, value in stats.items() if key not in ("groups", "last_reset")}
    summary["groups"] = len(stats["groups"])
    return summary
