import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

GAME_CODE_DIGITS = 6


def now_ts() -> float:
    return time.time()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def generate_game_code() -> str:
    return f"{random.randrange(10 ** GAME_CODE_DIGITS):0{GAME_CODE_DIGITS}d}"


def sort_leaderboard(participants: Iterable[Any]) -> List[Dict[str, Any]]:
    """Rank participants by score, highest first.

    ``sorted`` is stable, so equal scores keep roster order and every entry
    gets its own 1-based position as rank.
    """
    ranked = sorted(participants, key=lambda p: -p.score)
    return [
        {
            "rank": idx,
            "user_id": p.user_id,
            "user_name": p.user_name,
            "avatar_url": p.avatar_url,
            "score": p.score,
        }
        for idx, p in enumerate(ranked, start=1)
    ]
