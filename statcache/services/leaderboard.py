# statcache/services/leaderboard.py
from typing import Callable, Dict, Iterable, List, Optional

from statcache.config import LEADERBOARD_SIZE
from statcache.models import (
  LeaderboardRow,
  QueueFilter,
  Scope,
  StatKind,
  StreakRow,
  TimeWindow,
  UserCacheEntry,
)

Extractor = Callable[[UserCacheEntry, TimeWindow, Scope, QueueFilter], Optional[float]]


def _rating(entry: UserCacheEntry, window: TimeWindow, scope: Scope, queue: QueueFilter) -> Optional[float]:
  if window == TimeWindow.WEEKLY:
    value = entry.weekly_rating_delta
  elif window == TimeWindow.SEASON:
    value = entry.seasonal_rating_delta
  else:
    return entry.current_rating
  # only gains are leaderboard-worthy
  if value is None or value <= 0:
    return None
  return value


def _from_bundle(field: str) -> Extractor:
  def extract(entry: UserCacheEntry, window: TimeWindow, scope: Scope, queue: QueueFilter) -> Optional[float]:
    bundle = entry.bundle(window, scope, queue)
    if bundle is None or bundle.events_played == 0:
      return None
    return getattr(bundle, field)
  return extract


STAT_EXTRACTORS: Dict[StatKind, Extractor] = {
  StatKind.RATING: _rating,
  StatKind.WIN_RATE: _from_bundle("win_rate"),
  StatKind.AVERAGE_SCORE: _from_bundle("average_score"),
  StatKind.BEST_SCORE: _from_bundle("best_score"),
  StatKind.EVENTS_PLAYED: _from_bundle("events_played"),
}


def rank_entries(
    entries: Iterable[UserCacheEntry],
    stat: StatKind,
    window: TimeWindow = TimeWindow.ALL,
    scope: Scope = Scope.GLOBAL,
    queue: QueueFilter = QueueFilter.ALL,
    limit: int = LEADERBOARD_SIZE,
) -> List[LeaderboardRow]:
  """Sort cached users by one stat, highest first; sentinels and missing values are dropped."""
  extract = STAT_EXTRACTORS[StatKind(stat)]
  scored = []
  for entry in entries:
    value = extract(entry, window, scope, queue)
    if value is None or value == -1:
      continue
    scored.append((value, entry))

  # stable: equal values keep roster order
  scored.sort(key=lambda t: t[0], reverse=True)
  return [
    LeaderboardRow(
        rank=i,
        user_id=entry.user_id,
        player_id=entry.player_id,
        display_name=entry.display_name,
        value=value,
    )
    for i, (value, entry) in enumerate(scored[:limit], start=1)
  ]


def rank_streaks(entries: Iterable[UserCacheEntry], limit: int = LEADERBOARD_SIZE) -> List[StreakRow]:
  """Longest win streak first, rating gained within it breaks ties."""
  rows = [e for e in entries if e.streak.longest_streak > 0]
  rows.sort(key=lambda e: (e.streak.longest_streak, e.streak.longest_streak_gain), reverse=True)
  return [
    StreakRow(
        rank=i,
        user_id=e.user_id,
        player_id=e.player_id,
        display_name=e.display_name,
        current_streak=e.streak.current_streak,
        current_streak_gain=e.streak.current_streak_gain,
        longest_streak=e.streak.longest_streak,
        longest_streak_gain=e.streak.longest_streak_gain,
    )
    for i, e in enumerate(rows[:limit], start=1)
  ]
