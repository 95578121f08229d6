from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TimeWindow(str, Enum):
  ALL = "all"
  WEEKLY = "weekly"
  SEASON = "season"


class Scope(str, Enum):
  GLOBAL = "global"
  COMMUNITY = "community"


class QueueFilter(str, Enum):
  ALL = "all"
  SQUADS = "squads"
  SOLO = "solo"


class StatKind(str, Enum):
  RATING = "rating"
  WIN_RATE = "win_rate"
  AVERAGE_SCORE = "average_score"
  BEST_SCORE = "best_score"
  EVENTS_PLAYED = "events_played"


# ----------------------------
# Upstream records (camelCase aliases match the match source JSON)
# ----------------------------
class PlayerResult(BaseModel):
  model_config = ConfigDict(populate_by_name=True, frozen=True)

  player_id: int = Field(alias="playerId")
  player_name: str = Field("", alias="playerName")
  score: Optional[float] = None
  rating_delta: Optional[float] = Field(None, alias="delta")
  previous_rating: Optional[float] = Field(None, alias="prevMmr")


class Team(BaseModel):
  model_config = ConfigDict(populate_by_name=True, frozen=True)

  rank: Optional[int] = None
  scores: List[PlayerResult] = []


class MatchRecord(BaseModel):
  model_config = ConfigDict(populate_by_name=True, frozen=True)

  id: int
  timestamp: Optional[datetime] = Field(None, alias="createdOn")
  season: Optional[int] = None
  tier: str = ""
  format: str = ""
  teams: List[Team] = []

  @field_validator("timestamp")
  @classmethod
  def timestamp_as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
    # naive times from the source are UTC
    if v is None:
      return v
    if v.tzinfo is None:
      return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Profile(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  id: int
  name: str = ""
  discord_id: Optional[str] = Field(None, alias="discordId")
  mmr: Optional[float] = None
  events_played: Optional[int] = Field(None, alias="eventsPlayed")


class UserRecord(BaseModel):
  user_id: str
  player_id: int
  display_name: str = ""


# ----------------------------
# Derived stats
# ----------------------------
class StatBundle(BaseModel):
  win_rate: float = -1.0
  average_score: float = -1.0
  best_score: Optional[float] = None
  events_played: int = 0


BundleTree = Dict[TimeWindow, Dict[Scope, Dict[QueueFilter, StatBundle]]]


class StreakSummary(BaseModel):
  current_streak: int = 0
  current_streak_gain: float = 0
  longest_streak: int = 0
  longest_streak_gain: float = 0
  longest_start: Optional[datetime] = None
  longest_end: Optional[datetime] = None


class UserCacheEntry(BaseModel):
  user_id: str
  player_id: int
  display_name: str
  current_rating: Optional[float] = None
  weekly_rating_delta: Optional[float] = None
  seasonal_rating_delta: Optional[float] = None
  bundles: BundleTree = {}
  streak: StreakSummary = Field(default_factory=StreakSummary)

  def bundle(self, window: TimeWindow, scope: Scope, queue: QueueFilter) -> Optional[StatBundle]:
    return self.bundles.get(window, {}).get(scope, {}).get(queue)


class ScoreHighlight(BaseModel):
  score: float
  placement: Optional[int] = None
  match_id: int


class PerformanceHighlight(BaseModel):
  match_id: int
  score: float
  placement: int
  amount: float


class RivalryHighlight(BaseModel):
  match_id: int
  player_score: float
  score_difference: float
  player_rank: int
  opponent_rank: int
  rank_difference: int


class HeadToHead(BaseModel):
  wins: int = 0
  losses: int = 0
  ties: int = 0


class Notables(BaseModel):
  best_score: Optional[ScoreHighlight] = None
  worst_score: Optional[ScoreHighlight] = None
  overperformance: Optional[PerformanceHighlight] = None
  underperformance: Optional[PerformanceHighlight] = None
  carry: Optional[PerformanceHighlight] = None
  anchor: Optional[PerformanceHighlight] = None


class PlayerStats(BaseModel):
  """One player's stats over a filtered slice of their matches."""

  player_id: int
  name: str = ""
  window: TimeWindow = TimeWindow.ALL
  scope: Scope = Scope.GLOBAL
  queue: QueueFilter = QueueFilter.ALL
  events_played: int = 0
  win_rate: float = -1.0
  average_score: float = -1.0
  best_score: Optional[ScoreHighlight] = None
  worst_score: Optional[ScoreHighlight] = None
  average_seed: float = -1.0
  average_placement: float = -1.0
  # against the other members of the requested community
  community_head_to_head: Optional[HeadToHead] = None


# ----------------------------
# Query responses
# ----------------------------
class CacheInfo(BaseModel):
  community_id: str
  last_built_at: Optional[datetime] = None
  user_count: int = 0
  is_stale: bool = True
  refreshing: bool = False


class SnapshotInfo(BaseModel):
  community_id: str
  last_built_at: float


class LeaderboardRow(BaseModel):
  rank: int
  user_id: str
  player_id: int
  display_name: str
  value: float


class StreakRow(BaseModel):
  rank: int
  user_id: str
  player_id: int
  display_name: str
  current_streak: int
  current_streak_gain: float
  longest_streak: int
  longest_streak_gain: float
