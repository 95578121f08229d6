# tests/helpers.py

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from statcache.errors import PersistenceFailure, UpstreamUnavailable
from statcache.models import (
  MatchRecord,
  PlayerResult,
  Profile,
  SnapshotInfo,
  Team,
  TimeWindow,
  UserCacheEntry,
  UserRecord,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

# (player_id, score, rating_delta, previous_rating)
Row = Tuple[int, float, float, float]


def make_match(
    match_id: int,
    teams: Sequence[Sequence[Row]],
    *,
    when: Optional[datetime] = None,
    season: int = 2,
    tier: str = "T1",
) -> MatchRecord:
  """Build a MatchRecord; teams are ranked in the order given."""
  return MatchRecord(
      id=match_id,
      timestamp=when or NOW - timedelta(days=30),
      season=season,
      tier=tier,
      format=f"{len(teams[0]) if teams else 0}v{len(teams[0]) if teams else 0}",
      teams=[
        Team(rank=i, scores=[
          PlayerResult(player_id=pid, player_name=f"P{pid}", score=score, rating_delta=delta, previous_rating=prev)
          for pid, score, delta, prev in team
        ])
        for i, team in enumerate(teams, start=1)
      ],
  )


def as_map(*matches: MatchRecord) -> Dict[int, MatchRecord]:
  return {m.id: m for m in matches}


class FakeClock:
  def __init__(self, start: float = NOW.timestamp()):
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


class FakeMatchSource:
  """In-memory match source with call counting, failure injection and an optional gate."""

  def __init__(self, players: Optional[Dict[int, dict]] = None, *, latency: float = 0.0):
    self.players = players or {}
    self.calls: Counter = Counter()
    self.failing: set = set()
    self.gate: Optional[asyncio.Event] = None
    self.latency = latency
    self.active = 0
    self.peak_active = 0
    self.delta_now: List[Optional[datetime]] = []

  def add_player(self, player_id: int, name: str, *, matches=None, mmr=None, weekly=None, season=None) -> None:
    self.players[player_id] = {
      "name": name, "matches": matches or {}, "mmr": mmr, "weekly": weekly, "season": season,
    }

  async def get_profile(self, player_id: int) -> Optional[Profile]:
    self.calls["get_profile"] += 1
    self.active += 1
    self.peak_active = max(self.peak_active, self.active)
    try:
      if self.gate is not None:
        await self.gate.wait()
      if self.latency:
        await asyncio.sleep(self.latency)
    finally:
      self.active -= 1
    if player_id in self.failing:
      raise UpstreamUnavailable(f"player {player_id} unavailable", status_code=503)
    p = self.players.get(player_id)
    if p is None:
      return None
    return Profile(id=player_id, name=p["name"], mmr=p["mmr"])

  async def get_all_matches(self, player_id: int, community_id: str) -> Dict[int, MatchRecord]:
    self.calls["get_all_matches"] += 1
    return dict(self.players.get(player_id, {}).get("matches") or {})

  async def get_current_rating(self, player_id: int) -> Optional[float]:
    self.calls["get_current_rating"] += 1
    return self.players.get(player_id, {}).get("mmr")

  async def get_rating_delta(
      self, player_id: int, window: TimeWindow, now: Optional[datetime] = None,
  ) -> Optional[float]:
    self.calls["get_rating_delta"] += 1
    self.delta_now.append(now)
    key = "weekly" if window == TimeWindow.WEEKLY else "season"
    return self.players.get(player_id, {}).get(key)


class FakeStore:
  def __init__(self, rosters: Optional[Dict[str, Iterable[UserRecord]]] = None):
    self.rosters: Dict[str, Dict[str, UserRecord]] = {
      cid: {u.user_id: u for u in users} for cid, users in (rosters or {}).items()
    }
    self.snapshots: Dict[str, Tuple[float, Dict[str, UserCacheEntry]]] = {}
    self.deleted: List[str] = []
    self.fail_roster = False
    self.fail_save = False
    self.fail_load: set = set()
    self.save_delay = 0.0
    self.saved: List[str] = []

  async def get_community_roster(self, community_id: str) -> Dict[str, UserRecord]:
    if self.fail_roster:
      raise PersistenceFailure("roster unavailable")
    return dict(self.rosters.get(community_id, {}))

  async def save_cache_snapshot(self, community_id: str, entries: Dict[str, UserCacheEntry], built_at: float) -> None:
    if self.save_delay:
      await asyncio.sleep(self.save_delay)
    if self.fail_save:
      raise PersistenceFailure("disk full")
    self.saved.append(community_id)
    self.snapshots[community_id] = (built_at, dict(entries))

  async def load_cache_snapshot(self, community_id: str) -> Dict[str, UserCacheEntry]:
    if community_id in self.fail_load:
      raise PersistenceFailure("corrupt snapshot")
    return dict(self.snapshots.get(community_id, (0, {}))[1])

  async def delete_cache_snapshot(self, community_id: str) -> None:
    self.deleted.append(community_id)
    self.snapshots.pop(community_id, None)

  async def delete_all_snapshots(self) -> None:
    self.deleted.append("*")
    self.snapshots.clear()

  async def list_communities_with_snapshots(self) -> List[SnapshotInfo]:
    return [SnapshotInfo(community_id=cid, last_built_at=built_at) for cid, (built_at, _) in self.snapshots.items()]


def user(user_id: str, player_id: int, name: str = "") -> UserRecord:
  return UserRecord(user_id=user_id, player_id=player_id, display_name=name or f"user-{user_id}")


def sample_source() -> FakeMatchSource:
  """Alice (1) and Bob (2) share one match; Bob also has a solo match against a stranger."""
  shared = make_match(1, [[(1, 90, 12, 1500)], [(2, 70, -12, 1600)]], when=NOW - timedelta(days=1))
  solo = make_match(2, [[(2, 85, 6, 1588)], [(9, 60, -6, 1400)]], when=NOW - timedelta(days=2))
  src = FakeMatchSource()
  src.add_player(1, "Alice", matches=as_map(shared), mmr=1512, weekly=12, season=40)
  src.add_player(2, "Bob", matches=as_map(shared, solo), mmr=1594, weekly=-6, season=-20)
  return src
